"""
Progress Infrastructure Models
==============================

SQLAlchemy ORM models for challenges, earned achievements and the score
ledger.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from hawkops.infrastructure.database import Base


class ChallengeModel(Base):
    """Maps to the 'team_challenges' table."""
    __tablename__ = "team_challenges"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    challenge_type: Mapped[str] = mapped_column(String(64), nullable=False)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reward_points: Mapped[int] = mapped_column(Integer, nullable=False)
    window_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    assigned_team_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    completed_by_team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reward_badge_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TeamAchievementModel(Base):
    """
    Maps to the 'team_achievements' table.

    The unique constraint makes earning an achievement a one-time fact.
    """
    __tablename__ = "team_achievements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    achievement_code: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("team_id", "game_id", "achievement_code", name="uq_team_achievement"),
    )


class ScoreEntryModel(Base):
    """Maps to the 'score_ledger' table."""
    __tablename__ = "score_ledger"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("game_id", "idempotency_key", name="uq_score_idempotency"),
    )

"""
Work Item Infrastructure Models
===============================

SQLAlchemy ORM models for games, teams and work items.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from hawkops.config import (
    ChangeStatus, ChangeType, IncidentStatus, PlanStatus, Priority, ReviewStatus, RiskLevel,
)
from hawkops.infrastructure.database import Base


class GameModel(Base):
    """Maps to the 'games' table."""
    __tablename__ = "games"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")


class TeamModel(Base):
    """Maps to the 'teams' table."""
    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)


class SequenceModel(Base):
    """
    Per-game counters for display numbers (INC00001, PLN00001, CHG00001).

    Maps to the 'work_item_sequences' table.
    """
    __tablename__ = "work_item_sequences"

    game_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class IncidentModel(Base):
    """Maps to the 'incidents' table."""
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    incident_number: Mapped[str] = mapped_column(String(32), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[Priority] = mapped_column(String(16), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[IncidentStatus] = mapped_column(String(32), index=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cost_per_minute: Mapped[float] = mapped_column(Float, nullable=False)
    requires_pir: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    affected_services: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    source_change_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    sla_breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reopen_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("game_id", "incident_number", name="uq_incident_number"),
    )


class PlanModel(Base):
    """
    Maps to the 'implementation_plans' table.

    Revisions are stored inline as a JSON list; they are append-only.
    """
    __tablename__ = "implementation_plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    plan_number: Mapped[str] = mapped_column(String(32), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[PlanStatus] = mapped_column(String(32), index=True, nullable=False)
    risk_level: Mapped[RiskLevel] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    incident_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    root_cause_analysis: Mapped[str] = mapped_column(Text, nullable=False, default="")
    implementation_steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    risk_mitigation: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rollback_plan: Mapped[str] = mapped_column(Text, nullable=False, default="")
    testing_plan: Mapped[str] = mapped_column(Text, nullable=False, default="")
    estimated_effort_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    revisions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    ai_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ai_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    review_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    related_change_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("game_id", "plan_number", name="uq_plan_number"),
    )


class ChangeRequestModel(Base):
    """Maps to the 'change_requests' table."""
    __tablename__ = "change_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    change_number: Mapped[str] = mapped_column(String(32), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    change_type: Mapped[ChangeType] = mapped_column(String(16), nullable=False)
    risk_level: Mapped[RiskLevel] = mapped_column(String(16), nullable=False)
    status: Mapped[ChangeStatus] = mapped_column(String(32), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    affected_services: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    related_plan_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    related_incident_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    implementation_plan: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rollback_plan: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    test_plan: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tech_review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    approval_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actual_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("game_id", "change_number", name="uq_change_number"),
    )


class ReviewModel(Base):
    """Maps to the 'post_incident_reviews' table."""
    __tablename__ = "post_incident_reviews"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    incident_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[ReviewStatus] = mapped_column(String(32), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    timeline: Mapped[str] = mapped_column(Text, nullable=False, default="")
    root_cause: Mapped[str] = mapped_column(Text, nullable=False, default="")
    impact: Mapped[str] = mapped_column(Text, nullable=False, default="")
    lessons_learned: Mapped[str] = mapped_column(Text, nullable=False, default="")
    action_items: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    graded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

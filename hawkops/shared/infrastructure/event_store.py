"""
SQL Event Store
===============

SQLAlchemy implementation of the append-only game event log.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import JSON, DateTime, Integer, String, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from hawkops.core.clock import ensure_utc
from hawkops.core.events import EventType, GameEvent, IEventLog
from hawkops.infrastructure.database import Base


class GameEventModel(Base):
    """
    Database model for GameEvent.

    Maps to the 'game_events' table. ``seq`` preserves append order.
    """
    __tablename__ = "game_events"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    game_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_event(model: GameEventModel) -> GameEvent:
    return GameEvent(
        id=model.id,
        game_id=model.game_id,
        team_id=model.team_id,
        event_type=EventType(model.event_type),
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        payload=dict(model.payload or {}),
        created_at=ensure_utc(model.created_at),
    )


class SQLAlchemyEventLog(IEventLog):
    """Event log persisted in the 'game_events' table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(self, event: GameEvent) -> GameEvent:
        self._session.add(GameEventModel(
            id=event.id,
            game_id=event.game_id,
            team_id=event.team_id,
            event_type=event.event_type.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            payload=event.payload,
            created_at=event.created_at,
        ))
        await self._session.flush()
        return event

    async def list_for_team(
        self,
        game_id: str,
        team_id: str,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[GameEvent]:
        stmt = select(GameEventModel).where(
            GameEventModel.game_id == game_id,
            GameEventModel.team_id == team_id,
        )
        if event_types is not None:
            stmt = stmt.where(GameEventModel.event_type.in_([t.value for t in event_types]))
        result = await self._session.execute(stmt.order_by(GameEventModel.seq))
        return [_to_event(m) for m in result.scalars().all()]

    async def list_for_game(
        self,
        game_id: str,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[GameEvent]:
        stmt = select(GameEventModel).where(GameEventModel.game_id == game_id)
        if event_types is not None:
            stmt = stmt.where(GameEventModel.event_type.in_([t.value for t in event_types]))
        result = await self._session.execute(stmt.order_by(GameEventModel.seq))
        return [_to_event(m) for m in result.scalars().all()]

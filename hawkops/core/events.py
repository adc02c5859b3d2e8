"""
Game Events
===========

The append-only event record shared by every bounded context.

State machines emit events on transitions; progress evaluators consume them.
The log interface lives here so no context depends on another context's
infrastructure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4


class EventType(str, Enum):
    """Event types appended to the game log."""
    # Incidents
    INCIDENT_CREATED = "incident_created"
    INCIDENT_STARTED = "incident_started"
    INCIDENT_RESOLVED = "incident_resolved"
    INCIDENT_CLOSED = "incident_closed"
    INCIDENT_REOPENED = "incident_reopened"
    INCIDENT_ESCALATED = "incident_escalated"
    INCIDENT_TRANSFERRED = "incident_transferred"
    SLA_BREACHED = "sla_breached"
    SLA_TICK = "sla_tick"

    # Plans
    PLAN_CREATED = "plan_created"
    PLAN_SUBMITTED = "plan_submitted"
    PLAN_EVALUATED = "plan_evaluated"
    PLAN_STATUS_CHANGED = "plan_status_changed"

    # Change requests
    CHANGE_CREATED = "change_created"
    CHANGE_APPROVED = "change_approved"
    CHANGE_REJECTED = "change_rejected"
    CHANGE_STARTED = "change_started"
    CHANGE_COMPLETED = "change_completed"
    CHANGE_FAILED = "change_failed"
    CHANGE_ROLLED_BACK = "change_rolled_back"

    # Post-incident reviews
    PIR_CREATED = "pir_created"
    PIR_SUBMITTED = "pir_submitted"
    PIR_GRADED = "pir_graded"

    # Communications, recorded by the outer layer
    STAKEHOLDER_RESPONSE = "stakeholder_response"

    # Management
    MANAGEMENT_ESCALATED = "management_escalated"

    # Progress
    CHALLENGE_CREATED = "challenge_created"
    CHALLENGE_PROGRESS = "challenge_progress"
    CHALLENGE_COMPLETED = "challenge_completed"
    CHALLENGE_EXPIRED = "challenge_expired"
    ACHIEVEMENT_EARNED = "achievement_earned"
    POINTS_AWARDED = "points_awarded"


@dataclass(frozen=True)
class GameEvent:
    """
    Immutable event record.

    ``team_id`` is None for game-wide events.
    """
    game_id: str
    event_type: EventType
    team_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict:
        """Convert to dictionary for fan-out and API responses."""
        return {
            "id": self.id,
            "game_id": self.game_id,
            "team_id": self.team_id,
            "event_type": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class IEventLog(ABC):
    """Interface for the append-only event log."""

    @abstractmethod
    async def append(self, event: GameEvent) -> GameEvent:
        """Append an event. Existing events are never rewritten."""

    @abstractmethod
    async def list_for_team(
        self,
        game_id: str,
        team_id: str,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[GameEvent]:
        """List a team's events in append order."""

    @abstractmethod
    async def list_for_game(
        self,
        game_id: str,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[GameEvent]:
        """List every event of a game in append order."""


class IEventPublisher(ABC):
    """Interface for one-way notification fan-out."""

    @abstractmethod
    async def publish(self, event: GameEvent) -> None:
        """Emit an event. Implementations must not raise to the caller."""

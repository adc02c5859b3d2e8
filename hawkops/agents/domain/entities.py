"""
Agent Domain Entities
=====================

Read-only views a simulated role works from, and the decision it produces.

A snapshot is taken once per cycle. Rules only ever look at a snapshot, so
a decision is always explained by the state it was made from.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from hawkops.config import (
    AgentRole, ChangeStatus, IncidentStatus, Personality, PlanStatus, Workload,
)
from hawkops.workitems.domain import ChangeRequest, GameSession, ImplementationPlan, Incident


class AgentAction(str, Enum):
    """Actions a decision can ask for."""
    START_WORK = "start_work"
    RESOLVE = "resolve"
    EMERGENCY_RESOLVE = "emergency_resolve"
    ESCALATE = "escalate"
    CREATE_PLAN = "create_plan"
    SUBMIT_PLAN = "submit_plan"
    REVISE_PLAN = "revise_plan"
    CREATE_CHANGE = "create_change"
    REVIEW_CHANGE = "review_change"
    IMPLEMENT_CHANGE = "implement_change"
    ESCALATE_MANAGEMENT = "escalate_management"


@dataclass(frozen=True)
class AgentProfile:
    """Who is acting: a role with a temperament, on behalf of one team."""
    game_id: str
    team_id: str
    role: AgentRole
    personality: Personality = Personality.BALANCED

    @property
    def name(self) -> str:
        return f"{self.role.value}:{self.team_id}"


@dataclass(frozen=True)
class GameSnapshot:
    """
    A team's work items as read at ``taken_at``.

    Items are held in repository order (oldest first).
    """
    game: GameSession
    team_id: str
    taken_at: datetime
    incidents: Tuple[Incident, ...] = ()
    plans: Tuple[ImplementationPlan, ...] = ()
    changes: Tuple[ChangeRequest, ...] = ()
    escalated_breach_count: int = 0

    @property
    def duration_minutes(self) -> int:
        return self.game.duration_minutes

    def active_incidents(self) -> Tuple[Incident, ...]:
        return tuple(i for i in self.incidents if i.is_active)

    def plans_for_incident(self, incident_id: str) -> Tuple[ImplementationPlan, ...]:
        return tuple(p for p in self.plans if p.incident_id == incident_id)

    def has_plan(self, incident_id: str) -> bool:
        """A rejected plan does not count; the incident needs a new one."""
        return any(p.status != PlanStatus.AI_REJECTED for p in self.plans_for_incident(incident_id))

    def has_completed_change(self, incident_id: str) -> bool:
        """True once a change raised for the incident has been implemented successfully."""
        plan_ids = {p.id for p in self.plans_for_incident(incident_id)}
        return any(
            c.status == ChangeStatus.COMPLETED
            and (c.related_incident_id == incident_id or c.related_plan_id in plan_ids)
            for c in self.changes
        )

    def incident(self, incident_id: Optional[str]) -> Optional[Incident]:
        for incident in self.incidents:
            if incident.id == incident_id:
                return incident
        return None


@dataclass(frozen=True)
class Perception:
    """
    What a role sees in a snapshot.

    ``at_risk_ids`` and ``breached_ids`` are computed against the scaled
    thresholds when the perception is built.
    """
    snapshot: GameSnapshot
    role: AgentRole
    urgent: Tuple[Incident, ...] = ()
    pending: Tuple[Incident, ...] = ()
    plans_needing_attention: Tuple[ImplementationPlan, ...] = ()
    changes_needing_review: Tuple[ChangeRequest, ...] = ()
    changes_ready: Tuple[ChangeRequest, ...] = ()
    at_risk_ids: FrozenSet[str] = frozenset()
    breached_ids: FrozenSet[str] = frozenset()
    workload: Workload = Workload.LOW
    recommendations: Tuple[str, ...] = ()

    def is_at_risk(self, incident: Incident) -> bool:
        return incident.id in self.at_risk_ids

    def breached(self) -> Tuple[Incident, ...]:
        return tuple(i for i in self.urgent if i.id in self.breached_ids)

    def open_items(self) -> Tuple[Incident, ...]:
        return tuple(i for i in self.pending if i.status == IncidentStatus.OPEN)

    def in_progress_items(self) -> Tuple[Incident, ...]:
        return tuple(i for i in self.pending if i.status == IncidentStatus.IN_PROGRESS)

    def plans_in(self, status: PlanStatus) -> Tuple[ImplementationPlan, ...]:
        return tuple(p for p in self.plans_needing_attention if p.status == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "team_id": self.snapshot.team_id,
            "urgent": [i.incident_number for i in self.urgent],
            "pending": len(self.pending),
            "plans_needing_attention": [p.plan_number for p in self.plans_needing_attention],
            "changes_needing_review": [c.change_number for c in self.changes_needing_review],
            "at_risk": len(self.at_risk_ids),
            "breached": len(self.breached_ids),
            "workload": self.workload.value,
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class Decision:
    """
    One action chosen by the first matching rule.

    ``priority`` is the rule's position in its table, starting at 1. It is
    recorded for logging and never used to re-rank.
    """
    action: AgentAction
    target: Optional[str]
    reasoning: str
    priority: int
    rule: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "target": self.target,
            "params": dict(self.params),
            "reasoning": self.reasoning,
            "priority": self.priority,
            "rule": self.rule,
        }

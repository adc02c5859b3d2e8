"""
Work Item Domain Entities
=========================

Pure Python domain entities for the simulated service desk.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns. Status changes
never happen here directly; they go through the state machines.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from hawkops.config import (
    ChangeStatus, ChangeType, IncidentStatus, PlanStatus,
    Priority, ReviewStatus, RiskLevel, Severity,
)


@dataclass
class GameSession:
    """
    A timed exercise. Everything scales from ``duration_minutes``.
    """
    id: str
    name: str
    duration_minutes: int
    started_at: datetime
    status: str = "active"

    def __post_init__(self):
        if self.duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")

    @property
    def ends_at(self) -> datetime:
        return self.started_at + timedelta(minutes=self.duration_minutes)

    def remaining_minutes(self, now: datetime) -> float:
        """Minutes left in the session, never negative."""
        return max(0.0, (self.ends_at - now).total_seconds() / 60)


@dataclass
class Team:
    """A team taking part in a game."""
    id: str
    game_id: str
    name: str
    roles: List[str] = field(default_factory=list)


@dataclass
class Incident:
    """
    Incident entity.

    ``sla_deadline`` is derived from priority and session duration when the
    incident is raised and never changes afterwards. ``resolved_at`` is set
    exactly when the status is resolved or closed.
    """

    id: str
    game_id: str
    team_id: str
    incident_number: str
    title: str
    description: str
    priority: Priority
    severity: Severity
    status: IncidentStatus
    created_at: datetime
    sla_deadline: datetime
    cost_per_minute: float
    requires_pir: bool = True

    affected_services: List[str] = field(default_factory=list)
    source_change_id: Optional[str] = None

    started_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    resolution: Optional[str] = None

    sla_breached: bool = False
    escalation_level: int = 0
    reopen_count: int = 0
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.sla_deadline < self.created_at:
            raise ValueError("sla_deadline cannot be before created_at")
        if self.cost_per_minute < 0:
            raise ValueError("cost_per_minute cannot be negative")

    @property
    def is_active(self) -> bool:
        """Open or being worked."""
        return self.status in (IncidentStatus.OPEN, IncidentStatus.IN_PROGRESS)

    @property
    def sla_minutes(self) -> float:
        return (self.sla_deadline - self.created_at).total_seconds() / 60

    def age_minutes(self, now: datetime) -> float:
        return max(0.0, (now - self.created_at).total_seconds() / 60)

    def remaining_sla_minutes(self, now: datetime) -> float:
        """Minutes until the deadline; negative once breached."""
        return (self.sla_deadline - now).total_seconds() / 60

    def is_sla_breached(self, now: datetime) -> bool:
        return self.sla_breached or (self.is_active and now > self.sla_deadline)

    def response_minutes(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.started_at - self.created_at).total_seconds() / 60

    def resolution_minutes(self) -> Optional[float]:
        if self.resolved_at is None:
            return None
        return (self.resolved_at - self.created_at).total_seconds() / 60

    def resolved_within_sla(self) -> bool:
        return self.resolved_at is not None and self.resolved_at <= self.sla_deadline

    def accrued_cost(self, now: datetime) -> float:
        """Cost burned while the incident stayed unresolved."""
        end = self.resolved_at or now
        return max(0.0, (end - self.created_at).total_seconds() / 60) * self.cost_per_minute

    def invariant_errors(self) -> List[str]:
        errors = []
        resolved_like = self.status in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED)
        if resolved_like and self.resolved_at is None:
            errors.append("resolved_at must be set once resolved")
        if not resolved_like and self.resolved_at is not None:
            errors.append("resolved_at must be empty while not resolved")
        if not 0 <= self.escalation_level <= 3:
            errors.append("escalation_level must be between 0 and 3")
        return errors


@dataclass(frozen=True)
class PlanRevision:
    """
    Immutable snapshot of a plan body taken at submission.

    The evaluation fields are filled once, when the grading result for
    this revision arrives.
    """
    revision_number: int
    snapshot: Dict[str, Any]
    submitted_at: datetime
    ai_score: Optional[int] = None
    ai_decision: Optional[str] = None
    ai_feedback: Optional[str] = None

    @property
    def is_evaluated(self) -> bool:
        return self.ai_decision is not None


@dataclass
class ImplementationPlan:
    """
    Remediation plan, graded asynchronously before it may be implemented.

    Only one non-terminal plan may be active per incident.
    """

    id: str
    game_id: str
    team_id: str
    plan_number: str
    title: str
    description: str
    status: PlanStatus
    risk_level: RiskLevel
    created_at: datetime

    incident_id: Optional[str] = None
    root_cause_analysis: str = ""
    implementation_steps: List[Dict[str, Any]] = field(default_factory=list)
    risk_mitigation: str = ""
    rollback_plan: str = ""
    testing_plan: str = ""
    estimated_effort_hours: Optional[float] = None

    revisions: List[PlanRevision] = field(default_factory=list)
    ai_score: Optional[int] = None
    ai_feedback: Optional[str] = None
    review_requested_at: Optional[datetime] = None
    related_change_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    TERMINAL_STATUSES = (PlanStatus.AI_REJECTED, PlanStatus.COMPLETED)

    @property
    def is_active(self) -> bool:
        return self.status not in self.TERMINAL_STATUSES

    @property
    def latest_revision(self) -> Optional[PlanRevision]:
        return self.revisions[-1] if self.revisions else None

    def snapshot(self) -> Dict[str, Any]:
        """Full plan body as submitted for review."""
        return {
            "title": self.title,
            "description": self.description,
            "incident_id": self.incident_id,
            "risk_level": RiskLevel(self.risk_level).value,
            "root_cause_analysis": self.root_cause_analysis,
            "implementation_steps": [dict(step) for step in self.implementation_steps],
            "risk_mitigation": self.risk_mitigation,
            "rollback_plan": self.rollback_plan,
            "testing_plan": self.testing_plan,
            "estimated_effort_hours": self.estimated_effort_hours,
        }

    def steps_as_text(self) -> str:
        """Numbered steps, used as the change request's implementation plan."""
        lines = []
        for index, step in enumerate(self.implementation_steps, start=1):
            title = step.get("title") or f"Step {index}"
            description = step.get("description", "")
            lines.append(f"{step.get('order', index)}. {title}: {description}".rstrip(": "))
        return "\n".join(lines)


@dataclass
class ChangeRequest:
    """
    Change request raised to implement a fix.

    Emergency changes are created already approved. The outcome of the
    in_progress step is probabilistic.
    """

    id: str
    game_id: str
    team_id: str
    change_number: str
    title: str
    description: str
    change_type: ChangeType
    risk_level: RiskLevel
    status: ChangeStatus
    created_at: datetime

    affected_services: List[str] = field(default_factory=list)
    related_plan_id: Optional[str] = None
    related_incident_id: Optional[str] = None

    implementation_plan: Optional[str] = None
    rollback_plan: Optional[str] = None
    test_plan: Optional[str] = None
    tech_review_notes: Optional[str] = None

    approval_notes: Optional[str] = None
    failure_reason: Optional[str] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    TERMINAL_STATUSES = (
        ChangeStatus.REJECTED, ChangeStatus.COMPLETED,
        ChangeStatus.FAILED, ChangeStatus.ROLLED_BACK,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def has_rollback_plan(self) -> bool:
        return bool(self.rollback_plan and self.rollback_plan.strip())


@dataclass
class PostIncidentReview:
    """Post-incident review (PIR) owed after resolving an incident."""

    id: str
    game_id: str
    team_id: str
    incident_id: str
    status: ReviewStatus
    created_at: datetime

    timeline: str = ""
    root_cause: str = ""
    impact: str = ""
    lessons_learned: str = ""
    action_items: List[str] = field(default_factory=list)

    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None
    score: Optional[int] = None
    feedback: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        """Every narrative field filled and at least one action item."""
        fields = (self.timeline, self.root_cause, self.impact, self.lessons_learned)
        return all(f and f.strip() for f in fields) and len(self.action_items) > 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "timeline": self.timeline,
            "root_cause": self.root_cause,
            "impact": self.impact,
            "lessons_learned": self.lessons_learned,
            "action_items": list(self.action_items),
        }

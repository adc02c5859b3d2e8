"""
Work Item State Machines
========================

Fixed adjacency tables and edge side effects for incidents, plans,
change requests and post-incident reviews.

``attempt`` is pure: it works on a copy of the entity and returns the
updated copy together with the effects attached to the edge taken. The
caller persists the copy with a compare-and-set on the previous status
and only then carries out the effects. An edge missing from the table
raises ``InvalidTransition`` and the original entity is left untouched.
"""

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, ClassVar, Dict, FrozenSet, Generic, List, Optional, Tuple, TypeVar

from hawkops.config import (
    ChangeStatus, IncidentStatus, PlanStatus, ReviewStatus, RiskLevel,
)
from hawkops.core import EventType, InvalidTransition, InvariantViolation, utc_now
from hawkops.workitems.domain.entities import (
    ChangeRequest, ImplementationPlan, Incident, PlanRevision, PostIncidentReview,
)
from hawkops.workitems.domain.outcome import ChangeOutcomeModel

T = TypeVar("T")


# ========== Transition Context & Effects ==========

@dataclass(frozen=True)
class TransitionContext:
    """Inputs to a transition besides the target status."""
    at: datetime = field(default_factory=utc_now)
    actor: Optional[str] = None
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmitEvent:
    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequirePostIncidentReview:
    incident_id: str


@dataclass(frozen=True)
class RequestPlanEvaluation:
    plan_id: str
    revision_number: int


@dataclass(frozen=True)
class RequestReviewGrading:
    review_id: str


@dataclass(frozen=True)
class SpawnFailureIncident:
    change_id: str


@dataclass(frozen=True)
class SyncRelatedPlan:
    plan_id: str
    target_status: PlanStatus


Effect = Any


@dataclass(frozen=True)
class TransitionResult(Generic[T]):
    entity: T
    previous_status: str
    effects: Tuple[Effect, ...] = ()

    def events(self) -> List[EmitEvent]:
        return [e for e in self.effects if isinstance(e, EmitEvent)]


def _edges(table: Dict[Any, Tuple[Any, ...]]) -> Dict[str, FrozenSet[str]]:
    return {src.value: frozenset(dst.value for dst in dsts) for src, dsts in table.items()}


# ========== Base ==========

class StateMachine:
    """
    Adjacency-table state machine.

    Subclasses declare ``entity_type`` and ``transitions`` and implement
    ``_on_edge`` to mutate the copy and return the edge's effects.
    """

    entity_type: ClassVar[str] = "entity"
    transitions: ClassVar[Dict[str, FrozenSet[str]]] = {}

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return str(getattr(target, "value", target)) in cls.transitions.get(
            str(getattr(current, "value", current)), frozenset()
        )

    @classmethod
    def allowed_targets(cls, current: str) -> FrozenSet[str]:
        return cls.transitions.get(str(getattr(current, "value", current)), frozenset())

    @classmethod
    def attempt(cls, entity: T, target_status: str, context: Optional[TransitionContext] = None) -> TransitionResult[T]:
        """
        Take one edge.

        Raises:
            InvalidTransition: If the edge is not in the table
            InvariantViolation: If the resulting entity breaks an invariant
        """
        current = entity.status
        if not cls.can_transition(current, target_status):
            raise InvalidTransition(
                cls.entity_type,
                getattr(entity, "id", None),
                getattr(current, "value", current),
                getattr(target_status, "value", target_status),
            )

        ctx = context or TransitionContext()
        updated = copy.deepcopy(entity)
        updated.status = cls.status_type(target_status)
        updated.updated_at = ctx.at
        effects = cls._on_edge(updated, cls.status_type(current), ctx)
        cls._check_invariants(entity, updated)

        return TransitionResult(
            entity=updated,
            previous_status=cls.status_type(current).value,
            effects=tuple(effects),
        )

    @classmethod
    def status_type(cls, value: Any):
        raise NotImplementedError

    @classmethod
    def _on_edge(cls, entity: Any, previous: Any, ctx: TransitionContext) -> List[Effect]:
        return []

    @classmethod
    def _check_invariants(cls, before: Any, after: Any) -> None:
        return None


# ========== Incident ==========

class IncidentStateMachine(StateMachine):
    """
    open -> in_progress -> resolved -> closed, with resolved -> open to reopen.
    """

    entity_type = "incident"
    transitions = _edges({
        IncidentStatus.OPEN: (IncidentStatus.IN_PROGRESS,),
        IncidentStatus.IN_PROGRESS: (IncidentStatus.RESOLVED,),
        IncidentStatus.RESOLVED: (IncidentStatus.CLOSED, IncidentStatus.OPEN),
        IncidentStatus.CLOSED: (),
    })

    @classmethod
    def status_type(cls, value: Any) -> IncidentStatus:
        return IncidentStatus(value)

    @classmethod
    def _on_edge(cls, incident: Incident, previous: IncidentStatus, ctx: TransitionContext) -> List[Effect]:
        target = incident.status
        base = {"priority": incident.priority.value, "incident_number": incident.incident_number}

        if target == IncidentStatus.IN_PROGRESS:
            if incident.started_at is None:
                incident.started_at = ctx.at
            return [EmitEvent(EventType.INCIDENT_STARTED, {
                **base,
                "response_minutes": round(incident.response_minutes(), 2),
            })]

        if target == IncidentStatus.RESOLVED:
            incident.resolved_at = ctx.at
            incident.resolution = ctx.data.get("resolution", ctx.reason)
            effects: List[Effect] = [EmitEvent(EventType.INCIDENT_RESOLVED, {
                **base,
                "severity": incident.severity.value,
                "resolution_minutes": round(incident.resolution_minutes(), 2),
                "within_sla": incident.resolved_within_sla(),
                "escalation_level": incident.escalation_level,
                "reopen_count": incident.reopen_count,
                "cost": round(incident.accrued_cost(incident.resolved_at), 2),
            })]
            if incident.requires_pir:
                effects.append(RequirePostIncidentReview(incident.id))
            return effects

        if target == IncidentStatus.CLOSED:
            incident.closed_at = ctx.at
            return [EmitEvent(EventType.INCIDENT_CLOSED, base)]

        if target == IncidentStatus.OPEN and previous == IncidentStatus.RESOLVED:
            incident.resolved_at = None
            incident.resolution = None
            incident.reopen_count += 1
            return [EmitEvent(EventType.INCIDENT_REOPENED, {**base, "reopen_count": incident.reopen_count})]

        return []

    @classmethod
    def _check_invariants(cls, before: Incident, after: Incident) -> None:
        errors = after.invariant_errors()
        if after.sla_deadline != before.sla_deadline:
            errors.append("sla_deadline is immutable")
        if errors:
            raise InvariantViolation(
                f"Incident {after.id} invariant check failed: {'; '.join(errors)}",
                {"incident_id": after.id, "errors": errors},
            )


# ========== Implementation Plan ==========

class PlanStateMachine(StateMachine):
    """
    draft|ai_needs_revision -> ai_reviewing -> ai_approved|ai_needs_revision|ai_rejected;
    ai_approved -> implementing -> completed, or back to ai_needs_revision
    when its change fails.
    """

    entity_type = "implementation_plan"
    transitions = _edges({
        PlanStatus.DRAFT: (PlanStatus.AI_REVIEWING,),
        PlanStatus.AI_NEEDS_REVISION: (PlanStatus.AI_REVIEWING,),
        PlanStatus.AI_REVIEWING: (
            PlanStatus.AI_APPROVED, PlanStatus.AI_NEEDS_REVISION, PlanStatus.AI_REJECTED,
        ),
        PlanStatus.AI_APPROVED: (PlanStatus.IMPLEMENTING,),
        PlanStatus.IMPLEMENTING: (PlanStatus.COMPLETED, PlanStatus.AI_NEEDS_REVISION),
        PlanStatus.AI_REJECTED: (),
        PlanStatus.COMPLETED: (),
    })

    DECISION_TO_STATUS = {
        "approve": PlanStatus.AI_APPROVED,
        "reject": PlanStatus.AI_REJECTED,
        "needs_revision": PlanStatus.AI_NEEDS_REVISION,
    }

    @classmethod
    def status_type(cls, value: Any) -> PlanStatus:
        return PlanStatus(value)

    @classmethod
    def status_for_decision(cls, decision: Optional[str]) -> PlanStatus:
        """Unknown decisions are treated as needing revision."""
        return cls.DECISION_TO_STATUS.get((decision or "").lower(), PlanStatus.AI_NEEDS_REVISION)

    @classmethod
    def _on_edge(cls, plan: ImplementationPlan, previous: PlanStatus, ctx: TransitionContext) -> List[Effect]:
        target = plan.status
        base = {"plan_number": plan.plan_number, "incident_id": plan.incident_id}

        if target == PlanStatus.AI_REVIEWING:
            revision = PlanRevision(
                revision_number=len(plan.revisions) + 1,
                snapshot=copy.deepcopy(plan.snapshot()),
                submitted_at=ctx.at,
            )
            plan.revisions.append(revision)
            plan.review_requested_at = ctx.at
            return [
                EmitEvent(EventType.PLAN_SUBMITTED, {**base, "revision_number": revision.revision_number}),
                RequestPlanEvaluation(plan.id, revision.revision_number),
            ]

        if previous == PlanStatus.AI_REVIEWING:
            score = ctx.data.get("score")
            decision = ctx.data.get("decision") or target.value
            feedback = ctx.data.get("feedback")
            plan.ai_score = score
            plan.ai_feedback = feedback
            plan.review_requested_at = None
            if plan.revisions and not plan.revisions[-1].is_evaluated:
                plan.revisions[-1] = replace(
                    plan.revisions[-1], ai_score=score, ai_decision=decision, ai_feedback=feedback
                )
            return [EmitEvent(EventType.PLAN_EVALUATED, {
                **base,
                "score": score,
                "decision": decision,
                "revision_number": len(plan.revisions),
                "fallback": bool(ctx.data.get("fallback", False)),
            })]

        if target == PlanStatus.IMPLEMENTING:
            plan.related_change_id = ctx.data.get("change_id", plan.related_change_id)

        return [EmitEvent(EventType.PLAN_STATUS_CHANGED, {
            **base,
            "from": previous.value,
            "to": target.value,
            "reason": ctx.reason,
        })]


# ========== Change Request ==========

class ChangeStateMachine(StateMachine):
    """
    pending -> approved|rejected; approved -> in_progress ->
    completed|failed|rolled_back.
    """

    entity_type = "change_request"
    transitions = _edges({
        ChangeStatus.PENDING: (ChangeStatus.APPROVED, ChangeStatus.REJECTED),
        ChangeStatus.APPROVED: (ChangeStatus.IN_PROGRESS,),
        ChangeStatus.IN_PROGRESS: (ChangeStatus.COMPLETED, ChangeStatus.FAILED, ChangeStatus.ROLLED_BACK),
        ChangeStatus.REJECTED: (),
        ChangeStatus.COMPLETED: (),
        ChangeStatus.FAILED: (),
        ChangeStatus.ROLLED_BACK: (),
    })

    @classmethod
    def status_type(cls, value: Any) -> ChangeStatus:
        return ChangeStatus(value)

    @classmethod
    def _on_edge(cls, change: ChangeRequest, previous: ChangeStatus, ctx: TransitionContext) -> List[Effect]:
        target = change.status
        base = {
            "change_number": change.change_number,
            "change_type": change.change_type.value,
            "risk_level": RiskLevel(change.risk_level).value,
            "related_plan_id": change.related_plan_id,
        }

        if target == ChangeStatus.APPROVED:
            change.approval_notes = ctx.data.get("notes", change.approval_notes)
            return [EmitEvent(EventType.CHANGE_APPROVED, {**base, "notes": change.approval_notes})]

        if target == ChangeStatus.REJECTED:
            change.approval_notes = ctx.data.get("notes", change.approval_notes)
            effects = [EmitEvent(EventType.CHANGE_REJECTED, {**base, "notes": change.approval_notes})]
            if change.related_plan_id:
                effects.append(SyncRelatedPlan(change.related_plan_id, PlanStatus.AI_NEEDS_REVISION))
            return effects

        if target == ChangeStatus.IN_PROGRESS:
            change.actual_start = ctx.at
            return [EmitEvent(EventType.CHANGE_STARTED, base)]

        change.actual_end = ctx.at
        points = ChangeOutcomeModel.outcome_points(change.risk_level, target)
        outcome = {**base, "points": points, "failure_probability": ctx.data.get("failure_probability")}

        if target == ChangeStatus.COMPLETED:
            effects: List[Effect] = [EmitEvent(EventType.CHANGE_COMPLETED, outcome)]
            if change.related_plan_id:
                effects.append(SyncRelatedPlan(change.related_plan_id, PlanStatus.COMPLETED))
            return effects

        change.failure_reason = ctx.data.get("failure_reason", ctx.reason)
        event_type = EventType.CHANGE_FAILED if target == ChangeStatus.FAILED else EventType.CHANGE_ROLLED_BACK
        effects = [EmitEvent(event_type, {**outcome, "failure_reason": change.failure_reason})]
        if target == ChangeStatus.FAILED and not change.has_rollback_plan:
            effects.append(SpawnFailureIncident(change.id))
        if change.related_plan_id:
            effects.append(SyncRelatedPlan(change.related_plan_id, PlanStatus.AI_NEEDS_REVISION))
        return effects


# ========== Post-Incident Review ==========

class ReviewStateMachine(StateMachine):
    """draft -> submitted -> graded, with submitted -> draft when grading fails."""

    entity_type = "post_incident_review"
    transitions = _edges({
        ReviewStatus.DRAFT: (ReviewStatus.SUBMITTED,),
        ReviewStatus.SUBMITTED: (ReviewStatus.GRADED, ReviewStatus.DRAFT),
        ReviewStatus.GRADED: (),
    })

    @classmethod
    def status_type(cls, value: Any) -> ReviewStatus:
        return ReviewStatus(value)

    @classmethod
    def _on_edge(cls, review: PostIncidentReview, previous: ReviewStatus, ctx: TransitionContext) -> List[Effect]:
        target = review.status
        base = {"incident_id": review.incident_id}

        if target == ReviewStatus.SUBMITTED:
            review.submitted_at = ctx.at
            return [
                EmitEvent(EventType.PIR_SUBMITTED, {
                    **base,
                    "complete": review.is_complete,
                    "action_items": len(review.action_items),
                }),
                RequestReviewGrading(review.id),
            ]

        if target == ReviewStatus.GRADED:
            review.score = ctx.data.get("score")
            review.feedback = ctx.data.get("feedback")
            review.graded_at = ctx.at
            return [EmitEvent(EventType.PIR_GRADED, {
                **base,
                "score": review.score,
                "complete": review.is_complete,
                "action_items": len(review.action_items),
            })]

        # Grading failed; the team may resubmit
        review.submitted_at = None
        return []

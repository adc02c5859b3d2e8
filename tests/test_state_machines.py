from datetime import timedelta

import pytest

from hawkops.config import (
    ChangeStatus, ChangeType, IncidentStatus, PlanStatus, Priority, ReviewStatus, RiskLevel, Severity,
)
from hawkops.core import EventType, InvalidTransition
from hawkops.workitems.domain import (
    ChangeRequest,
    ChangeStateMachine,
    EmitEvent,
    ImplementationPlan,
    Incident,
    IncidentStateMachine,
    PlanStateMachine,
    PostIncidentReview,
    RequestPlanEvaluation,
    RequestReviewGrading,
    RequirePostIncidentReview,
    ReviewStateMachine,
    SpawnFailureIncident,
    SyncRelatedPlan,
    TransitionContext,
)

from conftest import START


def _incident(**overrides):
    fields = dict(
        id="inc-1", game_id="game-1", team_id="team-a", incident_number="INC00001",
        title="Checkout latency", description="p99 over 4s", priority=Priority.HIGH,
        severity=Severity.HIGH, status=IncidentStatus.OPEN, created_at=START,
        sla_deadline=START + timedelta(minutes=26), cost_per_minute=100,
    )
    fields.update(overrides)
    return Incident(**fields)


def _plan(**overrides):
    fields = dict(
        id="plan-1", game_id="game-1", team_id="team-a", plan_number="PLN00001",
        title="Fix checkout", description="Roll config back", status=PlanStatus.DRAFT,
        risk_level=RiskLevel.MEDIUM, created_at=START, incident_id="inc-1",
    )
    fields.update(overrides)
    return ImplementationPlan(**fields)


def _change(**overrides):
    fields = dict(
        id="chg-1", game_id="game-1", team_id="team-a", change_number="CHG00001",
        title="Restore config", description="", change_type=ChangeType.NORMAL,
        risk_level=RiskLevel.HIGH, status=ChangeStatus.IN_PROGRESS, created_at=START,
        related_plan_id="plan-1",
    )
    fields.update(overrides)
    return ChangeRequest(**fields)


def _at(minutes):
    return TransitionContext(at=START + timedelta(minutes=minutes), actor="tester")


def _event_types(result):
    return [e.event_type for e in result.effects if isinstance(e, EmitEvent)]


# ========== Incident ==========

def test_invalid_incident_edge_leaves_entity_untouched():
    incident = _incident()

    with pytest.raises(InvalidTransition) as exc:
        IncidentStateMachine.attempt(incident, IncidentStatus.RESOLVED, _at(3))

    assert exc.value.current_status == "open"
    assert exc.value.target_status == "resolved"
    assert incident.status == IncidentStatus.OPEN
    assert incident.resolved_at is None


def test_starting_records_response_time():
    result = IncidentStateMachine.attempt(_incident(), IncidentStatus.IN_PROGRESS, _at(4))

    assert result.previous_status == "open"
    assert result.entity.started_at == START + timedelta(minutes=4)
    started = result.events()[0]
    assert started.event_type == EventType.INCIDENT_STARTED
    assert started.payload["response_minutes"] == 4


def test_resolving_asks_for_a_review_when_required():
    working = _incident(status=IncidentStatus.IN_PROGRESS, started_at=START)
    ctx = TransitionContext(at=START + timedelta(minutes=10), data={"resolution": "Config restored"})

    result = IncidentStateMachine.attempt(working, IncidentStatus.RESOLVED, ctx)

    assert result.entity.resolution == "Config restored"
    assert result.entity.resolved_within_sla()
    assert RequirePostIncidentReview("inc-1") in result.effects

    no_review = IncidentStateMachine.attempt(
        _incident(status=IncidentStatus.IN_PROGRESS, requires_pir=False), IncidentStatus.RESOLVED, ctx
    )
    assert not any(isinstance(e, RequirePostIncidentReview) for e in no_review.effects)


def test_reopen_clears_resolution_and_counts():
    resolved = _incident(
        status=IncidentStatus.RESOLVED, started_at=START,
        resolved_at=START + timedelta(minutes=8), resolution="Done",
    )

    result = IncidentStateMachine.attempt(resolved, IncidentStatus.OPEN, _at(9))

    assert result.entity.resolved_at is None
    assert result.entity.reopen_count == 1
    assert _event_types(result) == [EventType.INCIDENT_REOPENED]


def test_closed_incident_is_terminal():
    closed = _incident(status=IncidentStatus.CLOSED, resolved_at=START + timedelta(minutes=5))

    assert IncidentStateMachine.allowed_targets(closed.status) == frozenset()
    with pytest.raises(InvalidTransition):
        IncidentStateMachine.attempt(closed, IncidentStatus.OPEN)


# ========== Plan ==========

def test_submitting_a_plan_records_a_revision():
    result = PlanStateMachine.attempt(_plan(), PlanStatus.AI_REVIEWING, _at(2))

    plan = result.entity
    assert len(plan.revisions) == 1
    assert plan.revisions[0].revision_number == 1
    assert plan.revisions[0].snapshot["title"] == "Fix checkout"
    assert plan.review_requested_at == START + timedelta(minutes=2)
    assert RequestPlanEvaluation("plan-1", 1) in result.effects


def test_evaluation_result_is_written_to_the_latest_revision():
    reviewing = PlanStateMachine.attempt(_plan(), PlanStatus.AI_REVIEWING, _at(2)).entity
    ctx = TransitionContext(at=START + timedelta(minutes=3), data={"score": 42, "decision": "needs_revision"})

    result = PlanStateMachine.attempt(reviewing, PlanStatus.AI_NEEDS_REVISION, ctx)

    assert result.entity.ai_score == 42
    assert result.entity.review_requested_at is None
    assert result.entity.revisions[-1].ai_decision == "needs_revision"

    resubmitted = PlanStateMachine.attempt(result.entity, PlanStatus.AI_REVIEWING, _at(5))
    assert [r.revision_number for r in resubmitted.entity.revisions] == [1, 2]


def test_unknown_decisions_need_revision():
    assert PlanStateMachine.status_for_decision("approve") == PlanStatus.AI_APPROVED
    assert PlanStateMachine.status_for_decision("REJECT") == PlanStatus.AI_REJECTED
    assert PlanStateMachine.status_for_decision("maybe") == PlanStatus.AI_NEEDS_REVISION
    assert PlanStateMachine.status_for_decision(None) == PlanStatus.AI_NEEDS_REVISION


def test_draft_plan_cannot_skip_review():
    with pytest.raises(InvalidTransition):
        PlanStateMachine.attempt(_plan(), PlanStatus.IMPLEMENTING)
    assert PlanStateMachine.can_transition(PlanStatus.IMPLEMENTING, PlanStatus.AI_NEEDS_REVISION)
    assert not PlanStateMachine.can_transition(PlanStatus.AI_REJECTED, PlanStatus.AI_REVIEWING)


# ========== Change ==========

def test_rejecting_a_change_sends_its_plan_back():
    pending = _change(status=ChangeStatus.PENDING)

    result = ChangeStateMachine.attempt(pending, ChangeStatus.REJECTED, TransitionContext(data={"notes": "No rollback"}))

    assert result.entity.approval_notes == "No rollback"
    assert SyncRelatedPlan("plan-1", PlanStatus.AI_NEEDS_REVISION) in result.effects


def test_failed_change_without_rollback_spawns_an_incident():
    result = ChangeStateMachine.attempt(_change(), ChangeStatus.FAILED, _at(20))

    assert SpawnFailureIncident("chg-1") in result.effects
    assert SyncRelatedPlan("plan-1", PlanStatus.AI_NEEDS_REVISION) in result.effects
    assert result.events()[0].payload["points"] == -100


def test_failed_change_with_rollback_plan_spawns_nothing():
    change = _change(rollback_plan="Restore snapshot")

    result = ChangeStateMachine.attempt(change, ChangeStatus.FAILED, _at(20))

    assert not any(isinstance(e, SpawnFailureIncident) for e in result.effects)


def test_completed_change_completes_its_plan():
    result = ChangeStateMachine.attempt(_change(), ChangeStatus.COMPLETED, _at(20))

    assert _event_types(result) == [EventType.CHANGE_COMPLETED]
    assert result.events()[0].payload["points"] == 150
    assert SyncRelatedPlan("plan-1", PlanStatus.COMPLETED) in result.effects
    assert result.entity.actual_end == START + timedelta(minutes=20)


def test_terminal_change_rejects_further_edges():
    done = _change(status=ChangeStatus.ROLLED_BACK)

    with pytest.raises(InvalidTransition):
        ChangeStateMachine.attempt(done, ChangeStatus.IN_PROGRESS)


# ========== Review ==========

def test_review_round_trip_through_failed_grading():
    draft = PostIncidentReview(
        id="pir-1", game_id="game-1", team_id="team-a", incident_id="inc-1",
        status=ReviewStatus.DRAFT, created_at=START,
    )

    submitted = ReviewStateMachine.attempt(draft, ReviewStatus.SUBMITTED, _at(1))
    assert RequestReviewGrading("pir-1") in submitted.effects

    back = ReviewStateMachine.attempt(submitted.entity, ReviewStatus.DRAFT, _at(2))
    assert back.entity.submitted_at is None
    assert back.effects == ()

    again = ReviewStateMachine.attempt(back.entity, ReviewStatus.SUBMITTED, _at(3)).entity
    graded = ReviewStateMachine.attempt(again, ReviewStatus.GRADED, TransitionContext(data={"score": 91}))
    assert graded.entity.score == 91
    assert _event_types(graded) == [EventType.PIR_GRADED]

    with pytest.raises(InvalidTransition):
        ReviewStateMachine.attempt(graded.entity, ReviewStatus.DRAFT)

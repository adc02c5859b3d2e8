"""
Work Item Domain Layer
======================

Entities, state machines and the change outcome model.
"""

from hawkops.workitems.domain.entities import (
    GameSession,
    Team,
    Incident,
    PlanRevision,
    ImplementationPlan,
    ChangeRequest,
    PostIncidentReview,
)
from hawkops.workitems.domain.outcome import (
    RandomSource,
    ChangeOutcome,
    ChangeOutcomeModel,
    BASE_FAILURE_PROBABILITY,
    SUCCESS_POINTS,
    FAILURE_PENALTY,
)
from hawkops.workitems.domain.state_machines import (
    TransitionContext,
    TransitionResult,
    EmitEvent,
    RequirePostIncidentReview,
    RequestPlanEvaluation,
    RequestReviewGrading,
    SpawnFailureIncident,
    SyncRelatedPlan,
    StateMachine,
    IncidentStateMachine,
    PlanStateMachine,
    ChangeStateMachine,
    ReviewStateMachine,
)

__all__ = [
    # Entities
    "GameSession",
    "Team",
    "Incident",
    "PlanRevision",
    "ImplementationPlan",
    "ChangeRequest",
    "PostIncidentReview",
    # Outcome
    "RandomSource",
    "ChangeOutcome",
    "ChangeOutcomeModel",
    "BASE_FAILURE_PROBABILITY",
    "SUCCESS_POINTS",
    "FAILURE_PENALTY",
    # State machines
    "TransitionContext",
    "TransitionResult",
    "EmitEvent",
    "RequirePostIncidentReview",
    "RequestPlanEvaluation",
    "RequestReviewGrading",
    "SpawnFailureIncident",
    "SyncRelatedPlan",
    "StateMachine",
    "IncidentStateMachine",
    "PlanStateMachine",
    "ChangeStateMachine",
    "ReviewStateMachine",
]

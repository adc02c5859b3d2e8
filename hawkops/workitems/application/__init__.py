"""
Work Item Application Layer
===========================
"""

from hawkops.workitems.application.dto import (
    PlanStepDTO,
    PlanDraft,
    PlanEvaluation,
    ReviewGrade,
    IncidentCreateDTO,
    ChangeCreateDTO,
)
from hawkops.workitems.application.services import (
    IGameRepository,
    ITeamRepository,
    IWorkItemRepository,
    IIncidentRepository,
    IPlanRepository,
    IChangeRepository,
    IReviewRepository,
    IContentService,
    TransitionRunner,
    IncidentService,
    ReviewService,
    PlanService,
    ChangeService,
    fallback_plan_draft,
    register_effect_handlers,
    FAILURE_INCIDENT_SLA_MINUTES,
    FAILURE_INCIDENT_COST_PER_MINUTE,
)
from hawkops.workitems.application.grading import (
    DeferredGradingRequests,
    GradingQueue,
    GradingWorker,
    PlanEvaluationJob,
    ReviewGradingJob,
)

__all__ = [
    # DTOs
    "PlanStepDTO",
    "PlanDraft",
    "PlanEvaluation",
    "ReviewGrade",
    "IncidentCreateDTO",
    "ChangeCreateDTO",
    # Interfaces
    "IGameRepository",
    "ITeamRepository",
    "IWorkItemRepository",
    "IIncidentRepository",
    "IPlanRepository",
    "IChangeRepository",
    "IReviewRepository",
    "IContentService",
    # Services
    "TransitionRunner",
    "IncidentService",
    "ReviewService",
    "PlanService",
    "ChangeService",
    "fallback_plan_draft",
    "register_effect_handlers",
    "FAILURE_INCIDENT_SLA_MINUTES",
    "FAILURE_INCIDENT_COST_PER_MINUTE",
    # Grading
    "DeferredGradingRequests",
    "GradingQueue",
    "GradingWorker",
    "PlanEvaluationJob",
    "ReviewGradingJob",
]

"""
Work Item Infrastructure Layer
==============================
"""

from hawkops.workitems.infrastructure.memory import (
    InMemoryGameRepository,
    InMemoryTeamRepository,
    InMemoryIncidentRepository,
    InMemoryPlanRepository,
    InMemoryChangeRepository,
    InMemoryReviewRepository,
)
from hawkops.workitems.infrastructure.repositories import (
    SQLAlchemyGameRepository,
    SQLAlchemyTeamRepository,
    SQLAlchemyIncidentRepository,
    SQLAlchemyPlanRepository,
    SQLAlchemyChangeRepository,
    SQLAlchemyReviewRepository,
)
from hawkops.workitems.infrastructure.external import LLMContentService, extract_json

__all__ = [
    # In-process
    "InMemoryGameRepository",
    "InMemoryTeamRepository",
    "InMemoryIncidentRepository",
    "InMemoryPlanRepository",
    "InMemoryChangeRepository",
    "InMemoryReviewRepository",
    # Database
    "SQLAlchemyGameRepository",
    "SQLAlchemyTeamRepository",
    "SQLAlchemyIncidentRepository",
    "SQLAlchemyPlanRepository",
    "SQLAlchemyChangeRepository",
    "SQLAlchemyReviewRepository",
    # External
    "LLMContentService",
    "extract_json",
]

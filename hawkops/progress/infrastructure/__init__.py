"""
Progress Infrastructure Layer
=============================
"""

from hawkops.progress.infrastructure.memory import (
    InMemoryChallengeRepository,
    InMemoryAchievementRepository,
    InMemoryScoreLedger,
)
from hawkops.progress.infrastructure.repositories import (
    SQLAlchemyChallengeRepository,
    SQLAlchemyAchievementRepository,
    SQLAlchemyScoreLedger,
)

__all__ = [
    "InMemoryChallengeRepository",
    "InMemoryAchievementRepository",
    "InMemoryScoreLedger",
    "SQLAlchemyChallengeRepository",
    "SQLAlchemyAchievementRepository",
    "SQLAlchemyScoreLedger",
]

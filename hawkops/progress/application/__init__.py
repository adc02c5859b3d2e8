"""
Progress Application Layer
==========================
"""

from hawkops.progress.application.services import (
    IChallengeRepository,
    IAchievementRepository,
    IScoreLedger,
    ScoreService,
    AchievementService,
    ChallengeService,
    ProgressSubscriber,
)

__all__ = [
    # Interfaces
    "IChallengeRepository",
    "IAchievementRepository",
    "IScoreLedger",
    # Services
    "ScoreService",
    "AchievementService",
    "ChallengeService",
    "ProgressSubscriber",
]

"""
Progress Domain Layer
=====================
"""

from hawkops.progress.domain.entities import (
    ChallengeType,
    ChallengeTemplate,
    CHALLENGE_TEMPLATES,
    Challenge,
    AchievementDefinition,
    ACHIEVEMENTS,
    ACHIEVEMENTS_BY_CODE,
    AchievementAward,
    AchievementProgress,
    ScoreEntry,
)
from hawkops.progress.domain.criteria import (
    ChallengeCriteria,
    ChallengeStateMachine,
    TeamHistory,
    ACHIEVEMENT_CRITERIA,
    ACHIEVEMENT_TRIGGERS,
)

__all__ = [
    "ChallengeType",
    "ChallengeTemplate",
    "CHALLENGE_TEMPLATES",
    "Challenge",
    "AchievementDefinition",
    "ACHIEVEMENTS",
    "ACHIEVEMENTS_BY_CODE",
    "AchievementAward",
    "AchievementProgress",
    "ScoreEntry",
    "ChallengeCriteria",
    "ChallengeStateMachine",
    "TeamHistory",
    "ACHIEVEMENT_CRITERIA",
    "ACHIEVEMENT_TRIGGERS",
]

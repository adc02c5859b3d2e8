"""
Progress Domain Entities
========================

Challenges, the achievement catalogue and the score ledger entry.

Challenge windows are not fixed: a template names a window category and the
time-scaling table turns it into minutes for the running session.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from hawkops.config import ChallengeStatus, ChallengeWindowType


class ChallengeType(str, Enum):
    """Named criteria a challenge can track."""
    SPEED = "speed"
    RESPONSE_TIME = "response_time"
    SLA_STREAK = "sla_streak"
    PIR_QUALITY = "pir_quality"
    PIR_EXCELLENCE = "pir_excellence"
    STAKEHOLDER_SATISFACTION = "stakeholder_satisfaction"
    HIGH_STAKES_COMM = "high_stakes_comm"
    CLEAR_QUEUE = "clear_queue"
    COLLABORATION = "collaboration"


@dataclass(frozen=True)
class ChallengeTemplate:
    """Blueprint a challenge is instantiated from."""
    title: str
    description_template: str
    challenge_type: ChallengeType
    target_value: int
    reward_points: int
    window_type: ChallengeWindowType
    reward_badge_code: Optional[str] = None

    def describe(self, duration_minutes: int) -> str:
        return self.description_template.replace("{duration}", str(duration_minutes))


CHALLENGE_TEMPLATES: Tuple[ChallengeTemplate, ...] = (
    ChallengeTemplate(
        title="Speed Run",
        description_template="Resolve 3 incidents in the next {duration} minutes",
        challenge_type=ChallengeType.SPEED,
        target_value=3,
        reward_points=300,
        window_type=ChallengeWindowType.QUICK,
    ),
    ChallengeTemplate(
        title="Lightning Response",
        description_template="Respond to 5 incidents within 2 minutes of assignment (complete in {duration} min)",
        challenge_type=ChallengeType.RESPONSE_TIME,
        target_value=5,
        reward_points=250,
        window_type=ChallengeWindowType.STANDARD,
    ),
    ChallengeTemplate(
        title="Marathon Runner",
        description_template="Maintain zero SLA breaches for the next {duration} minutes",
        challenge_type=ChallengeType.SLA_STREAK,
        target_value=60,  # replaced by the window length
        reward_points=400,
        window_type=ChallengeWindowType.STANDARD,
    ),
    ChallengeTemplate(
        title="Quality Control",
        description_template="Complete 2 PIRs with scores above 75 within {duration} minutes",
        challenge_type=ChallengeType.PIR_QUALITY,
        target_value=2,
        reward_points=350,
        window_type=ChallengeWindowType.LONG,
    ),
    ChallengeTemplate(
        title="Deep Analysis",
        description_template="Submit a PIR that scores 90 or higher within {duration} minutes",
        challenge_type=ChallengeType.PIR_EXCELLENCE,
        target_value=90,
        reward_points=500,
        window_type=ChallengeWindowType.LONG,
        reward_badge_code="root_cause_master",
    ),
    ChallengeTemplate(
        title="Stakeholder Whisperer",
        description_template="Respond to 3 stakeholder messages with 80+ satisfaction within {duration} minutes",
        challenge_type=ChallengeType.STAKEHOLDER_SATISFACTION,
        target_value=3,
        reward_points=400,
        window_type=ChallengeWindowType.STANDARD,
    ),
    ChallengeTemplate(
        title="Crisis Communicator",
        description_template="Handle an executive or media inquiry with 85+ score within {duration} minutes",
        challenge_type=ChallengeType.HIGH_STAKES_COMM,
        target_value=85,
        reward_points=450,
        window_type=ChallengeWindowType.STANDARD,
    ),
    ChallengeTemplate(
        title="Clean Sweep",
        description_template="Clear all open incidents assigned to your team within {duration} minutes",
        challenge_type=ChallengeType.CLEAR_QUEUE,
        target_value=0,
        reward_points=300,
        window_type=ChallengeWindowType.QUICK,
    ),
    ChallengeTemplate(
        title="Team Player",
        description_template="Successfully hand off 2 incidents to appropriate teams within {duration} minutes",
        challenge_type=ChallengeType.COLLABORATION,
        target_value=2,
        reward_points=250,
        window_type=ChallengeWindowType.QUICK,
        reward_badge_code="helping_hand",
    ),
)


@dataclass
class Challenge:
    """
    A timed goal for one team, or for every team when unassigned.

    ``current_value`` never decreases while the challenge is active.
    Completion happens once and awards ``reward_points`` once.
    """

    id: str
    game_id: str
    title: str
    description: str
    challenge_type: ChallengeType
    target_value: int
    reward_points: int
    window_type: ChallengeWindowType
    start_time: datetime
    end_time: datetime

    status: ChallengeStatus = ChallengeStatus.ACTIVE
    current_value: int = 0
    assigned_team_id: Optional[str] = None
    completed_by_team_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    reward_badge_code: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.end_time < self.start_time:
            raise ValueError("end_time cannot be before start_time")

    @property
    def is_active(self) -> bool:
        return self.status == ChallengeStatus.ACTIVE

    @property
    def progress(self) -> int:
        """Percentage towards the target, 0 for zero-target challenges."""
        if self.target_value <= 0:
            return 0
        return min(100, round(self.current_value / self.target_value * 100))

    @property
    def window_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def applies_to(self, team_id: Optional[str]) -> bool:
        return self.assigned_team_id is None or self.assigned_team_id == team_id

    def has_ended(self, now: datetime) -> bool:
        return now > self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "game_id": self.game_id,
            "title": self.title,
            "description": self.description,
            "challenge_type": self.challenge_type.value,
            "target_value": self.target_value,
            "current_value": self.current_value,
            "reward_points": self.reward_points,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "assigned_team_id": self.assigned_team_id,
            "completed_by_team_id": self.completed_by_team_id,
            "progress": self.progress,
        }


# ========== Achievements ==========

@dataclass(frozen=True)
class AchievementDefinition:
    """
    Catalogue entry. ``criterion`` names the counting rule and ``target``
    is the count it must reach.
    """
    code: str
    name: str
    description: str
    category: str
    points: int
    rarity: str
    criterion: str
    target: int = 1


ACHIEVEMENTS: Tuple[AchievementDefinition, ...] = (
    AchievementDefinition(
        "first_responder", "First Responder", "Acknowledge an incident within 2 minutes of creation",
        "speed", 50, "common", "fast_responses", 1,
    ),
    AchievementDefinition(
        "speed_demon", "Speed Demon", "Resolve 3 incidents in under 10 minutes each",
        "speed", 150, "uncommon", "fast_resolutions", 3,
    ),
    AchievementDefinition(
        "sla_champion", "SLA Champion", "Complete 5 incidents without any SLA breaches",
        "speed", 200, "rare", "resolved_within_sla", 5,
    ),
    AchievementDefinition(
        "root_cause_master", "Root Cause Master", "Score 90+ on a Post-Incident Review",
        "quality", 200, "rare", "excellent_reviews", 1,
    ),
    AchievementDefinition(
        "zero_rework", "Zero Rework", "Resolve 3 incidents without reopening",
        "quality", 100, "uncommon", "resolved_without_reopen", 3,
    ),
    AchievementDefinition(
        "documentation_hero", "Documentation Hero", "Submit 5 comprehensive PIRs with all fields completed",
        "quality", 150, "uncommon", "complete_reviews", 5,
    ),
    AchievementDefinition(
        "helping_hand", "Helping Hand", "Collaborate with another team on an incident",
        "teamwork", 100, "common", "handoffs", 1,
    ),
    AchievementDefinition(
        "communication_pro", "Communication Pro", "Respond to 5 stakeholder messages with high scores",
        "teamwork", 150, "uncommon", "stakeholder_responses", 5,
    ),
    AchievementDefinition(
        "crisis_manager", "Crisis Manager", "Successfully manage a critical incident without escalation",
        "leadership", 300, "epic", "critical_without_escalation", 1,
    ),
    AchievementDefinition(
        "calm_under_pressure", "Calm Under Pressure", "Handle 3+ simultaneous incidents successfully",
        "leadership", 200, "rare", "concurrent_incidents", 3,
    ),
    AchievementDefinition(
        "continuous_learner", "Continuous Learner", "Complete PIRs for all resolved incidents",
        "learning", 100, "common", "review_completion", 1,
    ),
    AchievementDefinition(
        "improvement_mindset", "Improvement Mindset", "Identify 10 actionable improvements across PIRs",
        "learning", 150, "uncommon", "action_items", 10,
    ),
)

ACHIEVEMENTS_BY_CODE: Dict[str, AchievementDefinition] = {a.code: a for a in ACHIEVEMENTS}


@dataclass
class AchievementAward:
    """The one-time fact that a team earned an achievement in a game."""
    id: str
    game_id: str
    team_id: str
    achievement_code: str
    points: int
    earned_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AchievementProgress:
    """Derived view of one achievement for one team; never stored."""
    definition: AchievementDefinition
    current: int
    earned: bool
    earned_at: Optional[datetime] = None

    @property
    def percentage(self) -> int:
        if self.earned:
            return 100
        return min(100, round(self.current / self.definition.target * 100))

    def to_dict(self) -> Dict[str, Any]:
        target = self.definition.target
        return {
            "code": self.definition.code,
            "name": self.definition.name,
            "description": self.definition.description,
            "category": self.definition.category,
            "points": self.definition.points,
            "rarity": self.definition.rarity,
            "earned": self.earned,
            "earned_at": self.earned_at.isoformat() if self.earned_at else None,
            "progress": {
                "current": target if self.earned else min(self.current, target),
                "target": target,
                "percentage": self.percentage,
            },
        }


# ========== Scoring ==========

@dataclass(frozen=True)
class ScoreEntry:
    """
    One line of a team's score ledger.

    ``idempotency_key`` is unique per game; replaying an award with the
    same key records nothing.
    """
    id: str
    game_id: str
    team_id: str
    points: int
    reason: str
    idempotency_key: str
    created_at: datetime

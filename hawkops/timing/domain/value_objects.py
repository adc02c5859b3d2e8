"""
Time-Scaling Value Objects
==========================

Duration-relative scaling for SLA targets, escalation thresholds, at-risk
windows and challenge windows.

Every scaled value is ``clamp(round(D x percent), min, max)`` over a fixed
per-category table, where ``D`` is the session duration in minutes.
Escalation thresholds are fractions of the already-scaled SLA target so the
ordering ``at_risk < L1 < L2 < L3 < sla`` holds for every duration.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from hawkops.config import (
    ChallengeWindowType, EscalationLevel, Priority, WarningLevel,
    VALID_ESCALATION_LEVELS, VALID_PRIORITIES, VALID_WINDOW_TYPES,
)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


class ScaleRange(BaseModel):
    """A ``{percent, min, max}`` row of the scaling table."""
    percent: float = Field(gt=0, le=10, description="Fraction of the base value")
    min: int = Field(ge=1, description="Lower clamp in minutes")
    max: int = Field(ge=1, description="Upper clamp in minutes")

    @model_validator(mode="after")
    def validate_bounds(self) -> "ScaleRange":
        if self.min > self.max:
            raise ValueError(f"min ({self.min}) must not exceed max ({self.max})")
        return self

    def scale(self, base: float) -> int:
        """Clamp the rounded scaled value into ``[min, max]``."""
        return max(self.min, min(self.max, round_half_up(base * self.percent)))


def _default_sla_targets() -> Dict[str, ScaleRange]:
    return {
        Priority.CRITICAL.value: ScaleRange(percent=0.20, min=8, max=25),
        Priority.HIGH.value: ScaleRange(percent=0.35, min=12, max=40),
        Priority.MEDIUM.value: ScaleRange(percent=0.55, min=20, max=55),
        Priority.LOW.value: ScaleRange(percent=0.80, min=30, max=75),
    }


def _default_challenge_windows() -> Dict[str, ScaleRange]:
    return {
        ChallengeWindowType.QUICK.value: ScaleRange(percent=0.30, min=15, max=30),
        ChallengeWindowType.STANDARD.value: ScaleRange(percent=0.50, min=25, max=45),
        ChallengeWindowType.LONG.value: ScaleRange(percent=0.75, min=35, max=60),
    }


class TimeScalingConfig(BaseModel):
    """
    Time-scaling table, loadable from YAML.

    This is a value object - immutable and defined by its attributes.
    The validators reject any table that could break the threshold
    ordering for an SLA value it can produce.
    """
    sla_targets: Dict[str, ScaleRange] = Field(
        default_factory=_default_sla_targets,
        description="SLA target scaling by priority"
    )
    escalation_fractions: Dict[str, float] = Field(
        default_factory=lambda: {"L1": 0.50, "L2": 0.75, "L3": 0.95},
        description="Escalation thresholds as fractions of the scaled SLA target"
    )
    at_risk: ScaleRange = Field(
        default_factory=lambda: ScaleRange(percent=0.25, min=2, max=15),
        description="At-risk window as a fraction of the scaled SLA target"
    )
    challenge_windows: Dict[str, ScaleRange] = Field(
        default_factory=_default_challenge_windows,
        description="Challenge window scaling by window type"
    )
    challenge_interval_min: ScaleRange = Field(
        default_factory=lambda: ScaleRange(percent=0.15, min=8, max=10_000),
        description="Minimum minutes between challenge appearances"
    )
    challenge_interval_max: ScaleRange = Field(
        default_factory=lambda: ScaleRange(percent=0.25, min=1, max=20),
        description="Maximum minutes between challenge appearances"
    )
    remaining_buffer_minutes: int = Field(default=2, ge=0)
    min_challenge_window_minutes: int = Field(default=5, ge=1)
    default_rounds: int = Field(default=4, ge=1)
    snapshot_interval_percent: float = Field(default=0.25, gt=0, le=1)
    red_threshold: float = Field(default=0.15, gt=0, lt=1)
    yellow_threshold: float = Field(default=0.35, gt=0, lt=1)

    @field_validator("sla_targets")
    @classmethod
    def validate_sla_targets(cls, v: Dict[str, ScaleRange]) -> Dict[str, ScaleRange]:
        """Every priority needs a row; missing rows take the defaults."""
        defaults = _default_sla_targets()
        for priority in VALID_PRIORITIES:
            if priority not in v:
                v[priority] = defaults[priority]
        return v

    @field_validator("challenge_windows")
    @classmethod
    def validate_challenge_windows(cls, v: Dict[str, ScaleRange]) -> Dict[str, ScaleRange]:
        """Every window type needs a row; missing rows take the defaults."""
        defaults = _default_challenge_windows()
        for window in VALID_WINDOW_TYPES:
            if window not in v:
                v[window] = defaults[window]
        return v

    @field_validator("escalation_fractions")
    @classmethod
    def validate_escalation_fractions(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Fractions must exist for L1..L3, lie in (0, 1) and increase strictly."""
        missing = [lvl for lvl in VALID_ESCALATION_LEVELS if lvl not in v]
        if missing:
            raise ValueError(f"escalation_fractions missing levels: {missing}")
        values = [v[lvl] for lvl in VALID_ESCALATION_LEVELS]
        if any(not 0 < f < 1 for f in values):
            raise ValueError("escalation fractions must lie strictly between 0 and 1")
        if values != sorted(values) or len(set(values)) != len(values):
            raise ValueError("escalation fractions must increase strictly from L1 to L3")
        return v

    @model_validator(mode="after")
    def validate_threshold_chain(self) -> "TimeScalingConfig":
        """
        Check at_risk < L1 < L2 < L3 < sla for every reachable SLA value.

        The SLA target of a priority can take any integer in its
        ``[min, max]``, so each one is checked.
        """
        if self.yellow_threshold <= self.red_threshold:
            raise ValueError("yellow_threshold must be greater than red_threshold")

        for priority, row in self.sla_targets.items():
            for sla in range(row.min, row.max + 1):
                chain = [self.at_risk.scale(sla)] + [
                    threshold_from_fraction(sla, self.escalation_fractions[lvl])
                    for lvl in VALID_ESCALATION_LEVELS
                ] + [sla]
                if any(a >= b for a, b in zip(chain, chain[1:])):
                    raise ValueError(
                        f"threshold ordering broken for priority '{priority}' at SLA {sla} minutes: {chain}"
                    )
        return self


def threshold_from_fraction(sla_minutes: int, fraction: float) -> int:
    """Escalation threshold in whole minutes, always strictly below the SLA."""
    return int(math.floor(sla_minutes * fraction))


@dataclass(frozen=True)
class EscalationRule:
    """When an open item of a priority escalates, and who hears about it."""
    name: str
    priority: Priority
    level: EscalationLevel
    after_minutes: int
    notify: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RoundTiming:
    """Round structure of a session."""
    rounds: int
    round_minutes: int
    snapshot_interval_minutes: int


@dataclass(frozen=True)
class GameTimingConfig:
    """Every scaled value for one session duration."""
    duration_minutes: int
    sla_targets: Dict[str, int]
    at_risk_thresholds: Dict[str, int]
    escalation_thresholds: Dict[str, Dict[str, int]]
    challenge_windows: Dict[str, int]
    challenge_interval: Tuple[int, int]
    rounds: RoundTiming
    escalation_rules: List[EscalationRule] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "duration_minutes": self.duration_minutes,
            "sla_targets": self.sla_targets,
            "at_risk_thresholds": self.at_risk_thresholds,
            "escalation_thresholds": self.escalation_thresholds,
            "challenge_windows": self.challenge_windows,
            "challenge_interval": {
                "min_minutes": self.challenge_interval[0],
                "max_minutes": self.challenge_interval[1],
            },
            "rounds": {
                "count": self.rounds.rounds,
                "round_minutes": self.rounds.round_minutes,
                "snapshot_interval_minutes": self.rounds.snapshot_interval_minutes,
            },
            "escalation_rules": [
                {
                    "name": r.name,
                    "priority": r.priority.value,
                    "level": r.level.value,
                    "after_minutes": r.after_minutes,
                    "notify": list(r.notify),
                }
                for r in self.escalation_rules
            ],
        }


DEFAULT_TIME_SCALING = TimeScalingConfig()

# (priority, level, notify) in the order escalation rules are reported
_ESCALATION_RULE_TABLE = (
    (Priority.CRITICAL, EscalationLevel.L1, ("manager", "lead")),
    (Priority.CRITICAL, EscalationLevel.L2, ("director", "vp")),
    (Priority.HIGH, EscalationLevel.L1, ("manager",)),
    (Priority.HIGH, EscalationLevel.L2, ("director",)),
    (Priority.MEDIUM, EscalationLevel.L1, ("lead",)),
)


class TimeScaler:
    """
    Pure functions for duration-relative scaling.

    Stateless utility class: all scaling logic in one place. Every method
    takes the table explicitly (defaulting to the built-in one) so results
    depend only on their inputs.
    """

    @staticmethod
    def _check_duration(duration_minutes: float) -> None:
        if duration_minutes <= 0:
            raise ValueError(f"session duration must be positive, got {duration_minutes}")

    @staticmethod
    def sla_target(
        priority: str,
        duration_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> int:
        """
        Scaled SLA target in minutes.

        Example:
            75-minute session, high priority: round(75 x 0.35) = 26 minutes
        """
        TimeScaler._check_duration(duration_minutes)
        return config.sla_targets[Priority(priority).value].scale(duration_minutes)

    @staticmethod
    def at_risk_threshold(
        priority: str,
        duration_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> int:
        """Minutes of remaining SLA time below which an item is at risk."""
        sla = TimeScaler.sla_target(priority, duration_minutes, config)
        return config.at_risk.scale(sla)

    @staticmethod
    def escalation_threshold(
        priority: str,
        level: str,
        duration_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> int:
        """Minutes after creation at which an open item reaches ``level``."""
        sla = TimeScaler.sla_target(priority, duration_minutes, config)
        return threshold_from_fraction(sla, config.escalation_fractions[EscalationLevel(level).value])

    @staticmethod
    def escalation_thresholds(
        priority: str,
        duration_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> Dict[str, int]:
        """All three escalation thresholds for a priority."""
        return {
            lvl: TimeScaler.escalation_threshold(priority, lvl, duration_minutes, config)
            for lvl in VALID_ESCALATION_LEVELS
        }

    @staticmethod
    def sla_deadline(
        created_at: datetime,
        priority: str,
        duration_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> datetime:
        """Deadline for an item created at ``created_at``."""
        return created_at + timedelta(minutes=TimeScaler.sla_target(priority, duration_minutes, config))

    @staticmethod
    def cap_to_remaining(
        window_minutes: int,
        remaining_minutes: Optional[float],
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> int:
        """
        Fit a window into the remaining session time.

        Leaves ``remaining_buffer_minutes`` spare and never returns less
        than ``min_challenge_window_minutes``.
        """
        if remaining_minutes is None:
            return window_minutes
        available = int(math.floor(remaining_minutes)) - config.remaining_buffer_minutes
        if window_minutes > available:
            return max(config.min_challenge_window_minutes, available)
        return window_minutes

    @staticmethod
    def challenge_window(
        window_type: str,
        duration_minutes: float,
        remaining_minutes: Optional[float] = None,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> int:
        """Challenge window in minutes, optionally capped to the remaining time."""
        TimeScaler._check_duration(duration_minutes)
        window = config.challenge_windows[ChallengeWindowType(window_type).value].scale(duration_minutes)
        return TimeScaler.cap_to_remaining(window, remaining_minutes, config)

    @staticmethod
    def challenge_interval(
        duration_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> Tuple[int, int]:
        """(min, max) minutes between challenge appearances."""
        TimeScaler._check_duration(duration_minutes)
        low = config.challenge_interval_min.scale(duration_minutes)
        high = config.challenge_interval_max.scale(duration_minutes)
        return low, max(low, high)

    @staticmethod
    def round_timing(
        duration_minutes: float,
        rounds: Optional[int] = None,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> RoundTiming:
        """Split a session into rounds."""
        TimeScaler._check_duration(duration_minutes)
        count = rounds or config.default_rounds
        return RoundTiming(
            rounds=count,
            round_minutes=max(1, round_half_up(duration_minutes / count)),
            snapshot_interval_minutes=max(1, round_half_up(duration_minutes * config.snapshot_interval_percent)),
        )

    @staticmethod
    def warning_level(
        remaining_minutes: float,
        sla_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> WarningLevel:
        """Colour band for the remaining fraction of an SLA window."""
        if remaining_minutes <= 0:
            return WarningLevel.BREACHED
        fraction = remaining_minutes / sla_minutes if sla_minutes > 0 else 0
        if fraction <= config.red_threshold:
            return WarningLevel.RED
        if fraction <= config.yellow_threshold:
            return WarningLevel.YELLOW
        return WarningLevel.GREEN

    @staticmethod
    def escalation_rules(
        duration_minutes: float,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> List[EscalationRule]:
        """Named escalation rules with their scaled trigger times."""
        return [
            EscalationRule(
                name=f"{priority.value}_{level.value.lower()}",
                priority=priority,
                level=level,
                after_minutes=TimeScaler.escalation_threshold(priority, level, duration_minutes, config),
                notify=notify,
            )
            for priority, level, notify in _ESCALATION_RULE_TABLE
        ]

    @staticmethod
    def game_timing(
        duration_minutes: float,
        rounds: Optional[int] = None,
        config: TimeScalingConfig = DEFAULT_TIME_SCALING
    ) -> GameTimingConfig:
        """Every scaled value for one session duration."""
        TimeScaler._check_duration(duration_minutes)
        return GameTimingConfig(
            duration_minutes=int(duration_minutes),
            sla_targets={p: TimeScaler.sla_target(p, duration_minutes, config) for p in VALID_PRIORITIES},
            at_risk_thresholds={p: TimeScaler.at_risk_threshold(p, duration_minutes, config) for p in VALID_PRIORITIES},
            escalation_thresholds={
                p: TimeScaler.escalation_thresholds(p, duration_minutes, config) for p in VALID_PRIORITIES
            },
            challenge_windows={
                w: TimeScaler.challenge_window(w, duration_minutes, config=config) for w in VALID_WINDOW_TYPES
            },
            challenge_interval=TimeScaler.challenge_interval(duration_minutes, config),
            rounds=TimeScaler.round_timing(duration_minutes, rounds, config),
            escalation_rules=TimeScaler.escalation_rules(duration_minutes, config),
        )

"""
Timing Application Services
===========================

Binds the pure scaling functions to the currently loaded table.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Tuple

from hawkops.config import EscalationLevel, VALID_ESCALATION_LEVELS, WarningLevel
from hawkops.timing.domain import GameTimingConfig, TimeScaler, TimeScalingConfig


class ITimingConfigProvider(ABC):
    """Interface for time-scaling table access."""

    @abstractmethod
    def get_config(self) -> TimeScalingConfig:
        """Get the current time-scaling table."""


class TimingService:
    """
    Scaling queries against whatever table the provider currently holds.

    The table may be hot-reloaded between calls; each call reads it once.
    """

    def __init__(self, config_provider: ITimingConfigProvider):
        self._config_provider = config_provider

    @property
    def config(self) -> TimeScalingConfig:
        return self._config_provider.get_config()

    def sla_target(self, priority: str, duration_minutes: float) -> int:
        return TimeScaler.sla_target(priority, duration_minutes, self.config)

    def at_risk_threshold(self, priority: str, duration_minutes: float) -> int:
        return TimeScaler.at_risk_threshold(priority, duration_minutes, self.config)

    def escalation_threshold(self, priority: str, level: str, duration_minutes: float) -> int:
        return TimeScaler.escalation_threshold(priority, level, duration_minutes, self.config)

    def sla_deadline(self, created_at: datetime, priority: str, duration_minutes: float) -> datetime:
        return TimeScaler.sla_deadline(created_at, priority, duration_minutes, self.config)

    def challenge_window(
        self,
        window_type: str,
        duration_minutes: float,
        remaining_minutes: Optional[float] = None
    ) -> int:
        return TimeScaler.challenge_window(window_type, duration_minutes, remaining_minutes, self.config)

    def challenge_interval(self, duration_minutes: float) -> Tuple[int, int]:
        return TimeScaler.challenge_interval(duration_minutes, self.config)

    def warning_level(self, remaining_minutes: float, sla_minutes: float) -> WarningLevel:
        return TimeScaler.warning_level(remaining_minutes, sla_minutes, self.config)

    def game_timing(self, duration_minutes: float, rounds: Optional[int] = None) -> GameTimingConfig:
        return TimeScaler.game_timing(duration_minutes, rounds, self.config)

    def escalation_level_for_age(
        self,
        priority: str,
        age_minutes: float,
        duration_minutes: float
    ) -> int:
        """
        Highest escalation level (0 for none, 1..3) an open item of this
        age has reached.
        """
        config = self.config
        reached = 0
        for index, level in enumerate(VALID_ESCALATION_LEVELS, start=1):
            threshold = TimeScaler.escalation_threshold(priority, EscalationLevel(level), duration_minutes, config)
            if age_minutes >= threshold:
                reached = index
        return reached

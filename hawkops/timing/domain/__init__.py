"""
Timing Domain Layer
===================

Pure, stateless scaling of session duration into SLA targets, escalation
thresholds, at-risk windows and challenge windows.
"""

from hawkops.timing.domain.value_objects import (
    DEFAULT_TIME_SCALING,
    EscalationRule,
    GameTimingConfig,
    RoundTiming,
    ScaleRange,
    TimeScaler,
    TimeScalingConfig,
    round_half_up,
    threshold_from_fraction,
)

__all__ = [
    "DEFAULT_TIME_SCALING",
    "EscalationRule",
    "GameTimingConfig",
    "RoundTiming",
    "ScaleRange",
    "TimeScaler",
    "TimeScalingConfig",
    "round_half_up",
    "threshold_from_fraction",
]

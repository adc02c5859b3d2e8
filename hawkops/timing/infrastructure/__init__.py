"""
Timing Infrastructure Layer
===========================
"""

from hawkops.timing.infrastructure.external import (
    StaticTimingConfigProvider,
    TimingConfigFileHandler,
    TimingConfigManager,
)

__all__ = [
    "StaticTimingConfigProvider",
    "TimingConfigFileHandler",
    "TimingConfigManager",
]

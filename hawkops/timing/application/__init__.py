"""
Timing Application Layer
========================
"""

from hawkops.timing.application.services import ITimingConfigProvider, TimingService

__all__ = ["ITimingConfigProvider", "TimingService"]

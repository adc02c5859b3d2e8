"""
Agent Infrastructure Layer
==========================
"""

from hawkops.agents.infrastructure.external import SimulationScheduler

__all__ = ["SimulationScheduler"]

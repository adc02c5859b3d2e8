"""
Agents Application Layer
========================
"""

from hawkops.agents.application.services import (
    SnapshotBuilder,
    Perceiver,
    DecisionEngine,
    ActStatus,
    ActionOutcome,
    ActionExecutor,
    Agent,
    AgentCycle,
)
from hawkops.agents.application.manager import AgentManager, AgentRoster, FULL_TEAM

__all__ = [
    "SnapshotBuilder",
    "Perceiver",
    "DecisionEngine",
    "ActStatus",
    "ActionOutcome",
    "ActionExecutor",
    "Agent",
    "AgentCycle",
    "AgentManager",
    "AgentRoster",
    "FULL_TEAM",
]

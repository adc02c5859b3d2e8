"""
Agents Domain Layer
===================
"""

from hawkops.agents.domain.entities import (
    AgentAction,
    AgentProfile,
    GameSnapshot,
    Perception,
    Decision,
)
from hawkops.agents.domain.rules import (
    Rule,
    RuleTable,
    CabVerdict,
    TECH_OPS_RULES,
    SERVICE_DESK_RULES,
    MANAGEMENT_RULES,
    ROLE_RULES,
    can_resolve_at_l1,
    classify_workload,
    build_recommendations,
    cab_review,
)

__all__ = [
    # Entities
    "AgentAction",
    "AgentProfile",
    "GameSnapshot",
    "Perception",
    "Decision",
    # Rules
    "Rule",
    "RuleTable",
    "CabVerdict",
    "TECH_OPS_RULES",
    "SERVICE_DESK_RULES",
    "MANAGEMENT_RULES",
    "ROLE_RULES",
    "can_resolve_at_l1",
    "classify_workload",
    "build_recommendations",
    "cab_review",
]

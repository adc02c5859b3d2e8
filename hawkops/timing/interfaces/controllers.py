"""
Timing Controllers (API Routes)
===============================

Read-only view of the scaled timing values for a session length.
"""

from fastapi import APIRouter, Depends, Path, Query

from hawkops.config import Priority, VALID_ESCALATION_LEVELS
from hawkops.shared.api import get_services

router = APIRouter(prefix="/timing", tags=["Time Scaling"])


@router.get(
    "/{duration_minutes}",
    summary="Scaled timing for a session length",
)
async def get_game_timing(
    duration_minutes: int = Path(..., ge=1, le=24 * 60, description="Session length in minutes"),
    rounds: int = Query(default=4, ge=1, le=20),
    services=Depends(get_services)
):
    """Every SLA target, threshold and challenge window for the given duration."""
    return services.timing.game_timing(duration_minutes, rounds).to_dict()


@router.get("/{duration_minutes}/sla/{priority}", summary="SLA target and thresholds for one priority")
async def get_priority_timing(
    priority: Priority,
    duration_minutes: int = Path(..., ge=1, le=24 * 60),
    services=Depends(get_services)
):
    timing = services.timing
    return {
        "priority": priority.value,
        "duration_minutes": duration_minutes,
        "sla_minutes": timing.sla_target(priority.value, duration_minutes),
        "at_risk_minutes": timing.at_risk_threshold(priority.value, duration_minutes),
        "escalation_minutes": {
            level: timing.escalation_threshold(priority.value, level, duration_minutes)
            for level in VALID_ESCALATION_LEVELS
        },
    }

"""
Agent Controllers (API Routes)
==============================

Operational endpoints for simulated roles: create a team's agents, run a
cycle by hand and read agent status.

Controllers are thin - they delegate to the agent manager.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from hawkops.config import AgentRole, Personality
from hawkops.core import EntityNotFound
from hawkops.shared.api import get_services
from hawkops.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/agents", tags=["Agents"])


class CreateAgentsRequest(BaseModel):
    """Roles to simulate for a team; all roles when omitted."""
    roles: Optional[List[AgentRole]] = Field(default=None)
    personality: Optional[Personality] = Field(default=None)


# ========== Route Handlers ==========

@router.post(
    "/games/{game_id}/teams/{team_id}",
    status_code=status.HTTP_201_CREATED,
    summary="Create simulated roles for a team",
)
async def create_team_agents(
    game_id: str,
    team_id: str,
    request: CreateAgentsRequest,
    services=Depends(get_services)
):
    team = await services.teams.get(team_id)
    if team is None or team.game_id != game_id:
        raise EntityNotFound("team", team_id)

    agents = services.agents.create_team_agents(
        game_id,
        team_id,
        roles=[r.value for r in request.roles] if request.roles else None,
        personality=request.personality.value if request.personality else None,
    )
    return {"agents": [agent.status() for agent in agents]}


@router.post("/teams/{team_id}/cycle", summary="Run one agent cycle for a team")
async def run_team_cycle(team_id: str, services=Depends(get_services)):
    """
    Run one perceive-decide-act cycle for each of the team's agents.

    Returns the decisions taken and whether each was applied.
    """
    if not services.agents.agents_for_team(team_id):
        raise EntityNotFound("agents for team", team_id)

    outcomes = await services.agents.run_team_cycle(team_id)
    logger.info("Manual team cycle", extra={"team_id": team_id, "outcomes": len(outcomes)})
    return {"team_id": team_id, "outcomes": [o.to_dict() for o in outcomes]}


@router.get("/status", summary="Status of every simulated role")
async def get_agent_status(services=Depends(get_services)):
    return services.agents.status()


@router.delete("/teams/{team_id}", summary="Stop simulating a team")
async def remove_team_agents(team_id: str, services=Depends(get_services)):
    return {"team_id": team_id, "removed": services.agents.remove_team(team_id)}

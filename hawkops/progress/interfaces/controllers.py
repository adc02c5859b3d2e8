"""
Progress Controllers (API Routes)
=================================

Challenges, achievement progress and score for one team.
"""

from fastapi import APIRouter, Depends

from hawkops.shared.api import get_services

router = APIRouter(prefix="/progress", tags=["Progress"])


@router.get("/games/{game_id}/teams/{team_id}/challenges", summary="Active challenges and challenge stats")
async def get_team_challenges(game_id: str, team_id: str, services=Depends(get_services)):
    active = await services.challenges.list_active(game_id, team_id)
    return {
        "game_id": game_id,
        "team_id": team_id,
        "active": [c.to_dict() for c in active],
        "stats": await services.challenges.team_stats(game_id, team_id),
    }


@router.get("/games/{game_id}/teams/{team_id}/achievements", summary="Progress towards every achievement")
async def get_team_achievements(game_id: str, team_id: str, services=Depends(get_services)):
    progress = await services.achievements.progress(game_id, team_id)
    return {
        "game_id": game_id,
        "team_id": team_id,
        "earned": sum(1 for p in progress if p.earned),
        "achievements": [p.to_dict() for p in progress],
    }


@router.get("/games/{game_id}/teams/{team_id}/score", summary="Team score")
async def get_team_score(game_id: str, team_id: str, services=Depends(get_services)):
    return {"game_id": game_id, "team_id": team_id, "score": await services.scores.total(game_id, team_id)}

"""
In-Process Work Item Store
==========================

Repository implementations backed by dictionaries, for simulation runs
without a database and for tests.

Entities are deep-copied on the way in and out, so callers never share
state with the store. Compare-and-set has no await between the check and
the write and is therefore atomic on the event loop.
"""

import copy
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from hawkops.config import PlanStatus, ReviewStatus
from hawkops.core import ConcurrentModification, RepositoryException
from hawkops.workitems.application.services import (
    IChangeRepository, IGameRepository, IIncidentRepository, IPlanRepository,
    IReviewRepository, ITeamRepository, IWorkItemRepository,
)
from hawkops.workitems.domain import (
    ChangeRequest, GameSession, ImplementationPlan, Incident, PostIncidentReview, Team,
)


def _status_value(status: Any) -> str:
    return getattr(status, "value", status)


class InMemoryGameRepository(IGameRepository):
    def __init__(self):
        self._games: Dict[str, GameSession] = {}

    async def get(self, game_id: str) -> Optional[GameSession]:
        game = self._games.get(game_id)
        return copy.deepcopy(game) if game else None

    async def add(self, game: GameSession) -> GameSession:
        self._games[game.id] = copy.deepcopy(game)
        return game

    async def list_active(self) -> List[GameSession]:
        return [copy.deepcopy(g) for g in self._games.values() if g.status == "active"]


class InMemoryTeamRepository(ITeamRepository):
    def __init__(self):
        self._teams: Dict[str, Team] = {}

    async def get(self, team_id: str) -> Optional[Team]:
        team = self._teams.get(team_id)
        return copy.deepcopy(team) if team else None

    async def add(self, team: Team) -> Team:
        self._teams[team.id] = copy.deepcopy(team)
        return team

    async def list_for_game(self, game_id: str) -> List[Team]:
        return [copy.deepcopy(t) for t in self._teams.values() if t.game_id == game_id]


class InMemoryWorkItemRepository(IWorkItemRepository):
    """Shared dictionary-backed behaviour for every work item kind."""

    entity_type = "work_item"

    def __init__(self):
        self._items: Dict[str, Any] = {}
        self._sequences: Dict[str, int] = defaultdict(int)

    async def get(self, item_id: str) -> Optional[Any]:
        item = self._items.get(item_id)
        return copy.deepcopy(item) if item is not None else None

    async def add(self, item: Any) -> Any:
        if item.id in self._items:
            raise RepositoryException(f"{self.entity_type} {item.id} already exists")
        self._items[item.id] = copy.deepcopy(item)
        return item

    async def compare_and_set(self, item: Any, expected_status: str) -> Any:
        stored = self._items.get(item.id)
        if stored is None or _status_value(stored.status) != _status_value(expected_status):
            raise ConcurrentModification(self.entity_type, item.id, _status_value(expected_status))
        self._items[item.id] = copy.deepcopy(item)
        return item

    def _select(self, predicate) -> List[Any]:
        items = [i for i in self._items.values() if predicate(i)]
        items.sort(key=lambda i: i.created_at)
        return [copy.deepcopy(i) for i in items]

    async def list_for_team(
        self,
        game_id: str,
        team_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Any]:
        wanted = {_status_value(s) for s in statuses} if statuses is not None else None
        return self._select(
            lambda i: i.game_id == game_id and i.team_id == team_id
            and (wanted is None or _status_value(i.status) in wanted)
        )

    async def list_for_game(
        self,
        game_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Any]:
        wanted = {_status_value(s) for s in statuses} if statuses is not None else None
        return self._select(
            lambda i: i.game_id == game_id and (wanted is None or _status_value(i.status) in wanted)
        )

    async def next_sequence(self, game_id: str) -> int:
        self._sequences[game_id] += 1
        return self._sequences[game_id]

    def __len__(self) -> int:
        return len(self._items)


class InMemoryIncidentRepository(InMemoryWorkItemRepository, IIncidentRepository):
    entity_type = "incident"

    async def find_by_source_change(self, change_id: str) -> Optional[Incident]:
        matches = self._select(lambda i: i.source_change_id == change_id)
        return matches[0] if matches else None


class InMemoryPlanRepository(InMemoryWorkItemRepository, IPlanRepository):
    entity_type = "implementation_plan"

    async def get_active_for_incident(self, incident_id: str) -> Optional[ImplementationPlan]:
        matches = self._select(lambda p: p.incident_id == incident_id and p.is_active)
        return matches[-1] if matches else None

    async def list_for_incident(self, incident_id: str) -> List[ImplementationPlan]:
        return self._select(lambda p: p.incident_id == incident_id)

    async def list_reviewing_since(self, cutoff: datetime) -> List[ImplementationPlan]:
        return self._select(
            lambda p: p.status == PlanStatus.AI_REVIEWING
            and p.review_requested_at is not None
            and p.review_requested_at <= cutoff
        )


class InMemoryChangeRepository(InMemoryWorkItemRepository, IChangeRepository):
    entity_type = "change_request"

    async def get_for_plan(self, plan_id: str) -> Optional[ChangeRequest]:
        matches = self._select(lambda c: c.related_plan_id == plan_id)
        return matches[-1] if matches else None


class InMemoryReviewRepository(InMemoryWorkItemRepository, IReviewRepository):
    entity_type = "post_incident_review"

    async def get_for_incident(self, incident_id: str) -> Optional[PostIncidentReview]:
        matches = self._select(lambda r: r.incident_id == incident_id)
        return matches[0] if matches else None

    async def list_submitted_since(self, cutoff: datetime) -> List[PostIncidentReview]:
        return self._select(
            lambda r: r.status == ReviewStatus.SUBMITTED
            and r.submitted_at is not None
            and r.submitted_at <= cutoff
        )

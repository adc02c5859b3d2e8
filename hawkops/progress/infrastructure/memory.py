"""
In-Process Progress Store
=========================

Dictionary-backed challenge, achievement and ledger storage for simulation
runs without a database and for tests.
"""

import copy
from typing import Dict, List, Optional, Tuple

from hawkops.core import ConcurrentModification, RepositoryException
from hawkops.progress.application.services import (
    IAchievementRepository, IChallengeRepository, IScoreLedger,
)
from hawkops.progress.domain import AchievementAward, Challenge, ScoreEntry


class InMemoryChallengeRepository(IChallengeRepository):
    def __init__(self):
        self._challenges: Dict[str, Challenge] = {}

    async def get(self, challenge_id: str) -> Optional[Challenge]:
        challenge = self._challenges.get(challenge_id)
        return copy.deepcopy(challenge) if challenge else None

    async def add(self, challenge: Challenge) -> Challenge:
        if challenge.id in self._challenges:
            raise RepositoryException(f"challenge {challenge.id} already exists")
        self._challenges[challenge.id] = copy.deepcopy(challenge)
        return challenge

    async def compare_and_set(self, challenge: Challenge, expected_status: str) -> Challenge:
        expected = getattr(expected_status, "value", expected_status)
        stored = self._challenges.get(challenge.id)
        if stored is None or stored.status.value != expected:
            raise ConcurrentModification("challenge", challenge.id, expected)
        self._challenges[challenge.id] = copy.deepcopy(challenge)
        return challenge

    async def list_for_game(self, game_id: str, status: Optional[str] = None) -> List[Challenge]:
        wanted = getattr(status, "value", status)
        items = [
            c for c in self._challenges.values()
            if c.game_id == game_id and (wanted is None or c.status.value == wanted)
        ]
        items.sort(key=lambda c: c.start_time, reverse=True)
        return [copy.deepcopy(c) for c in items]


class InMemoryAchievementRepository(IAchievementRepository):
    def __init__(self):
        self._awards: Dict[Tuple[str, str, str], AchievementAward] = {}

    async def add(self, award: AchievementAward) -> bool:
        key = (award.team_id, award.game_id, award.achievement_code)
        if key in self._awards:
            return False
        self._awards[key] = copy.deepcopy(award)
        return True

    async def list_for_team(self, game_id: str, team_id: str) -> List[AchievementAward]:
        items = [a for a in self._awards.values() if a.game_id == game_id and a.team_id == team_id]
        items.sort(key=lambda a: a.earned_at)
        return [copy.deepcopy(a) for a in items]

    def __len__(self) -> int:
        return len(self._awards)


class InMemoryScoreLedger(IScoreLedger):
    def __init__(self):
        self._entries: List[ScoreEntry] = []
        self._keys = set()

    async def record(self, entry: ScoreEntry) -> bool:
        key = (entry.game_id, entry.idempotency_key)
        if key in self._keys:
            return False
        self._keys.add(key)
        self._entries.append(entry)
        return True

    async def total(self, game_id: str, team_id: str) -> int:
        return sum(e.points for e in self._entries if e.game_id == game_id and e.team_id == team_id)

    async def list_for_team(self, game_id: str, team_id: str) -> List[ScoreEntry]:
        return [e for e in self._entries if e.game_id == game_id and e.team_id == team_id]

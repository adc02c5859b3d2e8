"""
Shared fixtures: a pinned clock, a scriptable random source, a scripted
content service and an in-process service graph built from them.
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from hawkops.config import Settings
from hawkops.core import CollaboratorUnavailable
from hawkops.wiring import build_in_memory_services, build_shared_components
from hawkops.workitems.application import IContentService, PlanDraft, PlanEvaluation, ReviewGrade
from hawkops.workitems.domain import GameSession, Team

START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now += timedelta(minutes=minutes, seconds=seconds)
        return self.now


class ScriptedRandom:
    """
    Random source whose ``random()`` replays ``queued`` values first.

    ``choice`` is delegated to a seeded generator so challenge selection
    never consumes scripted rolls.
    """

    def __init__(self, seed: int = 7):
        self._fallback = random.Random(seed)
        self.queued: List[float] = []

    def random(self) -> float:
        if self.queued:
            return self.queued.pop(0)
        return self._fallback.random()

    def choice(self, seq):
        return self._fallback.choice(seq)


class FakeContentService(IContentService):
    """Content service with scripted answers, failures and delays."""

    def __init__(self):
        self.decision = "approve"
        self.score = 85
        self.review_score = 80
        self.fail = False
        self.delay_seconds = 0.0
        self.evaluated: List[Dict[str, Any]] = []
        self.graded: List[Dict[str, Any]] = []

    async def _behave(self) -> None:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail:
            raise CollaboratorUnavailable("content", "scripted failure")

    async def generate_plan(self, incident_summary: Dict[str, Any]) -> PlanDraft:
        await self._behave()
        return PlanDraft(
            title=f"Fix {incident_summary['incident_number']}",
            description=f"Remediate {incident_summary['title']}",
            root_cause_analysis="Configuration drift after the last deploy window",
            implementation_steps=[
                {"order": 1, "title": "Isolate", "description": "Drain traffic from the failing node"},
                {"order": 2, "title": "Repair", "description": "Re-apply the known good configuration"},
            ],
            risk_level="medium",
            rollback_plan="Restore the previous configuration snapshot on every node",
            testing_plan="Run the smoke test suite against the service",
        )

    async def evaluate_plan(self, plan_snapshot: Dict[str, Any], incident_context: Dict[str, Any]) -> PlanEvaluation:
        await self._behave()
        self.evaluated.append(plan_snapshot)
        return PlanEvaluation(score=self.score, decision=self.decision, feedback="Scripted evaluation")

    async def grade_review(self, review_snapshot: Dict[str, Any]) -> ReviewGrade:
        await self._behave()
        self.graded.append(review_snapshot)
        return ReviewGrade(score=self.review_score, feedback="Scripted grade")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return ScriptedRandom()


@pytest.fixture
def content():
    return FakeContentService()


@pytest.fixture
def settings():
    return Settings(review_timeout_seconds=0.2, agent_max_cycle_retries=2, event_webhook_url=None)


@pytest.fixture
def shared(settings, content, clock, rng):
    return build_shared_components(settings=settings, content=content, clock=clock, rng=rng)


@pytest.fixture
def services(shared):
    return build_in_memory_services(shared)


@pytest.fixture
def seed(services, clock):
    """Async helper storing a game and its teams."""

    async def _seed(duration_minutes: int = 75, team_ids=("team-a",), game_id: str = "game-1") -> GameSession:
        game = GameSession(id=game_id, name="Exercise", duration_minutes=duration_minutes, started_at=clock())
        await services.games.add(game)
        for team_id in team_ids:
            await services.teams.add(Team(id=team_id, game_id=game_id, name=team_id.title()))
        return game

    return _seed


@pytest.fixture
def run_grading(services):
    """Async helper that handles every queued grading job."""

    async def _run() -> None:
        queue = services.grading_queue
        await queue.start()
        try:
            await queue.join()
        finally:
            await queue.stop()

    return _run

"""
Database store tests against a throwaway SQLite file (aiosqlite driver).
"""

import asyncio

import pytest

from hawkops.config import ChallengeStatus, IncidentStatus, PlanStatus
from hawkops.core import ConcurrentModification, EventType
from hawkops.infrastructure.database import close_database, create_tables, init_database
from hawkops.progress.domain import CHALLENGE_TEMPLATES
from hawkops.wiring import SqlServiceScope
from hawkops.workitems.domain import GameSession, Team

from conftest import START


async def _open(tmp_path, shared) -> SqlServiceScope:
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'hawkops.db'}")
    await create_tables()
    scope = SqlServiceScope(shared)
    async with scope() as services:
        await services.games.add(GameSession(id="game-1", name="Exercise", duration_minutes=75, started_at=START))
        await services.teams.add(Team(id="team-a", game_id="game-1", name="Team A"))
    return scope


def test_work_items_survive_units_of_work(shared, tmp_path):
    async def main():
        scope = await _open(tmp_path, shared)
        try:
            async with scope() as services:
                first = await services.incident_service.create_incident(
                    "game-1", "team-a", "Checkout latency", priority="high", affected_services=["checkout"]
                )
                await services.incident_service.create_incident("game-1", "team-a", "Login errors")

            async with scope() as services:
                numbers = [i.incident_number for i in await services.incidents.list_for_game("game-1")]
                assert numbers == ["INC00001", "INC00002"]
                await services.incident_service.start_work(first.id)

            async with scope() as services:
                stored = await services.incidents.get(first.id)
                assert stored.status == IncidentStatus.IN_PROGRESS
                assert stored.started_at == START
                assert stored.affected_services == ["checkout"]
                started = await services.event_log.list_for_team("game-1", "team-a", [EventType.INCIDENT_STARTED])
                assert [e.entity_id for e in started] == [first.id]
        finally:
            await close_database()

    asyncio.run(main())


def test_status_guard_refuses_stale_write(shared, tmp_path):
    async def main():
        scope = await _open(tmp_path, shared)
        try:
            async with scope() as services:
                incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")
                stale = await services.incidents.get(incident.id)
                await services.incident_service.start_work(incident.id)

                with pytest.raises(ConcurrentModification):
                    await services.incidents.compare_and_set(stale, IncidentStatus.OPEN.value)
        finally:
            await close_database()

    asyncio.run(main())


def test_grading_is_queued_after_commit(shared, tmp_path):
    async def main():
        scope = await _open(tmp_path, shared)
        try:
            async with scope() as services:
                incident = await services.incident_service.create_incident("game-1", "team-a", "Cache stampede")
                plan = await services.plan_service.create_plan("game-1", "team-a", incident_id=incident.id)
                await services.plan_service.submit_for_review(plan.id)
                assert scope.grading_queue.pending == 0

            assert scope.grading_queue.pending == 1
            await scope.grading_queue.start()
            await scope.grading_queue.join()
            await scope.grading_queue.stop()

            async with scope() as services:
                graded = await services.plans.get(plan.id)
                assert graded.status == PlanStatus.AI_APPROVED
                assert graded.ai_score == 85
                assert [r.ai_decision for r in graded.revisions] == ["approve"]
                assert graded.implementation_steps[0]["title"] == "Isolate"
        finally:
            await close_database()

    asyncio.run(main())


def test_failed_unit_of_work_leaves_nothing_behind(shared, tmp_path):
    async def main():
        scope = await _open(tmp_path, shared)
        try:
            with pytest.raises(RuntimeError):
                async with scope() as services:
                    incident = await services.incident_service.create_incident("game-1", "team-a", "Doomed")
                    plan = await services.plan_service.create_plan("game-1", "team-a", incident_id=incident.id)
                    await services.plan_service.submit_for_review(plan.id)
                    raise RuntimeError("request aborted")

            assert scope.grading_queue.pending == 0
            async with scope() as services:
                assert await services.incidents.list_for_game("game-1") == []
                assert await services.plans.list_for_game("game-1") == []
        finally:
            await close_database()

    asyncio.run(main())


def test_score_ledger_keys_are_unique(shared, tmp_path):
    async def main():
        scope = await _open(tmp_path, shared)
        try:
            async with scope() as services:
                assert await services.scores.award("game-1", "team-a", 120, "Bonus", idempotency_key="bonus:1")
                assert await services.scores.award("game-1", "team-a", 120, "Bonus", idempotency_key="bonus:1") is None

            async with scope() as services:
                assert await services.scores.total("game-1", "team-a") == 120
                assert len(await services.scores.history("game-1", "team-a")) == 1
        finally:
            await close_database()

    asyncio.run(main())


def test_challenges_and_awards_round_trip(shared, tmp_path, clock):
    async def main():
        scope = await _open(tmp_path, shared)
        try:
            async with scope() as services:
                challenge = await services.challenges.create_challenge(
                    "game-1", CHALLENGE_TEMPLATES[0], assigned_team_id="team-a"
                )
                incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")
                clock.advance(minutes=1)
                await services.incident_service.start_work(incident.id)

            async with scope() as services:
                await services.incident_service.resolve(incident.id, "Cleaned up")

            async with scope() as services:
                stored = await services.challenges.get(challenge.id)
                assert stored.status == ChallengeStatus.ACTIVE
                assert stored.current_value == 1
                assert stored.window_minutes == 23

                earned = [a.achievement_code for a in await services.achievements.earned("game-1", "team-a")]
                assert "first_responder" in earned
        finally:
            await close_database()

    asyncio.run(main())

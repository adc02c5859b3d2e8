import asyncio

import pytest

from hawkops.agents.infrastructure.external import SimulationScheduler
from hawkops.config import PlanStatus
from hawkops.wiring import InMemoryServiceScope


def test_run_once_flags_breaches_and_escalates(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident(
            "game-1", "team-a", "Payments database crash", priority="critical"
        )
        clock.advance(minutes=16)

        await SimulationScheduler(InMemoryServiceScope(services)).run_once()

        stored = await services.incident_service.get(incident.id)
        assert stored.sla_breached
        assert stored.escalation_level >= 1

    asyncio.run(main())


def test_failing_game_is_logged_not_raised(services, seed):
    async def main():
        await seed()
        await seed(game_id="game-2", team_ids=("team-b",))
        scheduler = SimulationScheduler(InMemoryServiceScope(services))
        visited = []

        async def job(scoped, game_id):
            if game_id == "game-1":
                raise RuntimeError("corrupt game")
            visited.append(game_id)

        await scheduler._for_each_game("test_job", job)

        assert visited == ["game-2"]

    asyncio.run(main())


def test_sweep_releases_plans_stuck_in_grading(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Cache stampede")
        plan = await services.plan_service.create_plan("game-1", "team-a", incident_id=incident.id)
        await services.plan_service.submit_for_review(plan.id)
        scheduler = SimulationScheduler(InMemoryServiceScope(services), stuck_review_after_seconds=300)

        clock.advance(minutes=4)
        await scheduler.sweep_job()
        assert (await services.plans.get(plan.id)).status == PlanStatus.AI_REVIEWING

        clock.advance(minutes=2)
        await scheduler.sweep_job()
        assert (await services.plans.get(plan.id)).status == PlanStatus.AI_NEEDS_REVISION

    asyncio.run(main())


def test_sweep_raises_incident_lost_by_a_failed_change(services, seed, rng):
    async def main():
        await seed()
        change = await services.change_service.create_change(
            "game-1", "team-a", "Schema migration", change_type="emergency", risk_level="high",
        )
        create_incident = services.incident_service.create_incident
        broken = []

        async def flaky_create_incident(*args, **kwargs):
            if not broken:
                broken.append(kwargs.get("source_change_id"))
                raise RuntimeError("incident store unavailable")
            return await create_incident(*args, **kwargs)

        services.incident_service.create_incident = flaky_create_incident
        rng.queued = [0.0]
        with pytest.raises(RuntimeError):
            await services.change_service.implement(change.id)

        await SimulationScheduler(InMemoryServiceScope(services)).sweep_job()

        incident = await services.incidents.find_by_source_change(change.id)
        assert incident is not None
        assert broken == [change.id]

    asyncio.run(main())


def test_start_and_stop(services):
    async def main():
        scheduler = SimulationScheduler(InMemoryServiceScope(services), agent_interval_seconds=3600)

        await scheduler.start()
        await scheduler.start()
        assert scheduler.is_running

        await scheduler.stop()
        assert not scheduler.is_running

    asyncio.run(main())

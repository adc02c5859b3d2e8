import asyncio

import pytest

from hawkops.config import IncidentStatus
from hawkops.core import ConcurrentModification, EventType, InvalidTransition
from hawkops.shared.infrastructure import KeyedLockRegistry
from hawkops.workitems.application import GradingQueue
from hawkops.workitems.domain import IncidentStateMachine, TransitionContext


def _split(results):
    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    return succeeded, failed


def test_racing_transitions_apply_once(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")

        results = await asyncio.gather(
            services.incident_service.start_work(incident.id, actor="desk"),
            services.incident_service.start_work(incident.id, actor="tech"),
            return_exceptions=True,
        )

        succeeded, failed = _split(results)
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InvalidTransition)
        started = await services.event_log.list_for_team("game-1", "team-a", [EventType.INCIDENT_STARTED])
        assert len(started) == 1

    asyncio.run(main())


def test_racing_submissions_queue_one_grading_job(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Cache stampede")
        plan = await services.plan_service.create_plan("game-1", "team-a", incident_id=incident.id)

        results = await asyncio.gather(
            services.plan_service.submit_for_review(plan.id),
            services.plan_service.submit_for_review(plan.id),
            return_exceptions=True,
        )

        succeeded, failed = _split(results)
        assert len(succeeded) == 1
        assert isinstance(failed[0], InvalidTransition)
        assert services.grading_queue.pending == 1

    asyncio.run(main())


def test_stale_write_is_refused(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")
        stale = await services.incidents.get(incident.id)
        await services.incident_service.start_work(incident.id)

        stale.resolution = "Written from an old copy"
        with pytest.raises(ConcurrentModification) as exc:
            await services.incidents.compare_and_set(stale, IncidentStatus.OPEN.value)

        assert exc.value.expected_status == "open"
        assert (await services.incidents.get(incident.id)).resolution is None

    asyncio.run(main())


def test_guard_rejects_moved_entity(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")

        with pytest.raises(ConcurrentModification):
            await services.runner.apply(
                IncidentStateMachine, services.incidents, incident.id, IncidentStatus.IN_PROGRESS.value,
                TransitionContext(), guard=lambda i: i.escalation_level == 2,
            )

        assert (await services.incidents.get(incident.id)).status == IncidentStatus.OPEN

    asyncio.run(main())


def test_concurrent_creation_numbers_are_unique(services, seed):
    async def main():
        await seed()

        created = await asyncio.gather(*(
            services.incident_service.create_incident("game-1", "team-a", f"Alert {n}") for n in range(10)
        ))

        numbers = sorted(i.incident_number for i in created)
        assert numbers == [f"INC{n:05d}" for n in range(1, 11)]

    asyncio.run(main())


def test_duplicate_awards_are_counted_once(services, seed):
    async def main():
        await seed()

        results = await asyncio.gather(*(
            services.scores.award("game-1", "team-a", 40, "Bonus", idempotency_key="bonus:1") for _ in range(5)
        ))

        assert len([r for r in results if r is not None]) == 1
        assert await services.scores.total("game-1", "team-a") == 40

    asyncio.run(main())


def test_overlapping_team_cycles_run_one_at_a_time(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident(
            "game-1", "team-a", "Payments database crash", priority="critical"
        )
        services.agents.create_team_agents("game-1", "team-a")

        await asyncio.gather(
            services.agents.run_team_cycle("team-a"),
            services.agents.run_team_cycle("team-a"),
        )

        stored = await services.incident_service.get(incident.id)
        assert stored.escalation_level == 1
        started = await services.event_log.list_for_team("game-1", "team-a", [EventType.INCIDENT_STARTED])
        assert len(started) == 1

    asyncio.run(main())


def test_lock_registry_serialises_and_cleans_up():
    async def main():
        locks = KeyedLockRegistry("test")
        order = []

        async def hold(name, delay):
            async with locks.hold("incident", "inc-1"):
                order.append(f"{name}:in")
                await asyncio.sleep(delay)
                order.append(f"{name}:out")

        first = asyncio.create_task(hold("a", 0.02))
        await asyncio.sleep(0)
        assert locks.is_locked("incident", "inc-1")
        await asyncio.gather(first, hold("b", 0))

        assert order == ["a:in", "a:out", "b:in", "b:out"]
        assert len(locks) == 0

    asyncio.run(main())


def test_grading_queue_bounds_parallel_jobs():
    async def main():
        running = 0
        peak = 0
        handled = []

        async def process(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            handled.append(job)

        queue = GradingQueue(process, workers=2)
        for n in range(6):
            queue.enqueue(n)
        await queue.start()
        await queue.join()
        await queue.stop()

        assert sorted(handled) == list(range(6))
        assert peak == 2
        assert not queue.is_running

    asyncio.run(main())


def test_failing_job_does_not_stop_the_worker():
    async def main():
        handled = []

        async def process(job):
            if job == "bad":
                raise RuntimeError("grading exploded")
            handled.append(job)

        queue = GradingQueue(process)
        queue.enqueue("bad")
        queue.enqueue("good")
        await queue.start()
        await queue.join()
        await queue.stop()

        assert handled == ["good"]

    asyncio.run(main())

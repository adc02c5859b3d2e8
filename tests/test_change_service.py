import asyncio
from datetime import timedelta

import pytest

from hawkops.config import ChangeStatus, IncidentStatus, PlanStatus, Priority
from hawkops.core import EventType, InvalidTransition
from hawkops.workitems.domain import SpawnFailureIncident, SyncRelatedPlan


async def _approved_plan(services, seed, run_grading):
    await seed()
    incident = await services.incident_service.create_incident("game-1", "team-a", "Broken deploy", priority="high")
    plan = await services.plan_service.create_plan("game-1", "team-a", incident_id=incident.id)
    await services.plan_service.submit_for_review(plan.id)
    await run_grading()
    return incident, await services.plan_service.get(plan.id)


async def _ledger_entry(services, team_id, key):
    for entry in await services.scores.history("game-1", team_id):
        if entry.idempotency_key == key:
            return entry
    return None


def test_change_from_approved_plan(services, seed, run_grading):
    async def main():
        incident, plan = await _approved_plan(services, seed, run_grading)
        assert plan.status == PlanStatus.AI_APPROVED

        change = await services.change_service.create_from_plan(plan.id, actor="tech")

        assert change.status == ChangeStatus.PENDING
        assert change.related_plan_id == plan.id
        assert change.related_incident_id == incident.id
        assert change.rollback_plan == plan.rollback_plan
        assert "Isolate" in change.implementation_plan

        implementing = await services.plan_service.get(plan.id)
        assert implementing.status == PlanStatus.IMPLEMENTING
        assert implementing.related_change_id == change.id

        replay = await services.change_service.create_from_plan(plan.id, actor="tech")
        assert replay.id == change.id
        assert len(await services.changes.list_for_game("game-1")) == 1

    asyncio.run(main())


def test_change_requires_an_approved_plan(services, seed):
    async def main():
        await seed()
        plan = await services.plan_service.create_plan("game-1", "team-a")

        with pytest.raises(InvalidTransition):
            await services.change_service.create_from_plan(plan.id)
        assert await services.changes.list_for_game("game-1") == []

    asyncio.run(main())


def test_emergency_change_skips_review(services, seed):
    async def main():
        await seed()
        emergency = await services.change_service.create_change(
            "game-1", "team-a", "Hotfix auth", change_type="emergency", risk_level="high"
        )
        normal = await services.change_service.create_change("game-1", "team-a", "Rotate certs")

        assert emergency.status == ChangeStatus.APPROVED
        assert normal.status == ChangeStatus.PENDING
        assert normal.change_number == "CHG00002"

    asyncio.run(main())


def test_successful_implementation_completes_plan_and_scores(services, seed, rng, run_grading):
    async def main():
        _, plan = await _approved_plan(services, seed, run_grading)
        change = await services.change_service.create_from_plan(plan.id)
        await services.change_service.review(change.id, approve=True, notes="Looks safe")

        rng.queued = [0.99]
        done = await services.change_service.implement(change.id)

        assert done.status == ChangeStatus.COMPLETED
        assert (await services.plan_service.get(plan.id)).status == PlanStatus.COMPLETED
        entry = await _ledger_entry(services, "team-a", f"change:{change.id}")
        assert entry.points == 100

    asyncio.run(main())


def test_failure_without_rollback_spawns_one_incident(services, seed, rng, clock):
    async def main():
        await seed()
        change = await services.change_service.create_change(
            "game-1", "team-a", "Schema migration", change_type="emergency", risk_level="high",
            affected_services=["orders-db"], implementation_plan="Run migration 42",
        )

        rng.queued = [0.0]
        failed = await services.change_service.implement(change.id)
        assert failed.status == ChangeStatus.FAILED

        incident = await services.incidents.find_by_source_change(change.id)
        assert incident.title == "Failed Change: Schema migration"
        assert incident.priority == Priority.HIGH
        assert incident.status == IncidentStatus.OPEN
        assert incident.cost_per_minute == 75
        assert incident.sla_deadline - incident.created_at == timedelta(minutes=60)
        assert incident.affected_services == ["orders-db"]

        again = await services.change_service.spawn_failure_incident(SpawnFailureIncident(change.id))
        assert again.id == incident.id
        spawned = [i for i in await services.incidents.list_for_game("game-1") if i.source_change_id == change.id]
        assert len(spawned) == 1

        assert await _ledger_entry(services, "team-a", f"change:{change.id}") is not None

    asyncio.run(main())


def test_rolled_back_change_spawns_nothing(services, seed, rng):
    async def main():
        await seed()
        change = await services.change_service.create_change(
            "game-1", "team-a", "Kernel upgrade", change_type="emergency", risk_level="critical",
            rollback_plan="Boot previous kernel",
        )

        rng.queued = [0.0]
        outcome = await services.change_service.implement(change.id)

        assert outcome.status == ChangeStatus.ROLLED_BACK
        assert await services.incidents.find_by_source_change(change.id) is None
        rolled_back = await services.event_log.list_for_team("game-1", "team-a", [EventType.CHANGE_ROLLED_BACK])
        assert rolled_back[0].payload["points"] == -150

    asyncio.run(main())


def test_rejected_change_sends_plan_back_for_revision(services, seed, run_grading):
    async def main():
        _, plan = await _approved_plan(services, seed, run_grading)
        change = await services.change_service.create_from_plan(plan.id)

        rejected = await services.change_service.review(change.id, approve=False, notes="Missing test evidence")

        assert rejected.status == ChangeStatus.REJECTED
        assert rejected.approval_notes == "Missing test evidence"
        assert (await services.plan_service.get(plan.id)).status == PlanStatus.AI_NEEDS_REVISION

    asyncio.run(main())


def test_pending_change_cannot_be_implemented(services, seed):
    async def main():
        await seed()
        change = await services.change_service.create_change("game-1", "team-a", "Rotate certs")

        with pytest.raises(InvalidTransition):
            await services.change_service.implement(change.id)
        assert (await services.change_service.get(change.id)).status == ChangeStatus.PENDING

    asyncio.run(main())


def test_failed_follow_up_is_repaired_on_reconcile(services, seed, rng):
    async def main():
        await seed()
        change = await services.change_service.create_change(
            "game-1", "team-a", "Schema migration", change_type="emergency", risk_level="high",
        )
        incident_service = services.incident_service
        create_incident = incident_service.create_incident
        calls = []

        async def flaky_create_incident(*args, **kwargs):
            calls.append(kwargs.get("source_change_id"))
            if len(calls) == 1:
                raise RuntimeError("incident store unavailable")
            return await create_incident(*args, **kwargs)

        incident_service.create_incident = flaky_create_incident

        rng.queued = [0.0]
        with pytest.raises(RuntimeError):
            await services.change_service.implement(change.id)

        assert (await services.change_service.get(change.id)).status == ChangeStatus.FAILED
        assert await services.incidents.find_by_source_change(change.id) is None
        with pytest.raises(InvalidTransition):
            await services.change_service.implement(change.id)

        repaired = await services.change_service.reconcile_outcomes("game-1")

        assert [c.id for c in repaired] == [change.id]
        incident = await services.incidents.find_by_source_change(change.id)
        assert incident.title == "Failed Change: Schema migration"
        assert await services.change_service.reconcile_outcomes("game-1") == []
        assert calls == [change.id, change.id]

    asyncio.run(main())


def test_lost_plan_sync_is_reconciled(services, seed, rng, run_grading):
    async def main():
        _, plan = await _approved_plan(services, seed, run_grading)
        change = await services.change_service.create_from_plan(plan.id)
        await services.change_service.review(change.id, approve=True)

        async def broken_sync(effect):
            raise RuntimeError("plan store unavailable")

        services.runner.on_effect(SyncRelatedPlan, broken_sync)

        rng.queued = [0.99]
        with pytest.raises(RuntimeError):
            await services.change_service.implement(change.id)

        assert (await services.change_service.get(change.id)).status == ChangeStatus.COMPLETED
        assert (await services.plan_service.get(plan.id)).status == PlanStatus.IMPLEMENTING

        repaired = await services.change_service.reconcile_outcomes("game-1")

        assert [c.id for c in repaired] == [change.id]
        assert (await services.plan_service.get(plan.id)).status == PlanStatus.COMPLETED

    asyncio.run(main())


def test_change_store_failure_leaves_plan_approved(services, seed, run_grading):
    async def main():
        _, plan = await _approved_plan(services, seed, run_grading)
        changes = services.changes
        add = changes.add
        attempts = []

        async def flaky_add(item):
            attempts.append(item.id)
            if len(attempts) == 1:
                raise RuntimeError("change store unavailable")
            return await add(item)

        changes.add = flaky_add

        with pytest.raises(RuntimeError):
            await services.change_service.create_from_plan(plan.id)

        stalled = await services.plan_service.get(plan.id)
        assert stalled.status == PlanStatus.AI_APPROVED
        assert stalled.related_change_id is None

        change = await services.change_service.create_from_plan(plan.id)

        implementing = await services.plan_service.get(plan.id)
        assert implementing.status == PlanStatus.IMPLEMENTING
        assert implementing.related_change_id == change.id
        assert [c.id for c in await changes.list_for_game("game-1")] == [change.id]

    asyncio.run(main())


def test_change_raised_before_plan_moved_is_adopted_on_replay(services, seed, run_grading):
    async def main():
        _, plan = await _approved_plan(services, seed, run_grading)
        plan_service = services.plan_service
        mark_implementing = plan_service.mark_implementing
        attempts = []

        async def flaky_mark_implementing(plan_id, change_id, actor=None):
            attempts.append(change_id)
            if len(attempts) == 1:
                raise RuntimeError("plan store unavailable")
            return await mark_implementing(plan_id, change_id, actor=actor)

        plan_service.mark_implementing = flaky_mark_implementing

        with pytest.raises(RuntimeError):
            await services.change_service.create_from_plan(plan.id)
        orphan = await services.changes.get_for_plan(plan.id)
        assert orphan.status == ChangeStatus.PENDING

        change = await services.change_service.create_from_plan(plan.id)

        assert change.id == orphan.id
        assert (await plan_service.get(plan.id)).related_change_id == orphan.id
        assert len(await services.changes.list_for_game("game-1")) == 1

    asyncio.run(main())

import asyncio
from datetime import timedelta

import pytest

from hawkops.config import DEFAULT_COST_PER_MINUTE, IncidentStatus, Priority, ReviewStatus
from hawkops.core import EntityNotFound, EventType, InvalidTransition

from conftest import START


def test_create_incident_scales_sla_and_numbers_sequentially(services, seed):
    async def main():
        await seed()
        first = await services.incident_service.create_incident(
            "game-1", "team-a", "Checkout latency", priority="high"
        )
        second = await services.incident_service.create_incident("game-1", "team-a", "Login errors")

        assert first.incident_number == "INC00001"
        assert second.incident_number == "INC00002"
        assert first.sla_deadline == START + timedelta(minutes=26)
        assert first.cost_per_minute == 100
        assert second.priority == Priority.MEDIUM
        assert second.sla_deadline == START + timedelta(minutes=41)

        created = await services.event_log.list_for_team("game-1", "team-a", [EventType.INCIDENT_CREATED])
        assert [e.entity_id for e in created] == [first.id, second.id]

    asyncio.run(main())


def test_unknown_game_is_rejected(services):
    async def main():
        with pytest.raises(EntityNotFound):
            await services.incident_service.create_incident("missing", "team-a", "Anything")

    asyncio.run(main())


def test_lifecycle_opens_a_review_on_resolve(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full", priority="high")

        clock.advance(minutes=1)
        started = await services.incident_service.start_work(incident.id, actor="tester")
        assert started.status == IncidentStatus.IN_PROGRESS
        assert started.response_minutes() == 1

        clock.advance(minutes=5)
        resolved = await services.incident_service.resolve(incident.id, "Rotated logs")
        assert resolved.resolution == "Rotated logs"
        [event] = await services.event_log.list_for_team("game-1", "team-a", [EventType.INCIDENT_RESOLVED])
        assert event.payload["cost"] == 6 * DEFAULT_COST_PER_MINUTE[Priority.HIGH]

        review = await services.reviews.get_for_incident(incident.id)
        assert review is not None
        assert review.status == ReviewStatus.DRAFT

        # A second request for the same incident reuses the review
        again = await services.review_service.open_review(incident.id)
        assert again.id == review.id

        closed = await services.incident_service.close(incident.id)
        assert closed.closed_at == clock()

    asyncio.run(main())


def test_illegal_edge_is_not_stored(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")

        with pytest.raises(InvalidTransition):
            await services.incident_service.resolve(incident.id, "Too early")

        stored = await services.incident_service.get(incident.id)
        assert stored.status == IncidentStatus.OPEN
        assert stored.resolved_at is None

    asyncio.run(main())


def test_reopen_and_resolve_again(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Flapping VPN", requires_pir=False)
        await services.incident_service.start_work(incident.id)
        await services.incident_service.resolve(incident.id, "Restarted tunnel")

        clock.advance(minutes=3)
        reopened = await services.incident_service.reopen(incident.id, reason="Tunnel dropped again")
        assert reopened.status == IncidentStatus.OPEN
        assert reopened.reopen_count == 1
        assert await services.reviews.get_for_incident(incident.id) is None

    asyncio.run(main())


def test_sla_breach_is_flagged_once_and_bumps_priority(services, seed, clock):
    async def main():
        await seed(team_ids=("team-a", "team-b"))
        incident = await services.incident_service.create_incident("game-1", "team-a", "Queue backlog")

        clock.advance(minutes=42)
        breached = await services.incident_service.process_sla_breaches("game-1")

        assert [i.id for i in breached] == [incident.id]
        assert breached[0].sla_breached
        assert breached[0].priority == Priority.HIGH

        assert await services.incident_service.process_sla_breaches("game-1") == []

        breaches = await services.event_log.list_for_team("game-1", "team-a", [EventType.SLA_BREACHED])
        assert len(breaches) == 1
        assert breaches[0].payload["previous_priority"] == "medium"

        # team-b had no breach on either pass; team-a only on the second
        ticks_b = await services.event_log.list_for_team("game-1", "team-b", [EventType.SLA_TICK])
        ticks_a = await services.event_log.list_for_team("game-1", "team-a", [EventType.SLA_TICK])
        assert len(ticks_b) == 2
        assert len(ticks_a) == 1

    asyncio.run(main())


def test_incident_within_deadline_is_not_breached(services, seed, clock):
    async def main():
        await seed()
        await services.incident_service.create_incident("game-1", "team-a", "Slow reports", priority="low")

        clock.advance(minutes=59)

        assert await services.incident_service.process_sla_breaches("game-1") == []

    asyncio.run(main())


def test_auto_escalation_follows_scaled_thresholds(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Payments down", priority="critical")

        clock.advance(minutes=6)
        assert await services.incident_service.auto_escalate("game-1") == []

        clock.advance(minutes=1)
        [first] = await services.incident_service.auto_escalate("game-1")
        assert first.escalation_level == 1

        clock.advance(minutes=7)
        [second] = await services.incident_service.auto_escalate("game-1")
        assert second.escalation_level == 3

        with pytest.raises(InvalidTransition):
            await services.incident_service.escalate(incident.id, reason="Still failing")

    asyncio.run(main())


def test_manual_escalation_hands_off(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Printer fire")

        escalated = await services.incident_service.escalate(incident.id, reason="Needs facilities", actor="desk")

        assert escalated.escalation_level == 1
        transfers = await services.event_log.list_for_team("game-1", "team-a", [EventType.INCIDENT_TRANSFERRED])
        assert transfers[0].payload["to_level"] == 1

    asyncio.run(main())


def test_resolved_incident_cannot_be_escalated(services, seed):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")
        await services.incident_service.start_work(incident.id)
        await services.incident_service.resolve(incident.id, "Cleaned up")

        with pytest.raises(InvalidTransition):
            await services.incident_service.escalate(incident.id)

        stored = await services.incident_service.get(incident.id)
        assert stored.escalation_level == 0

    asyncio.run(main())

import asyncio

import pytest

from hawkops.config import ChallengeStatus
from hawkops.core import EntityNotFound, EventType
from hawkops.progress.domain import ACHIEVEMENTS_BY_CODE, CHALLENGE_TEMPLATES

SPEED_RUN = CHALLENGE_TEMPLATES[0]
MARATHON = CHALLENGE_TEMPLATES[2]
DEEP_ANALYSIS = CHALLENGE_TEMPLATES[4]
CRISIS_COMMUNICATOR = CHALLENGE_TEMPLATES[6]
CLEAN_SWEEP = CHALLENGE_TEMPLATES[7]
TEAM_PLAYER = CHALLENGE_TEMPLATES[8]


async def _resolve_new_incident(services, title, team_id="team-a", **fields):
    incident = await services.incident_service.create_incident("game-1", team_id, title, **fields)
    await services.incident_service.start_work(incident.id)
    return await services.incident_service.resolve(incident.id, "Fixed")


async def _entries(services, key, team_id="team-a"):
    return [e for e in await services.scores.history("game-1", team_id) if e.idempotency_key == key]


# ========== Scores ==========

def test_score_never_drops_below_zero(services, seed):
    async def main():
        await seed()
        await services.scores.award("game-1", "team-a", 50, "Warm-up", idempotency_key="warmup")

        penalty = await services.scores.award("game-1", "team-a", -200, "Outage", idempotency_key="outage")

        assert penalty.points == -50
        assert await services.scores.total("game-1", "team-a") == 0
        assert await services.scores.award("game-1", "team-a", 10, "Again", idempotency_key="outage") is None

        awarded = await services.event_log.list_for_team("game-1", "team-a", [EventType.POINTS_AWARDED])
        assert awarded[-1].payload["requested_points"] == -200
        assert awarded[-1].payload["total"] == 0

    asyncio.run(main())


# ========== Challenges ==========

def test_speed_run_completes_and_rewards_once(services, seed, clock):
    async def main():
        await seed(team_ids=("team-a", "team-b"))
        challenge = await services.challenges.create_challenge("game-1", SPEED_RUN, assigned_team_id="team-a")
        assert challenge.window_minutes == 23
        assert "23 minutes" in challenge.description

        await _resolve_new_incident(services, "Other team's fix", team_id="team-b")
        assert (await services.challenges.get(challenge.id)).current_value == 0

        for n in range(4):
            clock.advance(minutes=1)
            await _resolve_new_incident(services, f"Alert {n}")

        done = await services.challenges.get(challenge.id)
        assert done.status == ChallengeStatus.COMPLETED
        assert done.completed_by_team_id == "team-a"
        assert done.current_value == 3
        [reward] = await _entries(services, f"challenge:{challenge.id}")
        assert reward.points == 300

        stats = await services.challenges.team_stats("game-1", "team-a")
        assert stats == {"completed": 1, "active": 0, "expired": 0, "total_points": 300}

    asyncio.run(main())


def test_reward_lost_after_completion_is_paid_once(services, seed, clock):
    async def main():
        await seed()
        challenge = await services.challenges.create_challenge("game-1", SPEED_RUN, assigned_team_id="team-a")
        scores = services.scores
        award = scores.award
        failed = []

        async def flaky_award(game_id, team_id, points, reason, idempotency_key):
            if idempotency_key.startswith("challenge:") and not failed:
                failed.append(idempotency_key)
                raise RuntimeError("ledger unavailable")
            return await award(game_id, team_id, points, reason, idempotency_key=idempotency_key)

        scores.award = flaky_award

        for n in range(3):
            clock.advance(minutes=1)
            await _resolve_new_incident(services, f"Alert {n}")

        assert (await services.challenges.get(challenge.id)).status == ChallengeStatus.COMPLETED
        assert failed == [f"challenge:{challenge.id}"]
        assert await _entries(services, f"challenge:{challenge.id}") == []

        paid = await services.challenges.settle_rewards("game-1")

        assert [c.id for c in paid] == [challenge.id]
        [reward] = await _entries(services, f"challenge:{challenge.id}")
        assert reward.points == 300
        assert await services.challenges.settle_rewards("game-1") == []

    asyncio.run(main())


def test_window_is_capped_to_the_time_left(services, seed, clock):
    async def main():
        await seed()
        clock.advance(minutes=60)

        challenge = await services.challenges.create_challenge("game-1", DEEP_ANALYSIS)

        assert challenge.window_minutes == 13
        assert challenge.assigned_team_id is None

    asyncio.run(main())


def test_sla_streak_counts_clean_minutes(services, seed, clock):
    async def main():
        await seed()
        challenge = await services.challenges.create_challenge("game-1", MARATHON, assigned_team_id="team-a")
        assert challenge.target_value == 38

        clock.advance(minutes=20)
        await services.incident_service.process_sla_breaches("game-1")
        assert (await services.challenges.get(challenge.id)).current_value == 20

        clock.advance(minutes=18)
        await services.incident_service.process_sla_breaches("game-1")

        done = await services.challenges.get(challenge.id)
        assert done.status == ChallengeStatus.COMPLETED
        assert (await _entries(services, f"challenge:{challenge.id}"))[0].points == 400

    asyncio.run(main())


def test_breach_ends_an_sla_streak(services, seed, clock):
    async def main():
        await seed()
        challenge = await services.challenges.create_challenge("game-1", MARATHON, assigned_team_id="team-a")
        await services.incident_service.create_incident("game-1", "team-a", "Payments down", priority="critical")

        clock.advance(minutes=16)
        await services.incident_service.process_sla_breaches("game-1")

        ended = await services.challenges.get(challenge.id)
        assert ended.status == ChallengeStatus.EXPIRED
        assert await _entries(services, f"challenge:{challenge.id}") == []
        expired = await services.event_log.list_for_team("game-1", "team-a", [EventType.CHALLENGE_EXPIRED])
        assert expired[0].payload["reason"] == "sla_breached"

    asyncio.run(main())


def test_clean_sweep_needs_an_empty_queue(services, seed):
    async def main():
        await seed()
        first = await services.incident_service.create_incident("game-1", "team-a", "Disk full")
        second = await services.incident_service.create_incident("game-1", "team-a", "Queue backlog")
        challenge = await services.challenges.create_challenge("game-1", CLEAN_SWEEP, assigned_team_id="team-a")

        await services.incident_service.start_work(first.id)
        await services.incident_service.resolve(first.id, "Cleaned up")
        assert (await services.challenges.get(challenge.id)).is_active

        await services.incident_service.start_work(second.id)
        await services.incident_service.resolve(second.id, "Drained")
        assert (await services.challenges.get(challenge.id)).status == ChallengeStatus.COMPLETED

    asyncio.run(main())


def test_excellent_review_completes_challenge_and_badge_once(services, seed, content, run_grading):
    async def main():
        await seed()
        challenge = await services.challenges.create_challenge("game-1", DEEP_ANALYSIS, assigned_team_id="team-a")
        incident = await _resolve_new_incident(services, "Checkout outage", priority="high")
        review = await services.reviews.get_for_incident(incident.id)

        content.review_score = 95
        await services.review_service.submit(review.id)
        await run_grading()

        assert (await services.challenges.get(challenge.id)).status == ChallengeStatus.COMPLETED
        assert (await _entries(services, f"challenge:{challenge.id}"))[0].points == 500

        earned = [a.achievement_code for a in await services.achievements.earned("game-1", "team-a")]
        assert earned.count("root_cause_master") == 1
        badge = await _entries(services, "achievement:team-a:root_cause_master")
        assert [e.points for e in badge] == [200]

    asyncio.run(main())


def test_handoffs_complete_team_player(services, seed):
    async def main():
        await seed()
        challenge = await services.challenges.create_challenge("game-1", TEAM_PLAYER, assigned_team_id="team-a")

        for title in ("Printer fire", "Badge reader offline"):
            incident = await services.incident_service.create_incident("game-1", "team-a", title)
            await services.incident_service.escalate(incident.id, reason="Facilities")

        assert (await services.challenges.get(challenge.id)).status == ChallengeStatus.COMPLETED
        earned = [a.achievement_code for a in await services.achievements.earned("game-1", "team-a")]
        assert earned.count("helping_hand") == 1

    asyncio.run(main())


def test_high_stakes_reply_must_reach_the_bar(services, seed, clock):
    async def main():
        await seed()
        challenge = await services.challenges.create_challenge(
            "game-1", CRISIS_COMMUNICATOR, assigned_team_id="team-a"
        )

        async def reply(stakeholder_type, score):
            await services.runner.emit_for_team(
                "game-1", "team-a", EventType.STAKEHOLDER_RESPONSE,
                {"stakeholder_type": stakeholder_type, "score": score}, at=clock(),
            )

        await reply("customer", 99)
        await reply("executive", 80)
        assert (await services.challenges.get(challenge.id)).is_active

        await reply("media", 88)
        done = await services.challenges.get(challenge.id)
        assert done.status == ChallengeStatus.COMPLETED
        assert done.current_value == 88

    asyncio.run(main())


def test_events_after_the_window_do_not_count(services, seed, clock):
    async def main():
        await seed()
        challenge = await services.challenges.create_challenge("game-1", SPEED_RUN, assigned_team_id="team-a")

        clock.advance(minutes=24)
        await _resolve_new_incident(services, "Late fix")

        assert (await services.challenges.get(challenge.id)).current_value == 0

        [expired] = await services.challenges.expire_challenges("game-1")
        assert expired.status == ChallengeStatus.EXPIRED
        assert await services.challenges.expire_challenges("game-1") == []
        assert (await services.challenges.team_stats("game-1", "team-a"))["expired"] == 1

    asyncio.run(main())


def test_spawn_waits_for_the_interval(services, seed, clock):
    async def main():
        await seed()

        assert await services.challenges.maybe_spawn("game-1") is None

        clock.advance(minutes=11)
        spawned = await services.challenges.maybe_spawn("game-1")
        assert spawned is not None
        assert spawned.title in {t.title for t in CHALLENGE_TEMPLATES}

        # One active challenge at a time
        assert await services.challenges.maybe_spawn("game-1") is None

        clock.advance(minutes=60)
        await services.challenges.expire_challenges("game-1")
        assert await services.challenges.maybe_spawn("game-1") is None

    asyncio.run(main())


# ========== Achievements ==========

def test_quick_acknowledgement_earns_first_responder(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Disk full")
        clock.advance(minutes=1)
        await services.incident_service.start_work(incident.id)

        progress = {p.definition.code: p for p in await services.achievements.progress("game-1", "team-a")}
        assert progress["first_responder"].earned
        assert progress["first_responder"].to_dict()["progress"]["percentage"] == 100
        assert not progress["speed_demon"].earned

        entries = await _entries(services, "achievement:team-a:first_responder")
        assert [e.points for e in entries] == [ACHIEVEMENTS_BY_CODE["first_responder"].points]

        assert await services.achievements.award("game-1", "team-a", "first_responder") is None

    asyncio.run(main())


def test_unknown_achievement_is_rejected(services, seed):
    async def main():
        await seed()

        with pytest.raises(EntityNotFound):
            await services.achievements.award("game-1", "team-a", "bogus")

    asyncio.run(main())


def test_calm_under_pressure_counts_overlap(services, seed, clock):
    async def main():
        await seed()
        for n in range(3):
            await services.incident_service.create_incident("game-1", "team-a", f"Alert {n}")
            clock.advance(minutes=1)

        progress = {p.definition.code: p for p in await services.achievements.progress("game-1", "team-a")}
        assert progress["calm_under_pressure"].current == 3
        earned = [a.achievement_code for a in await services.achievements.earned("game-1", "team-a")]
        assert "calm_under_pressure" in earned

    asyncio.run(main())

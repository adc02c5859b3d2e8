import asyncio

import pytest

from hawkops.config import PlanStatus, ReviewStatus
from hawkops.core import EventType, InvalidTransition, InvariantViolation
from hawkops.workitems.application import PlanEvaluation


async def _incident_with_plan(services, seed):
    await seed()
    incident = await services.incident_service.create_incident(
        "game-1", "team-a", "Cache stampede", priority="high", affected_services=["cache"]
    )
    plan = await services.plan_service.create_plan("game-1", "team-a", incident_id=incident.id)
    return incident, plan


async def _resolved_incident_review(services, seed):
    await seed()
    incident = await services.incident_service.create_incident("game-1", "team-a", "DNS outage", priority="high")
    await services.incident_service.start_work(incident.id)
    await services.incident_service.resolve(incident.id, "Flushed resolver caches")
    review = await services.reviews.get_for_incident(incident.id)
    return incident, review


# ========== Plans ==========

def test_generated_plan_starts_as_draft(services, seed):
    async def main():
        incident, plan = await _incident_with_plan(services, seed)

        assert plan.status == PlanStatus.DRAFT
        assert plan.plan_number == "PLN00001"
        assert plan.title == f"Fix {incident.incident_number}"
        assert len(plan.implementation_steps) == 2

    asyncio.run(main())


def test_plan_body_falls_back_when_generation_fails(services, seed, content):
    async def main():
        content.fail = True
        incident, plan = await _incident_with_plan(services, seed)

        assert plan.title == f"Remediation plan for {incident.incident_number}"
        assert plan.rollback_plan

    asyncio.run(main())


def test_one_active_plan_per_incident(services, seed):
    async def main():
        incident, _ = await _incident_with_plan(services, seed)

        with pytest.raises(InvariantViolation):
            await services.plan_service.create_plan("game-1", "team-a", incident_id=incident.id)

    asyncio.run(main())


def test_submit_returns_before_grading(services, seed, content, run_grading):
    async def main():
        _, plan = await _incident_with_plan(services, seed)

        submitted = await services.plan_service.submit_for_review(plan.id)
        assert submitted.status == PlanStatus.AI_REVIEWING
        assert services.grading_queue.pending == 1
        assert content.evaluated == []

        await run_grading()

        graded = await services.plan_service.get(plan.id)
        assert graded.status == PlanStatus.AI_APPROVED
        assert graded.ai_score == 85
        assert graded.revisions[0].ai_decision == "approve"

    asyncio.run(main())


def test_needs_revision_then_resubmit(services, seed, content, run_grading):
    async def main():
        _, plan = await _incident_with_plan(services, seed)
        content.decision = "needs_revision"
        content.score = 55
        await services.plan_service.submit_for_review(plan.id)
        await run_grading()

        revised = await services.plan_service.get(plan.id)
        assert revised.status == PlanStatus.AI_NEEDS_REVISION

        await services.plan_service.update_plan(plan.id, testing_plan="Full regression suite")
        content.decision = "approve"
        await services.plan_service.revise_and_resubmit(plan.id)
        await run_grading()

        approved = await services.plan_service.get(plan.id)
        assert approved.status == PlanStatus.AI_APPROVED
        assert [r.revision_number for r in approved.revisions] == [1, 2]
        assert approved.revisions[1].snapshot["testing_plan"] == "Full regression suite"

    asyncio.run(main())


def test_stale_evaluation_is_discarded(services, seed):
    async def main():
        _, plan = await _incident_with_plan(services, seed)
        await services.plan_service.submit_for_review(plan.id)

        stale = await services.plan_service.apply_evaluation(
            plan.id, 2, PlanEvaluation(score=99, decision="approve")
        )
        assert stale is None
        assert (await services.plan_service.get(plan.id)).status == PlanStatus.AI_REVIEWING

        current = await services.plan_service.apply_evaluation(
            plan.id, 1, PlanEvaluation(score=30, decision="reject")
        )
        assert current.status == PlanStatus.AI_REJECTED

        late = await services.plan_service.apply_evaluation(
            plan.id, 1, PlanEvaluation(score=99, decision="approve")
        )
        assert late is None

    asyncio.run(main())


def test_grading_timeout_applies_conservative_fallback(services, seed, content, run_grading):
    async def main():
        _, plan = await _incident_with_plan(services, seed)
        content.delay_seconds = 0.5
        await services.plan_service.submit_for_review(plan.id)

        await run_grading()

        fallback = await services.plan_service.get(plan.id)
        assert fallback.status == PlanStatus.AI_NEEDS_REVISION
        assert fallback.ai_score == 60
        evaluated = await services.event_log.list_for_team("game-1", "team-a", [EventType.PLAN_EVALUATED])
        assert evaluated[-1].payload["fallback"] is True

    asyncio.run(main())


def test_grading_failure_never_approves(services, seed, content, run_grading):
    async def main():
        _, plan = await _incident_with_plan(services, seed)
        content.fail = True
        await services.plan_service.submit_for_review(plan.id)

        await run_grading()

        assert (await services.plan_service.get(plan.id)).status == PlanStatus.AI_NEEDS_REVISION

    asyncio.run(main())


def test_stuck_review_is_released_and_old_job_ignored(services, seed, content, clock, run_grading):
    async def main():
        _, plan = await _incident_with_plan(services, seed)
        await services.plan_service.submit_for_review(plan.id)

        clock.advance(seconds=301)
        released = await services.plan_service.release_stuck_reviews(300)
        assert [p.id for p in released] == [plan.id]
        assert released[0].status == PlanStatus.AI_NEEDS_REVISION

        await services.plan_service.revise_and_resubmit(plan.id)
        await run_grading()

        # Only the job for revision 2 reached the content service
        assert len(content.evaluated) == 1
        assert (await services.plan_service.get(plan.id)).status == PlanStatus.AI_APPROVED

    asyncio.run(main())


def test_plan_under_review_cannot_be_edited(services, seed):
    async def main():
        _, plan = await _incident_with_plan(services, seed)
        await services.plan_service.submit_for_review(plan.id)

        with pytest.raises(InvalidTransition):
            await services.plan_service.update_plan(plan.id, title="Sneaky edit")
        with pytest.raises(InvariantViolation):
            await services.plan_service.update_plan(plan.id, status="ai_approved")

    asyncio.run(main())


# ========== Post-incident reviews ==========

def test_review_grading_failure_returns_to_draft(services, seed, content, run_grading):
    async def main():
        _, review = await _resolved_incident_review(services, seed)
        await services.review_service.update_review(
            review.id,
            timeline="09:00 alert, 09:05 resolver flush",
            root_cause="Stale resolver cache",
            impact="Logins failed for five minutes",
            lessons_learned="Alert on resolver age",
            action_items=["Add resolver TTL alert"],
        )
        content.fail = True
        await services.review_service.submit(review.id)
        await run_grading()

        returned = await services.review_service.get(review.id)
        assert returned.status == ReviewStatus.DRAFT
        assert returned.score is None

        content.fail = False
        content.review_score = 92
        await services.review_service.submit(review.id)
        await run_grading()

        graded = await services.review_service.get(review.id)
        assert graded.status == ReviewStatus.GRADED
        assert graded.score == 92
        assert content.graded[-1]["root_cause"] == "Stale resolver cache"

    asyncio.run(main())


def test_submitted_review_is_read_only(services, seed):
    async def main():
        _, review = await _resolved_incident_review(services, seed)
        await services.review_service.submit(review.id)

        with pytest.raises(InvalidTransition):
            await services.review_service.update_review(review.id, impact="Edited late")

    asyncio.run(main())


def test_stuck_review_goes_back_to_draft(services, seed, clock):
    async def main():
        _, review = await _resolved_incident_review(services, seed)
        await services.review_service.submit(review.id)

        clock.advance(seconds=120)
        assert await services.review_service.release_stuck_reviews(300) == []

        clock.advance(seconds=200)
        [released] = await services.review_service.release_stuck_reviews(300)
        assert released.status == ReviewStatus.DRAFT

    asyncio.run(main())

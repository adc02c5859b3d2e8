"""
Asynchronous Grading
====================

Queue and worker pool for plan evaluation and review grading.

A transition into ai_reviewing (or a review into submitted) only enqueues
a job; the grading result comes back later as its own transition. Each
content-service call is bounded by a timeout, and a failed or timed-out
call resolves to a recoverable status:
- plans get a conservative local evaluation (needs revision)
- reviews go back to draft

The queue only knows how to hand a job to a processor. ``GradingWorker``
is the processor; with a database it is built per job around a fresh
session, so the queue itself holds no repositories.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from hawkops.config import PlanStatus, ReviewStatus
from hawkops.core import CollaboratorUnavailable
from hawkops.shared.infrastructure.logging import get_logger
from hawkops.workitems.application.dto import PlanEvaluation
from hawkops.workitems.application.services import (
    IContentService, IIncidentRepository, IPlanRepository, IReviewRepository,
    PlanService, ReviewService, _with_timeout,
)
from hawkops.workitems.domain import RequestPlanEvaluation, RequestReviewGrading

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanEvaluationJob:
    plan_id: str
    revision_number: int


@dataclass(frozen=True)
class ReviewGradingJob:
    review_id: str


JobProcessor = Callable[[Any], Awaitable[None]]


class GradingQueue:
    """
    In-process grading queue.

    Usage:
        queue = GradingQueue(worker.process)
        await queue.start()
        ...
        await queue.join()   # wait until every queued job has been handled
        await queue.stop()
    """

    def __init__(self, processor: JobProcessor, workers: int = 1):
        self._processor = processor
        self._worker_count = workers
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def _get_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._workers:
            return
        queue = self._get_queue()
        self._workers = [
            asyncio.create_task(self._worker(queue, index))
            for index in range(self._worker_count)
        ]
        logger.info("Grading workers started", extra={"workers": self._worker_count})

    async def stop(self) -> None:
        """Cancel the worker tasks. Queued jobs stay queued."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._get_queue().join()

    def enqueue(self, job: Any) -> None:
        self._get_queue().put_nowait(job)
        logger.info("Grading job queued", extra={"job": type(job).__name__, "pending": self.pending})

    async def handle_plan_evaluation_request(self, effect: RequestPlanEvaluation) -> None:
        self.enqueue(PlanEvaluationJob(effect.plan_id, effect.revision_number))

    async def handle_review_grading_request(self, effect: RequestReviewGrading) -> None:
        self.enqueue(ReviewGradingJob(effect.review_id))

    async def _worker(self, queue: asyncio.Queue, index: int) -> None:
        while True:
            job = await queue.get()
            try:
                await self._processor(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Grading job failed",
                    extra={"worker": index, "job": repr(job), "error": str(e)},
                    exc_info=True,
                )
            finally:
                queue.task_done()


class DeferredGradingRequests:
    """
    Collects grading requests raised inside a unit of work.

    Requests are handed to the queue only by ``flush``, after the unit of
    work has committed, so a worker on another session never reads a
    status that is not yet visible.
    """

    def __init__(self, queue: GradingQueue):
        self._queue = queue
        self._jobs: List[Any] = []

    async def handle_plan_evaluation_request(self, effect: RequestPlanEvaluation) -> None:
        self._jobs.append(PlanEvaluationJob(effect.plan_id, effect.revision_number))

    async def handle_review_grading_request(self, effect: RequestReviewGrading) -> None:
        self._jobs.append(ReviewGradingJob(effect.review_id))

    def flush(self) -> int:
        jobs, self._jobs = self._jobs, []
        for job in jobs:
            self._queue.enqueue(job)
        return len(jobs)

    def discard(self) -> None:
        self._jobs = []


class GradingWorker:
    """Turns one grading job into a content-service call and a transition."""

    def __init__(
        self,
        content: IContentService,
        plans: IPlanRepository,
        reviews: IReviewRepository,
        incidents: IIncidentRepository,
        plan_service: PlanService,
        review_service: ReviewService,
        timeout_seconds: float = 30.0
    ):
        self._content = content
        self._plans = plans
        self._reviews = reviews
        self._incidents = incidents
        self._plan_service = plan_service
        self._review_service = review_service
        self._timeout = timeout_seconds

    async def process(self, job: Any) -> None:
        """Handle one job."""
        if isinstance(job, PlanEvaluationJob):
            await self._evaluate_plan(job)
        elif isinstance(job, ReviewGradingJob):
            await self._grade_review(job)
        else:
            raise TypeError(f"Unknown grading job: {job!r}")

    async def _incident_context(self, incident_id: Optional[str]) -> Dict[str, Any]:
        if incident_id is None:
            return {}
        incident = await self._incidents.get(incident_id)
        if incident is None:
            return {}
        return {
            "incident_number": incident.incident_number,
            "title": incident.title,
            "description": incident.description,
            "priority": incident.priority.value,
            "severity": incident.severity.value,
            "affected_services": list(incident.affected_services),
        }

    async def _evaluate_plan(self, job: PlanEvaluationJob) -> None:
        plan = await self._plans.get(job.plan_id)
        if plan is None or plan.status != PlanStatus.AI_REVIEWING:
            return
        revision = plan.latest_revision
        if revision is None or revision.revision_number != job.revision_number:
            return

        context = await self._incident_context(plan.incident_id)
        try:
            evaluation = await _with_timeout(
                self._content.evaluate_plan(revision.snapshot, context), self._timeout, "content"
            )
        except CollaboratorUnavailable as e:
            logger.warning(
                "Plan evaluation unavailable, applying fallback",
                extra={"plan_id": plan.id, "revision_number": job.revision_number, "error": str(e)}
            )
            evaluation = PlanEvaluation.conservative_fallback(str(e))

        await self._plan_service.apply_evaluation(plan.id, job.revision_number, evaluation)

    async def _grade_review(self, job: ReviewGradingJob) -> None:
        review = await self._reviews.get(job.review_id)
        if review is None or review.status != ReviewStatus.SUBMITTED:
            return

        try:
            grade = await _with_timeout(
                self._content.grade_review(review.snapshot()), self._timeout, "content"
            )
        except CollaboratorUnavailable as e:
            logger.warning("Review grading unavailable", extra={"review_id": review.id, "error": str(e)})
            await self._review_service.return_to_draft(review.id, f"grading unavailable: {e.message}")
            return

        await self._review_service.apply_grade(review.id, grade)

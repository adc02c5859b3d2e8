"""
Simulation Scheduler
====================

APScheduler wrapper that drives the simulation in the background:
- agent cycles for every active game
- SLA breach processing and automatic escalation
- challenge expiry and spawning
- sweeping plans and reviews stuck in grading
- repairing the follow-ups of finished changes

Every job opens its own unit of work through ``scope`` and logs, rather
than raises, any failure, so one bad game never stops the schedule.
"""

from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from hawkops.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

ServiceScope = Callable[[], AsyncContextManager[Any]]


class SimulationScheduler:
    """
    Wrapper for APScheduler for background simulation jobs.

    Manages the lifecycle of the scheduler and jobs.
    """

    def __init__(
        self,
        scope: ServiceScope,
        agent_interval_seconds: int = 15,
        sla_interval_seconds: int = 30,
        challenge_interval_seconds: int = 60,
        sweep_interval_seconds: int = 60,
        stuck_review_after_seconds: int = 300
    ):
        self._scope = scope
        self.agent_interval_seconds = agent_interval_seconds
        self.sla_interval_seconds = sla_interval_seconds
        self.challenge_interval_seconds = challenge_interval_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.stuck_review_after_seconds = stuck_review_after_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    # ========== Jobs ==========

    async def _active_game_ids(self) -> List[str]:
        async with self._scope() as services:
            return [game.id for game in await services.games.list_active()]

    async def _for_each_game(self, job_name: str, job: Callable[[Any, str], Awaitable[None]]) -> None:
        try:
            game_ids = await self._active_game_ids()
        except Exception as e:
            logger.error("Could not list active games", extra={"job": job_name, "error": str(e)}, exc_info=True)
            return

        for game_id in game_ids:
            try:
                with log_latency(logger, job_name, game_id=game_id):
                    async with self._scope() as services:
                        await job(services, game_id)
            except Exception as e:
                logger.error(
                    "Scheduled job failed",
                    extra={"job": job_name, "game_id": game_id, "error": str(e)},
                    exc_info=True,
                )

    @staticmethod
    async def _tick_agents(services: Any, game_id: str) -> None:
        await services.agents.tick(game_id)

    @staticmethod
    async def _process_sla(services: Any, game_id: str) -> None:
        breached = await services.incident_service.process_sla_breaches(game_id)
        escalated = await services.incident_service.auto_escalate(game_id)
        if breached or escalated:
            logger.info(
                "SLA processing applied",
                extra={"game_id": game_id, "breached": len(breached), "escalated": len(escalated)}
            )

    @staticmethod
    async def _run_challenges(services: Any, game_id: str) -> None:
        await services.challenges.expire_challenges(game_id)
        await services.challenges.settle_rewards(game_id)
        await services.challenges.maybe_spawn(game_id)

    @staticmethod
    async def _reconcile_changes(services: Any, game_id: str) -> None:
        await services.change_service.reconcile_outcomes(game_id)

    async def agent_job(self) -> None:
        await self._for_each_game("agent_cycle", self._tick_agents)

    async def sla_job(self) -> None:
        await self._for_each_game("sla_processing", self._process_sla)

    async def challenge_job(self) -> None:
        await self._for_each_game("challenges", self._run_challenges)

    async def sweep_job(self) -> None:
        """
        Repair the follow-ups of finished changes, then force plans and
        reviews stuck in grading back to a recoverable status.
        """
        await self._for_each_game("change_reconcile", self._reconcile_changes)

        try:
            async with self._scope() as services:
                plans = await services.plan_service.release_stuck_reviews(self.stuck_review_after_seconds)
                reviews = await services.review_service.release_stuck_reviews(self.stuck_review_after_seconds)
        except Exception as e:
            logger.error("Stuck review sweep failed", extra={"error": str(e)}, exc_info=True)
            return

        if plans or reviews:
            logger.warning(
                "Released stuck reviews",
                extra={"plans": [p.id for p in plans], "reviews": [r.id for r in reviews]}
            )

    async def run_once(self) -> None:
        """Run every job once, in order. Used by manual triggers and tests."""
        await self.sla_job()
        await self.challenge_job()
        await self.agent_job()
        await self.sweep_job()

    # ========== Lifecycle ==========

    def _jobs(self) -> List[Dict[str, Any]]:
        return [
            {"func": self.agent_job, "seconds": self.agent_interval_seconds, "id": "agent_cycle", "name": "Agent Cycle Job"},
            {"func": self.sla_job, "seconds": self.sla_interval_seconds, "id": "sla_processing", "name": "SLA Processing Job"},
            {"func": self.challenge_job, "seconds": self.challenge_interval_seconds, "id": "challenges", "name": "Challenge Job"},
            {"func": self.sweep_job, "seconds": self.sweep_interval_seconds, "id": "review_sweep", "name": "Stuck Review Sweep Job"},
        ]

    async def start(self) -> None:
        """Start the scheduler with every simulation job."""
        if self._running:
            logger.warning("Simulation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        for job in self._jobs():
            self._scheduler.add_job(
                job["func"],
                "interval",
                seconds=job["seconds"],
                id=job["id"],
                name=job["name"],
                misfire_grace_time=60,
                max_instances=1,
                replace_existing=True
            )

        self._scheduler.start()
        self._running = True

        logger.info(
            "Simulation scheduler started",
            extra={
                "agent_interval_seconds": self.agent_interval_seconds,
                "sla_interval_seconds": self.sla_interval_seconds,
                "challenge_interval_seconds": self.challenge_interval_seconds,
                "sweep_interval_seconds": self.sweep_interval_seconds,
            }
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=True)

        self._running = False
        logger.info("Simulation scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running

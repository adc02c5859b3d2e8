"""
Service Wiring
==============

Builds the object graph for one game store.

Two stores are supported:
- In-process: one graph for the life of the application.
- Database: long-lived pieces (timing, content service, locks, agent
  roster, grading queue) are built once; repositories and the services
  that use them are built per unit of work around a fresh session.

Usage:
    services = build_in_memory_services()
    await services.grading_queue.start()

    scope = SqlServiceScope(build_shared_components())
    async with scope() as services:
        await services.agents.tick(game_id)
"""

import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hawkops.agents.application import (
    ActionExecutor, AgentCycle, AgentManager, AgentRoster, DecisionEngine, Perceiver, SnapshotBuilder,
)
from hawkops.config import Settings, get_settings
from hawkops.core import Clock, IEventLog, utc_now
from hawkops.infrastructure.database import get_session_context
from hawkops.progress.application import (
    AchievementService, ChallengeService, IAchievementRepository, IChallengeRepository,
    IScoreLedger, ProgressSubscriber, ScoreService,
)
from hawkops.progress.infrastructure import (
    InMemoryAchievementRepository, InMemoryChallengeRepository, InMemoryScoreLedger,
    SQLAlchemyAchievementRepository, SQLAlchemyChallengeRepository, SQLAlchemyScoreLedger,
)
from hawkops.shared.infrastructure import EventDispatcher, InMemoryEventLog, KeyedLockRegistry, build_publishers
from hawkops.shared.infrastructure.event_store import SQLAlchemyEventLog
from hawkops.shared.infrastructure.logging import get_logger
from hawkops.timing.application import ITimingConfigProvider, TimingService
from hawkops.timing.infrastructure import StaticTimingConfigProvider
from hawkops.workitems.application import (
    ChangeService, DeferredGradingRequests, GradingQueue, GradingWorker,
    IChangeRepository, IContentService, IGameRepository, IIncidentRepository,
    IPlanRepository, IReviewRepository, ITeamRepository, IncidentService,
    PlanService, ReviewService, TransitionRunner, register_effect_handlers,
)
from hawkops.workitems.domain import ChangeOutcomeModel
from hawkops.workitems.infrastructure import (
    InMemoryChangeRepository, InMemoryGameRepository, InMemoryIncidentRepository,
    InMemoryPlanRepository, InMemoryReviewRepository, InMemoryTeamRepository,
    LLMContentService, SQLAlchemyChangeRepository, SQLAlchemyGameRepository,
    SQLAlchemyIncidentRepository, SQLAlchemyPlanRepository, SQLAlchemyReviewRepository,
    SQLAlchemyTeamRepository,
)

logger = get_logger(__name__)


# ========== Graph ==========

@dataclass
class SharedComponents:
    """Pieces that outlive any one unit of work."""
    settings: Settings
    timing: TimingService
    content: IContentService
    outcome_model: ChangeOutcomeModel
    roster: AgentRoster
    clock: Clock = utc_now
    rng: Optional[random.Random] = None
    publishers: list = field(default_factory=list)
    entity_locks: KeyedLockRegistry = field(default_factory=lambda: KeyedLockRegistry("entities"))
    score_locks: KeyedLockRegistry = field(default_factory=lambda: KeyedLockRegistry("scores"))
    challenge_locks: KeyedLockRegistry = field(default_factory=lambda: KeyedLockRegistry("challenges"))


@dataclass
class Services:
    """Repositories and services bound to one store."""
    games: IGameRepository
    teams: ITeamRepository
    incidents: IIncidentRepository
    plans: IPlanRepository
    changes: IChangeRepository
    reviews: IReviewRepository
    challenge_repository: IChallengeRepository
    achievement_repository: IAchievementRepository
    ledger: IScoreLedger
    event_log: IEventLog
    dispatcher: EventDispatcher
    runner: TransitionRunner
    timing: TimingService
    incident_service: IncidentService
    review_service: ReviewService
    plan_service: PlanService
    change_service: ChangeService
    grading_worker: GradingWorker
    scores: ScoreService
    achievements: AchievementService
    challenges: ChallengeService
    agents: AgentManager
    grading_queue: Optional[GradingQueue] = None


def build_shared_components(
    settings: Optional[Settings] = None,
    timing_provider: Optional[ITimingConfigProvider] = None,
    content: Optional[IContentService] = None,
    clock: Clock = utc_now,
    rng: Optional[random.Random] = None,
    roster: Optional[AgentRoster] = None
) -> SharedComponents:
    """
    Build the long-lived components.

    Args:
        settings: Defaults to the process settings
        timing_provider: Defaults to the built-in time-scaling table
        content: Defaults to the LLM-backed content service
        clock: Time source for every service
        rng: Seeds challenge selection and change outcomes
        roster: Reuse an existing agent roster
    """
    settings = settings or get_settings()
    return SharedComponents(
        settings=settings,
        timing=TimingService(timing_provider or StaticTimingConfigProvider()),
        content=content or LLMContentService(),
        outcome_model=ChangeOutcomeModel(rng),
        roster=roster if roster is not None else AgentRoster(),
        clock=clock,
        rng=rng,
        publishers=build_publishers(),
    )


def _assemble(
    shared: SharedComponents,
    games: IGameRepository,
    teams: ITeamRepository,
    incidents: IIncidentRepository,
    plans: IPlanRepository,
    changes: IChangeRepository,
    reviews: IReviewRepository,
    challenge_repository: IChallengeRepository,
    achievement_repository: IAchievementRepository,
    ledger: IScoreLedger,
    event_log: IEventLog,
    concurrent_teams: bool
) -> Services:
    settings = shared.settings
    clock = shared.clock

    dispatcher = EventDispatcher(event_log, shared.publishers)
    runner = TransitionRunner(dispatcher, shared.entity_locks)

    incident_service = IncidentService(incidents, games, teams, shared.timing, runner, clock)
    review_service = ReviewService(reviews, incidents, runner, clock)
    plan_service = PlanService(
        plans, incidents, shared.content, runner, clock,
        content_timeout_seconds=settings.review_timeout_seconds,
    )
    change_service = ChangeService(
        changes, plans, incidents, runner, plan_service, incident_service, shared.outcome_model, clock
    )
    grading_worker = GradingWorker(
        shared.content, plans, reviews, incidents, plan_service, review_service,
        timeout_seconds=settings.review_timeout_seconds,
    )

    scores = ScoreService(ledger, dispatcher, shared.score_locks, clock)
    achievements = AchievementService(achievement_repository, incidents, reviews, event_log, scores, dispatcher, clock)
    challenges = ChallengeService(
        challenge_repository, games, incidents, shared.timing, scores, achievements, dispatcher,
        shared.challenge_locks, clock, shared.rng,
    )
    ProgressSubscriber(scores, challenges, achievements).register(dispatcher)

    cycle = AgentCycle(
        SnapshotBuilder(games, incidents, plans, changes, event_log, clock),
        Perceiver(shared.timing),
        DecisionEngine(),
        ActionExecutor(incident_service, plan_service, change_service, runner, event_log, clock),
    )
    agents = AgentManager(
        cycle,
        teams,
        roster=shared.roster,
        max_cycle_retries=settings.agent_max_cycle_retries,
        default_personality=settings.agent_personality,
        concurrent_teams=concurrent_teams,
    )

    return Services(
        games=games,
        teams=teams,
        incidents=incidents,
        plans=plans,
        changes=changes,
        reviews=reviews,
        challenge_repository=challenge_repository,
        achievement_repository=achievement_repository,
        ledger=ledger,
        event_log=event_log,
        dispatcher=dispatcher,
        runner=runner,
        timing=shared.timing,
        incident_service=incident_service,
        review_service=review_service,
        plan_service=plan_service,
        change_service=change_service,
        grading_worker=grading_worker,
        scores=scores,
        achievements=achievements,
        challenges=challenges,
        agents=agents,
    )


# ========== In-process store ==========

def build_in_memory_services(shared: Optional[SharedComponents] = None) -> Services:
    """
    One graph over in-process repositories.

    The returned ``grading_queue`` is not started; call ``start()`` (or
    ``process`` jobs directly in tests).
    """
    shared = shared or build_shared_components()
    services = _assemble(
        shared,
        games=InMemoryGameRepository(),
        teams=InMemoryTeamRepository(),
        incidents=InMemoryIncidentRepository(),
        plans=InMemoryPlanRepository(),
        changes=InMemoryChangeRepository(),
        reviews=InMemoryReviewRepository(),
        challenge_repository=InMemoryChallengeRepository(),
        achievement_repository=InMemoryAchievementRepository(),
        ledger=InMemoryScoreLedger(),
        event_log=InMemoryEventLog(),
        concurrent_teams=True,
    )
    services.grading_queue = GradingQueue(services.grading_worker.process)
    register_effect_handlers(
        services.runner, services.review_service, services.plan_service,
        services.change_service, services.grading_queue,
    )
    logger.info("In-process services built")
    return services


# ========== Database store ==========

def build_sql_services(session: AsyncSession, shared: SharedComponents, grading_requests) -> Services:
    """
    A graph bound to one session.

    Teams run one after another: an AsyncSession does not accept
    concurrent operations.
    """
    services = _assemble(
        shared,
        games=SQLAlchemyGameRepository(session),
        teams=SQLAlchemyTeamRepository(session),
        incidents=SQLAlchemyIncidentRepository(session),
        plans=SQLAlchemyPlanRepository(session),
        changes=SQLAlchemyChangeRepository(session),
        reviews=SQLAlchemyReviewRepository(session),
        challenge_repository=SQLAlchemyChallengeRepository(session),
        achievement_repository=SQLAlchemyAchievementRepository(session),
        ledger=SQLAlchemyScoreLedger(session),
        event_log=SQLAlchemyEventLog(session),
        concurrent_teams=False,
    )
    register_effect_handlers(
        services.runner, services.review_service, services.plan_service,
        services.change_service, grading_requests,
    )
    return services


class SqlServiceScope:
    """
    Opens a unit of work: a session, a graph around it, commit on exit.

    Grading requests raised inside the unit are queued only after commit.
    Grading jobs run in their own units of work.
    """

    def __init__(self, shared: SharedComponents, grading_workers: int = 1):
        self.shared = shared
        self.grading_queue = GradingQueue(self._grade, workers=grading_workers)

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[Services]:
        requests = DeferredGradingRequests(self.grading_queue)
        async with get_session_context() as session:
            services = build_sql_services(session, self.shared, requests)
            services.grading_queue = self.grading_queue
            yield services
        queued = requests.flush()
        if queued:
            logger.debug("Grading requests released after commit", extra={"jobs": queued})

    async def _grade(self, job) -> None:
        async with self() as services:
            await services.grading_worker.process(job)


class InMemoryServiceScope:
    """Scope over a single in-process graph."""

    def __init__(self, services: Services):
        self.services = services

    @property
    def grading_queue(self) -> GradingQueue:
        return self.services.grading_queue

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[Services]:
        yield self.services

"""
HawkOps Simulation Engine - Main Application
============================================

Runs the simulation core behind a thin operational API.

Modules:
- Time Scaling: SLA targets, thresholds and challenge windows per session length
- Work Items: incidents, implementation plans, change requests and PIRs
- Agents: simulated service desk, technical operations and management roles
- Progress: challenges, achievements and team scores

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, state machines and value objects
- Infrastructure: Database, LLM, configuration files, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from hawkops.config import settings
from hawkops.core import ApplicationException
from hawkops.infrastructure.database import close_database, create_tables, init_database
from hawkops.agents.infrastructure import SimulationScheduler
from hawkops.agents.interfaces import agents_router
from hawkops.progress.interfaces import progress_router
from hawkops.shared.api import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from hawkops.shared.infrastructure.logging import get_logger, setup_logging
from hawkops.timing.infrastructure import TimingConfigManager
from hawkops.timing.interfaces import timing_router
from hawkops.wiring import (
    InMemoryServiceScope,
    SqlServiceScope,
    build_in_memory_services,
    build_shared_components,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Load the time-scaling table and watch it for edits
    3. Open the database, or fall back to the in-process store
    4. Start grading workers
    5. Start the simulation scheduler

    SHUTDOWN runs the same steps in reverse.
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting simulation engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Loading timing configuration")
    timing_manager = TimingConfigManager()
    timing_manager.load(settings.timing_config_path)
    timing_manager.start_watching()

    shared = build_shared_components(settings, timing_provider=timing_manager)

    scope = None
    if settings.use_database:
        logger.info("Initializing database")
        init_database()
        try:
            await create_tables()
            scope = SqlServiceScope(shared)
        except Exception as e:
            logger.warning(f"Database not available - using the in-process store: {e}")
            await close_database()

    if scope is None:
        scope = InMemoryServiceScope(build_in_memory_services(shared))

    app.state.settings = settings
    app.state.service_scope = scope
    app.state.timing_manager = timing_manager

    await scope.grading_queue.start()

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = SimulationScheduler(
            scope,
            agent_interval_seconds=settings.agent_tick_interval_seconds,
            sla_interval_seconds=settings.sla_check_interval_seconds,
            challenge_interval_seconds=settings.challenge_check_interval_seconds,
            sweep_interval_seconds=settings.review_sweep_interval_seconds,
            stuck_review_after_seconds=settings.stuck_review_after_seconds,
        )
        await scheduler.start()
    app.state.scheduler = scheduler

    logger.info("Simulation engine started", extra={"store": type(scope).__name__})

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down simulation engine")

    if scheduler:
        await scheduler.stop()

    await scope.grading_queue.stop()

    for publisher in shared.publishers:
        close = getattr(publisher, "close", None)
        if close is not None:
            await close()

    timing_manager.stop_watching()
    await close_database()

    logger.info("Simulation engine shutdown complete")


app = FastAPI(
    title="HawkOps Simulation Engine",
    description="""
    ## ITSM Team Exercise - Simulation Core

    Operational API over the simulation engine.

    - `GET /timing/{duration}` - Scaled SLA targets, thresholds and challenge windows
    - `POST /agents/games/{game_id}/teams/{team_id}` - Create simulated roles for a team
    - `POST /agents/teams/{team_id}/cycle` - Run one perceive-decide-act cycle
    - `GET /agents/status` - Agent counters and last decisions
    - `GET /progress/games/{game_id}/teams/{team_id}/challenges` - Active challenges
    - `GET /progress/games/{game_id}/teams/{team_id}/achievements` - Achievement progress
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(timing_router)
app.include_router(agents_router)
app.include_router(progress_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Reports the store in use, scheduler state and grading backlog.
    """
    scope = getattr(request.app.state, "service_scope", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    grading_queue = scope.grading_queue if scope is not None else None

    checks = {
        "store": "database" if isinstance(scope, SqlServiceScope) else "in_process",
        "timing_config": "loaded" if getattr(request.app.state, "timing_manager", None) else "not_loaded",
        "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "grading_workers": "running" if grading_queue and grading_queue.is_running else "stopped",
        "grading_backlog": grading_queue.pending if grading_queue else 0,
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hawkops.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )

"""
Database Infrastructure
=======================

Engine and session lifecycle for the game store.

PostgreSQL through asyncpg in deployments; SQLite through aiosqlite for
local runs and the test suite. One session is one unit of work: it commits
when the block exits cleanly and rolls back otherwise.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from hawkops.config import get_settings


class Base(DeclarativeBase):
    """Declarative base shared by the work item, progress and event tables."""


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """
    Raises:
        RuntimeError: If ``init_database`` has not run
    """
    if _engine is None:
        raise RuntimeError("Game store not initialized. Call init_database() first.")
    return _engine


def _engine_options(url: str, debug: bool) -> dict:
    settings = get_settings()
    if url.startswith("sqlite"):
        return {"echo": debug}
    return {
        "echo": debug,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
    }


def init_database(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create the engine and session factory. Called from the app lifespan.

    Args:
        database_url: Overrides ``settings.database_url``

    Returns:
        The new engine
    """
    global _engine, _session_maker

    settings = get_settings()
    url = database_url or settings.database_url
    if url.startswith("postgresql"):
        # asyncpg takes ssl= rather than sslmode=
        url = url.replace("sslmode=", "ssl=")

    _engine = create_async_engine(url, **_engine_options(url, settings.debug))
    _session_maker = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


async def close_database() -> None:
    """Dispose of pooled connections. Safe to call twice."""
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


@asynccontextmanager
async def _unit_of_work() -> AsyncIterator[AsyncSession]:
    if _session_maker is None:
        raise RuntimeError("Game store not initialized. Call init_database() first.")

    async with _session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work outside a request: scheduler jobs and grading workers.

    Usage:
        async with get_session_context() as session:
            incidents = SQLAlchemyIncidentRepository(session)
    """
    async with _unit_of_work() as session:
        yield session


async def create_tables() -> None:
    """
    Create every table. Local runs and tests only; production schemas are
    managed outside this service.
    """
    # Importing the model modules registers them on Base.metadata
    import hawkops.shared.infrastructure.event_store  # noqa: F401
    import hawkops.workitems.infrastructure.models  # noqa: F401
    import hawkops.progress.infrastructure.models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

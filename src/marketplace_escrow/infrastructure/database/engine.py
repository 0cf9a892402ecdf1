"""Async database engine and session management.

Provides:
    - _get_engine / _get_session_factory: lazy singletons bound to settings.
    - unit_of_work: one database transaction with the commit contract below;
      request sessions, sweeps, checkout, the effect dispatcher and tests
      all go through it.
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.

Commit contract:
    success         -> commit
    DeadlineError   -> commit, then re-raise (the automatic cancel/expire
                       that accompanies the error must persist)
    any other error -> rollback, then re-raise

Usage:
    async with unit_of_work() as session:
        await TransactionService(session).expire_payment(transaction_id)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.exceptions import DeadlineError
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

# Module-level singletons (initialized in init_db)
_engine = None
_session_factory = None


def _get_engine():
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": settings.db_echo_sql, "pool_pre_ping": True}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
            )
        _engine = create_async_engine(settings.database_url, **kwargs)
        logger.info(
            "database.engine_created",
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(_get_engine())
    return _session_factory


def make_session_factory(engine) -> async_sessionmaker[AsyncSession]:  # noqa: ANN001
    """Build a session factory with the engine's session defaults."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def _finish(session: AsyncSession, exc: BaseException | None) -> None:
    if exc is None:
        await session.commit()
    elif isinstance(exc, DeadlineError):
        await session.commit()
        logger.info("database.committed_on_deadline", code=exc.code)
    else:
        await session.rollback()


@asynccontextmanager
async def unit_of_work(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Run a block in one database transaction, committed per the contract above."""
    factory = factory or _get_session_factory()
    async with factory() as session:
        try:
            yield session
        except Exception as exc:
            await _finish(session, exc)
            raise
        await _finish(session, None)


async def init_db() -> None:
    """Initialize the database engine and create tables if they don't exist.

    Called during FastAPI's lifespan startup. In production, use Alembic
    migrations instead of create_all.
    """
    from marketplace_escrow.infrastructure.database.orm_models import Base

    engine = _get_engine()
    settings = get_settings()

    if settings.is_development:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None

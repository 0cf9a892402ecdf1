"""Health check endpoint.

Reports database and Redis connectivity plus the outbox backlog, so a
monitor can alert when payouts stop draining. Redis is optional: without
it only idempotency keys are skipped, so its absence degrades nothing.
"""

from __future__ import annotations

import redis.asyncio as aioredis  # noqa: TC002 - FastAPI inspects signatures at runtime
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from marketplace_escrow.api.deps import get_idempotency_redis, get_session_factory
from marketplace_escrow.infrastructure.database.repositories import OutboundEffectRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.common import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    redis: aioredis.Redis | None = Depends(get_idempotency_redis),
) -> HealthResponse:
    backlog: dict[str, int] = {}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            backlog = await OutboundEffectRepository(session).backlog()
        db_status = "healthy"
    except SQLAlchemyError as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if redis is None:
        redis_status = "disabled"
    else:
        try:
            await redis.ping()
            redis_status = "healthy"
        except aioredis.RedisError as exc:
            redis_status = f"unhealthy: {exc}"
            logger.warning("health.redis_check_failed", error=str(exc))

    return HealthResponse(
        status="ok" if db_status == "healthy" else "degraded",
        database=db_status,
        redis=redis_status,
        effects_pending=backlog.get("PENDING", 0),
        effects_failed=backlog.get("FAILED", 0),
    )

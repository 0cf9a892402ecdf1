"""Redis client for idempotency keys.

Create-offer and direct-purchase requests may carry an idempotency key.
The first request claims it with SET NX; a replay inside the TTL is
rejected with DuplicateOperationError. A request that fails releases its
key so the client can retry.

Usage:
    from marketplace_escrow.infrastructure.redis_client import get_redis, idempotent

    async with idempotent(get_redis(), "offers:create", key):
        ...
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import redis.asyncio as aioredis

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.exceptions import DuplicateOperationError
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def get_redis_or_none() -> aioredis.Redis | None:
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


def _idempotency_key(scope: str, key: str) -> str:
    return f"idempotency:{scope}:{key}"


async def claim_idempotency(redis: aioredis.Redis, scope: str, key: str) -> None:
    """Claim an idempotency key or raise DuplicateOperationError."""
    settings = get_settings()
    created = await redis.set(
        _idempotency_key(scope, key),
        "1",
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    if not created:
        logger.warning("idempotency.duplicate", scope=scope, key=key)
        raise DuplicateOperationError(key)


async def release_idempotency(redis: aioredis.Redis, scope: str, key: str) -> None:
    await redis.delete(_idempotency_key(scope, key))


@asynccontextmanager
async def idempotent(
    redis: aioredis.Redis | None,
    scope: str,
    key: str | None,
) -> AsyncIterator[None]:
    """Guard a block with an idempotency key.

    No-op when there is no key or no Redis connection.
    """
    if redis is None or not key:
        yield
        return
    await claim_idempotency(redis, scope, key)
    try:
        yield
    except Exception:
        await release_idempotency(redis, scope, key)
        raise

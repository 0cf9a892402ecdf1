"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the acting user, collaborators (gateway, identity, notifier), Redis, and
configuration.

Authentication is upstream of this service: the gateway in front of it
forwards the authenticated user id in the X-User-Id header.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator  # noqa: TC003 - FastAPI inspects signatures at runtime
from functools import lru_cache

import redis.asyncio as aioredis  # noqa: TC002
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.ports import (
    IdentityProvider,
    NotificationDispatcher,
    PaymentGateway,
)
from marketplace_escrow.infrastructure.database.engine import (
    _get_session_factory,
    unit_of_work,
)
from marketplace_escrow.infrastructure.gateways import (
    build_identity_provider,
    build_notification_dispatcher,
    build_payment_gateway,
)
from marketplace_escrow.infrastructure.redis_client import get_redis_or_none
from marketplace_escrow.services.transaction_service import SYSTEM_ACTOR


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the session factory, for routes that run their own units of work."""
    return _get_session_factory()


async def get_db_session(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for a request; committed when the handler returns."""
    async with unit_of_work(factory) as session:
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_actor_id(x_user_id: str | None = Header(default=None)) -> str:
    """The authenticated user id forwarded by the gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    if x_user_id == SYSTEM_ACTOR:
        raise HTTPException(status_code=400, detail="Reserved actor id")
    return x_user_id


def require_admin(
    actor_id: str = Depends(get_actor_id),
    settings: Settings = Depends(get_app_settings),
) -> str:
    if actor_id not in settings.admin_user_id_set:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return actor_id


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway(get_settings())


@lru_cache(maxsize=1)
def get_identity_provider() -> IdentityProvider:
    return build_identity_provider(get_settings())


@lru_cache(maxsize=1)
def get_notifier() -> NotificationDispatcher:
    return build_notification_dispatcher(get_settings())


def get_idempotency_redis() -> aioredis.Redis | None:
    """Provide the Redis client, or None when Redis is unavailable."""
    return get_redis_or_none()

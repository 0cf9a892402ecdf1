"""Shared test fixtures for the Marketplace Escrow test suite.

Provides:
    - Settings pinned for tests (in-memory SQLite, zero gateway backoff)
    - An in-memory database (one connection shared through StaticPool)
    - Simulated collaborators: payment gateway, identity provider, notifier
    - Factory helpers for listings and paid transactions

A test uses EITHER the `session` fixture OR units of work built from
`session_factory`, never both: StaticPool hands every session the same
connection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.enums import ListingStatus, PaymentMethod, VerificationLevel
from marketplace_escrow.infrastructure.database.engine import make_session_factory, unit_of_work
from marketplace_escrow.infrastructure.database.orm_models import Base, Listing
from marketplace_escrow.infrastructure.database.repositories import ListingRepository
from marketplace_escrow.infrastructure.gateways import (
    LoggingNotificationDispatcher,
    SimulatedPaymentGateway,
    StaticIdentityProvider,
)
from marketplace_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

SELLER = "seller-1"
BUYER = "buyer-1"
ADMIN = "admin-1"


# ---------------------------------------------------------------------------
# Configuration and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="sqlite+aiosqlite://",
        admin_user_ids=ADMIN,
        kyc_default_level="full",
        gateway_max_attempts=3,
        gateway_backoff_min_seconds=0,
        gateway_backoff_max_seconds=0,
    )


@pytest.fixture
def identity() -> StaticIdentityProvider:
    return StaticIdentityProvider(default_level=VerificationLevel.FULL)


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(seed=1)


@pytest.fixture
def notifier() -> LoggingNotificationDispatcher:
    return LoggingNotificationDispatcher()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(settings: Settings):
    engine = create_async_engine(
        settings.database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_listing(session_factory):
    """Create a listing, in the given session or in its own unit of work."""

    async def _make(session: AsyncSession | None = None, **overrides) -> Listing:
        values = {
            "seller_id": SELLER,
            "title": "Beach resort, 3 nights for two",
            "asking_price": 100_000,
            "original_price": 150_000,
            "negotiable": True,
            "status": ListingStatus.ACTIVE.value,
        }
        values.update(overrides)
        if session is not None:
            return await ListingRepository(session).create(Listing(**values))
        async with unit_of_work(session_factory) as uow_session:
            return await ListingRepository(uow_session).create(Listing(**values))

    return _make


@pytest.fixture
def make_paid_transaction(make_listing, settings, identity):
    """Buy a listing directly and confirm payment: the transaction ends ESCROW_HELD."""

    async def _make(session: AsyncSession, buyer_id: str = BUYER, **listing_overrides):
        listing = await make_listing(session, **listing_overrides)
        svc = TransactionService(session, settings, identity)
        txn = await svc.create_direct(listing.id, buyer_id, PaymentMethod.PIX)
        await svc.confirm_payment(txn.id, gateway_ref="sim_ch_test")
        return txn

    return _make


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@pytest.fixture
def idempotency_redis():
    """Redis for idempotency keys. None turns idempotency keys off."""
    return None


@pytest_asyncio.fixture
async def client(settings, session_factory, gateway, identity, notifier, idempotency_redis):
    """HTTP client against the app, wired to the test database and collaborators."""
    from marketplace_escrow.api import deps
    from marketplace_escrow.main import create_app

    app = create_app()
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_app_settings] = lambda: settings
    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_identity_provider] = lambda: identity
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_idempotency_redis] = lambda: idempotency_redis

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

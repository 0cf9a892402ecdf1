"""Concurrent acceptances of offers on one listing.

Runs against a file-backed SQLite database so every acceptance gets its own
connection. Write transactions begin IMMEDIATE, so SQLite serializes them
the way row locks do on PostgreSQL.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import create_async_engine

from marketplace_escrow.domain.enums import ListingStatus, OfferAction, OfferStatus
from marketplace_escrow.domain.exceptions import ListingAlreadySold
from marketplace_escrow.infrastructure.database.engine import make_session_factory, unit_of_work
from marketplace_escrow.infrastructure.database.orm_models import (
    Base,
    Listing,
    Offer,
    Transaction,
)
from marketplace_escrow.infrastructure.database.repositories import ListingRepository
from marketplace_escrow.services.offer_service import NegotiationResult, OfferService

SELLER = "seller-1"
BUYERS = [f"buyer-{n}" for n in range(6)]


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def open_offers(file_session_factory, settings, identity):
    async with unit_of_work(file_session_factory) as s:
        listing = await ListingRepository(s).create(
            Listing(
                seller_id=SELLER,
                title="Beach resort, 3 nights for two",
                asking_price=100_000,
                original_price=150_000,
                negotiable=True,
                status=ListingStatus.ACTIVE.value,
            )
        )
        svc = OfferService(s, settings, identity)
        offers = [
            await svc.create_offer(listing.id, buyer, 90_000 + n)
            for n, buyer in enumerate(BUYERS)
        ]
        return listing.id, [offer.id for offer in offers]


class TestConcurrentAcceptance:
    @pytest.mark.asyncio
    async def test_exactly_one_acceptance_wins(
        self, file_session_factory, settings, identity, open_offers
    ) -> None:
        listing_id, offer_ids = open_offers

        async def accept(offer_id):
            async with unit_of_work(file_session_factory) as s:
                return await OfferService(s, settings, identity).respond(
                    offer_id, SELLER, OfferAction.ACCEPT
                )

        results = await asyncio.gather(
            *(accept(offer_id) for offer_id in offer_ids), return_exceptions=True
        )

        winners = [r for r in results if isinstance(r, NegotiationResult)]
        losers = [r for r in results if not isinstance(r, NegotiationResult)]
        assert len(winners) == 1
        assert len(losers) == len(offer_ids) - 1
        assert all(isinstance(r, ListingAlreadySold) for r in losers), losers

        async with unit_of_work(file_session_factory) as s:
            txn_count = await s.scalar(
                select(func.count())
                .select_from(Transaction)
                .where(Transaction.listing_id == listing_id)
            )
            statuses = (
                await s.scalars(select(Offer.status).where(Offer.listing_id == listing_id))
            ).all()
            listing = await ListingRepository(s).get_by_id(listing_id)

        assert txn_count == 1
        assert list(statuses).count(OfferStatus.ACCEPTED.value) == 1
        assert listing.status == ListingStatus.SOLD.value

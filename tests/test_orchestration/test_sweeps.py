"""Tests for the scheduled sweeps.

Each sweep must be idempotent: running it twice changes state only once.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from marketplace_escrow.domain.enums import (
    DisputeReason,
    FundDisposition,
    OfferStatus,
    TransactionStatus,
)
from marketplace_escrow.infrastructure.database.engine import unit_of_work
from marketplace_escrow.orchestration import SweepReport, run_sweeps
from marketplace_escrow.orchestration.sweeps import (
    expire_offers,
    expire_payments,
    release_escrows,
)
from marketplace_escrow.services.offer_service import OfferService
from marketplace_escrow.services.transaction_service import TransactionService

SELLER = "seller-1"
BUYER = "buyer-1"


@pytest.fixture
def seed(session_factory, settings, identity, make_listing):
    """Create rows in committed units of work and return their ids."""

    async def _offer():
        async with unit_of_work(session_factory) as s:
            listing = await make_listing(s)
            offer = await OfferService(s, settings, identity).create_offer(
                listing.id, BUYER, 90_000
            )
            return offer.id

    async def _unpaid():
        async with unit_of_work(session_factory) as s:
            listing = await make_listing(s)
            txn = await TransactionService(s, settings, identity).create_direct(listing.id, BUYER)
            return txn.id

    async def _transferred():
        async with unit_of_work(session_factory) as s:
            listing = await make_listing(s)
            svc = TransactionService(s, settings, identity)
            txn = await svc.create_direct(listing.id, BUYER)
            await svc.confirm_payment(txn.id, gateway_ref="sim_ch_seed")
            await svc.confirm_transfer(txn.id, SELLER)
            return txn.id

    return {"offer": _offer, "unpaid": _unpaid, "transferred": _transferred}


async def _transaction(session_factory, settings, transaction_id):
    async with unit_of_work(session_factory) as s:
        svc = TransactionService(s, settings)
        return await svc.get_transaction(transaction_id), await svc.ledger.disposition(
            transaction_id
        )


class TestExpireOffers:
    @pytest.mark.asyncio
    async def test_runs_once(self, session_factory, settings, seed) -> None:
        offer_id = await seed["offer"]()
        later = datetime.now(UTC) + timedelta(hours=settings.offer_ttl_hours + 1)

        assert await expire_offers(datetime.now(UTC), session_factory, settings) == 0
        assert await expire_offers(later, session_factory, settings) == 1
        assert await expire_offers(later, session_factory, settings) == 0

        async with unit_of_work(session_factory) as s:
            offer = await OfferService(s, settings).get_offer(offer_id)
            assert offer.status == OfferStatus.EXPIRED.value
            assert offer.status_reason == "ttl_elapsed"


class TestExpirePayments:
    @pytest.mark.asyncio
    async def test_runs_once(self, session_factory, settings, seed) -> None:
        txn_id = await seed["unpaid"]()
        later = datetime.now(UTC) + timedelta(hours=settings.payment_deadline_hours + 1)

        assert await expire_payments(later, session_factory, settings) == 1
        assert await expire_payments(later, session_factory, settings) == 0

        txn, _ = await _transaction(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.CANCELLED.value
        assert txn.cancel_reason == "payment_deadline_exceeded"

    @pytest.mark.asyncio
    async def test_paid_transactions_untouched(self, session_factory, settings, seed) -> None:
        txn_id = await seed["transferred"]()
        later = datetime.now(UTC) + timedelta(hours=settings.payment_deadline_hours + 1)

        assert await expire_payments(later, session_factory, settings) == 0

        txn, _ = await _transaction(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.TRANSFER_PENDING.value


class TestReleaseEscrows:
    @pytest.mark.asyncio
    async def test_runs_once(self, session_factory, settings, seed) -> None:
        txn_id = await seed["transferred"]()
        later = datetime.now(UTC) + timedelta(days=settings.escrow_release_days + 1)

        assert await release_escrows(datetime.now(UTC), session_factory, settings) == 0
        assert await release_escrows(later, session_factory, settings) == 1
        assert await release_escrows(later, session_factory, settings) == 0

        txn, disposition = await _transaction(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.COMPLETED.value
        assert disposition == FundDisposition.RELEASED_TO_SELLER

    @pytest.mark.asyncio
    async def test_dispute_blocks_release(self, session_factory, settings, seed) -> None:
        txn_id = await seed["transferred"]()
        async with unit_of_work(session_factory) as s:
            await TransactionService(s, settings).open_dispute(
                txn_id, BUYER, DisputeReason.TRANSFER_REJECTED
            )
        later = datetime.now(UTC) + timedelta(days=settings.escrow_release_days + 1)

        assert await release_escrows(later, session_factory, settings) == 0

        txn, disposition = await _transaction(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.DISPUTE_OPENED.value
        assert disposition == FundDisposition.HELD


class TestRunSweeps:
    @pytest.mark.asyncio
    async def test_report(self, session_factory, settings, seed) -> None:
        await seed["offer"]()
        await seed["unpaid"]()
        await seed["transferred"]()
        later = datetime.now(UTC) + timedelta(days=30)

        report = await run_sweeps(later, session_factory, settings)

        assert report == SweepReport(offers_expired=1, payments_expired=1, escrows_released=1)
        again = await run_sweeps(later, session_factory, settings)
        assert again.to_dict() == {
            "offers_expired": 0,
            "payments_expired": 0,
            "escrows_released": 0,
        }

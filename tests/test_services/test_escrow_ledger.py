"""Tests for the escrow ledger: funds leave custody exactly once."""

from __future__ import annotations

import pytest

from marketplace_escrow.domain.enums import EffectKind, FundDisposition, PayoutParty
from marketplace_escrow.domain.exceptions import (
    AlreadyHeld,
    AlreadyReleased,
    InvalidPrice,
    LedgerIntegrityError,
    NotHeld,
)
from marketplace_escrow.infrastructure.database.repositories import OutboundEffectRepository
from marketplace_escrow.services.escrow_ledger import EscrowLedger
from marketplace_escrow.services.transaction_service import TransactionService


@pytest.fixture
def ledger(session) -> EscrowLedger:
    return EscrowLedger(session)


@pytest.fixture
def new_transaction(session, settings, identity, make_listing):
    async def _make():
        listing = await make_listing(session)
        return await TransactionService(session, settings, identity).create_direct(
            listing.id, "buyer-1"
        )

    return _make


class TestHold:
    @pytest.mark.asyncio
    async def test_hold(self, ledger, new_transaction) -> None:
        txn = await new_transaction()
        assert await ledger.disposition(txn.id) == FundDisposition.NONE

        hold = await ledger.hold(txn.id, 105_000)

        assert hold.held_amount == 105_000
        assert hold.is_active
        assert await ledger.disposition(txn.id) == FundDisposition.HELD

    @pytest.mark.asyncio
    async def test_double_hold(self, ledger, new_transaction) -> None:
        txn = await new_transaction()
        await ledger.hold(txn.id, 105_000)
        with pytest.raises(AlreadyHeld):
            await ledger.hold(txn.id, 105_000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, True])
    async def test_invalid_amount(self, ledger, new_transaction, amount) -> None:
        txn = await new_transaction()
        with pytest.raises(InvalidPrice):
            await ledger.hold(txn.id, amount)


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_enqueues_one_payout(self, session, ledger, new_transaction) -> None:
        txn = await new_transaction()
        await ledger.hold(txn.id, 105_000)

        hold = await ledger.release(
            txn.id, payout_amount=92_000, payee_ref="seller-1", reason="receipt_confirmed"
        )

        assert hold.released_to == PayoutParty.SELLER.value
        assert hold.payout_amount == 92_000
        assert await ledger.disposition(txn.id) == FundDisposition.RELEASED_TO_SELLER
        payouts = [
            e for e in await OutboundEffectRepository(session).get_by_transaction(txn.id)
            if e.kind == EffectKind.PAYOUT.value
        ]
        assert [p.payload["amount"] for p in payouts] == [92_000]

    @pytest.mark.asyncio
    async def test_second_release_leaves_row_unchanged(self, ledger, new_transaction) -> None:
        txn = await new_transaction()
        await ledger.hold(txn.id, 105_000)
        first = await ledger.release(
            txn.id, payout_amount=92_000, payee_ref="seller-1", reason="receipt_confirmed"
        )
        released_at = first.released_at

        with pytest.raises(AlreadyReleased) as exc_info:
            await ledger.refund(txn.id, payee_ref="buyer-1", reason="late refund")

        assert isinstance(exc_info.value, LedgerIntegrityError)
        hold = await ledger.get_hold(txn.id)
        assert hold.released_to == PayoutParty.SELLER.value
        assert hold.released_at == released_at
        assert hold.payout_amount == 92_000

    @pytest.mark.asyncio
    async def test_release_without_hold(self, ledger, new_transaction) -> None:
        txn = await new_transaction()
        with pytest.raises(NotHeld):
            await ledger.release(txn.id, payout_amount=1, payee_ref="seller-1", reason="x")

    @pytest.mark.asyncio
    async def test_payout_cannot_exceed_held(self, ledger, new_transaction) -> None:
        txn = await new_transaction()
        await ledger.hold(txn.id, 1_000)
        with pytest.raises(InvalidPrice):
            await ledger.release(txn.id, payout_amount=1_001, payee_ref="seller-1", reason="x")
        assert await ledger.disposition(txn.id) == FundDisposition.HELD

    @pytest.mark.asyncio
    async def test_refund_returns_full_amount(self, ledger, new_transaction) -> None:
        txn = await new_transaction()
        await ledger.hold(txn.id, 105_000)

        hold = await ledger.refund(txn.id, payee_ref="buyer-1", reason="dispute_resolved_buyer")

        assert hold.released_to == PayoutParty.BUYER.value
        assert hold.payout_amount == 105_000
        assert await ledger.disposition(txn.id) == FundDisposition.REFUNDED_TO_BUYER

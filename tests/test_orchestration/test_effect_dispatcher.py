"""Tests for the outbox dispatcher: payouts and notifications after commit."""

from __future__ import annotations

import pytest

from marketplace_escrow.domain.enums import EffectKind, EffectStatus
from marketplace_escrow.infrastructure.database.engine import unit_of_work
from marketplace_escrow.infrastructure.database.repositories import OutboundEffectRepository
from marketplace_escrow.services.effect_dispatcher import EffectDispatcher
from marketplace_escrow.services.transaction_service import TransactionService

SELLER = "seller-1"
BUYER = "buyer-1"


@pytest.fixture
def completed_transaction(session_factory, settings, identity, make_listing):
    async def _make():
        async with unit_of_work(session_factory) as s:
            listing = await make_listing(s)
            svc = TransactionService(s, settings, identity)
            txn = await svc.create_direct(listing.id, BUYER)
            await svc.confirm_payment(txn.id, gateway_ref="sim_ch_seed")
            await svc.confirm_transfer(txn.id, SELLER)
            await svc.confirm_receipt(txn.id, BUYER)
            return txn.id

    return _make


@pytest.fixture
def dispatcher(gateway, notifier, session_factory, settings) -> EffectDispatcher:
    return EffectDispatcher(gateway, notifier, session_factory, settings)


async def _effects(session_factory, transaction_id):
    async with unit_of_work(session_factory) as s:
        return await OutboundEffectRepository(s).get_by_transaction(transaction_id)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_delivers_payout_and_notifications(
        self, session_factory, dispatcher, gateway, notifier, completed_transaction
    ) -> None:
        txn_id = await completed_transaction()

        report = await dispatcher.dispatch_pending()

        assert report.failed == 0
        assert report.delivered > 1
        payouts = [c for c in gateway.calls if c[0] == "payout"]
        assert len(payouts) == 1
        assert {user for user, _, _ in notifier.sent} >= {BUYER, SELLER}

        effects = await _effects(session_factory, txn_id)
        assert all(e.status == EffectStatus.DELIVERED.value for e in effects)
        payout = next(e for e in effects if e.kind == EffectKind.PAYOUT.value)
        assert payout.payload["result"]["reference"].startswith("sim_po_")

    @pytest.mark.asyncio
    async def test_second_drain_is_a_noop(
        self, dispatcher, gateway, completed_transaction
    ) -> None:
        await completed_transaction()
        await dispatcher.dispatch_pending()
        calls = list(gateway.calls)

        report = await dispatcher.dispatch_pending()

        assert (report.delivered, report.failed) == (0, 0)
        assert gateway.calls == calls

    @pytest.mark.asyncio
    async def test_payout_failure_flags_transaction(
        self, session_factory, settings, dispatcher, gateway, completed_transaction
    ) -> None:
        txn_id = await completed_transaction()
        gateway.fail_next(settings.gateway_max_attempts)

        report = await dispatcher.dispatch_pending(kind=EffectKind.PAYOUT)

        assert report.failed == 1
        effects = await _effects(session_factory, txn_id)
        payout = next(e for e in effects if e.kind == EffectKind.PAYOUT.value)
        assert payout.status == EffectStatus.FAILED.value
        assert payout.attempts == settings.gateway_max_attempts

        async with unit_of_work(session_factory) as s:
            txn = await TransactionService(s, settings).get_transaction(txn_id)
            assert txn.needs_attention is True
            assert txn.attention_reason.startswith("payout_failed")
            assert txn.status == "COMPLETED"

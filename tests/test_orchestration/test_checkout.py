"""Tests for the checkout flow: intent, charge (with retries), confirmation."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from marketplace_escrow.domain.enums import (
    EffectKind,
    FundDisposition,
    PaymentMethod,
    TransactionStatus,
)
from marketplace_escrow.domain.exceptions import (
    GatewayError,
    IllegalTransition,
    NotTransactionParty,
    PaymentDeadlineExceeded,
)
from marketplace_escrow.infrastructure.database.engine import unit_of_work
from marketplace_escrow.infrastructure.database.repositories import OutboundEffectRepository
from marketplace_escrow.infrastructure.gateways import SimulatedPaymentGateway
from marketplace_escrow.orchestration import run_checkout
from marketplace_escrow.services.transaction_service import TransactionService

BUYER = "buyer-1"


@pytest.fixture
def new_transaction(session_factory, settings, identity, make_listing):
    async def _make(deadline: datetime | None = None, awaiting: bool = False):
        async with unit_of_work(session_factory) as s:
            listing = await make_listing(s)
            svc = TransactionService(s, settings, identity)
            txn = await svc.create_direct(listing.id, BUYER)
            if awaiting:
                await svc.mark_awaiting_payment(txn.id, PaymentMethod.PIX, actor_id=BUYER)
            if deadline is not None:
                txn.payment_deadline = deadline
            return txn.id

    return _make


async def _load(session_factory, settings, transaction_id):
    async with unit_of_work(session_factory) as s:
        svc = TransactionService(s, settings)
        return await svc.get_transaction(transaction_id), await svc.ledger.disposition(
            transaction_id
        )


class TestCheckout:
    @pytest.mark.asyncio
    async def test_success(self, session_factory, settings, gateway, new_transaction) -> None:
        txn_id = await new_transaction()

        state = await run_checkout(
            txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings
        )

        assert state["status"] == TransactionStatus.ESCROW_HELD.value
        assert state["amount"] == 105_000
        assert state["attempts"] == 1
        assert state["gateway_ref"].startswith("sim_ch_")
        assert gateway.calls == [("charge", f"charge:{txn_id}")]

        txn, disposition = await _load(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.ESCROW_HELD.value
        assert txn.payment_method == "PIX"
        assert txn.gateway_ref == state["gateway_ref"]
        assert disposition == FundDisposition.HELD

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(
        self, session_factory, settings, gateway, new_transaction
    ) -> None:
        txn_id = await new_transaction()
        gateway.fail_next(2)

        state = await run_checkout(
            txn_id, "BOLETO", BUYER, gateway, session_factory, settings
        )

        assert state["attempts"] == 3
        assert state["status"] == TransactionStatus.ESCROW_HELD.value

    @pytest.mark.asyncio
    async def test_exhausted_retries_flag_attention(
        self, session_factory, settings, gateway, new_transaction
    ) -> None:
        txn_id = await new_transaction()
        gateway.fail_next(settings.gateway_max_attempts)

        with pytest.raises(GatewayError):
            await run_checkout(txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings)

        txn, disposition = await _load(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.AWAITING_PAYMENT.value
        assert txn.needs_attention is True
        assert txn.attention_reason.startswith("charge_failed")
        assert disposition == FundDisposition.NONE

    @pytest.mark.asyncio
    async def test_retry_after_failure_reuses_intent(
        self, session_factory, settings, gateway, new_transaction
    ) -> None:
        txn_id = await new_transaction()
        gateway.fail_next(settings.gateway_max_attempts)
        with pytest.raises(GatewayError):
            await run_checkout(txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings)

        state = await run_checkout(
            txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings
        )

        assert state["status"] == TransactionStatus.ESCROW_HELD.value

    @pytest.mark.asyncio
    async def test_only_buyer_pays(
        self, session_factory, settings, gateway, new_transaction
    ) -> None:
        txn_id = await new_transaction()
        with pytest.raises(NotTransactionParty):
            await run_checkout(
                txn_id, PaymentMethod.PIX, "seller-1", gateway, session_factory, settings
            )
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_deadline_passed(
        self, session_factory, settings, gateway, new_transaction
    ) -> None:
        txn_id = await new_transaction(deadline=datetime.now(UTC) - timedelta(minutes=1))

        with pytest.raises(PaymentDeadlineExceeded):
            await run_checkout(txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings)

        txn, _ = await _load(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.CANCELLED.value
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_deadline_passed_while_awaiting_payment(
        self, session_factory, settings, gateway, new_transaction
    ) -> None:
        txn_id = await new_transaction(
            deadline=datetime.now(UTC) - timedelta(hours=1), awaiting=True
        )

        with pytest.raises(PaymentDeadlineExceeded):
            await run_checkout(txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings)

        txn, disposition = await _load(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.CANCELLED.value
        assert disposition == FundDisposition.NONE
        assert gateway.calls == []


class _CancelDuringCharge(SimulatedPaymentGateway):
    """Charges, then lets the payment deadline pass before checkout confirms."""

    def __init__(self, session_factory) -> None:
        super().__init__(seed=1)
        self._session_factory = session_factory

    async def charge(self, amount, method, payer_ref, idempotency_key):
        ref = await super().charge(amount, method, payer_ref, idempotency_key)
        transaction_id = uuid.UUID(idempotency_key.removeprefix("charge:"))
        async with unit_of_work(self._session_factory) as s:
            txn = await TransactionService(s).get_transaction(transaction_id)
            txn.payment_deadline = datetime.now(UTC) - timedelta(minutes=1)
        return ref


class TestChargeAfterCancel:
    @pytest.mark.asyncio
    async def test_late_charge_is_refunded(
        self, session_factory, settings, new_transaction
    ) -> None:
        gateway = _CancelDuringCharge(session_factory)
        txn_id = await new_transaction()

        with pytest.raises(PaymentDeadlineExceeded):
            await run_checkout(txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings)

        txn, disposition = await _load(session_factory, settings, txn_id)
        assert txn.status == TransactionStatus.CANCELLED.value
        assert disposition == FundDisposition.REFUNDED_TO_BUYER
        assert txn.needs_attention is True
        assert txn.attention_reason.startswith("charged_after_cancel")

        async with unit_of_work(session_factory) as s:
            effects = await OutboundEffectRepository(s).get_by_transaction(txn_id)
        payouts = [e for e in effects if e.kind == EffectKind.PAYOUT.value]
        assert len(payouts) == 1
        assert payouts[0].payload["party"] == "buyer"
        assert payouts[0].payload["payee_ref"] == BUYER
        assert payouts[0].payload["amount"] == 105_000

    @pytest.mark.asyncio
    async def test_rerun_after_refund_does_not_charge_again(
        self, session_factory, settings, new_transaction
    ) -> None:
        gateway = _CancelDuringCharge(session_factory)
        txn_id = await new_transaction()
        with pytest.raises(PaymentDeadlineExceeded):
            await run_checkout(txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings)
        calls = list(gateway.calls)

        with pytest.raises(IllegalTransition):
            await run_checkout(txn_id, PaymentMethod.PIX, BUYER, gateway, session_factory, settings)

        assert gateway.calls == calls

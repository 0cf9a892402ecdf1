"""Checkout workflow — charge the buyer, then place the funds in escrow.

    mark_awaiting_payment -> (commit) -> gateway.charge -> confirm_payment

The charge runs with no database transaction open. Each database step is
its own unit of work, so a crash between the charge and the confirmation
leaves the transaction in AWAITING_PAYMENT; rerunning checkout reuses the
same idempotency key and the gateway returns the original charge.

The deadline is enforced before the charge. If the transaction is cancelled
while the charge is in flight, the charge is recorded in the ledger and
refunded to the buyer, and the transaction is flagged needs_attention.

Usage:
    from marketplace_escrow.orchestration.checkout import run_checkout

    result = await run_checkout(
        transaction_id=txn.id,
        payment_method=PaymentMethod.PIX,
        actor_id="buyer-1",
        gateway=gateway,
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypedDict

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import PaymentMethod, TransactionStatus
from marketplace_escrow.domain.exceptions import (
    GatewayError,
    IllegalTransition,
    NotTransactionParty,
    PaymentDeadlineExceeded,
)
from marketplace_escrow.infrastructure.database.engine import unit_of_work
from marketplace_escrow.infrastructure.gateways import gateway_retry
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.domain.ports import GatewayRef, PaymentGateway

logger = get_logger(__name__)


class CheckoutState(TypedDict, total=False):
    """Outcome of one checkout run."""

    transaction_id: str
    status: str
    amount: int
    payment_method: str
    gateway_ref: str
    attempts: int


async def run_checkout(
    transaction_id: uuid.UUID,
    payment_method: PaymentMethod | str,
    actor_id: str,
    gateway: PaymentGateway,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> CheckoutState:
    """Charge the buyer and confirm the payment.

    Raises:
        NotTransactionParty: the actor is not the buyer.
        PaymentDeadlineExceeded: the deadline passed; the cancel is committed.
            When this happens after the charge, a refund payout is queued.
        IllegalTransition: the transaction is no longer payable.
        GatewayError: the charge failed after retries; the transaction is
            flagged needs_attention and stays AWAITING_PAYMENT.
    """
    settings = settings or get_settings()
    method = PaymentMethod(payment_method)

    # --- Step 1: record the intent to pay ---
    async with unit_of_work(session_factory) as session:
        svc = TransactionService(session, settings)
        txn = await svc.get_transaction(transaction_id)
        if actor_id != txn.buyer_id:
            raise NotTransactionParty(str(transaction_id), actor_id, "buyer")
        if txn.status == TransactionStatus.AWAITING_PAYMENT.value:
            txn = await svc.require_payable(transaction_id)
        else:
            txn = await svc.mark_awaiting_payment(transaction_id, method, actor_id=actor_id)
        amount = txn.total_buyer_payment
        buyer_id = txn.buyer_id

    state: CheckoutState = {
        "transaction_id": str(transaction_id),
        "amount": amount,
        "payment_method": method.value,
        "attempts": 0,
    }

    # --- Step 2: charge, outside any database transaction ---
    @gateway_retry(settings)
    async def _charge() -> GatewayRef:
        state["attempts"] += 1
        return await gateway.charge(
            amount=amount,
            method=method,
            payer_ref=buyer_id,
            idempotency_key=f"charge:{transaction_id}",
        )

    try:
        ref = await _charge()
    except GatewayError as exc:
        logger.error(
            "checkout.charge_failed",
            transaction_id=str(transaction_id),
            attempts=state["attempts"],
            error=exc.message,
        )
        async with unit_of_work(session_factory) as session:
            await TransactionService(session, settings).flag_for_attention(
                transaction_id, reason=f"charge_failed: {exc.message}"
            )
        raise

    state["gateway_ref"] = ref.reference

    # --- Step 3: confirm and hold ---
    try:
        async with unit_of_work(session_factory) as session:
            txn = await TransactionService(session, settings).confirm_payment(
                transaction_id, ref.reference, actor_id=actor_id
            )
            state["status"] = txn.status
    except (PaymentDeadlineExceeded, IllegalTransition):
        # The buyer has been charged but the transaction left the payable states.
        await _return_charge_if_cancelled(transaction_id, ref, session_factory, settings)
        raise

    logger.info(
        "checkout.completed",
        transaction_id=str(transaction_id),
        gateway_ref=ref.reference,
        attempts=state["attempts"],
    )
    return state


async def _return_charge_if_cancelled(
    transaction_id: uuid.UUID,
    ref: GatewayRef,
    session_factory: async_sessionmaker[AsyncSession] | None,
    settings: Settings,
) -> None:
    async with unit_of_work(session_factory) as session:
        svc = TransactionService(session, settings)
        txn = await svc.get_transaction(transaction_id)
        if txn.status != TransactionStatus.CANCELLED.value:
            # A concurrent checkout already confirmed this same charge.
            return
        await svc.refund_late_charge(transaction_id, ref.reference)

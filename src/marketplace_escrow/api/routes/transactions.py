"""Transaction REST API routes.

Routes:
    POST   /api/v1/transactions                         — Direct purchase at asking price
    GET    /api/v1/transactions                         — List the actor's transactions
    GET    /api/v1/transactions/{id}                    — Get transaction details
    GET    /api/v1/transactions/{id}/status             — Lightweight status check
    GET    /api/v1/transactions/{id}/events             — Audit trail (incl. ledger)
    POST   /api/v1/transactions/{id}/checkout           — Charge buyer, hold in escrow
    POST   /api/v1/transactions/{id}/confirm-transfer   — Seller confirms transfer
    POST   /api/v1/transactions/{id}/confirm-receipt    — Buyer confirms, releases funds
    POST   /api/v1/transactions/{id}/cancel             — Cancel before funds are held
    POST   /api/v1/transactions/{id}/disputes           — Open a dispute
    GET    /api/v1/transactions/{id}/disputes           — List disputes
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI inspects signatures at runtime

import redis.asyncio as aioredis  # noqa: TC002
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from marketplace_escrow.api.deps import (
    get_actor_id,
    get_app_settings,
    get_db_session,
    get_idempotency_redis,
    get_identity_provider,
    get_payment_gateway,
    get_session_factory,
)
from marketplace_escrow.config import Settings  # noqa: TC001
from marketplace_escrow.domain.exceptions import NotTransactionParty
from marketplace_escrow.domain.ports import IdentityProvider, PaymentGateway  # noqa: TC001
from marketplace_escrow.infrastructure.redis_client import idempotent
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.orchestration.checkout import run_checkout
from marketplace_escrow.presentation.labels import transaction_label
from marketplace_escrow.schemas.common import AuditEventResponse
from marketplace_escrow.schemas.transactions import (
    CancelTransactionRequest,
    CheckoutRequest,
    CheckoutResponse,
    DirectPurchaseRequest,
    DisputeResponse,
    OpenDisputeRequest,
    TransactionResponse,
    TransactionStatusResponse,
)
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.transaction_service import TransactionService

router = APIRouter(prefix="/api/v1/transactions", tags=["Transactions"])
logger = get_logger(__name__)


async def _visible_transaction(
    svc: TransactionService,
    transaction_id: uuid.UUID,
    actor_id: str,
    settings: Settings,
):  # noqa: ANN202
    txn = await svc.get_transaction(transaction_id)
    if actor_id not in (txn.buyer_id, txn.seller_id) and actor_id not in (
        settings.admin_user_id_set
    ):
        raise NotTransactionParty(str(transaction_id), actor_id, "buyer or seller")
    return txn


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=TransactionResponse,
    status_code=201,
    summary="Buy a listing at its asking price",
)
async def direct_purchase(
    request: DirectPurchaseRequest,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    identity: IdentityProvider = Depends(get_identity_provider),
    redis: aioredis.Redis | None = Depends(get_idempotency_redis),
) -> TransactionResponse:
    """Create an INITIATED transaction and mark the listing SOLD."""
    svc = TransactionService(session, settings, identity)
    async with idempotent(redis, f"transactions:create:{actor_id}", request.idempotency_key):
        txn = await svc.create_direct(
            listing_id=request.listing_id,
            buyer_id=actor_id,
            payment_method=request.payment_method,
        )
    return TransactionResponse.model_validate(txn)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[TransactionResponse],
    summary="List transactions where the actor is buyer or seller",
)
async def list_transactions(
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> list[TransactionResponse]:
    txns = await TransactionService(session, settings).list_for_participant(actor_id)
    return [TransactionResponse.model_validate(t) for t in txns]


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get transaction details",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> TransactionResponse:
    svc = TransactionService(session, settings)
    txn = await _visible_transaction(svc, transaction_id, actor_id, settings)
    return TransactionResponse.model_validate(txn)


@router.get(
    "/{transaction_id}/status",
    response_model=TransactionStatusResponse,
    summary="Lightweight status check",
)
async def get_transaction_status(
    transaction_id: uuid.UUID,
    locale: str | None = Query(default=None, description="pt-BR or en"),
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> TransactionStatusResponse:
    """Status, fund disposition and the events that can fire next."""
    svc = TransactionService(session, settings)
    await _visible_transaction(svc, transaction_id, actor_id, settings)
    status = await svc.get_status(transaction_id)
    label = transaction_label(status["status"], locale)
    return TransactionStatusResponse(**status, label=label.label, progress=label.progress)


@router.get(
    "/{transaction_id}/events",
    response_model=list[AuditEventResponse],
    summary="Get transaction audit trail",
)
async def get_transaction_events(
    transaction_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> list[AuditEventResponse]:
    svc = TransactionService(session, settings)
    await _visible_transaction(svc, transaction_id, actor_id, settings)
    events = await svc.get_events(transaction_id)
    return [AuditEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@router.post(
    "/{transaction_id}/checkout",
    response_model=CheckoutResponse,
    summary="Charge the buyer and hold the funds in escrow",
)
async def checkout(
    transaction_id: uuid.UUID,
    request: CheckoutRequest,
    actor_id: str = Depends(get_actor_id),
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CheckoutResponse:
    """Runs its own units of work so the gateway call never holds a row lock."""
    state = await run_checkout(
        transaction_id=transaction_id,
        payment_method=request.payment_method,
        actor_id=actor_id,
        gateway=gateway,
        session_factory=session_factory,
        settings=settings,
    )
    return CheckoutResponse(**state)


# ---------------------------------------------------------------------------
# Transfer and completion
# ---------------------------------------------------------------------------


@router.post(
    "/{transaction_id}/confirm-transfer",
    response_model=TransactionResponse,
    summary="Seller confirms the reservation was transferred",
)
async def confirm_transfer(
    transaction_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> TransactionResponse:
    txn = await TransactionService(session, settings).confirm_transfer(transaction_id, actor_id)
    return TransactionResponse.model_validate(txn)


@router.post(
    "/{transaction_id}/confirm-receipt",
    response_model=TransactionResponse,
    summary="Buyer confirms receipt; escrow is released to the seller",
)
async def confirm_receipt(
    transaction_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> TransactionResponse:
    txn = await TransactionService(session, settings).confirm_receipt(transaction_id, actor_id)
    return TransactionResponse.model_validate(txn)


@router.post(
    "/{transaction_id}/cancel",
    response_model=TransactionResponse,
    summary="Cancel a transaction whose funds are not yet held",
)
async def cancel_transaction(
    transaction_id: uuid.UUID,
    request: CancelTransactionRequest,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> TransactionResponse:
    txn = await TransactionService(session, settings).cancel(
        transaction_id, reason=request.reason, actor_id=actor_id
    )
    return TransactionResponse.model_validate(txn)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.post(
    "/{transaction_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    summary="Open a dispute and freeze the transaction",
)
async def open_dispute(
    transaction_id: uuid.UUID,
    request: OpenDisputeRequest,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> DisputeResponse:
    svc = DisputeService(session, settings)
    dispute_id = await svc.open(transaction_id, actor_id, request.reason, request.description)
    return DisputeResponse.model_validate(await svc.get(dispute_id))


@router.get(
    "/{transaction_id}/disputes",
    response_model=list[DisputeResponse],
    summary="List disputes of a transaction",
)
async def list_disputes(
    transaction_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> list[DisputeResponse]:
    svc = TransactionService(session, settings)
    await _visible_transaction(svc, transaction_id, actor_id, settings)
    disputes = await svc.get_disputes(transaction_id)
    return [DisputeResponse.model_validate(d) for d in disputes]

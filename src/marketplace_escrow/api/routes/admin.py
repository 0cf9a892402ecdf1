"""Operator REST API routes. Every route requires an admin actor.

Routes:
    POST   /api/v1/admin/transactions/{id}/force-refund  — Refund held funds
    POST   /api/v1/admin/sweeps/run                      — Run expiry / release sweeps
    POST   /api/v1/admin/effects/dispatch                — Drain the outbox
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI inspects signatures at runtime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from marketplace_escrow.api.deps import (
    get_app_settings,
    get_db_session,
    get_notifier,
    get_payment_gateway,
    get_session_factory,
    require_admin,
)
from marketplace_escrow.config import Settings  # noqa: TC001
from marketplace_escrow.domain.ports import NotificationDispatcher, PaymentGateway  # noqa: TC001
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.orchestration.sweeps import run_sweeps
from marketplace_escrow.schemas.transactions import (
    DispatchResponse,
    ForceRefundRequest,
    SweepResponse,
    TransactionResponse,
)
from marketplace_escrow.services.effect_dispatcher import EffectDispatcher
from marketplace_escrow.services.transaction_service import TransactionService

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])
logger = get_logger(__name__)


@router.post(
    "/transactions/{transaction_id}/force-refund",
    response_model=TransactionResponse,
    summary="Refund the buyer from escrow",
)
async def force_refund(
    transaction_id: uuid.UUID,
    request: ForceRefundRequest,
    admin_id: str = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> TransactionResponse:
    txn = await TransactionService(session, settings).force_refund(
        transaction_id, admin_id=admin_id, reason=request.reason
    )
    return TransactionResponse.model_validate(txn)


@router.post(
    "/sweeps/run",
    response_model=SweepResponse,
    summary="Expire offers and payments, auto-release escrows",
)
async def run_sweeps_now(
    admin_id: str = Depends(require_admin),
    settings: Settings = Depends(get_app_settings),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SweepResponse:
    logger.info("admin.sweeps_requested", admin_id=admin_id)
    report = await run_sweeps(session_factory=session_factory, settings=settings)
    return SweepResponse(**report.to_dict())


@router.post(
    "/effects/dispatch",
    response_model=DispatchResponse,
    summary="Deliver pending payouts and notifications",
)
async def dispatch_effects(
    limit: int | None = Query(default=None, ge=1, le=1000),
    admin_id: str = Depends(require_admin),
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> DispatchResponse:
    logger.info("admin.dispatch_requested", admin_id=admin_id)
    dispatcher = EffectDispatcher(gateway, notifier, session_factory, settings)
    report = await dispatcher.dispatch_pending(limit=limit)
    return DispatchResponse(
        delivered=report.delivered, failed=report.failed, skipped=report.skipped
    )

"""Dispute mediation REST API routes.

Opening a dispute lives under /transactions/{id}/disputes; this router is
the mediator's side.

Routes:
    GET    /api/v1/disputes/{id}          — Get dispute details
    POST   /api/v1/disputes/{id}/resolve  — Mediator resolves (admin only)
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI inspects signatures at runtime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from marketplace_escrow.api.deps import (
    get_actor_id,
    get_app_settings,
    get_db_session,
    require_admin,
)
from marketplace_escrow.config import Settings  # noqa: TC001
from marketplace_escrow.domain.exceptions import NotTransactionParty
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.transactions import (
    DisputeResponse,
    ResolveDisputeRequest,
    TransactionResponse,
)
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.transaction_service import TransactionService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])
logger = get_logger(__name__)


@router.get(
    "/{dispute_id}",
    response_model=DisputeResponse,
    summary="Get dispute details",
)
async def get_dispute(
    dispute_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> DisputeResponse:
    dispute = await DisputeService(session, settings).get(dispute_id)
    txn = await TransactionService(session, settings).get_transaction(dispute.transaction_id)
    if actor_id not in (txn.buyer_id, txn.seller_id) and actor_id not in (
        settings.admin_user_id_set
    ):
        raise NotTransactionParty(str(txn.id), actor_id, "buyer or seller")
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/resolve",
    response_model=TransactionResponse,
    summary="Resolve a dispute in favour of the seller or the buyer",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    mediator_id: str = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> TransactionResponse:
    """release_seller completes the sale; refund_buyer refunds the full payment."""
    txn = await DisputeService(session, settings).resolve(
        dispute_id, request.resolution, mediator_id
    )
    logger.info(
        "dispute.resolved_via_api",
        dispute_id=str(dispute_id),
        resolution=request.resolution.value,
    )
    return TransactionResponse.model_validate(txn)

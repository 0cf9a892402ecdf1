"""Offer negotiation REST API routes.

Routes:
    POST   /api/v1/offers                       — Buyer makes an offer
    GET    /api/v1/offers                       — List the actor's offers
    GET    /api/v1/offers/{id}                  — Get offer details
    GET    /api/v1/offers/{id}/events           — Get audit trail
    POST   /api/v1/offers/{id}/respond          — Seller accepts / rejects / counters
    POST   /api/v1/offers/{id}/accept-counter   — Buyer accepts the counter
    POST   /api/v1/offers/{id}/decline-counter  — Buyer declines the counter
    POST   /api/v1/offers/{id}/withdraw         — Buyer withdraws
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI inspects signatures at runtime
from typing import Literal

import redis.asyncio as aioredis  # noqa: TC002
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from marketplace_escrow.api.deps import (
    get_actor_id,
    get_app_settings,
    get_db_session,
    get_idempotency_redis,
    get_identity_provider,
)
from marketplace_escrow.config import Settings  # noqa: TC001
from marketplace_escrow.domain.enums import OfferStatus
from marketplace_escrow.domain.exceptions import NotOfferOwner
from marketplace_escrow.domain.ports import IdentityProvider  # noqa: TC001
from marketplace_escrow.infrastructure.redis_client import idempotent
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.common import AuditEventResponse
from marketplace_escrow.schemas.offers import (
    CreateOfferRequest,
    NegotiationResponse,
    OfferResponse,
    RespondOfferRequest,
)
from marketplace_escrow.services.offer_service import NegotiationResult, OfferService

router = APIRouter(prefix="/api/v1/offers", tags=["Offers"])
logger = get_logger(__name__)


def _negotiation_response(result: NegotiationResult) -> NegotiationResponse:
    txn = result.transaction
    return NegotiationResponse(
        offer=OfferResponse.model_validate(result.offer),
        transaction_id=txn.id if txn is not None else None,
        transaction_code=txn.code if txn is not None else None,
    )


async def _visible_offer(svc: OfferService, offer_id: uuid.UUID, actor_id: str):  # noqa: ANN202
    offer = await svc.get_offer(offer_id)
    if actor_id not in (offer.buyer_id, offer.seller_id):
        raise NotOfferOwner(str(offer_id), actor_id)
    return offer


# ---------------------------------------------------------------------------
# Buyer
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=OfferResponse,
    status_code=201,
    summary="Make an offer on a listing",
)
async def create_offer(
    request: CreateOfferRequest,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    identity: IdentityProvider = Depends(get_identity_provider),
    redis: aioredis.Redis | None = Depends(get_idempotency_redis),
) -> OfferResponse:
    """Create a PENDING offer. The listing must be ACTIVE and negotiable."""
    svc = OfferService(session, settings, identity)
    async with idempotent(redis, f"offers:create:{actor_id}", request.idempotency_key):
        offer = await svc.create_offer(
            listing_id=request.listing_id,
            buyer_id=actor_id,
            amount=request.amount,
            message=request.message,
        )
    return OfferResponse.model_validate(offer)


@router.post(
    "/{offer_id}/accept-counter",
    response_model=NegotiationResponse,
    summary="Accept the seller's counter-offer",
)
async def accept_counter(
    offer_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> NegotiationResponse:
    svc = OfferService(session, settings, identity)
    result = await svc.accept_counter(offer_id, actor_id)
    return _negotiation_response(result)


@router.post(
    "/{offer_id}/decline-counter",
    response_model=OfferResponse,
    summary="Decline the seller's counter-offer",
)
async def decline_counter(
    offer_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> OfferResponse:
    offer = await OfferService(session, settings).decline_counter(offer_id, actor_id)
    return OfferResponse.model_validate(offer)


@router.post(
    "/{offer_id}/withdraw",
    response_model=OfferResponse,
    summary="Withdraw an open offer",
)
async def withdraw_offer(
    offer_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> OfferResponse:
    offer = await OfferService(session, settings).withdraw(offer_id, actor_id)
    return OfferResponse.model_validate(offer)


# ---------------------------------------------------------------------------
# Seller
# ---------------------------------------------------------------------------


@router.post(
    "/{offer_id}/respond",
    response_model=NegotiationResponse,
    summary="Accept, reject or counter a pending offer",
)
async def respond_to_offer(
    offer_id: uuid.UUID,
    request: RespondOfferRequest,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> NegotiationResponse:
    """Accepting creates the transaction and expires every other open offer."""
    svc = OfferService(session, settings, identity)
    result = await svc.respond(
        offer_id,
        actor_id,
        request.action,
        counter_amount=request.counter_amount,
        counter_message=request.counter_message,
    )
    return _negotiation_response(result)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[OfferResponse],
    summary="List offers made or received by the actor",
)
async def list_offers(
    role: Literal["buyer", "seller"] = Query(default="buyer"),
    listing_id: uuid.UUID | None = Query(default=None),
    status: OfferStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> list[OfferResponse]:
    svc = OfferService(session, settings)
    offers = await svc.list_offers(
        listing_id=listing_id,
        buyer_id=actor_id if role == "buyer" else None,
        seller_id=actor_id if role == "seller" else None,
        status=status,
        limit=limit,
        offset=offset,
    )
    return [OfferResponse.model_validate(o) for o in offers]


@router.get(
    "/{offer_id}",
    response_model=OfferResponse,
    summary="Get offer details",
)
async def get_offer(
    offer_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> OfferResponse:
    offer = await _visible_offer(OfferService(session, settings), offer_id, actor_id)
    return OfferResponse.model_validate(offer)


@router.get(
    "/{offer_id}/events",
    response_model=list[AuditEventResponse],
    summary="Get offer audit trail",
)
async def get_offer_events(
    offer_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> list[AuditEventResponse]:
    svc = OfferService(session, settings)
    await _visible_offer(svc, offer_id, actor_id)
    events = await svc.get_events(offer_id)
    return [AuditEventResponse.model_validate(e) for e in events]

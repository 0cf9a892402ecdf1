"""Pydantic schemas for the Offers API."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketplace_escrow.domain.enums import OfferAction

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateOfferRequest(BaseModel):
    """Request body for a buyer's offer on a listing."""

    listing_id: uuid.UUID
    amount: int = Field(..., gt=0, description="Offered price in cents", examples=[90000])
    message: str | None = Field(default=None, max_length=2000)
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Optional key; a reused key is rejected as a duplicate",
    )


class RespondOfferRequest(BaseModel):
    """Seller's answer to a pending offer."""

    action: OfferAction
    counter_amount: int | None = Field(
        default=None,
        gt=0,
        description="Required when action is 'counter'",
    )
    counter_message: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _counter_needs_amount(self) -> RespondOfferRequest:
        if self.action == OfferAction.COUNTER and self.counter_amount is None:
            raise ValueError("counter_amount is required when countering")
        return self


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class OfferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    listing_id: uuid.UUID
    buyer_id: str
    seller_id: str
    amount: int
    message: str | None
    status: str
    status_reason: str | None
    counter_amount: int | None
    counter_message: str | None
    expires_at: datetime
    responded_at: datetime | None
    created_at: datetime
    updated_at: datetime


class NegotiationResponse(BaseModel):
    """An offer after a response; transaction_id is set when it was accepted."""

    offer: OfferResponse
    transaction_id: uuid.UUID | None = None
    transaction_code: str | None = None

"""Pydantic schemas for the Transactions and Disputes APIs."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import (
    DisputeReason,
    DisputeResolution,
    PaymentMethod,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class DirectPurchaseRequest(BaseModel):
    """Buy a listing at its asking price."""

    listing_id: uuid.UUID
    payment_method: PaymentMethod | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class CheckoutRequest(BaseModel):
    payment_method: PaymentMethod = Field(..., examples=["PIX"])


class CancelTransactionRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=2000)


class OpenDisputeRequest(BaseModel):
    """Request body for opening a dispute on a transaction."""

    reason: DisputeReason
    description: str | None = Field(default=None, max_length=5000)


class ResolveDisputeRequest(BaseModel):
    resolution: DisputeResolution


class ForceRefundRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    """Response schema for a transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    listing_id: uuid.UUID
    offer_id: uuid.UUID | None
    buyer_id: str
    seller_id: str
    status: str
    agreed_price: int
    buyer_fee_rate: Decimal
    platform_fee_rate: Decimal
    buyer_fee: int
    seller_fee: int
    platform_fee: int
    seller_net_amount: int
    total_buyer_payment: int
    payment_method: str | None
    gateway_ref: str | None
    payment_deadline: datetime
    paid_at: datetime | None
    transfer_confirmed_at: datetime | None
    escrow_release_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    needs_attention: bool
    attention_reason: str | None
    created_at: datetime
    updated_at: datetime


class TransactionStatusResponse(BaseModel):
    """Lightweight status check response."""

    transaction_id: uuid.UUID
    code: str
    status: str
    label: str
    progress: int
    disposition: str
    needs_attention: bool
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class CheckoutResponse(BaseModel):
    transaction_id: uuid.UUID
    status: str
    amount: int
    payment_method: str
    gateway_ref: str
    attempts: int


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    protocol: str
    transaction_id: uuid.UUID
    opened_by: str
    reason: str
    description: str | None
    status: str
    opened_at: datetime
    resolution: str | None
    mediator_id: str | None
    resolved_at: datetime | None


class SweepResponse(BaseModel):
    offers_expired: int
    payments_expired: int
    escrows_released: int


class DispatchResponse(BaseModel):
    delivered: int
    failed: int
    skipped: int

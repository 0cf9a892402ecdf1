"""Pydantic API schemas."""

from marketplace_escrow.schemas.common import AuditEventResponse, ErrorResponse, HealthResponse
from marketplace_escrow.schemas.offers import (
    CreateOfferRequest,
    NegotiationResponse,
    OfferResponse,
    RespondOfferRequest,
)
from marketplace_escrow.schemas.transactions import (
    CancelTransactionRequest,
    CheckoutRequest,
    CheckoutResponse,
    DirectPurchaseRequest,
    DispatchResponse,
    DisputeResponse,
    ForceRefundRequest,
    OpenDisputeRequest,
    ResolveDisputeRequest,
    SweepResponse,
    TransactionResponse,
    TransactionStatusResponse,
)

__all__ = [
    "AuditEventResponse",
    "CancelTransactionRequest",
    "CheckoutRequest",
    "CheckoutResponse",
    "CreateOfferRequest",
    "DirectPurchaseRequest",
    "DispatchResponse",
    "DisputeResponse",
    "ErrorResponse",
    "ForceRefundRequest",
    "HealthResponse",
    "NegotiationResponse",
    "OfferResponse",
    "OpenDisputeRequest",
    "ResolveDisputeRequest",
    "RespondOfferRequest",
    "SweepResponse",
    "TransactionResponse",
    "TransactionStatusResponse",
]

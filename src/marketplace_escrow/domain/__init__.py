"""Domain layer — pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.enums import (
    EventType,
    ListingStatus,
    OfferStatus,
    TransactionStatus,
)
from marketplace_escrow.domain.exceptions import (
    EscrowEngineError,
    IllegalTransition,
    TransactionNotFound,
)
from marketplace_escrow.domain.fees import FeeBreakdown, compute_fees
from marketplace_escrow.domain.ports import (
    IdentityProvider,
    NotificationDispatcher,
    PaymentGateway,
)
from marketplace_escrow.domain.state_machine import (
    OfferStateMachine,
    TransactionStateMachine,
    guard_transition,
    transition_table,
    validate_transition,
)

__all__ = [
    "EventType",
    "ListingStatus",
    "OfferStatus",
    "TransactionStatus",
    "EscrowEngineError",
    "IllegalTransition",
    "TransactionNotFound",
    "FeeBreakdown",
    "compute_fees",
    "IdentityProvider",
    "NotificationDispatcher",
    "PaymentGateway",
    "OfferStateMachine",
    "TransactionStateMachine",
    "guard_transition",
    "transition_table",
    "validate_transition",
]

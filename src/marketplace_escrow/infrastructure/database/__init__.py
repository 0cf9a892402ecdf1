"""Database infrastructure — engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    close_db,
    init_db,
    make_session_factory,
    unit_of_work,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Base,
    Dispute,
    EscrowHold,
    Listing,
    Offer,
    OutboundEffect,
    Transaction,
)
from marketplace_escrow.infrastructure.database.repositories import (
    AuditEventRepository,
    DisputeRepository,
    EscrowHoldRepository,
    ListingRepository,
    OfferRepository,
    OutboundEffectRepository,
    TransactionRepository,
)

__all__ = [
    "Base",
    "AuditEvent",
    "Dispute",
    "EscrowHold",
    "Listing",
    "Offer",
    "OutboundEffect",
    "Transaction",
    "AuditEventRepository",
    "DisputeRepository",
    "EscrowHoldRepository",
    "ListingRepository",
    "OfferRepository",
    "OutboundEffectRepository",
    "TransactionRepository",
    "make_session_factory",
    "unit_of_work",
    "init_db",
    "close_db",
]

"""Domain enumerations for the Marketplace Escrow Engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class ListingStatus(enum.StrEnum):
    """Lifecycle states of a listing. The engine only ever writes SOLD."""

    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    ACTIVE = "ACTIVE"
    SOLD = "SOLD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    SUSPENDED = "SUSPENDED"


# A listing can be sold (by offer acceptance or direct purchase) only from these.
SELLABLE_LISTING_STATUSES = frozenset({ListingStatus.ACTIVE, ListingStatus.DRAFT})


class OfferStatus(enum.StrEnum):
    """Lifecycle states of an offer.

    State transitions are enforced by the OfferStateMachine guard.
    """

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COUNTERED = "COUNTERED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


# Offers that can still turn into a transaction.
OPEN_OFFER_STATUSES = frozenset({OfferStatus.PENDING, OfferStatus.COUNTERED})


class OfferAction(enum.StrEnum):
    """Seller responses to a pending offer."""

    ACCEPT = "accept"
    REJECT = "reject"
    COUNTER = "counter"


class TransactionStatus(enum.StrEnum):
    """Lifecycle states of a transaction.

    State transitions are enforced by the TransactionStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    INITIATED = "INITIATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    ESCROW_HELD = "ESCROW_HELD"
    TRANSFER_PENDING = "TRANSFER_PENDING"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


TERMINAL_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.CANCELLED, TransactionStatus.REFUNDED}
)


class PaymentMethod(enum.StrEnum):
    """Payment methods accepted at checkout (processed by the gateway)."""

    PIX = "PIX"
    BOLETO = "BOLETO"
    CREDIT_CARD = "CREDIT_CARD"


class PayoutParty(enum.StrEnum):
    """Who receives the escrowed funds when a hold is released."""

    SELLER = "seller"
    BUYER = "buyer"


class FundDisposition(enum.StrEnum):
    """Custody state of the funds of one transaction, as seen by the ledger."""

    NONE = "none"
    HELD = "held"
    RELEASED_TO_SELLER = "released_to_seller"
    REFUNDED_TO_BUYER = "refunded_to_buyer"


class DisputeStatus(enum.StrEnum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class DisputeReason(enum.StrEnum):
    """Reasons a buyer or seller may give when opening a dispute."""

    LISTING_MISMATCH = "listing_mismatch"
    TRANSFER_REJECTED = "transfer_rejected"
    MISSING_DOCUMENTATION = "missing_documentation"
    PAYMENT_ISSUES = "payment_issues"
    OTHER = "other"


class DisputeResolution(enum.StrEnum):
    """The only two outcomes a mediator can force."""

    RELEASE_SELLER = "release_seller"
    REFUND_BUYER = "refund_buyer"


class VerificationLevel(enum.StrEnum):
    """Identity verification tiers reported by the KYC provider."""

    NONE = "none"
    DOCUMENT = "document"
    FULL = "full"


class EntityType(enum.StrEnum):
    """Kinds of rows that produce audit events."""

    OFFER = "offer"
    TRANSACTION = "transaction"
    ESCROW = "escrow"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the audit_events table.

    Every committed state change MUST produce exactly one event.
    """

    # Offer events
    OFFER_CREATED = "OFFER_CREATED"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_REJECTED = "OFFER_REJECTED"
    OFFER_COUNTERED = "OFFER_COUNTERED"
    COUNTER_ACCEPTED = "COUNTER_ACCEPTED"
    COUNTER_DECLINED = "COUNTER_DECLINED"
    OFFER_WITHDRAWN = "OFFER_WITHDRAWN"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    OFFER_SUPERSEDED = "OFFER_SUPERSEDED"

    # Transaction lifecycle events
    TRANSACTION_CREATED = "TRANSACTION_CREATED"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    ESCROW_HELD = "ESCROW_HELD"
    TRANSFER_CONFIRMED = "TRANSFER_CONFIRMED"
    RECEIPT_CONFIRMED = "RECEIPT_CONFIRMED"
    ESCROW_AUTO_RELEASED = "ESCROW_AUTO_RELEASED"
    TRANSACTION_CANCELLED = "TRANSACTION_CANCELLED"
    PAYMENT_DEADLINE_EXPIRED = "PAYMENT_DEADLINE_EXPIRED"
    REFUND_FORCED = "REFUND_FORCED"
    TRANSACTION_COMPLETED = "TRANSACTION_COMPLETED"
    TRANSACTION_REFUNDED = "TRANSACTION_REFUNDED"
    ATTENTION_FLAGGED = "ATTENTION_FLAGGED"

    # Dispute events
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED_SELLER = "DISPUTE_RESOLVED_SELLER"
    DISPUTE_RESOLVED_BUYER = "DISPUTE_RESOLVED_BUYER"

    # Ledger events
    FUNDS_HELD = "FUNDS_HELD"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    FUNDS_REFUNDED = "FUNDS_REFUNDED"


class EffectKind(enum.StrEnum):
    """External side effects queued in the outbox for after-commit delivery."""

    PAYOUT = "PAYOUT"
    NOTIFICATION = "NOTIFICATION"


class EffectStatus(enum.StrEnum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"

"""Domain exceptions for the Marketplace Escrow Engine.

These exceptions are framework-agnostic and represent business rule violations.
They are grouped into classes so callers can decide what to do without
matching on individual errors:

    ValidationError          rejected input, no state change
    PermissionDeniedError    actor is not allowed to perform the action
    NotFoundError            unknown id
    ConflictError            race or stale client view, refresh and retry
    LedgerIntegrityError     a fund movement was attempted twice, page someone
    DeadlineError            a deadline passed, the automatic terminal
                             transition has been committed
    ExternalDependencyError  a collaborator (payment gateway) failed

They are caught and translated to HTTP responses by the API layer's middleware.
"""

from __future__ import annotations


class EscrowEngineError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ENGINE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Error classes
# ---------------------------------------------------------------------------


class ValidationError(EscrowEngineError):
    """Base class for synchronous input rejections."""


class PermissionDeniedError(EscrowEngineError):
    """Base class for actor/ownership violations."""


class NotFoundError(EscrowEngineError):
    """Base class for unknown ids."""


class ConflictError(EscrowEngineError):
    """Base class for concurrency/state errors (refresh-and-retry)."""


class LedgerIntegrityError(ConflictError):
    """A fund movement was attempted on a hold in the wrong custody state."""


class DeadlineError(EscrowEngineError):
    """Base class for routine deadline expiries.

    The unit of work commits before re-raising these, so the automatic
    terminal transition (cancel/expire) that accompanies them persists.
    """


class ExternalDependencyError(EscrowEngineError):
    """Base class for failures of external collaborators."""


# --- Validation Errors ---


class InvalidRate(ValidationError):
    def __init__(self, name: str, rate: object) -> None:
        super().__init__(
            message=f"Invalid {name}: {rate} (must be between 0 and 1)",
            code="INVALID_RATE",
        )
        self.rate = rate


class InvalidPrice(ValidationError):
    def __init__(self, price: object) -> None:
        super().__init__(
            message=f"Invalid price: {price} (must be a positive amount in cents)",
            code="INVALID_PRICE",
        )
        self.price = price


class SelfOffer(ValidationError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(
            message=f"Seller cannot make an offer on their own listing: {listing_id}",
            code="SELF_OFFER",
        )


class SelfPurchase(ValidationError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(
            message=f"Seller cannot buy their own listing: {listing_id}",
            code="SELF_PURCHASE",
        )


class ListingNotNegotiable(ValidationError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(
            message=f"Listing does not accept offers: {listing_id}",
            code="LISTING_NOT_NEGOTIABLE",
        )


class ListingNotAvailable(ValidationError):
    def __init__(self, listing_id: str, status: str) -> None:
        super().__init__(
            message=f"Listing {listing_id} is not available (status {status})",
            code="LISTING_NOT_AVAILABLE",
        )
        self.status = status


class OfferAmountOutOfRange(ValidationError):
    def __init__(self, amount: int, maximum: int) -> None:
        super().__init__(
            message=f"Offer amount {amount} must be positive and at most {maximum}",
            code="OFFER_AMOUNT_OUT_OF_RANGE",
        )
        self.amount = amount
        self.maximum = maximum


class InvalidCounterAmount(ValidationError):
    def __init__(self, amount: object) -> None:
        super().__init__(
            message=f"Counter amount must be a positive amount in cents, got {amount}",
            code="INVALID_COUNTER_AMOUNT",
        )


class VerificationLevelInsufficient(ValidationError):
    """Raised when the actor's KYC tier does not cover the amount."""

    def __init__(self, user_id: str, level: str, required: str, amount: int) -> None:
        super().__init__(
            message=(
                f"User {user_id} has verification level '{level}', "
                f"'{required}' is required for amount {amount}"
            ),
            code="VERIFICATION_LEVEL_INSUFFICIENT",
        )
        self.level = level
        self.required = required


class InvalidDisputeReason(ValidationError):
    def __init__(self, reason: str) -> None:
        super().__init__(
            message=f"Unknown dispute reason: {reason}",
            code="INVALID_DISPUTE_REASON",
        )


# --- Permission Errors ---


class NotOfferOwner(PermissionDeniedError):
    """Raised when an actor responds to an offer that is not theirs to answer."""

    def __init__(self, offer_id: str, actor_id: str) -> None:
        super().__init__(
            message=f"Actor {actor_id} cannot act on offer {offer_id}",
            code="NOT_OFFER_OWNER",
        )


class NotTransactionParty(PermissionDeniedError):
    """Raised when the actor is not the party allowed to move the transaction."""

    def __init__(self, transaction_id: str, actor_id: str, role: str) -> None:
        super().__init__(
            message=f"Actor {actor_id} is not the {role} of transaction {transaction_id}",
            code="NOT_TRANSACTION_PARTY",
        )
        self.role = role


# --- Not Found Errors ---


class ListingNotFound(NotFoundError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(message=f"Listing not found: {listing_id}", code="LISTING_NOT_FOUND")


class OfferNotFound(NotFoundError):
    def __init__(self, offer_id: str) -> None:
        super().__init__(message=f"Offer not found: {offer_id}", code="OFFER_NOT_FOUND")


class TransactionNotFound(NotFoundError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Transaction not found: {transaction_id}",
            code="TRANSACTION_NOT_FOUND",
        )


class DisputeNotFound(NotFoundError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(message=f"Dispute not found: {dispute_id}", code="DISPUTE_NOT_FOUND")


# --- Conflict Errors ---


class IllegalTransition(ConflictError):
    """Raised when an attempted state transition is not in the transition table.

    Example: ESCROW_HELD -> COMPLETED (must go through TRANSFER_PENDING first)
    """

    def __init__(
        self,
        current_state: str,
        event: str,
        attempted_state: str | None = None,
    ) -> None:
        target = attempted_state or "?"
        super().__init__(
            message=f"Illegal transition: {current_state} -> {target} (event '{event}')",
            code="ILLEGAL_TRANSITION",
        )
        self.current_state = current_state
        self.event = event
        self.attempted_state = attempted_state


class ListingAlreadySold(ConflictError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(
            message=f"Listing already sold: {listing_id}",
            code="LISTING_ALREADY_SOLD",
        )


class OfferNotPending(ConflictError):
    def __init__(self, offer_id: str, status: str) -> None:
        super().__init__(
            message=f"Offer {offer_id} is not pending (status {status})",
            code="OFFER_NOT_PENDING",
        )
        self.status = status


class DuplicatePendingOffer(ConflictError):
    def __init__(self, listing_id: str, existing_offer_id: str) -> None:
        super().__init__(
            message=f"Buyer already has an open offer on listing {listing_id}",
            code="DUPLICATE_PENDING_OFFER",
        )
        self.existing_offer_id = existing_offer_id


class NotHeld(ConflictError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"No escrow hold for transaction: {transaction_id}",
            code="NOT_HELD",
        )


class DisputeAlreadyOpen(ConflictError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Transaction already has an open dispute: {transaction_id}",
            code="DISPUTE_ALREADY_OPEN",
        )


class DisputeAlreadyResolved(ConflictError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute already resolved: {dispute_id}",
            code="DISPUTE_ALREADY_RESOLVED",
        )


class DuplicateOperationError(ConflictError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )


# --- Ledger Integrity Errors ---


class AlreadyHeld(LedgerIntegrityError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Funds already held for transaction: {transaction_id}",
            code="ALREADY_HELD",
        )


class AlreadyReleased(LedgerIntegrityError):
    def __init__(self, transaction_id: str, released_to: str | None) -> None:
        super().__init__(
            message=f"Escrow for transaction {transaction_id} already released to {released_to}",
            code="ALREADY_RELEASED",
        )
        self.released_to = released_to


# --- Deadline Errors ---


class PaymentDeadlineExceeded(DeadlineError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Payment deadline exceeded, transaction cancelled: {transaction_id}",
            code="PAYMENT_DEADLINE_EXCEEDED",
        )


class OfferExpired(DeadlineError):
    def __init__(self, offer_id: str) -> None:
        super().__init__(message=f"Offer expired: {offer_id}", code="OFFER_EXPIRED")


# --- External Dependency Errors ---


class GatewayError(ExternalDependencyError):
    """Raised when a payment gateway charge or payout fails."""

    def __init__(self, message: str, operation: str = "", retryable: bool = True) -> None:
        super().__init__(message=message, code="GATEWAY_ERROR")
        self.operation = operation
        self.retryable = retryable

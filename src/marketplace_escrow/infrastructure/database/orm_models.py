"""SQLAlchemy 2.0 ORM models for the Marketplace Escrow Engine.

Seven tables:
    1. listings          — Items for sale (owned by listing management; the
                           engine only flips status to SOLD).
    2. offers            — Buyer price proposals and seller counters.
    3. transactions      — Canonical record of an accepted sale.
    4. escrow_holds      — Fund custody, one row per transaction.
    5. disputes          — Mediation records that freeze a transaction.
    6. audit_events      — Append-only log of every state change.
    7. outbound_effects  — Outbox of payouts/notifications delivered after commit.

Design decisions:
    - UUIDs as primary keys; user ids are opaque strings from the identity layer.
    - Integer cents for money (no floating point), Decimal for fee rates.
    - CHECK constraints mirror the status enums and the fee identities, so a
      bug that bypasses the service layer still cannot persist a bad row.
    - escrow_holds.transaction_id is UNIQUE: a second hold is impossible even
      under a race.
    - Relationships are resolved explicitly by repositories (no lazy loads
      under asyncio).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from marketplace_escrow.domain.enums import (
    DisputeStatus,
    EffectKind,
    EffectStatus,
    ListingStatus,
    OfferStatus,
    TransactionStatus,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on storage; values are normalised to UTC on the way
    in and re-tagged as UTC on the way out so comparisons never mix naive
    and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_clause(values: list[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. listings
# ---------------------------------------------------------------------------
class Listing(Base):
    """A reservation offered for sale by a seller."""

    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # --- Pricing (cents) ---
    asking_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    original_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    negotiable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    seller_fee_rate: Mapped[Decimal | None] = mapped_column(
        Numeric(6, 4),
        nullable=True,
        comment="Seller plan rate override; NULL uses the configured default",
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ListingStatus.ACTIVE.value
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause([s.value for s in ListingStatus])})",
            name="ck_listing_valid_status",
        ),
        CheckConstraint("asking_price > 0", name="ck_listing_positive_price"),
        Index("idx_listing_seller", "seller_id"),
        Index("idx_listing_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Listing id={self.id} status={self.status} price={self.asking_price}>"


# ---------------------------------------------------------------------------
# 2. offers
# ---------------------------------------------------------------------------
class Offer(Base):
    """A buyer's price proposal on a listing, possibly carrying a seller counter."""

    __tablename__ = "offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    counter_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    counter_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OfferStatus.PENDING.value
    )
    status_reason: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Why the offer left PENDING, e.g. 'superseded' or 'ttl_elapsed'",
    )

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause([s.value for s in OfferStatus])})",
            name="ck_offer_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_offer_positive_amount"),
        CheckConstraint(
            "counter_amount IS NULL OR counter_amount > 0",
            name="ck_offer_positive_counter",
        ),
        Index("idx_offer_listing_status", "listing_id", "status"),
        Index("idx_offer_buyer", "buyer_id"),
        Index("idx_offer_seller", "seller_id"),
        Index("idx_offer_expires_at", "expires_at"),
    )

    @property
    def transaction_price(self) -> int:
        """Price a transaction is created at when this offer is accepted."""
        if self.status == OfferStatus.COUNTERED.value and self.counter_amount is not None:
            return self.counter_amount
        return self.amount

    def __repr__(self) -> str:
        return f"<Offer id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 3. transactions
# ---------------------------------------------------------------------------
class Transaction(Base):
    """An accepted sale, tracked from initiation through payout or refund.

    agreed_price and every fee column are written once at creation.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)

    # --- Participants ---
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id"), nullable=False
    )
    offer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("offers.id"),
        nullable=True,
        comment="NULL for direct purchases",
    )
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Status (guarded by TransactionStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.INITIATED.value
    )

    # --- Financials (cents, captured at creation) ---
    agreed_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    buyer_fee_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    platform_fee_rate: Mapped[Decimal] = mapped_column(
        Numeric(6, 4),
        nullable=False,
        comment="Seller-side rate captured at creation",
    )
    buyer_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    seller_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    seller_net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_buyer_payment: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # --- Payment ---
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    gateway_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )
    payment_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    transfer_confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    escrow_release_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Auto-release moment once the seller confirmed the transfer",
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Ops follow-up ---
    needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attention_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause([s.value for s in TransactionStatus])})",
            name="ck_transaction_valid_status",
        ),
        CheckConstraint("agreed_price > 0", name="ck_transaction_positive_price"),
        CheckConstraint(
            "platform_fee = buyer_fee + seller_fee",
            name="ck_transaction_platform_fee_sum",
        ),
        CheckConstraint(
            "seller_net_amount + seller_fee = agreed_price",
            name="ck_transaction_seller_net",
        ),
        CheckConstraint(
            "total_buyer_payment = agreed_price + buyer_fee",
            name="ck_transaction_buyer_total",
        ),
        Index("idx_transaction_status", "status"),
        Index("idx_transaction_buyer", "buyer_id"),
        Index("idx_transaction_seller", "seller_id"),
        Index("idx_transaction_listing", "listing_id"),
        Index("idx_transaction_payment_deadline", "payment_deadline"),
        Index("idx_transaction_escrow_release_at", "escrow_release_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction id={self.id} code={self.code} status={self.status} "
            f"price={self.agreed_price}>"
        )


# ---------------------------------------------------------------------------
# 4. escrow_holds
# ---------------------------------------------------------------------------
class EscrowHold(Base):
    """Custody record of a transaction's funds. Released at most once."""

    __tablename__ = "escrow_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id"),
        nullable=False,
        unique=True,
    )
    held_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    held_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_to: Mapped[str | None] = mapped_column(String(10), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payout_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("held_amount > 0", name="ck_hold_positive_amount"),
        CheckConstraint(
            "released_to IS NULL OR released_to IN ('seller', 'buyer')",
            name="ck_hold_valid_party",
        ),
        CheckConstraint(
            "(released_at IS NULL AND released_to IS NULL) "
            "OR (released_at IS NOT NULL AND released_to IS NOT NULL)",
            name="ck_hold_release_consistent",
        ),
        CheckConstraint(
            "payout_amount IS NULL OR payout_amount <= held_amount",
            name="ck_hold_payout_bounded",
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.released_at is None

    def __repr__(self) -> str:
        return (
            f"<EscrowHold transaction={self.transaction_id} amount={self.held_amount} "
            f"released_to={self.released_to}>"
        )


# ---------------------------------------------------------------------------
# 5. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    """A freeze on a transaction awaiting a mediator's decision."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    protocol: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=False
    )
    opened_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=DisputeStatus.OPEN.value
    )
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    mediator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_in_clause([s.value for s in DisputeStatus])})",
            name="ck_dispute_valid_status",
        ),
        Index("idx_dispute_transaction", "transaction_id"),
        Index("idx_dispute_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} protocol={self.protocol} status={self.status}>"


# ---------------------------------------------------------------------------
# 6. audit_events (Append-Only)
# ---------------------------------------------------------------------------
class AuditEvent(Base):
    """Immutable record of one state change of an offer, transaction or hold.

    APPEND-ONLY: no UPDATE or DELETE at the application level.
    """

    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_event_entity", "entity_type", "entity_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent {self.entity_type}:{self.entity_id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 7. outbound_effects (Outbox)
# ---------------------------------------------------------------------------
class OutboundEffect(Base):
    """An external call scheduled inside a unit of work, delivered after commit."""

    __tablename__ = "outbound_effects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True
    )
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=EffectStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"kind IN ({_in_clause([k.value for k in EffectKind])})",
            name="ck_effect_valid_kind",
        ),
        CheckConstraint(
            f"status IN ({_in_clause([s.value for s in EffectStatus])})",
            name="ck_effect_valid_status",
        ),
        Index("idx_effect_status_created", "status", "created_at"),
        Index("idx_effect_transaction", "transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<OutboundEffect id={self.id} kind={self.kind} status={self.status}>"

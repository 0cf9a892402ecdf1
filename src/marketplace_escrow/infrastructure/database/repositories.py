"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Two patterns keep concurrent writers honest:
    - Gating reads use SELECT ... FOR UPDATE with populate_existing, so the
      row is locked (PostgreSQL) and the identity map is refreshed.
    - Status writes are compare-and-set UPDATEs (`WHERE status = :expected`).
      They return False instead of overwriting a row another worker moved.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update

from marketplace_escrow.domain.enums import (
    OPEN_OFFER_STATUSES,
    SELLABLE_LISTING_STATUSES,
    DisputeStatus,
    EffectKind,
    EffectStatus,
    ListingStatus,
    TransactionStatus,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Dispute,
    EscrowHold,
    Listing,
    Offer,
    OutboundEffect,
    Transaction,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import (
        EntityType,
        EventType,
        OfferStatus,
        PayoutParty,
    )


def _values(enums: frozenset) -> list[str]:
    return sorted(e.value for e in enums)


class ListingRepository:
    """Data access for listings. The engine only flips status to SOLD."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, listing: Listing) -> Listing:
        """Insert a listing (used by listing management and tests)."""
        self._session.add(listing)
        await self._session.flush()
        return listing

    async def get_by_id(self, listing_id: uuid.UUID, for_update: bool = False) -> Listing | None:
        """Fetch a listing, optionally locking the row."""
        stmt = select(Listing).where(Listing.id == listing_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_sold(self, listing: Listing) -> bool:
        """Atomically flip a sellable listing to SOLD.

        Returns False when another writer sold (or withdrew) it first.
        """
        result = await self._session.execute(
            update(Listing)
            .where(
                Listing.id == listing.id,
                Listing.status.in_(_values(SELLABLE_LISTING_STATUSES)),
            )
            .values(status=ListingStatus.SOLD.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(listing)
        return True

    async def ensure_sold(self, listing_id: uuid.UUID) -> None:
        """Idempotently make sure a listing is SOLD (completion path)."""
        await self._session.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.status != ListingStatus.SOLD.value)
            .values(status=ListingStatus.SOLD.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )


class OfferRepository:
    """Data access for offers."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, offer: Offer) -> Offer:
        """Insert a new offer."""
        self._session.add(offer)
        await self._session.flush()
        return offer

    async def get_by_id(self, offer_id: uuid.UUID, for_update: bool = False) -> Offer | None:
        """Fetch an offer, optionally locking the row."""
        stmt = select(Offer).where(Offer.id == offer_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_open_by_buyer(self, listing_id: uuid.UUID, buyer_id: str) -> Offer | None:
        """Return the buyer's PENDING/COUNTERED offer on a listing, if any."""
        result = await self._session.execute(
            select(Offer)
            .where(
                Offer.listing_id == listing_id,
                Offer.buyer_id == buyer_id,
                Offer.status.in_(_values(OPEN_OFFER_STATUSES)),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def open_siblings(
        self, listing_id: uuid.UUID, exclude_id: uuid.UUID | None
    ) -> list[Offer]:
        """Lock and return every other open offer on the listing."""
        result = await self._session.execute(
            select(Offer)
            .where(
                Offer.listing_id == listing_id,
                Offer.id != exclude_id if exclude_id is not None else Offer.id.is_not(None),
                Offer.status.in_(_values(OPEN_OFFER_STATUSES)),
            )
            .order_by(Offer.created_at.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def search(
        self,
        listing_id: uuid.UUID | None = None,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        status: OfferStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Offer]:
        """Filter offers, newest first."""
        stmt = select(Offer)
        if listing_id is not None:
            stmt = stmt.where(Offer.listing_id == listing_id)
        if buyer_id is not None:
            stmt = stmt.where(Offer.buyer_id == buyer_id)
        if seller_id is not None:
            stmt = stmt.where(Offer.seller_id == seller_id)
        if status is not None:
            stmt = stmt.where(Offer.status == status.value)
        result = await self._session.execute(
            stmt.order_by(Offer.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def ids_due_for_expiry(self, now: datetime, limit: int) -> list[uuid.UUID]:
        """Ids of open offers whose TTL has elapsed."""
        result = await self._session.execute(
            select(Offer.id)
            .where(
                Offer.status.in_(_values(OPEN_OFFER_STATUSES)),
                Offer.expires_at < now,
            )
            .order_by(Offer.expires_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def compare_and_set(
        self,
        offer: Offer,
        expected: OfferStatus,
        new: OfferStatus,
        **values: Any,
    ) -> bool:
        """Move an offer from `expected` to `new`; False if it was not in `expected`."""
        result = await self._session.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == expected.value)
            .values(status=new.value, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(offer)
        return True


class TransactionRepository:
    """Data access for transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, transaction: Transaction) -> Transaction:
        """Insert a new transaction."""
        self._session.add(transaction)
        await self._session.flush()
        return transaction

    async def get_by_id(
        self, transaction_id: uuid.UUID, for_update: bool = False
    ) -> Transaction | None:
        """Fetch a transaction, optionally locking the row."""
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Transaction | None:
        result = await self._session.execute(select(Transaction).where(Transaction.code == code))
        return result.scalar_one_or_none()

    async def code_exists(self, code: str) -> bool:
        result = await self._session.execute(
            select(func.count()).select_from(Transaction).where(Transaction.code == code)
        )
        return result.scalar_one() > 0

    async def count_for_listing(self, listing_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(Transaction)
            .where(Transaction.listing_id == listing_id)
        )
        return result.scalar_one()

    async def get_by_participant(self, user_id: str) -> list[Transaction]:
        """Fetch all transactions where the user is buyer or seller."""
        result = await self._session.execute(
            select(Transaction)
            .where((Transaction.buyer_id == user_id) | (Transaction.seller_id == user_id))
            .order_by(Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def ids_past_payment_deadline(self, now: datetime, limit: int) -> list[uuid.UUID]:
        """Ids of unpaid transactions whose payment deadline has passed."""
        result = await self._session.execute(
            select(Transaction.id)
            .where(
                Transaction.status.in_(
                    [TransactionStatus.INITIATED.value, TransactionStatus.AWAITING_PAYMENT.value]
                ),
                Transaction.payment_deadline < now,
            )
            .order_by(Transaction.payment_deadline.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def ids_due_for_auto_release(self, now: datetime, limit: int) -> list[uuid.UUID]:
        """Ids of TRANSFER_PENDING transactions whose release moment has passed."""
        result = await self._session.execute(
            select(Transaction.id)
            .where(
                Transaction.status == TransactionStatus.TRANSFER_PENDING.value,
                Transaction.escrow_release_at.is_not(None),
                Transaction.escrow_release_at < now,
            )
            .order_by(Transaction.escrow_release_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def compare_and_set(
        self,
        transaction: Transaction,
        expected: TransactionStatus,
        new: TransactionStatus,
        **values: Any,
    ) -> bool:
        """Update the status (call AFTER state machine validation).

        The write only lands if the row is still in `expected`.
        """
        result = await self._session.execute(
            update(Transaction)
            .where(Transaction.id == transaction.id, Transaction.status == expected.value)
            .values(status=new.value, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(transaction)
        return True

    async def flag_attention(self, transaction: Transaction, reason: str) -> Transaction:
        """Mark a transaction for manual follow-up without touching its status."""
        transaction.needs_attention = True
        transaction.attention_reason = reason
        transaction.updated_at = datetime.now(UTC)
        await self._session.flush()
        return transaction


class EscrowHoldRepository:
    """Data access for escrow holds."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, hold: EscrowHold) -> EscrowHold:
        self._session.add(hold)
        await self._session.flush()
        return hold

    async def get_by_transaction(
        self, transaction_id: uuid.UUID, for_update: bool = False
    ) -> EscrowHold | None:
        stmt = select(EscrowHold).where(EscrowHold.transaction_id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_released(
        self,
        hold: EscrowHold,
        to: PayoutParty,
        reason: str,
        payout_amount: int,
        now: datetime,
    ) -> bool:
        """Set the release fields exactly once; False if already released."""
        result = await self._session.execute(
            update(EscrowHold)
            .where(EscrowHold.id == hold.id, EscrowHold.released_at.is_(None))
            .values(
                released_at=now,
                released_to=to.value,
                release_reason=reason,
                payout_amount=payout_amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(hold)
        return True


class DisputeRepository:
    """Data access for disputes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID, for_update: bool = False) -> Dispute | None:
        stmt = select(Dispute).where(Dispute.id == dispute_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_open_for_transaction(self, transaction_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute).where(
                Dispute.transaction_id == transaction_id,
                Dispute.status == DisputeStatus.OPEN.value,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_transaction(self, transaction_id: uuid.UUID) -> list[Dispute]:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.transaction_id == transaction_id)
            .order_by(Dispute.opened_at.asc())
        )
        return list(result.scalars().all())

    async def protocol_exists(self, protocol: str) -> bool:
        result = await self._session.execute(
            select(func.count()).select_from(Dispute).where(Dispute.protocol == protocol)
        )
        return result.scalar_one() > 0

    async def close(
        self,
        dispute: Dispute,
        resolution: str,
        mediator_id: str,
        now: datetime,
    ) -> bool:
        """Resolve an OPEN dispute; False if it was resolved concurrently."""
        result = await self._session.execute(
            update(Dispute)
            .where(Dispute.id == dispute.id, Dispute.status == DisputeStatus.OPEN.value)
            .values(
                status=DisputeStatus.RESOLVED.value,
                resolution=resolution,
                mediator_id=mediator_id,
                resolved_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(dispute)
        return True


class AuditEventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        event_type: EventType,
        old_status: str | None,
        new_status: str | None,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> AuditEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AuditEvent(
            entity_type=entity_type.value,
            entity_id=entity_id,
            event_type=event_type.value,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_for_entity(
        self, entity_type: EntityType, entity_id: uuid.UUID
    ) -> list[AuditEvent]:
        """Fetch all events for one row in chronological order."""
        result = await self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type.value,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_timeline(self, entity_id: uuid.UUID) -> list[AuditEvent]:
        """Events of every entity type keyed by the same id (transaction + escrow)."""
        result = await self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())


class OutboundEffectRepository:
    """Data access for the outbox of after-commit external calls."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(
        self,
        kind: EffectKind,
        payload: dict,
        transaction_id: uuid.UUID | None = None,
    ) -> OutboundEffect:
        effect = OutboundEffect(
            kind=kind.value,
            transaction_id=transaction_id,
            payload=payload,
            status=EffectStatus.PENDING.value,
            attempts=0,
        )
        self._session.add(effect)
        await self._session.flush()
        return effect

    async def enqueue_notification(
        self,
        user_id: str,
        event_type: EventType,
        data: dict,
        transaction_id: uuid.UUID | None = None,
    ) -> OutboundEffect:
        return await self.enqueue(
            EffectKind.NOTIFICATION,
            {"user_id": user_id, "event_type": event_type.value, "data": data},
            transaction_id=transaction_id,
        )

    async def get_by_id(
        self, effect_id: uuid.UUID, for_update: bool = False
    ) -> OutboundEffect | None:
        stmt = select(OutboundEffect).where(OutboundEffect.id == effect_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def pending_ids(self, limit: int, kind: EffectKind | None = None) -> list[uuid.UUID]:
        stmt = select(OutboundEffect.id).where(
            OutboundEffect.status == EffectStatus.PENDING.value
        )
        if kind is not None:
            stmt = stmt.where(OutboundEffect.kind == kind.value)
        result = await self._session.execute(
            stmt.order_by(OutboundEffect.created_at.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def backlog(self) -> dict[str, int]:
        """Count effects still PENDING or FAILED."""
        result = await self._session.execute(
            select(OutboundEffect.status, func.count())
            .where(
                OutboundEffect.status.in_(
                    [EffectStatus.PENDING.value, EffectStatus.FAILED.value]
                )
            )
            .group_by(OutboundEffect.status)
        )
        counts = {EffectStatus.PENDING.value: 0, EffectStatus.FAILED.value: 0}
        counts.update({status: count for status, count in result.all()})
        return counts

    async def get_by_transaction(self, transaction_id: uuid.UUID) -> list[OutboundEffect]:
        result = await self._session.execute(
            select(OutboundEffect)
            .where(OutboundEffect.transaction_id == transaction_id)
            .order_by(OutboundEffect.created_at.asc())
        )
        return list(result.scalars().all())

    async def mark_delivered(
        self,
        effect: OutboundEffect,
        result_payload: dict | None = None,
        attempts: int = 1,
    ) -> None:
        effect.status = EffectStatus.DELIVERED.value
        effect.attempts += attempts
        effect.delivered_at = datetime.now(UTC)
        effect.last_error = None
        if result_payload:
            effect.payload = {**effect.payload, "result": result_payload}
        await self._session.flush()

    async def mark_failed(self, effect: OutboundEffect, error: str, attempts: int) -> None:
        effect.status = EffectStatus.FAILED.value
        effect.attempts += attempts
        effect.last_error = error
        await self._session.flush()

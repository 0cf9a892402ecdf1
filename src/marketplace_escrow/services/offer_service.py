"""Offer Service — negotiation between a buyer and a listing's seller.

Flow:
    buyer create_offer -> PENDING
    seller respond: accept | reject | counter
    buyer accept_counter | decline_counter | withdraw
    TTL sweep (or a lazy read) -> EXPIRED

Accepting (either side) creates the transaction, marks the offer ACCEPTED
and expires every sibling open offer with reason `superseded`, all inside
the caller's unit of work. The listing's conditional SOLD flip makes sure
only one acceptance per listing can ever commit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import (
    OPEN_OFFER_STATUSES,
    EntityType,
    EventType,
    ListingStatus,
    OfferAction,
    OfferStatus,
)
from marketplace_escrow.domain.exceptions import (
    DuplicatePendingOffer,
    IllegalTransition,
    InvalidCounterAmount,
    ListingAlreadySold,
    ListingNotAvailable,
    ListingNotFound,
    ListingNotNegotiable,
    NotOfferOwner,
    OfferAmountOutOfRange,
    OfferExpired,
    OfferNotFound,
    OfferNotPending,
    SelfOffer,
)
from marketplace_escrow.domain.state_machine import OfferStateMachine, guard_transition
from marketplace_escrow.infrastructure.database.orm_models import Offer
from marketplace_escrow.infrastructure.database.repositories import (
    AuditEventRepository,
    ListingRepository,
    OfferRepository,
    OutboundEffectRepository,
)
from marketplace_escrow.infrastructure.gateways import build_identity_provider
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.kyc import require_verification
from marketplace_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.ports import IdentityProvider
    from marketplace_escrow.infrastructure.database.orm_models import (
        AuditEvent,
        Listing,
        Transaction,
    )

logger = get_logger(__name__)

REASON_TTL = "ttl_elapsed"
REASON_SUPERSEDED = "superseded"


@dataclass
class NegotiationResult:
    """Outcome of a response to an offer. `transaction` is set on acceptance."""

    offer: Offer
    transaction: Transaction | None = None


class OfferService:
    """Manages offers and counter-offers on listings."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        identity: IdentityProvider | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._identity = identity or build_identity_provider(self._settings)
        self._offer_repo = OfferRepository(session)
        self._listing_repo = ListingRepository(session)
        self._event_repo = AuditEventRepository(session)
        self._outbox = OutboundEffectRepository(session)

    # ------------------------------------------------------------------
    # Buyer: create
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        listing_id: uuid.UUID,
        buyer_id: str,
        amount: int,
        message: str | None = None,
        ttl: timedelta | None = None,
    ) -> Offer:
        """Create a PENDING offer on an ACTIVE, negotiable listing."""
        listing = await self._listing_repo.get_by_id(listing_id)
        if listing is None:
            raise ListingNotFound(str(listing_id))
        if listing.status != ListingStatus.ACTIVE.value:
            raise ListingNotAvailable(str(listing_id), listing.status)
        if not listing.negotiable:
            raise ListingNotNegotiable(str(listing_id))
        if listing.seller_id == buyer_id:
            raise SelfOffer(str(listing_id))
        self._check_amount(listing, amount)

        now = datetime.now(UTC)
        existing = await self._offer_repo.find_open_by_buyer(listing.id, buyer_id)
        if existing is not None:
            # A stale open offer does not block a new one; it lapses first.
            if not await self._expire_if_due(existing, now):
                raise DuplicatePendingOffer(str(listing_id), str(existing.id))

        await require_verification(self._identity, self._settings, buyer_id, amount)

        ttl = ttl or timedelta(hours=self._settings.offer_ttl_hours)
        offer = await self._offer_repo.create(
            Offer(
                listing_id=listing.id,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                amount=amount,
                message=message,
                status=OfferStatus.PENDING.value,
                expires_at=now + ttl,
            )
        )

        await self._event_repo.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=EventType.OFFER_CREATED,
            old_status=None,
            new_status=OfferStatus.PENDING,
            actor=buyer_id,
            metadata={"listing_id": str(listing.id), "amount": amount},
        )
        await self._outbox.enqueue_notification(
            listing.seller_id,
            EventType.OFFER_CREATED,
            {"offer_id": str(offer.id), "listing_id": str(listing.id), "amount": amount},
        )

        logger.info(
            "offer.created",
            offer_id=str(offer.id),
            listing_id=str(listing.id),
            amount=amount,
        )
        return offer

    # ------------------------------------------------------------------
    # Seller: respond
    # ------------------------------------------------------------------

    async def respond(
        self,
        offer_id: uuid.UUID,
        actor_id: str,
        action: OfferAction | str,
        counter_amount: int | None = None,
        counter_message: str | None = None,
    ) -> NegotiationResult:
        """Seller accepts, rejects or counters a PENDING offer."""
        action = OfferAction(action)
        offer = await self._get_offer_or_raise(offer_id, for_update=True)
        if actor_id != offer.seller_id:
            raise NotOfferOwner(str(offer_id), actor_id)
        if action == OfferAction.ACCEPT:
            await self._check_listing_unsold(offer)
        await self._raise_if_expired(offer)
        if offer.status != OfferStatus.PENDING.value:
            raise OfferNotPending(str(offer_id), offer.status)

        if action == OfferAction.ACCEPT:
            txn = await self._accept(
                offer, "seller_accepts", EventType.OFFER_ACCEPTED, actor_id, offer.amount
            )
            return NegotiationResult(offer=offer, transaction=txn)

        now = datetime.now(UTC)
        if action == OfferAction.REJECT:
            await self._fire_transition(
                offer,
                "seller_rejects",
                EventType.OFFER_REJECTED,
                actor=actor_id,
                responded_at=now,
                status_reason="rejected_by_seller",
            )
            await self._notify_buyer(offer, EventType.OFFER_REJECTED)
            logger.info("offer.rejected", offer_id=str(offer.id))
            return NegotiationResult(offer=offer)

        if (
            counter_amount is None
            or isinstance(counter_amount, bool)
            or not isinstance(counter_amount, int)
            or counter_amount <= 0
        ):
            raise InvalidCounterAmount(counter_amount)
        await self._fire_transition(
            offer,
            "seller_counters",
            EventType.OFFER_COUNTERED,
            actor=actor_id,
            metadata={"amount": offer.amount, "counter_amount": counter_amount},
            counter_amount=counter_amount,
            counter_message=counter_message,
            responded_at=now,
            expires_at=now + timedelta(hours=self._settings.offer_ttl_hours),
        )
        await self._notify_buyer(
            offer, EventType.OFFER_COUNTERED, {"counter_amount": counter_amount}
        )
        logger.info("offer.countered", offer_id=str(offer.id), counter_amount=counter_amount)
        return NegotiationResult(offer=offer)

    # ------------------------------------------------------------------
    # Buyer: answer a counter, withdraw
    # ------------------------------------------------------------------

    async def accept_counter(self, offer_id: uuid.UUID, actor_id: str) -> NegotiationResult:
        """Buyer accepts the seller's counter; the sale is priced at counter_amount."""
        offer = await self._get_offer_or_raise(offer_id, for_update=True)
        if actor_id != offer.buyer_id:
            raise NotOfferOwner(str(offer_id), actor_id)
        await self._check_listing_unsold(offer)
        await self._raise_if_expired(offer)
        if offer.status != OfferStatus.COUNTERED.value:
            raise OfferNotPending(str(offer_id), offer.status)

        price = offer.transaction_price
        await require_verification(self._identity, self._settings, actor_id, price)
        txn = await self._accept(
            offer, "buyer_accepts_counter", EventType.COUNTER_ACCEPTED, actor_id, price
        )
        return NegotiationResult(offer=offer, transaction=txn)

    async def decline_counter(self, offer_id: uuid.UUID, actor_id: str) -> Offer:
        offer = await self._get_offer_or_raise(offer_id, for_update=True)
        if actor_id != offer.buyer_id:
            raise NotOfferOwner(str(offer_id), actor_id)
        await self._raise_if_expired(offer)
        if offer.status != OfferStatus.COUNTERED.value:
            raise OfferNotPending(str(offer_id), offer.status)

        await self._fire_transition(
            offer,
            "buyer_declines_counter",
            EventType.COUNTER_DECLINED,
            actor=actor_id,
            status_reason="counter_declined",
        )
        await self._outbox.enqueue_notification(
            offer.seller_id, EventType.COUNTER_DECLINED, {"offer_id": str(offer.id)}
        )
        logger.info("offer.counter_declined", offer_id=str(offer.id))
        return offer

    async def withdraw(self, offer_id: uuid.UUID, actor_id: str) -> Offer:
        """Buyer withdraws an open offer."""
        offer = await self._get_offer_or_raise(offer_id, for_update=True)
        if actor_id != offer.buyer_id:
            raise NotOfferOwner(str(offer_id), actor_id)
        if OfferStatus(offer.status) not in OPEN_OFFER_STATUSES:
            raise OfferNotPending(str(offer_id), offer.status)

        await self._fire_transition(
            offer,
            "buyer_withdraws",
            EventType.OFFER_WITHDRAWN,
            actor=actor_id,
            status_reason="withdrawn_by_buyer",
        )
        await self._outbox.enqueue_notification(
            offer.seller_id, EventType.OFFER_WITHDRAWN, {"offer_id": str(offer.id)}
        )
        logger.info("offer.withdrawn", offer_id=str(offer.id))
        return offer

    # ------------------------------------------------------------------
    # Engine: expiry and supersession
    # ------------------------------------------------------------------

    async def expire_offer(self, offer_id: uuid.UUID, now: datetime | None = None) -> bool:
        """Expire an open offer whose TTL elapsed. Idempotent.

        Returns True only when this call performed the expiry; terminal or
        not-yet-due offers are left untouched.
        """
        offer = await self._get_offer_or_raise(offer_id, for_update=True)
        return await self._expire_if_due(offer, now or datetime.now(UTC))

    async def supersede_open_offers(
        self,
        listing_id: uuid.UUID,
        keep_offer_id: uuid.UUID | None,
    ) -> list[Offer]:
        """Expire every open offer on the listing except `keep_offer_id`."""
        siblings = await self._offer_repo.open_siblings(listing_id, exclude_id=keep_offer_id)
        expired = []
        for sibling in siblings:
            if await self._expire(
                sibling, "superseded", EventType.OFFER_SUPERSEDED, REASON_SUPERSEDED
            ):
                expired.append(sibling)
        if expired:
            logger.info(
                "offer.siblings_superseded",
                listing_id=str(listing_id),
                count=len(expired),
            )
        return expired

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_offer(self, offer_id: uuid.UUID) -> Offer:
        """Get an offer, lazily expiring it if its TTL has elapsed."""
        offer = await self._get_offer_or_raise(offer_id)
        if OfferStatus(offer.status) in OPEN_OFFER_STATUSES and self._is_due(
            offer, datetime.now(UTC)
        ):
            await self.expire_offer(offer_id)
        return offer

    async def list_offers(
        self,
        listing_id: uuid.UUID | None = None,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        status: OfferStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Offer]:
        return await self._offer_repo.search(
            listing_id=listing_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            status=status,
            limit=limit,
            offset=offset,
        )

    async def get_events(self, offer_id: uuid.UUID) -> list[AuditEvent]:
        await self._get_offer_or_raise(offer_id)
        return await self._event_repo.get_for_entity(EntityType.OFFER, offer_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_offer_or_raise(self, offer_id: uuid.UUID, for_update: bool = False) -> Offer:
        offer = await self._offer_repo.get_by_id(offer_id, for_update=for_update)
        if offer is None:
            raise OfferNotFound(str(offer_id))
        return offer

    def _check_amount(self, listing: Listing, amount: int) -> None:
        maximum = int(Decimal(listing.asking_price) * self._settings.max_offer_ratio)
        if (
            isinstance(amount, bool)
            or not isinstance(amount, int)
            or amount <= 0
            or amount > maximum
        ):
            raise OfferAmountOutOfRange(amount, maximum)

    async def _check_listing_unsold(self, offer: Offer) -> Listing:
        listing = await self._listing_repo.get_by_id(offer.listing_id, for_update=True)
        if listing is None:
            raise ListingNotFound(str(offer.listing_id))
        if listing.status == ListingStatus.SOLD.value:
            raise ListingAlreadySold(str(listing.id))
        return listing

    async def _accept(
        self,
        offer: Offer,
        event_name: str,
        event_type: EventType,
        actor_id: str,
        price: int,
    ) -> Transaction:
        """Create the transaction, accept the offer, supersede its siblings.

        Callers check the listing before the offer status, so whichever
        acceptance loses a race always sees ListingAlreadySold.
        """
        guard_transition(offer.status, event_name, OfferStateMachine)

        txn = await TransactionService(
            self._session, self._settings, self._identity
        ).create_from_offer(offer, price, actor_id=actor_id)

        await self._fire_transition(
            offer,
            event_name,
            event_type,
            actor=actor_id,
            metadata={"transaction_id": str(txn.id), "price": price},
            responded_at=datetime.now(UTC),
        )
        await self.supersede_open_offers(offer.listing_id, keep_offer_id=offer.id)

        logger.info(
            "offer.accepted",
            offer_id=str(offer.id),
            transaction_id=str(txn.id),
            price=price,
        )
        return txn

    async def _fire_transition(
        self,
        offer: Offer,
        event_name: str,
        event_type: EventType,
        actor: str,
        metadata: dict | None = None,
        **values: Any,
    ) -> Offer:
        """Validate and write one offer transition, then record it."""
        old_status = OfferStatus(offer.status)
        new_status = OfferStatus(guard_transition(offer.status, event_name, OfferStateMachine))

        if not await self._offer_repo.compare_and_set(offer, old_status, new_status, **values):
            await self._session.refresh(offer)
            raise IllegalTransition(offer.status, event_name, new_status.value)

        await self._event_repo.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata=metadata,
        )
        return offer

    @staticmethod
    def _is_due(offer: Offer, now: datetime) -> bool:
        return offer.expires_at <= now

    async def _expire_if_due(self, offer: Offer, now: datetime) -> bool:
        if OfferStatus(offer.status) not in OPEN_OFFER_STATUSES or not self._is_due(offer, now):
            return False
        return await self._expire(offer, "lapse", EventType.OFFER_EXPIRED, REASON_TTL)

    async def _raise_if_expired(self, offer: Offer) -> None:
        """Lazily expire an open offer past its TTL, then raise OfferExpired."""
        if await self._expire_if_due(offer, datetime.now(UTC)):
            raise OfferExpired(str(offer.id))
        if offer.status == OfferStatus.EXPIRED.value and offer.status_reason == REASON_TTL:
            raise OfferExpired(str(offer.id))

    async def _expire(
        self,
        offer: Offer,
        event_name: str,
        event_type: EventType,
        reason: str,
    ) -> bool:
        """Move an open offer to EXPIRED. False if another writer got there first."""
        old_status = OfferStatus(offer.status)
        new_status = OfferStatus(guard_transition(offer.status, event_name, OfferStateMachine))
        if not await self._offer_repo.compare_and_set(
            offer, old_status, new_status, status_reason=reason
        ):
            return False

        await self._event_repo.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor="SYSTEM",
            metadata={"reason": reason},
        )
        await self._notify_buyer(offer, event_type, {"reason": reason})
        logger.info("offer.expired", offer_id=str(offer.id), reason=reason)
        return True

    async def _notify_buyer(
        self, offer: Offer, event_type: EventType, data: dict | None = None
    ) -> None:
        await self._outbox.enqueue_notification(
            offer.buyer_id,
            event_type,
            {"offer_id": str(offer.id), "listing_id": str(offer.listing_id), **(data or {})},
        )

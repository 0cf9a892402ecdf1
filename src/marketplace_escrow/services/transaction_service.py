"""Transaction Service — core business logic for the sale lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Fee calculator (captured once, at creation)
    - Escrow ledger (custody of funds)
    - Repositories (data access)
    - Audit log and outbox (events, notifications, payouts)

Every transition goes through `_fire_transition`: the state machine decides
whether the move is legal and the repository writes it with a
compare-and-set on the current status. A concurrent writer that already
moved the row therefore produces IllegalTransition, never a lost update.

Deadline errors are raised AFTER the automatic cancel has been recorded;
the unit of work commits on DeadlineError so the cancel persists.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import (
    SELLABLE_LISTING_STATUSES,
    DisputeReason,
    DisputeResolution,
    EntityType,
    EventType,
    ListingStatus,
    PaymentMethod,
    PayoutParty,
    TransactionStatus,
)
from marketplace_escrow.domain.exceptions import (
    DisputeAlreadyOpen,
    DisputeAlreadyResolved,
    DisputeNotFound,
    IllegalTransition,
    InvalidDisputeReason,
    ListingAlreadySold,
    ListingNotAvailable,
    ListingNotFound,
    NotTransactionParty,
    PaymentDeadlineExceeded,
    SelfPurchase,
    TransactionNotFound,
)
from marketplace_escrow.domain.fees import compute_fees, resolve_rates
from marketplace_escrow.domain.identifiers import (
    generate_dispute_protocol,
    generate_transaction_code,
)
from marketplace_escrow.domain.state_machine import TransactionStateMachine, guard_transition
from marketplace_escrow.infrastructure.database.orm_models import Dispute, Transaction
from marketplace_escrow.infrastructure.database.repositories import (
    AuditEventRepository,
    DisputeRepository,
    ListingRepository,
    OutboundEffectRepository,
    TransactionRepository,
)
from marketplace_escrow.infrastructure.gateways import build_identity_provider
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.escrow_ledger import EscrowLedger
from marketplace_escrow.services.kyc import require_verification

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.ports import IdentityProvider
    from marketplace_escrow.infrastructure.database.orm_models import (
        AuditEvent,
        Listing,
        Offer,
    )

logger = get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"
PAYMENT_DEADLINE_REASON = "payment_deadline_exceeded"
LATE_CHARGE_REASON = "charged_after_cancel"

_PRE_PAYMENT_STATUSES = (TransactionStatus.INITIATED, TransactionStatus.AWAITING_PAYMENT)
_MAX_CODE_ATTEMPTS = 10


class TransactionService:
    """Manages the transaction lifecycle from creation to payout or refund."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        identity: IdentityProvider | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._identity = identity or build_identity_provider(self._settings)
        self._txn_repo = TransactionRepository(session)
        self._listing_repo = ListingRepository(session)
        self._dispute_repo = DisputeRepository(session)
        self._event_repo = AuditEventRepository(session)
        self._outbox = OutboundEffectRepository(session)
        self._ledger = EscrowLedger(session)

    @property
    def ledger(self) -> EscrowLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_from_offer(
        self,
        offer: Offer,
        agreed_price: int,
        actor_id: str | None = None,
    ) -> Transaction:
        """Create the transaction for an accepted offer.

        Must run in the same unit of work as the offer's ACCEPTED write.
        """
        listing = await self._listing_repo.get_by_id(offer.listing_id, for_update=True)
        if listing is None:
            raise ListingNotFound(str(offer.listing_id))
        return await self._create(
            listing,
            buyer_id=offer.buyer_id,
            agreed_price=agreed_price,
            offer_id=offer.id,
            actor=actor_id or offer.seller_id,
        )

    async def create_direct(
        self,
        listing_id: uuid.UUID,
        buyer_id: str,
        payment_method: PaymentMethod | None = None,
    ) -> Transaction:
        """Buy a listing at its asking price, without negotiation."""
        listing = await self._listing_repo.get_by_id(listing_id, for_update=True)
        if listing is None:
            raise ListingNotFound(str(listing_id))
        if listing.seller_id == buyer_id:
            raise SelfPurchase(str(listing_id))
        self._check_sellable(listing)

        await require_verification(
            self._identity, self._settings, buyer_id, listing.asking_price
        )

        txn = await self._create(
            listing,
            buyer_id=buyer_id,
            agreed_price=listing.asking_price,
            offer_id=None,
            actor=buyer_id,
            payment_method=payment_method,
        )

        from marketplace_escrow.services.offer_service import OfferService

        await OfferService(self._session, self._settings, self._identity).supersede_open_offers(
            listing.id, keep_offer_id=None
        )
        return txn

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def mark_awaiting_payment(
        self,
        transaction_id: uuid.UUID,
        payment_method: PaymentMethod,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Transaction:
        """INITIATED -> AWAITING_PAYMENT, recorded before the gateway is called."""
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        guard_transition(txn.status, "request_payment")
        await self._enforce_payment_deadline(txn)

        await self._fire_transition(
            txn,
            "request_payment",
            EventType.PAYMENT_REQUESTED,
            actor=actor_id,
            metadata={"payment_method": PaymentMethod(payment_method).value},
            payment_method=PaymentMethod(payment_method).value,
        )
        logger.info(
            "transaction.awaiting_payment",
            transaction_id=str(txn.id),
            method=PaymentMethod(payment_method).value,
        )
        return txn

    async def confirm_payment(
        self,
        transaction_id: uuid.UUID,
        gateway_ref: str,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Transaction:
        """Record a confirmed charge and place the funds in escrow.

        INITIATED/AWAITING_PAYMENT -> PAYMENT_CONFIRMED -> ESCROW_HELD, one
        unit of work.

        Raises:
            PaymentDeadlineExceeded: the deadline passed; the transaction has
                been cancelled (and that cancel is committed).
        """
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        guard_transition(txn.status, "payment_confirmed")
        await self._enforce_payment_deadline(txn)

        now = datetime.now(UTC)
        await self._fire_transition(
            txn,
            "payment_confirmed",
            EventType.PAYMENT_CONFIRMED,
            actor=actor_id,
            metadata={"gateway_ref": gateway_ref},
            gateway_ref=gateway_ref,
            paid_at=now,
        )

        await self._ledger.hold(txn.id, txn.total_buyer_payment, actor=actor_id)
        await self._fire_transition(
            txn,
            "funds_held",
            EventType.ESCROW_HELD,
            actor=actor_id,
            metadata={"held_amount": txn.total_buyer_payment},
        )

        await self._notify_parties(txn, EventType.ESCROW_HELD, {"amount": txn.total_buyer_payment})
        logger.info(
            "transaction.escrow_held",
            transaction_id=str(txn.id),
            amount=txn.total_buyer_payment,
            gateway_ref=gateway_ref,
        )
        return txn

    async def expire_payment(
        self,
        transaction_id: uuid.UUID,
        now: datetime | None = None,
    ) -> bool:
        """Cancel an unpaid transaction past its deadline. Idempotent.

        Returns True only when this call performed the cancel.
        """
        now = now or datetime.now(UTC)
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        if TransactionStatus(txn.status) not in _PRE_PAYMENT_STATUSES:
            return False
        if txn.payment_deadline >= now:
            return False
        await self._cancel(
            txn,
            PAYMENT_DEADLINE_REASON,
            EventType.PAYMENT_DEADLINE_EXPIRED,
            actor=SYSTEM_ACTOR,
        )
        return True

    async def require_payable(self, transaction_id: uuid.UUID) -> Transaction:
        """Check, before a charge, that the transaction can still be paid.

        Raises:
            IllegalTransition: the transaction is no longer awaiting payment.
            PaymentDeadlineExceeded: the deadline passed; the cancel is committed.
        """
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        guard_transition(txn.status, "payment_confirmed")
        await self._enforce_payment_deadline(txn)
        return txn

    async def refund_late_charge(
        self,
        transaction_id: uuid.UUID,
        gateway_ref: str,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Transaction:
        """Return a charge that succeeded after the transaction was cancelled.

        The money is recorded in custody and refunded to the buyer in one
        unit of work, so the ledger accounts for it and the refund payout is
        queued. The transaction is flagged for ops and keeps its status.
        No-op when the ledger already has a hold for the transaction.
        """
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        if txn.status != TransactionStatus.CANCELLED.value:
            raise IllegalTransition(txn.status, "refund_late_charge", None)
        if await self._ledger.get_hold(txn.id) is not None:
            return txn

        await self._ledger.hold(txn.id, txn.total_buyer_payment, actor=actor_id)
        await self._ledger.refund(
            txn.id, payee_ref=txn.buyer_id, reason=LATE_CHARGE_REASON, actor=actor_id
        )
        await self.flag_for_attention(txn.id, f"{LATE_CHARGE_REASON}: {gateway_ref}")
        logger.error(
            "transaction.late_charge_refunded",
            transaction_id=str(txn.id),
            gateway_ref=gateway_ref,
            amount=txn.total_buyer_payment,
        )
        return txn

    # ------------------------------------------------------------------
    # Transfer and completion
    # ------------------------------------------------------------------

    async def confirm_transfer(self, transaction_id: uuid.UUID, actor_id: str) -> Transaction:
        """Seller confirms the reservation was transferred. No funds move."""
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        if actor_id != txn.seller_id:
            raise NotTransactionParty(str(transaction_id), actor_id, "seller")

        now = datetime.now(UTC)
        release_at = now + timedelta(days=self._settings.escrow_release_days)
        await self._fire_transition(
            txn,
            "transfer_confirmed",
            EventType.TRANSFER_CONFIRMED,
            actor=actor_id,
            metadata={"escrow_release_at": release_at.isoformat()},
            transfer_confirmed_at=now,
            escrow_release_at=release_at,
        )

        await self._outbox.enqueue_notification(
            txn.buyer_id,
            EventType.TRANSFER_CONFIRMED,
            {"code": txn.code, "escrow_release_at": release_at.isoformat()},
            transaction_id=txn.id,
        )
        logger.info("transaction.transfer_confirmed", transaction_id=str(txn.id))
        return txn

    async def confirm_receipt(self, transaction_id: uuid.UUID, actor_id: str) -> Transaction:
        """Buyer confirms receipt; the seller's net amount is released."""
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        if actor_id != txn.buyer_id:
            raise NotTransactionParty(str(transaction_id), actor_id, "buyer")

        await self._complete(txn, "receipt_confirmed", EventType.RECEIPT_CONFIRMED, actor_id)
        logger.info("transaction.completed", transaction_id=str(txn.id), trigger="receipt")
        return txn

    async def auto_release(
        self,
        transaction_id: uuid.UUID,
        now: datetime | None = None,
    ) -> bool:
        """Release escrow to the seller once escrow_release_at has passed.

        Idempotent; a transaction under dispute is not TRANSFER_PENDING and
        is left alone. Returns True only when this call completed it.
        """
        now = now or datetime.now(UTC)
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        if txn.status != TransactionStatus.TRANSFER_PENDING.value:
            return False
        if txn.escrow_release_at is None or txn.escrow_release_at >= now:
            return False

        await self._complete(
            txn, "escrow_auto_released", EventType.ESCROW_AUTO_RELEASED, SYSTEM_ACTOR
        )
        logger.info("transaction.completed", transaction_id=str(txn.id), trigger="auto_release")
        return True

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        transaction_id: uuid.UUID,
        actor_id: str,
        reason: DisputeReason | str,
        description: str | None = None,
    ) -> Dispute:
        """Freeze the transaction pending mediation."""
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        if actor_id not in (txn.buyer_id, txn.seller_id):
            raise NotTransactionParty(str(transaction_id), actor_id, "buyer or seller")
        try:
            reason = DisputeReason(reason)
        except ValueError as err:
            raise InvalidDisputeReason(str(reason)) from err

        if await self._dispute_repo.get_open_for_transaction(txn.id) is not None:
            raise DisputeAlreadyOpen(str(transaction_id))

        guard_transition(txn.status, "dispute_opened")
        dispute = await self._dispute_repo.create(
            Dispute(
                protocol=await self._unique_dispute_protocol(),
                transaction_id=txn.id,
                opened_by=actor_id,
                reason=reason.value,
                description=description,
            )
        )
        await self._fire_transition(
            txn,
            "dispute_opened",
            EventType.DISPUTE_OPENED,
            actor=actor_id,
            metadata={
                "dispute_id": str(dispute.id),
                "protocol": dispute.protocol,
                "reason": reason.value,
            },
        )

        counterparty = txn.seller_id if actor_id == txn.buyer_id else txn.buyer_id
        await self._outbox.enqueue_notification(
            counterparty,
            EventType.DISPUTE_OPENED,
            {"code": txn.code, "protocol": dispute.protocol, "reason": reason.value},
            transaction_id=txn.id,
        )
        logger.info(
            "transaction.dispute_opened",
            transaction_id=str(txn.id),
            protocol=dispute.protocol,
            by=actor_id,
        )
        return dispute

    async def resolve_dispute(
        self,
        transaction_id: uuid.UUID,
        resolution: DisputeResolution | str,
        mediator_id: str,
    ) -> Transaction:
        """Close the open dispute and settle: release to seller or refund buyer."""
        resolution = DisputeResolution(resolution)
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)

        dispute = await self._dispute_repo.get_open_for_transaction(txn.id)
        if dispute is None:
            previous = await self._dispute_repo.get_by_transaction(txn.id)
            if previous:
                raise DisputeAlreadyResolved(str(previous[-1].id))
            # No dispute at all: let the guard report the illegal move.
            guard_transition(txn.status, "dispute_resolved")
            raise DisputeNotFound(str(transaction_id))

        guard_transition(txn.status, "dispute_resolved")
        if not await self._dispute_repo.close(
            dispute, resolution.value, mediator_id, datetime.now(UTC)
        ):
            raise DisputeAlreadyResolved(str(dispute.id))

        to_seller = resolution == DisputeResolution.RELEASE_SELLER
        await self._fire_transition(
            txn,
            "dispute_resolved",
            EventType.DISPUTE_RESOLVED_SELLER if to_seller else EventType.DISPUTE_RESOLVED_BUYER,
            actor=mediator_id,
            metadata={"dispute_id": str(dispute.id), "resolution": resolution.value},
        )

        if to_seller:
            await self._complete(
                txn,
                "released_to_seller",
                EventType.TRANSACTION_COMPLETED,
                mediator_id,
                reason="dispute_resolved_seller",
            )
        else:
            await self._fire_transition(
                txn,
                "refunded_to_buyer",
                EventType.TRANSACTION_REFUNDED,
                actor=mediator_id,
                metadata={"dispute_id": str(dispute.id)},
            )
            await self._ledger.refund(
                txn.id, payee_ref=txn.buyer_id, reason="dispute_resolved_buyer", actor=mediator_id
            )
            await self._notify_parties(txn, EventType.TRANSACTION_REFUNDED, {})

        logger.info(
            "transaction.dispute_resolved",
            transaction_id=str(txn.id),
            resolution=resolution.value,
            mediator=mediator_id,
        )
        return txn

    # ------------------------------------------------------------------
    # Cancellation and admin refunds
    # ------------------------------------------------------------------

    async def cancel(
        self,
        transaction_id: uuid.UUID,
        reason: str,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Transaction:
        """Cancel before funds are held (INITIATED / AWAITING_PAYMENT / PAYMENT_CONFIRMED)."""
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        if (
            actor_id != SYSTEM_ACTOR
            and actor_id not in (txn.buyer_id, txn.seller_id)
            and actor_id not in self._settings.admin_user_id_set
        ):
            raise NotTransactionParty(str(transaction_id), actor_id, "buyer or seller")

        await self._cancel(txn, reason, EventType.TRANSACTION_CANCELLED, actor=actor_id)
        return txn

    async def force_refund(
        self,
        transaction_id: uuid.UUID,
        admin_id: str,
        reason: str,
    ) -> Transaction:
        """Admin-forced refund of held funds (ESCROW_HELD / TRANSFER_PENDING)."""
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        await self._fire_transition(
            txn,
            "refund_forced",
            EventType.REFUND_FORCED,
            actor=admin_id,
            metadata={"reason": reason},
        )
        await self._ledger.refund(txn.id, payee_ref=txn.buyer_id, reason=reason, actor=admin_id)
        await self._notify_parties(txn, EventType.REFUND_FORCED, {"reason": reason})

        logger.warning(
            "transaction.refund_forced",
            transaction_id=str(txn.id),
            admin=admin_id,
            reason=reason,
        )
        return txn

    async def flag_for_attention(self, transaction_id: uuid.UUID, reason: str) -> Transaction:
        """Mark for manual follow-up. The status is left as committed."""
        txn = await self._get_transaction_or_raise(transaction_id, for_update=True)
        await self._txn_repo.flag_attention(txn, reason)
        await self._event_repo.record(
            entity_type=EntityType.TRANSACTION,
            entity_id=txn.id,
            event_type=EventType.ATTENTION_FLAGGED,
            old_status=txn.status,
            new_status=txn.status,
            actor=SYSTEM_ACTOR,
            metadata={"reason": reason},
        )
        logger.warning("transaction.needs_attention", transaction_id=str(txn.id), reason=reason)
        return txn

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: uuid.UUID) -> Transaction:
        """Get a transaction or raise."""
        return await self._get_transaction_or_raise(transaction_id)

    async def get_status(self, transaction_id: uuid.UUID) -> dict:
        """Get transaction status with allowed events and fund disposition."""
        txn = await self._get_transaction_or_raise(transaction_id)
        sm = TransactionStateMachine(current_status=txn.status)
        return {
            "transaction_id": str(txn.id),
            "code": txn.code,
            "status": txn.status,
            "disposition": (await self._ledger.disposition(txn.id)).value,
            "needs_attention": txn.needs_attention,
            "allowed_events": sm.get_allowed_events(),
        }

    async def get_events(self, transaction_id: uuid.UUID) -> list[AuditEvent]:
        """Get the audit trail (transaction and escrow events)."""
        await self._get_transaction_or_raise(transaction_id)
        return await self._event_repo.get_timeline(transaction_id)

    async def get_disputes(self, transaction_id: uuid.UUID) -> list[Dispute]:
        await self._get_transaction_or_raise(transaction_id)
        return await self._dispute_repo.get_by_transaction(transaction_id)

    async def list_for_participant(self, user_id: str) -> list[Transaction]:
        return await self._txn_repo.get_by_participant(user_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_transaction_or_raise(
        self, transaction_id: uuid.UUID, for_update: bool = False
    ) -> Transaction:
        txn = await self._txn_repo.get_by_id(transaction_id, for_update=for_update)
        if txn is None:
            raise TransactionNotFound(str(transaction_id))
        return txn

    async def _fire_transition(
        self,
        txn: Transaction,
        event_name: str,
        event_type: EventType,
        actor: str,
        metadata: dict | None = None,
        **values: Any,
    ) -> Transaction:
        """Validate, write (compare-and-set) and record one transition.

        Raises IllegalTransition if the move is not in the table, or if the
        row was moved by someone else since it was read.
        """
        old_status = TransactionStatus(txn.status)
        new_status = TransactionStatus(guard_transition(txn.status, event_name))

        if not await self._txn_repo.compare_and_set(txn, old_status, new_status, **values):
            await self._session.refresh(txn)
            logger.warning(
                "transaction.concurrent_transition",
                transaction_id=str(txn.id),
                expected=old_status.value,
                actual=txn.status,
                event=event_name,
            )
            raise IllegalTransition(txn.status, event_name, new_status.value)

        await self._event_repo.record(
            entity_type=EntityType.TRANSACTION,
            entity_id=txn.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata=metadata,
        )
        return txn

    async def _create(
        self,
        listing: Listing,
        buyer_id: str,
        agreed_price: int,
        offer_id: uuid.UUID | None,
        actor: str,
        payment_method: PaymentMethod | None = None,
    ) -> Transaction:
        buyer_rate, seller_rate = resolve_rates(self._settings, listing.seller_fee_rate)
        fees = compute_fees(agreed_price, buyer_rate, seller_rate)

        # The conditional flip is the tie-break between concurrent buyers.
        if not await self._listing_repo.mark_sold(listing):
            logger.info("transaction.listing_already_sold", listing_id=str(listing.id))
            raise ListingAlreadySold(str(listing.id))

        now = datetime.now(UTC)
        txn = await self._txn_repo.create(
            Transaction(
                code=await self._unique_transaction_code(),
                listing_id=listing.id,
                offer_id=offer_id,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                status=TransactionStatus.INITIATED.value,
                agreed_price=fees.agreed_price,
                buyer_fee_rate=fees.buyer_fee_rate,
                platform_fee_rate=fees.seller_fee_rate,
                buyer_fee=fees.buyer_fee,
                seller_fee=fees.seller_fee,
                platform_fee=fees.platform_fee,
                seller_net_amount=fees.seller_net_amount,
                total_buyer_payment=fees.total_buyer_payment,
                payment_method=PaymentMethod(payment_method).value if payment_method else None,
                payment_deadline=now + timedelta(hours=self._settings.payment_deadline_hours),
                needs_attention=False,
            )
        )

        await self._event_repo.record(
            entity_type=EntityType.TRANSACTION,
            entity_id=txn.id,
            event_type=EventType.TRANSACTION_CREATED,
            old_status=None,
            new_status=TransactionStatus.INITIATED,
            actor=actor,
            metadata={
                "code": txn.code,
                "offer_id": str(offer_id) if offer_id else None,
                "listing_status": ListingStatus.SOLD.value,
                **fees.to_dict(),
            },
        )
        await self._notify_parties(
            txn,
            EventType.TRANSACTION_CREATED,
            {"total_buyer_payment": txn.total_buyer_payment},
        )

        logger.info(
            "transaction.created",
            transaction_id=str(txn.id),
            code=txn.code,
            agreed_price=txn.agreed_price,
            platform_fee=txn.platform_fee,
        )
        return txn

    async def _complete(
        self,
        txn: Transaction,
        event_name: str,
        event_type: EventType,
        actor: str,
        reason: str | None = None,
    ) -> None:
        """Move to COMPLETED and release the seller's net amount."""
        await self._fire_transition(
            txn,
            event_name,
            event_type,
            actor=actor,
            metadata={"seller_net_amount": txn.seller_net_amount},
            completed_at=datetime.now(UTC),
        )
        await self._ledger.release(
            txn.id,
            payout_amount=txn.seller_net_amount,
            payee_ref=txn.seller_id,
            reason=reason or event_name,
            to=PayoutParty.SELLER,
            actor=actor,
        )
        await self._listing_repo.ensure_sold(txn.listing_id)
        await self._notify_parties(
            txn, EventType.TRANSACTION_COMPLETED, {"seller_net_amount": txn.seller_net_amount}
        )

    async def _cancel(
        self,
        txn: Transaction,
        reason: str,
        event_type: EventType,
        actor: str,
    ) -> None:
        await self._fire_transition(
            txn,
            "cancelled",
            event_type,
            actor=actor,
            metadata={"reason": reason},
            cancelled_at=datetime.now(UTC),
            cancel_reason=reason,
        )
        await self._notify_parties(txn, EventType.TRANSACTION_CANCELLED, {"reason": reason})
        logger.info("transaction.cancelled", transaction_id=str(txn.id), reason=reason)

    async def _enforce_payment_deadline(self, txn: Transaction) -> None:
        """Cancel and raise if the payment deadline has passed."""
        if datetime.now(UTC) <= txn.payment_deadline:
            return
        await self._cancel(
            txn,
            PAYMENT_DEADLINE_REASON,
            EventType.PAYMENT_DEADLINE_EXPIRED,
            actor=SYSTEM_ACTOR,
        )
        raise PaymentDeadlineExceeded(str(txn.id))

    def _check_sellable(self, listing: Listing) -> None:
        if listing.status == ListingStatus.SOLD.value:
            raise ListingAlreadySold(str(listing.id))
        if ListingStatus(listing.status) not in SELLABLE_LISTING_STATUSES:
            raise ListingNotAvailable(str(listing.id), listing.status)

    async def _notify_parties(self, txn: Transaction, event_type: EventType, data: dict) -> None:
        payload = {"transaction_id": str(txn.id), "code": txn.code, "status": txn.status, **data}
        for user_id in (txn.buyer_id, txn.seller_id):
            await self._outbox.enqueue_notification(
                user_id, event_type, payload, transaction_id=txn.id
            )

    async def _unique_transaction_code(self) -> str:
        for _ in range(_MAX_CODE_ATTEMPTS):
            code = generate_transaction_code()
            if not await self._txn_repo.code_exists(code):
                return code
        raise RuntimeError("Could not allocate a unique transaction code")

    async def _unique_dispute_protocol(self) -> str:
        for _ in range(_MAX_CODE_ATTEMPTS):
            protocol = generate_dispute_protocol()
            if not await self._dispute_repo.protocol_exists(protocol):
                return protocol
        raise RuntimeError("Could not allocate a unique dispute protocol")

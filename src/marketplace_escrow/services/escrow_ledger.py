"""Escrow Ledger — custody of a transaction's funds.

The ledger does not decide anything: it records that funds are held and
that they left custody exactly once, to the seller (release) or to the
buyer (refund). Every release enqueues one PAYOUT effect in the outbox;
nothing else in the engine asks the gateway to move money out.

Integrity errors (AlreadyHeld, AlreadyReleased) are logged at error level
and always propagate.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from marketplace_escrow.domain.enums import (
    EffectKind,
    EntityType,
    EventType,
    FundDisposition,
    PayoutParty,
)
from marketplace_escrow.domain.exceptions import (
    AlreadyHeld,
    AlreadyReleased,
    InvalidPrice,
    NotHeld,
)
from marketplace_escrow.infrastructure.database.orm_models import EscrowHold
from marketplace_escrow.infrastructure.database.repositories import (
    AuditEventRepository,
    EscrowHoldRepository,
    OutboundEffectRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class EscrowLedger:
    """Tracks held funds per transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._hold_repo = EscrowHoldRepository(session)
        self._event_repo = AuditEventRepository(session)
        self._outbox = OutboundEffectRepository(session)

    async def hold(
        self,
        transaction_id: uuid.UUID,
        amount: int,
        actor: str = "SYSTEM",
    ) -> EscrowHold:
        """Record that `amount` is in custody for the transaction."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidPrice(amount)

        existing = await self._hold_repo.get_by_transaction(transaction_id)
        if existing is not None:
            logger.error("ledger.double_hold", transaction_id=str(transaction_id))
            raise AlreadyHeld(str(transaction_id))

        try:
            hold = await self._hold_repo.create(
                EscrowHold(transaction_id=transaction_id, held_amount=amount)
            )
        except IntegrityError as err:
            # Lost the race against a concurrent hold (unique transaction_id).
            logger.error("ledger.double_hold", transaction_id=str(transaction_id), race=True)
            raise AlreadyHeld(str(transaction_id)) from err

        await self._event_repo.record(
            entity_type=EntityType.ESCROW,
            entity_id=transaction_id,
            event_type=EventType.FUNDS_HELD,
            old_status=FundDisposition.NONE,
            new_status=FundDisposition.HELD,
            actor=actor,
            metadata={"amount": amount},
        )

        logger.info("ledger.held", transaction_id=str(transaction_id), amount=amount)
        return hold

    async def release(
        self,
        transaction_id: uuid.UUID,
        payout_amount: int,
        payee_ref: str,
        reason: str,
        to: PayoutParty = PayoutParty.SELLER,
        actor: str = "SYSTEM",
    ) -> EscrowHold:
        """Release held funds to `to` and enqueue the payout.

        Raises:
            NotHeld: no hold exists for the transaction.
            AlreadyReleased: the hold already left custody.
        """
        hold = await self._get_active_hold(transaction_id)
        return await self._settle(hold, to, payout_amount, payee_ref, reason, actor)

    async def refund(
        self,
        transaction_id: uuid.UUID,
        payee_ref: str,
        reason: str,
        actor: str = "SYSTEM",
    ) -> EscrowHold:
        """Return the full held amount to the buyer."""
        hold = await self._get_active_hold(transaction_id)
        return await self._settle(
            hold, PayoutParty.BUYER, hold.held_amount, payee_ref, reason, actor
        )

    async def get_hold(self, transaction_id: uuid.UUID) -> EscrowHold | None:
        return await self._hold_repo.get_by_transaction(transaction_id)

    async def disposition(self, transaction_id: uuid.UUID) -> FundDisposition:
        """Exactly one of none / held / released_to_seller / refunded_to_buyer."""
        hold = await self._hold_repo.get_by_transaction(transaction_id)
        if hold is None:
            return FundDisposition.NONE
        if hold.released_at is None:
            return FundDisposition.HELD
        if hold.released_to == PayoutParty.SELLER.value:
            return FundDisposition.RELEASED_TO_SELLER
        return FundDisposition.REFUNDED_TO_BUYER

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_active_hold(self, transaction_id: uuid.UUID) -> EscrowHold:
        hold = await self._hold_repo.get_by_transaction(transaction_id, for_update=True)
        if hold is None:
            raise NotHeld(str(transaction_id))
        if not hold.is_active:
            self._log_double_release(hold)
            raise AlreadyReleased(str(transaction_id), hold.released_to)
        return hold

    async def _settle(
        self,
        hold: EscrowHold,
        to: PayoutParty,
        payout_amount: int,
        payee_ref: str,
        reason: str,
        actor: str,
    ) -> EscrowHold:
        if (
            isinstance(payout_amount, bool)
            or not isinstance(payout_amount, int)
            or not 0 < payout_amount <= hold.held_amount
        ):
            raise InvalidPrice(payout_amount)

        released = await self._hold_repo.mark_released(
            hold, to, reason, payout_amount, datetime.now(UTC)
        )
        if not released:
            await self._session.refresh(hold)
            self._log_double_release(hold)
            raise AlreadyReleased(str(hold.transaction_id), hold.released_to)

        effect = await self._outbox.enqueue(
            EffectKind.PAYOUT,
            {
                "transaction_id": str(hold.transaction_id),
                "amount": payout_amount,
                "payee_ref": payee_ref,
                "party": to.value,
                "reason": reason,
            },
            transaction_id=hold.transaction_id,
        )

        to_seller = to == PayoutParty.SELLER
        await self._event_repo.record(
            entity_type=EntityType.ESCROW,
            entity_id=hold.transaction_id,
            event_type=EventType.FUNDS_RELEASED if to_seller else EventType.FUNDS_REFUNDED,
            old_status=FundDisposition.HELD,
            new_status=(
                FundDisposition.RELEASED_TO_SELLER
                if to_seller
                else FundDisposition.REFUNDED_TO_BUYER
            ),
            actor=actor,
            metadata={
                "amount": payout_amount,
                "held_amount": hold.held_amount,
                "reason": reason,
                "payout_effect_id": str(effect.id),
            },
        )

        logger.info(
            "ledger.released",
            transaction_id=str(hold.transaction_id),
            to=to.value,
            amount=payout_amount,
            reason=reason,
        )
        return hold

    @staticmethod
    def _log_double_release(hold: EscrowHold) -> None:
        logger.error(
            "ledger.double_release",
            transaction_id=str(hold.transaction_id),
            released_to=hold.released_to,
            released_at=hold.released_at.isoformat() if hold.released_at else None,
        )

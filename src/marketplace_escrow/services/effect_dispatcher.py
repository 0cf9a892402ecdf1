"""Effect Dispatcher — delivers outbox rows after their unit of work committed.

Payouts and notifications are written to `outbound_effects` in the same
database transaction as the state change that caused them. This dispatcher
drains PENDING rows in three steps per row:

    1. read the effect (short unit of work)
    2. call the gateway / notifier with NO database transaction open
       (tenacity retries with exponential backoff)
    3. mark the row DELIVERED or FAILED (second unit of work)

Delivery is at-least-once; the effect id is the idempotency key passed to
the gateway. A payout that exhausts its retries flags the transaction
`needs_attention` and leaves its status untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import EffectKind, EffectStatus
from marketplace_escrow.domain.exceptions import GatewayError
from marketplace_escrow.infrastructure.database.engine import unit_of_work
from marketplace_escrow.infrastructure.database.repositories import OutboundEffectRepository
from marketplace_escrow.infrastructure.gateways import gateway_retry
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.domain.ports import NotificationDispatcher, PaymentGateway

logger = get_logger(__name__)


@dataclass
class DispatchReport:
    delivered: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class _EffectSnapshot:
    id: uuid.UUID
    kind: EffectKind
    payload: dict
    transaction_id: uuid.UUID | None


class EffectDispatcher:
    """Drains the outbox against the payment gateway and notifier."""

    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: NotificationDispatcher,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway
        self._notifier = notifier
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def dispatch_pending(
        self,
        limit: int | None = None,
        kind: EffectKind | None = None,
    ) -> DispatchReport:
        """Deliver up to `limit` PENDING effects, oldest first."""
        async with unit_of_work(self._session_factory) as session:
            ids = await OutboundEffectRepository(session).pending_ids(
                limit or self._settings.sweep_batch_size, kind=kind
            )

        report = DispatchReport()
        for effect_id in ids:
            status = await self.dispatch(effect_id)
            if status == EffectStatus.DELIVERED:
                report.delivered += 1
            elif status == EffectStatus.FAILED:
                report.failed += 1
            else:
                report.skipped += 1

        if ids:
            logger.info(
                "dispatcher.batch_done",
                delivered=report.delivered,
                failed=report.failed,
                skipped=report.skipped,
            )
        return report

    async def dispatch(self, effect_id: uuid.UUID) -> EffectStatus | None:
        """Deliver one effect. Returns None if it was no longer PENDING."""
        snapshot = await self._load(effect_id)
        if snapshot is None:
            return None

        attempts = 0
        result: dict | None = None
        error: str | None = None
        try:
            if snapshot.kind == EffectKind.PAYOUT:
                attempts, result = await self._deliver_payout(snapshot)
            else:
                attempts = await self._deliver_notification(snapshot)
        except GatewayError as exc:
            error = exc.message
            attempts = max(attempts, self._settings.gateway_max_attempts if exc.retryable else 1)
        except Exception as exc:
            # Notification transports are third-party; any failure only fails the effect.
            logger.exception("dispatcher.delivery_error", effect_id=str(effect_id))
            error = str(exc) or exc.__class__.__name__
            attempts = max(attempts, 1)

        return await self._finish(snapshot, attempts, result, error)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _load(self, effect_id: uuid.UUID) -> _EffectSnapshot | None:
        async with unit_of_work(self._session_factory) as session:
            effect = await OutboundEffectRepository(session).get_by_id(effect_id)
            if effect is None or effect.status != EffectStatus.PENDING.value:
                return None
            return _EffectSnapshot(
                id=effect.id,
                kind=EffectKind(effect.kind),
                payload=dict(effect.payload),
                transaction_id=effect.transaction_id,
            )

    async def _deliver_payout(self, snapshot: _EffectSnapshot) -> tuple[int, dict]:
        attempts = 0
        payload = snapshot.payload

        @gateway_retry(self._settings)
        async def _call():  # noqa: ANN202
            nonlocal attempts
            attempts += 1
            return await self._gateway.payout(
                amount=payload["amount"],
                payee_ref=payload["payee_ref"],
                idempotency_key=f"payout:{snapshot.id}",
            )

        ref = await _call()
        logger.info(
            "dispatcher.payout_delivered",
            effect_id=str(snapshot.id),
            transaction_id=payload.get("transaction_id"),
            reference=ref.reference,
            attempts=attempts,
        )
        return attempts, {"reference": ref.reference, "amount": ref.amount}

    async def _deliver_notification(self, snapshot: _EffectSnapshot) -> int:
        payload = snapshot.payload
        await self._notifier.notify(payload["user_id"], payload["event_type"], payload["data"])
        return 1

    async def _finish(
        self,
        snapshot: _EffectSnapshot,
        attempts: int,
        result: dict | None,
        error: str | None,
    ) -> EffectStatus | None:
        async with unit_of_work(self._session_factory) as session:
            repo = OutboundEffectRepository(session)
            effect = await repo.get_by_id(snapshot.id, for_update=True)
            if effect is None or effect.status != EffectStatus.PENDING.value:
                return None

            if error is None:
                await repo.mark_delivered(effect, result, attempts)
                return EffectStatus.DELIVERED

            await repo.mark_failed(effect, error, attempts)
            logger.error(
                "dispatcher.effect_failed",
                effect_id=str(snapshot.id),
                kind=snapshot.kind.value,
                attempts=attempts,
                error=error,
            )
            if snapshot.kind == EffectKind.PAYOUT and snapshot.transaction_id is not None:
                await self._flag(session, snapshot.transaction_id, error)
            return EffectStatus.FAILED

    async def _flag(self, session: AsyncSession, transaction_id: uuid.UUID, error: str) -> None:
        await TransactionService(session, self._settings).flag_for_attention(
            transaction_id, reason=f"payout_failed: {error}"
        )

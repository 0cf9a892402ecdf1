"""Scheduled sweeps — the time-driven half of the lifecycle.

    expire_offers     open offers past expires_at        -> EXPIRED
    expire_payments   unpaid transactions past deadline  -> CANCELLED
    release_escrows   TRANSFER_PENDING past release date -> COMPLETED

Each sweep selects candidate ids in one short unit of work, then processes
every row in its own unit of work through the same idempotent service
call the API uses. Two workers sweeping at once cannot double-transition a
row: the loser's compare-and-set simply finds nothing to do.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.exceptions import EscrowEngineError, LedgerIntegrityError
from marketplace_escrow.infrastructure.database.engine import unit_of_work
from marketplace_escrow.infrastructure.database.repositories import (
    OfferRepository,
    TransactionRepository,
)
from marketplace_escrow.logging_config import bind_context, get_logger
from marketplace_escrow.services.offer_service import OfferService
from marketplace_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


@dataclass
class SweepReport:
    offers_expired: int = 0
    payments_expired: int = 0
    escrows_released: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


async def _process(
    name: str,
    ids: list[uuid.UUID],
    handler: Callable[[AsyncSession, uuid.UUID], Awaitable[bool]],
    session_factory: async_sessionmaker[AsyncSession] | None,
) -> int:
    done = 0
    for row_id in ids:
        try:
            async with unit_of_work(session_factory) as session:
                if await handler(session, row_id):
                    done += 1
        except LedgerIntegrityError:
            logger.exception("sweep.ledger_integrity", sweep=name, row_id=str(row_id))
        except EscrowEngineError as exc:
            # Another writer moved the row first; the next run re-evaluates it.
            logger.warning("sweep.row_skipped", sweep=name, row_id=str(row_id), code=exc.code)
    return done


async def expire_offers(
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> int:
    """Expire open offers whose TTL has elapsed. Returns how many this run expired."""
    settings = settings or get_settings()
    now = now or datetime.now(UTC)
    async with unit_of_work(session_factory) as session:
        ids = await OfferRepository(session).ids_due_for_expiry(now, settings.sweep_batch_size)

    async def _expire(session: AsyncSession, offer_id: uuid.UUID) -> bool:
        return await OfferService(session, settings).expire_offer(offer_id, now=now)

    return await _process("expire_offers", ids, _expire, session_factory)


async def expire_payments(
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> int:
    """Cancel unpaid transactions past their payment deadline."""
    settings = settings or get_settings()
    now = now or datetime.now(UTC)
    async with unit_of_work(session_factory) as session:
        ids = await TransactionRepository(session).ids_past_payment_deadline(
            now, settings.sweep_batch_size
        )

    async def _expire(session: AsyncSession, transaction_id: uuid.UUID) -> bool:
        return await TransactionService(session, settings).expire_payment(transaction_id, now=now)

    return await _process("expire_payments", ids, _expire, session_factory)


async def release_escrows(
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> int:
    """Auto-release escrow for transfers nobody disputed within the window."""
    settings = settings or get_settings()
    now = now or datetime.now(UTC)
    async with unit_of_work(session_factory) as session:
        ids = await TransactionRepository(session).ids_due_for_auto_release(
            now, settings.sweep_batch_size
        )

    async def _release(session: AsyncSession, transaction_id: uuid.UUID) -> bool:
        return await TransactionService(session, settings).auto_release(transaction_id, now=now)

    return await _process("release_escrows", ids, _release, session_factory)


async def run_sweeps(
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> SweepReport:
    """Run every sweep once."""
    bind_context(sweep_run=str(uuid.uuid4()))
    now = now or datetime.now(UTC)
    report = SweepReport(
        offers_expired=await expire_offers(now, session_factory, settings),
        payments_expired=await expire_payments(now, session_factory, settings),
        escrows_released=await release_escrows(now, session_factory, settings),
    )
    logger.info("sweep.completed", **report.to_dict())
    return report

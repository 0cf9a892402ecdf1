"""Dispute Service — mediation hook onto the transaction lifecycle.

Opening a dispute freezes the transaction (no receipt confirmation, no
auto-release); resolving it settles the escrow one way or the other.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import DisputeStatus
from marketplace_escrow.domain.exceptions import DisputeAlreadyResolved, DisputeNotFound
from marketplace_escrow.infrastructure.database.repositories import DisputeRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import DisputeReason, DisputeResolution
    from marketplace_escrow.infrastructure.database.orm_models import Dispute, Transaction

logger = get_logger(__name__)


class DisputeService:
    """Opens and resolves disputes."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._dispute_repo = DisputeRepository(session)
        self._txn_service = TransactionService(session, self._settings)

    async def open(
        self,
        transaction_id: uuid.UUID,
        opened_by: str,
        reason: DisputeReason | str,
        description: str | None = None,
    ) -> uuid.UUID:
        """Open a dispute and return its id."""
        dispute = await self._txn_service.open_dispute(
            transaction_id, opened_by, reason, description
        )
        return dispute.id

    async def resolve(
        self,
        dispute_id: uuid.UUID,
        resolution: DisputeResolution | str,
        mediator_id: str,
    ) -> Transaction:
        """Resolve an OPEN dispute in favour of the seller or the buyer."""
        dispute = await self._get_dispute_or_raise(dispute_id, for_update=True)
        if dispute.status == DisputeStatus.RESOLVED.value:
            raise DisputeAlreadyResolved(str(dispute_id))
        return await self._txn_service.resolve_dispute(
            dispute.transaction_id, resolution, mediator_id
        )

    async def get(self, dispute_id: uuid.UUID) -> Dispute:
        return await self._get_dispute_or_raise(dispute_id)

    async def _get_dispute_or_raise(
        self, dispute_id: uuid.UUID, for_update: bool = False
    ) -> Dispute:
        dispute = await self._dispute_repo.get_by_id(dispute_id, for_update=for_update)
        if dispute is None:
            raise DisputeNotFound(str(dispute_id))
        return dispute

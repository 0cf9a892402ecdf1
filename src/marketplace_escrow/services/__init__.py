"""Application services — use case orchestration."""

from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.effect_dispatcher import EffectDispatcher
from marketplace_escrow.services.escrow_ledger import EscrowLedger
from marketplace_escrow.services.offer_service import OfferService
from marketplace_escrow.services.transaction_service import TransactionService

__all__ = [
    "DisputeService",
    "EffectDispatcher",
    "EscrowLedger",
    "OfferService",
    "TransactionService",
]

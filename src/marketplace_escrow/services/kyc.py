"""KYC gate applied before offers and purchases.

Amount tiers (cents, configurable):
    amount <= kyc_none_ceiling       -> any level
    amount <= kyc_document_ceiling   -> document or full
    above                            -> full
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import VerificationLevel
from marketplace_escrow.domain.exceptions import VerificationLevelInsufficient
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.ports import IdentityProvider

logger = get_logger(__name__)

_RANK = {
    VerificationLevel.NONE: 0,
    VerificationLevel.DOCUMENT: 1,
    VerificationLevel.FULL: 2,
}


def required_level(amount: int, settings: Settings) -> VerificationLevel:
    if amount > settings.kyc_document_ceiling:
        return VerificationLevel.FULL
    if amount > settings.kyc_none_ceiling:
        return VerificationLevel.DOCUMENT
    return VerificationLevel.NONE


async def require_verification(
    identity: IdentityProvider,
    settings: Settings,
    user_id: str,
    amount: int,
) -> None:
    """Raise VerificationLevelInsufficient if the user's tier is below the amount's."""
    required = required_level(amount, settings)
    if required == VerificationLevel.NONE:
        return
    level = VerificationLevel(await identity.verification_level(user_id))
    if _RANK[level] < _RANK[required]:
        logger.info(
            "kyc.insufficient",
            user_id=user_id,
            level=level.value,
            required=required.value,
            amount=amount,
        )
        raise VerificationLevelInsufficient(user_id, level.value, required.value, amount)

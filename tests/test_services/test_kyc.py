"""Tests for the amount-based verification tiers."""

from __future__ import annotations

import pytest

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.enums import VerificationLevel
from marketplace_escrow.domain.exceptions import VerificationLevelInsufficient
from marketplace_escrow.infrastructure.gateways import StaticIdentityProvider
from marketplace_escrow.services.kyc import require_verification, required_level


@pytest.fixture
def kyc_settings() -> Settings:
    return Settings(_env_file=None, kyc_none_ceiling=100_000, kyc_document_ceiling=1_000_000)


class TestRequiredLevel:
    @pytest.mark.parametrize(
        ("amount", "expected"),
        [
            (1, VerificationLevel.NONE),
            (100_000, VerificationLevel.NONE),
            (100_001, VerificationLevel.DOCUMENT),
            (1_000_000, VerificationLevel.DOCUMENT),
            (1_000_001, VerificationLevel.FULL),
        ],
    )
    def test_tiers(self, kyc_settings, amount: int, expected: VerificationLevel) -> None:
        assert required_level(amount, kyc_settings) == expected


class TestRequireVerification:
    @pytest.mark.asyncio
    async def test_small_amounts_need_nothing(self, kyc_settings) -> None:
        identity = StaticIdentityProvider(default_level=VerificationLevel.NONE)
        await require_verification(identity, kyc_settings, "buyer-1", 50_000)

    @pytest.mark.asyncio
    async def test_document_level_insufficient_for_large_amount(self, kyc_settings) -> None:
        identity = StaticIdentityProvider(default_level=VerificationLevel.DOCUMENT)
        with pytest.raises(VerificationLevelInsufficient):
            await require_verification(identity, kyc_settings, "buyer-1", 2_000_000)

    @pytest.mark.asyncio
    async def test_per_user_override(self, kyc_settings) -> None:
        identity = StaticIdentityProvider(default_level=VerificationLevel.NONE)
        identity.set_level("vip", VerificationLevel.FULL)

        await require_verification(identity, kyc_settings, "vip", 2_000_000)
        with pytest.raises(VerificationLevelInsufficient):
            await require_verification(identity, kyc_settings, "other", 200_000)

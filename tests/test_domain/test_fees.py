"""Tests for the fee calculator.

Verifies the fee identities, half-up rounding to whole cents, input
validation, and the rate resolution order (listing override, then config).
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.exceptions import InvalidPrice, InvalidRate
from marketplace_escrow.domain.fees import compute_fees, resolve_rates, round_half_up


class TestComputeFees:
    def test_reference_scenario(self) -> None:
        fees = compute_fees(10_000, Decimal("0.05"), Decimal("0.10"))
        assert fees.buyer_fee == 500
        assert fees.seller_fee == 1_000
        assert fees.platform_fee == 1_500
        assert fees.seller_net_amount == 9_000
        assert fees.total_buyer_payment == 10_500

    @pytest.mark.parametrize("price", [1, 99, 12_345, 999_999, 50_000_000])
    def test_identities(self, price: int) -> None:
        fees = compute_fees(price, "0.05", "0.08")
        assert fees.platform_fee == fees.buyer_fee + fees.seller_fee
        assert fees.total_buyer_payment == price + fees.buyer_fee
        assert fees.seller_net_amount == price - fees.seller_fee
        assert fees.total_buyer_payment - fees.seller_net_amount == fees.platform_fee

    def test_rounds_half_up(self) -> None:
        # 10 * 0.05 = 0.5 cent -> 1; 30 * 0.05 = 1.5 -> 2
        assert compute_fees(10, "0.05", "0").buyer_fee == 1
        assert compute_fees(30, "0.05", "0").buyer_fee == 2
        assert round_half_up(Decimal("2.4999")) == 2

    def test_zero_rates(self) -> None:
        fees = compute_fees(10_000, 0, 0)
        assert fees.platform_fee == 0
        assert fees.seller_net_amount == 10_000

    def test_to_dict_renders_rates_as_strings(self) -> None:
        data = compute_fees(10_000, Decimal("0.05"), Decimal("0.08")).to_dict()
        assert data["buyer_fee_rate"] == "0.05"
        assert data["seller_fee_rate"] == "0.08"
        assert data["platform_fee"] == 1_300


class TestValidation:
    @pytest.mark.parametrize("price", [0, -1, 10.5, True, "100", None])
    def test_invalid_price(self, price: object) -> None:
        with pytest.raises(InvalidPrice):
            compute_fees(price, "0.05", "0.08")  # type: ignore[arg-type]

    @pytest.mark.parametrize("rate", ["-0.01", "1.01", "abc", "NaN"])
    def test_invalid_rate(self, rate: str) -> None:
        with pytest.raises(InvalidRate):
            compute_fees(10_000, rate, "0.08")

    def test_boundary_rates_allowed(self) -> None:
        fees = compute_fees(10_000, "1", "0")
        assert fees.buyer_fee == 10_000


class TestResolveRates:
    def test_config_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert resolve_rates(settings) == (Decimal("0.05"), Decimal("0.08"))

    def test_listing_override(self) -> None:
        settings = Settings(_env_file=None)
        buyer, seller = resolve_rates(settings, Decimal("0.10"))
        assert buyer == Decimal("0.05")
        assert seller == Decimal("0.10")

"""Fee Calculator.

Pure functions, no I/O. Amounts are integers in cents; rates are Decimal
fractions. Each side's fee is rounded half-up to the cent exactly once and
the platform fee is the sum of the two rounded parts, so

    buyer_fee + seller_fee == platform_fee
    seller_net_amount + seller_fee == agreed_price

hold exactly for every valid input.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from marketplace_escrow.domain.exceptions import InvalidPrice, InvalidRate

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings

_ONE_CENT = Decimal("1")


@dataclass(frozen=True)
class FeeBreakdown:
    """Fee split of one agreed price, all values in cents."""

    agreed_price: int
    buyer_fee_rate: Decimal
    seller_fee_rate: Decimal
    buyer_fee: int
    seller_fee: int
    platform_fee: int
    seller_net_amount: int
    total_buyer_payment: int

    def to_dict(self) -> dict:
        return {
            "agreed_price": self.agreed_price,
            "buyer_fee_rate": str(self.buyer_fee_rate),
            "seller_fee_rate": str(self.seller_fee_rate),
            "buyer_fee": self.buyer_fee,
            "seller_fee": self.seller_fee,
            "platform_fee": self.platform_fee,
            "seller_net_amount": self.seller_net_amount,
            "total_buyer_payment": self.total_buyer_payment,
        }


def _as_rate(name: str, rate: Decimal | str | int | float) -> Decimal:
    try:
        value = rate if isinstance(rate, Decimal) else Decimal(str(rate))
    except (InvalidOperation, ValueError) as err:
        raise InvalidRate(name, rate) from err
    if not value.is_finite() or value < 0 or value > 1:
        raise InvalidRate(name, rate)
    return value


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of cents half-up to a whole cent."""
    return int(value.quantize(_ONE_CENT, rounding=ROUND_HALF_UP))


def compute_fees(
    agreed_price: int,
    buyer_fee_rate: Decimal | str | int | float,
    seller_fee_rate: Decimal | str | int | float,
) -> FeeBreakdown:
    """Split an agreed price into buyer fee, seller fee and seller payout.

    Raises:
        InvalidPrice: agreed_price is not a positive integer amount of cents.
        InvalidRate: a rate is negative, above 1, or not a number.
    """
    if isinstance(agreed_price, bool) or not isinstance(agreed_price, int) or agreed_price <= 0:
        raise InvalidPrice(agreed_price)
    buyer_rate = _as_rate("buyer_fee_rate", buyer_fee_rate)
    seller_rate = _as_rate("seller_fee_rate", seller_fee_rate)

    price = Decimal(agreed_price)
    buyer_fee = round_half_up(price * buyer_rate)
    seller_fee = round_half_up(price * seller_rate)

    return FeeBreakdown(
        agreed_price=agreed_price,
        buyer_fee_rate=buyer_rate,
        seller_fee_rate=seller_rate,
        buyer_fee=buyer_fee,
        seller_fee=seller_fee,
        platform_fee=buyer_fee + seller_fee,
        seller_net_amount=agreed_price - seller_fee,
        total_buyer_payment=agreed_price + buyer_fee,
    )


def resolve_rates(
    settings: Settings,
    listing_seller_fee_rate: Decimal | None = None,
) -> tuple[Decimal, Decimal]:
    """Pick the (buyer, seller) rate pair to capture on a new transaction.

    The seller rate comes from the listing's plan override when present,
    otherwise from configuration.
    """
    seller_rate = (
        listing_seller_fee_rate
        if listing_seller_fee_rate is not None
        else settings.seller_fee_rate
    )
    return settings.buyer_fee_rate, seller_rate

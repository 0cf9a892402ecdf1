"""Tests for domain enumerations."""

from __future__ import annotations

from marketplace_escrow.domain.enums import (
    OPEN_OFFER_STATUSES,
    SELLABLE_LISTING_STATUSES,
    TERMINAL_TRANSACTION_STATUSES,
    DisputeReason,
    DisputeResolution,
    ListingStatus,
    OfferStatus,
    PaymentMethod,
    TransactionStatus,
)


class TestTransactionStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "INITIATED", "AWAITING_PAYMENT", "PAYMENT_CONFIRMED", "ESCROW_HELD",
            "TRANSFER_PENDING", "DISPUTE_OPENED", "DISPUTE_RESOLVED",
            "COMPLETED", "CANCELLED", "REFUNDED",
        }
        assert {s.value for s in TransactionStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(TransactionStatus.ESCROW_HELD, str)
        assert TransactionStatus.ESCROW_HELD == "ESCROW_HELD"

    def test_terminal_statuses(self) -> None:
        assert TERMINAL_TRANSACTION_STATUSES == {
            TransactionStatus.COMPLETED,
            TransactionStatus.CANCELLED,
            TransactionStatus.REFUNDED,
        }


class TestOfferStatus:
    def test_open_statuses(self) -> None:
        assert OPEN_OFFER_STATUSES == {OfferStatus.PENDING, OfferStatus.COUNTERED}

    def test_all_statuses_exist(self) -> None:
        expected = {"PENDING", "ACCEPTED", "REJECTED", "COUNTERED", "EXPIRED", "CANCELLED"}
        assert {s.value for s in OfferStatus} == expected


class TestListingStatus:
    def test_sold_is_not_sellable(self) -> None:
        assert ListingStatus.SOLD not in SELLABLE_LISTING_STATUSES
        assert ListingStatus.ACTIVE in SELLABLE_LISTING_STATUSES


class TestDisputeEnums:
    def test_reasons(self) -> None:
        assert DisputeReason("listing_mismatch") == DisputeReason.LISTING_MISMATCH
        assert len(DisputeReason) == 5

    def test_only_two_resolutions(self) -> None:
        assert {r.value for r in DisputeResolution} == {"release_seller", "refund_buyer"}


class TestPaymentMethod:
    def test_methods(self) -> None:
        assert {m.value for m in PaymentMethod} == {"PIX", "BOLETO", "CREDIT_CARD"}

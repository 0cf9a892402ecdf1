"""Tests for the display label tables."""

from __future__ import annotations

import pytest

from marketplace_escrow.domain.enums import OfferStatus, TransactionStatus
from marketplace_escrow.presentation import StatusLabel, offer_label, transaction_label


class TestTransactionLabels:
    def test_default_locale_is_portuguese(self) -> None:
        assert transaction_label("ESCROW_HELD") == StatusLabel("Em Garantia", 60)

    def test_english(self) -> None:
        assert transaction_label("ESCROW_HELD", "en") == StatusLabel("In escrow", 60)

    def test_unsupported_locale_falls_back(self) -> None:
        assert transaction_label("COMPLETED", "fr") == transaction_label("COMPLETED", "pt-BR")

    def test_unknown_status(self) -> None:
        assert transaction_label("ARCHIVED") == StatusLabel("Desconhecido", 0)
        assert transaction_label("ARCHIVED", "en").label == "Unknown"

    @pytest.mark.parametrize("locale", ["pt-BR", "en"])
    def test_every_status_is_labelled(self, locale: str) -> None:
        for status in TransactionStatus:
            label = transaction_label(status.value, locale)
            assert label.label not in ("Desconhecido", "Unknown")
            assert 0 <= label.progress <= 100

    def test_happy_path_progress_increases(self) -> None:
        path = ["INITIATED", "AWAITING_PAYMENT", "PAYMENT_CONFIRMED",
                "ESCROW_HELD", "TRANSFER_PENDING", "COMPLETED"]
        progress = [transaction_label(s).progress for s in path]
        assert progress == sorted(progress)


class TestOfferLabels:
    def test_labels(self) -> None:
        assert offer_label("COUNTERED") == "Contra-oferta"
        assert offer_label("COUNTERED", "en") == "Countered"

    def test_every_status_is_labelled(self) -> None:
        assert all(offer_label(s.value) != "Desconhecido" for s in OfferStatus)

    def test_unknown_status(self) -> None:
        assert offer_label("NOPE", "en") == "Unknown"

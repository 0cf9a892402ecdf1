"""Presentation helpers — display-only lookups, never read by the engine."""

from marketplace_escrow.presentation.labels import StatusLabel, offer_label, transaction_label

__all__ = ["StatusLabel", "offer_label", "transaction_label"]

"""Display labels for offer and transaction statuses.

A pure lookup kept outside the engine: nothing in the domain or service
layers reads these tables. Unknown statuses fall back to a generic label
instead of raising, since clients may render rows written by newer code.
"""

from __future__ import annotations

from dataclasses import dataclass

from marketplace_escrow.domain.enums import OfferStatus, TransactionStatus

DEFAULT_LOCALE = "pt-BR"
SUPPORTED_LOCALES = ("pt-BR", "en")


@dataclass(frozen=True)
class StatusLabel:
    label: str
    progress: int


_TRANSACTION_LABELS: dict[str, dict[TransactionStatus, StatusLabel]] = {
    "pt-BR": {
        TransactionStatus.INITIATED: StatusLabel("Iniciada", 10),
        TransactionStatus.AWAITING_PAYMENT: StatusLabel("Aguardando Pagamento", 25),
        TransactionStatus.PAYMENT_CONFIRMED: StatusLabel("Pagamento Confirmado", 40),
        TransactionStatus.ESCROW_HELD: StatusLabel("Em Garantia", 60),
        TransactionStatus.TRANSFER_PENDING: StatusLabel("Transferencia Pendente", 80),
        TransactionStatus.DISPUTE_OPENED: StatusLabel("Em Disputa", 50),
        TransactionStatus.DISPUTE_RESOLVED: StatusLabel("Disputa Resolvida", 90),
        TransactionStatus.COMPLETED: StatusLabel("Concluida", 100),
        TransactionStatus.CANCELLED: StatusLabel("Cancelada", 0),
        TransactionStatus.REFUNDED: StatusLabel("Reembolsada", 100),
    },
    "en": {
        TransactionStatus.INITIATED: StatusLabel("Initiated", 10),
        TransactionStatus.AWAITING_PAYMENT: StatusLabel("Awaiting payment", 25),
        TransactionStatus.PAYMENT_CONFIRMED: StatusLabel("Payment confirmed", 40),
        TransactionStatus.ESCROW_HELD: StatusLabel("In escrow", 60),
        TransactionStatus.TRANSFER_PENDING: StatusLabel("Transfer pending", 80),
        TransactionStatus.DISPUTE_OPENED: StatusLabel("In dispute", 50),
        TransactionStatus.DISPUTE_RESOLVED: StatusLabel("Dispute resolved", 90),
        TransactionStatus.COMPLETED: StatusLabel("Completed", 100),
        TransactionStatus.CANCELLED: StatusLabel("Cancelled", 0),
        TransactionStatus.REFUNDED: StatusLabel("Refunded", 100),
    },
}

_OFFER_LABELS: dict[str, dict[OfferStatus, str]] = {
    "pt-BR": {
        OfferStatus.PENDING: "Pendente",
        OfferStatus.ACCEPTED: "Aceita",
        OfferStatus.REJECTED: "Recusada",
        OfferStatus.COUNTERED: "Contra-oferta",
        OfferStatus.EXPIRED: "Expirada",
        OfferStatus.CANCELLED: "Cancelada",
    },
    "en": {
        OfferStatus.PENDING: "Pending",
        OfferStatus.ACCEPTED: "Accepted",
        OfferStatus.REJECTED: "Rejected",
        OfferStatus.COUNTERED: "Countered",
        OfferStatus.EXPIRED: "Expired",
        OfferStatus.CANCELLED: "Cancelled",
    },
}

_UNKNOWN = {"pt-BR": "Desconhecido", "en": "Unknown"}


def _locale(locale: str | None) -> str:
    return locale if locale in SUPPORTED_LOCALES else DEFAULT_LOCALE


def transaction_label(status: str, locale: str | None = None) -> StatusLabel:
    """Label and progress percentage for a transaction status."""
    loc = _locale(locale)
    try:
        return _TRANSACTION_LABELS[loc][TransactionStatus(status)]
    except ValueError:
        return StatusLabel(_UNKNOWN[loc], 0)


def offer_label(status: str, locale: str | None = None) -> str:
    loc = _locale(locale)
    try:
        return _OFFER_LABELS[loc][OfferStatus(status)]
    except ValueError:
        return _UNKNOWN[loc]

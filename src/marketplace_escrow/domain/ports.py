"""Collaborator Protocols.

The engine talks to three external services through these narrow interfaces.
They are Protocols (structural subtyping) so adapters don't need to inherit
from a base class — they just need to match the shape.

The domain layer has ZERO imports from any gateway SDK.

Concrete implementations:
    - infrastructure/gateways.py (simulated gateway, static KYC, logging notifier)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from marketplace_escrow.domain.enums import PaymentMethod, VerificationLevel


@dataclass(frozen=True)
class GatewayRef:
    """Receipt of a successful charge.

    Attributes:
        reference: Gateway-side id of the charge, stored on the transaction.
        amount: Amount charged, in cents.
        method: Payment method used.
    """

    reference: str
    amount: int
    method: PaymentMethod


@dataclass(frozen=True)
class PayoutRef:
    """Receipt of a successful payout."""

    reference: str
    amount: int
    payee_ref: str
    raw: dict = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    """Card/PIX/boleto processor.

    Both calls may raise GatewayError. Callers pass an idempotency key so a
    retried call after a timeout does not charge or pay twice.
    """

    async def charge(
        self,
        amount: int,
        method: PaymentMethod,
        payer_ref: str,
        idempotency_key: str,
    ) -> GatewayRef: ...

    async def payout(
        self,
        amount: int,
        payee_ref: str,
        idempotency_key: str,
    ) -> PayoutRef: ...


@runtime_checkable
class IdentityProvider(Protocol):
    """KYC provider, consulted before offers and direct purchases."""

    async def verification_level(self, user_id: str) -> VerificationLevel: ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Fire-and-forget notifications. Failures never roll back a transition."""

    async def notify(self, user_id: str, event_type: str, payload: dict) -> None: ...

"""Adapters for the collaborator Protocols in domain/ports.py.

For development and tests everything runs in simulation mode:
    - SimulatedPaymentGateway generates fake charge/payout references and
      can be told to fail (randomly or for the next N calls).
    - StaticIdentityProvider reports a configured KYC level per user.
    - LoggingNotificationDispatcher writes notifications to the log.

A real gateway adapter implements the same two coroutines and is selected
by `payment_gateway_mode`.
"""

from __future__ import annotations

import random
import uuid
from typing import TYPE_CHECKING

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from marketplace_escrow.domain.enums import PaymentMethod, VerificationLevel
from marketplace_escrow.domain.exceptions import GatewayError
from marketplace_escrow.domain.ports import GatewayRef, PayoutRef
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings

logger = get_logger(__name__)


class SimulatedPaymentGateway:
    """In-process payment gateway.

    Calls are idempotent per key: a retry with the same idempotency key
    returns the original reference instead of charging/paying twice.
    """

    def __init__(self, fail_rate: float = 0.0, seed: int | None = None) -> None:
        self._fail_rate = fail_rate
        self._rng = random.Random(seed)
        self._fail_next = 0
        self._charges: dict[str, GatewayRef] = {}
        self._payouts: dict[str, PayoutRef] = {}
        self.calls: list[tuple[str, str]] = []

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` calls raise a retryable GatewayError."""
        self._fail_next = count

    def _maybe_fail(self, operation: str) -> None:
        if self._fail_next > 0:
            self._fail_next -= 1
            raise GatewayError(f"Simulated {operation} failure", operation=operation)
        if self._fail_rate and self._rng.random() < self._fail_rate:
            raise GatewayError(f"Simulated random {operation} failure", operation=operation)

    async def charge(
        self,
        amount: int,
        method: PaymentMethod,
        payer_ref: str,
        idempotency_key: str,
    ) -> GatewayRef:
        self.calls.append(("charge", idempotency_key))
        if idempotency_key in self._charges:
            return self._charges[idempotency_key]
        self._maybe_fail("charge")

        ref = GatewayRef(reference=f"sim_ch_{uuid.uuid4().hex[:24]}", amount=amount, method=method)
        self._charges[idempotency_key] = ref
        logger.info(
            "gateway.charge_simulated",
            reference=ref.reference,
            amount=amount,
            method=method.value,
            payer=payer_ref,
        )
        return ref

    async def payout(
        self,
        amount: int,
        payee_ref: str,
        idempotency_key: str,
    ) -> PayoutRef:
        self.calls.append(("payout", idempotency_key))
        if idempotency_key in self._payouts:
            return self._payouts[idempotency_key]
        self._maybe_fail("payout")

        ref = PayoutRef(
            reference=f"sim_po_{uuid.uuid4().hex[:24]}",
            amount=amount,
            payee_ref=payee_ref,
            raw={"simulated": True},
        )
        self._payouts[idempotency_key] = ref
        logger.info(
            "gateway.payout_simulated",
            reference=ref.reference,
            amount=amount,
            payee=payee_ref,
        )
        return ref


class StaticIdentityProvider:
    """KYC levels from configuration, with per-user overrides."""

    def __init__(
        self,
        default_level: VerificationLevel = VerificationLevel.NONE,
        overrides: dict[str, VerificationLevel] | None = None,
    ) -> None:
        self._default = default_level
        self._overrides = dict(overrides or {})

    def set_level(self, user_id: str, level: VerificationLevel) -> None:
        self._overrides[user_id] = level

    async def verification_level(self, user_id: str) -> VerificationLevel:
        return self._overrides.get(user_id, self._default)


class LoggingNotificationDispatcher:
    """Writes notifications to the structured log."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    async def notify(self, user_id: str, event_type: str, payload: dict) -> None:
        self.sent.append((user_id, event_type, payload))
        logger.info("notification.dispatched", user_id=user_id, event_type=event_type)


def build_payment_gateway(settings: Settings) -> SimulatedPaymentGateway:
    """Create the gateway adapter selected by configuration."""
    if settings.payment_gateway_mode == "simulated":
        return SimulatedPaymentGateway(fail_rate=settings.payment_gateway_fail_rate)
    raise ValueError(f"Unknown payment gateway mode: {settings.payment_gateway_mode}")


def build_identity_provider(settings: Settings) -> StaticIdentityProvider:
    return StaticIdentityProvider(default_level=VerificationLevel(settings.kyc_default_level))


def build_notification_dispatcher(settings: Settings) -> LoggingNotificationDispatcher:  # noqa: ARG001
    return LoggingNotificationDispatcher()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


def gateway_retry(settings: Settings):  # noqa: ANN201
    """Tenacity policy for gateway calls: exponential backoff on retryable errors."""
    return retry(
        stop=stop_after_attempt(settings.gateway_max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=settings.gateway_backoff_min_seconds,
            max=settings.gateway_backoff_max_seconds,
        ),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )

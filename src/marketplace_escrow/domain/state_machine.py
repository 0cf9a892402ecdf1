"""Transaction and Offer State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API, a sweep worker or an admin tool asks for, an illegal
transition (e.g., ESCROW_HELD -> COMPLETED) raises IllegalTransition.

The machines are instantiated per row and validate a transition before the
ORM model's status field is written. They are the single source of truth
for what may happen next; `transition_table()` flattens one of them into a
{(source, event): target} dict for callers that need to enumerate it.

Transaction transition table:
    INITIATED         -> AWAITING_PAYMENT   (request_payment)
    INITIATED         -> PAYMENT_CONFIRMED  (payment_confirmed)
    AWAITING_PAYMENT  -> PAYMENT_CONFIRMED  (payment_confirmed)
    PAYMENT_CONFIRMED -> ESCROW_HELD        (funds_held)
    ESCROW_HELD       -> TRANSFER_PENDING   (transfer_confirmed)
    TRANSFER_PENDING  -> COMPLETED          (receipt_confirmed)
    TRANSFER_PENDING  -> COMPLETED          (escrow_auto_released)
    ESCROW_HELD       -> DISPUTE_OPENED     (dispute_opened)
    TRANSFER_PENDING  -> DISPUTE_OPENED     (dispute_opened)
    DISPUTE_OPENED    -> DISPUTE_RESOLVED   (dispute_resolved)
    DISPUTE_RESOLVED  -> COMPLETED          (released_to_seller)
    DISPUTE_RESOLVED  -> REFUNDED           (refunded_to_buyer)
    INITIATED / AWAITING_PAYMENT / PAYMENT_CONFIRMED -> CANCELLED (cancelled)
    ESCROW_HELD / TRANSFER_PENDING -> REFUNDED (refund_forced)

Offer transition table:
    PENDING   -> ACCEPTED   (seller_accepts)
    PENDING   -> REJECTED   (seller_rejects)
    PENDING   -> COUNTERED  (seller_counters)
    COUNTERED -> ACCEPTED   (buyer_accepts_counter)
    COUNTERED -> REJECTED   (buyer_declines_counter)
    PENDING / COUNTERED -> CANCELLED (buyer_withdraws)
    PENDING / COUNTERED -> EXPIRED   (lapse, superseded)
"""

from __future__ import annotations

from functools import lru_cache

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.exceptions import IllegalTransition


class _GuardMixin:
    """Shared constructor and helpers for the status guards."""

    def __init__(self, current_status: str) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current status value (e.g., "ESCROW_HELD").
                           Must match one of the State value strings exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return the ids of the events that can fire from the current state."""
        return [event.id for event in self.allowed_events]


class TransactionStateMachine(_GuardMixin, StateMachine):
    """State machine that guards the transaction lifecycle.

    Usage:
        sm = TransactionStateMachine("ESCROW_HELD")
        sm.transfer_confirmed()  # transitions to TRANSFER_PENDING
        sm.status                # 'TRANSFER_PENDING'
    """

    # --- States ---
    INITIATED = State("INITIATED", initial=True)
    AWAITING_PAYMENT = State("AWAITING_PAYMENT")
    PAYMENT_CONFIRMED = State("PAYMENT_CONFIRMED")
    ESCROW_HELD = State("ESCROW_HELD")
    TRANSFER_PENDING = State("TRANSFER_PENDING")
    DISPUTE_OPENED = State("DISPUTE_OPENED")
    DISPUTE_RESOLVED = State("DISPUTE_RESOLVED")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # --- Events / Transitions ---

    # Payment
    request_payment = INITIATED.to(AWAITING_PAYMENT)
    payment_confirmed = INITIATED.to(PAYMENT_CONFIRMED) | AWAITING_PAYMENT.to(PAYMENT_CONFIRMED)
    funds_held = PAYMENT_CONFIRMED.to(ESCROW_HELD)

    # Transfer of the reservation
    transfer_confirmed = ESCROW_HELD.to(TRANSFER_PENDING)
    receipt_confirmed = TRANSFER_PENDING.to(COMPLETED)
    escrow_auto_released = TRANSFER_PENDING.to(COMPLETED)

    # Disputes
    dispute_opened = ESCROW_HELD.to(DISPUTE_OPENED) | TRANSFER_PENDING.to(DISPUTE_OPENED)
    dispute_resolved = DISPUTE_OPENED.to(DISPUTE_RESOLVED)
    released_to_seller = DISPUTE_RESOLVED.to(COMPLETED)
    refunded_to_buyer = DISPUTE_RESOLVED.to(REFUNDED)

    # Cancellation (only before funds are held) and admin refund
    cancelled = (
        INITIATED.to(CANCELLED)
        | AWAITING_PAYMENT.to(CANCELLED)
        | PAYMENT_CONFIRMED.to(CANCELLED)
    )
    refund_forced = ESCROW_HELD.to(REFUNDED) | TRANSFER_PENDING.to(REFUNDED)


class OfferStateMachine(_GuardMixin, StateMachine):
    """State machine that guards the offer negotiation lifecycle."""

    # --- States ---
    PENDING = State("PENDING", initial=True)
    COUNTERED = State("COUNTERED")
    ACCEPTED = State("ACCEPTED", final=True)
    REJECTED = State("REJECTED", final=True)
    EXPIRED = State("EXPIRED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    # --- Seller responses ---
    seller_accepts = PENDING.to(ACCEPTED)
    seller_rejects = PENDING.to(REJECTED)
    seller_counters = PENDING.to(COUNTERED)

    # --- Buyer responses ---
    buyer_accepts_counter = COUNTERED.to(ACCEPTED)
    buyer_declines_counter = COUNTERED.to(REJECTED)
    buyer_withdraws = PENDING.to(CANCELLED) | COUNTERED.to(CANCELLED)

    # --- Engine ---
    lapse = PENDING.to(EXPIRED) | COUNTERED.to(EXPIRED)
    superseded = PENDING.to(EXPIRED) | COUNTERED.to(EXPIRED)


def _fire(sm: StateMachine, event_name: str) -> None:
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {sm.status}: {sm.get_allowed_events()}"
        )
    event_method()


def validate_transition(
    current_status: str,
    event_name: str,
    machine: type[StateMachine] = TransactionStateMachine,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns the
    resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine(current_status=current_status)
    _fire(sm, event_name)
    return sm.status


@lru_cache(maxsize=None)
def transition_table(
    machine: type[StateMachine] = TransactionStateMachine,
) -> dict[tuple[str, str], str]:
    """Flatten a guard into {(source_status, event_name): target_status}."""
    table: dict[tuple[str, str], str] = {}
    for state in machine.states:
        for event_name in machine(current_status=state.value).get_allowed_events():
            table[(state.value, event_name)] = validate_transition(
                state.value, event_name, machine
            )
    return table


def event_names(machine: type[StateMachine] = TransactionStateMachine) -> frozenset[str]:
    """All event names defined on a guard."""
    return frozenset(event for _, event in transition_table(machine))


def guard_transition(
    current_status: str,
    event_name: str,
    machine: type[StateMachine] = TransactionStateMachine,
) -> str:
    """Return the status `event_name` leads to, or raise IllegalTransition.

    This is the one check every service transition goes through.
    """
    try:
        return validate_transition(current_status, event_name, machine)
    except TransitionNotAllowed as err:
        targets = {
            target
            for (_, event), target in transition_table(machine).items()
            if event == event_name
        }
        attempted = targets.pop() if len(targets) == 1 else None
        raise IllegalTransition(current_status, event_name, attempted) from err

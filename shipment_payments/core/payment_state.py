"""
Payment state machine.

One explicit transition table ``(state, event) -> (state', side effect)``
shared by the split-payment coordinator and the webhook reconciler. Any pair
not in the table is an illegal transition.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from .errors import StateConflictError


class PaymentState(Enum):
    """Lifecycle of a shipment's split payment."""
    NEW = "NEW"
    DEPOSIT_PENDING = "DEPOSIT_PENDING"
    DEPOSIT_CAPTURED = "DEPOSIT_CAPTURED"
    FINAL_PENDING = "FINAL_PENDING"
    FINAL_CAPTURED = "FINAL_CAPTURED"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class LedgerEvent(Enum):
    """Things that happen to a payment, from either writer."""
    DEPOSIT_INTENT_CREATED = "deposit_intent_created"
    DEPOSIT_SUCCEEDED = "deposit_succeeded"
    DEPOSIT_FAILED = "deposit_failed"
    DEPOSIT_CANCELED = "deposit_canceled"
    FINAL_INTENT_CREATED = "final_intent_created"
    FINAL_SUCCEEDED = "final_succeeded"
    FINAL_FAILED = "final_failed"
    SETTLE = "settle"
    REFUND_PARTIAL = "refund_partial"
    REFUND_FULL = "refund_full"


class SideEffect(Enum):
    """Follow-up work attached to a transition."""
    NONE = "none"
    RECORD_FAILURE = "record_failure"  # store the failed status for the next attempt
    SETTLE = "settle"                  # immediately apply LedgerEvent.SETTLE


@dataclass(frozen=True)
class Transition:
    """Result of looking up a (state, event) pair."""
    from_state: PaymentState
    event: LedgerEvent
    to_state: PaymentState
    side_effect: SideEffect = SideEffect.NONE


# Intent statuses that mean the attempt failed and a new attempt is needed
FAILED_INTENT_STATUSES = {"requires_payment_method"}

# States from which money can be returned to the client
REFUNDABLE_STATES = (
    PaymentState.DEPOSIT_CAPTURED,
    PaymentState.FINAL_PENDING,
    PaymentState.FINAL_CAPTURED,
    PaymentState.SETTLED,
    PaymentState.PARTIALLY_REFUNDED,
)

# States from which the payment can still be cancelled
PRE_CAPTURE_STATES = (PaymentState.NEW, PaymentState.DEPOSIT_PENDING)

TERMINAL_STATES = (PaymentState.CANCELLED, PaymentState.REFUNDED)


def _build_table() -> Dict[Tuple[PaymentState, LedgerEvent], Tuple[PaymentState, SideEffect]]:
    S, E = PaymentState, LedgerEvent
    table = {
        (S.NEW, E.DEPOSIT_INTENT_CREATED): (S.DEPOSIT_PENDING, SideEffect.NONE),
        (S.NEW, E.DEPOSIT_CANCELED): (S.CANCELLED, SideEffect.NONE),
        (S.DEPOSIT_PENDING, E.DEPOSIT_SUCCEEDED): (S.DEPOSIT_CAPTURED, SideEffect.NONE),
        (S.DEPOSIT_PENDING, E.DEPOSIT_FAILED): (S.DEPOSIT_PENDING, SideEffect.RECORD_FAILURE),
        (S.DEPOSIT_PENDING, E.DEPOSIT_CANCELED): (S.CANCELLED, SideEffect.NONE),
        (S.DEPOSIT_CAPTURED, E.FINAL_INTENT_CREATED): (S.FINAL_PENDING, SideEffect.NONE),
        (S.FINAL_PENDING, E.FINAL_SUCCEEDED): (S.FINAL_CAPTURED, SideEffect.SETTLE),
        # A declined final charge returns to DEPOSIT_CAPTURED so it can be retried
        (S.FINAL_PENDING, E.FINAL_FAILED): (S.DEPOSIT_CAPTURED, SideEffect.RECORD_FAILURE),
        (S.FINAL_CAPTURED, E.SETTLE): (S.SETTLED, SideEffect.NONE),
        # Outcome of a final charge that was in flight when a refund landed
        (S.PARTIALLY_REFUNDED, E.FINAL_SUCCEEDED): (S.PARTIALLY_REFUNDED, SideEffect.NONE),
        (S.PARTIALLY_REFUNDED, E.FINAL_FAILED): (S.PARTIALLY_REFUNDED, SideEffect.RECORD_FAILURE),
    }
    for state in REFUNDABLE_STATES:
        table[(state, E.REFUND_PARTIAL)] = (S.PARTIALLY_REFUNDED, SideEffect.NONE)
        table[(state, E.REFUND_FULL)] = (S.REFUNDED, SideEffect.NONE)
    return table


TRANSITIONS = _build_table()


def can_transition(state: PaymentState, event: LedgerEvent) -> bool:
    """Check whether an event is a valid edge from a state."""
    return (state, event) in TRANSITIONS


def transition(state: PaymentState, event: LedgerEvent) -> Transition:
    """Look up the transition for an event.

    Raises:
        StateConflictError: If the event is not valid from ``state``
    """
    try:
        to_state, side_effect = TRANSITIONS[(state, event)]
    except KeyError:
        raise StateConflictError(
            f"Cannot apply {event.value} to a payment in state {state.value}",
            reason=f"INVALID_TRANSITION_{state.value}_{event.name}",
        )
    return Transition(state, event, to_state, side_effect)

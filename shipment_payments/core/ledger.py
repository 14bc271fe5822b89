"""
Versioned writes to the payment ledger.

Both writers (the split-payment coordinator and the webhook reconciler) go
through ``update_with_retry``: read the record, compute the next snapshot,
and write it with a version check. On a version conflict the record is
re-read and the mutation recomputed from the fresh state.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .errors import ConcurrencyError, ValidationError
from .payment_state import FAILED_INTENT_STATUSES, LedgerEvent, SideEffect, transition
from ..storage.models import PaymentRecord, PaymentTransitionEntry
from ..storage.repository import PaymentRepository, VersionConflictError, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_CAS_ATTEMPTS = 5

# A mutation returns the next snapshot plus its audit rows, or None for "no write"
LedgerChange = Tuple[PaymentRecord, List[PaymentTransitionEntry]]
Mutation = Callable[[PaymentRecord], Optional[LedgerChange]]


def apply_event(
    record: PaymentRecord,
    event: LedgerEvent,
    source: str,
    gateway_event_id: Optional[str] = None,
    now: Optional[datetime] = None,
    **changes
) -> LedgerChange:
    """Apply one ledger event to a record.

    Follows the transition's side effect: a captured final payment settles
    in the same snapshot.

    Args:
        record: Current record
        event: Ledger event to apply
        source: "coordinator" or "webhook"
        gateway_event_id: Gateway event that caused the change, if any
        now: Timestamp for the audit rows
        **changes: Other record fields to set along with the new state

    Raises:
        StateConflictError: If the event is not valid from the record's state
    """
    timestamp = now or utcnow()
    step = transition(record.state, event)
    entries = [_entry(record.shipment_id, step.from_state, step.to_state, event, source, timestamp, gateway_event_id)]
    updated = replace(record, state=step.to_state, **changes)

    if step.side_effect is SideEffect.SETTLE:
        settle = transition(updated.state, LedgerEvent.SETTLE)
        entries.append(_entry(
            record.shipment_id, settle.from_state, settle.to_state,
            LedgerEvent.SETTLE, source, timestamp, gateway_event_id
        ))
        updated = replace(updated, state=settle.to_state)

    return updated, entries


def final_in_flight(record: PaymentRecord) -> bool:
    """Whether a final charge was attempted and has neither captured nor failed."""
    return (
        record.final_intent_id is not None
        and not record.final_captured
        and record.final_status not in FAILED_INTENT_STATUSES
    )


def refund_event_for(record: PaymentRecord) -> LedgerEvent:
    """Full or partial refund event, given the refunded totals already on ``record``.

    While a final charge is in flight the payment is never fully refunded:
    the final amount may still be captured.
    """
    if final_in_flight(record):
        return LedgerEvent.REFUND_PARTIAL
    if record.refunded_amount >= record.captured_amount:
        return LedgerEvent.REFUND_FULL
    return LedgerEvent.REFUND_PARTIAL


def _entry(shipment_id, from_state, to_state, event, source, timestamp, gateway_event_id):
    return PaymentTransitionEntry(
        shipment_id=shipment_id,
        from_state=from_state,
        to_state=to_state,
        event=event.value,
        source=source,
        timestamp=timestamp,
        gateway_event_id=gateway_event_id,
    )


def update_with_retry(
    repository: PaymentRepository,
    shipment_id: str,
    mutate: Mutation,
    max_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS
) -> PaymentRecord:
    """Apply ``mutate`` to the stored record under optimistic locking.

    ``mutate`` may be called several times and must be free of side
    effects other than computing the next snapshot. Exceptions it raises
    (e.g. StateConflictError) propagate unchanged.

    Returns:
        The stored record (unchanged if ``mutate`` returned None)

    Raises:
        ValidationError: If no record exists for the shipment
        ConcurrencyError: If every attempt hit a version conflict
    """
    for attempt in range(1, max_attempts + 1):
        current = repository.get(shipment_id)
        if current is None:
            raise ValidationError(f"No payment record for shipment {shipment_id}")

        change = mutate(current)
        if change is None:
            return current

        updated, entries = change
        try:
            return repository.compare_and_set(updated, current.version, entries)
        except VersionConflictError:
            logger.info(
                "Retrying ledger write shipment_id=%s attempt=%d/%d",
                shipment_id, attempt, max_attempts
            )

    raise ConcurrencyError(
        f"Payment {shipment_id} kept changing underneath; gave up after {max_attempts} attempts"
    )

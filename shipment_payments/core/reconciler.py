"""
Webhook reconciliation.

Applies verified gateway events to payment records. Events may arrive
duplicated, out of order, or racing the coordinator's own writes; each one
is applied at most once and never moves a record backwards.
"""

import logging
from dataclasses import replace
from enum import Enum
from typing import Iterable, List, Optional

from .errors import StaleEventError
from .ledger import DEFAULT_MAX_CAS_ATTEMPTS, apply_event, refund_event_for, update_with_retry
from .payment_state import (
    FAILED_INTENT_STATUSES,
    REFUNDABLE_STATES,
    LedgerEvent,
    PaymentState,
    can_transition,
)
from ..gateway.base import GatewayEvent, PaymentGateway
from ..storage.models import PaymentRecord
from ..storage.repository import PaymentRepository

logger = logging.getLogger(__name__)

SOURCE = "webhook"
REFUND_EVENT_TYPE = "charge.refunded"

# (gateway event type, payment phase) -> ledger event
EVENT_MAP = {
    ("payment_intent.succeeded", "deposit"): LedgerEvent.DEPOSIT_SUCCEEDED,
    ("payment_intent.payment_failed", "deposit"): LedgerEvent.DEPOSIT_FAILED,
    ("payment_intent.canceled", "deposit"): LedgerEvent.DEPOSIT_CANCELED,
    ("payment_intent.succeeded", "final"): LedgerEvent.FINAL_SUCCEEDED,
    ("payment_intent.payment_failed", "final"): LedgerEvent.FINAL_FAILED,
}

HANDLED_TYPES = {event_type for event_type, _ in EVENT_MAP} | {REFUND_EVENT_TYPE}

# Intent status to record when the event payload does not carry one
DEFAULT_STATUS = {
    LedgerEvent.DEPOSIT_SUCCEEDED: "succeeded",
    LedgerEvent.DEPOSIT_FAILED: "requires_payment_method",
    LedgerEvent.DEPOSIT_CANCELED: "canceled",
    LedgerEvent.FINAL_SUCCEEDED: "succeeded",
    LedgerEvent.FINAL_FAILED: "requires_payment_method",
}


class ReconcileOutcome(Enum):
    """What happened to one gateway event."""
    APPLIED = "applied"                  # state changed
    ALREADY_APPLIED = "already_applied"  # record already reflected the event
    STALE = "stale"                      # duplicate or older than the newest applied event
    REJECTED = "rejected"                # not a valid transition from the current state
    IGNORED = "ignored"                  # unhandled type or unknown shipment
    FAILED = "failed"                    # unexpected error, logged


def _already_applied(record: PaymentRecord, event: LedgerEvent, intent_id: Optional[str]) -> bool:
    if event is LedgerEvent.DEPOSIT_SUCCEEDED:
        return record.deposit_captured
    if event is LedgerEvent.FINAL_SUCCEEDED:
        return record.final_captured
    if event is LedgerEvent.FINAL_FAILED:
        # The coordinator already put the declined attempt back to DEPOSIT_CAPTURED
        return (
            record.state is PaymentState.DEPOSIT_CAPTURED
            and record.final_intent_id == intent_id
            and record.final_status in FAILED_INTENT_STATUSES
        )
    if event is LedgerEvent.DEPOSIT_CANCELED:
        return record.state is PaymentState.CANCELLED
    return False


def _is_live_final(record: PaymentRecord, event: GatewayEvent) -> bool:
    """Whether a final-phase event is about the payment's current final attempt.

    From DEPOSIT_CAPTURED any final outcome is new (a first attempt or a
    retry the coordinator has not recorded yet).
    """
    if record.state is PaymentState.DEPOSIT_CAPTURED:
        return True
    if record.final_intent_id is None:
        return False
    return event.intent_id is None or event.intent_id == record.final_intent_id


class WebhookReconciler:
    """Applies gateway webhook events to the payment ledger."""

    def __init__(
        self,
        payments: PaymentRepository,
        gateway: Optional[PaymentGateway] = None,
        max_cas_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS,
    ):
        self.payments = payments
        self.gateway = gateway
        self.max_cas_attempts = max_cas_attempts

    def handle_payload(self, payload: bytes, signature: str) -> ReconcileOutcome:
        """Verify a raw webhook delivery and apply it.

        Raises:
            SignatureError: If verification fails; nothing is applied
        """
        if self.gateway is None:
            raise RuntimeError("A gateway is required to verify webhook payloads")
        event = self.gateway.verify_webhook(payload, signature)
        return self.apply_event(event)

    def process_events(self, events: Iterable[GatewayEvent]) -> List[ReconcileOutcome]:
        """Apply a batch of events; a failure on one does not stop the rest."""
        outcomes = []
        for event in events:
            try:
                outcomes.append(self.apply_event(event))
            except Exception:
                logger.exception("Failed to reconcile event_id=%s type=%s", event.id, event.type)
                outcomes.append(ReconcileOutcome.FAILED)
        return outcomes

    def apply_event(self, event: GatewayEvent) -> ReconcileOutcome:
        """Apply one verified event.

        Duplicate and out-of-order events are absorbed; an event that is not
        a valid transition is logged and dropped without touching the record.
        """
        if event.type not in HANDLED_TYPES:
            logger.debug("Ignoring unhandled event type=%s event_id=%s", event.type, event.id)
            return ReconcileOutcome.IGNORED

        record = self._find_record(event)
        if record is None:
            logger.info(
                "Ignoring event for unknown payment event_id=%s type=%s intent_id=%s",
                event.id, event.type, event.intent_id
            )
            return ReconcileOutcome.IGNORED

        phase = self._resolve_phase(record, event)
        if phase is None:
            logger.warning(
                "Cannot tell payment phase for event_id=%s intent_id=%s shipment_id=%s",
                event.id, event.intent_id, record.shipment_id
            )
            return ReconcileOutcome.IGNORED

        outcome = ReconcileOutcome.APPLIED

        def mutate(current: PaymentRecord):
            nonlocal outcome
            if current.last_event_key is not None and event.ordering_key <= current.last_event_key:
                raise StaleEventError(f"Event {event.id} is not newer than {current.last_event_id}")

            stamp = {"last_event_id": event.id, "last_event_created": event.created}
            if event.type == REFUND_EVENT_TYPE:
                change, outcome = self._refund_change(current, event, phase, stamp)
            else:
                change, outcome = self._intent_change(current, event, phase, stamp)
            return change

        try:
            updated = update_with_retry(self.payments, record.shipment_id, mutate, self.max_cas_attempts)
        except StaleEventError:
            logger.info(
                "Skipping stale event event_id=%s shipment_id=%s", event.id, record.shipment_id
            )
            return ReconcileOutcome.STALE

        if outcome is ReconcileOutcome.REJECTED:
            logger.warning(
                "Rejected event event_id=%s type=%s phase=%s shipment_id=%s state=%s",
                event.id, event.type, phase, record.shipment_id, updated.state.value
            )
        else:
            logger.info(
                "Reconciled event event_id=%s type=%s outcome=%s shipment_id=%s state=%s",
                event.id, event.type, outcome.value, record.shipment_id, updated.state.value
            )
        return outcome

    def _intent_change(self, current, event, phase, stamp):
        ledger_event = EVENT_MAP.get((event.type, phase))
        if ledger_event is None:
            return None, ReconcileOutcome.REJECTED

        saved = dict(stamp)
        if (ledger_event is LedgerEvent.DEPOSIT_SUCCEEDED
                and event.payment_method and not current.payment_method_ref):
            # Client confirmed with the client secret; keep the card for the final charge
            saved["payment_method_ref"] = event.payment_method

        if _already_applied(current, ledger_event, event.intent_id):
            return (replace(current, **saved), []), ReconcileOutcome.ALREADY_APPLIED

        if phase == "final" and not _is_live_final(current, event):
            # Outcome of a superseded final attempt
            return None, ReconcileOutcome.REJECTED

        status_field = "deposit_status" if phase == "deposit" else "final_status"
        changes = dict(saved)
        changes[status_field] = event.status or DEFAULT_STATUS[ledger_event]

        entries = []
        record = current
        if (ledger_event is LedgerEvent.FINAL_SUCCEEDED
                and current.state is PaymentState.DEPOSIT_CAPTURED):
            # Final charge succeeded before the coordinator recorded its intent
            record, entries = apply_event(
                current, LedgerEvent.FINAL_INTENT_CREATED, SOURCE, event.id,
                final_intent_id=event.intent_id,
            )

        if not can_transition(record.state, ledger_event):
            return None, ReconcileOutcome.REJECTED

        record, more = apply_event(record, ledger_event, SOURCE, event.id, **changes)
        return (record, entries + more), ReconcileOutcome.APPLIED

    def _refund_change(self, current, event, phase, stamp):
        field = "deposit_refunded" if phase == "deposit" else "final_refunded"
        captured = current.deposit_captured if phase == "deposit" else current.final_captured
        if not captured or event.amount_refunded is None:
            return None, ReconcileOutcome.REJECTED

        phase_amount = current.deposit_amount if phase == "deposit" else current.final_amount
        cumulative = min(event.amount_refunded, phase_amount)
        if cumulative <= getattr(current, field):
            return (replace(current, **stamp), []), ReconcileOutcome.ALREADY_APPLIED

        if current.state not in REFUNDABLE_STATES:
            return None, ReconcileOutcome.REJECTED

        refunded = replace(current, **{field: cumulative})
        change = apply_event(
            current, refund_event_for(refunded), SOURCE, event.id, **{field: cumulative}, **stamp
        )
        return change, ReconcileOutcome.APPLIED

    def _find_record(self, event: GatewayEvent) -> Optional[PaymentRecord]:
        if event.shipment_id:
            record = self.payments.get(event.shipment_id)
            if record is not None:
                return record
        if event.intent_id:
            return self.payments.find_by_intent(event.intent_id)
        return None

    @staticmethod
    def _resolve_phase(record: PaymentRecord, event: GatewayEvent) -> Optional[str]:
        if event.intent_id and event.intent_id == record.deposit_intent_id:
            return "deposit"
        if event.intent_id and event.intent_id == record.final_intent_id:
            return "final"
        if event.phase in ("deposit", "final"):
            return event.phase
        return None

"""
Split payment coordinator.

Drives a shipment's payment through deposit, final charge, cancellation and
refunds. Gateway calls are made outside the versioned write and carry a
per-attempt idempotency key, so any operation can be replayed after a crash
or timeout without double-charging.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Optional, Tuple

from .errors import StateConflictError, ValidationError
from .ledger import DEFAULT_MAX_CAS_ATTEMPTS, apply_event, refund_event_for, update_with_retry
from .payment_state import (
    FAILED_INTENT_STATUSES,
    PRE_CAPTURE_STATES,
    REFUNDABLE_STATES,
    LedgerEvent,
    PaymentState,
)
from .quote import Quote
from .refund_eligibility import (
    DEFAULT_REFUND_POLICY,
    RefundEligibility,
    RefundPolicy,
    evaluate_refund_eligibility,
)
from .shipment_status import ShipmentStatusProvider, is_delivery_eligible
from ..gateway.base import PaymentGateway
from ..storage.models import PaymentRecord
from ..storage.repository import PaymentRepository, utcnow

logger = logging.getLogger(__name__)

DEPOSIT_PERCENT = 20
SOURCE = "coordinator"


def split_amount(total_cents: int, percent: int = DEPOSIT_PERCENT) -> Tuple[int, int]:
    """Split a total into (deposit, final) cents.

    The deposit is rounded half-up; the rounding remainder lands on the
    final amount, so the two always add up to the total.
    """
    if total_cents < 0:
        raise ValidationError("total cannot be negative")
    if not 0 < percent < 100:
        raise ValidationError("deposit percent must be between 1 and 99")
    deposit = int(
        (Decimal(total_cents) * Decimal(percent) / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return deposit, total_cents - deposit


def idempotency_key(shipment_id: str, phase: str, *parts) -> str:
    return ":".join([shipment_id, phase] + [str(p) for p in parts])


class SplitPaymentCoordinator:
    """Owns the synchronous side of a shipment's payment.

    The webhook reconciler writes the same records; both go through the
    versioned ledger helper, so whichever writer lands second sees the
    other's result.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        gateway: PaymentGateway,
        status_provider: ShipmentStatusProvider,
        refund_policy: RefundPolicy = DEFAULT_REFUND_POLICY,
        currency: str = "usd",
        deposit_percent: int = DEPOSIT_PERCENT,
        refund_window_hours: float = 1,
        max_cas_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.payments = payments
        self.gateway = gateway
        self.status_provider = status_provider
        self.refund_policy = refund_policy
        self.currency = currency
        self.deposit_percent = deposit_percent
        self.refund_window = timedelta(hours=refund_window_hours)
        self.max_cas_attempts = max_cas_attempts
        self.clock = clock

    def get_payment(self, shipment_id: str) -> Optional[PaymentRecord]:
        return self.payments.get(shipment_id)

    def create_deposit(self, shipment_id: str, quote: Quote) -> PaymentRecord:
        """Open the payment for a shipment and create its deposit intent.

        Idempotent: if a record already exists it is returned unchanged and
        the gateway is not called.

        Args:
            shipment_id: Shipment being booked
            quote: Accepted quote; its total becomes the payment total

        Returns:
            The record, in DEPOSIT_PENDING for a new payment
        """
        if not shipment_id or not shipment_id.strip():
            raise ValidationError("shipment_id is required")

        existing = self.payments.get(shipment_id)
        if existing is not None:
            logger.info(
                "Deposit already exists shipment_id=%s state=%s", shipment_id, existing.state.value
            )
            return existing

        deposit, final = split_amount(quote.total_cents, self.deposit_percent)
        if deposit <= 0 or final <= 0:
            raise ValidationError(f"Quote total {quote.total_cents} is too small to split")

        intent = self.gateway.create_intent(
            amount=deposit,
            currency=self.currency,
            idempotency_key=idempotency_key(shipment_id, "deposit"),
            metadata=self._metadata(shipment_id, "deposit", quote.total_cents),
        )

        now = self.clock()
        record = PaymentRecord(
            shipment_id=shipment_id,
            total_amount=quote.total_cents,
            deposit_amount=deposit,
            final_amount=final,
            currency=self.currency,
            quote_breakdown=quote.breakdown(),
            refund_deadline=now + self.refund_window,
            created_at=now,
            updated_at=now,
        )
        record, entries = apply_event(
            record, LedgerEvent.DEPOSIT_INTENT_CREATED, SOURCE, now=now,
            deposit_intent_id=intent.id, deposit_status=intent.status,
        )
        stored = self.payments.insert(record, entries)
        logger.info(
            "Deposit created shipment_id=%s intent_id=%s deposit=%d final=%d",
            shipment_id, intent.id, deposit, final
        )
        return stored

    def confirm_deposit(self, shipment_id: str, payment_method_ref: str) -> PaymentRecord:
        """Confirm the deposit intent with the client's payment method.

        A gateway failure leaves the record untouched. A declined card keeps
        the deposit pending; confirming again (with the same or another
        payment method) is a new attempt with its own idempotency key. If
        the deposit was already captured (e.g. by a webhook), this is a
        no-op apart from saving the payment method for the final charge.
        """
        if not payment_method_ref:
            raise ValidationError("payment_method_ref is required")

        record = self._require(shipment_id)
        if record.deposit_captured:
            return self._save_payment_method(shipment_id, payment_method_ref)
        if record.state is not PaymentState.DEPOSIT_PENDING:
            raise StateConflictError(
                f"Deposit for {shipment_id} cannot be confirmed in state {record.state.value}",
                reason="DEPOSIT_NOT_PENDING",
            )

        attempt = self._count_transitions(shipment_id, LedgerEvent.DEPOSIT_FAILED) + 1
        result = self.gateway.confirm_intent(
            record.deposit_intent_id,
            payment_method_ref,
            idempotency_key(shipment_id, "deposit_confirm", attempt, payment_method_ref),
        )

        def mutate(current: PaymentRecord):
            if current.deposit_captured:
                # Webhook got there first
                if current.payment_method_ref == payment_method_ref:
                    return None
                return replace(current, payment_method_ref=payment_method_ref), []
            if result.succeeded:
                return apply_event(
                    current, LedgerEvent.DEPOSIT_SUCCEEDED, SOURCE,
                    deposit_status=result.status, payment_method_ref=payment_method_ref,
                )
            if result.status in FAILED_INTENT_STATUSES:
                return apply_event(
                    current, LedgerEvent.DEPOSIT_FAILED, SOURCE,
                    deposit_status=result.status, payment_method_ref=payment_method_ref,
                )
            return replace(current, deposit_status=result.status, payment_method_ref=payment_method_ref), []

        updated = update_with_retry(self.payments, shipment_id, mutate, self.max_cas_attempts)
        logger.info(
            "Deposit confirmation shipment_id=%s intent_status=%s state=%s",
            shipment_id, result.status, updated.state.value
        )
        return updated

    def create_final_charge(self, shipment_id: str) -> PaymentRecord:
        """Charge the remaining balance once the shipment is delivered.

        Requires a captured deposit and a delivery-eligible shipment status.
        The saved payment method is charged off-session; a succeeded intent
        settles the payment in the same write. A declined charge returns the
        payment to DEPOSIT_CAPTURED, and calling this again makes a new
        attempt with a fresh intent.
        """
        record = self._require(shipment_id)
        if record.state is not PaymentState.DEPOSIT_CAPTURED:
            reason = "DEPOSIT_NOT_CAPTURED" if record.state in PRE_CAPTURE_STATES else "FINAL_NOT_ALLOWED"
            raise StateConflictError(
                f"Final charge for {shipment_id} not allowed in state {record.state.value}",
                reason=reason,
            )

        status = self.status_provider.get_status(shipment_id)
        if not is_delivery_eligible(status):
            raise StateConflictError(
                f"Shipment {shipment_id} is not delivered (status: {status or 'unknown'})",
                reason="SHIPMENT_NOT_DELIVERED",
            )
        if not record.payment_method_ref:
            raise StateConflictError(
                f"No saved payment method for {shipment_id}", reason="NO_PAYMENT_METHOD"
            )

        attempt = self._count_transitions(shipment_id, LedgerEvent.FINAL_INTENT_CREATED) + 1
        intent = self.gateway.create_intent(
            amount=record.final_amount,
            currency=record.currency,
            idempotency_key=idempotency_key(shipment_id, "final", attempt),
            metadata=self._metadata(shipment_id, "final", record.total_amount),
            payment_method_ref=record.payment_method_ref,
            confirm=True,
        )

        def mutate(current: PaymentRecord):
            if current.final_intent_id == intent.id:
                # Already recorded, by a webhook or an earlier run of this attempt
                return None
            record, entries = apply_event(
                current, LedgerEvent.FINAL_INTENT_CREATED, SOURCE,
                final_intent_id=intent.id, final_status=intent.status,
            )
            follow_up = None
            if intent.succeeded:
                follow_up = LedgerEvent.FINAL_SUCCEEDED
            elif intent.status in FAILED_INTENT_STATUSES:
                follow_up = LedgerEvent.FINAL_FAILED
            if follow_up is not None:
                record, more = apply_event(record, follow_up, SOURCE)
                entries = entries + more
            return record, entries

        updated = update_with_retry(self.payments, shipment_id, mutate, self.max_cas_attempts)
        logger.info(
            "Final charge shipment_id=%s intent_id=%s intent_status=%s state=%s",
            shipment_id, intent.id, intent.status, updated.state.value
        )
        return updated

    def refund_eligibility(self, shipment_id: str, now: Optional[datetime] = None) -> RefundEligibility:
        """Read-only refund eligibility for a shipment."""
        return evaluate_refund_eligibility(
            self.status_provider.get_status_history(shipment_id),
            self.payments.get(shipment_id),
            self.refund_policy,
            now or self.clock(),
        )

    def process_refund(
        self,
        shipment_id: str,
        amount: int,
        reason: Optional[str] = None,
        override_policy: bool = False,
    ) -> PaymentRecord:
        """Refund part or all of the captured money.

        Args:
            shipment_id: Shipment to refund
            amount: Cents to refund
            reason: Free-text reason, stored with the gateway refund
            override_policy: Skip the refund-eligibility policy (admin refund);
                the amount is still capped at what was captured

        Raises:
            ValidationError: Amount not positive or more than can be refunded
            StateConflictError: State or policy does not allow a refund
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Refund amount must be a positive number of cents")

        record = self._require(shipment_id)
        if amount > record.refundable_amount:
            raise ValidationError(
                f"Refund of {amount} exceeds refundable amount {record.refundable_amount}"
            )
        if record.state not in REFUNDABLE_STATES:
            raise StateConflictError(
                f"Payment {shipment_id} cannot be refunded in state {record.state.value}",
                reason="NOT_REFUNDABLE_STATE",
            )

        if override_policy:
            logger.warning("Refund policy overridden shipment_id=%s amount=%d", shipment_id, amount)
        else:
            eligibility = self.refund_eligibility(shipment_id)
            if not eligibility.eligible:
                raise StateConflictError(
                    f"Refund not allowed for {shipment_id}: {eligibility.reason_code.value}",
                    reason=eligibility.reason_code.value,
                )
            if amount > eligibility.max_refundable:
                raise ValidationError(
                    f"Refund of {amount} exceeds policy maximum {eligibility.max_refundable}"
                )

        from_final, from_deposit = self._allocate_refund(record, amount)
        refund_number = self._count_transitions(
            shipment_id, LedgerEvent.REFUND_PARTIAL, LedgerEvent.REFUND_FULL
        ) + 1
        if from_final:
            self.gateway.create_refund(
                record.final_intent_id, from_final, reason,
                idempotency_key(shipment_id, "refund", refund_number, "final"),
            )
        if from_deposit:
            self.gateway.create_refund(
                record.deposit_intent_id, from_deposit, reason,
                idempotency_key(shipment_id, "refund", refund_number, "deposit"),
            )

        target_final = record.final_refunded + from_final
        target_deposit = record.deposit_refunded + from_deposit

        def mutate(current: PaymentRecord):
            # The gateway's cumulative figure may already have arrived by webhook
            refunded = replace(
                current,
                final_refunded=max(current.final_refunded, target_final),
                deposit_refunded=max(current.deposit_refunded, target_deposit),
            )
            if current.state is PaymentState.REFUNDED:
                return (refunded, []) if refunded != current else None
            return apply_event(
                current, refund_event_for(refunded), SOURCE,
                final_refunded=refunded.final_refunded,
                deposit_refunded=refunded.deposit_refunded,
            )

        updated = update_with_retry(self.payments, shipment_id, mutate, self.max_cas_attempts)
        logger.info(
            "Refund processed shipment_id=%s amount=%d refunded_total=%d state=%s",
            shipment_id, amount, updated.refunded_amount, updated.state.value
        )
        return updated

    def cancel_payment(self, shipment_id: str) -> PaymentRecord:
        """Cancel a payment whose deposit has not been captured."""
        record = self._require(shipment_id)
        if record.state is PaymentState.CANCELLED:
            return record
        if record.state not in PRE_CAPTURE_STATES:
            raise StateConflictError(
                f"Payment {shipment_id} cannot be cancelled in state {record.state.value}; refund instead",
                reason="CANNOT_CANCEL_AFTER_CAPTURE",
            )

        if record.deposit_intent_id:
            self.gateway.cancel_intent(
                record.deposit_intent_id, idempotency_key(shipment_id, "deposit_cancel")
            )

        def mutate(current: PaymentRecord):
            if current.state is PaymentState.CANCELLED:
                return None
            return apply_event(current, LedgerEvent.DEPOSIT_CANCELED, SOURCE, deposit_status="canceled")

        updated = update_with_retry(self.payments, shipment_id, mutate, self.max_cas_attempts)
        logger.info("Payment cancelled shipment_id=%s", shipment_id)
        return updated

    def _require(self, shipment_id: str) -> PaymentRecord:
        record = self.payments.get(shipment_id)
        if record is None:
            raise ValidationError(f"No payment record for shipment {shipment_id}")
        return record

    def _save_payment_method(self, shipment_id: str, payment_method_ref: str) -> PaymentRecord:
        def mutate(current: PaymentRecord):
            if current.payment_method_ref == payment_method_ref:
                return None
            return replace(current, payment_method_ref=payment_method_ref), []
        return update_with_retry(self.payments, shipment_id, mutate, self.max_cas_attempts)

    def _count_transitions(self, shipment_id: str, *events: LedgerEvent) -> int:
        names = {event.value for event in events}
        return sum(1 for t in self.payments.list_transitions(shipment_id) if t.event in names)

    @staticmethod
    def _allocate_refund(record: PaymentRecord, amount: int) -> Tuple[int, int]:
        """Split a refund across intents, final payment first."""
        final_left = (record.final_amount - record.final_refunded) if record.final_captured else 0
        from_final = min(amount, final_left)
        return from_final, amount - from_final

    def _metadata(self, shipment_id: str, phase: str, total: int) -> Dict[str, str]:
        return {"shipment_id": shipment_id, "phase": phase, "total_amount": str(total)}

"""
Unit tests for the split payment coordinator.

Tests deposit, confirmation, final charge, refunds and cancellation against
an in-memory gateway and a real SQLite ledger.
"""

from unittest.mock import patch

import pytest

from shipment_payments.core.errors import (
    ConcurrencyError,
    GatewayError,
    StateConflictError,
    ValidationError,
)
from shipment_payments.core.payment_state import PaymentState
from shipment_payments.core.split_payment import split_amount
from shipment_payments.storage.repository import VersionConflictError

from conftest import make_event


def capture_deposit(coordinator, quote, shipment_id="shp_1"):
    coordinator.create_deposit(shipment_id, quote)
    return coordinator.confirm_deposit(shipment_id, "pm_card_visa")


def settle(coordinator, statuses, quote, shipment_id="shp_1"):
    capture_deposit(coordinator, quote, shipment_id)
    statuses.set_statuses(shipment_id, "pending", "picked_up", "in_transit", "delivered")
    return coordinator.create_final_charge(shipment_id)


class TestSplitAmount:
    """Test the 20/80 split."""

    @pytest.mark.parametrize("total,deposit,final", [
        (30000, 6000, 24000),
        (15001, 3000, 12001),
        (12503, 2501, 10002),
        (1, 0, 1),
        (0, 0, 0),
    ])
    def test_split_sums_to_total(self, total, deposit, final):
        assert split_amount(total) == (deposit, final)
        assert sum(split_amount(total)) == total

    def test_negative_total_rejected(self):
        with pytest.raises(ValidationError):
            split_amount(-1)


class TestCreateDeposit:
    """Test opening a payment."""

    def test_creates_pending_deposit(self, coordinator, gateway, quote_300):
        record = coordinator.create_deposit("shp_1", quote_300)

        assert record.state == PaymentState.DEPOSIT_PENDING
        assert record.total_amount == 30000
        assert record.deposit_amount == 6000
        assert record.final_amount == 24000
        assert record.deposit_intent_id == "pi_1"
        assert record.quote_breakdown["total_cents"] == 30000
        assert record.refund_deadline > record.created_at
        assert gateway.calls == [("create_intent", "shp_1:deposit")]
        assert gateway.intents["pi_1"]["amount"] == 6000
        assert gateway.intents["pi_1"]["metadata"]["phase"] == "deposit"

    def test_idempotent(self, coordinator, gateway, payments, quote_300):
        """A repeated call returns the existing record without calling the gateway."""
        first = coordinator.create_deposit("shp_1", quote_300)
        second = coordinator.create_deposit("shp_1", quote_300)

        assert second == first
        assert gateway.call_names() == ["create_intent"]
        assert len(payments.list_transitions("shp_1")) == 1

    def test_gateway_failure_creates_nothing(self, coordinator, gateway, payments, quote_300):
        gateway.fail_next = GatewayError("card_declined", code="card_declined")
        with pytest.raises(GatewayError):
            coordinator.create_deposit("shp_1", quote_300)
        assert payments.get("shp_1") is None

    def test_shipment_id_required(self, coordinator, quote_300):
        with pytest.raises(ValidationError):
            coordinator.create_deposit(" ", quote_300)


class TestConfirmDeposit:
    """Test deposit confirmation."""

    def test_success_captures_deposit(self, coordinator, payments, quote_300):
        record = capture_deposit(coordinator, quote_300)

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        assert record.deposit_status == "succeeded"
        assert record.payment_method_ref == "pm_card_visa"
        assert record.version == 2
        events = [t.event for t in payments.list_transitions("shp_1")]
        assert events == ["deposit_intent_created", "deposit_succeeded"]

    def test_gateway_error_leaves_record_unchanged(self, coordinator, gateway, payments, quote_300):
        coordinator.create_deposit("shp_1", quote_300)
        gateway.fail_next = GatewayError("timeout", code="APIConnectionError", retryable=True)

        with pytest.raises(GatewayError):
            coordinator.confirm_deposit("shp_1", "pm_card_visa")

        record = payments.get("shp_1")
        assert record.state == PaymentState.DEPOSIT_PENDING
        assert record.version == 1

    def test_declined_card_stays_pending(self, coordinator, gateway, payments, quote_300):
        coordinator.create_deposit("shp_1", quote_300)
        gateway.confirm_status = "requires_payment_method"

        record = coordinator.confirm_deposit("shp_1", "pm_card_declined")

        assert record.state == PaymentState.DEPOSIT_PENDING
        assert record.deposit_status == "requires_payment_method"
        assert payments.list_transitions("shp_1")[-1].event == "deposit_failed"

    def test_new_card_after_decline(self, coordinator, gateway, quote_300):
        """A declined confirmation can be retried with another card."""
        coordinator.create_deposit("shp_1", quote_300)
        gateway.confirm_status = "requires_payment_method"
        coordinator.confirm_deposit("shp_1", "pm_card_declined")

        gateway.confirm_status = "succeeded"
        record = coordinator.confirm_deposit("shp_1", "pm_card_visa")

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        assert record.payment_method_ref == "pm_card_visa"
        assert gateway.keys("confirm_intent") == [
            "shp_1:deposit_confirm:1:pm_card_declined",
            "shp_1:deposit_confirm:2:pm_card_visa",
        ]

    def test_same_card_after_decline_is_new_attempt(self, coordinator, gateway, quote_300):
        coordinator.create_deposit("shp_1", quote_300)
        gateway.confirm_status = "requires_payment_method"
        coordinator.confirm_deposit("shp_1", "pm_card_visa")

        gateway.confirm_status = "succeeded"
        record = coordinator.confirm_deposit("shp_1", "pm_card_visa")

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        assert len(set(gateway.keys("confirm_intent"))) == 2

    def test_retry_after_timeout_reuses_key(self, coordinator, gateway, quote_300, transient_error):
        """A confirmation that never got an answer is replayed under the same key."""
        coordinator.create_deposit("shp_1", quote_300)
        gateway.fail_next = transient_error
        with pytest.raises(GatewayError):
            coordinator.confirm_deposit("shp_1", "pm_card_visa")

        record = coordinator.confirm_deposit("shp_1", "pm_card_visa")

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        keys = gateway.keys("confirm_intent")
        assert keys == ["shp_1:deposit_confirm:1:pm_card_visa"] * 2

    def test_processing_status_recorded_without_transition(self, coordinator, gateway, payments, quote_300):
        coordinator.create_deposit("shp_1", quote_300)
        gateway.confirm_status = "processing"

        record = coordinator.confirm_deposit("shp_1", "pm_card_visa")

        assert record.state == PaymentState.DEPOSIT_PENDING
        assert record.deposit_status == "processing"
        assert len(payments.list_transitions("shp_1")) == 1

    def test_webhook_wins_race(self, coordinator, gateway, reconciler, payments, quote_300):
        """The webhook captures the deposit while the confirm call is in flight."""
        coordinator.create_deposit("shp_1", quote_300)
        gateway.on_call = lambda: reconciler.apply_event(make_event(
            "evt_1", "payment_intent.succeeded", 100, intent_id="pi_1",
            shipment_id="shp_1", phase="deposit", status="succeeded",
        ))

        record = coordinator.confirm_deposit("shp_1", "pm_card_visa")

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        assert record.payment_method_ref == "pm_card_visa"
        assert record.last_event_id == "evt_1"
        transitions = payments.list_transitions("shp_1")
        assert [(t.event, t.source) for t in transitions] == [
            ("deposit_intent_created", "coordinator"),
            ("deposit_succeeded", "webhook"),
        ]

    def test_already_captured_skips_gateway(self, coordinator, gateway, quote_300):
        capture_deposit(coordinator, quote_300)
        calls_before = len(gateway.calls)

        record = coordinator.confirm_deposit("shp_1", "pm_card_visa")

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        assert len(gateway.calls) == calls_before

    def test_unknown_shipment(self, coordinator):
        with pytest.raises(ValidationError, match="No payment record"):
            coordinator.confirm_deposit("missing", "pm_card_visa")


class TestFinalCharge:
    """Test the delivery-time charge."""

    def test_final_charge_settles(self, coordinator, gateway, statuses, payments, quote_300):
        record = settle(coordinator, statuses, quote_300)

        assert record.state == PaymentState.SETTLED
        assert record.final_intent_id == "pi_2"
        assert record.final_status == "succeeded"
        assert record.captured_amount == 30000
        assert ("create_intent", "shp_1:final:1") in gateway.calls
        assert gateway.intents["pi_2"]["amount"] == 24000
        events = [t.event for t in payments.list_transitions("shp_1")]
        assert events[-3:] == ["final_intent_created", "final_succeeded", "settle"]

    @pytest.mark.parametrize("status", [None, "pending", "in_transit", "delivered"])
    def test_rejected_before_deposit_capture(self, coordinator, gateway, statuses, quote_300, status):
        """Final charge before capture is rejected whatever the shipment status."""
        coordinator.create_deposit("shp_1", quote_300)
        if status:
            statuses.set_statuses("shp_1", status)

        with pytest.raises(StateConflictError) as exc_info:
            coordinator.create_final_charge("shp_1")

        assert exc_info.value.reason == "DEPOSIT_NOT_CAPTURED"
        assert gateway.call_names() == ["create_intent"]

    def test_requires_delivery(self, coordinator, statuses, quote_300):
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "picked_up", "in_transit")

        with pytest.raises(StateConflictError) as exc_info:
            coordinator.create_final_charge("shp_1")
        assert exc_info.value.reason == "SHIPMENT_NOT_DELIVERED"

    def test_declined_final_returns_to_deposit_captured(self, coordinator, gateway, statuses, payments, quote_300):
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "completed")
        gateway.final_status = "requires_payment_method"

        record = coordinator.create_final_charge("shp_1")

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        assert record.final_intent_id == "pi_2"
        assert record.final_status == "requires_payment_method"
        assert record.refundable_amount == 6000
        last = payments.list_transitions("shp_1")[-1]
        assert (last.event, last.to_state) == ("final_failed", PaymentState.DEPOSIT_CAPTURED)

    def test_retry_after_declined_final(self, coordinator, gateway, statuses, payments, quote_300):
        """A second attempt gets its own key and intent, and settles."""
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "delivered")
        gateway.final_status = "requires_payment_method"
        coordinator.create_final_charge("shp_1")

        gateway.final_status = "succeeded"
        record = coordinator.create_final_charge("shp_1")

        assert record.state == PaymentState.SETTLED
        assert record.final_intent_id == "pi_3"
        assert record.captured_amount == 30000
        assert gateway.keys("create_intent") == ["shp_1:deposit", "shp_1:final:1", "shp_1:final:2"]
        events = [t.event for t in payments.list_transitions("shp_1")]
        assert events[-5:] == [
            "final_intent_created", "final_failed", "final_intent_created", "final_succeeded", "settle",
        ]

    def test_refund_after_declined_final(self, coordinator, gateway, statuses, quote_300):
        """The captured deposit can still be returned when the final charge fails."""
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "delivered")
        gateway.final_status = "requires_payment_method"
        coordinator.create_final_charge("shp_1")

        record = coordinator.process_refund("shp_1", 6000, "final_declined", override_policy=True)

        assert record.state == PaymentState.REFUNDED
        assert record.deposit_refunded == 6000
        assert gateway.refunds == [("pi_1", 6000, "final_declined", "shp_1:refund:1:deposit")]

    def test_second_call_after_settle_rejected(self, coordinator, statuses, quote_300):
        settle(coordinator, statuses, quote_300)
        with pytest.raises(StateConflictError) as exc_info:
            coordinator.create_final_charge("shp_1")
        assert exc_info.value.reason == "FINAL_NOT_ALLOWED"


class TestRefunds:
    """Test refund processing."""

    def test_full_refund_before_pickup(self, coordinator, gateway, statuses, quote_300):
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "pending", "accepted")

        record = coordinator.process_refund("shp_1", 6000, "requested_by_customer")

        assert record.state == PaymentState.REFUNDED
        assert record.refunded_amount == 6000
        assert gateway.refunds == [("pi_1", 6000, "requested_by_customer", "shp_1:refund:1:deposit")]

    def test_partial_refund(self, coordinator, statuses, quote_300):
        capture_deposit(coordinator, quote_300)

        record = coordinator.process_refund("shp_1", 2000)

        assert record.state == PaymentState.PARTIALLY_REFUNDED
        assert record.refundable_amount == 4000
        assert coordinator.refund_eligibility("shp_1").max_refundable == 4000

    def test_refund_after_pickup_rejected(self, coordinator, gateway, statuses, quote_300):
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "pending", "picked_up", "in_transit")

        with pytest.raises(StateConflictError) as exc_info:
            coordinator.process_refund("shp_1", 1000)

        assert exc_info.value.reason == "NO_REFUND_AFTER_PICKUP"
        assert gateway.refunds == []

    def test_admin_override(self, coordinator, statuses, quote_300):
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "picked_up")

        record = coordinator.process_refund("shp_1", 1000, "damaged", override_policy=True)
        assert record.state == PaymentState.PARTIALLY_REFUNDED

    @pytest.mark.parametrize("amount", [0, -5, 6001])
    def test_invalid_amounts(self, coordinator, quote_300, amount):
        capture_deposit(coordinator, quote_300)
        with pytest.raises(ValidationError):
            coordinator.process_refund("shp_1", amount)

    def test_refund_draws_from_final_first(self, coordinator, gateway, statuses, quote_300):
        settle(coordinator, statuses, quote_300)

        partial = coordinator.process_refund("shp_1", 25000, override_policy=True)
        assert partial.state == PaymentState.PARTIALLY_REFUNDED
        assert partial.final_refunded == 24000
        assert partial.deposit_refunded == 1000

        full = coordinator.process_refund("shp_1", 5000, override_policy=True)
        assert full.state == PaymentState.REFUNDED
        assert [(r[0], r[1], r[3]) for r in gateway.refunds] == [
            ("pi_2", 24000, "shp_1:refund:1:final"),
            ("pi_1", 1000, "shp_1:refund:1:deposit"),
            ("pi_1", 5000, "shp_1:refund:2:deposit"),
        ]

    def test_refund_while_final_in_flight(self, coordinator, gateway, statuses, quote_300):
        """Only the deposit is refundable, and the payment stays partially refunded."""
        capture_deposit(coordinator, quote_300)
        statuses.set_statuses("shp_1", "delivered")
        gateway.final_status = "processing"
        pending = coordinator.create_final_charge("shp_1")
        assert pending.state == PaymentState.FINAL_PENDING

        record = coordinator.process_refund("shp_1", 6000, override_policy=True)

        assert record.state == PaymentState.PARTIALLY_REFUNDED
        assert record.deposit_refunded == 6000
        assert record.final_refunded == 0
        assert [r[0] for r in gateway.refunds] == ["pi_1"]

    def test_uncaptured_payment_cannot_be_refunded(self, coordinator, quote_300):
        coordinator.create_deposit("shp_1", quote_300)
        with pytest.raises(ValidationError):
            coordinator.process_refund("shp_1", 100)


class TestCancel:
    """Test cancellation before capture."""

    def test_cancel_pending_deposit(self, coordinator, gateway, quote_300):
        coordinator.create_deposit("shp_1", quote_300)

        record = coordinator.cancel_payment("shp_1")

        assert record.state == PaymentState.CANCELLED
        assert record.deposit_status == "canceled"
        assert ("cancel_intent", "shp_1:deposit_cancel") in gateway.calls

    def test_cancel_is_idempotent(self, coordinator, gateway, quote_300):
        coordinator.create_deposit("shp_1", quote_300)
        coordinator.cancel_payment("shp_1")
        record = coordinator.cancel_payment("shp_1")

        assert record.state == PaymentState.CANCELLED
        assert gateway.call_names().count("cancel_intent") == 1

    def test_cancel_after_capture_rejected(self, coordinator, quote_300):
        capture_deposit(coordinator, quote_300)
        with pytest.raises(StateConflictError) as exc_info:
            coordinator.cancel_payment("shp_1")
        assert exc_info.value.reason == "CANNOT_CANCEL_AFTER_CAPTURE"


class TestConcurrency:
    """Test optimistic locking retries."""

    def test_conflicts_exhaust_retries(self, coordinator, payments, quote_300):
        coordinator.create_deposit("shp_1", quote_300)

        with patch.object(payments, "compare_and_set", side_effect=VersionConflictError("shp_1", 1)) as cas:
            with pytest.raises(ConcurrencyError):
                coordinator.cancel_payment("shp_1")

        assert cas.call_count == coordinator.max_cas_attempts

    def test_conflict_then_success(self, coordinator, payments, quote_300):
        coordinator.create_deposit("shp_1", quote_300)
        real_cas = payments.compare_and_set
        calls = []

        def flaky(record, expected_version, transitions=None):
            calls.append(expected_version)
            if len(calls) == 1:
                raise VersionConflictError(record.shipment_id, expected_version)
            return real_cas(record, expected_version, transitions)

        with patch.object(payments, "compare_and_set", side_effect=flaky):
            record = coordinator.confirm_deposit("shp_1", "pm_card_visa")

        assert record.state == PaymentState.DEPOSIT_CAPTURED
        assert len(calls) == 2

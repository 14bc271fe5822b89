"""
Unit tests for refund eligibility.

Tests the policy table keyed by the furthest shipment status reached.
"""

from datetime import datetime, timedelta, timezone

import pytest

from shipment_payments.core.errors import ValidationError
from shipment_payments.core.payment_state import PaymentState
from shipment_payments.core.refund_eligibility import (
    RefundPolicy,
    RefundReason,
    evaluate_refund_eligibility,
)
from shipment_payments.core.shipment_status import furthest_status, is_delivery_eligible
from shipment_payments.storage.models import PaymentRecord, ShipmentStatusEntry

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def history(*statuses):
    return [
        ShipmentStatusEntry("shp_1", status, NOW + timedelta(minutes=i))
        for i, status in enumerate(statuses)
    ]


def captured_record(**kwargs):
    values = dict(
        shipment_id="shp_1", total_amount=30000, deposit_amount=6000, final_amount=24000,
        state=PaymentState.DEPOSIT_CAPTURED, deposit_status="succeeded",
    )
    values.update(kwargs)
    return PaymentRecord(**values)


class TestFurthestStatus:
    """Test lifecycle progress tracking."""

    def test_furthest_status(self):
        assert furthest_status(history("pending", "accepted", "picked_up", "in_transit")) == "in_transit"

    def test_cancelled_does_not_erase_progress(self):
        assert furthest_status(history("pending", "picked_up", "cancelled")) == "picked_up"

    def test_empty_history(self):
        assert furthest_status([]) is None

    @pytest.mark.parametrize("status,eligible", [
        ("delivered", True), ("completed", True), ("in_transit", False), (None, False),
    ])
    def test_delivery_eligible(self, status, eligible):
        assert is_delivery_eligible(status) is eligible


class TestRefundEligibility:
    """Test default policy outcomes."""

    def test_in_transit_is_not_refundable(self):
        """After pickup there is no refund under the default policy."""
        result = evaluate_refund_eligibility(
            history("pending", "accepted", "picked_up", "in_transit"), captured_record()
        )
        assert result.eligible is False
        assert result.reason_code == RefundReason.NO_REFUND_AFTER_PICKUP
        assert result.max_refundable == 0
        assert result.furthest_status == "in_transit"

    def test_before_pickup_full_refund(self):
        result = evaluate_refund_eligibility(history("pending", "assigned"), captured_record())
        assert result.eligible is True
        assert result.reason_code == RefundReason.FULL_REFUND
        assert result.max_refundable == 6000

    def test_no_history_counts_as_pending(self):
        result = evaluate_refund_eligibility([], captured_record())
        assert result.eligible is True

    def test_cancelled_after_pickup_still_not_refundable(self):
        result = evaluate_refund_eligibility(history("picked_up", "cancelled"), captured_record())
        assert result.reason_code == RefundReason.NO_REFUND_AFTER_PICKUP

    def test_not_captured(self):
        pending = captured_record(state=PaymentState.DEPOSIT_PENDING, deposit_status="requires_payment_method")
        result = evaluate_refund_eligibility(history("pending"), pending)
        assert result.eligible is False
        assert result.reason_code == RefundReason.NOT_CAPTURED

    def test_no_payment_record(self):
        result = evaluate_refund_eligibility(history("pending"), None)
        assert result.reason_code == RefundReason.NOT_CAPTURED

    def test_already_refunded(self):
        refunded = captured_record(state=PaymentState.REFUNDED, deposit_refunded=6000)
        result = evaluate_refund_eligibility(history("pending"), refunded)
        assert result.eligible is False
        assert result.reason_code == RefundReason.ALREADY_REFUNDED

    def test_partial_refund_reduces_remaining(self):
        partly = captured_record(state=PaymentState.PARTIALLY_REFUNDED, deposit_refunded=1000)
        result = evaluate_refund_eligibility(history("accepted"), partly)
        assert result.max_refundable == 5000


class TestCustomPolicy:
    """Test configurable policy tables."""

    def test_partial_percentage(self):
        policy = RefundPolicy(refund_percent_by_status={"pending": 100, "picked_up": 50, "in_transit": 50})
        result = evaluate_refund_eligibility(history("picked_up", "in_transit"), captured_record(), policy)
        assert result.eligible is True
        assert result.reason_code == RefundReason.PARTIAL_REFUND
        assert result.max_refundable == 3000

    def test_percentage_accounts_for_previous_refunds(self):
        policy = RefundPolicy(refund_percent_by_status={"accepted": 50})
        record = captured_record(state=PaymentState.PARTIALLY_REFUNDED, deposit_refunded=3000)
        result = evaluate_refund_eligibility(history("accepted"), record, policy)
        assert result.eligible is False
        assert result.reason_code == RefundReason.ALREADY_REFUNDED

    def test_zero_before_pickup_uses_policy_reason(self):
        policy = RefundPolicy(refund_percent_by_status={"accepted": 0})
        result = evaluate_refund_eligibility(history("accepted"), captured_record(), policy)
        assert result.reason_code == RefundReason.NO_REFUND_POLICY

    def test_deadline_enforced(self):
        policy = RefundPolicy(enforce_refund_deadline=True)
        record = captured_record(refund_deadline=NOW)
        result = evaluate_refund_eligibility(history("pending"), record, policy, now=NOW + timedelta(minutes=1))
        assert result.reason_code == RefundReason.REFUND_WINDOW_EXPIRED

    def test_deadline_ignored_by_default(self):
        record = captured_record(refund_deadline=NOW)
        result = evaluate_refund_eligibility(history("pending"), record, now=NOW + timedelta(days=3))
        assert result.eligible is True

    def test_invalid_percentage_rejected(self):
        with pytest.raises(ValidationError):
            RefundPolicy(refund_percent_by_status={"pending": 150})

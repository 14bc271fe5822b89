"""
Refund eligibility evaluation.

Pure function of the shipment's status history, its payment record and a
policy table. Used by the coordinator before refunding and by read-only
callers that only want to display eligibility.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional

from .errors import ValidationError
from .shipment_status import PICKUP_STATUS, STATUS_PROGRESSION, furthest_status, progress_rank
from ..storage.models import PaymentRecord, ShipmentStatusEntry


class RefundReason(Enum):
    """Machine-readable outcome of an eligibility check."""
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    NO_REFUND_AFTER_PICKUP = "NO_REFUND_AFTER_PICKUP"
    NO_REFUND_POLICY = "NO_REFUND_POLICY"
    REFUND_WINDOW_EXPIRED = "REFUND_WINDOW_EXPIRED"
    NOT_CAPTURED = "NOT_CAPTURED"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"


def _default_percentages() -> Dict[str, int]:
    pickup_rank = STATUS_PROGRESSION.index(PICKUP_STATUS)
    return {
        status: (100 if rank < pickup_rank else 0)
        for rank, status in enumerate(STATUS_PROGRESSION)
    }


@dataclass(frozen=True)
class RefundPolicy:
    """Refund percentage keyed by the furthest status a shipment reached.

    Statuses missing from the table refund ``default_percent``. A shipment
    with no recorded status is treated as ``pending``.
    """
    refund_percent_by_status: Dict[str, int] = field(default_factory=_default_percentages)
    default_percent: int = 0
    enforce_refund_deadline: bool = False

    def __post_init__(self):
        """Validate percentages are within 0-100."""
        for status, percent in self.refund_percent_by_status.items():
            if not isinstance(percent, int) or isinstance(percent, bool) or not 0 <= percent <= 100:
                raise ValidationError(f"refund percent for '{status}' must be an integer 0-100")
        if not 0 <= self.default_percent <= 100:
            raise ValidationError("default_percent must be 0-100")

    def percent_for(self, status: Optional[str]) -> int:
        return self.refund_percent_by_status.get(status or "pending", self.default_percent)


DEFAULT_REFUND_POLICY = RefundPolicy()


@dataclass(frozen=True)
class RefundEligibility:
    """Result of an eligibility check. Amounts are cents."""
    eligible: bool
    max_refundable: int
    reason_code: RefundReason
    furthest_status: Optional[str] = None
    refund_percent: int = 0


def evaluate_refund_eligibility(
    status_history: Iterable[ShipmentStatusEntry],
    record: Optional[PaymentRecord],
    policy: RefundPolicy = DEFAULT_REFUND_POLICY,
    now: Optional[datetime] = None
) -> RefundEligibility:
    """Decide whether, and how much, a shipment's payment can be refunded.

    Args:
        status_history: Status changes reported by the lifecycle service
        record: The shipment's payment record (None if no payment exists)
        policy: Refund policy table
        now: Evaluation time, for the optional refund deadline

    Returns:
        RefundEligibility with the maximum refundable amount in cents
    """
    furthest = furthest_status(status_history)

    if record is None or record.captured_amount == 0:
        return RefundEligibility(False, 0, RefundReason.NOT_CAPTURED, furthest)

    if record.refundable_amount == 0:
        return RefundEligibility(False, 0, RefundReason.ALREADY_REFUNDED, furthest)

    if policy.enforce_refund_deadline and record.refund_deadline is not None:
        current = now or datetime.now(timezone.utc)
        if current > record.refund_deadline:
            return RefundEligibility(False, 0, RefundReason.REFUND_WINDOW_EXPIRED, furthest)

    percent = policy.percent_for(furthest)
    if percent == 0:
        past_pickup = progress_rank(furthest or "pending") >= progress_rank(PICKUP_STATUS)
        reason = RefundReason.NO_REFUND_AFTER_PICKUP if past_pickup else RefundReason.NO_REFUND_POLICY
        return RefundEligibility(False, 0, reason, furthest, percent)

    # Allowance is a share of everything captured, less what was already returned
    allowance = record.captured_amount * percent // 100
    max_refundable = min(record.refundable_amount, max(0, allowance - record.refunded_amount))
    if max_refundable == 0:
        return RefundEligibility(False, 0, RefundReason.ALREADY_REFUNDED, furthest, percent)

    reason = RefundReason.FULL_REFUND if percent == 100 else RefundReason.PARTIAL_REFUND
    return RefundEligibility(True, max_refundable, reason, furthest, percent)

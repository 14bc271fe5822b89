"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.errors import ValidationError
from ..core.payment_state import PaymentState
from ..core.pricing_config import PricingConfig


@dataclass(frozen=True)
class PaymentRecord:
    """Authoritative payment state for one shipment.

    Amounts are integer cents. Records are never deleted; changes produce a
    new snapshot written under an optimistic version check.
    """
    shipment_id: str
    total_amount: int
    deposit_amount: int
    final_amount: int
    currency: str = "usd"
    state: PaymentState = PaymentState.NEW
    deposit_intent_id: Optional[str] = None
    deposit_status: Optional[str] = None
    final_intent_id: Optional[str] = None
    final_status: Optional[str] = None
    payment_method_ref: Optional[str] = None
    deposit_refunded: int = 0
    final_refunded: int = 0
    version: int = 1
    last_event_id: Optional[str] = None
    last_event_created: Optional[int] = None
    quote_breakdown: Dict[str, Any] = field(default_factory=dict)
    refund_deadline: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate amount invariants."""
        if self.total_amount < 0 or self.deposit_amount < 0 or self.final_amount < 0:
            raise ValidationError("payment amounts cannot be negative")
        if self.deposit_amount + self.final_amount != self.total_amount:
            raise ValidationError(
                f"deposit ({self.deposit_amount}) + final ({self.final_amount}) "
                f"must equal total ({self.total_amount})"
            )
        if not 0 <= self.deposit_refunded <= self.deposit_amount:
            raise ValidationError("deposit_refunded out of range")
        if not 0 <= self.final_refunded <= self.final_amount:
            raise ValidationError("final_refunded out of range")

    @property
    def deposit_captured(self) -> bool:
        return self.deposit_status == "succeeded"

    @property
    def final_captured(self) -> bool:
        return self.final_status == "succeeded"

    @property
    def captured_amount(self) -> int:
        """Cents actually collected from the client so far."""
        captured = 0
        if self.deposit_captured:
            captured += self.deposit_amount
        if self.final_captured:
            captured += self.final_amount
        return captured

    @property
    def refunded_amount(self) -> int:
        return self.deposit_refunded + self.final_refunded

    @property
    def refundable_amount(self) -> int:
        return max(0, self.captured_amount - self.refunded_amount)

    @property
    def last_event_key(self) -> Optional[tuple]:
        """Ordering key of the newest applied gateway event."""
        if self.last_event_id is None:
            return None
        return (self.last_event_created or 0, self.last_event_id)


@dataclass(frozen=True)
class PaymentTransitionEntry:
    """Immutable audit row for one state change. Append-only."""
    shipment_id: str
    from_state: PaymentState
    to_state: PaymentState
    event: str
    source: str  # "coordinator" or "webhook"
    timestamp: datetime
    gateway_event_id: Optional[str] = None


@dataclass(frozen=True)
class PricingConfigVersion:
    """A stored tariff version."""
    version: int
    config: PricingConfig
    is_active: bool
    created_at: datetime
    created_by: Optional[str] = None


@dataclass(frozen=True)
class PricingConfigHistoryEntry:
    """Immutable record of one tariff change. Append-only."""
    config_version: int
    old_values: Dict[str, Any]
    new_values: Dict[str, Any]
    reason: str
    actor: Optional[str]
    changed_at: datetime


@dataclass(frozen=True)
class ShipmentStatusEntry:
    """One status change reported by the shipment lifecycle service."""
    shipment_id: str
    status: str
    changed_at: datetime

"""
Payment gateway interface.

The coordinator and reconciler depend only on this protocol; the Stripe
adapter implements it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


@dataclass(frozen=True)
class IntentResult:
    """Gateway view of a payment intent after a call."""
    id: str
    status: str
    amount: int
    client_secret: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str
    amount: int


@dataclass(frozen=True)
class GatewayEvent:
    """A signature-verified gateway event.

    ``created`` is the gateway's event timestamp; together with ``id`` it
    orders events for replay detection.
    """
    id: str
    type: str
    created: int
    intent_id: Optional[str] = None
    shipment_id: Optional[str] = None
    phase: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    amount_refunded: Optional[int] = None
    payment_method: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ordering_key(self) -> tuple:
        return (self.created, self.id)


class PaymentGateway(Protocol):
    """Operations the payment core needs from a gateway."""

    def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
        payment_method_ref: Optional[str] = None,
        confirm: bool = False,
    ) -> IntentResult:
        ...

    def confirm_intent(self, intent_id: str, payment_method_ref: str, idempotency_key: str) -> IntentResult:
        ...

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> IntentResult:
        ...

    def create_refund(
        self,
        intent_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundResult:
        ...

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        ...

"""
Shared fixtures: temp databases, an in-memory gateway and a status provider.
"""

import json
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from shipment_payments.core.errors import GatewayError, SignatureError
from shipment_payments.core.pricing_config import PricingConfig, VehicleRates
from shipment_payments.core.quote import QuoteRequest, calculate_quote
from shipment_payments.core.reconciler import WebhookReconciler
from shipment_payments.core.split_payment import SplitPaymentCoordinator
from shipment_payments.gateway.base import GatewayEvent, IntentResult, RefundResult
from shipment_payments.storage.models import ShipmentStatusEntry
from shipment_payments.storage.repository import PaymentRepository, initialize_schema


class FakeGateway:
    """In-memory PaymentGateway honouring idempotency keys.

    Like Stripe, a key replays its first result and refuses to be reused
    with different parameters.
    """

    def __init__(self):
        self.calls = []
        self.intents = {}
        self.by_key = {}
        self.refunds = []
        self.confirm_status = "succeeded"
        self.final_status = "succeeded"
        self.fail_next = None
        self.on_call = None

    def _enter(self, name, key):
        self.calls.append((name, key))
        if self.on_call is not None:
            hook, self.on_call = self.on_call, None
            hook()
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    def _replay(self, key, params):
        if key not in self.by_key:
            return None
        seen, result = self.by_key[key]
        if seen != params:
            raise GatewayError(
                f"Keys for idempotent requests can only be used with the same parameters: {key}",
                code="IdempotencyError",
            )
        return result

    def call_names(self):
        return [name for name, _ in self.calls]

    def keys(self, name):
        return [key for call, key in self.calls if call == name]

    def create_intent(self, amount, currency, idempotency_key, metadata, payment_method_ref=None, confirm=False):
        self._enter("create_intent", idempotency_key)
        params = ("create", amount, currency, payment_method_ref, confirm)
        cached = self._replay(idempotency_key, params)
        if cached is not None:
            return cached
        status = self.final_status if confirm else "requires_payment_method"
        intent = IntentResult(
            id=f"pi_{len(self.intents) + 1}", status=status, amount=amount,
            client_secret=f"secret_{len(self.intents) + 1}",
        )
        self.intents[intent.id] = {"amount": amount, "metadata": dict(metadata), "status": status}
        self.by_key[idempotency_key] = (params, intent)
        return intent

    def confirm_intent(self, intent_id, payment_method_ref, idempotency_key):
        self._enter("confirm_intent", idempotency_key)
        params = ("confirm", intent_id, payment_method_ref)
        cached = self._replay(idempotency_key, params)
        if cached is not None:
            return cached
        self.intents[intent_id]["status"] = self.confirm_status
        result = IntentResult(intent_id, self.confirm_status, self.intents[intent_id]["amount"])
        self.by_key[idempotency_key] = (params, result)
        return result

    def cancel_intent(self, intent_id, idempotency_key):
        self._enter("cancel_intent", idempotency_key)
        self.intents[intent_id]["status"] = "canceled"
        return IntentResult(intent_id, "canceled", self.intents[intent_id]["amount"])

    def create_refund(self, intent_id, amount, reason, idempotency_key):
        self._enter("create_refund", idempotency_key)
        refund = RefundResult(f"re_{len(self.refunds) + 1}", "succeeded", amount)
        self.refunds.append((intent_id, amount, reason, idempotency_key))
        return refund

    def verify_webhook(self, payload, signature):
        if signature != "valid-signature":
            raise SignatureError("Invalid webhook signature")
        return GatewayEvent(**json.loads(payload))


class FakeStatusProvider:
    """Shipment lifecycle stand-in; statuses are appended in order."""

    def __init__(self):
        self.history = {}

    def set_statuses(self, shipment_id, *statuses):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.history[shipment_id] = [
            ShipmentStatusEntry(shipment_id, status, start + timedelta(hours=i))
            for i, status in enumerate(statuses)
        ]

    def get_status_history(self, shipment_id):
        return list(self.history.get(shipment_id, []))

    def get_status(self, shipment_id):
        history = self.history.get(shipment_id)
        return history[-1].status if history else None


def flat_rate_config(**overrides) -> PricingConfig:
    """Tariff with a $1.00/mi test vehicle and no fuel drift."""
    rates = {"test": VehicleRates(Decimal("1.00"), Decimal("1.00"), Decimal("1.00"), Decimal("1.00"))}
    return PricingConfig(vehicle_rates=rates, **overrides)


def make_event(event_id, event_type, created, intent_id=None, shipment_id=None, phase=None, **kwargs):
    return GatewayEvent(
        id=event_id, type=event_type, created=created, intent_id=intent_id,
        shipment_id=shipment_id, phase=phase, **kwargs
    )


@pytest.fixture
def db_path(tmp_path):
    path = os.path.join(str(tmp_path), "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def payments(db_path):
    return PaymentRepository(db_path)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def statuses():
    return FakeStatusProvider()


@pytest.fixture
def coordinator(payments, gateway, statuses):
    return SplitPaymentCoordinator(payments, gateway, statuses)


@pytest.fixture
def reconciler(payments, gateway):
    return WebhookReconciler(payments, gateway)


@pytest.fixture
def quote_300():
    """$300.00 standard-service quote (30000 cents)."""
    request = QuoteRequest(
        vehicle_type="test",
        distance_miles=300,
        pickup_date=date(2024, 3, 1),
        delivery_date=date(2024, 3, 5),
    )
    return calculate_quote(request, flat_rate_config())


@pytest.fixture
def transient_error():
    return GatewayError("Stripe error: connection reset", code="APIConnectionError", retryable=True)

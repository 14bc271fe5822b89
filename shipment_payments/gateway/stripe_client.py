"""
Stripe payment gateway adapter.

Wraps Stripe payment intents, refunds and webhook verification. Stripe
exceptions are translated into GatewayError / SignatureError at this
boundary so the rest of the package never imports stripe.
"""

import logging
from typing import Any, Dict, Optional

import stripe

from .base import GatewayEvent, IntentResult, RefundResult
from .retry import RetryPolicy, call_with_retry
from ..core.errors import GatewayError, SignatureError

logger = logging.getLogger(__name__)

# Transient failures worth retrying with the same idempotency key
RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

VALID_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    try:
        value = obj[name]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def translate_stripe_error(error: stripe.StripeError) -> GatewayError:
    """Map a Stripe exception to a GatewayError with a retryable flag."""
    retryable = isinstance(error, RETRYABLE_ERRORS)
    code = getattr(error, "code", None) or type(error).__name__
    message = getattr(error, "user_message", None) or str(error) or type(error).__name__
    return GatewayError(f"Stripe error: {message}", code=code, retryable=retryable)


class StripeGateway:
    """PaymentGateway backed by Stripe.

    Every mutating call is sent with a caller-supplied idempotency key and
    wrapped in a bounded retry.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: float = 10.0,
    ):
        """Initialize the Stripe gateway.

        Args:
            api_key: Stripe secret key (required)
            webhook_secret: Endpoint secret for webhook signature checks
            retry_policy: Retry budget per call
            request_timeout: HTTP timeout per request, in seconds

        Raises:
            ValueError: If api_key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        # Retries are ours; keep the library from retrying underneath
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=request_timeout)

    def _call(self, operation: str, fn):
        def attempt():
            try:
                return fn()
            except stripe.StripeError as e:
                raise translate_stripe_error(e) from e
        return call_with_retry(operation, attempt, self.retry_policy)

    def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
        payment_method_ref: Optional[str] = None,
        confirm: bool = False,
    ) -> IntentResult:
        """Create a payment intent for ``amount`` cents.

        With ``confirm`` the intent is confirmed off-session against a saved
        payment method (used for the final charge).
        """
        if amount <= 0:
            raise ValueError("Payment amount must be greater than 0")

        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
        }
        if confirm:
            if not payment_method_ref:
                raise ValueError("payment_method_ref is required to confirm on creation")
            params.update(payment_method=payment_method_ref, confirm=True, off_session=True)
        else:
            params.update(
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                setup_future_usage="off_session",
            )

        logger.info(
            "Creating payment intent amount=%d currency=%s shipment_id=%s phase=%s",
            amount, currency, metadata.get("shipment_id"), metadata.get("phase")
        )
        intent = self._call("create_intent", lambda: stripe.PaymentIntent.create(
            api_key=self.api_key,
            idempotency_key=idempotency_key,
            **params
        ))
        result = self._intent_result(intent)
        logger.info("Payment intent created intent_id=%s status=%s", result.id, result.status)
        return result

    def confirm_intent(self, intent_id: str, payment_method_ref: str, idempotency_key: str) -> IntentResult:
        """Confirm a pending intent with a payment method."""
        intent = self._call("confirm_intent", lambda: stripe.PaymentIntent.confirm(
            intent_id,
            payment_method=payment_method_ref,
            api_key=self.api_key,
            idempotency_key=idempotency_key,
        ))
        result = self._intent_result(intent)
        logger.info("Payment intent confirmed intent_id=%s status=%s", result.id, result.status)
        return result

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> IntentResult:
        intent = self._call("cancel_intent", lambda: stripe.PaymentIntent.cancel(
            intent_id,
            api_key=self.api_key,
            idempotency_key=idempotency_key,
        ))
        return self._intent_result(intent)

    def create_refund(
        self,
        intent_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundResult:
        """Refund ``amount`` cents of a captured intent.

        Stripe only accepts its own reason codes; free-text reasons are kept
        in metadata instead.
        """
        params: Dict[str, Any] = {
            "payment_intent": intent_id,
            "amount": amount,
            "metadata": {"reason_note": reason or ""},
        }
        if reason in VALID_REFUND_REASONS:
            params["reason"] = reason

        refund = self._call("create_refund", lambda: stripe.Refund.create(
            api_key=self.api_key,
            idempotency_key=idempotency_key,
            **params
        ))
        result = RefundResult(
            id=_field(refund, "id"),
            status=_field(refund, "status"),
            amount=_field(refund, "amount", amount),
        )
        logger.info(
            "Refund created refund_id=%s intent_id=%s amount=%d",
            result.id, intent_id, result.amount
        )
        return result

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        """Verify a webhook signature and parse the event.

        Raises:
            SignatureError: If the secret is missing, the signature is
                invalid or the payload is not valid JSON
        """
        if not self.webhook_secret:
            raise SignatureError("Webhook secret is not configured")
        if not signature:
            raise SignatureError("Missing signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.warning("Webhook invalid payload: %s", e)
            raise SignatureError("Invalid webhook payload") from e
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise SignatureError("Invalid webhook signature") from e

        return parse_event(event)

    @staticmethod
    def _intent_result(intent: Any) -> IntentResult:
        return IntentResult(
            id=_field(intent, "id"),
            status=_field(intent, "status"),
            amount=_field(intent, "amount", 0),
            client_secret=_field(intent, "client_secret"),
        )


def parse_event(event: Any) -> GatewayEvent:
    """Convert a Stripe event into a GatewayEvent.

    Payment intents carry shipment_id and phase in their metadata. Charges
    (refund events) are linked back through their payment intent id.
    """
    obj = _field(_field(event, "data", {}), "object", {})
    event_type = _field(event, "type")
    metadata = dict(_field(obj, "metadata", {}) or {})

    if event_type and event_type.startswith("charge."):
        intent_id = _field(obj, "payment_intent")
    else:
        intent_id = _field(obj, "id")

    # Unexpanded it is the payment method id; expanded it is the object
    payment_method = _field(obj, "payment_method")
    if payment_method is not None and not isinstance(payment_method, str):
        payment_method = _field(payment_method, "id")

    return GatewayEvent(
        id=_field(event, "id"),
        type=event_type,
        created=int(_field(event, "created", 0)),
        intent_id=intent_id,
        shipment_id=metadata.get("shipment_id"),
        phase=metadata.get("phase"),
        status=_field(obj, "status"),
        amount=_field(obj, "amount"),
        amount_refunded=_field(obj, "amount_refunded"),
        payment_method=payment_method,
        metadata=metadata,
    )

"""
Payment gateway integration.

Stripe adapter behind a small protocol, with bounded retries.
"""

from .base import GatewayEvent, IntentResult, PaymentGateway, RefundResult
from .stripe_client import StripeGateway

__all__ = ["GatewayEvent", "IntentResult", "PaymentGateway", "RefundResult", "StripeGateway"]

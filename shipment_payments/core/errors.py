"""
Error taxonomy for pricing and payments.

Validation and state-conflict errors are raised synchronously to the caller.
Gateway errors carry a retryable flag used by the retry wrapper.
"""

from typing import Optional


class PaymentCoreError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(PaymentCoreError, ValueError):
    """Raised for bad input (negative distance, unknown vehicle, refund too large)."""


class GatewayError(PaymentCoreError):
    """Raised when the payment gateway call fails.

    Transient failures (network, rate limit, 5xx) are marked retryable;
    client errors (declined card, invalid request) are terminal.
    """
    def __init__(self, message: str, code: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class StateConflictError(PaymentCoreError):
    """Raised when an operation is not valid from the record's current state."""
    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


class ConcurrencyError(StateConflictError):
    """Raised when optimistic version retries are exhausted."""
    def __init__(self, message: str):
        super().__init__(message, reason="VERSION_CONFLICT")


class SignatureError(PaymentCoreError):
    """Raised when a webhook payload fails signature verification."""


class StaleEventError(PaymentCoreError):
    """Raised for duplicate or out-of-order webhook events. Never surfaced to callers."""

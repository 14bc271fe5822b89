"""
Bounded retry with exponential backoff for gateway calls.

Only GatewayErrors flagged retryable are retried. Idempotency keys on every
call make a retry after an ambiguous failure safe.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from ..core.errors import GatewayError

logger = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a single gateway operation."""
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    deadline_seconds: float = 30.0

    def __post_init__(self):
        """Validate retry budget."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be > 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


def call_with_retry(
    operation: str,
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run ``fn`` until it succeeds, fails terminally, or the budget runs out.

    Args:
        operation: Name used in log lines
        fn: Zero-argument callable performing the gateway call
        policy: Attempts, backoff and overall deadline
        sleep: Injectable sleep, for tests
        clock: Injectable monotonic clock, for tests

    Raises:
        GatewayError: The last error, once retries are exhausted or on a terminal error
    """
    started = clock()
    attempt = 1
    while True:
        try:
            return fn()
        except GatewayError as e:
            if not e.retryable:
                logger.warning("Gateway %s failed terminally code=%s: %s", operation, e.code, e)
                raise

            delay = policy.delay_for(attempt)
            out_of_time = clock() - started + delay > policy.deadline_seconds
            if attempt >= policy.max_attempts or out_of_time:
                logger.error(
                    "Gateway %s failed after %d attempt(s) code=%s: %s",
                    operation, attempt, e.code, e
                )
                raise

            logger.warning(
                "Gateway %s transient failure attempt=%d/%d code=%s, retrying in %.2fs",
                operation, attempt, policy.max_attempts, e.code, delay
            )
            sleep(delay)
            attempt += 1

"""Retry wrapper for DynamoDB calls that fail for transient reasons.

Connection drops, throttling and throughput errors are retried with capped
exponential backoff. Anything else propagates on the first attempt.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
        "TransactionConflictException",
        "LimitExceededException",
    }
)

_CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
    ConnectTimeoutError,
)


def is_transient_error(error: BaseException) -> bool:
    """Return True for storage errors worth retrying."""
    if isinstance(error, _CONNECTION_ERRORS):
        return True
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        return code in TRANSIENT_ERROR_CODES
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff for transient storage errors."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


DEFAULT_POLICY = RetryPolicy()


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    operation_name: str = "database operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run a storage call, retrying transient failures.

    Args:
        operation: Zero-argument callable performing the call
        policy: Retry policy (defaults to 3 attempts, 1s base, 5s cap)
        operation_name: Name used in log messages
        sleep: Sleep function, injectable for tests

    Returns:
        The operation's result

    Raises:
        Exception: The first non-transient error, or the last transient
            error once all attempts are used
    """
    policy = policy or DEFAULT_POLICY

    attempt = 1
    while True:
        try:
            result = operation()
        except Exception as e:
            if not is_transient_error(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation_name} failed (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info(f"{operation_name} succeeded on attempt {attempt}")
        return result

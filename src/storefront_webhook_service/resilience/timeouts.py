"""Timeout helpers for awaitables, with optional retry on timeout."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationTimeoutError(Exception):
    """Raised when an operation does not complete within its timeout."""

    def __init__(
        self,
        timeout_seconds: float,
        operation_name: str | None = None,
        message: str | None = None,
    ) -> None:
        if message is None:
            target = f"{operation_name} " if operation_name else "Operation "
            message = f"{target}timed out after {timeout_seconds}s"
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.operation_name = operation_name


def is_timeout_error(error: Any) -> bool:
    return isinstance(error, OperationTimeoutError)


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    operation_name: str | None = None,
    message: str | None = None,
) -> T:
    """Await with a deadline.

    Args:
        awaitable: Coroutine or future to await
        timeout_seconds: Deadline in seconds
        operation_name: Name included in the timeout error
        message: Custom error message

    Returns:
        The awaited result

    Raises:
        OperationTimeoutError: If the deadline passes first
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(timeout_seconds, operation_name, message) from e


async def with_timeout_and_retry(
    factory: Callable[[], Awaitable[T]],
    timeout_seconds: float,
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential: bool = True,
    is_retryable: Callable[[BaseException], bool] | None = None,
    operation_name: str | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``factory()`` with a timeout, retrying retryable failures.

    Args:
        factory: Zero-argument callable creating a fresh awaitable per attempt
        timeout_seconds: Per-attempt deadline
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any delay
        exponential: Double the delay for each retry when True
        is_retryable: Predicate for retryable errors (defaults to timeouts only)
        operation_name: Name used in errors and logs
        sleep: Async sleep function

    Returns:
        The first successful result

    Raises:
        Exception: The last error once retries are exhausted, or the first
            non-retryable error
    """
    retryable = is_retryable or is_timeout_error

    attempt = 0
    while True:
        try:
            return await with_timeout(factory(), timeout_seconds, operation_name)
        except Exception as e:
            if attempt >= max_retries or not retryable(e):
                raise

            delay = base_delay * (2**attempt) if exponential else base_delay
            delay = min(delay, max_delay)
            attempt += 1
            if operation_name:
                logger.warning(
                    f"{operation_name} failed (attempt {attempt}/{max_retries + 1}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
            await sleep(delay)

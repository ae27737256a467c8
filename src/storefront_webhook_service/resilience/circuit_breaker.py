"""Circuit breaker for calls to third-party services.

The breaker tracks consecutive failures of a guarded async operation. Once the
failure threshold is reached it opens and rejects calls immediately until the
reset timeout has elapsed, then admits a limited number of trial calls
(half-open). Enough successful trials close the circuit again; any failed
trial re-opens it.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

import httpx

from storefront_webhook_service.observability.metrics import record_circuit_transition

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Client errors that say nothing about the health of the remote service
_NON_FAILURE_STATUS_EXCEPTIONS = {408, 429}


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised when a call is rejected because the circuit is not accepting requests."""

    def __init__(self, message: str, service_name: str, state: CircuitState) -> None:
        super().__init__(message)
        self.message = message
        self.service_name = service_name
        self.state = state


def is_circuit_breaker_error(error: Any) -> bool:
    """Return True if the given object is a CircuitBreakerError."""
    return isinstance(error, CircuitBreakerError)


def default_is_failure(error: BaseException) -> bool:
    """Decide whether an exception counts against the circuit.

    Validation problems and 4xx responses are caused by the request, not by
    the remote service, so they do not trip the breaker. Request timeouts
    (408) and throttling (429) do.
    """
    if isinstance(error, ValueError):
        return False
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if 400 <= status < 500 and status not in _NON_FAILURE_STATUS_EXCEPTIONS:
            return False
    return True


@dataclass
class CircuitBreakerStats:
    """Point-in-time statistics for a circuit breaker."""

    service_name: str
    state: CircuitState
    failures: int
    successes: int
    consecutive_failures: int
    last_failure_time: datetime | None
    last_success_time: datetime | None
    half_open_attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
            "half_open_attempts": self.half_open_attempts,
        }


class CircuitBreaker:
    """CLOSED / OPEN / HALF_OPEN state machine guarding an async operation."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_requests: int = 1,
        service_name: str = "unknown",
        is_failure: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the circuit breaker.

        Args:
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds to stay open before admitting trial calls
            half_open_requests: Trial calls admitted (and successes required) in HALF_OPEN
            service_name: Name of the guarded service, used in errors and logs
            is_failure: Predicate deciding whether an exception counts as a failure
            clock: Monotonic clock in seconds

        Raises:
            ValueError: If a threshold or timeout is not positive
        """
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        if reset_timeout <= 0:
            raise ValueError("reset_timeout must be positive")
        if half_open_requests <= 0:
            raise ValueError("half_open_requests must be positive")

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_requests = half_open_requests
        self.service_name = service_name
        self.is_failure = is_failure or default_is_failure
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._failures = 0
        self._successes = 0
        self._consecutive_failures = 0
        self._half_open_attempts = 0
        self._half_open_successes = 0
        self._last_failure_time: datetime | None = None
        self._last_success_time: datetime | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    def get_state(self) -> CircuitState:
        """Return the current state without triggering any transition."""
        return self._state

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run the operation through the breaker.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The operation's result

        Raises:
            CircuitBreakerError: If the circuit rejects the call
            Exception: Whatever the operation raised
        """
        self._before_call()

        try:
            result = await operation()
        except Exception as e:
            if self.is_failure(e):
                self._on_failure(e)
            else:
                self._release_half_open_slot()
            raise
        except BaseException:
            # Cancelled or interrupted calls give back their trial slot
            self._release_half_open_slot()
            raise

        self._on_success()
        return result

    def get_stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            service_name=self.service_name,
            state=self._state,
            failures=self._failures,
            successes=self._successes,
            consecutive_failures=self._consecutive_failures,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
            half_open_attempts=self._half_open_attempts,
        )

    def reset(self) -> None:
        """Manually close the circuit and clear all counters."""
        self._transition(CircuitState.CLOSED)
        self._opened_at = None
        self._failures = 0
        self._successes = 0
        self._consecutive_failures = 0
        self._half_open_attempts = 0
        self._half_open_successes = 0
        logger.info(f"Circuit for {self.service_name} manually reset")

    def _before_call(self) -> None:
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed < self.reset_timeout:
                raise CircuitBreakerError(
                    f"Circuit breaker is OPEN for {self.service_name}; "
                    f"retry in {self.reset_timeout - elapsed:.1f}s",
                    self.service_name,
                    CircuitState.OPEN,
                )
            self._transition(CircuitState.HALF_OPEN)
            self._half_open_attempts = 0
            self._half_open_successes = 0

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_attempts >= self.half_open_requests:
                raise CircuitBreakerError(
                    f"Circuit breaker is HALF_OPEN for {self.service_name}; "
                    "trial request limit reached",
                    self.service_name,
                    CircuitState.HALF_OPEN,
                )
            self._half_open_attempts += 1

    def _on_success(self) -> None:
        self._successes += 1
        self._consecutive_failures = 0
        self._last_success_time = datetime.now(UTC)

        if self._state == CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.half_open_requests:
                self._transition(CircuitState.CLOSED)
                self._opened_at = None
                self._half_open_attempts = 0
                self._half_open_successes = 0

    def _on_failure(self, error: Exception) -> None:
        self._failures += 1
        self._consecutive_failures += 1
        self._last_failure_time = datetime.now(UTC)

        if self._state == CircuitState.HALF_OPEN:
            logger.warning(f"Trial call to {self.service_name} failed, re-opening circuit: {error}")
            self._open()
        elif (
            self._state == CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            logger.warning(
                f"Circuit for {self.service_name} opened after "
                f"{self._consecutive_failures} consecutive failures: {error}"
            )
            self._open()

    def _release_half_open_slot(self) -> None:
        # A non-failure exception still proves nothing about recovery
        if self._state == CircuitState.HALF_OPEN and self._half_open_attempts > 0:
            self._half_open_attempts -= 1

    def _open(self) -> None:
        self._transition(CircuitState.OPEN)
        self._opened_at = self._clock()
        self._half_open_attempts = 0
        self._half_open_successes = 0

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        logger.info(f"Circuit for {self.service_name}: {old_state.value} -> {new_state.value}")
        record_circuit_transition(self.service_name, old_state.value, new_state.value)


class CircuitBreakerRegistry:
    """Named circuit breakers shared across the service."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_requests: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_requests = half_open_requests
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, **overrides: Any) -> CircuitBreaker:
        """Return the breaker for a service, creating it on first use.

        Args:
            name: Service name
            **overrides: Constructor arguments overriding the registry defaults;
                only applied when the breaker is first created

        Returns:
            The shared CircuitBreaker for the name
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            config: dict[str, Any] = {
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                "half_open_requests": self.half_open_requests,
                "clock": self._clock,
            }
            config.update(overrides)
            breaker = CircuitBreaker(service_name=name, **config)
            self._breakers[name] = breaker
        return breaker

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def all_stats(self) -> list[CircuitBreakerStats]:
        return [self._breakers[name].get_stats() for name in self.names()]

    def any_open(self) -> bool:
        return any(b.get_state() != CircuitState.CLOSED for b in self._breakers.values())

    def reset(self, name: str) -> bool:
        """Reset a breaker by name.

        Returns:
            True if the breaker exists and was reset, False otherwise
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

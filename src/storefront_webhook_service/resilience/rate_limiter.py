"""Token bucket rate limiting keyed by client.

Each key owns a bucket holding up to ``capacity`` tokens that refills at
``refill_rate`` tokens per second. A request consumes tokens when enough are
available and is rejected otherwise. Refill happens lazily on each check.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from storefront_webhook_service.observability.metrics import record_rate_limit_rejection

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    """Token state for a single key."""

    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def seconds_until(self, tokens: float) -> float:
        """Seconds until the bucket holds at least ``tokens`` tokens."""
        missing = tokens - self.tokens
        if missing <= 0:
            return 0.0
        return missing / self.refill_rate


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    retry_after_seconds: float
    reset_after_seconds: float
    message: str | None = None

    def headers(self) -> dict[str, str]:
        """Rate limit response headers for this result.

        Retry-After is omitted when no wait would help, i.e. the request
        costs more than the bucket can ever hold.
        """
        headers = {
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after_seconds)),
        }
        if not self.allowed and math.isfinite(self.retry_after_seconds):
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_after_seconds)))
        return headers


class TokenBucketRateLimiter:
    """Per-key token bucket limiter."""

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        max_idle_seconds: float = 3600.0,
        name: str = "default",
    ) -> None:
        """Initialize the limiter.

        Args:
            capacity: Maximum burst size in tokens
            refill_rate: Tokens added per second
            clock: Monotonic clock in seconds
            max_idle_seconds: Idle time after which a bucket is dropped by cleanup()
            name: Scope name used in logs and metrics

        Raises:
            ValueError: If capacity or refill_rate is not positive
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")

        self.capacity = capacity
        self.refill_rate = refill_rate
        self.max_idle_seconds = max_idle_seconds
        self.name = name
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def check(self, key: str, cost: float = 1) -> RateLimitResult:
        """Consume ``cost`` tokens for ``key`` if available.

        Args:
            key: Client key (e.g., IP address)
            cost: Tokens this request consumes

        Returns:
            RateLimitResult describing whether the request is allowed
        """
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                capacity=self.capacity,
                refill_rate=self.refill_rate,
                tokens=self.capacity,
                last_refill=now,
            )
            self._buckets[key] = bucket
        else:
            bucket.refill(now)

        if cost > self.capacity:
            record_rate_limit_rejection(self.name)
            return RateLimitResult(
                allowed=False,
                remaining=int(bucket.tokens),
                retry_after_seconds=math.inf,
                reset_after_seconds=bucket.seconds_until(self.capacity),
                message=f"Request cost {cost} exceeds bucket capacity {self.capacity}",
            )

        if bucket.tokens >= cost:
            bucket.tokens -= cost
            return RateLimitResult(
                allowed=True,
                remaining=int(bucket.tokens),
                retry_after_seconds=0.0,
                reset_after_seconds=bucket.seconds_until(self.capacity),
            )

        retry_after = bucket.seconds_until(cost)
        record_rate_limit_rejection(self.name)
        logger.warning(f"Rate limit exceeded for {key} in scope {self.name}")
        return RateLimitResult(
            allowed=False,
            remaining=int(bucket.tokens),
            retry_after_seconds=retry_after,
            reset_after_seconds=bucket.seconds_until(self.capacity),
            message=f"Rate limit exceeded. Try again in {math.ceil(retry_after)} seconds.",
        )

    def cleanup(self) -> int:
        """Drop buckets idle longer than max_idle_seconds.

        Returns:
            Number of buckets removed
        """
        cutoff = self._clock() - self.max_idle_seconds
        stale = [key for key, bucket in self._buckets.items() if bucket.last_refill < cutoff]
        for key in stale:
            del self._buckets[key]
        return len(stale)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tracked_keys": len(self._buckets),
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
        }


class EnvironmentRateLimiter:
    """Separate limits for Square production and sandbox traffic.

    Sandbox gets double the burst capacity since test tooling replays
    webhooks in bursts.
    """

    def __init__(
        self,
        capacity: float = 60,
        refill_rate: float = 1.0,
        sandbox_multiplier: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limiters = {
            "production": TokenBucketRateLimiter(
                capacity=capacity, refill_rate=refill_rate, clock=clock, name="production"
            ),
            "sandbox": TokenBucketRateLimiter(
                capacity=capacity * sandbox_multiplier,
                refill_rate=refill_rate * sandbox_multiplier,
                clock=clock,
                name="sandbox",
            ),
        }

    def limiter_for(self, environment: str) -> TokenBucketRateLimiter:
        return self._limiters.get(environment, self._limiters["production"])

    def check(self, client_ip: str, environment: str = "production") -> RateLimitResult:
        return self.limiter_for(environment).check(client_ip)

    def cleanup(self) -> int:
        return sum(limiter.cleanup() for limiter in self._limiters.values())

    def get_stats(self) -> dict[str, Any]:
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}

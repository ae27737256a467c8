"""Health reporting for the webhook service."""

import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from storefront_webhook_service.repositories.base_repository import (
    STORAGE_ERRORS,
    DynamoDBRepository,
)
from storefront_webhook_service.resilience.circuit_breaker import CircuitBreakerRegistry
from storefront_webhook_service.resilience.rate_limiter import EnvironmentRateLimiter
from storefront_webhook_service.webhooks.retry_queue import WebhookRetryQueue

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthService:
    """Builds health reports from storage, breakers, the retry queue and rate limiters."""

    def __init__(
        self,
        repositories: Sequence[DynamoDBRepository],
        breakers: CircuitBreakerRegistry,
        retry_queue: WebhookRetryQueue,
        rate_limiter: EnvironmentRateLimiter,
        version: str,
    ) -> None:
        self.repositories = repositories
        self.breakers = breakers
        self.retry_queue = retry_queue
        self.rate_limiter = rate_limiter
        self.version = version

    def check_database(self) -> dict[str, Any]:
        """Describe every table and report latency.

        Returns:
            dict with status ("up" or "down"), latency_ms and per-table status
        """
        started = time.perf_counter()
        tables: dict[str, str] = {}
        healthy = True

        for repository in self.repositories:
            try:
                description = repository.describe()
                table_status = str(description.get("TableStatus", "UNKNOWN"))
            except STORAGE_ERRORS as e:
                logger.error(f"Health check failed for table {repository.table_name}: {e}")
                table_status = "UNREACHABLE"
            tables[repository.table_name] = table_status
            if table_status not in ("ACTIVE", "UPDATING"):
                healthy = False

        return {
            "status": "up" if healthy else "down",
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "tables": tables,
        }

    def comprehensive(self) -> dict[str, Any]:
        """Full health report.

        Unhealthy when the database is down. Degraded when a circuit is open
        or dead-lettered jobs are waiting.

        Returns:
            dict report with an overall "status"
        """
        database = self.check_database()
        queue_stats = self.retry_queue.get_stats()

        if database["status"] != "up":
            status = HealthStatus.UNHEALTHY
        elif self.breakers.any_open() or queue_stats.get("dead_letter", 0) > 0:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return {
            "status": status.value,
            "timestamp": datetime.now(UTC).isoformat(),
            "version": self.version,
            "checks": {
                "database": database,
                "circuit_breakers": [stats.to_dict() for stats in self.breakers.all_stats()],
                "retry_queue": queue_stats,
                "rate_limits": self.rate_limiter.get_stats(),
            },
        }

"""EventBridge handler for the scheduled retry-queue tick."""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from storefront_webhook_service.resilience.rate_limiter import EnvironmentRateLimiter
from storefront_webhook_service.webhooks.retry_queue import QueueRunSummary, WebhookRetryQueue
from storefront_webhook_service.webhooks.security import SecurityMonitor

logger = logging.getLogger(__name__)

EVENT_SOURCE = "com.storefront.webhooks"
RETRY_QUEUE_TICK = "RetryQueueTick"


class RetryQueueTickEvent(BaseModel):
    """Detail of a RetryQueueTick event.

    Attributes:
        limit: Optional cap on jobs processed in this tick
    """

    limit: int | None = Field(None, gt=0)


def parse_tick_event(event: dict[str, Any]) -> RetryQueueTickEvent | None:
    """Parse the detail of an EventBridge tick event.

    Args:
        event: Raw EventBridge event dictionary

    Returns:
        RetryQueueTickEvent if parsing succeeds, None otherwise
    """
    try:
        return RetryQueueTickEvent(**(event.get("detail") or {}))
    except (ValidationError, TypeError) as e:
        logger.error(f"Failed to parse RetryQueueTick event: {e}")
        return None


class RetryQueueEventHandler:
    """Drains the retry queue and prunes in-memory security state on each tick."""

    def __init__(
        self,
        retry_queue: WebhookRetryQueue,
        rate_limiter: EnvironmentRateLimiter,
        security_monitor: SecurityMonitor,
    ) -> None:
        self.retry_queue = retry_queue
        self.rate_limiter = rate_limiter
        self.security_monitor = security_monitor

    async def handle_tick(self, event: RetryQueueTickEvent) -> QueueRunSummary:
        """Run due retry jobs, then clean up limiter and monitor state.

        Args:
            event: Parsed tick event

        Returns:
            Summary of the queue run
        """
        summary = await self.retry_queue.process_due(event.limit)

        removed_buckets = self.rate_limiter.cleanup()
        removed_ips = self.security_monitor.cleanup()
        if removed_buckets or removed_ips:
            logger.info(
                f"Pruned {removed_buckets} idle rate limit buckets and {removed_ips} suspicious IP records"
            )

        return summary

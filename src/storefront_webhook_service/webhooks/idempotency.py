"""Replay protection for webhook deliveries.

Each provider event id is claimed in DynamoDB before its side effects run.
Redeliveries of a completed event, or of an event another invocation is still
working on, are acknowledged without processing it again.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from storefront_webhook_service.models.webhook_models import (
    ProcessedWebhook,
    ProcessingStatus,
    WebhookSource,
)
from storefront_webhook_service.repositories.webhook_repositories import (
    ClaimResult,
    ProcessedWebhookRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300
DEFAULT_RETENTION_SECONDS = 7 * 24 * 60 * 60


@dataclass
class IdempotencyCheck:
    """Result of claiming an event id."""

    is_duplicate: bool
    existing_status: ProcessingStatus | None = None
    storage_error: bool = False

    @property
    def should_process(self) -> bool:
        return not self.is_duplicate and not self.storage_error


class IdempotencyService:
    """Claims, completes and fails webhook event records."""

    def __init__(
        self,
        repository: ProcessedWebhookRepository,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the service.

        Args:
            repository: Processed webhook repository
            lease_seconds: How long a PROCESSING claim blocks redeliveries
            retention_seconds: Record lifetime before DynamoDB TTL removes it
            clock: Returns epoch seconds
        """
        self.repository = repository
        self.lease_seconds = lease_seconds
        self.retention_seconds = retention_seconds
        self._clock = clock

    def begin(self, event_id: str, source: WebhookSource, event_type: str) -> IdempotencyCheck:
        """Claim an event before processing it.

        Args:
            event_id: Provider event id
            source: Webhook source
            event_type: Provider event type

        Returns:
            IdempotencyCheck; is_duplicate is True when a completed or
            in-lease record already exists
        """
        now = self._clock()
        now_epoch = int(now)
        record = ProcessedWebhook(
            event_id=event_id,
            source=source,
            event_type=event_type,
            status=ProcessingStatus.PROCESSING,
            received_at=datetime.fromtimestamp(now, UTC),
            lease_expires_at=now_epoch + self.lease_seconds,
            expires_at=now_epoch + self.retention_seconds,
        )

        result = self.repository.claim(record, now_epoch)
        if result == ClaimResult.CLAIMED:
            return IdempotencyCheck(is_duplicate=False)

        if result == ClaimResult.ERROR:
            logger.error(f"Could not verify idempotency for {source.value} event {event_id}")
            return IdempotencyCheck(is_duplicate=False, storage_error=True)

        existing = self.repository.get(event_id)
        existing_status = existing.status if existing else None
        logger.info(
            f"Duplicate {source.value} webhook {event_id} "
            f"(status: {existing_status.value if existing_status else 'unknown'})"
        )
        return IdempotencyCheck(is_duplicate=True, existing_status=existing_status)

    def complete(self, event_id: str) -> bool:
        return self.repository.mark_completed(event_id)

    def fail(self, event_id: str, error: str) -> bool:
        """Mark an event failed so a redelivery may claim it again."""
        return self.repository.mark_failed(event_id, error)

    def extend_lease(self, event_id: str, seconds: int) -> bool:
        """Hold a PROCESSING claim while the retry queue owns the event.

        Args:
            event_id: Provider event id
            seconds: New lease length from now

        Returns:
            bool: True if the record was updated
        """
        return self.repository.extend_lease(event_id, int(self._clock()) + seconds)

    def recent(self, limit: int = 25) -> list[ProcessedWebhook]:
        return self.repository.list_recent(limit)

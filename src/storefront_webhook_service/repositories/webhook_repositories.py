"""DynamoDB repositories for webhook idempotency records and retry-queue jobs."""

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from storefront_webhook_service.models.webhook_models import (
    JobStatus,
    ProcessedWebhook,
    ProcessingStatus,
    WebhookJob,
)
from storefront_webhook_service.repositories.base_repository import (
    STORAGE_ERRORS,
    DynamoDBRepository,
    is_conditional_check_failure,
)

logger = logging.getLogger(__name__)

JOB_STATUS_INDEX = "status-index"


class ClaimResult(str, Enum):
    """Outcome of trying to claim a webhook event for processing."""

    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    ERROR = "error"


class ProcessedWebhookRepository(DynamoDBRepository):
    """Repository for webhook idempotency records keyed by event_id."""

    def claim(self, record: ProcessedWebhook, now_epoch: int) -> ClaimResult:
        """Atomically claim an event for processing.

        The claim succeeds when the event was never seen, when its previous
        processing failed, or when a previous PROCESSING claim's lease has
        lapsed. The attempts counter is incremented on every successful claim.

        Args:
            record: Record describing the new claim
            now_epoch: Current time in epoch seconds, compared against leases

        Returns:
            ClaimResult.CLAIMED, DUPLICATE if another claim holds the event,
            or ERROR if storage failed
        """
        try:
            self._call(
                lambda: self.table.update_item(
                    Key={"event_id": record.event_id},
                    UpdateExpression=(
                        "SET #source = :source, event_type = :event_type, #status = :processing, "
                        "received_at = if_not_exists(received_at, :received_at), "
                        "lease_expires_at = :lease, expires_at = :expires, "
                        "attempts = if_not_exists(attempts, :zero) + :one "
                        "REMOVE #error, completed_at"
                    ),
                    ConditionExpression=(
                        "attribute_not_exists(event_id) OR #status = :failed "
                        "OR (#status = :processing AND lease_expires_at < :now)"
                    ),
                    ExpressionAttributeNames={
                        "#source": "source",
                        "#status": "status",
                        "#error": "error",
                    },
                    ExpressionAttributeValues={
                        ":source": record.source.value,
                        ":event_type": record.event_type,
                        ":processing": ProcessingStatus.PROCESSING.value,
                        ":failed": ProcessingStatus.FAILED.value,
                        ":received_at": record.received_at.isoformat(),
                        ":lease": record.lease_expires_at,
                        ":expires": record.expires_at,
                        ":now": now_epoch,
                        ":zero": 0,
                        ":one": 1,
                    },
                ),
                "claim_event",
            )
            return ClaimResult.CLAIMED
        except STORAGE_ERRORS as e:
            if is_conditional_check_failure(e):
                return ClaimResult.DUPLICATE
            logger.error(f"Failed to claim webhook event {record.event_id}: {e}")
            return ClaimResult.ERROR

    def get(self, event_id: str) -> ProcessedWebhook | None:
        """Retrieve an idempotency record.

        Args:
            event_id: Provider event id

        Returns:
            ProcessedWebhook if found, None otherwise
        """
        try:
            response = self._call(lambda: self.table.get_item(Key={"event_id": event_id}), "get_item")
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to get webhook record {event_id}: {e}")
            return None

        if "Item" not in response:
            return None
        return ProcessedWebhook.from_dynamodb_item(response["Item"])

    def mark_completed(self, event_id: str) -> bool:
        return self._set_status(
            event_id,
            "SET #status = :status, completed_at = :completed_at REMOVE #error",
            {
                ":status": ProcessingStatus.COMPLETED.value,
                ":completed_at": datetime.now(UTC).isoformat(),
            },
        )

    def mark_failed(self, event_id: str, error: str) -> bool:
        return self._set_status(
            event_id,
            "SET #status = :status, #error = :error",
            {":status": ProcessingStatus.FAILED.value, ":error": error[:1000]},
        )

    def extend_lease(self, event_id: str, lease_expires_at: int) -> bool:
        return self._set_status(
            event_id,
            "SET #status = :status, lease_expires_at = :lease",
            {":status": ProcessingStatus.PROCESSING.value, ":lease": lease_expires_at},
        )

    def list_recent(self, limit: int = 25) -> list[ProcessedWebhook]:
        """List recently received webhook records, newest first.

        Scans the table, which is bounded by the TTL retention window.

        Args:
            limit: Maximum number of records to return

        Returns:
            list: ProcessedWebhook records (empty list on failure)
        """
        try:
            response = self._call(lambda: self.table.scan(), "scan")
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to list webhook records: {e}")
            return []

        records = [ProcessedWebhook.from_dynamodb_item(item) for item in response.get("Items", [])]
        records.sort(key=lambda r: r.received_at, reverse=True)
        return records[:limit]

    def _set_status(self, event_id: str, expression: str, values: dict[str, Any]) -> bool:
        # DynamoDB rejects attribute names the expression does not use
        names = {"#status": "status"}
        if "#error" in expression:
            names["#error"] = "error"
        try:
            self._call(
                lambda: self.table.update_item(
                    Key={"event_id": event_id},
                    UpdateExpression=expression,
                    ConditionExpression="attribute_exists(event_id)",
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values,
                ),
                "update_status",
            )
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to update webhook record {event_id}: {e}")
            return False


class WebhookJobRepository(DynamoDBRepository):
    """Repository for retry-queue jobs keyed by job_id, with a GSI on status."""

    def save(self, job: WebhookJob, expected_status: JobStatus | None = None) -> bool:
        """Create or replace a job.

        Args:
            job: WebhookJob to save
            expected_status: Only replace the stored job while it is in this status

        Returns:
            bool: True if save succeeded, False if storage failed or the stored
            job was no longer in the expected status
        """
        kwargs: dict[str, Any] = {"Item": job.to_dynamodb_item()}
        if expected_status is not None:
            kwargs["ConditionExpression"] = "#status = :expected"
            kwargs["ExpressionAttributeNames"] = {"#status": "status"}
            kwargs["ExpressionAttributeValues"] = {":expected": expected_status.value}

        try:
            self._call(lambda: self.table.put_item(**kwargs), "put_item")
            return True
        except STORAGE_ERRORS as e:
            if is_conditional_check_failure(e) and expected_status is not None:
                logger.warning(f"Webhook job {job.job_id} is no longer {expected_status.value}, not saved")
            else:
                logger.error(f"Failed to save webhook job {job.job_id}: {e}")
            return False

    def claim(self, job: WebhookJob) -> bool:
        """Move a pending job to PROCESSING unless another run got there first.

        The stored retry count must still match the listed copy, so a copy
        read before another run rescheduled the job cannot claim it again.

        Args:
            job: Pending job as listed by the caller

        Returns:
            bool: True if the caller now owns the job
        """
        try:
            self._call(
                lambda: self.table.update_item(
                    Key={"job_id": job.job_id},
                    UpdateExpression="SET #status = :processing",
                    ConditionExpression="#status = :pending AND retries = :retries",
                    ExpressionAttributeNames={"#status": "status"},
                    ExpressionAttributeValues={
                        ":processing": JobStatus.PROCESSING.value,
                        ":pending": JobStatus.PENDING.value,
                        ":retries": job.retries,
                    },
                ),
                "claim_job",
            )
            return True
        except STORAGE_ERRORS as e:
            if is_conditional_check_failure(e):
                logger.info(f"Webhook job {job.job_id} already claimed")
            else:
                logger.error(f"Failed to claim webhook job {job.job_id}: {e}")
            return False

    def get(self, job_id: str) -> WebhookJob | None:
        try:
            response = self._call(lambda: self.table.get_item(Key={"job_id": job_id}), "get_item")
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to get webhook job {job_id}: {e}")
            return None

        if "Item" not in response:
            return None
        return WebhookJob.from_dynamodb_item(response["Item"])

    def list_by_status(self, status: JobStatus, limit: int | None = None) -> list[WebhookJob]:
        """List jobs in a given status.

        Args:
            status: Job status to query
            limit: Optional maximum number of jobs

        Returns:
            list: WebhookJob objects (empty list on failure)
        """
        kwargs: dict[str, Any] = {
            "IndexName": JOB_STATUS_INDEX,
            "KeyConditionExpression": "#status = :status",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {":status": status.value},
        }
        if limit is not None:
            kwargs["Limit"] = limit

        try:
            response = self._call(lambda: self.table.query(**kwargs), "query_status")
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to list {status.value} webhook jobs: {e}")
            return []

        return [WebhookJob.from_dynamodb_item(item) for item in response.get("Items", [])]

    def count_by_status(self, status: JobStatus) -> int:
        """Count jobs in a status, returning 0 on failure."""
        try:
            response = self._call(
                lambda: self.table.query(
                    IndexName=JOB_STATUS_INDEX,
                    KeyConditionExpression="#status = :status",
                    ExpressionAttributeNames={"#status": "status"},
                    ExpressionAttributeValues={":status": status.value},
                    Select="COUNT",
                ),
                "count_status",
            )
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to count {status.value} webhook jobs: {e}")
            return 0

        return int(response.get("Count", 0))

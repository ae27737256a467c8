"""Webhook payload, idempotency and retry-queue models."""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class WebhookSource(str, Enum):
    """Third-party systems that send webhooks."""

    SQUARE = "square"
    SHIPPO = "shippo"


class SquareWebhookData(BaseModel):
    """The ``data`` envelope of a Square webhook."""

    type: str = Field(..., description="Object type (order, payment, refund)")
    id: str = Field(..., description="Identifier of the object the event is about")
    object: dict[str, Any] = Field(default_factory=dict, description="Event object body")
    deleted: bool | None = Field(None, description="Set when the object was deleted")


class SquareWebhookPayload(BaseModel):
    """Square webhook notification body."""

    merchant_id: str = Field(..., description="Square merchant id")
    type: str = Field(..., description="Event type (e.g., payment.updated)")
    event_id: str = Field(..., description="Unique event id, used for idempotency")
    created_at: str = Field(..., description="ISO 8601 event creation time")
    location_id: str | None = Field(None, description="Square location id")
    data: SquareWebhookData

    @field_validator("event_id")
    @classmethod
    def validate_event_id(cls, v: str) -> str:
        """Validate that event_id is not blank."""
        if not v.strip():
            raise ValueError("event_id must not be empty")
        return v


class ShippoWebhookPayload(BaseModel):
    """Shippo webhook notification body."""

    event: str = Field(..., description="Event name (e.g., track_updated)")
    test: bool = Field(default=False, description="Whether this is a test-mode event")
    data: dict[str, Any] = Field(default_factory=dict, description="Event object body")

    @field_validator("event")
    @classmethod
    def validate_event(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("event must not be empty")
        return v


class ProcessingStatus(str, Enum):
    """Idempotency record status for a webhook event."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessedWebhook(BaseModel):
    """Idempotency record for a received webhook event.

    Stored in DynamoDB keyed by event_id. ``expires_at`` drives DynamoDB TTL
    and ``lease_expires_at`` bounds how long a PROCESSING claim blocks
    redeliveries.
    """

    event_id: str = Field(..., description="Provider event id")
    source: WebhookSource = Field(..., description="Webhook source")
    event_type: str = Field(..., description="Provider event type")
    status: ProcessingStatus = Field(..., description="Processing status")
    received_at: datetime = Field(..., description="First receipt time")
    completed_at: datetime | None = Field(None, description="Completion time")
    lease_expires_at: int = Field(..., description="Epoch seconds when a PROCESSING claim lapses")
    expires_at: int = Field(..., description="Epoch seconds for DynamoDB TTL")
    attempts: int = Field(default=1, description="Number of processing claims", ge=1)
    error: str | None = Field(None, description="Last processing error")

    def to_dynamodb_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "event_id": self.event_id,
            "source": self.source.value,
            "event_type": self.event_type,
            "status": self.status.value,
            "received_at": self.received_at.isoformat(),
            "lease_expires_at": self.lease_expires_at,
            "expires_at": self.expires_at,
            "attempts": self.attempts,
        }
        if self.completed_at is not None:
            item["completed_at"] = self.completed_at.isoformat()
        if self.error is not None:
            item["error"] = self.error
        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "ProcessedWebhook":
        data: dict[str, Any] = {
            "event_id": item["event_id"],
            "source": WebhookSource(item["source"]),
            "event_type": item["event_type"],
            "status": ProcessingStatus(item["status"]),
            "received_at": datetime.fromisoformat(item["received_at"]),
            "lease_expires_at": int(item["lease_expires_at"]),
            "expires_at": int(item["expires_at"]),
            "attempts": int(item.get("attempts", 1)),
        }
        if "completed_at" in item:
            data["completed_at"] = datetime.fromisoformat(item["completed_at"])
        if "error" in item:
            data["error"] = item["error"]
        return cls(**data)


class JobStatus(str, Enum):
    """Retry queue job status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class WebhookJob(BaseModel):
    """A webhook event waiting to be (re)processed.

    Stored in DynamoDB with job_id as partition key and a GSI on status.
    """

    job_id: str = Field(..., description="Unique job identifier")
    source: WebhookSource = Field(..., description="Webhook source")
    event_id: str = Field(..., description="Provider event id")
    event_type: str = Field(..., description="Provider event type")
    payload: dict[str, Any] = Field(..., description="Parsed webhook body")
    retries: int = Field(default=0, description="Failed attempts so far", ge=0)
    max_retries: int = Field(default=5, description="Failed attempts allowed", gt=0)
    status: JobStatus = Field(default=JobStatus.PENDING, description="Job status")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    next_attempt_at: datetime | None = Field(None, description="Earliest next attempt")
    last_error: str | None = Field(None, description="Error from the last attempt")

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def to_dynamodb_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "job_id": self.job_id,
            "source": self.source.value,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": json.dumps(self.payload),
            "retries": self.retries,
            "max_retries": self.max_retries,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }
        if self.next_attempt_at is not None:
            item["next_attempt_at"] = self.next_attempt_at.isoformat()
        if self.last_error is not None:
            item["last_error"] = self.last_error
        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "WebhookJob":
        data: dict[str, Any] = {
            "job_id": item["job_id"],
            "source": WebhookSource(item["source"]),
            "event_id": item["event_id"],
            "event_type": item["event_type"],
            "payload": json.loads(item["payload"]),
            "retries": int(item.get("retries", 0)),
            "max_retries": int(item.get("max_retries", 5)),
            "status": JobStatus(item["status"]),
            "created_at": datetime.fromisoformat(item["created_at"]),
        }
        if "next_attempt_at" in item:
            data["next_attempt_at"] = datetime.fromisoformat(item["next_attempt_at"])
        if "last_error" in item:
            data["last_error"] = item["last_error"]
        return cls(**data)

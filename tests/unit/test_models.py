"""Unit tests for order and webhook models."""

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from pydantic import ValidationError

from storefront_webhook_service.models.order_models import (
    FulfillmentType,
    Order,
    OrderStatus,
    PaymentStatus,
)
from storefront_webhook_service.models.webhook_models import (
    JobStatus,
    ProcessedWebhook,
    ProcessingStatus,
    ShippoWebhookPayload,
    SquareWebhookPayload,
    WebhookJob,
    WebhookSource,
)


@pytest.mark.unit
class TestOrder:
    """Test suite for the Order model."""

    def test_defaults(self) -> None:
        """Test placeholder values for a freshly created order."""
        order = Order(square_order_id="sq_1")

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.total == Decimal("0")
        assert order.customer_name == "Unknown"
        assert order.email == "unknown@example.com"

    def test_negative_total_rejected(self) -> None:
        """Test that totals cannot be negative."""
        with pytest.raises(ValidationError):
            Order(square_order_id="sq_1", total=Decimal("-1"))

    def test_json_dump_keeps_total_exact(self) -> None:
        """Test that totals serialize as decimal strings, not floats."""
        order = Order(square_order_id="sq_1", total=Decimal("25.99"))

        assert order.model_dump(mode="json")["total"] == "25.99"
        assert json.loads(order.model_dump_json())["total"] == "25.99"

    def test_to_dynamodb_item_omits_none(self) -> None:
        """Test that unset optional attributes are not written."""
        item = Order(square_order_id="sq_1").to_dynamodb_item()

        assert "tracking_number" not in item
        assert "raw_data" not in item
        assert item["status"] == "PENDING"

    def test_raw_data_stored_as_json(self) -> None:
        """Test that raw payloads are serialized, since DynamoDB rejects floats in maps."""
        order = Order(square_order_id="sq_1", raw_data={"amount": 1.5})

        assert json.loads(order.to_dynamodb_item()["raw_data"]) == {"amount": 1.5}

    def test_from_dynamodb_item(self, stored_order_item: dict[str, Any]) -> None:
        """Test parsing a stored order."""
        order = Order.from_dynamodb_item(stored_order_item)

        assert order.order_id == "order_42"
        assert order.fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING
        assert order.total == Decimal("25.99")
        assert order.created_at == datetime(2024, 6, 1, 11, 0, tzinfo=UTC)
        assert order.raw_data == {"source": "storefront"}

    def test_from_dynamodb_item_with_minimal_attributes(self) -> None:
        """Test that missing attributes fall back to defaults."""
        order = Order.from_dynamodb_item({"square_order_id": "sq_1"})

        assert order.status == OrderStatus.PENDING
        assert order.fulfillment_type is None


@pytest.mark.unit
class TestWebhookPayloads:
    """Test suite for provider payload models."""

    def test_square_payload_parses(self, square_payment_payload: dict[str, Any]) -> None:
        """Test parsing a Square payment webhook."""
        payload = SquareWebhookPayload.model_validate(square_payment_payload)

        assert payload.type == "payment.updated"
        assert payload.data.id == "pay_1"
        assert payload.data.object["payment"]["status"] == "COMPLETED"

    def test_square_payload_requires_event_id(self, square_payment_payload: dict[str, Any]) -> None:
        """Test that a blank event id is rejected."""
        square_payment_payload["event_id"] = "  "

        with pytest.raises(ValidationError):
            SquareWebhookPayload.model_validate(square_payment_payload)

    def test_square_payload_requires_data(self, square_payment_payload: dict[str, Any]) -> None:
        """Test that the data envelope is required."""
        del square_payment_payload["data"]

        with pytest.raises(ValidationError):
            SquareWebhookPayload.model_validate(square_payment_payload)

    def test_shippo_payload_parses(self, shippo_track_payload: dict[str, Any]) -> None:
        """Test parsing a Shippo tracking webhook."""
        payload = ShippoWebhookPayload.model_validate(shippo_track_payload)

        assert payload.event == "track_updated"
        assert payload.data["tracking_number"] == "9400111899223100000000"

    def test_shippo_payload_rejects_blank_event(self) -> None:
        """Test that a blank event name is rejected."""
        with pytest.raises(ValidationError):
            ShippoWebhookPayload.model_validate({"event": "", "data": {}})


@pytest.mark.unit
class TestProcessedWebhook:
    """Test suite for idempotency records."""

    def test_dynamodb_round_trip_keeps_error(self) -> None:
        """Test that failed records keep their error through storage."""
        record = ProcessedWebhook(
            event_id="evt_1",
            source=WebhookSource.SQUARE,
            event_type="payment.updated",
            status=ProcessingStatus.FAILED,
            received_at=datetime(2024, 6, 1, tzinfo=UTC),
            lease_expires_at=1717200300,
            expires_at=1717804800,
            attempts=2,
            error="Order not found",
        )

        item = record.to_dynamodb_item()
        assert "completed_at" not in item

        parsed = ProcessedWebhook.from_dynamodb_item(item)
        assert parsed == record


@pytest.mark.unit
class TestWebhookJob:
    """Test suite for retry queue jobs."""

    @pytest.fixture
    def job(self) -> WebhookJob:
        return WebhookJob(
            job_id="job_1",
            source=WebhookSource.SHIPPO,
            event_id="shippo_abc",
            event_type="track_updated",
            payload={"event": "track_updated", "data": {"weight": 1.25}},
            created_at=datetime(2024, 6, 1, tzinfo=UTC),
        )

    def test_defaults(self, job: WebhookJob) -> None:
        """Test default retry budget and status."""
        assert job.status == JobStatus.PENDING
        assert job.retries == 0
        assert job.max_retries == 5

    def test_is_due(self, job: WebhookJob) -> None:
        """Test due checks against next_attempt_at."""
        now = datetime(2024, 6, 1, 12, tzinfo=UTC)
        assert job.is_due(now) is True

        job.next_attempt_at = now + timedelta(seconds=5)
        assert job.is_due(now) is False
        assert job.is_due(now + timedelta(seconds=5)) is True

    def test_payload_serialized_as_json(self, job: WebhookJob) -> None:
        """Test that payloads with floats survive storage."""
        item = job.to_dynamodb_item()

        assert isinstance(item["payload"], str)
        assert WebhookJob.from_dynamodb_item(item).payload == job.payload

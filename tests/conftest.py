"""Shared pytest fixtures and configuration for all tests."""

import json
import os
from datetime import UTC, datetime
from typing import Any

import pytest

# Entry point modules skip container initialization when imported under test
os.environ.setdefault("ENVIRONMENT", "test")

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def fixed_now() -> datetime:
    """Fixture providing a fixed aware 'now' for injected clocks."""
    return FIXED_NOW


@pytest.fixture
def square_secret() -> str:
    """Fixture providing the Square production signature key."""
    return "square-production-signature-key"


@pytest.fixture
def shippo_secret() -> str:
    """Fixture providing the Shippo webhook secret."""
    return "shippo-webhook-secret"


@pytest.fixture
def square_order_id() -> str:
    """Fixture providing a standard Square order ID."""
    return "sq_order_123"


@pytest.fixture
def square_payment_payload(square_order_id: str) -> dict[str, Any]:
    """Fixture providing a payment.updated Square webhook body."""
    return {
        "merchant_id": "merchant_1",
        "type": "payment.updated",
        "event_id": "evt_payment_1",
        "created_at": FIXED_NOW.isoformat().replace("+00:00", "Z"),
        "location_id": "loc_1",
        "data": {
            "type": "payment",
            "id": "pay_1",
            "object": {
                "payment": {
                    "id": "pay_1",
                    "order_id": square_order_id,
                    "status": "COMPLETED",
                    "amount_money": {"amount": 2599, "currency": "USD"},
                }
            },
        },
    }


@pytest.fixture
def square_order_created_payload(square_order_id: str) -> dict[str, Any]:
    """Fixture providing an order.created Square webhook body."""
    return {
        "merchant_id": "merchant_1",
        "type": "order.created",
        "event_id": "evt_order_created_1",
        "created_at": FIXED_NOW.isoformat().replace("+00:00", "Z"),
        "data": {
            "type": "order",
            "id": square_order_id,
            "object": {"order_created": {"order_id": square_order_id, "state": "OPEN"}},
        },
    }


@pytest.fixture
def shippo_track_payload() -> dict[str, Any]:
    """Fixture providing a Shippo track_updated webhook body."""
    return {
        "event": "track_updated",
        "test": False,
        "data": {
            "tracking_number": "9400111899223100000000",
            "carrier": "usps",
            "tracking_status": {"status": "DELIVERED", "status_details": "Delivered"},
        },
    }


@pytest.fixture
def stored_order_item(square_order_id: str) -> dict[str, Any]:
    """Fixture providing an order as stored in DynamoDB."""
    return {
        "square_order_id": square_order_id,
        "order_id": "order_42",
        "status": "PENDING",
        "payment_status": "PENDING",
        "fulfillment_type": "nationwide_shipping",
        "total": "25.99",
        "customer_name": "Ada Lovelace",
        "email": "ada@example.com",
        "created_at": "2024-06-01T11:00:00+00:00",
        "raw_data": json.dumps({"source": "storefront"}),
    }


@pytest.fixture
def mock_eventbridge_event() -> dict[str, Any]:
    """Fixture providing a sample EventBridge RetryQueueTick event."""
    return {
        "version": "0",
        "id": "event_123",
        "detail-type": "RetryQueueTick",
        "source": "com.storefront.webhooks",
        "account": "123456789012",
        "time": "2024-06-01T12:00:00Z",
        "region": "us-east-1",
        "resources": [],
        "detail": {"limit": 10},
    }

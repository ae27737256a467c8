"""Unit tests for the Square event processor."""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from storefront_webhook_service.models.webhook_models import SquareWebhookPayload
from storefront_webhook_service.services.order_service import OrderService
from storefront_webhook_service.webhooks.errors import PermanentWebhookError
from storefront_webhook_service.webhooks.square_events import SquareEventProcessor


def _payload(event_type: str, object_id: str, body: dict[str, Any]) -> SquareWebhookPayload:
    return SquareWebhookPayload.model_validate(
        {
            "merchant_id": "merchant_1",
            "type": event_type,
            "event_id": f"evt_{event_type}",
            "created_at": "2024-06-01T12:00:00Z",
            "data": {"type": event_type.split(".")[0], "id": object_id, "object": body},
        }
    )


@pytest.mark.unit
class TestSquareEventProcessor:
    """Test suite for SquareEventProcessor dispatch."""

    @pytest.fixture
    def mock_order_service(self) -> MagicMock:
        service = MagicMock(spec=OrderService)
        service.apply_fulfillment_update = AsyncMock()
        return service

    @pytest.fixture
    def processor(self, mock_order_service: MagicMock) -> SquareEventProcessor:
        return SquareEventProcessor(mock_order_service)

    @pytest.mark.asyncio
    async def test_order_created(self, processor: SquareEventProcessor, mock_order_service: MagicMock) -> None:
        """Test that order.created upserts the order with its state."""
        body = {"order_created": {"order_id": "sq_1", "state": "OPEN"}}

        await processor.process(_payload("order.created", "sq_1", body))

        mock_order_service.upsert_from_square.assert_called_once_with("sq_1", "OPEN", body)

    @pytest.mark.asyncio
    async def test_order_updated(self, processor: SquareEventProcessor, mock_order_service: MagicMock) -> None:
        """Test that order.updated passes state, total and customer."""
        body = {
            "order_updated": {
                "state": "COMPLETED",
                "total_money": {"amount": 4599, "currency": "USD"},
                "customer_id": "cust_9",
            }
        }

        await processor.process(_payload("order.updated", "sq_1", body))

        mock_order_service.apply_order_state.assert_called_once_with(
            "sq_1", "COMPLETED", body, total_cents=4599, customer_id="cust_9"
        )

    @pytest.mark.asyncio
    async def test_order_updated_without_total(
        self, processor: SquareEventProcessor, mock_order_service: MagicMock
    ) -> None:
        body = {"order_updated": {"state": "OPEN"}}

        await processor.process(_payload("order.updated", "sq_1", body))

        mock_order_service.apply_order_state.assert_called_once_with(
            "sq_1", "OPEN", body, total_cents=None, customer_id=None
        )

    @pytest.mark.asyncio
    async def test_fulfillment_updated(self, processor: SquareEventProcessor, mock_order_service: MagicMock) -> None:
        """Test that the first fulfillment update's new state is applied."""
        body = {
            "order_fulfillment_updated": {
                "fulfillment_update": [{"old_state": "RESERVED", "new_state": "PREPARED"}]
            }
        }

        await processor.process(_payload("order.fulfillment.updated", "sq_1", body))

        mock_order_service.apply_fulfillment_update.assert_awaited_once_with("sq_1", "PREPARED", body)

    @pytest.mark.asyncio
    async def test_fulfillment_without_state_is_skipped(
        self, processor: SquareEventProcessor, mock_order_service: MagicMock
    ) -> None:
        body = {"order_fulfillment_updated": {"fulfillment_update": []}}

        await processor.process(_payload("order.fulfillment.updated", "sq_1", body))

        mock_order_service.apply_fulfillment_update.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_type", ["payment.created", "payment.updated"])
    async def test_payment_events(
        self, processor: SquareEventProcessor, mock_order_service: MagicMock, event_type: str
    ) -> None:
        """Test that payment events update the payment's order."""
        body = {"payment": {"id": "pay_1", "order_id": "sq_1", "status": "COMPLETED"}}

        await processor.process(_payload(event_type, "pay_1", body))

        mock_order_service.apply_payment_update.assert_called_once_with("sq_1", "pay_1", "COMPLETED", body)

    @pytest.mark.asyncio
    async def test_payment_without_order_is_skipped(
        self, processor: SquareEventProcessor, mock_order_service: MagicMock
    ) -> None:
        await processor.process(_payload("payment.updated", "pay_1", {"payment": {"status": "COMPLETED"}}))

        mock_order_service.apply_payment_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_refund(self, processor: SquareEventProcessor, mock_order_service: MagicMock) -> None:
        body = {"refund": {"id": "ref_1", "order_id": "sq_1", "status": "COMPLETED"}}

        await processor.process(_payload("refund.updated", "ref_1", body))

        mock_order_service.apply_refund.assert_called_once_with("sq_1", "COMPLETED")

    @pytest.mark.asyncio
    async def test_unsupported_event_is_ignored(
        self, processor: SquareEventProcessor, mock_order_service: MagicMock
    ) -> None:
        """Test that unknown event types are acknowledged without side effects."""
        await processor.process(_payload("inventory.count.updated", "inv_1", {}))

        assert mock_order_service.method_calls == []

    @pytest.mark.asyncio
    async def test_malformed_section_is_permanent(self, processor: SquareEventProcessor) -> None:
        """Test that a non-object section can never be applied."""
        with pytest.raises(PermanentWebhookError):
            await processor.process(_payload("payment.updated", "pay_1", {"payment": "oops"}))

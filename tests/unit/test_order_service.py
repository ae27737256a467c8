"""Unit tests for OrderService and its status mappings."""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from storefront_webhook_service.models.order_models import (
    FulfillmentType,
    Order,
    OrderStatus,
    PaymentStatus,
)
from storefront_webhook_service.repositories.order_repository import OrderRepository
from storefront_webhook_service.services.order_service import (
    OrderService,
    cents_to_decimal,
    map_fulfillment_state,
    map_order_state,
    map_payment_status,
)
from storefront_webhook_service.services.square_client import SquareClient
from storefront_webhook_service.webhooks.errors import TransientWebhookError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _order(**overrides) -> Order:
    values = {"square_order_id": "sq_1", "created_at": NOW}
    values.update(overrides)
    return Order(**values)


@pytest.mark.unit
class TestStatusMapping:
    """Test suite for provider status mapping."""

    @pytest.mark.parametrize(
        ("state", "expected"),
        [
            ("OPEN", OrderStatus.PROCESSING),
            ("COMPLETED", OrderStatus.COMPLETED),
            ("CANCELED", OrderStatus.CANCELLED),
            ("DRAFT", OrderStatus.PENDING),
            ("open", OrderStatus.PROCESSING),
            ("SOMETHING_NEW", OrderStatus.PENDING),
            (None, OrderStatus.PENDING),
        ],
    )
    def test_map_order_state(self, state: str | None, expected: OrderStatus) -> None:
        assert map_order_state(state) == expected

    @pytest.mark.parametrize(
        ("state", "fulfillment_type", "has_tracking", "expected"),
        [
            ("PREPARED", FulfillmentType.PICKUP, False, OrderStatus.READY),
            ("COMPLETED", FulfillmentType.PICKUP, False, OrderStatus.COMPLETED),
            ("PREPARED", FulfillmentType.LOCAL_DELIVERY, False, OrderStatus.READY),
            ("PREPARED", FulfillmentType.NATIONWIDE_SHIPPING, False, OrderStatus.SHIPPING),
            ("COMPLETED", FulfillmentType.NATIONWIDE_SHIPPING, True, OrderStatus.DELIVERED),
            ("FAILED", FulfillmentType.NATIONWIDE_SHIPPING, True, OrderStatus.SHIPPING),
            ("FAILED", FulfillmentType.NATIONWIDE_SHIPPING, False, None),
            ("FAILED", FulfillmentType.PICKUP, False, None),
            ("PREPARED", None, False, None),
        ],
    )
    def test_map_fulfillment_state(
        self,
        state: str,
        fulfillment_type: FulfillmentType | None,
        has_tracking: bool,
        expected: OrderStatus | None,
    ) -> None:
        assert map_fulfillment_state(state, fulfillment_type, has_tracking) == expected

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            ("COMPLETED", PaymentStatus.PAID),
            ("APPROVED", PaymentStatus.PENDING),
            ("FAILED", PaymentStatus.FAILED),
            ("CANCELED", PaymentStatus.FAILED),
            (None, PaymentStatus.PENDING),
        ],
    )
    def test_map_payment_status(self, status: str | None, expected: PaymentStatus) -> None:
        assert map_payment_status(status) == expected

    def test_cents_to_decimal(self) -> None:
        assert cents_to_decimal(4599) == Decimal("45.99")
        assert cents_to_decimal(None) is None


@pytest.mark.unit
class TestOrderService:
    """Test suite for OrderService."""

    @pytest.fixture
    def mock_repository(self) -> MagicMock:
        repository = MagicMock(spec=OrderRepository)
        repository.save.return_value = True
        repository.update_fields.return_value = True
        return repository

    @pytest.fixture
    def mock_square_client(self) -> MagicMock:
        client = MagicMock(spec=SquareClient)
        client.get_order_tracking = AsyncMock(return_value=("1Z999", "UPS"))
        return client

    @pytest.fixture
    def service(self, mock_repository: MagicMock, mock_square_client: MagicMock) -> OrderService:
        return OrderService(mock_repository, square_client=mock_square_client, clock=lambda: NOW)

    def test_upsert_creates_new_order(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that order.created stores a placeholder order."""
        mock_repository.get_by_square_order_id.return_value = None

        order = service.upsert_from_square("sq_1", "OPEN", {"order_created": {}})

        assert order.status == OrderStatus.PROCESSING
        assert order.customer_name == "Unknown"
        assert order.created_at == NOW
        mock_repository.save.assert_called_once_with(order)

    def test_upsert_updates_existing_order(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that a redelivered order.created refreshes an existing order."""
        mock_repository.get_by_square_order_id.return_value = _order(customer_name="Ada")

        order = service.upsert_from_square("sq_1", "OPEN", {"a": 1})

        assert order.customer_name == "Ada"
        assert order.status == OrderStatus.PROCESSING
        mock_repository.save.assert_not_called()
        mock_repository.update_fields.assert_called_once_with(
            "sq_1", {"status": OrderStatus.PROCESSING, "raw_data": {"a": 1}, "updated_at": NOW}
        )

    def test_upsert_save_failure_is_transient(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = None
        mock_repository.save.return_value = False

        with pytest.raises(TransientWebhookError):
            service.upsert_from_square("sq_1", "OPEN", {})

    def test_order_state_open_keeps_status(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that non-terminal states do not overwrite fulfillment progress."""
        mock_repository.get_by_square_order_id.return_value = _order(status=OrderStatus.READY)

        order = service.apply_order_state("sq_1", "OPEN", {}, total_cents=2599, customer_id="cust_1")

        assert order.status == OrderStatus.READY
        assert order.total == Decimal("25.99")
        assert order.customer_name == "Customer ID: cust_1"
        assert "status" not in mock_repository.update_fields.call_args.args[1]

    def test_order_state_completed(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order(status=OrderStatus.READY)

        assert service.apply_order_state("sq_1", "COMPLETED", {}).status == OrderStatus.COMPLETED

    def test_cancelling_paid_order_refunds(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that a cancelled paid order is marked refunded."""
        mock_repository.get_by_square_order_id.return_value = _order(payment_status=PaymentStatus.PAID)

        order = service.apply_order_state("sq_1", "CANCELED", {})

        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.REFUNDED

    def test_cancelling_unpaid_order(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order()

        order = service.apply_order_state("sq_1", "CANCELED", {})

        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.PENDING

    def test_update_before_create_is_transient(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that events for unknown orders are retried later."""
        mock_repository.get_by_square_order_id.return_value = None

        with pytest.raises(TransientWebhookError):
            service.apply_order_state("sq_1", "COMPLETED", {})

    def test_failed_update_is_transient(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order()
        mock_repository.update_fields.return_value = False

        with pytest.raises(TransientWebhookError):
            service.apply_order_state("sq_1", "COMPLETED", {})

    @pytest.mark.asyncio
    async def test_fulfillment_for_shipping_fetches_tracking(
        self, service: OrderService, mock_repository: MagicMock, mock_square_client: MagicMock
    ) -> None:
        """Test that shipping orders pick up tracking details from Square."""
        mock_repository.get_by_square_order_id.return_value = _order(
            fulfillment_type=FulfillmentType.NATIONWIDE_SHIPPING
        )

        order = await service.apply_fulfillment_update("sq_1", "PREPARED", {})

        assert order.status == OrderStatus.SHIPPING
        assert order.tracking_number == "1Z999"
        assert order.shipping_carrier == "UPS"
        mock_square_client.get_order_tracking.assert_awaited_once_with("sq_1")

    @pytest.mark.asyncio
    async def test_fulfillment_tracking_fetch_failure_keeps_stored_values(
        self, service: OrderService, mock_repository: MagicMock, mock_square_client: MagicMock
    ) -> None:
        """Test that a Square outage does not block the status update."""
        mock_repository.get_by_square_order_id.return_value = _order(
            fulfillment_type=FulfillmentType.NATIONWIDE_SHIPPING, tracking_number="OLD"
        )
        mock_square_client.get_order_tracking.side_effect = RuntimeError("Square down")

        order = await service.apply_fulfillment_update("sq_1", "COMPLETED", {})

        assert order.status == OrderStatus.DELIVERED
        assert order.tracking_number == "OLD"
        fields = mock_repository.update_fields.call_args.args[1]
        assert "tracking_number" not in fields

    @pytest.mark.asyncio
    async def test_fulfillment_for_pickup_skips_square(
        self, service: OrderService, mock_repository: MagicMock, mock_square_client: MagicMock
    ) -> None:
        mock_repository.get_by_square_order_id.return_value = _order(fulfillment_type=FulfillmentType.PICKUP)

        order = await service.apply_fulfillment_update("sq_1", "PREPARED", {})

        assert order.status == OrderStatus.READY
        mock_square_client.get_order_tracking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fulfillment_without_square_client(self, mock_repository: MagicMock) -> None:
        service = OrderService(mock_repository, clock=lambda: NOW)
        mock_repository.get_by_square_order_id.return_value = _order(
            fulfillment_type=FulfillmentType.NATIONWIDE_SHIPPING
        )

        order = await service.apply_fulfillment_update("sq_1", "PREPARED", {})

        assert order.status == OrderStatus.SHIPPING
        assert order.tracking_number is None

    @pytest.mark.asyncio
    async def test_unmapped_fulfillment_state_keeps_status(
        self, service: OrderService, mock_repository: MagicMock
    ) -> None:
        mock_repository.get_by_square_order_id.return_value = _order(
            status=OrderStatus.PROCESSING, fulfillment_type=FulfillmentType.PICKUP
        )

        order = await service.apply_fulfillment_update("sq_1", "FAILED", {})

        assert order.status == OrderStatus.PROCESSING

    def test_payment_completed_marks_paid(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that a completed payment marks the order paid and starts processing."""
        mock_repository.get_by_square_order_id.return_value = _order()

        order = service.apply_payment_update("sq_1", "pay_1", "COMPLETED", {})

        assert order.payment_status == PaymentStatus.PAID
        assert order.square_payment_id == "pay_1"
        assert order.status == OrderStatus.PROCESSING

    def test_paid_payment_is_not_downgraded(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that a late APPROVED event does not undo PAID."""
        mock_repository.get_by_square_order_id.return_value = _order(
            payment_status=PaymentStatus.PAID, status=OrderStatus.READY
        )

        order = service.apply_payment_update("sq_1", "pay_1", "APPROVED", {})

        assert order.payment_status == PaymentStatus.PAID
        assert order.status == OrderStatus.READY

    def test_refunded_payment_is_sticky(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order(payment_status=PaymentStatus.REFUNDED)

        order = service.apply_payment_update("sq_1", "pay_1", "COMPLETED", {})

        assert order.payment_status == PaymentStatus.REFUNDED

    def test_failed_payment(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order()

        order = service.apply_payment_update("sq_1", "pay_1", "FAILED", {})

        assert order.payment_status == PaymentStatus.FAILED
        assert order.status == OrderStatus.PENDING

    def test_completed_refund(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order(payment_status=PaymentStatus.PAID)

        order = service.apply_refund("sq_1", "COMPLETED")

        assert order is not None
        assert order.payment_status == PaymentStatus.REFUNDED

    @pytest.mark.parametrize("status", ["PENDING", "FAILED", "REJECTED", None])
    def test_incomplete_refund_is_ignored(
        self, service: OrderService, mock_repository: MagicMock, status: str | None
    ) -> None:
        assert service.apply_refund("sq_1", status) is None
        mock_repository.update_fields.assert_not_called()

    def test_tracking_update(self, service: OrderService, mock_repository: MagicMock) -> None:
        """Test that delivered tracking updates the order found by tracking number."""
        mock_repository.get_by_tracking_number.return_value = _order(tracking_number="1Z999")

        order = service.apply_tracking_update("1Z999", "DELIVERED", {"tracking_number": "1Z999"})

        assert order is not None
        assert order.status == OrderStatus.DELIVERED
        mock_repository.update_fields.assert_called_once()

    def test_tracking_update_unknown_number(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_tracking_number.return_value = None

        assert service.apply_tracking_update("nope", "DELIVERED", {}) is None

    def test_tracking_update_unmapped_status(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_tracking_number.return_value = _order(tracking_number="1Z999")

        assert service.apply_tracking_update("1Z999", "PRE_TRANSIT", {}) is None
        mock_repository.update_fields.assert_not_called()

    def test_record_label(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order()

        order = service.record_label("sq_1", "1Z999", "ups")

        assert order.tracking_number == "1Z999"
        assert order.shipping_carrier == "ups"

    def test_get_order(self, service: OrderService, mock_repository: MagicMock) -> None:
        mock_repository.get_by_square_order_id.return_value = _order()

        assert service.get_order("sq_1") is not None

"""Applies Square and Shippo events to stored orders.

Status mapping lives here; the event processors only pull fields out of
provider payloads. Updates to orders that do not exist yet raise
TransientWebhookError because Square may deliver an update before the
matching ``order.created``.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from storefront_webhook_service.models.order_models import (
    FulfillmentType,
    Order,
    OrderStatus,
    PaymentStatus,
)
from storefront_webhook_service.repositories.order_repository import OrderRepository
from storefront_webhook_service.services.square_client import SquareClient
from storefront_webhook_service.webhooks.errors import TransientWebhookError

logger = logging.getLogger(__name__)

ORDER_STATE_MAP = {
    "OPEN": OrderStatus.PROCESSING,
    "COMPLETED": OrderStatus.COMPLETED,
    "CANCELED": OrderStatus.CANCELLED,
    "DRAFT": OrderStatus.PENDING,
}

PICKUP_FULFILLMENT_MAP = {
    "PROPOSED": OrderStatus.PROCESSING,
    "RESERVED": OrderStatus.PROCESSING,
    "PREPARED": OrderStatus.READY,
    "COMPLETED": OrderStatus.COMPLETED,
    "CANCELED": OrderStatus.CANCELLED,
}

SHIPPING_FULFILLMENT_MAP = {
    "PROPOSED": OrderStatus.PROCESSING,
    "RESERVED": OrderStatus.PROCESSING,
    "PREPARED": OrderStatus.SHIPPING,
    "COMPLETED": OrderStatus.DELIVERED,
    "CANCELED": OrderStatus.CANCELLED,
}

PAYMENT_STATUS_MAP = {
    "APPROVED": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "COMPLETED": PaymentStatus.PAID,
    "FAILED": PaymentStatus.FAILED,
    "CANCELED": PaymentStatus.FAILED,
}

TRACKING_STATUS_MAP = {
    "DELIVERED": OrderStatus.DELIVERED,
    "TRANSIT": OrderStatus.SHIPPING,
}

# Payment statuses that later events must not move away from, with the
# statuses they may still move to
_PAYMENT_TRANSITIONS = {
    PaymentStatus.PAID: {PaymentStatus.PAID, PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: {PaymentStatus.FAILED},
}


def map_order_state(state: str | None) -> OrderStatus:
    """Map a Square order state to an order status, defaulting to PENDING."""
    status = ORDER_STATE_MAP.get((state or "").upper())
    if status is None:
        logger.warning(f"Unknown Square order state '{state}', defaulting to PENDING")
        return OrderStatus.PENDING
    return status


def map_fulfillment_state(
    state: str | None, fulfillment_type: FulfillmentType | None, has_tracking: bool = False
) -> OrderStatus | None:
    """Map a Square fulfillment state for an order's fulfillment type.

    Args:
        state: New fulfillment state from Square
        fulfillment_type: How the order is fulfilled
        has_tracking: Whether the order has a tracking number

    Returns:
        The new order status, or None when no change applies
    """
    normalized = (state or "").upper()

    if fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING:
        status = SHIPPING_FULFILLMENT_MAP.get(normalized)
        if status is None and has_tracking:
            return OrderStatus.SHIPPING
        return status

    if fulfillment_type in (FulfillmentType.PICKUP, FulfillmentType.LOCAL_DELIVERY):
        return PICKUP_FULFILLMENT_MAP.get(normalized)

    return None


def map_payment_status(status: str | None) -> PaymentStatus:
    return PAYMENT_STATUS_MAP.get((status or "").upper(), PaymentStatus.PENDING)


def cents_to_decimal(amount: Any) -> Decimal | None:
    if amount is None:
        return None
    return Decimal(int(amount)) / Decimal(100)


class OrderService:
    """Service applying provider events to orders."""

    def __init__(
        self,
        order_repository: OrderRepository,
        square_client: SquareClient | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the order service.

        Args:
            order_repository: Repository for order records
            square_client: Square API client used to fetch tracking details
            clock: Returns the current aware datetime
        """
        self.order_repository = order_repository
        self.square_client = square_client
        self._clock = clock

    def get_order(self, square_order_id: str) -> Order | None:
        return self.order_repository.get_by_square_order_id(square_order_id)

    def upsert_from_square(
        self, square_order_id: str, state: str | None, raw_data: dict[str, Any]
    ) -> Order:
        """Create an order from ``order.created``, or refresh an existing one.

        New orders get placeholder customer fields until later events fill
        them in.

        Raises:
            TransientWebhookError: If the order could not be stored
        """
        status = map_order_state(state)
        now = self._clock()
        existing = self.order_repository.get_by_square_order_id(square_order_id)

        if existing is not None:
            self._update(square_order_id, {"status": status, "raw_data": raw_data, "updated_at": now})
            return existing.model_copy(update={"status": status, "raw_data": raw_data, "updated_at": now})

        order = Order(
            square_order_id=square_order_id,
            status=status,
            created_at=now,
            updated_at=now,
            raw_data=raw_data,
        )
        if not self.order_repository.save(order):
            raise TransientWebhookError(f"Failed to store order {square_order_id}")
        logger.info(f"Created order {square_order_id} with status {status.value}")
        return order

    def apply_order_state(
        self,
        square_order_id: str,
        state: str | None,
        raw_data: dict[str, Any],
        total_cents: int | None = None,
        customer_id: str | None = None,
    ) -> Order:
        """Apply ``order.updated``.

        Only terminal states change the status. Fulfillment events own the
        in-progress statuses, so an OPEN update must not overwrite READY.
        A cancelled order that was paid becomes REFUNDED.
        """
        order = self._require(square_order_id)
        mapped = map_order_state(state)
        fields: dict[str, Any] = {"raw_data": raw_data, "updated_at": self._clock()}

        total = cents_to_decimal(total_cents)
        if total is not None:
            fields["total"] = total
        if customer_id:
            fields["customer_name"] = f"Customer ID: {customer_id}"

        if mapped == OrderStatus.CANCELLED:
            fields["status"] = OrderStatus.CANCELLED
            if order.payment_status == PaymentStatus.PAID:
                fields["payment_status"] = PaymentStatus.REFUNDED
        elif mapped == OrderStatus.COMPLETED:
            fields["status"] = OrderStatus.COMPLETED

        self._update(square_order_id, fields)
        return order.model_copy(update=fields)

    async def apply_fulfillment_update(
        self, square_order_id: str, new_state: str | None, raw_data: dict[str, Any]
    ) -> Order:
        """Apply ``order.fulfillment.updated``.

        Shipping orders refresh tracking details from Square first. A failed
        fetch keeps the stored tracking values.
        """
        order = await asyncio.to_thread(self._require, square_order_id)
        tracking_number = order.tracking_number
        carrier = order.shipping_carrier

        if order.fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING and self.square_client:
            try:
                tracking = await self.square_client.get_order_tracking(square_order_id)
            except Exception as e:
                logger.error(f"Failed to fetch tracking for order {square_order_id} from Square: {e}")
                tracking = None
            if tracking is not None:
                tracking_number, carrier = tracking

        status = map_fulfillment_state(new_state, order.fulfillment_type, bool(tracking_number))
        if status is None:
            logger.info(
                f"No status change for order {square_order_id} "
                f"(fulfillment state {new_state}, type {order.fulfillment_type})"
            )

        fields: dict[str, Any] = {"raw_data": raw_data, "updated_at": self._clock()}
        if status is not None:
            fields["status"] = status
        if tracking_number != order.tracking_number:
            fields["tracking_number"] = tracking_number
        if carrier != order.shipping_carrier:
            fields["shipping_carrier"] = carrier

        await asyncio.to_thread(self._update, square_order_id, fields)
        return order.model_copy(update=fields)

    def apply_payment_update(
        self,
        square_order_id: str,
        payment_id: str,
        payment_status: str | None,
        raw_data: dict[str, Any],
    ) -> Order:
        """Apply ``payment.created`` / ``payment.updated``.

        Settled statuses are never downgraded. A payment that becomes PAID
        moves a PENDING order to PROCESSING.
        """
        order = self._require(square_order_id)
        proposed = map_payment_status(payment_status)

        allowed = _PAYMENT_TRANSITIONS.get(order.payment_status)
        if allowed is not None and proposed not in allowed:
            logger.info(
                f"Keeping payment status {order.payment_status.value} for order {square_order_id} "
                f"(proposed {proposed.value})"
            )
            proposed = order.payment_status

        fields: dict[str, Any] = {
            "payment_status": proposed,
            "square_payment_id": payment_id,
            "raw_data": raw_data,
            "updated_at": self._clock(),
        }
        if proposed == PaymentStatus.PAID and order.status == OrderStatus.PENDING:
            fields["status"] = OrderStatus.PROCESSING

        self._update(square_order_id, fields)
        return order.model_copy(update=fields)

    def apply_refund(self, square_order_id: str, refund_status: str | None) -> Order | None:
        """Apply a refund event. Only COMPLETED refunds change the order.

        Returns:
            The updated order, or None when the refund did not change it
        """
        normalized = (refund_status or "").upper()
        if normalized != "COMPLETED":
            if normalized in ("FAILED", "REJECTED"):
                logger.warning(f"Refund for order {square_order_id} {normalized.lower()}")
            return None

        order = self._require(square_order_id)
        fields = {"payment_status": PaymentStatus.REFUNDED, "updated_at": self._clock()}
        self._update(square_order_id, fields)
        return order.model_copy(update=fields)

    def apply_tracking_update(
        self, tracking_number: str, tracking_status: str | None, raw_data: dict[str, Any]
    ) -> Order | None:
        """Apply a Shippo ``track_updated`` event.

        Unknown tracking numbers are ignored.

        Returns:
            The updated order, or None if nothing changed
        """
        order = self.order_repository.get_by_tracking_number(tracking_number)
        if order is None:
            logger.info(f"No order found for tracking number {tracking_number}, ignoring")
            return None

        status = TRACKING_STATUS_MAP.get((tracking_status or "").upper())
        if status is None:
            logger.info(f"Tracking status {tracking_status} for order {order.square_order_id} not applied")
            return None

        fields = {"status": status, "raw_data": raw_data, "updated_at": self._clock()}
        self._update(order.square_order_id, fields)
        return order.model_copy(update=fields)

    def record_label(self, square_order_id: str, tracking_number: str, carrier: str | None = None) -> Order:
        """Store the tracking number from a purchased shipping label."""
        order = self._require(square_order_id)
        fields: dict[str, Any] = {"tracking_number": tracking_number, "updated_at": self._clock()}
        if carrier:
            fields["shipping_carrier"] = carrier
        self._update(square_order_id, fields)
        return order.model_copy(update=fields)

    def _require(self, square_order_id: str) -> Order:
        order = self.order_repository.get_by_square_order_id(square_order_id)
        if order is None:
            raise TransientWebhookError(f"Order {square_order_id} not found (event may precede order.created)")
        return order

    def _update(self, square_order_id: str, fields: dict[str, Any]) -> None:
        if not self.order_repository.update_fields(square_order_id, fields):
            raise TransientWebhookError(f"Failed to update order {square_order_id}")

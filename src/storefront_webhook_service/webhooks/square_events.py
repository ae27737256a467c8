"""Processing of verified Square webhook events.

Order service calls that only touch storage run in worker threads.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from storefront_webhook_service.models.webhook_models import SquareWebhookPayload
from storefront_webhook_service.services.order_service import OrderService
from storefront_webhook_service.webhooks.errors import PermanentWebhookError

logger = logging.getLogger(__name__)

SUPPORTED_EVENT_TYPES = (
    "order.created",
    "order.updated",
    "order.fulfillment.updated",
    "payment.created",
    "payment.updated",
    "refund.created",
    "refund.updated",
)


def _section(payload: SquareWebhookPayload, key: str) -> dict[str, Any]:
    value = payload.data.object.get(key, {})
    if not isinstance(value, dict):
        raise PermanentWebhookError(
            f"Malformed '{key}' section in {payload.type} event", event_id=payload.event_id
        )
    return value


class SquareEventProcessor:
    """Dispatches Square events to the order service.

    Unsupported event types are acknowledged and ignored.
    """

    def __init__(self, order_service: OrderService) -> None:
        self.order_service = order_service
        self._handlers: dict[str, Callable[[SquareWebhookPayload], Awaitable[None]]] = {
            "order.created": self._order_created,
            "order.updated": self._order_updated,
            "order.fulfillment.updated": self._fulfillment_updated,
            "payment.created": self._payment,
            "payment.updated": self._payment,
            "refund.created": self._refund,
            "refund.updated": self._refund,
        }

    async def process(self, payload: SquareWebhookPayload) -> None:
        """Apply an event.

        Raises:
            TransientWebhookError: If the event should be retried later
            PermanentWebhookError: If the event can never be applied
        """
        handler = self._handlers.get(payload.type)
        if handler is None:
            logger.info(f"Ignoring unsupported Square event type {payload.type} ({payload.event_id})")
            return
        logger.info(f"Processing Square {payload.type} event {payload.event_id} for {payload.data.id}")
        await handler(payload)

    async def _order_created(self, payload: SquareWebhookPayload) -> None:
        created = _section(payload, "order_created")
        await asyncio.to_thread(
            self.order_service.upsert_from_square,
            payload.data.id,
            created.get("state"),
            payload.data.object,
        )

    async def _order_updated(self, payload: SquareWebhookPayload) -> None:
        updated = _section(payload, "order_updated")
        total_money = updated.get("total_money") or {}
        await asyncio.to_thread(
            self.order_service.apply_order_state,
            payload.data.id,
            updated.get("state"),
            payload.data.object,
            total_cents=total_money.get("amount"),
            customer_id=updated.get("customer_id"),
        )

    async def _fulfillment_updated(self, payload: SquareWebhookPayload) -> None:
        fulfillment = _section(payload, "order_fulfillment_updated")
        updates = fulfillment.get("fulfillment_update") or []
        new_state = updates[0].get("new_state") if updates else None
        if not new_state:
            logger.warning(f"Fulfillment update for order {payload.data.id} has no new_state, skipping")
            return
        await self.order_service.apply_fulfillment_update(
            payload.data.id, new_state, payload.data.object
        )

    async def _payment(self, payload: SquareWebhookPayload) -> None:
        payment = _section(payload, "payment")
        square_order_id = payment.get("order_id")
        if not square_order_id:
            logger.warning(f"Payment {payload.data.id} has no order_id, skipping")
            return
        await asyncio.to_thread(
            self.order_service.apply_payment_update,
            square_order_id,
            payment.get("id") or payload.data.id,
            payment.get("status"),
            payload.data.object,
        )

    async def _refund(self, payload: SquareWebhookPayload) -> None:
        refund = _section(payload, "refund")
        square_order_id = refund.get("order_id")
        if not square_order_id:
            logger.warning(f"Refund {payload.data.id} has no order_id, skipping")
            return
        await asyncio.to_thread(self.order_service.apply_refund, square_order_id, refund.get("status"))

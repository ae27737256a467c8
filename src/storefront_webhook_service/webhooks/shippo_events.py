"""Processing of verified Shippo webhook events."""

import asyncio
import logging
import re

from storefront_webhook_service.models.webhook_models import ShippoWebhookPayload
from storefront_webhook_service.services.order_service import OrderService

logger = logging.getLogger(__name__)

# Labels are purchased with metadata like "order_id=<id>_attempt_<n>"
_ORDER_ID_PATTERN = re.compile(r"order_id=(?P<order_id>[A-Za-z0-9_-]+?)(?:_attempt_\d+)?$")

TRANSACTION_EVENTS = ("transaction_created", "transaction_updated")


def parse_order_id(metadata: object) -> str | None:
    """Extract the Square order id from label metadata."""
    if not isinstance(metadata, str):
        return None
    match = _ORDER_ID_PATTERN.search(metadata.strip())
    return match.group("order_id") if match else None


class ShippoEventProcessor:
    """Applies Shippo tracking and label events to orders."""

    def __init__(self, order_service: OrderService) -> None:
        self.order_service = order_service

    async def process(self, payload: ShippoWebhookPayload) -> None:
        """Apply an event.

        Raises:
            TransientWebhookError: If the order could not be updated
        """
        if payload.event == "track_updated":
            await asyncio.to_thread(self._track_updated, payload)
        elif payload.event in TRANSACTION_EVENTS:
            await asyncio.to_thread(self._transaction, payload)
        else:
            logger.info(f"Ignoring unsupported Shippo event {payload.event}")

    def _track_updated(self, payload: ShippoWebhookPayload) -> None:
        tracking_number = payload.data.get("tracking_number")
        if not tracking_number:
            logger.warning("Shippo track_updated event without tracking_number, skipping")
            return

        tracking_status = payload.data.get("tracking_status") or {}
        status = tracking_status.get("status") if isinstance(tracking_status, dict) else None
        self.order_service.apply_tracking_update(tracking_number, status, payload.data)

    def _transaction(self, payload: ShippoWebhookPayload) -> None:
        tracking_number = payload.data.get("tracking_number")
        square_order_id = parse_order_id(payload.data.get("metadata"))
        if not tracking_number or not square_order_id:
            logger.info(f"Shippo {payload.event} without tracking number or order id, skipping")
            return

        self.order_service.record_label(square_order_id, tracking_number, payload.data.get("carrier"))

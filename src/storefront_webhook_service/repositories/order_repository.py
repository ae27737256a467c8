"""DynamoDB repository for storefront orders."""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any

from storefront_webhook_service.models.order_models import Order
from storefront_webhook_service.repositories.base_repository import (
    STORAGE_ERRORS,
    DynamoDBRepository,
    is_conditional_check_failure,
)

logger = logging.getLogger(__name__)

TRACKING_NUMBER_INDEX = "tracking_number-index"


def _to_attribute_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return json.dumps(value)
    return value


class OrderRepository(DynamoDBRepository):
    """Repository for order records keyed by square_order_id.

    A GSI on tracking_number supports lookups from Shippo tracking webhooks.
    """

    def get_by_square_order_id(self, square_order_id: str) -> Order | None:
        """Retrieve an order by its Square order id.

        Args:
            square_order_id: Square order identifier

        Returns:
            Order if found, None otherwise
        """
        try:
            response = self._call(
                lambda: self.table.get_item(Key={"square_order_id": square_order_id}),
                "get_item",
            )
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to get order {square_order_id}: {e}")
            return None

        if "Item" not in response:
            return None
        return Order.from_dynamodb_item(response["Item"])

    def get_by_tracking_number(self, tracking_number: str) -> Order | None:
        """Retrieve the order carrying a tracking number.

        Args:
            tracking_number: Carrier tracking number

        Returns:
            The first matching order, or None
        """
        try:
            response = self._call(
                lambda: self.table.query(
                    IndexName=TRACKING_NUMBER_INDEX,
                    KeyConditionExpression="tracking_number = :tn",
                    ExpressionAttributeValues={":tn": tracking_number},
                    Limit=1,
                ),
                "query_tracking_number",
            )
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to look up order by tracking number: {e}")
            return None

        items = response.get("Items", [])
        if not items:
            return None
        return Order.from_dynamodb_item(items[0])

    def save(self, order: Order) -> bool:
        """Create or replace an order.

        Args:
            order: Order to save

        Returns:
            bool: True if save succeeded, False otherwise
        """
        try:
            self._call(lambda: self.table.put_item(Item=order.to_dynamodb_item()), "put_item")
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to save order {order.square_order_id}: {e}")
            return False

    def update_fields(self, square_order_id: str, fields: dict[str, Any]) -> bool:
        """Update selected attributes of an existing order.

        None values remove the attribute. The update never creates an order.

        Args:
            square_order_id: Square order identifier
            fields: Attribute names mapped to new values

        Returns:
            bool: True if the order existed and was updated, False otherwise
        """
        if not fields:
            return True

        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        set_parts: list[str] = []
        remove_parts: list[str] = []

        for index, (name, value) in enumerate(sorted(fields.items())):
            names[f"#f{index}"] = name
            if value is None:
                remove_parts.append(f"#f{index}")
            else:
                values[f":v{index}"] = _to_attribute_value(value)
                set_parts.append(f"#f{index} = :v{index}")

        expression = ""
        if set_parts:
            expression += "SET " + ", ".join(set_parts)
        if remove_parts:
            expression += " REMOVE " + ", ".join(remove_parts)

        kwargs: dict[str, Any] = {
            "Key": {"square_order_id": square_order_id},
            "UpdateExpression": expression.strip(),
            "ConditionExpression": "attribute_exists(square_order_id)",
            "ExpressionAttributeNames": names,
        }
        if values:
            kwargs["ExpressionAttributeValues"] = values

        try:
            self._call(lambda: self.table.update_item(**kwargs), "update_item")
            return True
        except STORAGE_ERRORS as e:
            if is_conditional_check_failure(e):
                logger.warning(f"Order {square_order_id} does not exist, update skipped")
            else:
                logger.error(f"Failed to update order {square_order_id}: {e}")
            return False

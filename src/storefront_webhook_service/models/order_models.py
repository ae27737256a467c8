"""Order models.

Orders are the storefront rows that Square and Shippo webhooks act upon.
Stored in DynamoDB keyed by the Square order id.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    """Lifecycle status of a storefront order."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Payment status of a storefront order."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class FulfillmentType(str, Enum):
    """How an order reaches the customer."""

    PICKUP = "pickup"
    LOCAL_DELIVERY = "local_delivery"
    NATIONWIDE_SHIPPING = "nationwide_shipping"


class Order(BaseModel):
    """Storefront order as tracked by the webhook service."""

    square_order_id: str = Field(..., description="Square order identifier (table key)")
    order_id: str | None = Field(None, description="Storefront order identifier")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    payment_status: PaymentStatus = Field(
        default=PaymentStatus.PENDING, description="Payment status"
    )
    fulfillment_type: FulfillmentType | None = Field(None, description="Fulfillment method")
    total: Decimal = Field(default=Decimal("0"), description="Order total", ge=0)
    customer_name: str = Field(default="Unknown", description="Customer name")
    email: str = Field(default="unknown@example.com", description="Customer email")
    tracking_number: str | None = Field(None, description="Carrier tracking number")
    shipping_carrier: str | None = Field(None, description="Carrier name")
    square_payment_id: str | None = Field(None, description="Latest Square payment id")
    created_at: datetime | None = Field(None, description="Creation timestamp")
    updated_at: datetime | None = Field(None, description="Last update timestamp")
    raw_data: dict[str, Any] | None = Field(None, description="Last raw provider payload")

    def to_dynamodb_item(self) -> dict[str, Any]:
        """Convert to DynamoDB item format.

        Returns:
            dict: DynamoDB-compatible representation
        """
        item: dict[str, Any] = {
            "square_order_id": self.square_order_id,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "total": self.total,
            "customer_name": self.customer_name,
            "email": self.email,
        }

        optional = {
            "order_id": self.order_id,
            "fulfillment_type": self.fulfillment_type.value if self.fulfillment_type else None,
            "tracking_number": self.tracking_number,
            "shipping_carrier": self.shipping_carrier,
            "square_payment_id": self.square_payment_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            # Stored as a string: DynamoDB rejects floats inside maps
            "raw_data": json.dumps(self.raw_data) if self.raw_data is not None else None,
        }
        item.update({key: value for key, value in optional.items() if value is not None})
        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict[str, Any]) -> "Order":
        """Create Order from DynamoDB item.

        Args:
            item: DynamoDB item dictionary

        Returns:
            Order: Parsed model instance
        """
        data: dict[str, Any] = {
            "square_order_id": item["square_order_id"],
            "status": OrderStatus(item.get("status", OrderStatus.PENDING.value)),
            "payment_status": PaymentStatus(item.get("payment_status", PaymentStatus.PENDING.value)),
            "total": Decimal(str(item.get("total", "0"))),
            "customer_name": item.get("customer_name", "Unknown"),
            "email": item.get("email", "unknown@example.com"),
        }

        for key in ("order_id", "tracking_number", "shipping_carrier", "square_payment_id"):
            if key in item:
                data[key] = item[key]

        if "fulfillment_type" in item:
            data["fulfillment_type"] = FulfillmentType(item["fulfillment_type"])

        for key in ("created_at", "updated_at"):
            if key in item:
                data[key] = datetime.fromisoformat(item[key])

        if "raw_data" in item:
            data["raw_data"] = json.loads(item["raw_data"])

        return cls(**data)

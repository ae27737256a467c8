"""Client for the Square REST API, guarded by a circuit breaker and timeouts."""

import logging
import time
from typing import Any

import httpx

from storefront_webhook_service.observability.decorators import traced
from storefront_webhook_service.observability.metrics import record_external_api_call
from storefront_webhook_service.resilience.circuit_breaker import CircuitBreaker
from storefront_webhook_service.resilience.timeouts import with_timeout

logger = logging.getLogger(__name__)

PRODUCTION_BASE_URL = "https://connect.squareup.com"
SANDBOX_BASE_URL = "https://connect.squareupsandbox.com"
DEFAULT_API_VERSION = "2024-01-18"


def extract_tracking(order: dict[str, Any]) -> tuple[str | None, str | None] | None:
    """Find tracking details in a Square order.

    Args:
        order: Square order object

    Returns:
        (tracking_number, carrier) from the first SHIPMENT fulfillment,
        or None if the order has no shipment details
    """
    for fulfillment in order.get("fulfillments") or []:
        if fulfillment.get("type") != "SHIPMENT":
            continue
        details = fulfillment.get("shipment_details")
        if details:
            return details.get("tracking_number"), details.get("carrier")
    return None


class SquareClient:
    """HTTP client for reading orders and payments from Square.

    Every call runs inside the ``square`` circuit breaker and a timeout.
    HTTP errors are raised as ``httpx.HTTPStatusError`` so the breaker and
    the retry queue can tell client errors from outages.
    """

    def __init__(
        self,
        access_token: str,
        breaker: CircuitBreaker,
        environment: str = "production",
        timeout_seconds: float = 10.0,
        api_version: str = DEFAULT_API_VERSION,
        base_url: str | None = None,
    ) -> None:
        """Initialize the Square client.

        Args:
            access_token: Square access token
            breaker: Circuit breaker guarding Square calls
            environment: API environment ('sandbox' or 'production')
            timeout_seconds: Per-call timeout
            api_version: Value for the Square-Version header
            base_url: Override for the API base URL
        """
        self.access_token = access_token
        self.breaker = breaker
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        self.api_version = api_version

        if base_url:
            self.base_url = base_url.rstrip("/")
        elif environment == "sandbox":
            self.base_url = SANDBOX_BASE_URL
        else:
            self.base_url = PRODUCTION_BASE_URL

    @traced("square.get_order")
    async def get_order(self, order_id: str) -> dict[str, Any]:
        """Fetch an order.

        Args:
            order_id: Square order id

        Returns:
            The Square order object

        Raises:
            CircuitBreakerError: If the Square circuit is open
            OperationTimeoutError: If the call exceeds the timeout
            httpx.HTTPError: On transport or HTTP status errors
        """
        data = await self._get(f"/v2/orders/{order_id}", "get_order")
        order: dict[str, Any] = data.get("order", {})
        return order

    @traced("square.get_payment")
    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        """Fetch a payment. Raises like get_order."""
        data = await self._get(f"/v2/payments/{payment_id}", "get_payment")
        payment: dict[str, Any] = data.get("payment", {})
        return payment

    async def get_order_tracking(self, order_id: str) -> tuple[str | None, str | None] | None:
        order = await self.get_order(order_id)
        return extract_tracking(order)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.api_version,
            "Content-Type": "application/json",
        }

    async def _get(self, path: str, operation: str) -> dict[str, Any]:
        url = f"{self.base_url}{path}"

        async def call() -> dict[str, Any]:
            started = time.perf_counter()
            try:
                async with httpx.AsyncClient() as client:
                    response = await with_timeout(
                        client.get(url, headers=self._headers()),
                        self.timeout_seconds,
                        operation_name=f"square.{operation}",
                    )
            finally:
                record_external_api_call("square", operation, time.perf_counter() - started)

            if response.is_error:
                logger.warning(f"Square {operation} returned {response.status_code}")
            response.raise_for_status()
            result: dict[str, Any] = response.json()
            return result

        return await self.breaker.execute(call)

"""FastAPI application: webhook receivers, health checks and admin endpoints.

Routes that read DynamoDB run the read in a worker thread.
"""

import asyncio
import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from storefront_webhook_service.auth.api_dependencies import get_api_key_from_header
from storefront_webhook_service.auth.api_key_validator import APIKeyValidator
from storefront_webhook_service.models.order_models import Order
from storefront_webhook_service.models.webhook_models import WebhookJob
from storefront_webhook_service.resilience.circuit_breaker import CircuitBreakerRegistry
from storefront_webhook_service.services.health_service import HealthService, HealthStatus
from storefront_webhook_service.services.order_service import OrderService
from storefront_webhook_service.services.webhook_service import WebhookOutcome, WebhookService
from storefront_webhook_service.webhooks.retry_queue import DeadLetterRetryResult, WebhookRetryQueue
from storefront_webhook_service.webhooks.security import SecurityMonitor

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str


class QueueRunResponse(BaseModel):
    """Response model for a manual retry-queue run."""

    processed: int
    succeeded: int
    rescheduled: int
    dead_lettered: int


class JobRetryResponse(BaseModel):
    job_id: str
    status: str
    message: str


class CircuitResetResponse(BaseModel):
    name: str
    state: str


def _to_response(outcome: WebhookOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status_code, content=outcome.body, headers=outcome.headers)


def create_app(
    webhook_service: WebhookService,
    order_service: OrderService,
    retry_queue: WebhookRetryQueue,
    breakers: CircuitBreakerRegistry,
    health_service: HealthService,
    security_monitor: SecurityMonitor,
    api_keys: list[str],
    version: str = "0.1.0",
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        webhook_service: Webhook pipeline
        order_service: Service for order lookups
        retry_queue: Webhook retry queue
        breakers: Circuit breaker registry
        health_service: Health report builder
        security_monitor: Suspicious activity tracker
        api_keys: Accepted admin API keys
        version: Version reported in the OpenAPI document

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Storefront Webhook Service",
        description="Square and Shippo webhook processing with retry, idempotency and circuit breaking",
        version=version,
    )

    app.state.webhook_service = webhook_service
    app.state.order_service = order_service
    app.state.retry_queue = retry_queue
    app.state.breakers = breakers
    app.state.health_service = health_service
    app.state.security_monitor = security_monitor
    app.state.api_key_validator = APIKeyValidator(api_keys=api_keys)

    def validate_api_key(x_api_key: str | None = Header(None)) -> str:
        return get_api_key_from_header(x_api_key=x_api_key, validator=app.state.api_key_validator)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Liveness check; does not touch dependencies."""
        return HealthResponse(status="healthy")

    @app.get("/health/comprehensive", tags=["Health"])
    async def comprehensive_health() -> JSONResponse:
        """Full health report. Returns 503 when the service is unhealthy."""
        report = await asyncio.to_thread(app.state.health_service.comprehensive)
        status_code = 503 if report["status"] == HealthStatus.UNHEALTHY.value else 200
        return JSONResponse(status_code=status_code, content=report)

    @app.post("/webhooks/square", tags=["Webhooks"])
    async def square_webhook(request: Request) -> JSONResponse:
        # The raw body is needed as received; the signature covers its exact bytes
        body = await request.body()
        outcome = await app.state.webhook_service.handle_square_webhook(dict(request.headers), body)
        return _to_response(outcome)

    @app.post("/webhooks/shippo", tags=["Webhooks"])
    async def shippo_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        outcome = await app.state.webhook_service.handle_shippo_webhook(dict(request.headers), body)
        return _to_response(outcome)

    @app.get("/admin/webhooks/dashboard", tags=["Webhook Admin"])
    async def webhook_dashboard(
        limit: int = 25,
        _api_key: str = Depends(validate_api_key),
    ) -> dict[str, Any]:
        """Queue statistics, recently received events and security statistics."""
        recent = await asyncio.to_thread(app.state.webhook_service.idempotency.recent, limit)
        queue_stats = await asyncio.to_thread(app.state.retry_queue.get_stats)
        return {
            "queue": queue_stats,
            "recent_events": [record.model_dump(mode="json") for record in recent],
            "security": app.state.security_monitor.get_security_stats(),
            "circuit_breakers": [stats.to_dict() for stats in app.state.breakers.all_stats()],
        }

    @app.get("/admin/webhooks/dead-letter", response_model=list[WebhookJob], tags=["Webhook Admin"])
    async def list_dead_letter(
        limit: int = 50,
        _api_key: str = Depends(validate_api_key),
    ) -> list[WebhookJob]:
        jobs: list[WebhookJob] = await asyncio.to_thread(app.state.retry_queue.list_dead_letter, limit)
        return jobs

    @app.post(
        "/admin/webhooks/jobs/{job_id}/retry",
        response_model=JobRetryResponse,
        tags=["Webhook Admin"],
    )
    async def retry_job(
        job_id: str,
        _api_key: str = Depends(validate_api_key),
    ) -> JobRetryResponse:
        """Move a dead-lettered job back to pending.

        Raises:
            HTTPException: 404 if the job does not exist, 409 if it is not dead-lettered
        """
        result = await asyncio.to_thread(app.state.retry_queue.retry_dead_letter, job_id)

        if result == DeadLetterRetryResult.NOT_FOUND:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        if result == DeadLetterRetryResult.NOT_DEAD_LETTER:
            raise HTTPException(status_code=409, detail=f"Job {job_id} is not in the dead letter queue")
        if result == DeadLetterRetryResult.STORAGE_ERROR:
            raise HTTPException(status_code=500, detail=f"Failed to requeue job {job_id}")

        logger.info(f"Dead letter job {job_id} requeued via admin API")
        return JobRetryResponse(job_id=job_id, status="pending", message="Job requeued")

    @app.post("/admin/webhooks/process-queue", response_model=QueueRunResponse, tags=["Webhook Admin"])
    async def process_queue(
        limit: int | None = None,
        _api_key: str = Depends(validate_api_key),
    ) -> QueueRunResponse:
        summary = await app.state.retry_queue.process_due(limit)
        return QueueRunResponse(**summary.to_dict())

    @app.get("/admin/circuit-breakers", tags=["Circuit Breakers"])
    async def list_circuit_breakers(
        _api_key: str = Depends(validate_api_key),
    ) -> list[dict[str, Any]]:
        return [stats.to_dict() for stats in app.state.breakers.all_stats()]

    @app.post(
        "/admin/circuit-breakers/{name}/reset",
        response_model=CircuitResetResponse,
        tags=["Circuit Breakers"],
    )
    async def reset_circuit_breaker(
        name: str,
        _api_key: str = Depends(validate_api_key),
    ) -> CircuitResetResponse:
        """Force a circuit breaker back to CLOSED.

        Raises:
            HTTPException: 404 if no breaker has that name
        """
        if not app.state.breakers.reset(name):
            raise HTTPException(status_code=404, detail=f"Circuit breaker '{name}' not found")

        logger.info(f"Circuit breaker {name} reset via admin API")
        return CircuitResetResponse(name=name, state=app.state.breakers.get(name).state.value)

    @app.get("/admin/orders/{square_order_id}", response_model=Order, tags=["Orders"])
    async def get_order(
        square_order_id: str,
        _api_key: str = Depends(validate_api_key),
    ) -> Order:
        order: Order | None = await asyncio.to_thread(app.state.order_service.get_order, square_order_id)
        if order is None:
            raise HTTPException(status_code=404, detail=f"Order {square_order_id} not found")
        return order

    return app

"""Shared dependency factory for Lambda handlers.

Dependencies are created once per Lambda container and reused across warm
invocations. Circuit breakers and rate limiters keep their state this way
for the life of the container.
"""

import logging
from typing import Any

import boto3
from fastapi import FastAPI

from storefront_webhook_service.config import DEVELOPMENT_API_KEY, ServiceSettings
from storefront_webhook_service.handlers.api_handler import create_app
from storefront_webhook_service.handlers.event_handler import RetryQueueEventHandler
from storefront_webhook_service.observability import configure_logging, setup_observability
from storefront_webhook_service.repositories.order_repository import OrderRepository
from storefront_webhook_service.repositories.webhook_repositories import (
    ProcessedWebhookRepository,
    WebhookJobRepository,
)
from storefront_webhook_service.resilience.circuit_breaker import CircuitBreakerRegistry
from storefront_webhook_service.resilience.rate_limiter import EnvironmentRateLimiter
from storefront_webhook_service.services.health_service import HealthService
from storefront_webhook_service.services.order_service import OrderService
from storefront_webhook_service.services.square_client import SquareClient
from storefront_webhook_service.services.webhook_service import WebhookService
from storefront_webhook_service.webhooks.idempotency import IdempotencyService
from storefront_webhook_service.webhooks.retry_queue import WebhookRetryQueue
from storefront_webhook_service.webhooks.security import SecurityMonitor, WebhookSecurityValidator
from storefront_webhook_service.webhooks.shippo_events import ShippoEventProcessor
from storefront_webhook_service.webhooks.signature import (
    SHIPPO_SIGNATURE_HEADER,
    ShippoSignatureValidator,
    SquareSignatureValidator,
    SquareWebhookSecrets,
)
from storefront_webhook_service.webhooks.square_events import SquareEventProcessor

logger = logging.getLogger(__name__)

# Module-level caches for Lambda container reuse
_settings: ServiceSettings | None = None
_dynamodb_resource: Any | None = None
_breakers: CircuitBreakerRegistry | None = None
_rate_limiter: EnvironmentRateLimiter | None = None
_security_monitor: SecurityMonitor | None = None
_order_repository: OrderRepository | None = None
_processed_repository: ProcessedWebhookRepository | None = None
_job_repository: WebhookJobRepository | None = None
_order_service: OrderService | None = None
_idempotency_service: IdempotencyService | None = None
_retry_queue: WebhookRetryQueue | None = None
_webhook_service: WebhookService | None = None
_health_service: HealthService | None = None
_event_handler: RetryQueueEventHandler | None = None
_fastapi_app: FastAPI | None = None


def get_settings() -> ServiceSettings:
    global _settings

    if _settings is None:
        _settings = ServiceSettings.from_env()
    return _settings


def get_dynamodb_resource() -> Any:
    """Create or retrieve cached DynamoDB resource.

    Returns:
        Boto3 DynamoDB resource configured for environment
    """
    global _dynamodb_resource

    if _dynamodb_resource is not None:
        return _dynamodb_resource

    settings = get_settings()
    if settings.dynamodb_endpoint:
        logger.info(f"Using local DynamoDB at {settings.dynamodb_endpoint}")
        _dynamodb_resource = boto3.resource(
            "dynamodb",
            endpoint_url=settings.dynamodb_endpoint,
            region_name=settings.aws_region,
        )
    else:
        logger.info(f"Using AWS DynamoDB in region {settings.aws_region}")
        _dynamodb_resource = boto3.resource("dynamodb", region_name=settings.aws_region)

    return _dynamodb_resource


def get_breaker_registry() -> CircuitBreakerRegistry:
    global _breakers

    if _breakers is None:
        settings = get_settings()
        _breakers = CircuitBreakerRegistry(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout_seconds,
        )
    return _breakers


def get_rate_limiter() -> EnvironmentRateLimiter:
    global _rate_limiter

    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = EnvironmentRateLimiter(
            capacity=settings.rate_limit_capacity,
            refill_rate=settings.rate_limit_refill_per_second,
        )
    return _rate_limiter


def get_security_monitor() -> SecurityMonitor:
    global _security_monitor

    if _security_monitor is None:
        _security_monitor = SecurityMonitor(rate_limiter=get_rate_limiter())
    return _security_monitor


def get_order_repository() -> OrderRepository:
    global _order_repository

    if _order_repository is None:
        _order_repository = OrderRepository(
            dynamodb_resource=get_dynamodb_resource(), table_name=get_settings().orders_table
        )
    return _order_repository


def get_processed_webhook_repository() -> ProcessedWebhookRepository:
    global _processed_repository

    if _processed_repository is None:
        _processed_repository = ProcessedWebhookRepository(
            dynamodb_resource=get_dynamodb_resource(),
            table_name=get_settings().webhook_events_table,
        )
    return _processed_repository


def get_job_repository() -> WebhookJobRepository:
    global _job_repository

    if _job_repository is None:
        _job_repository = WebhookJobRepository(
            dynamodb_resource=get_dynamodb_resource(),
            table_name=get_settings().webhook_jobs_table,
        )
    return _job_repository


def get_order_service() -> OrderService:
    """Create or retrieve cached order service.

    The Square client is only configured when SQUARE_ACCESS_TOKEN is set;
    without it shipping orders keep their stored tracking details.
    """
    global _order_service

    if _order_service is not None:
        return _order_service

    settings = get_settings()
    square_client = None
    if settings.square_access_token:
        square_client = SquareClient(
            access_token=settings.square_access_token,
            breaker=get_breaker_registry().get("square"),
            environment=settings.square_environment,
        )
    else:
        logger.warning("SQUARE_ACCESS_TOKEN not configured - tracking details will not be fetched")

    _order_service = OrderService(order_repository=get_order_repository(), square_client=square_client)
    return _order_service


def get_idempotency_service() -> IdempotencyService:
    global _idempotency_service

    if _idempotency_service is None:
        _idempotency_service = IdempotencyService(get_processed_webhook_repository())
    return _idempotency_service


def get_retry_queue() -> WebhookRetryQueue:
    global _retry_queue

    if _retry_queue is None:
        _retry_queue = WebhookRetryQueue(
            job_repository=get_job_repository(),
            idempotency=get_idempotency_service(),
        )
    return _retry_queue


def get_webhook_service() -> WebhookService:
    """Create or retrieve cached webhook service.

    Returns:
        Configured WebhookService instance
    """
    global _webhook_service

    if _webhook_service is not None:
        return _webhook_service

    settings = get_settings()
    rate_limiter = get_rate_limiter()
    order_service = get_order_service()

    _webhook_service = WebhookService(
        square_validator=SquareSignatureValidator(
            secrets=SquareWebhookSecrets(
                production=settings.square_webhook_secret,
                sandbox=settings.square_webhook_secret_sandbox,
            ),
            notification_url=settings.square_notification_url,
            max_event_age_seconds=settings.max_event_age_seconds,
        ),
        shippo_validator=ShippoSignatureValidator(settings.shippo_webhook_secret),
        square_security=WebhookSecurityValidator(rate_limiter),
        shippo_security=WebhookSecurityValidator(
            rate_limiter,
            signature_headers=(SHIPPO_SIGNATURE_HEADER,),
            expected_user_agent_markers=("shippo", "webhook"),
        ),
        security_monitor=get_security_monitor(),
        idempotency=get_idempotency_service(),
        retry_queue=get_retry_queue(),
        square_processor=SquareEventProcessor(order_service),
        shippo_processor=ShippoEventProcessor(order_service),
    )

    logger.info("Webhook service initialized")
    return _webhook_service


def get_health_service() -> HealthService:
    global _health_service

    if _health_service is None:
        _health_service = HealthService(
            repositories=[
                get_order_repository(),
                get_processed_webhook_repository(),
                get_job_repository(),
            ],
            breakers=get_breaker_registry(),
            retry_queue=get_retry_queue(),
            rate_limiter=get_rate_limiter(),
            version=get_settings().version,
        )
    return _health_service


def get_event_handler() -> RetryQueueEventHandler:
    """Create or retrieve cached event handler.

    The webhook service is built first so retry processors are registered
    on the queue before any tick runs.

    Returns:
        Configured RetryQueueEventHandler instance
    """
    global _event_handler

    if _event_handler is not None:
        return _event_handler

    get_webhook_service()
    _event_handler = RetryQueueEventHandler(
        retry_queue=get_retry_queue(),
        rate_limiter=get_rate_limiter(),
        security_monitor=get_security_monitor(),
    )

    logger.info("Event handler initialized")
    return _event_handler


def get_fastapi_app() -> FastAPI:
    """Create or retrieve cached FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    global _fastapi_app

    if _fastapi_app is not None:
        return _fastapi_app

    settings = get_settings()
    api_keys = settings.admin_api_keys
    if not api_keys:
        logger.warning("No ADMIN_API_KEY configured - using development key")
        api_keys = [DEVELOPMENT_API_KEY]

    _fastapi_app = create_app(
        webhook_service=get_webhook_service(),
        order_service=get_order_service(),
        retry_queue=get_retry_queue(),
        breakers=get_breaker_registry(),
        health_service=get_health_service(),
        security_monitor=get_security_monitor(),
        api_keys=api_keys,
        version=settings.version,
    )
    setup_observability(_fastapi_app)

    logger.info("FastAPI application initialized")
    return _fastapi_app


def initialize_lambda_environment() -> None:
    """Initialize Lambda environment with logging.

    Should be called once during Lambda cold start.
    """
    configure_logging(get_settings().log_level)

    logger.info("Lambda environment initialized")

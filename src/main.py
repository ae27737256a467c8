"""Main application entry point for the storefront webhook service.

Provides the FastAPI application for running the service locally with
uvicorn. Wiring is shared with the Lambda entry point through
lambda_dependencies, so both run the same components.
"""

import logging
import os

from fastapi import FastAPI

import lambda_dependencies
from storefront_webhook_service.observability import configure_logging

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    """Create and configure the FastAPI application with all dependencies.

    This factory function:
    1. Reads settings from the environment
    2. Configures logging
    3. Builds repositories, resilience primitives and services
    4. Creates the FastAPI app with webhook, health and admin endpoints
    5. Sets up observability

    Returns:
        Configured FastAPI application instance
    """
    settings = lambda_dependencies.get_settings()
    configure_logging(settings.log_level)

    logger.info("Initializing storefront webhook service...")
    logger.info(
        f"Tables - orders: {settings.orders_table}, events: {settings.webhook_events_table}, "
        f"jobs: {settings.webhook_jobs_table}"
    )

    if not settings.square_webhook_secret:
        logger.warning("SQUARE_WEBHOOK_SECRET not configured - Square webhooks will be rejected")
    if not settings.shippo_webhook_secret:
        logger.warning("SHIPPO_WEBHOOK_SECRET not configured - Shippo webhooks will be rejected")

    app = lambda_dependencies.get_fastapi_app()

    logger.info("Storefront webhook service initialized successfully")
    return app


# Create the FastAPI application instance (only when not in test mode)
# This prevents the app from being created during test collection
if os.getenv("ENVIRONMENT") != "test":  # noqa: SIM108
    app = create_application()
else:
    # Create a placeholder app for test imports
    app = FastAPI()


if __name__ == "__main__":
    """Run the application with uvicorn when executed directly."""
    import uvicorn

    settings = lambda_dependencies.get_settings()

    logger.info(f"Starting development server on {settings.host}:{settings.port}")
    logger.info(f"API documentation available at http://{settings.host}:{settings.port}/docs")

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower(),
    )

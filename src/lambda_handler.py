"""AWS Lambda handler for both API Gateway and EventBridge events.

A single Lambda entry point handles:
1. API Gateway requests (webhooks, health and admin routes via Mangum)
2. EventBridge RetryQueueTick events that drain the webhook retry queue
"""

import asyncio
import logging
import os
from typing import Any

from mangum import Mangum

from lambda_dependencies import get_event_handler, get_fastapi_app, initialize_lambda_environment
from storefront_webhook_service.handlers.event_handler import (
    EVENT_SOURCE,
    RETRY_QUEUE_TICK,
    parse_tick_event,
)

# Initialize Lambda environment during cold start (skip in test mode)
if os.getenv("ENVIRONMENT") != "test":
    initialize_lambda_environment()

logger = logging.getLogger(__name__)

# Create FastAPI app and Mangum adapter (cached for warm starts, skip in test mode)
if os.getenv("ENVIRONMENT") != "test":
    app = get_fastapi_app()
    mangum_handler = Mangum(app, lifespan="off")
else:
    app = None  # type: ignore
    mangum_handler = None  # type: ignore


def is_eventbridge_event(event: dict[str, Any]) -> bool:
    """Determine if the event is from EventBridge.

    Args:
        event: The Lambda event payload

    Returns:
        True if this is an EventBridge event, False otherwise
    """
    return "source" in event and "detail-type" in event


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Route a Lambda invocation to the tick handler or the FastAPI app.

    Args:
        event: The Lambda event payload (EventBridge or API Gateway)
        context: The Lambda context object

    Returns:
        Response dict with statusCode and body
    """
    logger.info(f"Received Lambda invocation, request_id: {getattr(context, 'aws_request_id', 'unknown')}")

    try:
        if is_eventbridge_event(event):
            logger.info(
                f"Processing EventBridge event: {event.get('source')} - {event.get('detail-type')}"
            )
            return handle_eventbridge_event(event)

        result: dict[str, Any] = mangum_handler(event, context)
        return result

    except Exception as e:
        logger.exception(f"Unhandled error in Lambda handler: {e}")
        return {
            "statusCode": 500,
            "body": "Internal server error",
        }


def handle_eventbridge_event(event: dict[str, Any]) -> dict[str, Any]:
    """Handle a RetryQueueTick event.

    Args:
        event: The EventBridge event payload

    Returns:
        Response dict with statusCode and body
    """
    source = event.get("source", "")
    detail_type = event.get("detail-type", "")

    if source != EVENT_SOURCE or detail_type != RETRY_QUEUE_TICK:
        logger.warning(f"Unsupported event type: {source}/{detail_type}")
        return {
            "statusCode": 400,
            "body": f"Unsupported event type: {source}/{detail_type}",
        }

    tick = parse_tick_event(event)
    if tick is None:
        return {"statusCode": 400, "body": "Invalid RetryQueueTick detail"}

    try:
        summary = asyncio.run(get_event_handler().handle_tick(tick))
    except Exception as e:
        logger.exception(f"Error processing RetryQueueTick: {e}")
        return {
            "statusCode": 500,
            "body": f"Error processing event: {e}",
        }

    return {
        "statusCode": 200,
        "body": (
            f"Processed {summary.processed} jobs: {summary.succeeded} succeeded, "
            f"{summary.rescheduled} rescheduled, {summary.dead_lettered} dead-lettered"
        ),
    }

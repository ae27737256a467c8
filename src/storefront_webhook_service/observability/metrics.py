"""Custom metrics for the storefront webhook service."""

from opentelemetry import metrics

meter = metrics.get_meter("storefront-webhook-svc")

webhook_received_counter = meter.create_counter(
    name="webhook_received_total",
    description="Webhooks received by source",
    unit="1",
)

webhook_rejected_counter = meter.create_counter(
    name="webhook_rejected_total",
    description="Webhooks rejected by source and reason",
    unit="1",
)

webhook_duplicate_counter = meter.create_counter(
    name="webhook_duplicate_total",
    description="Webhook deliveries acknowledged as duplicates",
    unit="1",
)

webhook_processing_histogram = meter.create_histogram(
    name="webhook_processing_duration_seconds",
    description="Time spent applying a webhook event",
    unit="s",
)

retry_queue_depth = meter.create_up_down_counter(
    name="webhook_retry_queue_depth",
    description="Jobs currently waiting in the webhook retry queue",
    unit="1",
)

dead_letter_counter = meter.create_counter(
    name="webhook_dead_letter_total",
    description="Webhook jobs moved to the dead letter state",
    unit="1",
)

circuit_transition_counter = meter.create_counter(
    name="circuit_breaker_transitions_total",
    description="Circuit breaker state transitions by service",
    unit="1",
)

rate_limit_rejection_counter = meter.create_counter(
    name="rate_limit_rejections_total",
    description="Requests rejected by the token bucket rate limiter",
    unit="1",
)

external_api_response_time = meter.create_histogram(
    name="external_api_response_time_seconds",
    description="Response time for third-party API calls",
    unit="s",
)


def record_webhook_received(source: str, event_type: str) -> None:
    """Record an incoming webhook delivery.

    Args:
        source: Webhook source ("square" or "shippo")
        event_type: Provider event type (e.g., "payment.updated")
    """
    webhook_received_counter.add(1, {"source": source, "event_type": event_type})


def record_webhook_rejected(source: str, reason: str) -> None:
    """Record a rejected webhook.

    Args:
        source: Webhook source
        reason: Rejection reason (e.g., "INVALID_SIGNATURE", "rate_limited")
    """
    webhook_rejected_counter.add(1, {"source": source, "reason": reason})


def record_webhook_duplicate(source: str) -> None:
    webhook_duplicate_counter.add(1, {"source": source})


def record_webhook_processing(source: str, event_type: str, duration_seconds: float, success: bool) -> None:
    """Record how long applying a webhook event took.

    Args:
        source: Webhook source
        event_type: Provider event type
        duration_seconds: Duration in seconds
        success: Whether processing succeeded
    """
    webhook_processing_histogram.record(
        duration_seconds,
        {"source": source, "event_type": event_type, "success": str(success).lower()},
    )


def record_retry_queue_change(change: int) -> None:
    """Record a change in retry queue depth.

    Args:
        change: Positive when jobs are queued, negative when they leave the queue
    """
    retry_queue_depth.add(change)


def record_dead_letter(source: str, event_type: str) -> None:
    dead_letter_counter.add(1, {"source": source, "event_type": event_type})


def record_circuit_transition(service_name: str, from_state: str, to_state: str) -> None:
    """Record a circuit breaker state transition.

    Args:
        service_name: Service guarded by the breaker
        from_state: Previous state value
        to_state: New state value
    """
    circuit_transition_counter.add(
        1, {"service": service_name, "from_state": from_state, "to_state": to_state}
    )


def record_rate_limit_rejection(scope: str) -> None:
    rate_limit_rejection_counter.add(1, {"scope": scope})


def record_external_api_call(service: str, operation: str, duration_seconds: float) -> None:
    """Record a third-party API call.

    Args:
        service: The API that was called (e.g., "square")
        operation: The operation performed (e.g., "get_order")
        duration_seconds: Duration in seconds
    """
    external_api_response_time.record(duration_seconds, {"service": service, "operation": operation})

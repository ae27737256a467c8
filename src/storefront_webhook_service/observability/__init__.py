"""Tracing, metrics and structured logging for the webhook service."""

from storefront_webhook_service.observability.config import configure_logging, setup_observability
from storefront_webhook_service.observability.decorators import traced
from storefront_webhook_service.observability.metrics import (
    record_circuit_transition,
    record_dead_letter,
    record_webhook_processing,
)

__all__ = [
    "configure_logging",
    "record_circuit_transition",
    "record_dead_letter",
    "record_webhook_processing",
    "setup_observability",
    "traced",
]

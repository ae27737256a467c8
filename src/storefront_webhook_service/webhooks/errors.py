"""Exceptions raised while applying webhook events."""


class WebhookProcessingError(Exception):
    """Base class for failures while applying a verified webhook event."""

    def __init__(self, message: str, event_id: str | None = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class TransientWebhookError(WebhookProcessingError):
    """The event could not be applied yet but may succeed on retry.

    Raised for out-of-order deliveries (an update before the order exists)
    and storage writes that failed after the storage retry budget.
    """


class PermanentWebhookError(WebhookProcessingError):
    """The event can never be applied; retrying is pointless."""

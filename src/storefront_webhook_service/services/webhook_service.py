"""Webhook pipeline orchestration.

A delivery passes request security checks, signature validation and the
idempotency claim before its processor runs. Failures that may succeed later
are handed to the retry queue and acknowledged with 202, so providers do not
redeliver events we already hold.

Idempotency and queue storage calls run in worker threads, off the event loop.
"""

import asyncio
import hashlib
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from storefront_webhook_service.models.webhook_models import (
    ShippoWebhookPayload,
    SquareWebhookPayload,
    WebhookJob,
    WebhookSource,
)
from storefront_webhook_service.observability.decorators import traced
from storefront_webhook_service.observability.metrics import (
    record_webhook_duplicate,
    record_webhook_processing,
    record_webhook_received,
    record_webhook_rejected,
)
from storefront_webhook_service.webhooks.idempotency import IdempotencyService
from storefront_webhook_service.webhooks.retry_queue import (
    QUEUED_LEASE_SECONDS,
    JobProcessor,
    WebhookRetryQueue,
)
from storefront_webhook_service.webhooks.security import (
    SecurityCheckResult,
    SecurityMonitor,
    Severity,
    WebhookSecurityValidator,
)
from storefront_webhook_service.webhooks.shippo_events import ShippoEventProcessor
from storefront_webhook_service.webhooks.signature import (
    ShippoSignatureValidator,
    SquareSignatureValidator,
    WebhookErrorType,
    WebhookValidationError,
    detect_environment,
)
from storefront_webhook_service.webhooks.square_events import SquareEventProcessor

logger = logging.getLogger(__name__)

_UNAUTHORIZED_ERRORS = {
    WebhookErrorType.MISSING_SIGNATURE,
    WebhookErrorType.MISSING_SECRET,
    WebhookErrorType.INVALID_SIGNATURE,
}


@dataclass
class WebhookOutcome:
    """HTTP response for a webhook delivery."""

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def status_for_validation_error(error: WebhookValidationError) -> int:
    return 401 if error.type in _UNAUTHORIZED_ERRORS else 400


def shippo_event_id(body: bytes) -> str:
    """Shippo sends no event id, so identical bodies count as one event."""
    return f"shippo_{hashlib.sha256(body).hexdigest()[:32]}"


class QueuedWebhookProcessor(JobProcessor):
    """Runs a webhook processor for retry-queue jobs and closes the idempotency record."""

    def __init__(
        self,
        apply: Callable[[dict[str, Any]], Awaitable[None]],
        idempotency: IdempotencyService,
    ) -> None:
        self._apply = apply
        self.idempotency = idempotency

    async def process(self, job: WebhookJob) -> None:
        await self._apply(job.payload)
        await asyncio.to_thread(self.idempotency.complete, job.event_id)


class WebhookService:
    """Entry point for Square and Shippo webhook deliveries."""

    def __init__(
        self,
        square_validator: SquareSignatureValidator,
        shippo_validator: ShippoSignatureValidator,
        square_security: WebhookSecurityValidator,
        shippo_security: WebhookSecurityValidator,
        security_monitor: SecurityMonitor,
        idempotency: IdempotencyService,
        retry_queue: WebhookRetryQueue,
        square_processor: SquareEventProcessor,
        shippo_processor: ShippoEventProcessor,
    ) -> None:
        self.square_validator = square_validator
        self.shippo_validator = shippo_validator
        self.square_security = square_security
        self.shippo_security = shippo_security
        self.security_monitor = security_monitor
        self.idempotency = idempotency
        self.retry_queue = retry_queue
        self.square_processor = square_processor
        self.shippo_processor = shippo_processor

        retry_queue.register_processor(
            WebhookSource.SQUARE,
            QueuedWebhookProcessor(
                lambda payload: square_processor.process(SquareWebhookPayload.model_validate(payload)),
                idempotency,
            ),
        )
        retry_queue.register_processor(
            WebhookSource.SHIPPO,
            QueuedWebhookProcessor(
                lambda payload: shippo_processor.process(ShippoWebhookPayload.model_validate(payload)),
                idempotency,
            ),
        )

    @traced("webhook.square")
    async def handle_square_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookOutcome:
        """Handle a Square webhook delivery.

        Args:
            headers: Request headers
            body: Raw request body

        Returns:
            WebhookOutcome to send back to Square
        """
        source = WebhookSource.SQUARE
        environment = detect_environment(headers)

        security = self.square_security.validate(headers, environment.value)
        if not security.valid:
            return self._reject_security(source, security)

        result = self.square_validator.validate(headers, body)
        if not result.valid or result.payload is None:
            error = result.error or WebhookValidationError(WebhookErrorType.INVALID_PAYLOAD)
            return self._reject_validation(source, security.client_ip, error)

        payload = result.payload
        logger.info(
            f"Verified Square {payload.type} event {payload.event_id} "
            f"({environment.value}, {result.metadata.webhook_id if result.metadata else 'n/a'})"
        )
        return await self._process(
            source,
            payload.event_id,
            payload.type,
            payload.model_dump(mode="json"),
            lambda: self.square_processor.process(payload),
        )

    @traced("webhook.shippo")
    async def handle_shippo_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookOutcome:
        """Handle a Shippo webhook delivery.

        Args:
            headers: Request headers
            body: Raw request body

        Returns:
            WebhookOutcome to send back to Shippo
        """
        source = WebhookSource.SHIPPO

        security = self.shippo_security.validate(headers, "production")
        if not security.valid:
            return self._reject_security(source, security)

        result = self.shippo_validator.validate(headers, body)
        if not result.valid or result.payload is None:
            error = result.error or WebhookValidationError(WebhookErrorType.INVALID_PAYLOAD)
            return self._reject_validation(source, security.client_ip, error)

        payload = result.payload
        return await self._process(
            source,
            shippo_event_id(body),
            payload.event,
            payload.model_dump(mode="json"),
            lambda: self.shippo_processor.process(payload),
        )

    async def _process(
        self,
        source: WebhookSource,
        event_id: str,
        event_type: str,
        raw_payload: dict[str, Any],
        run: Callable[[], Awaitable[None]],
    ) -> WebhookOutcome:
        record_webhook_received(source.value, event_type)

        check = await asyncio.to_thread(self.idempotency.begin, event_id, source, event_type)
        if check.storage_error:
            return WebhookOutcome(500, {"error": "Idempotency store unavailable", "event_id": event_id})
        if check.is_duplicate:
            record_webhook_duplicate(source.value)
            return WebhookOutcome(200, {"status": "duplicate", "event_id": event_id})

        started = time.perf_counter()
        try:
            await run()
        except Exception as e:
            record_webhook_processing(source.value, event_type, time.perf_counter() - started, False)
            return await asyncio.to_thread(
                self._handle_processing_error, source, event_id, event_type, raw_payload, e
            )

        record_webhook_processing(source.value, event_type, time.perf_counter() - started, True)
        await asyncio.to_thread(self.idempotency.complete, event_id)
        return WebhookOutcome(200, {"status": "processed", "event_id": event_id})

    def _handle_processing_error(
        self,
        source: WebhookSource,
        event_id: str,
        event_type: str,
        raw_payload: dict[str, Any],
        error: Exception,
    ) -> WebhookOutcome:
        message = str(error) or type(error).__name__

        if self.retry_queue.strategy.should_retry(error):
            logger.warning(f"{source.value} event {event_id} failed transiently, queueing: {message}")
            job = self.retry_queue.enqueue(source, event_id, event_type, raw_payload, message)
            if job is not None:
                self.idempotency.extend_lease(event_id, QUEUED_LEASE_SECONDS)
                return WebhookOutcome(202, {"status": "queued", "event_id": event_id, "job_id": job.job_id})

            # Queue unavailable: let the provider redeliver
            self.idempotency.fail(event_id, message)
            return WebhookOutcome(500, {"error": "Processing failed", "event_id": event_id})

        logger.error(f"{source.value} event {event_id} failed permanently: {message}", exc_info=error)
        self.idempotency.fail(event_id, message)
        return WebhookOutcome(500, {"error": "Processing failed", "event_id": event_id})

    def _reject_security(self, source: WebhookSource, security: SecurityCheckResult) -> WebhookOutcome:
        reason = {429: "rate_limited", 413: "body_too_large"}.get(security.status_code, "missing_signature")
        record_webhook_rejected(source.value, reason)
        severity = Severity.MEDIUM if security.status_code == 429 else Severity.LOW
        self.security_monitor.report_suspicious_activity(
            security.client_ip, f"{source.value} webhook rejected: {security.error}", severity
        )
        return WebhookOutcome(
            security.status_code,
            {"error": security.error or "Security validation failed"},
            security.response_headers(),
        )

    def _reject_validation(
        self, source: WebhookSource, client_ip: str, error: WebhookValidationError
    ) -> WebhookOutcome:
        record_webhook_rejected(source.value, error.type.value.lower())
        severity = Severity.MEDIUM if error.type == WebhookErrorType.INVALID_SIGNATURE else Severity.LOW
        self.security_monitor.report_suspicious_activity(
            client_ip,
            f"{source.value} webhook failed validation: {error.type.value}",
            severity,
            {"details": error.details},
        )
        body: dict[str, Any] = {"error": error.type.value}
        if error.details:
            body["details"] = error.details
        return WebhookOutcome(status_for_validation_error(error), body)

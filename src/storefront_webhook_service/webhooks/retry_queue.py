"""Durable retry queue for webhook events whose processing failed transiently.

Jobs live in DynamoDB so they survive Lambda invocations. A scheduled tick
calls ``process_due`` to run every pending job whose backoff has elapsed.
Jobs that exhaust their retries, or fail permanently, move to the dead letter
state and wait for an operator.

Overlapping runs (two ticks, or a tick and a manual run) are safe: a job is
claimed with a conditional write before it runs, and a run that loses the
claim skips it. Storage calls run in worker threads so DynamoDB retry
backoff never blocks the event loop.
"""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import httpx

from storefront_webhook_service.models.webhook_models import JobStatus, WebhookJob, WebhookSource
from storefront_webhook_service.observability.decorators import traced
from storefront_webhook_service.observability.metrics import (
    record_dead_letter,
    record_retry_queue_change,
)
from storefront_webhook_service.repositories.webhook_repositories import WebhookJobRepository
from storefront_webhook_service.resilience.circuit_breaker import CircuitBreakerError
from storefront_webhook_service.resilience.retry import is_transient_error
from storefront_webhook_service.resilience.timeouts import OperationTimeoutError
from storefront_webhook_service.webhooks.errors import (
    PermanentWebhookError,
    TransientWebhookError,
)
from storefront_webhook_service.webhooks.idempotency import IdempotencyService

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {408, 429}

# Lease held on the idempotency record while the queue owns an event
QUEUED_LEASE_SECONDS = 24 * 60 * 60


class ExponentialBackoffStrategy:
    """Capped exponential backoff with additive jitter."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter_max: float = 1.0,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_max = jitter_max
        self._random = random_fn

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait before the attempt following ``attempt`` failures."""
        capped = min(self.base_delay * (2**attempt), self.max_delay)
        return capped + self._random() * self.jitter_max

    def should_retry(self, error: BaseException) -> bool:
        if isinstance(error, PermanentWebhookError):
            return False
        if isinstance(error, TransientWebhookError | CircuitBreakerError | OperationTimeoutError):
            return True
        if isinstance(error, httpx.TransportError):
            return True
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            return status >= 500 or status in _RETRYABLE_STATUS_CODES
        return is_transient_error(error)


class JobProcessor(ABC):
    """Applies a queued webhook job.

    ``process`` raises on failure; the queue classifies the exception to
    decide between rescheduling and dead-lettering.
    """

    @abstractmethod
    async def process(self, job: WebhookJob) -> None:
        pass


@dataclass
class QueueRunSummary:
    processed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DeadLetterRetryResult(str, Enum):
    REQUEUED = "requeued"
    NOT_FOUND = "not_found"
    NOT_DEAD_LETTER = "not_dead_letter"
    STORAGE_ERROR = "storage_error"


class _JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RESCHEDULED = "rescheduled"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"


class WebhookRetryQueue:
    """Schedules and runs webhook retry jobs."""

    def __init__(
        self,
        job_repository: WebhookJobRepository,
        idempotency: IdempotencyService | None = None,
        strategy: ExponentialBackoffStrategy | None = None,
        max_concurrent_jobs: int = 5,
        default_max_retries: int = 5,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the queue.

        Args:
            job_repository: Repository persisting jobs
            idempotency: Idempotency service whose records follow queued jobs;
                dead-lettered events are marked failed and requeued events
                get their lease back
            strategy: Backoff strategy (defaults to 1s base, 30s cap, 1s jitter)
            max_concurrent_jobs: Jobs processed at once during a run
            default_max_retries: Failed attempts allowed per job
            clock: Returns the current aware datetime
        """
        self.job_repository = job_repository
        self.idempotency = idempotency
        self.strategy = strategy or ExponentialBackoffStrategy()
        self.max_concurrent_jobs = max_concurrent_jobs
        self.default_max_retries = default_max_retries
        self._clock = clock
        self._processors: dict[WebhookSource, JobProcessor] = {}

    def register_processor(self, source: WebhookSource, processor: JobProcessor) -> None:
        self._processors[source] = processor
        logger.info(f"Registered retry processor for {source.value} webhooks")

    def enqueue(
        self,
        source: WebhookSource,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        error: str | None = None,
    ) -> WebhookJob | None:
        """Persist a pending job scheduled after the first backoff delay.

        Args:
            source: Webhook source
            event_id: Provider event id
            event_type: Provider event type
            payload: Parsed webhook body
            error: Error from the failed inline attempt

        Returns:
            The saved WebhookJob, or None if it could not be stored
        """
        now = self._clock()
        job = WebhookJob(
            job_id=f"job_{uuid.uuid4().hex}",
            source=source,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            max_retries=self.default_max_retries,
            created_at=now,
            next_attempt_at=now + timedelta(seconds=self.strategy.calculate_delay(0)),
            last_error=error,
        )

        if not self.job_repository.save(job):
            logger.error(f"Failed to enqueue {source.value} event {event_id} for retry")
            return None

        record_retry_queue_change(1)
        logger.info(f"Queued {source.value} event {event_id} for retry as {job.job_id}")
        return job

    @traced("retry_queue.process_due")
    async def process_due(self, limit: int | None = None) -> QueueRunSummary:
        """Run pending jobs whose next attempt time has passed, oldest first.

        Jobs claimed by an overlapping run are skipped and left out of the
        summary.

        Args:
            limit: Maximum number of jobs to run

        Returns:
            QueueRunSummary with counts for this run
        """
        now = self._clock()
        pending = await asyncio.to_thread(self.job_repository.list_by_status, JobStatus.PENDING)
        due = [job for job in pending if job.is_due(now)]
        due.sort(key=lambda job: job.created_at)
        if limit is not None:
            due = due[:limit]

        summary = QueueRunSummary()
        if not due:
            return summary

        semaphore = asyncio.Semaphore(self.max_concurrent_jobs)

        async def run(job: WebhookJob) -> _JobOutcome:
            async with semaphore:
                return await self._process_job(job)

        outcomes = await asyncio.gather(*(run(job) for job in due))

        summary.succeeded = outcomes.count(_JobOutcome.SUCCEEDED)
        summary.rescheduled = outcomes.count(_JobOutcome.RESCHEDULED)
        summary.dead_lettered = outcomes.count(_JobOutcome.DEAD_LETTERED)
        summary.processed = summary.succeeded + summary.rescheduled + summary.dead_lettered
        logger.info(f"Retry queue run finished: {summary.to_dict()}")
        return summary

    def get_job(self, job_id: str) -> WebhookJob | None:
        return self.job_repository.get(job_id)

    def list_dead_letter(self, limit: int | None = None) -> list[WebhookJob]:
        return self.job_repository.list_by_status(JobStatus.DEAD_LETTER, limit)

    def retry_dead_letter(self, job_id: str) -> DeadLetterRetryResult:
        """Reset a dead-lettered job to pending with a fresh retry budget.

        The event's idempotency record gets the queued lease back so a
        provider redelivery cannot claim it alongside the requeued job.

        Args:
            job_id: Job identifier

        Returns:
            DeadLetterRetryResult describing what happened
        """
        job = self.job_repository.get(job_id)
        if job is None:
            return DeadLetterRetryResult.NOT_FOUND
        if job.status != JobStatus.DEAD_LETTER:
            return DeadLetterRetryResult.NOT_DEAD_LETTER

        job.status = JobStatus.PENDING
        job.retries = 0
        job.next_attempt_at = self._clock()
        if not self.job_repository.save(job, expected_status=JobStatus.DEAD_LETTER):
            return DeadLetterRetryResult.STORAGE_ERROR

        if self.idempotency is not None:
            self.idempotency.extend_lease(job.event_id, QUEUED_LEASE_SECONDS)
        record_retry_queue_change(1)
        logger.info(f"Dead letter job {job_id} requeued by operator")
        return DeadLetterRetryResult.REQUEUED

    def get_stats(self) -> dict[str, int]:
        return {status.value: self.job_repository.count_by_status(status) for status in JobStatus}

    async def _process_job(self, job: WebhookJob) -> _JobOutcome:
        if not await asyncio.to_thread(self.job_repository.claim, job):
            logger.info(f"Retry job {job.job_id} claimed by another run, skipping")
            return _JobOutcome.SKIPPED

        job.status = JobStatus.PROCESSING
        logger.info(f"Processing retry job {job.job_id} (attempt {job.retries + 1})")

        processor = self._processors.get(job.source)
        if processor is None:
            job.last_error = f"No processor registered for {job.source.value} webhooks"
            return await self._dead_letter(job)

        try:
            await processor.process(job)
        except Exception as e:
            return await self._handle_failure(job, e)

        job.status = JobStatus.COMPLETED
        job.last_error = None
        await self._save_claimed(job)
        record_retry_queue_change(-1)
        logger.info(f"Retry job {job.job_id} completed")
        return _JobOutcome.SUCCEEDED

    async def _handle_failure(self, job: WebhookJob, error: Exception) -> _JobOutcome:
        job.retries += 1
        job.last_error = str(error)[:1000] or type(error).__name__
        logger.warning(f"Retry job {job.job_id} failed (attempt {job.retries}): {job.last_error}")

        if job.retries < job.max_retries and self.strategy.should_retry(error):
            delay = self.strategy.calculate_delay(job.retries)
            job.status = JobStatus.PENDING
            job.next_attempt_at = self._clock() + timedelta(seconds=delay)
            await self._save_claimed(job)
            logger.info(f"Retry job {job.job_id} rescheduled in {delay:.1f}s")
            return _JobOutcome.RESCHEDULED

        return await self._dead_letter(job)

    async def _dead_letter(self, job: WebhookJob) -> _JobOutcome:
        job.status = JobStatus.DEAD_LETTER
        job.next_attempt_at = None
        await self._save_claimed(job)
        record_retry_queue_change(-1)
        record_dead_letter(job.source.value, job.event_type)
        logger.error(
            f"Retry job {job.job_id} moved to dead letter after {job.retries} failures: "
            f"{job.last_error}"
        )
        # Release the queued lease so a provider redelivery may try again
        if self.idempotency is not None:
            await asyncio.to_thread(
                self.idempotency.fail, job.event_id, job.last_error or "Moved to dead letter"
            )
        return _JobOutcome.DEAD_LETTERED

    async def _save_claimed(self, job: WebhookJob) -> None:
        saved = await asyncio.to_thread(
            self.job_repository.save, job, expected_status=JobStatus.PROCESSING
        )
        if not saved:
            logger.error(f"Could not record {job.status.value} state for retry job {job.job_id}")

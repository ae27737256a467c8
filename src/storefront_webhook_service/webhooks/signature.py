"""HMAC signature validation for Square and Shippo webhooks.

Square signs ``notification_url + raw_body`` with the subscription's
signature key and sends the base64 digest in ``x-square-hmacsha256-signature``
(or the legacy SHA-1 digest in ``x-square-signature``). Shippo signs the raw
body alone with HMAC-SHA256 and sends the hex digest in ``x-shippo-signature``.

Validation never raises. Every outcome is reported through a result object so
the webhook pipeline can map it onto an HTTP response.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import ValidationError

from storefront_webhook_service.models.webhook_models import (
    ShippoWebhookPayload,
    SquareWebhookPayload,
)

logger = logging.getLogger(__name__)

SQUARE_SIGNATURE_HEADER_SHA256 = "x-square-hmacsha256-signature"
SQUARE_SIGNATURE_HEADER_SHA1 = "x-square-signature"
SQUARE_ENVIRONMENT_HEADER = "square-environment"
SHIPPO_SIGNATURE_HEADER = "x-shippo-signature"

DEFAULT_MAX_EVENT_AGE_SECONDS = 300
DEFAULT_MAX_FUTURE_SKEW_SECONDS = 60


class SquareEnvironment(str, Enum):
    PRODUCTION = "production"
    SANDBOX = "sandbox"


class SignatureAlgorithm(str, Enum):
    SHA256 = "sha256"
    SHA1 = "sha1"


class WebhookErrorType(str, Enum):
    """Reasons a webhook fails validation."""

    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    MISSING_SECRET = "MISSING_SECRET"
    MALFORMED_BODY = "MALFORMED_BODY"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    EVENT_TOO_OLD = "EVENT_TOO_OLD"
    EVENT_IN_FUTURE = "EVENT_IN_FUTURE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass
class WebhookValidationError:
    type: WebhookErrorType
    details: str | None = None


@dataclass
class WebhookValidationMetadata:
    algorithm: SignatureAlgorithm
    secret_used: str
    processing_time_ms: float
    webhook_id: str


@dataclass
class SquareValidationResult:
    """Result of validating a Square webhook."""

    valid: bool
    environment: SquareEnvironment
    error: WebhookValidationError | None = None
    metadata: WebhookValidationMetadata | None = None
    payload: SquareWebhookPayload | None = None


@dataclass
class ShippoValidationResult:
    """Result of validating a Shippo webhook."""

    valid: bool
    error: WebhookValidationError | None = None
    payload: ShippoWebhookPayload | None = None
    processing_time_ms: float = 0.0


@dataclass
class SquareWebhookSecrets:
    """Square signature keys per environment, whitespace-stripped."""

    production: str | None = None
    sandbox: str | None = None

    def __post_init__(self) -> None:
        # Secrets pasted into env files often carry a trailing newline
        self.production = (self.production or "").strip() or None
        self.sandbox = (self.sandbox or "").strip() or None

    def for_environment(self, environment: SquareEnvironment) -> str | None:
        """Sandbox falls back to the production key; production never uses the sandbox key."""
        if environment == SquareEnvironment.SANDBOX:
            return self.sandbox or self.production
        return self.production


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def detect_environment(headers: Mapping[str, str]) -> SquareEnvironment:
    """Determine the Square environment from the request headers."""
    value = _lower_headers(headers).get(SQUARE_ENVIRONMENT_HEADER, "")
    return SquareEnvironment.SANDBOX if value.strip().lower() == "sandbox" else SquareEnvironment.PRODUCTION


def extract_signature(headers: Mapping[str, str]) -> tuple[str, SignatureAlgorithm] | None:
    """Return the signature and its algorithm, preferring SHA-256."""
    lowered = _lower_headers(headers)
    sha256_signature = lowered.get(SQUARE_SIGNATURE_HEADER_SHA256)
    if sha256_signature:
        return sha256_signature.strip(), SignatureAlgorithm.SHA256
    sha1_signature = lowered.get(SQUARE_SIGNATURE_HEADER_SHA1)
    if sha1_signature:
        return sha1_signature.strip(), SignatureAlgorithm.SHA1
    return None


def calculate_square_signature(
    body: bytes | str,
    secret: str,
    algorithm: SignatureAlgorithm = SignatureAlgorithm.SHA256,
    notification_url: str | None = None,
) -> str:
    """Compute Square's base64 HMAC over ``notification_url + body``."""
    message = (notification_url or "").encode("utf-8") + _as_bytes(body)
    digest = hmac.new(secret.encode("utf-8"), message, algorithm.value).digest()
    return base64.b64encode(digest).decode("ascii")


def calculate_shippo_signature(body: bytes | str, secret: str) -> str:
    """Compute Shippo's hex HMAC-SHA256 over the raw body."""
    return hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()


def signatures_match(received: str, expected: str) -> bool:
    """Constant-time comparison of two signature strings."""
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def generate_webhook_id(event_id: str, timestamp_ms: int) -> str:
    digest = hashlib.sha256(f"{event_id}-{timestamp_ms}".encode()).hexdigest()
    return f"webhook_{digest[:16]}"


def parse_event_time(value: str) -> datetime | None:
    """Parse an ISO 8601 timestamp, treating naive values as UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class SquareSignatureValidator:
    """Validates Square webhook signatures, payload structure and event age."""

    def __init__(
        self,
        secrets: SquareWebhookSecrets,
        notification_url: str | None = None,
        max_event_age_seconds: float = DEFAULT_MAX_EVENT_AGE_SECONDS,
        max_future_skew_seconds: float = DEFAULT_MAX_FUTURE_SKEW_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the validator.

        Args:
            secrets: Signature keys per environment
            notification_url: URL registered with Square for this endpoint; part of the signed string
            max_event_age_seconds: Oldest acceptable event
            max_future_skew_seconds: Tolerated clock skew for events dated in the future
            clock: Returns the current aware datetime
        """
        self.secrets = secrets
        self.notification_url = notification_url or None
        self.max_event_age_seconds = max_event_age_seconds
        self.max_future_skew_seconds = max_future_skew_seconds
        self._clock = clock

    def validate(self, headers: Mapping[str, str], body: bytes | str) -> SquareValidationResult:
        """Run the full validation pipeline.

        Order: signature header, secret, body JSON, payload schema,
        event timestamp, signature comparison.

        Args:
            headers: Request headers
            body: Raw request body exactly as received

        Returns:
            SquareValidationResult with the parsed payload when valid
        """
        started = time.perf_counter()
        environment = detect_environment(headers)

        extracted = extract_signature(headers)
        if extracted is None:
            return self._failure(environment, WebhookErrorType.MISSING_SIGNATURE)
        signature, algorithm = extracted

        secret = self.secrets.for_environment(environment)
        if not secret:
            return self._failure(
                environment,
                WebhookErrorType.MISSING_SECRET,
                f"No webhook secret configured for {environment.value}",
            )

        try:
            raw_payload = json.loads(_as_bytes(body))
        except (ValueError, UnicodeDecodeError) as e:
            return self._failure(environment, WebhookErrorType.MALFORMED_BODY, str(e))

        try:
            payload = SquareWebhookPayload.model_validate(raw_payload)
        except ValidationError as e:
            return self._failure(
                environment, WebhookErrorType.INVALID_PAYLOAD, f"{e.error_count()} validation errors"
            )

        timestamp_error = self._check_event_time(payload.created_at)
        if timestamp_error is not None:
            return SquareValidationResult(valid=False, environment=environment, error=timestamp_error)

        expected = calculate_square_signature(body, secret, algorithm, self.notification_url)
        now = self._clock()
        metadata = WebhookValidationMetadata(
            algorithm=algorithm,
            secret_used=environment.value,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            webhook_id=generate_webhook_id(payload.event_id, int(now.timestamp() * 1000)),
        )

        if not signatures_match(signature, expected):
            logger.warning(
                f"Square webhook signature mismatch for event {payload.event_id}: "
                f"expected {expected[:10]}..., received {signature[:10]}..."
            )
            return SquareValidationResult(
                valid=False,
                environment=environment,
                error=WebhookValidationError(WebhookErrorType.INVALID_SIGNATURE),
                metadata=metadata,
            )

        return SquareValidationResult(
            valid=True, environment=environment, metadata=metadata, payload=payload
        )

    def quick_signature_check(self, headers: Mapping[str, str], body: bytes | str) -> bool:
        """Check only the signature, for fast acknowledgement paths."""
        extracted = extract_signature(headers)
        if extracted is None:
            return False
        signature, algorithm = extracted

        secret = self.secrets.for_environment(detect_environment(headers))
        if not secret:
            return False

        expected = calculate_square_signature(body, secret, algorithm, self.notification_url)
        return signatures_match(signature, expected)

    def _check_event_time(self, created_at: str) -> WebhookValidationError | None:
        event_time = parse_event_time(created_at)
        if event_time is None:
            return WebhookValidationError(
                WebhookErrorType.INVALID_TIMESTAMP, f"Unparseable created_at: {created_at}"
            )

        age = (self._clock() - event_time).total_seconds()
        if age > self.max_event_age_seconds:
            return WebhookValidationError(
                WebhookErrorType.EVENT_TOO_OLD,
                f"Event age {age:.0f}s exceeds {self.max_event_age_seconds:.0f}s",
            )
        if -age > self.max_future_skew_seconds:
            return WebhookValidationError(
                WebhookErrorType.EVENT_IN_FUTURE, f"Event timestamp is in the future: {created_at}"
            )
        return None

    @staticmethod
    def _failure(
        environment: SquareEnvironment, error_type: WebhookErrorType, details: str | None = None
    ) -> SquareValidationResult:
        return SquareValidationResult(
            valid=False,
            environment=environment,
            error=WebhookValidationError(error_type, details),
        )


@dataclass
class ShippoSignatureValidator:
    """Validates Shippo webhook signatures and payload structure."""

    secret: str | None
    _stripped: str | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        self._stripped = (self.secret or "").strip() or None

    def validate(self, headers: Mapping[str, str], body: bytes | str) -> ShippoValidationResult:
        """Validate a Shippo webhook.

        Args:
            headers: Request headers
            body: Raw request body exactly as received

        Returns:
            ShippoValidationResult with the parsed payload when valid
        """
        started = time.perf_counter()

        signature = _lower_headers(headers).get(SHIPPO_SIGNATURE_HEADER, "").strip()
        if not signature:
            return self._failure(WebhookErrorType.MISSING_SIGNATURE)

        if not self._stripped:
            return self._failure(WebhookErrorType.MISSING_SECRET, "SHIPPO_WEBHOOK_SECRET is not set")

        try:
            raw_payload = json.loads(_as_bytes(body))
        except (ValueError, UnicodeDecodeError) as e:
            return self._failure(WebhookErrorType.MALFORMED_BODY, str(e))

        try:
            payload = ShippoWebhookPayload.model_validate(raw_payload)
        except ValidationError as e:
            return self._failure(
                WebhookErrorType.INVALID_PAYLOAD, f"{e.error_count()} validation errors"
            )

        expected = calculate_shippo_signature(body, self._stripped)
        if not signatures_match(signature.lower(), expected):
            logger.warning(
                f"Shippo webhook signature mismatch: expected {expected[:10]}..., "
                f"received {signature[:10]}..."
            )
            return self._failure(WebhookErrorType.INVALID_SIGNATURE)

        return ShippoValidationResult(
            valid=True,
            payload=payload,
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )

    @staticmethod
    def _failure(error_type: WebhookErrorType, details: str | None = None) -> ShippoValidationResult:
        return ShippoValidationResult(valid=False, error=WebhookValidationError(error_type, details))

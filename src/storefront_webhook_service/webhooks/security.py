"""Request-level security checks for webhook endpoints."""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from storefront_webhook_service.resilience.rate_limiter import (
    EnvironmentRateLimiter,
    RateLimitResult,
)
from storefront_webhook_service.webhooks.signature import (
    SQUARE_SIGNATURE_HEADER_SHA1,
    SQUARE_SIGNATURE_HEADER_SHA256,
)

logger = logging.getLogger(__name__)

MAX_BODY_SIZE_BYTES = 1024 * 1024
ESCALATION_THRESHOLD = 5
SUSPICIOUS_IP_RETENTION_SECONDS = 7 * 24 * 60 * 60


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Extract the client IP from proxy headers.

    Args:
        headers: Request headers

    Returns:
        The first x-forwarded-for entry, then x-real-ip, then
        cf-connecting-ip, or "unknown"
    """
    lowered = {key.lower(): value for key, value in headers.items()}

    forwarded = lowered.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = lowered.get(header, "").strip()
        if value:
            return value

    return "unknown"


@dataclass
class SecurityCheckResult:
    valid: bool
    client_ip: str
    error: str | None = None
    status_code: int = 200
    rate_limit: RateLimitResult | None = None

    def response_headers(self) -> dict[str, str]:
        return self.rate_limit.headers() if self.rate_limit is not None else {}


class WebhookSecurityValidator:
    """Runs rate limiting, size and header checks before signature validation."""

    def __init__(
        self,
        rate_limiter: EnvironmentRateLimiter,
        signature_headers: tuple[str, ...] = (
            SQUARE_SIGNATURE_HEADER_SHA256,
            SQUARE_SIGNATURE_HEADER_SHA1,
        ),
        max_body_size: int = MAX_BODY_SIZE_BYTES,
        expected_user_agent_markers: tuple[str, ...] = ("square", "webhook"),
    ) -> None:
        self.rate_limiter = rate_limiter
        self.signature_headers = signature_headers
        self.max_body_size = max_body_size
        self.expected_user_agent_markers = expected_user_agent_markers

    def validate(self, headers: Mapping[str, str], environment: str = "production") -> SecurityCheckResult:
        """Check a webhook request before its body is verified.

        Args:
            headers: Request headers
            environment: Rate limit scope (production or sandbox)

        Returns:
            SecurityCheckResult; status_code is 429, 413 or 401 on rejection
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        client_ip = get_client_ip(lowered)

        rate_limit = self.rate_limiter.check(client_ip, environment)
        if not rate_limit.allowed:
            return SecurityCheckResult(
                valid=False,
                client_ip=client_ip,
                error=rate_limit.message,
                status_code=429,
                rate_limit=rate_limit,
            )

        content_length = lowered.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = 0
            if size > self.max_body_size:
                return SecurityCheckResult(
                    valid=False,
                    client_ip=client_ip,
                    error=f"Request body too large: {size} bytes > {self.max_body_size} bytes",
                    status_code=413,
                    rate_limit=rate_limit,
                )

        user_agent = lowered.get("user-agent", "unknown").lower()
        if not any(marker in user_agent for marker in self.expected_user_agent_markers):
            logger.info(f"Unexpected webhook user agent from {client_ip}: {user_agent}")

        if not any(lowered.get(header) for header in self.signature_headers):
            return SecurityCheckResult(
                valid=False,
                client_ip=client_ip,
                error="Missing required signature headers",
                status_code=401,
                rate_limit=rate_limit,
            )

        content_type = lowered.get("content-type")
        if content_type and "application/json" not in content_type:
            logger.info(f"Unexpected webhook content type from {client_ip}: {content_type}")

        return SecurityCheckResult(valid=True, client_ip=client_ip, rate_limit=rate_limit)


@dataclass
class _SuspiciousIp:
    count: int
    last_seen: float


class SecurityMonitor:
    """Tracks suspicious webhook activity per client IP."""

    def __init__(
        self,
        rate_limiter: EnvironmentRateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rate_limiter = rate_limiter
        self._clock = clock
        self._suspicious: dict[str, _SuspiciousIp] = {}

    def report_suspicious_activity(
        self,
        client_ip: str,
        reason: str,
        severity: Severity = Severity.LOW,
        details: dict[str, Any] | None = None,
    ) -> Severity:
        """Record a suspicious request.

        Repeated reports for one IP escalate to HIGH severity.

        Returns:
            The severity the report was logged with
        """
        entry = self._suspicious.get(client_ip)
        if entry is None:
            entry = _SuspiciousIp(count=0, last_seen=0.0)
            self._suspicious[client_ip] = entry
        entry.count += 1
        entry.last_seen = self._clock()

        effective = Severity.HIGH if entry.count >= ESCALATION_THRESHOLD else severity
        log = logger.error if effective == Severity.HIGH else logger.warning
        log(
            f"Suspicious webhook activity from {client_ip} ({effective.value}, "
            f"{entry.count} reports): {reason}",
            extra={"client_ip": client_ip, "details": details or {}},
        )
        return effective

    def get_security_stats(self) -> dict[str, Any]:
        suspicious_ips = [
            {"ip": ip, "count": entry.count, "last_seen": entry.last_seen}
            for ip, entry in self._suspicious.items()
        ]
        suspicious_ips.sort(key=lambda item: item["count"], reverse=True)
        return {
            "suspicious_ips": suspicious_ips,
            "rate_limit_stats": self.rate_limiter.get_stats() if self.rate_limiter else {},
        }

    def cleanup(self, max_age_seconds: float = SUSPICIOUS_IP_RETENTION_SECONDS) -> int:
        """Forget IPs not seen within max_age_seconds.

        Returns:
            Number of IPs removed
        """
        cutoff = self._clock() - max_age_seconds
        stale = [ip for ip, entry in self._suspicious.items() if entry.last_seen < cutoff]
        for ip in stale:
            del self._suspicious[ip]
        return len(stale)

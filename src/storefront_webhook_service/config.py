"""Service configuration read from environment variables."""

from collections.abc import Mapping

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SERVICE_VERSION = "0.1.0"
DEVELOPMENT_API_KEY = "dummy-key-for-development"


def _stripped(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class ServiceSettings(BaseSettings):
    """Settings for the webhook service.

    Every field reads the environment variable named by its alias. Empty
    variables count as unset. Secrets are whitespace-stripped since values
    copied into env files often carry a trailing newline that breaks HMAC
    comparison.
    """

    model_config = SettingsConfigDict(env_ignore_empty=True, extra="ignore", populate_by_name=True)

    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    version: str = Field(default=SERVICE_VERSION, validation_alias="SERVICE_VERSION")

    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    dynamodb_endpoint: str | None = Field(None, validation_alias="DYNAMODB_ENDPOINT")
    orders_table: str = Field(default="storefront-orders", validation_alias="DYNAMODB_ORDERS_TABLE")
    webhook_events_table: str = Field(
        default="storefront-webhook-events", validation_alias="DYNAMODB_WEBHOOK_EVENTS_TABLE"
    )
    webhook_jobs_table: str = Field(
        default="storefront-webhook-jobs", validation_alias="DYNAMODB_WEBHOOK_JOBS_TABLE"
    )

    square_webhook_secret: str | None = Field(None, validation_alias="SQUARE_WEBHOOK_SECRET")
    square_webhook_secret_sandbox: str | None = Field(None, validation_alias="SQUARE_WEBHOOK_SECRET_SANDBOX")
    square_notification_url: str | None = Field(None, validation_alias="SQUARE_WEBHOOK_NOTIFICATION_URL")
    shippo_webhook_secret: str | None = Field(None, validation_alias="SHIPPO_WEBHOOK_SECRET")
    square_access_token: str | None = Field(None, validation_alias="SQUARE_ACCESS_TOKEN")
    square_environment: str = Field(default="production", validation_alias="SQUARE_ENVIRONMENT")

    # Comma-separated list
    admin_api_key: str | None = Field(None, validation_alias="ADMIN_API_KEY")

    max_event_age_seconds: int = Field(default=300, gt=0, validation_alias="WEBHOOK_MAX_EVENT_AGE_SECONDS")
    # A bucket must hold at least one request
    rate_limit_capacity: float = Field(default=60, ge=1, validation_alias="WEBHOOK_RATE_LIMIT_CAPACITY")
    rate_limit_refill_per_second: float = Field(
        default=1.0, gt=0, validation_alias="WEBHOOK_RATE_LIMIT_REFILL_PER_SECOND"
    )
    circuit_failure_threshold: int = Field(default=5, gt=0, validation_alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_reset_timeout_seconds: float = Field(
        default=30.0, gt=0, validation_alias="CIRCUIT_RESET_TIMEOUT_SECONDS"
    )

    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=8001, validation_alias="PORT")

    @field_validator(
        "square_webhook_secret",
        "square_webhook_secret_sandbox",
        "square_notification_url",
        "shippo_webhook_secret",
        "square_access_token",
    )
    @classmethod
    def strip_secret(cls, v: str | None) -> str | None:
        return _stripped(v)

    @field_validator("square_environment")
    @classmethod
    def validate_square_environment(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in ("production", "sandbox"):
            raise ValueError("square_environment must be 'production' or 'sandbox'")
        return normalized

    @property
    def admin_api_keys(self) -> list[str]:
        return [key.strip() for key in (self.admin_api_key or "").split(",") if key.strip()]

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ServiceSettings":
        """Build settings from environment variables.

        Args:
            env: Mapping to read instead of os.environ

        Returns:
            ServiceSettings instance

        Raises:
            pydantic.ValidationError: If a value is malformed
        """
        if env is None:
            return cls()
        # model_validate skips the environment sources, so only the mapping is read
        return cls.model_validate({name: value for name, value in env.items() if value != ""})

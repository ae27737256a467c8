"""Unit tests for Lambda dependency factory."""

import os
from unittest.mock import MagicMock, Mock, patch

import pytest

from src.lambda_dependencies import (
    get_breaker_registry,
    get_dynamodb_resource,
    get_event_handler,
    get_fastapi_app,
    get_order_service,
    get_rate_limiter,
    get_settings,
    get_webhook_service,
    initialize_lambda_environment,
)
from storefront_webhook_service.models.webhook_models import WebhookSource


def _reset_caches() -> None:
    import src.lambda_dependencies as deps

    for name in (
        "_settings",
        "_dynamodb_resource",
        "_breakers",
        "_rate_limiter",
        "_security_monitor",
        "_order_repository",
        "_processed_repository",
        "_job_repository",
        "_order_service",
        "_idempotency_service",
        "_retry_queue",
        "_webhook_service",
        "_health_service",
        "_event_handler",
        "_fastapi_app",
    ):
        setattr(deps, name, None)


@pytest.mark.unit
class TestGetDynamoDBResource:
    """Tests for get_dynamodb_resource function."""

    def teardown_method(self) -> None:
        """Clear cached resources after each test."""
        _reset_caches()

    @patch.dict(os.environ, {"DYNAMODB_ENDPOINT": "", "AWS_REGION": "us-west-2"}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_creates_aws_resource_when_no_endpoint(self, mock_boto3_resource: Mock) -> None:
        """Test that AWS DynamoDB resource is created when no local endpoint configured."""
        mock_resource = MagicMock()
        mock_boto3_resource.return_value = mock_resource

        result = get_dynamodb_resource()

        mock_boto3_resource.assert_called_once_with("dynamodb", region_name="us-west-2")
        assert result == mock_resource

    @patch.dict(
        os.environ,
        {"DYNAMODB_ENDPOINT": "http://localhost:8000", "AWS_REGION": "us-east-1"},
        clear=True,
    )
    @patch("src.lambda_dependencies.boto3.resource")
    def test_creates_local_resource_when_endpoint_provided(self, mock_boto3_resource: Mock) -> None:
        """Test that local DynamoDB resource is created when endpoint configured."""
        get_dynamodb_resource()

        mock_boto3_resource.assert_called_once_with(
            "dynamodb",
            endpoint_url="http://localhost:8000",
            region_name="us-east-1",
        )

    @patch.dict(os.environ, {}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_uses_default_region_when_not_specified(self, mock_boto3_resource: Mock) -> None:
        get_dynamodb_resource()

        mock_boto3_resource.assert_called_once_with("dynamodb", region_name="us-east-1")

    @patch.dict(os.environ, {}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_caches_resource_for_reuse(self, mock_boto3_resource: Mock) -> None:
        """Test that DynamoDB resource is cached and reused across calls."""
        result1 = get_dynamodb_resource()
        result2 = get_dynamodb_resource()

        mock_boto3_resource.assert_called_once()
        assert result1 is result2


@pytest.mark.unit
class TestResilienceFactories:
    """Tests for circuit breaker and rate limiter factories."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch.dict(
        os.environ,
        {"CIRCUIT_FAILURE_THRESHOLD": "2", "CIRCUIT_RESET_TIMEOUT_SECONDS": "10"},
        clear=True,
    )
    def test_breaker_registry_uses_settings(self) -> None:
        """Test that breakers pick up configured thresholds."""
        breaker = get_breaker_registry().get("square")

        assert breaker.failure_threshold == 2
        assert breaker.reset_timeout == 10

    @patch.dict(os.environ, {}, clear=True)
    def test_registry_is_shared(self) -> None:
        """Test that breaker state survives across calls in the same container."""
        assert get_breaker_registry() is get_breaker_registry()
        assert get_rate_limiter() is get_rate_limiter()


@pytest.mark.unit
class TestGetOrderService:
    """Tests for get_order_service function."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch.dict(os.environ, {"SQUARE_ACCESS_TOKEN": "sq-token", "SQUARE_ENVIRONMENT": "sandbox"}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_configures_square_client_when_token_set(self, mock_boto3_resource: Mock) -> None:
        service = get_order_service()

        assert service.square_client is not None
        assert service.square_client.environment == "sandbox"
        assert service.square_client.breaker is get_breaker_registry().get("square")

    @patch.dict(os.environ, {}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_skips_square_client_without_token(self, mock_boto3_resource: Mock) -> None:
        """Test that tracking lookups are disabled without a Square token."""
        service = get_order_service()

        assert service.square_client is None

    @patch.dict(os.environ, {"DYNAMODB_ORDERS_TABLE": "orders-test"}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_uses_configured_table(self, mock_boto3_resource: Mock) -> None:
        service = get_order_service()

        mock_boto3_resource.return_value.Table.assert_any_call("orders-test")
        assert service is get_order_service()


@pytest.mark.unit
class TestGetWebhookService:
    """Tests for webhook service and event handler wiring."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch.dict(os.environ, {"SQUARE_WEBHOOK_SECRET": "secret"}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_registers_retry_processors(self, mock_boto3_resource: Mock) -> None:
        """Test that both sources can be retried once the service exists."""
        import src.lambda_dependencies as deps

        service = get_webhook_service()

        processors = deps.get_retry_queue()._processors
        assert set(processors) == {WebhookSource.SQUARE, WebhookSource.SHIPPO}
        assert deps.get_retry_queue().idempotency is service.idempotency

    @patch.dict(os.environ, {}, clear=True)
    @patch("src.lambda_dependencies.boto3.resource")
    def test_event_handler_shares_components(self, mock_boto3_resource: Mock) -> None:
        import src.lambda_dependencies as deps

        handler = get_event_handler()

        assert handler.retry_queue is deps.get_retry_queue()
        assert handler.rate_limiter is get_rate_limiter()
        assert handler is get_event_handler()


@pytest.mark.unit
class TestGetFastAPIApp:
    """Tests for get_fastapi_app function."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch("src.lambda_dependencies.setup_observability")
    @patch("src.lambda_dependencies.boto3.resource")
    @patch.dict(os.environ, {"ADMIN_API_KEY": "key1, key2"}, clear=True)
    def test_uses_configured_api_keys(self, mock_boto3_resource: Mock, mock_setup: Mock) -> None:
        app = get_fastapi_app()

        assert app.state.api_key_validator.validate("key2") is True
        assert app.state.api_key_validator.validate("dummy-key-for-development") is False
        mock_setup.assert_called_once_with(app)

    @patch("src.lambda_dependencies.setup_observability")
    @patch("src.lambda_dependencies.boto3.resource")
    @patch.dict(os.environ, {}, clear=True)
    def test_uses_development_key_when_unconfigured(self, mock_boto3_resource: Mock, mock_setup: Mock) -> None:
        """Test that the development key is accepted when ADMIN_API_KEY is not set."""
        app = get_fastapi_app()

        assert app.state.api_key_validator.validate("dummy-key-for-development") is True
        assert get_fastapi_app() is app


@pytest.mark.unit
class TestInitializeLambdaEnvironment:
    """Tests for initialize_lambda_environment function."""

    def teardown_method(self) -> None:
        _reset_caches()

    @patch("src.lambda_dependencies.configure_logging")
    @patch.dict(os.environ, {"LOG_LEVEL": "DEBUG"}, clear=True)
    def test_configures_logging_with_env_level(self, mock_configure_logging: Mock) -> None:
        """Test that logging is configured with LOG_LEVEL from environment."""
        initialize_lambda_environment()

        mock_configure_logging.assert_called_once_with("DEBUG")

    @patch("src.lambda_dependencies.configure_logging")
    @patch.dict(os.environ, {}, clear=True)
    def test_uses_default_log_level_when_not_set(self, mock_configure_logging: Mock) -> None:
        initialize_lambda_environment()

        mock_configure_logging.assert_called_once_with("INFO")
        assert get_settings().log_level == "INFO"

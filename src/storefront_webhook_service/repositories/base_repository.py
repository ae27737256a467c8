"""Shared plumbing for DynamoDB repositories.

Repositories follow one error handling pattern: every table call runs through
the transient-error retry wrapper, and failures that survive it are logged and
turned into simple return values (None/False/[]) by the caller.
"""

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table

from storefront_webhook_service.resilience.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors a repository method converts into a failure return value
STORAGE_ERRORS = (ClientError, BotoCoreError)


def is_conditional_check_failure(error: BaseException) -> bool:
    return (
        isinstance(error, ClientError)
        and error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"
    )


class DynamoDBRepository:
    """Base class holding the table handle and retry configuration."""

    def __init__(
        self,
        dynamodb_resource: DynamoDBServiceResource,
        table_name: str,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize repository.

        Args:
            dynamodb_resource: Boto3 DynamoDB resource
            table_name: Name of the DynamoDB table
            retry_policy: Policy for transient errors (defaults to 3 attempts)
            sleep: Sleep function used between retries
        """
        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.table: Table = dynamodb_resource.Table(table_name)
        self.retry_policy = retry_policy
        self._sleep = sleep

    def _call(self, operation: Callable[[], T], operation_name: str) -> T:
        return with_retry(
            operation,
            policy=self.retry_policy,
            operation_name=f"{self.table_name}.{operation_name}",
            sleep=self._sleep,
        )

    def describe(self) -> dict[str, Any]:
        """Describe the table, used by health checks.

        Raises:
            ClientError: If the table cannot be described after retries
        """
        response = self._call(
            lambda: self.dynamodb.meta.client.describe_table(TableName=self.table_name),
            "describe_table",
        )
        table: dict[str, Any] = response["Table"]
        return table

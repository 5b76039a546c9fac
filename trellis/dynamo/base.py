"""
Base protocol and error helpers for the DynamoDB backing store.

This module defines the DynamoClient protocol - the subset of the
low-level aiobotocore DynamoDB client that Trellis calls - along with
helpers for reading botocore ClientError responses.

Invariants:
    - Requests and responses use DynamoDB's AttributeValue wire shape
    - Conditional failures are identified by error code, never by message
    - TransactionCanceledException carries one cancellation reason per
      transaction item, in submission order

How to change safely:
    - Protocol changes require updating InMemoryDynamoClient as well
    - Keep method signatures keyword-only, matching botocore
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# DynamoDB TransactWriteItems ceiling
MAX_TRANSACTION_ITEMS = 100

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELED = "TransactionCanceledException"
VALIDATION_ERROR = "ValidationException"
RESOURCE_NOT_FOUND = "ResourceNotFoundException"
RESOURCE_IN_USE = "ResourceInUseException"

# Cancellation reason code for a failed condition inside a transaction
REASON_CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailed"


class DynamoError(Exception):
    """Base exception for DynamoDB connection management."""

    pass


class DynamoConnectionError(DynamoError):
    """Connection to DynamoDB failed."""

    pass


@runtime_checkable
class DynamoClient(Protocol):
    """Subset of the aiobotocore DynamoDB client used by Trellis.

    Both the real client (``session.create_client("dynamodb")``) and
    InMemoryDynamoClient satisfy this protocol.
    """

    async def get_item(self, **kwargs: Any) -> dict[str, Any]: ...

    async def put_item(self, **kwargs: Any) -> dict[str, Any]: ...

    async def update_item(self, **kwargs: Any) -> dict[str, Any]: ...

    async def delete_item(self, **kwargs: Any) -> dict[str, Any]: ...

    async def query(self, **kwargs: Any) -> dict[str, Any]: ...

    async def transact_write_items(self, **kwargs: Any) -> dict[str, Any]: ...


def error_code(exc: BaseException) -> str:
    """Return the DynamoDB error code of a ClientError ("" otherwise)."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def is_conditional_check_failed(exc: BaseException) -> bool:
    """Whether a single-item write failed its condition expression."""
    return error_code(exc) == CONDITIONAL_CHECK_FAILED


def cancellation_reasons(exc: BaseException) -> list[dict[str, Any]]:
    """Cancellation reasons of a TransactionCanceledException.

    Returns:
        One reason dict per transaction item (empty for other errors)
    """
    if error_code(exc) != TRANSACTION_CANCELED:
        return []
    return list(exc.response.get("CancellationReasons") or [])  # type: ignore[attr-defined]


def make_client_error(code: str, message: str, operation: str, **extra: Any) -> ClientError:
    """Build a botocore ClientError shaped like a real service response."""
    response: dict[str, Any] = {
        "Error": {"Code": code, "Message": message},
        "ResponseMetadata": {"HTTPStatusCode": 400},
    }
    response.update(extra)
    return ClientError(response, operation)

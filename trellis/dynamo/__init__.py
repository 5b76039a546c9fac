"""
DynamoDB backing store access for Trellis.

This package provides:
- The DynamoClient protocol (subset of the aiobotocore client Trellis uses)
- DynamoConnection for the aiobotocore client lifecycle
- InMemoryDynamoClient (for testing)
- Helpers for AttributeValue dicts and ClientError responses

Invariants:
    - All requests are keyword-only and use the low-level wire shape
    - Failures surface as botocore ClientError, classified by code

How to change safely:
    - New client methods must be added to the protocol and the in-memory
      client together
    - Verify in-memory behaviour against DynamoDB Local
"""

from .attributes import AttributeMap, get_int, get_map, get_string, get_string_list, n, s, string_list
from .base import (
    CONDITIONAL_CHECK_FAILED,
    MAX_TRANSACTION_ITEMS,
    REASON_CONDITIONAL_CHECK_FAILED,
    TRANSACTION_CANCELED,
    DynamoClient,
    DynamoConnectionError,
    DynamoError,
    cancellation_reasons,
    error_code,
    is_conditional_check_failed,
    make_client_error,
)
from .client import DynamoConnection
from .memory import InMemoryDynamoClient

__all__ = [
    # Protocol and connection
    "DynamoClient",
    "DynamoConnection",
    "DynamoError",
    "DynamoConnectionError",
    # Implementations
    "InMemoryDynamoClient",
    # Attribute helpers
    "AttributeMap",
    "s",
    "n",
    "string_list",
    "get_string",
    "get_int",
    "get_string_list",
    "get_map",
    # Error helpers
    "MAX_TRANSACTION_ITEMS",
    "CONDITIONAL_CHECK_FAILED",
    "TRANSACTION_CANCELED",
    "REASON_CONDITIONAL_CHECK_FAILED",
    "error_code",
    "is_conditional_check_failed",
    "cancellation_reasons",
    "make_client_error",
]

"""
AWS DynamoDB connection management.

This module owns the aiobotocore session and low-level DynamoDB client
used by EntityStore and the cascade handler.

Invariants:
    - connect() is idempotent
    - close() always releases the client, even if the exit hook fails
    - The client is usable only between connect() and close()

How to change safely:
    - Test against DynamoDB Local before deploying to AWS
    - Keep retries in botocore's config, not in the store: store writes
      are conditional and must not be blindly replayed by callers
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import ClientError, EndpointConnectionError

from ..config import DynamoConfig
from .base import DynamoConnectionError

logger = logging.getLogger(__name__)


class DynamoConnection:
    """Async DynamoDB client lifecycle.

    Attributes:
        config: DynamoDB configuration

    Example:
        >>> async with DynamoConnection(DynamoConfig.from_env()) as conn:
        ...     store = EntityStore(conn.client, StoreConfig.from_env())
        ...     item = await store.get("studios", {"id": {"S": "studio-1"}})
    """

    def __init__(self, config: DynamoConfig) -> None:
        self.config = config
        self._session = None
        self._client_ctx: Any = None
        self._client: Any = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to DynamoDB."""
        return self._connected

    @property
    def client(self) -> Any:
        """The low-level DynamoDB client.

        Raises:
            DynamoConnectionError: If not connected
        """
        if self._client is None:
            raise DynamoConnectionError("Not connected to DynamoDB")
        return self._client

    async def connect(self) -> None:
        """Create the session and client.

        Raises:
            DynamoConnectionError: If the client cannot be created
        """
        if self._connected:
            return

        try:
            self._session = get_session()

            client_config: dict[str, Any] = {
                "region_name": self.config.region,
                "config": AioConfig(
                    connect_timeout=self.config.connect_timeout,
                    read_timeout=self.config.read_timeout,
                    retries={"max_attempts": self.config.max_attempts, "mode": "standard"},
                ),
            }
            if self.config.endpoint_url:
                client_config["endpoint_url"] = self.config.endpoint_url
            if self.config.access_key_id:
                client_config["aws_access_key_id"] = self.config.access_key_id
                client_config["aws_secret_access_key"] = self.config.secret_access_key

            self._client_ctx = self._session.create_client("dynamodb", **client_config)
            self._client = await self._client_ctx.__aenter__()
            self._connected = True

            logger.info(
                "Connected to DynamoDB",
                extra={
                    "region": self.config.region,
                    "endpoint": self.config.endpoint_url or "AWS",
                },
            )

        except EndpointConnectionError as e:
            raise DynamoConnectionError(f"Failed to connect to DynamoDB endpoint: {e}") from e
        except ClientError as e:
            raise DynamoConnectionError(f"DynamoDB error: {e}") from e

    async def close(self) -> None:
        """Close the client."""
        if self._client is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing DynamoDB client: {e}")

        self._client = None
        self._client_ctx = None
        self._session = None
        self._connected = False
        logger.info("DynamoDB connection closed")

    async def __aenter__(self) -> DynamoConnection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

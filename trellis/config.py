"""
Configuration management for Trellis.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - num_shards is always clamped into [1, MAX_SHARDS] before use
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change the default table names: deployed tables depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)

DEFAULT_RELATIONSHIP_TABLE = "trellis_relationships"
DEFAULT_UNIQUE_TABLE = "trellis_unique_constraints"
MAX_SHARDS = 256


@dataclass(frozen=True)
class StoreConfig:
    """Entity store configuration.

    Attributes:
        relationship_table: Name of the relationship (parent -> child) table
        unique_table: Name of the unique constraints table
        num_shards: Shards per parent in the relationship table. Each shard
            is one DynamoDB partition (~1,000 writes/sec, ~3,000 reads/sec),
            so 16 shards give ~16,000 writes/sec per parent at the cost of
            16 parallel queries for child lookups.
    """

    relationship_table: str = DEFAULT_RELATIONSHIP_TABLE
    unique_table: str = DEFAULT_UNIQUE_TABLE
    num_shards: int = 1

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            relationship_table=os.getenv("TRELLIS_RELATIONSHIP_TABLE", DEFAULT_RELATIONSHIP_TABLE),
            unique_table=os.getenv("TRELLIS_UNIQUE_TABLE", DEFAULT_UNIQUE_TABLE),
            num_shards=int(os.getenv("TRELLIS_NUM_SHARDS", "1")),
        ).validated()

    def validated(self) -> StoreConfig:
        """Return a copy with empty names defaulted and num_shards clamped."""
        return replace(
            self,
            relationship_table=self.relationship_table or DEFAULT_RELATIONSHIP_TABLE,
            unique_table=self.unique_table or DEFAULT_UNIQUE_TABLE,
            num_shards=min(max(self.num_shards, 1), MAX_SHARDS),
        )


@dataclass(frozen=True)
class DynamoConfig:
    """DynamoDB client configuration.

    Attributes:
        region: AWS region
        endpoint_url: Custom endpoint URL (DynamoDB Local, LocalStack)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        connect_timeout: Connection timeout in seconds
        read_timeout: Read timeout in seconds
        max_attempts: Retry attempts for throttled/transient errors
    """

    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    max_attempts: int = 5

    @classmethod
    def from_env(cls) -> DynamoConfig:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("DYNAMODB_ENDPOINT_URL"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            connect_timeout=float(os.getenv("DYNAMODB_CONNECT_TIMEOUT", "5")),
            read_timeout=float(os.getenv("DYNAMODB_READ_TIMEOUT", "10")),
            max_attempts=int(os.getenv("DYNAMODB_MAX_ATTEMPTS", "5")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class TrellisConfig:
    """Complete Trellis configuration.

    Attributes:
        store: Entity store configuration
        dynamo: DynamoDB client configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    dynamo: DynamoConfig = field(default_factory=DynamoConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> TrellisConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            dynamo=DynamoConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store.relationship_table == self.store.unique_table:
            raise ValueError(
                "TRELLIS_RELATIONSHIP_TABLE and TRELLIS_UNIQUE_TABLE must name different tables"
            )
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )
        if bool(self.dynamo.access_key_id) != bool(self.dynamo.secret_access_key):
            raise ValueError(
                "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY must be set together"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Trellis configuration loaded",
            extra={
                "relationship_table": self.store.relationship_table,
                "unique_table": self.store.unique_table,
                "num_shards": self.store.num_shards,
                "region": self.dynamo.region,
                "endpoint": self.dynamo.endpoint_url or "AWS",
                "static_credentials": bool(self.dynamo.access_key_id),
                "log_level": self.observability.log_level,
            },
        )

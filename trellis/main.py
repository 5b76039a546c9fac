"""
Trellis cascade worker - entry points.

The cascade handler runs as an AWS Lambda function subscribed to the
DynamoDB Streams of every entity table:

    Handler: trellis.main.lambda_handler

For local replay of a captured batch:

    python -m trellis.main event.json

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - A batch either completes or raises, so Lambda retries it
    - The DynamoDB client is closed at the end of every invocation

How to change safely:
    - Keep lambda_handler synchronous; Lambda's Python runtime calls it
      directly
    - Test batch failure behaviour with the in-memory client first
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import json_log_formatter

from .config import ObservabilityConfig, TrellisConfig
from .dynamo import DynamoConnection
from .store import EntityStore
from .stream import CascadeHandler

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


async def run_cascade(event: dict[str, Any], config: TrellisConfig | None = None) -> int:
    """Process one stream batch against DynamoDB.

    Returns:
        Number of records in the batch
    """
    config = config or TrellisConfig.from_env()

    async with DynamoConnection(config.dynamo) as connection:
        store = EntityStore(connection.client, config.store)
        handler = CascadeHandler(store)
        await handler.handle_cascade_delete(event)

    return len(event.get("Records") or [])


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda entry point for DynamoDB Streams batches."""
    config = TrellisConfig.from_env()
    setup_logging(config.observability)

    processed = asyncio.run(run_cascade(event, config))
    return {"processed": processed}


def main() -> None:
    """Replay a captured stream batch from a JSON file (or stdin)."""
    parser = argparse.ArgumentParser(description="Trellis cascade worker")
    parser.add_argument("event", nargs="?", help="Path to a stream event JSON file (default: stdin)")
    args = parser.parse_args()

    config = TrellisConfig.from_env()
    setup_logging(config.observability)
    config.log_config()

    if args.event:
        with open(args.event) as f:
            event = json.load(f)
    else:
        event = json.load(sys.stdin)

    try:
        processed = asyncio.run(run_cascade(event, config))
    except Exception as e:
        logger.error(f"Cascade batch failed: {e}")
        sys.exit(1)

    print(f"Processed {processed} record(s)", file=sys.stderr)


if __name__ == "__main__":
    main()

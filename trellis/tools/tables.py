"""
Table provisioning tool for Trellis.

Creates the DynamoDB tables Trellis needs:
- create-core: relationship table (pk, child_ref) and unique constraint
  table (pk, sk), both with TTL on ``ttl``
- create-entity: an entity table keyed on one string attribute, with a
  NEW_AND_OLD_IMAGES stream (for cascade delete) and TTL on ``ttl``

Usage:
    trellis-tables create-core
    trellis-tables create-entity studios --key-attr id

Invariants:
    - Existing tables are left untouched (creation is skipped)
    - TTL is enabled only after the table is ACTIVE

How to change safely:
    - Key schemas here are a contract with EntityStore; never change them
      for existing deployments
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from botocore.exceptions import ClientError

from ..config import StoreConfig, TrellisConfig
from ..dynamo import DynamoConnection
from ..dynamo.base import RESOURCE_IN_USE, error_code

logger = logging.getLogger(__name__)

TTL_ATTRIBUTE = "ttl"


async def _create_table(client: Any, **params: Any) -> bool:
    """Create a table, wait for it and enable TTL.

    Returns:
        False if the table already existed
    """
    table_name = params["TableName"]
    try:
        await client.create_table(BillingMode="PAY_PER_REQUEST", **params)
    except ClientError as e:
        if error_code(e) == RESOURCE_IN_USE:
            logger.info("Table already exists", extra={"table": table_name})
            return False
        raise

    waiter = client.get_waiter("table_exists")
    await waiter.wait(TableName=table_name)

    await client.update_time_to_live(
        TableName=table_name,
        TimeToLiveSpecification={"Enabled": True, "AttributeName": TTL_ATTRIBUTE},
    )
    logger.info("Created table", extra={"table": table_name})
    return True


async def create_core_tables(client: Any, config: StoreConfig) -> list[str]:
    """Create the relationship and unique constraint tables.

    Returns:
        Names of the tables that were created
    """
    created = []
    if await _create_table(
        client,
        TableName=config.relationship_table,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "child_ref", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "child_ref", "AttributeType": "S"},
        ],
    ):
        created.append(config.relationship_table)

    if await _create_table(
        client,
        TableName=config.unique_table,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
    ):
        created.append(config.unique_table)

    return created


async def create_entity_table(client: Any, name: str, key_attr: str = "id") -> bool:
    """Create a stream-enabled entity table.

    Returns:
        False if the table already existed
    """
    return await _create_table(
        client,
        TableName=name,
        KeySchema=[{"AttributeName": key_attr, "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": key_attr, "AttributeType": "S"}],
        StreamSpecification={"StreamEnabled": True, "StreamViewType": "NEW_AND_OLD_IMAGES"},
    )


async def _run(args: argparse.Namespace, config: TrellisConfig) -> list[str]:
    async with DynamoConnection(config.dynamo) as connection:
        if args.command == "create-core":
            return await create_core_tables(connection.client, config.store)
        created = await create_entity_table(connection.client, args.name, args.key_attr)
        return [args.name] if created else []


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for table provisioning."""
    parser = argparse.ArgumentParser(description="Trellis table provisioning tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("create-core", help="Create relationship and unique constraint tables")

    entity_parser = subparsers.add_parser("create-entity", help="Create an entity table")
    entity_parser.add_argument("name", help="Table name")
    entity_parser.add_argument("--key-attr", default="id", help="Hash key attribute (default: id)")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    config = TrellisConfig.from_env()

    try:
        created = asyncio.run(_run(args, config))
    except ClientError as e:
        print(f"DynamoDB error: {e}", file=sys.stderr)
        return 1

    if created:
        print(f"Created {len(created)} table(s): {', '.join(created)}")
    else:
        print("All tables already exist")
    return 0


if __name__ == "__main__":
    sys.exit(main())

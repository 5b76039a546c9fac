"""
E2E test fixtures for Trellis.

These tests require DynamoDB Local (or a real AWS account) to be reachable:

    docker run -p 8000:8000 amazon/dynamodb-local
    TRELLIS_E2E_TESTS=1 DYNAMODB_ENDPOINT_URL=http://localhost:8000 pytest tests/e2e
"""

import os
import socket
import time
import uuid
from urllib.parse import urlparse

import pytest

from trellis.config import DynamoConfig, StoreConfig
from trellis.dynamo import DynamoConnection
from trellis.store import EntityStore
from trellis.stream import CascadeHandler
from trellis.tools import create_core_tables, create_entity_table

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("TRELLIS_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set TRELLIS_E2E_TESTS=1 to enable.",
)

ENDPOINT_URL = os.environ.get("DYNAMODB_ENDPOINT_URL", "http://localhost:8000")


def wait_for_service(host: str, port: int, timeout: int = 60) -> bool:
    """Wait for a service to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(1)
    return False


@pytest.fixture
def table_prefix() -> str:
    """Unique table name prefix for test isolation."""
    return f"e2e_{uuid.uuid4().hex[:8]}"


@pytest.fixture
async def dynamo_client():
    """Client connected to DynamoDB Local."""
    if not E2E_ENABLED:
        pytest.skip("E2E tests disabled")

    endpoint = urlparse(ENDPOINT_URL)
    assert wait_for_service(endpoint.hostname or "localhost", endpoint.port or 8000), (
        "DynamoDB not ready"
    )

    config = DynamoConfig(
        region=os.environ.get("AWS_REGION", "us-east-1"),
        endpoint_url=ENDPOINT_URL,
        access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "local"),
        secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "local"),
    )
    async with DynamoConnection(config) as connection:
        yield connection.client


@pytest.fixture
def e2e_tables(table_prefix) -> dict[str, str]:
    """Entity table names for this test."""
    return {
        "organizations": f"{table_prefix}_organizations",
        "studios": f"{table_prefix}_studios",
    }


@pytest.fixture
async def e2e_store(dynamo_client, table_prefix, e2e_tables):
    """Entity store over freshly created tables."""
    config = StoreConfig(
        relationship_table=f"{table_prefix}_relationships",
        unique_table=f"{table_prefix}_unique",
        num_shards=4,
    )
    await create_core_tables(dynamo_client, config)
    for name in e2e_tables.values():
        await create_entity_table(dynamo_client, name)

    yield EntityStore(dynamo_client, config)

    for name in [config.relationship_table, config.unique_table, *e2e_tables.values()]:
        await dynamo_client.delete_table(TableName=name)


@pytest.fixture
def e2e_handler(e2e_store):
    return CascadeHandler(e2e_store)

"""
Shared fixtures: an in-memory DynamoDB with Trellis tables, and stores.
"""

import pytest

from tests.helpers import ENTITY_TABLES
from trellis.config import StoreConfig
from trellis.dynamo import InMemoryDynamoClient
from trellis.store import EntityStore
from trellis.stream import CascadeHandler
from trellis.tools import create_core_tables, create_entity_table


@pytest.fixture
async def dynamo():
    """In-memory DynamoDB with the core tables and test entity tables."""
    client = InMemoryDynamoClient()
    await create_core_tables(client, StoreConfig())
    for name, key_attr in ENTITY_TABLES.items():
        await create_entity_table(client, name, key_attr)
    return client


@pytest.fixture
def store(dynamo):
    """Single-shard entity store."""
    return EntityStore(dynamo, StoreConfig())


@pytest.fixture
def sharded_store(dynamo):
    """Entity store spreading relationship edges over 8 shards."""
    return EntityStore(dynamo, StoreConfig(num_shards=8))


@pytest.fixture
def handler(store):
    """Cascade handler over the single-shard store."""
    return CascadeHandler(store)

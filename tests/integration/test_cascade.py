"""
Integration tests for cascade delete over the in-memory change stream.

The in-memory client emits stream records for every entity table write;
pump_cascade() feeds them to the handler until the subtree settles.
"""

import logging

import pytest
from botocore.exceptions import ClientError

from tests.helpers import Organization, Studio, Title, pump_cascade
from trellis.config import DEFAULT_RELATIONSHIP_TABLE, DEFAULT_UNIQUE_TABLE
from trellis.dynamo import make_client_error
from trellis.errors import NotFoundError
from trellis.stream import CascadeState

ORG_REF = "organization#org-1"


@pytest.fixture
async def tree(store):
    """org-1 -> studio-1 (slug "acme") -> title-1, title-2."""
    await store.create(Organization("org-1"), {"id": {"S": "org-1"}})
    studio = Studio("studio-1", "org-1", "acme")
    await store.create(studio, studio.item())
    for title_id in ("title-1", "title-2"):
        await store.create(Title(title_id, "studio-1"), {"title_id": {"S": title_id}})
    store.client.drain_stream_records()
    return store


def ttl_of(item):
    return int(item["ttl"]["N"])


class TestCascadeDelete:
    """Tests for propagating a tombstone through a subtree."""

    @pytest.mark.asyncio
    async def test_whole_subtree_tombstoned(self, tree, dynamo, handler):
        """Every entity, edge and constraint gets the root's TTL."""
        await tree.delete(Organization("org-1"))
        (org,) = dynamo.all_items("organizations")
        root_ttl = ttl_of(org)

        await pump_cascade(dynamo, handler)

        for table in ("studios", "titles", DEFAULT_RELATIONSHIP_TABLE, DEFAULT_UNIQUE_TABLE):
            items = dynamo.all_items(table)
            assert items
            assert {ttl_of(item) for item in items} == {root_ttl}, table

        for table, key in (
            ("studios", {"id": {"S": "studio-1"}}),
            ("titles", {"title_id": {"S": "title-1"}}),
        ):
            with pytest.raises(NotFoundError):
                await tree.get(table, key)

    @pytest.mark.asyncio
    async def test_children_versions_bumped(self, tree, dynamo, handler):
        await tree.delete(Organization("org-1"))
        await pump_cascade(dynamo, handler)

        (studio,) = dynamo.all_items("studios")
        assert studio["version"] == {"N": "2"}

    @pytest.mark.asyncio
    async def test_deleted_children_still_enumerated(self, tree, dynamo, handler):
        await tree.delete(Organization("org-1"))
        await pump_cascade(dynamo, handler)

        children = await tree.query_all_children(ORG_REF)
        assert [child.ref for child in children] == ["studio#studio-1"]
        assert children[0].is_deleted
        assert not await tree.has_active_children(ORG_REF)
        assert not await tree.has_active_children("studio#studio-1")

    @pytest.mark.asyncio
    async def test_unique_value_reusable_after_expiry(self, tree, dynamo, handler):
        """Once TTL reclamation runs, the slug can be taken again."""
        await tree.delete(Studio("studio-1", "org-1", "acme"))
        await pump_cascade(dynamo, handler)

        dynamo.expire_items()

        studio = Studio("studio-9", "org-1", "acme")
        await tree.create(studio, studio.item())

    @pytest.mark.asyncio
    async def test_redelivery_is_harmless(self, tree, dynamo, handler):
        """Processing the same batch twice writes nothing the second time."""
        await tree.delete(Organization("org-1"))
        batch = {"Records": dynamo.drain_stream_records()}

        await handler.handle_cascade_delete(batch)
        snapshot = dynamo.all_items("studios")
        dynamo.drain_stream_records()

        await handler.handle_cascade_delete(batch)

        assert dynamo.all_items("studios") == snapshot
        assert dynamo.pending_stream_records == 0

    @pytest.mark.asyncio
    async def test_non_tombstone_events_ignored(self, tree, dynamo, handler):
        await tree.update(Organization("org-1"), {"name": {"S": "Renamed"}}, expected_version=1)
        (record,) = dynamo.drain_stream_records()

        assert await handler.process_record(record) is CascadeState.IGNORED
        assert await tree.has_active_children(ORG_REF)

    @pytest.mark.asyncio
    async def test_ttl_removal_ignored(self, tree, dynamo, handler):
        await tree.delete(Title("title-1", "studio-1"))
        await pump_cascade(dynamo, handler)

        dynamo.expire_items()
        records = dynamo.drain_stream_records()

        assert records
        assert all(record["eventName"] == "REMOVE" for record in records)
        for record in records:
            assert await handler.process_record(record) is CascadeState.IGNORED

    @pytest.mark.asyncio
    async def test_expiry_logged(self, tree, dynamo, handler, caplog):
        await tree.delete(Title("title-1", "studio-1"))
        await pump_cascade(dynamo, handler)
        dynamo.expire_items()

        with caplog.at_level(logging.DEBUG, logger="trellis.stream.cascade"):
            await handler.handle_cascade_delete({"Records": dynamo.drain_stream_records()})

        expired = [r for r in caplog.records if r.message == "Tombstoned item expired"]
        assert {r.table for r in expired} == {"titles"}
        assert {r.entity_ref for r in expired} == {"title#title-1"}

    @pytest.mark.asyncio
    async def test_source_logged(self, tree, dynamo, handler, caplog):
        await tree.delete(Organization("org-1"))
        (record,) = dynamo.drain_stream_records()

        with caplog.at_level(logging.INFO, logger="trellis.stream.cascade"):
            await handler.process_record(record)

        (started,) = [r for r in caplog.records if r.message == "Processing cascade delete"]
        assert started.table == "organizations"
        assert started.sequence_number == record["dynamodb"]["SequenceNumber"]
        assert started.entity_ref == ORG_REF


class TestCascadeFailures:
    """Tests for partial failures during propagation."""

    @pytest.mark.asyncio
    async def test_child_failure_is_skipped(self, tree, dynamo, handler, caplog):
        """One failing child does not stop its siblings."""
        error = make_client_error("InternalServerError", "boom", "UpdateItem")
        dynamo.inject_failure("UpdateItem", error, table="titles")

        await tree.delete(Studio("studio-1", "org-1", "acme"))
        with caplog.at_level(logging.WARNING, logger="trellis.stream.cascade"):
            await handler.handle_cascade_delete({"Records": dynamo.drain_stream_records()})

        assert any("Failed to set TTL on child" in r.message for r in caplog.records)
        tombstoned = [item for item in dynamo.all_items("titles") if "ttl" in item]
        assert len(tombstoned) == 1
        # The studio's own edge and constraint were still handled
        assert all("ttl" in item for item in dynamo.all_items(DEFAULT_UNIQUE_TABLE))

    @pytest.mark.asyncio
    async def test_retry_completes_partial_cascade(self, tree, dynamo, handler):
        error = make_client_error("InternalServerError", "boom", "UpdateItem")
        dynamo.inject_failure("UpdateItem", error, table="titles")

        await tree.delete(Studio("studio-1", "org-1", "acme"))
        batch = {"Records": dynamo.drain_stream_records()}
        await handler.handle_cascade_delete(batch)
        await handler.handle_cascade_delete(batch)
        await pump_cascade(dynamo, handler)

        assert all("ttl" in item for item in dynamo.all_items("titles"))
        assert not await tree.has_active_children("studio#studio-1")

    @pytest.mark.asyncio
    async def test_child_listing_failure_fails_batch(self, tree, dynamo, handler):
        """A failed child query raises so the batch is redelivered."""
        error = make_client_error("ProvisionedThroughputExceededException", "slow down", "Query")
        dynamo.inject_failure("Query", error, table=DEFAULT_RELATIONSHIP_TABLE)

        await tree.delete(Organization("org-1"))
        batch = {"Records": dynamo.drain_stream_records()}

        with pytest.raises(ClientError):
            await handler.handle_cascade_delete(batch)

        assert not any("ttl" in item for item in dynamo.all_items("studios"))

        await handler.handle_cascade_delete(batch)
        assert all("ttl" in item for item in dynamo.all_items("studios"))

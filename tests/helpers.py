"""
Test entities and helpers shared across the test suite.

Hierarchy:
    Organization (root, table "organizations", key "id")
    └── Studio (unique "slug", table "studios", key "id")
        └── Title (table "titles", key "title_id")
"""

from __future__ import annotations

from trellis.dynamo import InMemoryDynamoClient
from trellis.store import Capability, ConditionCheck, Entity, make_ref
from trellis.stream import CascadeHandler

# Entity table name -> hash key attribute
ENTITY_TABLES = {"organizations": "id", "studios": "id", "titles": "title_id"}


class Organization(Entity):
    """Root entity."""

    def __init__(self, id: str) -> None:
        self.id = id

    def table_name(self) -> str:
        return "organizations"

    def get_key(self):
        return {"id": {"S": self.id}}

    def entity_ref(self) -> str:
        return make_ref("organization", self.id)

    def entity_type(self) -> str:
        return "organization"


class Studio(Entity):
    """Child of an organization with a unique slug."""

    capabilities = frozenset({Capability.PARENT_CHECK, Capability.UNIQUE_FIELDS})

    def __init__(self, id: str, org_id: str, slug: str) -> None:
        self.id = id
        self.org_id = org_id
        self.slug = slug

    def table_name(self) -> str:
        return "studios"

    def get_key(self):
        return {"id": {"S": self.id}}

    def entity_ref(self) -> str:
        return make_ref("studio", self.id)

    def entity_type(self) -> str:
        return "studio"

    def parent_check(self) -> ConditionCheck:
        return ConditionCheck("organizations", {"id": {"S": self.org_id}})

    def parent_ref(self) -> str:
        return make_ref("organization", self.org_id)

    def unique_fields(self) -> dict[str, str]:
        return {"slug": self.slug}

    def item(self, **attrs):
        item = {"id": {"S": self.id}, "slug": {"S": self.slug}}
        item.update({k: {"S": v} for k, v in attrs.items()})
        return item


class Title(Entity):
    """Child of a studio, keyed on title_id."""

    capabilities = frozenset({Capability.PARENT_CHECK})

    def __init__(self, title_id: str, studio_id: str) -> None:
        self.title_id = title_id
        self.studio_id = studio_id

    def table_name(self) -> str:
        return "titles"

    def get_key(self):
        return {"title_id": {"S": self.title_id}}

    def entity_ref(self) -> str:
        return make_ref("title", self.title_id)

    def entity_type(self) -> str:
        return "title"

    def parent_check(self) -> ConditionCheck:
        return ConditionCheck("studios", {"id": {"S": self.studio_id}})

    def parent_ref(self) -> str:
        return make_ref("studio", self.studio_id)


async def pump_cascade(
    client: InMemoryDynamoClient, handler: CascadeHandler, max_rounds: int = 20
) -> int:
    """Deliver pending stream records to the handler until none remain.

    Returns:
        Total number of records delivered
    """
    delivered = 0
    for _ in range(max_rounds):
        records = client.drain_stream_records()
        if not records:
            return delivered
        await handler.handle_cascade_delete({"Records": records})
        delivered += len(records)
    raise AssertionError(f"cascade did not settle after {max_rounds} rounds")

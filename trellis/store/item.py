"""
Data types returned by and passed to EntityStore.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from ..dynamo.attributes import AttributeMap, get_int, get_map, get_string, get_string_list

# Attribute names managed by the store on entity items
ATTR_ENTITY_REF = "entity_ref"
ATTR_PARENT_REF = "parent_ref"
ATTR_VERSION = "version"
ATTR_CREATED_AT = "created_at"
ATTR_UPDATED_AT = "updated_at"
ATTR_TTL = "ttl"
ATTR_UNIQUE_PKS = "_unique_pks"

MANAGED_ATTRIBUTES = frozenset(
    {
        ATTR_ENTITY_REF,
        ATTR_PARENT_REF,
        ATTR_VERSION,
        ATTR_CREATED_AT,
        ATTR_UPDATED_AT,
        ATTR_TTL,
        ATTR_UNIQUE_PKS,
    }
)


@dataclass
class Item:
    """A retrieved entity item with its managed fields decoded.

    Attributes:
        raw: The item in DynamoDB wire shape
        version: Optimistic lock version (1 after create)
        created_at: RFC 3339 creation timestamp
        updated_at: RFC 3339 last update timestamp
        entity_ref: Type-qualified entity reference
        parent_ref: Parent's entity reference ("" for roots)
        ttl: Tombstone time in Unix seconds, None when active
        unique_pks: Unique constraint keys held by the entity
    """

    raw: AttributeMap
    version: int = 0
    created_at: str = ""
    updated_at: str = ""
    entity_ref: str = ""
    parent_ref: str = ""
    ttl: int | None = None
    unique_pks: list[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: AttributeMap) -> Item:
        return cls(
            raw=raw,
            version=get_int(raw, ATTR_VERSION) or 0,
            created_at=get_string(raw, ATTR_CREATED_AT),
            updated_at=get_string(raw, ATTR_UPDATED_AT),
            entity_ref=get_string(raw, ATTR_ENTITY_REF),
            parent_ref=get_string(raw, ATTR_PARENT_REF),
            ttl=get_int(raw, ATTR_TTL),
            unique_pks=get_string_list(raw, ATTR_UNIQUE_PKS),
        )

    @property
    def is_deleted(self) -> bool:
        return self.ttl is not None and self.ttl <= int(time.time())

    def get(self, name: str) -> Any:
        """Native value of a scalar attribute (None when missing)."""
        value = self.raw.get(name)
        if not value:
            return None
        (_, raw), = value.items()
        return raw


@dataclass
class ChildRef:
    """A child entity as recorded in the relationship table.

    Attributes:
        ref: Child's entity reference
        table_name: Table holding the child
        key: Child's primary key
        shard_pk: Relationship table partition key the edge lives under
        ttl: Edge tombstone time, None when active
    """

    ref: str
    table_name: str
    key: AttributeMap
    shard_pk: str
    ttl: int | None = None

    @classmethod
    def from_edge(cls, edge: AttributeMap, shard_pk: str) -> ChildRef:
        return cls(
            ref=get_string(edge, "child_ref"),
            table_name=get_string(edge, "child_table"),
            key=get_map(edge, "child_key"),
            shard_pk=shard_pk,
            ttl=get_int(edge, ATTR_TTL),
        )

    @property
    def is_deleted(self) -> bool:
        return self.ttl is not None and self.ttl <= int(time.time())


@dataclass
class QueryInput:
    """Parameters for EntityStore.query.

    The tombstone filter is always merged into filter_expression; the
    ``#ttl`` and ``:now`` placeholders are reserved for it.

    Attributes:
        table_name: Table to query
        key_condition_expression: DynamoDB key condition
        index_name: Optional GSI/LSI
        filter_expression: Optional filter
        expression_attribute_names: Name placeholders
        expression_attribute_values: Value placeholders
        limit: Items evaluated per page (None for DynamoDB's default)
        scan_index_forward: Sort order, None for DynamoDB's default
    """

    table_name: str
    key_condition_expression: str
    index_name: str = ""
    filter_expression: str = ""
    expression_attribute_names: dict[str, str] = field(default_factory=dict)
    expression_attribute_values: AttributeMap = field(default_factory=dict)
    limit: int | None = None
    scan_index_forward: bool | None = None


@dataclass(frozen=True)
class DeleteOptions:
    """Delete behaviour.

    Attributes:
        cascade: Tombstone children through the change stream
        orphan_protect: Refuse to delete while active children exist
            (ignored when cascade is set)
        error_if_deleted: Raise AlreadyDeletedError instead of succeeding
            silently when the entity already carries a TTL
    """

    cascade: bool = False
    orphan_protect: bool = False
    error_if_deleted: bool = False

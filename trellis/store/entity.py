"""
Entity definition contract.

Callers describe each storable type by subclassing Entity. The store never
inspects concrete classes: optional behaviour is declared through the
class-level ``capabilities`` set.

- Capability.PARENT_CHECK: parent_check() and parent_ref() are meaningful
- Capability.UNIQUE_FIELDS: unique_fields() returns values that must be
  unique within the parent scope

Invariants:
    - entity_ref() is globally unique and formatted "type#id"
    - get_key() returns the complete DynamoDB primary key of the item
    - parent_ref() is "" for root entities

How to change safely:
    - New optional behaviours get a new Capability member and a default
      implementation on Entity, so existing subclasses keep working
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from ..dynamo.attributes import AttributeMap


class Capability(Enum):
    """Optional behaviours an entity type can declare."""

    PARENT_CHECK = "parent_check"
    UNIQUE_FIELDS = "unique_fields"


@dataclass(frozen=True)
class ConditionCheck:
    """Parent existence check placed in a create transaction.

    Attributes:
        table_name: Table holding the parent
        key: Parent's primary key
        condition_expr: Custom condition; when empty the parent must exist
            and not be tombstoned. May use the ``#ttl`` and ``:now``
            placeholders.
    """

    table_name: str
    key: AttributeMap = field(default_factory=dict)
    condition_expr: str = ""


class Entity(ABC):
    """Base class for all storable types.

    Example:
        >>> class Studio(Entity):
        ...     capabilities = frozenset({Capability.PARENT_CHECK, Capability.UNIQUE_FIELDS})
        ...
        ...     def __init__(self, id, org_id, slug):
        ...         self.id, self.org_id, self.slug = id, org_id, slug
        ...
        ...     def table_name(self): return "studios"
        ...     def get_key(self): return {"id": {"S": self.id}}
        ...     def entity_ref(self): return make_ref("studio", self.id)
        ...     def entity_type(self): return "studio"
        ...     def parent_check(self):
        ...         return ConditionCheck("organizations", {"id": {"S": self.org_id}})
        ...     def parent_ref(self): return make_ref("organization", self.org_id)
        ...     def unique_fields(self): return {"slug": self.slug}
    """

    capabilities: ClassVar[frozenset[Capability]] = frozenset()

    @abstractmethod
    def table_name(self) -> str:
        """DynamoDB table holding this entity type."""

    @abstractmethod
    def get_key(self) -> AttributeMap:
        """Primary key of this entity."""

    @abstractmethod
    def entity_ref(self) -> str:
        """Type-qualified reference, e.g. "studio#123"."""

    @abstractmethod
    def entity_type(self) -> str:
        """Entity type name, e.g. "studio"."""

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def parent_check(self) -> ConditionCheck | None:
        """Condition check for parent validation, None to skip it."""
        return None

    def parent_ref(self) -> str:
        return ""

    def unique_fields(self) -> dict[str, str]:
        return {}


def make_ref(entity_type: str, entity_id: str) -> str:
    """Build an entity reference ("type#id")."""
    return f"{entity_type}#{entity_id}"

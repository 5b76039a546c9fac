"""
Relationship registry.

Records which child types hang off which parent types so that tooling can
discover the cascade topology. The store itself only carries the registry;
cascade propagation follows the relationship table, not the registry.

Invariants:
    - Relationships are returned in registration order
    - The registry is constructed explicitly and passed where needed;
      there is no module-level instance

Example:
    >>> registry = RelationshipRegistry()
    >>> registry.register(Relationship("organization", "studio", "studios", "organization_id"))
    >>> [r.child_type for r in registry.children_of("organization")]
    ['studio']
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Relationship:
    """A parent-child relationship between entity types.

    Attributes:
        parent_type: Parent entity type (e.g. "organization")
        child_type: Child entity type (e.g. "studio")
        child_table_name: Table holding the child (e.g. "studios")
        parent_key_attr: Child attribute referencing the parent
            (e.g. "organization_id")
    """

    parent_type: str
    child_type: str
    child_table_name: str
    parent_key_attr: str


class RelationshipRegistry:
    """Registry of parent-child relationships.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups return copies
    """

    def __init__(self) -> None:
        self._relationships: list[Relationship] = []
        self._by_parent: dict[str, list[Relationship]] = {}
        self._lock = threading.Lock()

    def register(self, relationship: Relationship) -> None:
        """Add a relationship."""
        with self._lock:
            self._relationships.append(relationship)
            self._by_parent.setdefault(relationship.parent_type, []).append(relationship)
        logger.debug(
            f"Registered relationship: {relationship.parent_type} -> {relationship.child_type}"
        )

    def children_of(self, parent_type: str) -> list[Relationship]:
        """Child relationships of a parent type."""
        return list(self._by_parent.get(parent_type, ()))

    def all_relationships(self) -> list[Relationship]:
        return list(self._relationships)

    def has_children(self, parent_type: str) -> bool:
        return bool(self._by_parent.get(parent_type))

    def __len__(self) -> int:
        return len(self._relationships)

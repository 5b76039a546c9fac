"""
Cascade delete over DynamoDB Streams.

When an entity is tombstoned (its ttl goes from absent to set), the
handler propagates the same ttl to:
1. Every child recorded under the entity in the relationship table
2. The entity's own relationship record under its parent
3. The unique constraint records the entity holds

Tombstoning a child produces another MODIFY event on the child's table,
so the cascade walks the subtree one level per delivery.

Invariants:
    - Only MODIFY events whose ttl goes from absent/0 to non-zero act
    - Every write is a conditional "ttl absent" update, so redelivery of
      the same record performs no further changes
    - A failure to list children fails the record (and the batch) so the
      delivery mechanism retries it
    - Failures on individual children, the edge or a unique record are
      logged and skipped

How to change safely:
    - Never add unconditional writes here; redelivery must stay harmless
    - Keep attribute names in sync with EntityStore
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from ..store.store import EntityStore
from .records import (
    EVENT_MODIFY,
    ChangeEvent,
    get_number_attr,
    get_string_attr,
    get_string_list_attr,
)

logger = logging.getLogger(__name__)


class CascadeState(Enum):
    """What the handler does with one change event."""

    IGNORED = "ignored"
    PROPAGATING = "propagating"


def cascade_state(event: ChangeEvent) -> CascadeState:
    """Classify a change event.

    Propagates only when the tombstone was set by this very event.
    """
    if event.event_name != EVENT_MODIFY:
        return CascadeState.IGNORED
    old_ttl = get_number_attr(event.old_image, "ttl")
    new_ttl = get_number_attr(event.new_image, "ttl")
    if old_ttl != 0 or new_ttl == 0:
        return CascadeState.IGNORED
    return CascadeState.PROPAGATING


class CascadeHandler:
    """Processes change stream batches to propagate tombstones.

    Attributes:
        store: Entity store used for child lookups and TTL writes
        logger: Logger for progress and skipped failures

    Example:
        >>> handler = CascadeHandler(store)
        >>> await handler.handle_cascade_delete({"Records": records})
    """

    def __init__(self, store: EntityStore, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    async def handle_cascade_delete(self, event: dict[str, Any]) -> None:
        """Process a batch of stream records in order.

        Raises:
            Exception: The first record failure, so the batch is retried
        """
        for record in event.get("Records") or []:
            try:
                await self.process_record(record)
            except Exception as e:
                self.logger.error(
                    f"Failed to process record: {e}",
                    extra={"event_id": record.get("eventID", "")},
                )
                raise

    async def process_record(self, record: dict[str, Any]) -> CascadeState:
        """Process one stream record.

        Returns:
            Whether the record was ignored or propagated
        """
        event = ChangeEvent.from_record(record)
        state = cascade_state(event)
        if state is CascadeState.IGNORED:
            if event.is_ttl_removal:
                self.logger.debug(
                    "Tombstoned item expired",
                    extra={
                        "table": event.table_name,
                        "entity_ref": get_string_attr(event.old_image, "entity_ref"),
                    },
                )
            return state

        ttl = get_number_attr(event.new_image, "ttl")
        entity_ref = get_string_attr(event.new_image, "entity_ref")
        parent_ref = get_string_attr(event.new_image, "parent_ref")
        unique_pks = get_string_list_attr(event.new_image, "_unique_pks")

        self.logger.info(
            "Processing cascade delete",
            extra={
                "table": event.table_name,
                "sequence_number": event.sequence_number,
                "entity_ref": entity_ref,
                "parent_ref": parent_ref,
                "ttl": ttl,
            },
        )

        # 1. Children, deleted ones included
        children = await self.store.query_all_children(entity_ref)

        self.logger.info(
            "Found children to cascade",
            extra={"entity_ref": entity_ref, "child_count": len(children)},
        )

        # 2. Same ttl on each child; each one cascades through its own event
        for child in children:
            try:
                await self.store.set_ttl_by_key(child.table_name, child.key, ttl)
            except Exception as e:
                self.logger.warning(
                    f"Failed to set TTL on child: {e}",
                    extra={"child_ref": child.ref, "entity_ref": entity_ref},
                )

        # 3. This entity's edge under its parent
        if parent_ref:
            try:
                await self.store.set_relationship_ttl(entity_ref, parent_ref, ttl)
            except Exception as e:
                self.logger.warning(
                    f"Failed to set relationship TTL: {e}",
                    extra={"entity_ref": entity_ref, "parent_ref": parent_ref},
                )

        # 4. Unique constraint records
        for pk in unique_pks:
            try:
                await self.store.set_unique_constraint_ttl(pk, ttl)
            except Exception as e:
                self.logger.warning(
                    f"Failed to set unique constraint TTL: {e}",
                    extra={"pk": pk, "entity_ref": entity_ref},
                )

        self.logger.info(
            "Cascade delete completed",
            extra={
                "entity_ref": entity_ref,
                "children_processed": len(children),
                "unique_constraints": len(unique_pks),
            },
        )
        return state

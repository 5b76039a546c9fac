"""
Entity store for Trellis.

EntityStore layers relational guarantees over DynamoDB:
- Parent existence checks on create (atomic with the child put)
- Unique fields scoped to the parent, reserved in a ledger table
- Optimistic locking through a version counter
- Soft delete through TTL, with orphan protection
- Sharded parent -> child relationship records for cascade delete

Invariants:
    - Every multi-item write is one TransactWriteItems call; a create or
      unique-changing update is all-or-nothing
    - Deleted items (ttl <= now) are never returned by get() or query()
    - TTL is only ever set when absent, so every TTL write is idempotent
    - version is 1 after create and increases by exactly one on each
      update or tombstone
    - Unclassified DynamoDB errors propagate unchanged

How to change safely:
    - Attribute names and key derivations are a contract with existing
      tables and with the cascade handler
    - Keep new conditional transaction items tagged with an ItemRole
    - Test with the in-memory client, then against DynamoDB Local
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from botocore.exceptions import ClientError

from ..config import StoreConfig
from ..dynamo.attributes import AttributeMap, n, s, string_list
from ..dynamo.base import DynamoClient, is_conditional_check_failed
from ..errors import (
    AlreadyDeletedError,
    ConcurrentModificationError,
    HasChildrenError,
    NotFoundError,
)
from ..shard import relationship_pk, shard_pk, unique_constraint_pk
from .entity import Capability, ConditionCheck, Entity
from .item import (
    ATTR_CREATED_AT,
    ATTR_ENTITY_REF,
    ATTR_PARENT_REF,
    ATTR_UNIQUE_PKS,
    ATTR_UPDATED_AT,
    ATTR_VERSION,
    MANAGED_ATTRIBUTES,
    ChildRef,
    DeleteOptions,
    Item,
    QueryInput,
)
from .registry import RelationshipRegistry
from .transaction import ItemRole, TransactionPlan
from .ttl import (
    is_deleted,
    merge_expr_names,
    merge_expr_values,
    now_iso,
    now_unix,
    parent_exists_condition,
    prune_placeholders,
    ttl_filter_expr,
    ttl_filter_names,
    ttl_filter_values,
)

logger = logging.getLogger(__name__)

# Sort key of every unique constraint record
CONSTRAINT_SK = "CONSTRAINT"

_VERSION_GUARD = "#version = :expected_version AND attribute_not_exists(#ttl)"


class EntityStore:
    """DynamoDB operations with hierarchical entity support.

    Attributes:
        client: Low-level DynamoDB client (aiobotocore or in-memory)
        config: Store configuration (num_shards already clamped)

    Example:
        >>> store = EntityStore(client, StoreConfig(num_shards=4))
        >>> await store.create(org, {"id": {"S": "org-1"}, "name": {"S": "Acme"}})
        >>> item = await store.get("organizations", {"id": {"S": "org-1"}})
        >>> item.version
        1
    """

    def __init__(
        self,
        client: DynamoClient,
        config: StoreConfig | None = None,
        registry: RelationshipRegistry | None = None,
    ) -> None:
        self.client = client
        self.config = (config or StoreConfig()).validated()
        self._registry = registry

    @property
    def registry(self) -> RelationshipRegistry | None:
        """Relationship registry, None if not set."""
        return self._registry

    def set_registry(self, registry: RelationshipRegistry) -> None:
        self._registry = registry

    def relationship_pk(self, parent_ref: str, child_ref: str) -> str:
        return relationship_pk(parent_ref, child_ref, self.config.num_shards)

    # =========================================================================
    # Create
    # =========================================================================

    async def create(self, entity: Entity, item: AttributeMap) -> Item:
        """Create an entity with parent validation and unique constraints.

        The caller's item is not modified; the stored item is a copy stamped
        with the managed attributes.

        Args:
            entity: Entity being created
            item: Attributes to store, including the primary key

        Returns:
            The stored item

        Raises:
            ParentNotFoundError: Parent missing or deleted
            AlreadyExistsError: Primary key already taken
            DuplicateValueError: A unique field value is already held
            ValueError: Too many unique fields for one transaction
        """
        now = now_unix()
        timestamp = now_iso()
        entity_ref = entity.entity_ref()
        plan = TransactionPlan()

        # 1. Parent check goes first
        if entity.has_capability(Capability.PARENT_CHECK):
            check = entity.parent_check()
            if check is not None:
                plan.add(ItemRole.PARENT_CHECK, "ConditionCheck", self._parent_check(check, now))

        # 2. Managed fields
        stored = dict(item)
        stored[ATTR_ENTITY_REF] = s(entity_ref)
        stored[ATTR_VERSION] = n(1)
        stored[ATTR_CREATED_AT] = s(timestamp)
        stored[ATTR_UPDATED_AT] = s(timestamp)

        parent_ref = ""
        if entity.has_capability(Capability.PARENT_CHECK):
            parent_ref = entity.parent_ref()
            if parent_ref:
                stored[ATTR_PARENT_REF] = s(parent_ref)

        # 3. Unique constraint reservations
        unique_pks: list[str] = []
        if entity.has_capability(Capability.UNIQUE_FIELDS) and parent_ref:
            entity_type = entity.entity_type()
            for field_name, value in entity.unique_fields().items():
                pk = unique_constraint_pk(parent_ref, entity_type, field_name, value)
                unique_pks.append(pk)
                plan.add(
                    ItemRole.CONSTRAINT_PUT,
                    "Put",
                    self._constraint_put(pk, parent_ref, entity_type, field_name, value, entity_ref),
                )
        if unique_pks:
            stored[ATTR_UNIQUE_PKS] = string_list(unique_pks)

        # 4. The entity itself
        key = entity.get_key()
        key_attr = next(iter(key), "id")
        plan.add(
            ItemRole.ENTITY_PUT,
            "Put",
            {
                "TableName": entity.table_name(),
                "Item": stored,
                "ConditionExpression": "attribute_not_exists(#key)",
                "ExpressionAttributeNames": {"#key": key_attr},
            },
        )

        # 5. Relationship record
        if parent_ref:
            plan.add(
                ItemRole.RELATIONSHIP_PUT,
                "Put",
                {
                    "TableName": self.config.relationship_table,
                    "Item": {
                        "pk": s(self.relationship_pk(parent_ref, entity_ref)),
                        "child_ref": s(entity_ref),
                        "parent_ref": s(parent_ref),
                        "child_table": s(entity.table_name()),
                        "child_key": {"M": dict(key)},
                    },
                },
            )

        await plan.execute(self.client)

        logger.debug(
            "Created entity",
            extra={
                "entity_ref": entity_ref,
                "parent_ref": parent_ref,
                "table": entity.table_name(),
                "unique_fields": len(unique_pks),
            },
        )
        return Item.from_raw(stored)

    def _parent_check(self, check: ConditionCheck, now: int) -> dict[str, Any]:
        if check.condition_expr:
            expr = check.condition_expr
            names, values = prune_placeholders(ttl_filter_names(), ttl_filter_values(now), expr)
        else:
            expr, names = parent_exists_condition(next(iter(check.key), "id"))
            values = ttl_filter_values(now)

        params: dict[str, Any] = {
            "TableName": check.table_name,
            "Key": check.key,
            "ConditionExpression": expr,
        }
        if names:
            params["ExpressionAttributeNames"] = names
        if values:
            params["ExpressionAttributeValues"] = values
        return params

    def _constraint_put(
        self,
        pk: str,
        parent_ref: str,
        entity_type: str,
        field_name: str,
        value: str,
        entity_ref: str,
    ) -> dict[str, Any]:
        return {
            "TableName": self.config.unique_table,
            "Item": {
                "pk": s(pk),
                "sk": s(CONSTRAINT_SK),
                "parent_ref": s(parent_ref),
                "entity_type": s(entity_type),
                "field_name": s(field_name),
                "field_value": s(value),
                "entity_ref": s(entity_ref),
            },
            "ConditionExpression": "attribute_not_exists(pk)",
        }

    # =========================================================================
    # Read
    # =========================================================================

    async def get(self, table: str, key: AttributeMap, consistent_read: bool = False) -> Item:
        """Get an entity by key.

        Raises:
            NotFoundError: Item missing or deleted
        """
        response = await self.client.get_item(
            TableName=table, Key=key, ConsistentRead=consistent_read
        )
        raw = response.get("Item")
        if not raw or is_deleted(raw):
            raise NotFoundError(details={"table": table})
        return Item.from_raw(raw)

    async def query(self, query: QueryInput) -> list[Item]:
        """Query entities, excluding deleted ones, across all pages.

        The tombstone filter is always applied; the caller's filter is
        combined with it.
        """
        filter_expr = ttl_filter_expr()
        if query.filter_expression:
            filter_expr = f"({query.filter_expression}) AND ({filter_expr})"

        params: dict[str, Any] = {
            "TableName": query.table_name,
            "KeyConditionExpression": query.key_condition_expression,
            "FilterExpression": filter_expr,
            "ExpressionAttributeNames": merge_expr_names(
                ttl_filter_names(), query.expression_attribute_names
            ),
            "ExpressionAttributeValues": merge_expr_values(
                ttl_filter_values(), query.expression_attribute_values
            ),
        }
        if query.index_name:
            params["IndexName"] = query.index_name
        if query.limit:
            params["Limit"] = query.limit
        if query.scan_index_forward is not None:
            params["ScanIndexForward"] = query.scan_index_forward

        items: list[Item] = []
        async for page in self._query_pages(params):
            items.extend(Item.from_raw(raw) for raw in page.get("Items", []))
        return items

    async def _query_pages(self, params: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Yield Query responses until LastEvaluatedKey runs out."""
        params = dict(params)
        while True:
            page = await self.client.query(**params)
            yield page
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                return
            params["ExclusiveStartKey"] = last_key

    # =========================================================================
    # Update
    # =========================================================================

    async def update(self, entity: Entity, item: AttributeMap, expected_version: int) -> None:
        """Update an entity with optimistic locking.

        Entities with unique fields and a parent re-reserve changed unique
        values in the same transaction as the update.

        Args:
            entity: Entity being updated
            item: Attributes to set; managed and key attributes are ignored
            expected_version: Version the caller last read

        Raises:
            ConcurrentModificationError: Version mismatch or entity deleted
            DuplicateValueError: A new unique value is already held
            NotFoundError: Entity missing (unique-aware path only)
        """
        if (
            entity.has_capability(Capability.UNIQUE_FIELDS)
            and entity.has_capability(Capability.PARENT_CHECK)
            and entity.parent_ref()
        ):
            await self._update_with_unique_constraints(entity, item, expected_version)
            return
        await self._update_simple(entity, item, expected_version)

    def _update_params(
        self,
        entity: Entity,
        item: AttributeMap,
        expected_version: int,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        key = entity.get_key()
        skip = MANAGED_ATTRIBUTES | set(key)

        names = {"#updated_at": ATTR_UPDATED_AT, "#version": ATTR_VERSION, "#ttl": "ttl"}
        values: AttributeMap = {
            ":updated_at": s(now_iso()),
            ":one": n(1),
            ":expected_version": n(expected_version),
        }
        clauses = []
        index = 0
        for attr, value in item.items():
            if attr in skip:
                continue
            names[f"#attr{index}"] = attr
            values[f":val{index}"] = value
            clauses.append(f"#attr{index} = :val{index}")
            index += 1

        for attr, value in (extra or {}).items():
            placeholder = attr.lstrip("_")
            names[f"#{placeholder}"] = attr
            values[f":{placeholder}"] = value
            clauses.append(f"#{placeholder} = :{placeholder}")

        clauses.extend(["#updated_at = :updated_at", "#version = #version + :one"])

        return {
            "TableName": entity.table_name(),
            "Key": key,
            "UpdateExpression": "SET " + ", ".join(clauses),
            "ConditionExpression": _VERSION_GUARD,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }

    async def _update_simple(self, entity: Entity, item: AttributeMap, expected_version: int) -> None:
        try:
            await self.client.update_item(**self._update_params(entity, item, expected_version))
        except ClientError as e:
            if is_conditional_check_failed(e):
                raise ConcurrentModificationError(
                    details={"entity_ref": entity.entity_ref(), "expected_version": expected_version}
                ) from e
            raise

    async def _update_with_unique_constraints(
        self, entity: Entity, item: AttributeMap, expected_version: int
    ) -> None:
        current = await self.get(entity.table_name(), entity.get_key(), consistent_read=True)

        parent_ref = entity.parent_ref()
        entity_type = entity.entity_type()
        entity_ref = entity.entity_ref()
        new_uniques = entity.unique_fields()

        old_uniques: dict[str, str] = {}
        for field_name in new_uniques:
            value = current.raw.get(field_name)
            if isinstance(value, dict) and "S" in value:
                old_uniques[field_name] = value["S"]

        changed = [f for f, v in new_uniques.items() if old_uniques.get(f) != v]
        if not changed:
            await self._update_simple(entity, item, expected_version)
            return

        plan = TransactionPlan()
        for field_name in changed:
            old_value = old_uniques.get(field_name, "")
            new_value = new_uniques[field_name]
            if old_value:
                plan.add(
                    ItemRole.CONSTRAINT_DELETE,
                    "Delete",
                    {
                        "TableName": self.config.unique_table,
                        "Key": {
                            "pk": s(unique_constraint_pk(parent_ref, entity_type, field_name, old_value)),
                            "sk": s(CONSTRAINT_SK),
                        },
                    },
                )
            plan.add(
                ItemRole.CONSTRAINT_PUT,
                "Put",
                self._constraint_put(
                    unique_constraint_pk(parent_ref, entity_type, field_name, new_value),
                    parent_ref,
                    entity_type,
                    field_name,
                    new_value,
                    entity_ref,
                ),
            )

        unique_pks = [
            unique_constraint_pk(parent_ref, entity_type, f, v) for f, v in new_uniques.items()
        ]
        plan.add(
            ItemRole.ENTITY_UPDATE,
            "Update",
            self._update_params(
                entity, item, expected_version, extra={ATTR_UNIQUE_PKS: string_list(unique_pks)}
            ),
        )

        await plan.execute(self.client)

        logger.debug(
            "Updated entity unique fields",
            extra={"entity_ref": entity_ref, "changed_fields": changed},
        )

    # =========================================================================
    # Delete / TTL
    # =========================================================================

    async def delete(self, entity: Entity, options: DeleteOptions | None = None) -> None:
        """Delete an entity by setting its TTL.

        Raises:
            HasChildrenError: orphan_protect is set, cascade is not, and the
                entity has active children
            AlreadyDeletedError: error_if_deleted is set and the entity
                already carries a TTL
            NotFoundError: error_if_deleted is set and the entity is missing
        """
        options = options or DeleteOptions()
        entity_ref = entity.entity_ref()

        if options.orphan_protect and not options.cascade:
            if await self.has_active_children(entity_ref):
                raise HasChildrenError(details={"entity_ref": entity_ref})

        applied = await self.set_ttl(entity)
        if not applied and options.error_if_deleted:
            response = await self.client.get_item(
                TableName=entity.table_name(), Key=entity.get_key(), ConsistentRead=True
            )
            if "Item" not in response:
                raise NotFoundError(details={"entity_ref": entity_ref})
            raise AlreadyDeletedError(details={"entity_ref": entity_ref})

        logger.info(
            "Deleted entity",
            extra={"entity_ref": entity_ref, "cascade": options.cascade, "applied": applied},
        )

    async def set_ttl(self, entity: Entity) -> bool:
        """Mark an entity deleted now and bump its version.

        Returns:
            False if the entity already had a TTL (or does not exist)
        """
        return await self.set_ttl_by_key(entity.table_name(), entity.get_key(), now_unix())

    async def set_ttl_by_key(self, table: str, key: AttributeMap, ttl: int) -> bool:
        """Set TTL on an entity by table and key, bumping its version.

        Used by cascade delete to tombstone children.

        Returns:
            False if the entity already had a TTL (or does not exist)
        """
        return await self._set_ttl(
            table,
            key,
            "SET #ttl = :ttl, #version = #version + :one",
            {"#version": ATTR_VERSION},
            {":ttl": n(ttl), ":one": n(1)},
        )

    async def set_relationship_ttl(self, child_ref: str, parent_ref: str, ttl: int) -> bool:
        """Set TTL on the relationship record between a parent and a child."""
        key = {
            "pk": s(self.relationship_pk(parent_ref, child_ref)),
            "child_ref": s(child_ref),
        }
        return await self._set_ttl(
            self.config.relationship_table, key, "SET #ttl = :ttl", {}, {":ttl": n(ttl)}
        )

    async def set_unique_constraint_ttl(self, pk: str, ttl: int) -> bool:
        """Set TTL on a unique constraint record."""
        key = {"pk": s(pk), "sk": s(CONSTRAINT_SK)}
        return await self._set_ttl(
            self.config.unique_table, key, "SET #ttl = :ttl", {}, {":ttl": n(ttl)}
        )

    async def _set_ttl(
        self,
        table: str,
        key: AttributeMap,
        update_expr: str,
        names: dict[str, str],
        values: AttributeMap,
    ) -> bool:
        if not key:
            raise ValueError(f"empty key for TTL write on table {table!r}")
        # Only existing items without a TTL; a failed condition is a no-op
        try:
            await self.client.update_item(
                TableName=table,
                Key=key,
                UpdateExpression=update_expr,
                ConditionExpression="attribute_exists(#key) AND attribute_not_exists(#ttl)",
                ExpressionAttributeNames={"#key": next(iter(key)), **ttl_filter_names(), **names},
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if is_conditional_check_failed(e):
                return False
            raise
        return True

    # =========================================================================
    # Children
    # =========================================================================

    async def has_active_children(self, entity_ref: str) -> bool:
        """Whether an entity has any active (non-deleted) children.

        With more than one shard, all shards are probed concurrently and the
        first positive answer cancels the rest.
        """
        now = now_unix()
        num_shards = self.config.num_shards

        if num_shards == 1:
            return await self._shard_has_active_child(shard_pk(entity_ref, 0), now)

        tasks = {
            asyncio.create_task(self._shard_has_active_child(shard_pk(entity_ref, shard), now))
            for shard in range(num_shards)
        }
        pending = tasks
        errors: list[BaseException] = []
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        errors.append(exc)
                    elif task.result():
                        return True
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if errors:
            for extra_error in errors[1:]:
                logger.warning(
                    f"Additional shard query failure: {extra_error}",
                    extra={"entity_ref": entity_ref},
                )
            raise errors[0]
        return False

    async def _shard_has_active_child(self, pk: str, now: int) -> bool:
        params: dict[str, Any] = {
            "TableName": self.config.relationship_table,
            "KeyConditionExpression": "pk = :pk",
            "FilterExpression": ttl_filter_expr(),
            "ExpressionAttributeNames": ttl_filter_names(),
            "ExpressionAttributeValues": {":pk": s(pk), **ttl_filter_values(now)},
            "Limit": 1,
        }
        while True:
            page = await self.client.query(**params)
            if page.get("Items"):
                return True
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                return False
            params["ExclusiveStartKey"] = last_key
            # Limit is applied before the filter; later pages evaluate in full
            params.pop("Limit", None)

    async def query_all_children(self, parent_ref: str) -> list[ChildRef]:
        """All children of an entity, deleted ones included.

        Used by cascade delete, which must see tombstoned edges too.
        """
        num_shards = self.config.num_shards
        if num_shards == 1:
            return await self._query_shard_children(shard_pk(parent_ref, 0))

        children: list[ChildRef] = []
        lock = asyncio.Lock()

        async def scan(shard: int) -> None:
            pk = shard_pk(parent_ref, shard)
            try:
                found = await self._query_shard_children(pk)
            except ClientError as e:
                logger.warning(f"Shard query failed: {e}", extra={"shard_pk": pk})
                raise
            async with lock:
                children.extend(found)

        tasks = [asyncio.create_task(scan(shard)) for shard in range(num_shards)]
        try:
            await asyncio.gather(*tasks)
        except Exception:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return children

    async def _query_shard_children(self, pk: str) -> list[ChildRef]:
        params = {
            "TableName": self.config.relationship_table,
            "KeyConditionExpression": "pk = :pk",
            "ExpressionAttributeValues": {":pk": s(pk)},
        }
        children: list[ChildRef] = []
        async for page in self._query_pages(params):
            children.extend(ChildRef.from_edge(edge, pk) for edge in page.get("Items", []))
        return children

"""
In-memory DynamoDB client for testing.

This module provides an in-process DynamoDB backend for:
- Unit tests
- Integration tests (including cascade propagation via the change stream)
- Local development without DynamoDB Local or AWS

It accepts the same keyword arguments and returns the same response shapes
as the aiobotocore DynamoDB client, and raises the same botocore
ClientError codes.

Invariants:
    - All data is lost on process exit
    - Every operation is atomic with respect to the event loop (no await
      between reading and writing table state)
    - Writes that fail their condition emit no stream record
    - Writes that do not change an item emit no stream record
    - Query applies Limit before FilterExpression, as DynamoDB does

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour faithful to DynamoDB; tests rely on it to catch
      requests the real service would reject
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .attributes import AttributeMap, get_int
from .base import (
    CONDITIONAL_CHECK_FAILED,
    MAX_TRANSACTION_ITEMS,
    REASON_CONDITIONAL_CHECK_FAILED,
    RESOURCE_IN_USE,
    RESOURCE_NOT_FOUND,
    TRANSACTION_CANCELED,
    VALIDATION_ERROR,
    make_client_error,
)
from .expressions import ExpressionError, ExpressionSet, UpdateExpression

logger = logging.getLogger(__name__)

_ACCOUNT_ID = "000000000000"


def _record_table(record: dict[str, Any]) -> str:
    _, _, resource = record["eventSourceARN"].partition(":table/")
    return resource.split("/", 1)[0]


@dataclass
class InMemoryTable:
    """In-memory table storage."""

    name: str
    hash_key: str
    range_key: str | None = None
    stream_enabled: bool = False
    stream_view_type: str = "NEW_AND_OLD_IMAGES"
    ttl_attribute: str | None = None
    items: dict[tuple, AttributeMap] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @property
    def key_attributes(self) -> list[str]:
        return [self.hash_key] + ([self.range_key] if self.range_key else [])

    def key_of(self, item: AttributeMap) -> tuple:
        key = []
        for attr in self.key_attributes:
            value = item.get(attr)
            if not isinstance(value, dict) or len(value) != 1:
                raise make_client_error(
                    VALIDATION_ERROR,
                    f"One or more parameter values were invalid: Missing the key {attr} in the item",
                    "PutItem",
                )
            (kind, raw), = value.items()
            key.append((kind, raw))
        return tuple(key)

    def sort_value(self, item: AttributeMap) -> Any:
        if not self.range_key:
            return 0
        (kind, raw), = item[self.range_key].items()
        return Decimal(raw) if kind == "N" else raw

    def extract_key(self, item: AttributeMap) -> AttributeMap:
        return {attr: copy.deepcopy(item[attr]) for attr in self.key_attributes}

    def describe(self) -> dict[str, Any]:
        key_schema = [{"AttributeName": self.hash_key, "KeyType": "HASH"}]
        if self.range_key:
            key_schema.append({"AttributeName": self.range_key, "KeyType": "RANGE"})
        description: dict[str, Any] = {
            "TableName": self.name,
            "TableStatus": "ACTIVE",
            "KeySchema": key_schema,
            "ItemCount": len(self.items),
            "CreationDateTime": self.created_at,
        }
        if self.stream_enabled:
            description["StreamSpecification"] = {
                "StreamEnabled": True,
                "StreamViewType": self.stream_view_type,
            }
        return description


@dataclass
class _InjectedFailure:
    operation: str
    exception: BaseException
    table: str | None
    remaining: int


@dataclass
class _PendingWrite:
    table: InMemoryTable
    key: tuple
    item: AttributeMap | None


class _Waiter:
    def __init__(self, client: InMemoryDynamoClient, name: str) -> None:
        self._client = client
        self._name = name

    async def wait(self, TableName: str, **kwargs: Any) -> None:
        exists = TableName in self._client._tables
        if self._name == "table_exists" and not exists:
            raise make_client_error(RESOURCE_NOT_FOUND, "Requested resource not found", "DescribeTable")
        if self._name == "table_not_exists" and exists:
            raise make_client_error(RESOURCE_IN_USE, f"Table {TableName} still exists", "DescribeTable")


class InMemoryDynamoClient:
    """In-memory implementation of the DynamoDB client for testing.

    Attributes:
        region: Region used in stream record ARNs
        page_size: Maximum items evaluated per Query page (stands in for
            DynamoDB's 1MB page limit)

    Example:
        >>> client = InMemoryDynamoClient()
        >>> await client.create_table(
        ...     TableName="studios",
        ...     KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
        ...     AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
        ...     StreamSpecification={"StreamEnabled": True, "StreamViewType": "NEW_AND_OLD_IMAGES"},
        ... )
        >>> await client.put_item(TableName="studios", Item={"id": {"S": "s1"}})
        >>> client.drain_stream_records()[0]["eventName"]
        'INSERT'
    """

    def __init__(self, region: str = "us-east-1", page_size: int = 100) -> None:
        self.region = region
        self.page_size = page_size
        self._tables: dict[str, InMemoryTable] = {}
        self._stream: list[dict[str, Any]] = []
        self._sequence = 0
        self._failures: list[_InjectedFailure] = []
        self.call_counts: dict[str, int] = {}

    # Table management

    async def create_table(
        self,
        *,
        TableName: str,
        KeySchema: list[dict[str, str]],
        AttributeDefinitions: list[dict[str, str]] | None = None,
        StreamSpecification: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        await self._tick("CreateTable", TableName)
        if TableName in self._tables:
            raise make_client_error(
                RESOURCE_IN_USE, f"Table already exists: {TableName}", "CreateTable"
            )

        hash_key = next((k["AttributeName"] for k in KeySchema if k["KeyType"] == "HASH"), None)
        range_key = next((k["AttributeName"] for k in KeySchema if k["KeyType"] == "RANGE"), None)
        if hash_key is None:
            raise make_client_error(VALIDATION_ERROR, "KeySchema requires a HASH key", "CreateTable")

        stream = StreamSpecification or {}
        table = InMemoryTable(
            name=TableName,
            hash_key=hash_key,
            range_key=range_key,
            stream_enabled=bool(stream.get("StreamEnabled")),
            stream_view_type=stream.get("StreamViewType", "NEW_AND_OLD_IMAGES"),
        )
        self._tables[TableName] = table
        logger.debug("Created in-memory table", extra={"table": TableName})
        return {"TableDescription": table.describe()}

    async def delete_table(self, *, TableName: str) -> dict[str, Any]:
        await self._tick("DeleteTable", TableName)
        table = self._table(TableName, "DeleteTable")
        del self._tables[TableName]
        return {"TableDescription": table.describe()}

    async def describe_table(self, *, TableName: str) -> dict[str, Any]:
        await self._tick("DescribeTable", TableName)
        return {"Table": self._table(TableName, "DescribeTable").describe()}

    async def update_time_to_live(
        self, *, TableName: str, TimeToLiveSpecification: dict[str, Any]
    ) -> dict[str, Any]:
        await self._tick("UpdateTimeToLive", TableName)
        table = self._table(TableName, "UpdateTimeToLive")
        if TimeToLiveSpecification.get("Enabled"):
            table.ttl_attribute = TimeToLiveSpecification["AttributeName"]
        else:
            table.ttl_attribute = None
        return {"TimeToLiveSpecification": dict(TimeToLiveSpecification)}

    async def describe_time_to_live(self, *, TableName: str) -> dict[str, Any]:
        await self._tick("DescribeTimeToLive", TableName)
        table = self._table(TableName, "DescribeTimeToLive")
        if table.ttl_attribute:
            return {
                "TimeToLiveDescription": {
                    "TimeToLiveStatus": "ENABLED",
                    "AttributeName": table.ttl_attribute,
                }
            }
        return {"TimeToLiveDescription": {"TimeToLiveStatus": "DISABLED"}}

    def get_waiter(self, name: str) -> _Waiter:
        return _Waiter(self, name)

    # Item operations

    async def get_item(
        self,
        *,
        TableName: str,
        Key: AttributeMap,
        ConsistentRead: bool = False,
    ) -> dict[str, Any]:
        await self._tick("GetItem", TableName)
        table = self._table(TableName, "GetItem")
        key = self._exact_key(table, Key, "GetItem")
        item = table.items.get(key)
        if item is None:
            return {}
        return {"Item": copy.deepcopy(item)}

    async def put_item(
        self,
        *,
        TableName: str,
        Item: AttributeMap,
        ConditionExpression: str | None = None,
        ExpressionAttributeNames: dict[str, str] | None = None,
        ExpressionAttributeValues: dict[str, Any] | None = None,
        ReturnValues: str = "NONE",
    ) -> dict[str, Any]:
        await self._tick("PutItem", TableName)
        table = self._table(TableName, "PutItem")
        condition = self._parse(
            "PutItem", ExpressionAttributeNames, ExpressionAttributeValues,
            lambda exprs: exprs.condition(ConditionExpression),
        )
        key = table.key_of(Item)
        existing = table.items.get(key)
        if not condition(existing or {}):
            raise make_client_error(
                CONDITIONAL_CHECK_FAILED, "The conditional request failed", "PutItem"
            )
        self._commit([_PendingWrite(table, key, copy.deepcopy(Item))])
        if ReturnValues == "ALL_OLD" and existing is not None:
            return {"Attributes": copy.deepcopy(existing)}
        return {}

    async def update_item(
        self,
        *,
        TableName: str,
        Key: AttributeMap,
        UpdateExpression: str,
        ConditionExpression: str | None = None,
        ExpressionAttributeNames: dict[str, str] | None = None,
        ExpressionAttributeValues: dict[str, Any] | None = None,
        ReturnValues: str = "NONE",
    ) -> dict[str, Any]:
        await self._tick("UpdateItem", TableName)
        table = self._table(TableName, "UpdateItem")
        key = self._exact_key(table, Key, "UpdateItem")
        condition, update = self._parse(
            "UpdateItem", ExpressionAttributeNames, ExpressionAttributeValues,
            lambda exprs: (exprs.condition(ConditionExpression), exprs.update(UpdateExpression)),
        )
        existing = table.items.get(key)
        if not condition(existing or {}):
            raise make_client_error(
                CONDITIONAL_CHECK_FAILED, "The conditional request failed", "UpdateItem"
            )
        new_item = self._apply_update(table, Key, existing, update, "UpdateItem")
        self._commit([_PendingWrite(table, key, new_item)])
        if ReturnValues == "ALL_NEW":
            return {"Attributes": copy.deepcopy(new_item)}
        if ReturnValues == "ALL_OLD" and existing is not None:
            return {"Attributes": copy.deepcopy(existing)}
        return {}

    async def delete_item(
        self,
        *,
        TableName: str,
        Key: AttributeMap,
        ConditionExpression: str | None = None,
        ExpressionAttributeNames: dict[str, str] | None = None,
        ExpressionAttributeValues: dict[str, Any] | None = None,
        ReturnValues: str = "NONE",
    ) -> dict[str, Any]:
        await self._tick("DeleteItem", TableName)
        table = self._table(TableName, "DeleteItem")
        key = self._exact_key(table, Key, "DeleteItem")
        condition = self._parse(
            "DeleteItem", ExpressionAttributeNames, ExpressionAttributeValues,
            lambda exprs: exprs.condition(ConditionExpression),
        )
        existing = table.items.get(key)
        if not condition(existing or {}):
            raise make_client_error(
                CONDITIONAL_CHECK_FAILED, "The conditional request failed", "DeleteItem"
            )
        self._commit([_PendingWrite(table, key, None)])
        if ReturnValues == "ALL_OLD" and existing is not None:
            return {"Attributes": copy.deepcopy(existing)}
        return {}

    async def query(
        self,
        *,
        TableName: str,
        KeyConditionExpression: str,
        FilterExpression: str | None = None,
        ExpressionAttributeNames: dict[str, str] | None = None,
        ExpressionAttributeValues: dict[str, Any] | None = None,
        Limit: int | None = None,
        ExclusiveStartKey: AttributeMap | None = None,
        ScanIndexForward: bool = True,
        ConsistentRead: bool = False,
        IndexName: str | None = None,
    ) -> dict[str, Any]:
        await self._tick("Query", TableName)
        table = self._table(TableName, "Query")
        if IndexName:
            raise make_client_error(
                VALIDATION_ERROR,
                f"The table does not have the specified index: {IndexName}",
                "Query",
            )
        if Limit is not None and Limit < 1:
            raise make_client_error(
                VALIDATION_ERROR, "Limit must be greater than or equal to 1", "Query"
            )
        key_condition, filter_condition = self._parse(
            "Query", ExpressionAttributeNames, ExpressionAttributeValues,
            lambda exprs: (
                exprs.condition(KeyConditionExpression),
                exprs.condition(FilterExpression),
            ),
        )

        matched = [item for item in table.items.values() if key_condition(item)]
        matched.sort(key=table.sort_value, reverse=not ScanIndexForward)

        if ExclusiveStartKey is not None:
            if not table.range_key:
                matched = []
            else:
                start = table.sort_value(ExclusiveStartKey)
                if ScanIndexForward:
                    matched = [i for i in matched if table.sort_value(i) > start]
                else:
                    matched = [i for i in matched if table.sort_value(i) < start]

        page_limit = min(Limit, self.page_size) if Limit else self.page_size
        evaluated = matched[:page_limit]
        items = [copy.deepcopy(i) for i in evaluated if filter_condition(i)]

        response: dict[str, Any] = {
            "Items": items,
            "Count": len(items),
            "ScannedCount": len(evaluated),
        }
        if len(matched) > len(evaluated):
            response["LastEvaluatedKey"] = table.extract_key(evaluated[-1])
        return response

    async def transact_write_items(
        self,
        *,
        TransactItems: list[dict[str, Any]],
        ClientRequestToken: str | None = None,
    ) -> dict[str, Any]:
        await self._tick("TransactWriteItems", None)
        op = "TransactWriteItems"
        if not TransactItems:
            raise make_client_error(VALIDATION_ERROR, "TransactItems must not be empty", op)
        if len(TransactItems) > MAX_TRANSACTION_ITEMS:
            raise make_client_error(
                VALIDATION_ERROR,
                f"Member must have length less than or equal to {MAX_TRANSACTION_ITEMS}",
                op,
            )

        prepared = []
        targets: set[tuple[str, tuple]] = set()
        for entry in TransactItems:
            if len(entry) != 1:
                raise make_client_error(
                    VALIDATION_ERROR, "Each TransactItem must contain exactly one operation", op
                )
            (action, params), = entry.items()
            if action not in ("ConditionCheck", "Put", "Update", "Delete"):
                raise make_client_error(VALIDATION_ERROR, f"Unknown transaction action {action}", op)

            table = self._table(params["TableName"], op)
            if action == "Put":
                key = table.key_of(params["Item"])
            else:
                key = self._exact_key(table, params["Key"], op)

            if (table.name, key) in targets:
                raise make_client_error(
                    VALIDATION_ERROR,
                    "Transaction request cannot include multiple operations on one item",
                    op,
                )
            targets.add((table.name, key))

            if action == "ConditionCheck" and not params.get("ConditionExpression"):
                raise make_client_error(
                    VALIDATION_ERROR, "ConditionCheck requires a ConditionExpression", op
                )
            condition, update = self._parse(
                op,
                params.get("ExpressionAttributeNames"),
                params.get("ExpressionAttributeValues"),
                lambda exprs: (
                    exprs.condition(params.get("ConditionExpression")),
                    exprs.update(params["UpdateExpression"]) if action == "Update" else None,
                ),
            )
            prepared.append((action, params, table, key, condition, update))

        reasons = []
        failed = False
        for _, _, table, key, condition, _ in prepared:
            if condition(table.items.get(key) or {}):
                reasons.append({"Code": "None"})
            else:
                failed = True
                reasons.append(
                    {
                        "Code": REASON_CONDITIONAL_CHECK_FAILED,
                        "Message": "The conditional request failed",
                    }
                )

        if failed:
            codes = ", ".join(r["Code"] for r in reasons)
            raise make_client_error(
                TRANSACTION_CANCELED,
                f"Transaction cancelled, please refer cancellation reasons for specific reasons [{codes}]",
                op,
                CancellationReasons=reasons,
            )

        writes = []
        for action, params, table, key, _, update in prepared:
            if action == "Put":
                writes.append(_PendingWrite(table, key, copy.deepcopy(params["Item"])))
            elif action == "Update":
                new_item = self._apply_update(table, params["Key"], table.items.get(key), update, op)
                writes.append(_PendingWrite(table, key, new_item))
            elif action == "Delete":
                writes.append(_PendingWrite(table, key, None))

        self._commit(writes)
        return {}

    # Testing helpers

    def drain_stream_records(self, table: str | None = None) -> list[dict[str, Any]]:
        """Remove and return pending stream records (optionally for one table)."""
        if table is None:
            records, self._stream = self._stream, []
            return records
        records = [r for r in self._stream if _record_table(r) == table]
        self._stream = [r for r in self._stream if _record_table(r) != table]
        return records

    @property
    def pending_stream_records(self) -> int:
        return len(self._stream)

    def all_items(self, table: str) -> list[AttributeMap]:
        """All items of a table, tombstoned ones included."""
        return [copy.deepcopy(i) for i in self._tables[table].items.values()]

    def item_count(self, table: str) -> int:
        return len(self._tables[table].items)

    def expire_items(self, now: int | None = None) -> int:
        """Simulate TTL reclamation of items whose ttl <= now.

        Only tables with TTL enabled are swept. Emits REMOVE records
        attributed to the DynamoDB service principal.

        Returns:
            Number of items removed
        """
        now = int(time.time()) if now is None else now
        removed = 0
        for table in self._tables.values():
            if not table.ttl_attribute:
                continue
            for key, item in list(table.items.items()):
                ttl = get_int(item, table.ttl_attribute)
                if ttl is not None and ttl <= now:
                    self._commit([_PendingWrite(table, key, None)], service_delete=True)
                    removed += 1
        return removed

    def inject_failure(
        self,
        operation: str,
        exception: BaseException,
        table: str | None = None,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of an operation raise `exception`.

        Args:
            operation: API operation name (e.g. "UpdateItem", "Query")
            exception: Exception to raise
            table: Only fail calls against this table
            times: Number of calls to fail
        """
        self._failures.append(_InjectedFailure(operation, exception, table, times))

    # Internals

    async def _tick(self, operation: str, table: str | None) -> None:
        self.call_counts[operation] = self.call_counts.get(operation, 0) + 1
        for failure in self._failures:
            if failure.operation == operation and failure.table in (None, table):
                failure.remaining -= 1
                if failure.remaining <= 0:
                    self._failures.remove(failure)
                raise failure.exception
        # Yield like a network call would
        await asyncio.sleep(0)

    def _table(self, name: str, operation: str) -> InMemoryTable:
        table = self._tables.get(name)
        if table is None:
            raise make_client_error(
                RESOURCE_NOT_FOUND, f"Requested resource not found: Table: {name} not found", operation
            )
        return table

    def _exact_key(self, table: InMemoryTable, key: AttributeMap, operation: str) -> tuple:
        if set(key) != set(table.key_attributes):
            raise make_client_error(
                VALIDATION_ERROR, "The provided key element does not match the schema", operation
            )
        return table.key_of(key)

    def _parse(
        self,
        operation: str,
        names: dict[str, str] | None,
        values: dict[str, Any] | None,
        build: Callable[[ExpressionSet], Any],
    ) -> Any:
        exprs = ExpressionSet(names=names, values=values)
        try:
            parsed = build(exprs)
            exprs.check_unused()
        except ExpressionError as e:
            raise make_client_error(VALIDATION_ERROR, str(e), operation) from e
        return parsed

    def _apply_update(
        self,
        table: InMemoryTable,
        key: AttributeMap,
        existing: AttributeMap | None,
        update: UpdateExpression,
        operation: str,
    ) -> AttributeMap:
        for name, _ in update.set_actions:
            if name in table.key_attributes:
                raise make_client_error(
                    VALIDATION_ERROR,
                    f"One or more parameter values were invalid: Cannot update attribute {name}. "
                    "This attribute is part of the key",
                    operation,
                )
        base = copy.deepcopy(existing) if existing is not None else copy.deepcopy(key)
        try:
            return update.apply(base)
        except ExpressionError as e:
            raise make_client_error(VALIDATION_ERROR, str(e), operation) from e

    def _commit(self, writes: list[_PendingWrite], service_delete: bool = False) -> None:
        for write in writes:
            table = write.table
            old = table.items.get(write.key)
            if write.item is None:
                if old is None:
                    continue
                del table.items[write.key]
                event_name = "REMOVE"
            else:
                if old == write.item:
                    continue
                table.items[write.key] = write.item
                event_name = "INSERT" if old is None else "MODIFY"

            if table.stream_enabled:
                self._emit(table, event_name, old, write.item, service_delete)

    def _emit(
        self,
        table: InMemoryTable,
        event_name: str,
        old: AttributeMap | None,
        new: AttributeMap | None,
        service_delete: bool,
    ) -> None:
        self._sequence += 1
        image = new if new is not None else old
        assert image is not None
        change: dict[str, Any] = {
            "ApproximateCreationDateTime": time.time(),
            "Keys": table.extract_key(image),
            "SequenceNumber": str(self._sequence).zfill(21),
            "SizeBytes": len(repr(image)),
            "StreamViewType": table.stream_view_type,
        }
        if new is not None and table.stream_view_type in ("NEW_IMAGE", "NEW_AND_OLD_IMAGES"):
            change["NewImage"] = copy.deepcopy(new)
        if old is not None and table.stream_view_type in ("OLD_IMAGE", "NEW_AND_OLD_IMAGES"):
            change["OldImage"] = copy.deepcopy(old)

        record: dict[str, Any] = {
            "eventID": uuid.uuid4().hex,
            "eventName": event_name,
            "eventVersion": "1.1",
            "eventSource": "aws:dynamodb",
            "awsRegion": self.region,
            "eventSourceARN": (
                f"arn:aws:dynamodb:{self.region}:{_ACCOUNT_ID}:table/{table.name}"
                f"/stream/{time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(table.created_at))}"
            ),
            "dynamodb": change,
        }
        if service_delete:
            record["userIdentity"] = {"type": "Service", "principalId": "dynamodb.amazonaws.com"}
        self._stream.append(record)

"""
TTL (tombstone) helpers.

An entity is deleted by setting its ``ttl`` attribute; DynamoDB reclaims it
some time after that instant. Until then the item is physically present,
so every read path must treat ``ttl <= now`` as absent.

Invariants:
    - No ttl, or a ttl that is not a number, means active
    - ttl <= now means deleted (the boundary second counts as deleted)
    - Filters use the ``#ttl`` and ``:now`` placeholders
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone

from ..dynamo.attributes import AttributeMap, get_int, n

TTL_ATTRIBUTE = "ttl"

_PLACEHOLDER = re.compile(r"[#:][A-Za-z0-9_]+")


def now_unix() -> int:
    return int(time.time())


def now_iso() -> str:
    """Current UTC time as an RFC 3339 string with second precision."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def is_deleted(item: AttributeMap | None, now: int | None = None) -> bool:
    """Whether an item carries a ttl at or before now."""
    ttl = get_int(item, TTL_ATTRIBUTE)
    if ttl is None:
        return False
    return ttl <= (now_unix() if now is None else now)


def ttl_filter_expr() -> str:
    """Filter expression excluding deleted items."""
    return "attribute_not_exists(#ttl) OR #ttl > :now"


def ttl_filter_names() -> dict[str, str]:
    return {"#ttl": TTL_ATTRIBUTE}


def ttl_filter_values(now: int | None = None) -> AttributeMap:
    return {":now": n(now_unix() if now is None else now)}


def parent_exists_condition(key_attr: str = "id") -> tuple[str, dict[str, str]]:
    """Condition requiring the parent to exist and not be deleted.

    Returns:
        (expression, names) where names binds ``#key`` to key_attr and
        ``#ttl`` to the ttl attribute; ``:now`` is left to the caller
    """
    expr = "attribute_exists(#key) AND (attribute_not_exists(#ttl) OR #ttl > :now)"
    return expr, {"#key": key_attr, **ttl_filter_names()}


def merge_expr_names(*maps: dict[str, str] | None) -> dict[str, str]:
    result: dict[str, str] = {}
    for m in maps:
        if m:
            result.update(m)
    return result


def merge_expr_values(*maps: AttributeMap | None) -> AttributeMap:
    result: AttributeMap = {}
    for m in maps:
        if m:
            result.update(m)
    return result


def used_placeholders(*expressions: str) -> set[str]:
    """Name and value placeholders referenced by the given expressions."""
    found: set[str] = set()
    for expr in expressions:
        if expr:
            found.update(_PLACEHOLDER.findall(expr))
    return found


def prune_placeholders(
    names: dict[str, str],
    values: AttributeMap,
    *expressions: str,
) -> tuple[dict[str, str], AttributeMap]:
    """Drop placeholders none of the expressions reference.

    DynamoDB rejects requests carrying unused placeholders.
    """
    used = used_placeholders(*expressions)
    return (
        {k: v for k, v in names.items() if k in used},
        {k: v for k, v in values.items() if k in used},
    )

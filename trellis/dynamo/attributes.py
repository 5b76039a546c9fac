"""
Helpers for DynamoDB AttributeValue dicts.

Trellis keeps items in the wire shape used by the low-level client,
e.g. ``{"id": {"S": "123"}, "version": {"N": "1"}}``. These helpers build
and read the handful of attribute types the store itself manages.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

# A DynamoDB primary key / item: attribute name -> AttributeValue
AttributeMap = dict[str, dict[str, Any]]


def s(value: str) -> dict[str, Any]:
    return {"S": value}


def n(value: int | str) -> dict[str, Any]:
    return {"N": str(value)}


def string_list(values: Iterable[str]) -> dict[str, Any]:
    return {"L": [{"S": v} for v in values]}


def get_string(item: AttributeMap | None, name: str) -> str:
    """String value of an S attribute, "" when missing or another type."""
    if not item:
        return ""
    value = item.get(name)
    if isinstance(value, dict) and "S" in value:
        return value["S"]
    return ""


def get_int(item: AttributeMap | None, name: str) -> int | None:
    """Integer value of an N attribute, None when missing or unparseable."""
    if not item:
        return None
    value = item.get(name)
    if not isinstance(value, dict) or "N" not in value:
        return None
    try:
        return int(value["N"])
    except (TypeError, ValueError):
        return None


def get_string_list(item: AttributeMap | None, name: str) -> list[str]:
    """String members of an L attribute; non-string members are skipped."""
    if not item:
        return []
    value = item.get(name)
    if not isinstance(value, dict) or "L" not in value:
        return []
    return [member["S"] for member in value["L"] if isinstance(member, dict) and "S" in member]


def get_map(item: AttributeMap | None, name: str) -> AttributeMap:
    """Members of an M attribute ({} when missing)."""
    if not item:
        return {}
    value = item.get(name)
    if isinstance(value, dict) and "M" in value:
        return dict(value["M"])
    return {}

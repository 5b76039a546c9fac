"""
Shard key generation for the relationship and unique constraint tables.

DynamoDB throttles a single partition at roughly 1,000 writes/sec and
3,000 reads/sec. Two kinds of records could concentrate on one partition:

- Relationship edges: every child of a parent shares the parent's key.
  Edges are spread over num_shards partitions by hashing the child ref.
- Unique constraints: one record per (parent, type, field, value). The
  whole tuple is hashed so constraint records are uniformly distributed.

Invariants:
    - Both functions are pure and deterministic
    - num_shards <= 1 always yields the "#00" suffix
    - Shard suffixes are two lowercase hex digits (num_shards <= 256)
    - Unique keys are 32 lowercase hex characters (first 16 bytes of SHA-256)

How to change safely:
    - Never change the hash functions or formatting: keys are persisted
    - Changing num_shards for an existing table orphans edges written
      under the old shard count
"""

from __future__ import annotations

import hashlib

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


def fnv1a_32(data: bytes) -> int:
    """32-bit FNV-1a hash."""
    h = _FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def shard_pk(parent_ref: str, shard: int) -> str:
    """Partition key of one shard of a parent's relationship edges."""
    return f"{parent_ref}#{shard:02x}"


def relationship_pk(parent_ref: str, child_ref: str, num_shards: int) -> str:
    """Compute the sharded partition key for a relationship record.

    Args:
        parent_ref: Parent entity reference ("organization#123")
        child_ref: Child entity reference ("studio#456")
        num_shards: Configured shard count

    Returns:
        "<parent_ref>#<shard as 2 hex digits>"

    Example:
        >>> relationship_pk("organization#1", "studio#2", 1)
        'organization#1#00'
    """
    if num_shards <= 1:
        return shard_pk(parent_ref, 0)
    shard = fnv1a_32(child_ref.encode("utf-8")) % num_shards
    return shard_pk(parent_ref, shard)


def unique_constraint_pk(parent_ref: str, entity_type: str, field: str, value: str) -> str:
    """Compute the hash-distributed partition key for a unique constraint.

    Each component is length-prefixed before hashing. Entity refs contain
    "#" themselves, so a plain "#" join would let ("a#b", "c") and
    ("a", "b#c") collide.

    Returns:
        128-bit SHA-256 prefix as 32 lowercase hex characters
    """
    data = "".join(
        f"{len(part)}:{part}#" for part in (parent_ref, entity_type, field, value)
    )
    return hashlib.sha256(data.encode("utf-8")).digest()[:16].hex()

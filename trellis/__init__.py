"""
Trellis - referential integrity for hierarchical entities on DynamoDB.

DynamoDB gives single-item conditional writes, bounded multi-item
transactions, per-item TTL and a change stream. It has no foreign keys,
no unique indexes and no cascading delete. Trellis builds those on top:

- Parent existence checks on child creation (atomic with the child put)
- Unique field constraints scoped to a parent
- Optimistic locking through a version counter
- Orphan protection on delete
- Cascading delete driven by DynamoDB Streams and TTL

Architecture:
    ┌─────────────┐      ┌──────────────────────────────────────┐
    │   Caller    │─────▶│ EntityStore (create/get/update/...)  │
    └─────────────┘      └──────────────────┬───────────────────┘
                                            │ TransactWriteItems
                                            ▼
          ┌───────────────┬─────────────────────────┬──────────────────┐
          │ entity tables │ relationship table      │ unique table     │
          │ (streamed)    │ (pk=parent#shard)       │ (pk=sha256 half) │
          └──────┬────────┴─────────────────────────┴──────────────────┘
                 │ MODIFY (ttl newly set)
                 ▼
          ┌───────────────┐   set ttl on children, own edge, own
          │CascadeHandler │── unique records ──▶ more MODIFY events
          └───────────────┘

Invariants:
    - An item with ttl <= now is deleted, whatever its physical state
    - TTL is set at most once per item lifecycle and never cleared
    - Create is all-or-nothing across entity, edge and unique records
    - Cascade propagation only performs conditional "ttl absent" writes,
      so redelivered stream records are harmless

How to change safely:
    - Attribute names are a wire contract with existing tables
    - Shard key derivation must stay stable for existing data
    - Keep every multi-item write inside one transaction
"""

from .errors import (
    AlreadyDeletedError,
    AlreadyExistsError,
    ConcurrentModificationError,
    DuplicateValueError,
    ErrorKind,
    HasChildrenError,
    NotFoundError,
    ParentNotFoundError,
    TrellisError,
    is_error,
)
from .store import (
    Capability,
    ChildRef,
    ConditionCheck,
    DeleteOptions,
    Entity,
    EntityStore,
    Item,
    QueryInput,
    Relationship,
    RelationshipRegistry,
    make_ref,
)

__version__ = "0.3.0"

__all__ = [
    "__version__",
    # Store
    "EntityStore",
    "Entity",
    "Capability",
    "ConditionCheck",
    "Item",
    "ChildRef",
    "QueryInput",
    "DeleteOptions",
    "Relationship",
    "RelationshipRegistry",
    "make_ref",
    # Errors
    "ErrorKind",
    "TrellisError",
    "NotFoundError",
    "ParentNotFoundError",
    "AlreadyExistsError",
    "HasChildrenError",
    "ConcurrentModificationError",
    "DuplicateValueError",
    "AlreadyDeletedError",
    "is_error",
]

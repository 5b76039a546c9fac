"""
Entity store: relational guarantees over DynamoDB.

Invariants:
    - Entities declare optional behaviour through Capability, never
      through subclass checks
    - Multi-item writes go through TransactionPlan so failures can be
      classified by position

How to change safely:
    - Keep the public names below stable; they are re-exported by trellis
"""

from .entity import Capability, ConditionCheck, Entity, make_ref
from .item import ChildRef, DeleteOptions, Item, QueryInput
from .registry import Relationship, RelationshipRegistry
from .store import CONSTRAINT_SK, EntityStore
from .transaction import ItemRole, TransactionPlan

__all__ = [
    # Store
    "EntityStore",
    "CONSTRAINT_SK",
    # Entity contract
    "Entity",
    "Capability",
    "ConditionCheck",
    "make_ref",
    # Data types
    "Item",
    "ChildRef",
    "QueryInput",
    "DeleteOptions",
    # Registry
    "Relationship",
    "RelationshipRegistry",
    # Transactions
    "ItemRole",
    "TransactionPlan",
]

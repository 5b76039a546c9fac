"""
Transaction plans and failure classification.

A TransactionPlan is the ordered list of TransactWriteItems for one store
operation, each tagged with the role it plays. When DynamoDB cancels the
transaction, the cancellation reasons come back positionally; the plan maps
the first failed condition back to its role and from there to a Trellis
error.

Invariants:
    - Items are submitted in the order they were added
    - A plan never exceeds MAX_TRANSACTION_ITEMS items
    - Classification is by position only, never by item contents
    - Failures that are not a classified condition failure propagate
      unchanged

How to change safely:
    - Adding a conditional item to a plan needs a role with an error
      mapping, otherwise its failure surfaces as a raw ClientError
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from botocore.exceptions import ClientError

from ..dynamo.base import (
    MAX_TRANSACTION_ITEMS,
    REASON_CONDITIONAL_CHECK_FAILED,
    DynamoClient,
    cancellation_reasons,
)
from ..errors import (
    AlreadyExistsError,
    ConcurrentModificationError,
    DuplicateValueError,
    ParentNotFoundError,
    TrellisError,
)

logger = logging.getLogger(__name__)


class ItemRole(Enum):
    """What a transaction item does within its operation."""

    PARENT_CHECK = "parent_check"
    ENTITY_PUT = "entity_put"
    ENTITY_UPDATE = "entity_update"
    CONSTRAINT_PUT = "constraint_put"
    CONSTRAINT_DELETE = "constraint_delete"
    RELATIONSHIP_PUT = "relationship_put"


_ROLE_ERRORS: dict[ItemRole, type[TrellisError]] = {
    ItemRole.PARENT_CHECK: ParentNotFoundError,
    ItemRole.ENTITY_PUT: AlreadyExistsError,
    ItemRole.ENTITY_UPDATE: ConcurrentModificationError,
    ItemRole.CONSTRAINT_PUT: DuplicateValueError,
}


class TransactionPlan:
    """Ordered, role-tagged TransactWriteItems.

    Example:
        >>> plan = TransactionPlan()
        >>> plan.add(ItemRole.ENTITY_PUT, "Put", {"TableName": "studios", "Item": item})
        0
        >>> await plan.execute(client)
    """

    def __init__(self) -> None:
        self._entries: list[tuple[ItemRole, dict[str, Any]]] = []

    def add(self, role: ItemRole, action: str, params: dict[str, Any]) -> int:
        """Append an item and return its index.

        Args:
            role: Role of the item
            action: "ConditionCheck", "Put", "Update" or "Delete"
            params: Parameters of the action
        """
        self._entries.append((role, {action: params}))
        return len(self._entries) - 1

    @property
    def items(self) -> list[dict[str, Any]]:
        return [item for _, item in self._entries]

    def role_at(self, index: int) -> ItemRole | None:
        if 0 <= index < len(self._entries):
            return self._entries[index][0]
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def validate(self) -> None:
        """Raise ValueError if the plan cannot be submitted as one transaction."""
        if not self._entries:
            raise ValueError("transaction plan is empty")
        if len(self._entries) > MAX_TRANSACTION_ITEMS:
            raise ValueError(
                f"transaction plan has {len(self._entries)} items, "
                f"limit is {MAX_TRANSACTION_ITEMS}"
            )

    def classify(self, exc: BaseException) -> TrellisError | None:
        """Map a cancelled transaction to a Trellis error.

        Returns:
            The error for the first item that failed its condition, or None
            when the failure is not a classified condition failure
        """
        for index, reason in enumerate(cancellation_reasons(exc)):
            if reason.get("Code") != REASON_CONDITIONAL_CHECK_FAILED:
                continue
            role = self.role_at(index)
            error_cls = _ROLE_ERRORS.get(role) if role else None
            if error_cls is None:
                return None
            return error_cls(details={"index": index, "role": role.value})
        return None

    async def execute(self, client: DynamoClient) -> None:
        """Submit the plan as one TransactWriteItems call.

        Raises:
            ValueError: If the plan is empty or too large
            TrellisError: If an item with a mapped role failed its condition
            ClientError: Any other DynamoDB failure
        """
        self.validate()
        try:
            await client.transact_write_items(TransactItems=self.items)
        except ClientError as e:
            error = self.classify(e)
            if error is None:
                raise
            logger.debug(
                "Transaction cancelled",
                extra={"error_code": error.code, "index": error.details.get("index")},
            )
            raise error from e

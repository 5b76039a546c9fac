"""
Unit tests for TransactionPlan and positional failure classification.
"""

import pytest
from botocore.exceptions import ClientError

from trellis.dynamo import InMemoryDynamoClient, make_client_error
from trellis.errors import (
    AlreadyExistsError,
    ConcurrentModificationError,
    DuplicateValueError,
    ParentNotFoundError,
)
from trellis.store import ItemRole, TransactionPlan


def cancelled(*codes):
    """A TransactionCanceledException with the given reason codes."""
    return make_client_error(
        "TransactionCanceledException",
        "Transaction cancelled",
        "TransactWriteItems",
        CancellationReasons=[{"Code": code} for code in codes],
    )


def create_plan():
    """Parent check, two constraint puts, entity put, relationship put."""
    plan = TransactionPlan()
    plan.add(ItemRole.PARENT_CHECK, "ConditionCheck", {"TableName": "orgs"})
    plan.add(ItemRole.CONSTRAINT_PUT, "Put", {"TableName": "uniques"})
    plan.add(ItemRole.CONSTRAINT_PUT, "Put", {"TableName": "uniques"})
    plan.add(ItemRole.ENTITY_PUT, "Put", {"TableName": "studios"})
    plan.add(ItemRole.RELATIONSHIP_PUT, "Put", {"TableName": "rels"})
    return plan


class TestTransactionPlan:
    """Tests for building plans."""

    def test_add_returns_index(self):
        plan = TransactionPlan()
        assert plan.add(ItemRole.ENTITY_PUT, "Put", {}) == 0
        assert plan.add(ItemRole.RELATIONSHIP_PUT, "Put", {}) == 1
        assert len(plan) == 2

    def test_items_keep_order_and_shape(self):
        plan = create_plan()
        assert [next(iter(item)) for item in plan.items] == [
            "ConditionCheck",
            "Put",
            "Put",
            "Put",
            "Put",
        ]
        assert plan.role_at(3) is ItemRole.ENTITY_PUT
        assert plan.role_at(99) is None
        assert plan.role_at(-1) is None

    def test_validate_limits(self):
        """Empty and oversized plans are rejected."""
        with pytest.raises(ValueError, match="empty"):
            TransactionPlan().validate()

        plan = TransactionPlan()
        for _ in range(101):
            plan.add(ItemRole.CONSTRAINT_PUT, "Put", {})
        with pytest.raises(ValueError, match="limit is 100"):
            plan.validate()

    def test_hundred_items_allowed(self):
        plan = TransactionPlan()
        for _ in range(100):
            plan.add(ItemRole.CONSTRAINT_PUT, "Put", {})
        plan.validate()


class TestClassify:
    """Tests for mapping cancellation reasons to errors."""

    @pytest.mark.parametrize(
        "failed_index,expected",
        [
            (0, ParentNotFoundError),
            (1, DuplicateValueError),
            (2, DuplicateValueError),
            (3, AlreadyExistsError),
        ],
    )
    def test_create_roles(self, failed_index, expected):
        """The failing position decides the error."""
        codes = ["None"] * 5
        codes[failed_index] = "ConditionalCheckFailed"

        error = create_plan().classify(cancelled(*codes))

        assert isinstance(error, expected)
        assert error.details["index"] == failed_index

    def test_first_failure_wins(self):
        error = create_plan().classify(
            cancelled("None", "None", "ConditionalCheckFailed", "ConditionalCheckFailed", "None")
        )
        assert isinstance(error, DuplicateValueError)

    def test_entity_update_is_concurrent_modification(self):
        plan = TransactionPlan()
        plan.add(ItemRole.CONSTRAINT_DELETE, "Delete", {})
        plan.add(ItemRole.CONSTRAINT_PUT, "Put", {})
        plan.add(ItemRole.ENTITY_UPDATE, "Update", {})

        error = plan.classify(cancelled("None", "None", "ConditionalCheckFailed"))
        assert isinstance(error, ConcurrentModificationError)

        error = plan.classify(cancelled("None", "ConditionalCheckFailed", "None"))
        assert isinstance(error, DuplicateValueError)

    def test_unmapped_failures_are_not_classified(self):
        """Non-condition reasons and other errors return None."""
        plan = create_plan()
        assert plan.classify(cancelled("None", "ThrottlingError", "None", "None", "None")) is None
        assert plan.classify(make_client_error("ValidationException", "bad", "TransactWriteItems")) is None
        assert plan.classify(RuntimeError("boom")) is None

    def test_condition_on_unmapped_role_is_not_classified(self):
        plan = TransactionPlan()
        plan.add(ItemRole.RELATIONSHIP_PUT, "Put", {})
        assert plan.classify(cancelled("ConditionalCheckFailed")) is None


class TestExecute:
    """Tests for submitting plans."""

    @pytest.mark.asyncio
    async def test_raises_classified_error(self):
        client = InMemoryDynamoClient()
        client.inject_failure(
            "TransactWriteItems", cancelled("None", "None", "None", "ConditionalCheckFailed", "None")
        )

        with pytest.raises(AlreadyExistsError) as exc_info:
            await create_plan().execute(client)

        assert isinstance(exc_info.value.__cause__, ClientError)

    @pytest.mark.asyncio
    async def test_unclassified_errors_propagate_unchanged(self):
        client = InMemoryDynamoClient()
        original = make_client_error("ProvisionedThroughputExceededException", "slow down", "TransactWriteItems")
        client.inject_failure("TransactWriteItems", original)

        with pytest.raises(ClientError) as exc_info:
            await create_plan().execute(client)

        assert exc_info.value is original

    @pytest.mark.asyncio
    async def test_oversized_plan_never_submitted(self):
        client = InMemoryDynamoClient()
        plan = TransactionPlan()
        for _ in range(101):
            plan.add(ItemRole.CONSTRAINT_PUT, "Put", {})

        with pytest.raises(ValueError):
            await plan.execute(client)

        assert client.call_counts.get("TransactWriteItems", 0) == 0

"""
Error types for Trellis.

Every domain failure the store can report is one of seven kinds:
- NotFoundError: entity absent or tombstoned
- ParentNotFoundError: parent absent or tombstoned at create time
- AlreadyExistsError: primary key collision at create time
- HasChildrenError: orphan-protected delete blocked by an active child
- ConcurrentModificationError: optimistic lock version mismatch
- DuplicateValueError: unique constraint collision
- AlreadyDeletedError: explicit double-delete detection

Invariants:
    - All errors inherit from TrellisError
    - str() of every error starts with "trellis: "
    - Callers distinguish errors by kind (is_error / isinstance), never
      by message text
    - Backing store errors that are not classified are never wrapped
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Stable discriminant for Trellis errors."""

    NOT_FOUND = "NOT_FOUND"
    PARENT_NOT_FOUND = "PARENT_NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    HAS_CHILDREN = "HAS_CHILDREN"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    DUPLICATE_VALUE = "DUPLICATE_VALUE"
    ALREADY_DELETED = "ALREADY_DELETED"


class TrellisError(Exception):
    """Base exception for all Trellis errors.

    Attributes:
        kind: Error kind for programmatic handling
        code: String form of the kind
        message: Human-readable message (without the namespace prefix)
        details: Additional error context
    """

    kind: ErrorKind
    default_message = "error"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.details = details or {}

    @property
    def code(self) -> str:
        return self.kind.value

    def __str__(self) -> str:
        return f"trellis: {self.message}"


class NotFoundError(TrellisError):
    """Entity doesn't exist or is deleted (ttl <= now)."""

    kind = ErrorKind.NOT_FOUND
    default_message = "entity not found"


class ParentNotFoundError(TrellisError):
    """Parent entity doesn't exist or is deleted."""

    kind = ErrorKind.PARENT_NOT_FOUND
    default_message = "parent entity not found"


class AlreadyExistsError(TrellisError):
    """An entity with the same primary key already exists."""

    kind = ErrorKind.ALREADY_EXISTS
    default_message = "entity already exists"


class HasChildrenError(TrellisError):
    """Delete refused because the entity still has active children."""

    kind = ErrorKind.HAS_CHILDREN
    default_message = "entity has active children"


class ConcurrentModificationError(TrellisError):
    """Optimistic lock failed (version mismatch or entity deleted)."""

    kind = ErrorKind.CONCURRENT_MODIFICATION
    default_message = "entity was modified concurrently"


class DuplicateValueError(TrellisError):
    """A unique field value is already held within the parent scope."""

    kind = ErrorKind.DUPLICATE_VALUE
    default_message = "duplicate value for unique field"


class AlreadyDeletedError(TrellisError):
    """Entity is already deleted."""

    kind = ErrorKind.ALREADY_DELETED
    default_message = "entity is already deleted"


def is_error(exc: BaseException | None, kind: ErrorKind) -> bool:
    """Check whether an exception is a Trellis error of the given kind.

    Example:
        >>> try:
        ...     await store.get("studios", key)
        ... except TrellisError as e:
        ...     if is_error(e, ErrorKind.NOT_FOUND):
        ...         ...
    """
    return isinstance(exc, TrellisError) and exc.kind is kind

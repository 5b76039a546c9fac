"""
Unit tests for Trellis error types.
"""

import pytest

from trellis.errors import (
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

ALL_ERRORS = [
    (NotFoundError, ErrorKind.NOT_FOUND),
    (ParentNotFoundError, ErrorKind.PARENT_NOT_FOUND),
    (AlreadyExistsError, ErrorKind.ALREADY_EXISTS),
    (HasChildrenError, ErrorKind.HAS_CHILDREN),
    (ConcurrentModificationError, ErrorKind.CONCURRENT_MODIFICATION),
    (DuplicateValueError, ErrorKind.DUPLICATE_VALUE),
    (AlreadyDeletedError, ErrorKind.ALREADY_DELETED),
]


class TestErrors:
    """Tests for the error taxonomy."""

    @pytest.mark.parametrize("error_cls,kind", ALL_ERRORS)
    def test_kind_and_code(self, error_cls, kind):
        """Each error carries its kind and string code."""
        error = error_cls()
        assert isinstance(error, TrellisError)
        assert error.kind is kind
        assert error.code == kind.value

    @pytest.mark.parametrize("error_cls,kind", ALL_ERRORS)
    def test_namespace_prefix(self, error_cls, kind):
        """All errors render with the trellis prefix."""
        assert str(error_cls()).startswith("trellis: ")

    def test_default_message(self):
        """Default messages are used when none is given."""
        assert str(NotFoundError()) == "trellis: entity not found"
        assert str(ParentNotFoundError()) == "trellis: parent entity not found"

    def test_custom_message_and_details(self):
        """Message and details are kept."""
        error = HasChildrenError("org has studios", details={"entity_ref": "organization#1"})
        assert str(error) == "trellis: org has studios"
        assert error.message == "org has studios"
        assert error.details == {"entity_ref": "organization#1"}

    def test_kinds_are_distinct(self):
        """Every error class maps to its own kind."""
        kinds = {error_cls.kind for error_cls, _ in ALL_ERRORS}
        assert len(kinds) == len(ALL_ERRORS) == len(ErrorKind)


class TestIsError:
    """Tests for the is_error predicate."""

    @pytest.mark.parametrize("error_cls,kind", ALL_ERRORS)
    def test_matches_own_kind_only(self, error_cls, kind):
        """is_error matches exactly one kind."""
        error = error_cls()
        for other in ErrorKind:
            assert is_error(error, other) == (other is kind)

    def test_ignores_message_text(self):
        """A misleading message does not change the kind."""
        error = NotFoundError("duplicate value for unique field")
        assert not is_error(error, ErrorKind.DUPLICATE_VALUE)
        assert is_error(error, ErrorKind.NOT_FOUND)

    def test_non_trellis_errors(self):
        """Other exceptions and None never match."""
        assert not is_error(ValueError("entity not found"), ErrorKind.NOT_FOUND)
        assert not is_error(None, ErrorKind.NOT_FOUND)

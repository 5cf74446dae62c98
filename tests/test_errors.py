"""Tests for the error taxonomy."""

from __future__ import annotations

import numpy as np
import pytest
from pydantic import ValidationError

from xcalign.errors import (
    AlignmentError,
    ErrorEnvelope,
    ErrorType,
    PairShapeError,
    PairStructureError,
    SingularSystemError,
    ValueRangeError,
    make_error,
)


class TestErrorEnvelope:
    """Tests for the serializable error envelope."""

    def test_make_error(self) -> None:
        env = make_error(ErrorType.INVALID_SHAPE, "bad length", length=5)
        assert env.type is ErrorType.INVALID_SHAPE
        assert env.context == {"length": 5}

    def test_frozen(self) -> None:
        env = make_error(ErrorType.INVALID_VALUE, "oops")
        with pytest.raises(ValidationError):
            env.message = "changed"  # type: ignore[misc]

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            ErrorEnvelope(type=ErrorType.INVALID_VALUE, message="x", extra="nope")  # type: ignore[call-arg]


class TestExceptionHierarchy:
    """Tests for the exception classes."""

    @pytest.mark.parametrize(
        ("exc_type", "error_type"),
        [
            (PairShapeError, ErrorType.INVALID_SHAPE),
            (PairStructureError, ErrorType.INVALID_STRUCTURE),
            (ValueRangeError, ErrorType.INVALID_VALUE),
            (SingularSystemError, ErrorType.SINGULAR_SYSTEM),
        ],
    )
    def test_error_types(self, exc_type: type[AlignmentError], error_type: ErrorType) -> None:
        exc = exc_type("message", n_items=3)
        assert isinstance(exc, AlignmentError)
        assert isinstance(exc, ValueError)
        assert exc.error_type is error_type
        env = exc.to_envelope()
        assert env.type is error_type
        assert env.message == "message"
        assert env.context == {"n_items": 3}

    def test_singular_is_linalg_error(self) -> None:
        with pytest.raises(np.linalg.LinAlgError):
            raise SingularSystemError("disconnected", n_components=2)

    def test_shape_and_singular_are_distinct(self) -> None:
        assert not issubclass(SingularSystemError, PairShapeError)
        assert not issubclass(PairShapeError, SingularSystemError)

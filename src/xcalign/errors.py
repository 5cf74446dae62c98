"""Local error taxonomy for xcalign.

This library is compute-only. We keep a small, stable error enum/envelope that
downstream applications can translate into their own error formats, and an
exception hierarchy whose members map onto that enum.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


class ErrorType(str, Enum):
    INVALID_SHAPE = "INVALID_SHAPE"
    INVALID_STRUCTURE = "INVALID_STRUCTURE"
    INVALID_VALUE = "INVALID_VALUE"
    SINGULAR_SYSTEM = "SINGULAR_SYSTEM"


class ErrorEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: ErrorType
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


def make_error(error_type: ErrorType, message: str, **context: Any) -> ErrorEnvelope:
    return ErrorEnvelope(type=error_type, message=message, context=dict(context))


class AlignmentError(Exception):
    """Base class for every failure raised by xcalign.

    Attributes:
        error_type: The ErrorType this exception maps onto.
        context: Extra key/value details (sizes, offending names, ...).
    """

    error_type: ErrorType = ErrorType.INVALID_VALUE

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = dict(context)
        super().__init__(message)

    def to_envelope(self) -> ErrorEnvelope:
        return make_error(self.error_type, self.message, **self.context)


class PairShapeError(AlignmentError, ValueError):
    """Array sizes are inconsistent (non-triangular length, mismatched N)."""

    error_type = ErrorType.INVALID_SHAPE


class PairStructureError(AlignmentError, ValueError):
    """A grid is not square, or not symmetric/antisymmetric as required."""

    error_type = ErrorType.INVALID_STRUCTURE


class ValueRangeError(AlignmentError, ValueError):
    """Values fall outside their domain (correlation, polarity, weights...)."""

    error_type = ErrorType.INVALID_VALUE


class SingularSystemError(AlignmentError, np.linalg.LinAlgError):
    """The normal equations cannot be inverted.

    Usually the pair graph is disconnected: some items share no non-zero
    weighted observation with the rest and no absolute tie anchors them.
    """

    error_type = ErrorType.SINGULAR_SYSTEM

"""Pairwise data model.

Values defined over the unordered pairs of N items are carried in one of two
explicitly tagged forms:

- CompactPairs: shape (L, ...) with L = N(N-1)/2, one row per unique pair.
  Rows follow a column-major walk of the strict lower triangle of an N x N
  grid, so row k is pair (i_k, j_k) with i_k < j_k and holds grid cell
  (j_k, i_k).
- GridPairs: shape (N, N, ...), redundant. Lag-like quantities are
  antisymmetric, everything else is symmetric. The diagonal is ignored.

Any trailing dimensions (candidate rank, adjacent samples) ride along
untouched.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Union

import numpy as np
from numpy.typing import ArrayLike, NDArray

from xcalign.errors import PairShapeError, PairStructureError

__all__ = [
    "PairSymmetry",
    "CompactPairs",
    "GridPairs",
    "Pairs",
    "n_items_from_length",
    "pair_indices",
    "as_pairs",
    "to_compact",
    "to_grid",
    "check_symmetry",
]


class PairSymmetry(str, Enum):
    """How the two halves of a grid relate."""

    SYMMETRIC = "symmetric"  # correlation, weight, polarity
    ANTISYMMETRIC = "antisymmetric"  # lag


def n_items_from_length(length: int) -> int:
    """Recover N from the number of unique pairs L = N(N-1)/2.

    Raises:
        PairShapeError: If L is not a triangular number of that form.
    """
    length = int(length)
    if length < 1:
        raise PairShapeError(f"compact length must be positive, got {length}", length=length)
    n = math.ceil(math.sqrt(2 * length))
    if (n * n - n) // 2 != length:
        raise PairShapeError(
            f"compact length {length} is not N(N-1)/2 for any integer N",
            length=length,
        )
    return n


def pair_indices(n: int) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
    """Index vectors (i, j), i < j, in compact order.

    For each i, j runs fastest over i+1..N-1. This is the same order as a
    column-major walk of the strict lower triangle (row j, column i).
    """
    if n < 2:
        raise PairShapeError(f"need at least 2 items to form a pair, got {n}", n_items=n)
    i, j = np.triu_indices(n, k=1)
    return i.astype(np.intp), j.astype(np.intp)


def _offdiagonal_mask(n: int) -> NDArray[np.bool_]:
    return ~np.eye(n, dtype=bool)


def check_symmetry(
    grid: NDArray, symmetry: PairSymmetry, name: str = "values"
) -> None:
    """Verify a grid against its transpose, ignoring the diagonal.

    Comparison is exact. NaN cells never compare equal, so a NaN off the
    diagonal fails the check.

    Raises:
        PairStructureError: If the grid is not square or the halves disagree.
    """
    grid = np.asarray(grid)
    if grid.ndim < 2 or grid.shape[0] != grid.shape[1]:
        raise PairStructureError(
            f"{name} is not a square grid: shape {grid.shape}", name=name, shape=grid.shape
        )
    mirrored = np.swapaxes(grid, 0, 1)
    if symmetry is PairSymmetry.ANTISYMMETRIC:
        mirrored = -mirrored
    offdiag = _offdiagonal_mask(grid.shape[0])
    if not np.array_equal(grid[offdiag], mirrored[offdiag]):
        raise PairStructureError(
            f"{name} grid is not {symmetry.value}",
            name=name,
            symmetry=symmetry.value,
        )


@dataclass(frozen=True)
class CompactPairs:
    """One row per unique pair, shape (L, *trailing)."""

    values: NDArray

    def __post_init__(self) -> None:
        values = np.asarray(self.values)
        if values.ndim == 0:
            raise PairShapeError("compact pairs need at least one dimension")
        n_items_from_length(values.shape[0])
        object.__setattr__(self, "values", values)

    @property
    def n_items(self) -> int:
        return n_items_from_length(self.values.shape[0])

    @property
    def n_pairs(self) -> int:
        return int(self.values.shape[0])

    @property
    def trailing_shape(self) -> tuple[int, ...]:
        return tuple(self.values.shape[1:])

    @property
    def indices(self) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
        return pair_indices(self.n_items)

    def to_compact(self) -> CompactPairs:
        return self

    def to_grid(self, symmetry: PairSymmetry, diagonal: float = 0) -> GridPairs:
        """Expand into the redundant N x N form.

        Cell (j, i) gets the compact value and cell (i, j) its mirror
        (negated when antisymmetric). The diagonal is filled with `diagonal`.
        """
        n = self.n_items
        i, j = self.indices
        grid = np.full((n, n, *self.trailing_shape), diagonal, dtype=self.values.dtype)
        grid[j, i] = self.values
        if symmetry is PairSymmetry.ANTISYMMETRIC:
            grid[i, j] = -self.values
        else:
            grid[i, j] = self.values
        return GridPairs(grid)


@dataclass(frozen=True)
class GridPairs:
    """Redundant N x N form, shape (N, N, *trailing)."""

    values: NDArray

    def __post_init__(self) -> None:
        values = np.asarray(self.values)
        if values.ndim < 2 or values.shape[0] != values.shape[1]:
            raise PairShapeError(
                f"grid pairs need a square leading 2-D shape, got {values.shape}",
                shape=values.shape,
            )
        if values.shape[0] < 2:
            raise PairShapeError(
                f"need at least 2 items to form a pair, got {values.shape[0]}",
                n_items=values.shape[0],
            )
        object.__setattr__(self, "values", values)

    @property
    def n_items(self) -> int:
        return int(self.values.shape[0])

    @property
    def n_pairs(self) -> int:
        n = self.n_items
        return (n * n - n) // 2

    @property
    def trailing_shape(self) -> tuple[int, ...]:
        return tuple(self.values.shape[2:])

    def check(self, symmetry: PairSymmetry, name: str = "values") -> GridPairs:
        check_symmetry(self.values, symmetry, name)
        return self

    def to_compact(self) -> CompactPairs:
        i, j = pair_indices(self.n_items)
        return CompactPairs(self.values[j, i].copy())

    def to_grid(self, symmetry: PairSymmetry, diagonal: float = 0) -> GridPairs:
        return self


Pairs = Union[CompactPairs, GridPairs]


def as_pairs(x: Pairs | ArrayLike) -> Pairs:
    """Tag a raw array as compact or grid form.

    Tagged inputs pass through untouched. Raw arrays are classified by shape:
    1-D arrays, and arrays whose second dimension is 1, are compact (the
    size-1 axis is dropped); anything else must be a square grid. A raw
    (L, P) compact array with P > 1 is indistinguishable from a grid; wrap
    it in CompactPairs instead.
    """
    if isinstance(x, (CompactPairs, GridPairs)):
        return x
    arr = np.asarray(x)
    if arr.ndim == 1:
        return CompactPairs(arr)
    if arr.ndim >= 2 and arr.shape[1] == 1:
        return CompactPairs(np.squeeze(arr, axis=1))
    if arr.ndim >= 2 and arr.shape[0] == arr.shape[1]:
        return GridPairs(arr)
    raise PairShapeError(
        f"cannot interpret array of shape {arr.shape} as pairwise data",
        shape=arr.shape,
    )


def to_compact(x: Pairs | ArrayLike) -> CompactPairs:
    return as_pairs(x).to_compact()


def to_grid(x: Pairs | ArrayLike, symmetry: PairSymmetry, diagonal: float = 0) -> GridPairs:
    return as_pairs(x).to_grid(symmetry, diagonal=diagonal)

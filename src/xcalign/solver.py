"""Travel-time solver.

Weighted least-squares inversion of pairwise lag observations for per-item
arrival times:

- solve_travel_times: relative (zero-mean) or tie-anchored absolute times
- predict_lags: pairwise lags implied by a time vector
- lag_residuals: observed minus predicted lags

The pair row for (i, j), i < j, has -1 at column i and +1 at column j, so
times[j] - times[i] approximates the compact lag at that row. Without ties a
final all-ones row (unit weight, datum 0) pins the sum of the times to zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import linalg, sparse
from scipy.sparse.csgraph import connected_components

from xcalign.errors import PairShapeError, SingularSystemError, ValueRangeError
from xcalign.pairs import (
    CompactPairs,
    GridPairs,
    Pairs,
    PairSymmetry,
    as_pairs,
    pair_indices,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AbsoluteTies",
    "AlignmentSolution",
    "solve_travel_times",
    "predict_lags",
    "lag_residuals",
]

# Normal matrices with a larger condition number are treated as singular.
MAX_CONDITION = 1.0 / np.finfo(np.float64).eps


@dataclass(frozen=True)
class AbsoluteTies:
    """Absolute times anchoring specific items.

    Attributes:
        values: Absolute times, one per tie.
        indices: Item index (0-based) of each tie.
        weights: Weight per tie, or a scalar applied to all ties.
    """

    values: ArrayLike
    indices: ArrayLike
    weights: ArrayLike = 1.0

    def resolve(self, n_items: int) -> tuple[NDArray[np.float64], NDArray[np.intp], NDArray[np.float64]]:
        """Validate against N items and return (values, indices, weights) arrays."""
        values = np.atleast_1d(np.asarray(self.values, dtype=np.float64)).ravel()
        raw_indices = np.atleast_1d(np.asarray(self.indices)).ravel()
        weights = np.atleast_1d(np.asarray(self.weights, dtype=np.float64)).ravel()

        if weights.size == 1:
            weights = np.full(values.shape, weights[0], dtype=np.float64)
        if not (values.size == raw_indices.size == weights.size):
            raise PairShapeError(
                "absolute tie values, weights and indices must be equal-sized",
                n_values=values.size,
                n_weights=weights.size,
                n_indices=raw_indices.size,
            )
        if values.size == 0:
            raise PairShapeError("absolute ties must contain at least one tie")
        if not np.all(np.isfinite(values)):
            raise ValueRangeError("absolute tie values must be finite")
        if not np.all(np.isfinite(weights)) or np.any(weights < 0):
            raise ValueRangeError("absolute tie weights must be finite and >= 0")
        if not np.issubdtype(raw_indices.dtype, np.integer):
            if not np.all(np.mod(raw_indices, 1) == 0):
                raise ValueRangeError("absolute tie indices must be integers")
        indices = raw_indices.astype(np.intp)
        if np.any(indices < 0) or np.any(indices >= n_items):
            raise ValueRangeError(
                f"absolute tie indices must lie in 0..{n_items - 1}",
                n_items=n_items,
            )
        return values, indices, weights


@dataclass(frozen=True)
class AlignmentSolution:
    """Least-squares travel-time solution.

    Attributes:
        times: Per-item time estimates, shape (N,).
        generalized_inverse: Gg with times = Gg @ data, shape (N, rows).
        n_items: Number of items N.
        n_pairs: Number of pair rows L.
        anchored: True when absolute ties were used (no zero-mean row).
    """

    times: NDArray[np.float64]
    generalized_inverse: NDArray[np.float64]
    n_items: int
    n_pairs: int
    anchored: bool

    @property
    def design_rows(self) -> int:
        return int(self.generalized_inverse.shape[1])

    def covariance(self, data_variance: ArrayLike) -> NDArray[np.float64]:
        """Propagate data variance to the model: Gg @ diag(var) @ Gg.T.

        Args:
            data_variance: Scalar variance shared by all rows, or one
                variance per design row (pairs, then the constraint/tie rows).

        Returns:
            Model covariance, shape (N, N).
        """
        var = np.asarray(data_variance, dtype=np.float64)
        gg = self.generalized_inverse
        if var.ndim == 0:
            var = np.full(gg.shape[1], float(var))
        elif var.shape != (gg.shape[1],):
            raise PairShapeError(
                f"data variance must be scalar or length {gg.shape[1]}, got shape {var.shape}",
                expected=gg.shape[1],
            )
        if not np.all(np.isfinite(var)) or np.any(var < 0):
            raise ValueRangeError("data variance must be finite and >= 0")
        cov: NDArray[np.float64] = (gg * var) @ gg.T
        return cov


def _compact_values(x: Pairs | ArrayLike, symmetry: PairSymmetry, name: str) -> NDArray[np.float64]:
    pairs = as_pairs(x)
    if isinstance(pairs, GridPairs):
        pairs.check(symmetry, name)
    compact = pairs.to_compact()
    if compact.trailing_shape:
        raise PairShapeError(
            f"{name} must hold one value per pair, got trailing shape {compact.trailing_shape}",
            name=name,
        )
    values = np.asarray(compact.values)
    if np.iscomplexobj(values):
        raise ValueRangeError(f"{name} must be real-valued", name=name)
    return values.astype(np.float64)


def _count_components(
    n_items: int,
    i: NDArray[np.intp],
    j: NDArray[np.intp],
    weights: NDArray[np.float64],
    tied: NDArray[np.intp] | None,
    anchored: bool = False,
) -> int:
    """Connected components of the weighted pair graph.

    When anchored, an extra ground node stands for absolute time and every
    item with a non-zero weighted tie is joined to it, so a single component
    means every item is pinned.
    """
    keep = weights > 0
    rows = i[keep].tolist()
    cols = j[keep].tolist()
    size = n_items
    if anchored:
        size += 1
        if tied is not None:
            rows.extend(tied.tolist())
            cols.extend([n_items] * tied.size)
    graph = sparse.coo_matrix(
        (np.ones(len(rows)), (np.asarray(rows, dtype=np.intp), np.asarray(cols, dtype=np.intp))),
        shape=(size, size),
    )
    n_components, _ = connected_components(graph, directed=False)
    return int(n_components)


def solve_travel_times(
    lags: Pairs | ArrayLike,
    weights: Pairs | ArrayLike | None = None,
    ties: AbsoluteTies | None = None,
) -> AlignmentSolution:
    """Solve pairwise lags for per-item times by weighted least squares.

    Args:
        lags: Pairwise lags (compact or antisymmetric grid). The compact lag
            for pair (i, j), i < j, approximates times[j] - times[i].
        weights: Pairwise weights in any form, default all ones. Must be
            finite and >= 0. Higher weights force the solution to honour the
            corresponding lag.
        ties: Optional absolute times. When given, the zero-mean row is
            dropped and the solution is absolute.

    Returns:
        AlignmentSolution with times and the generalized inverse.

    Raises:
        PairShapeError: Lags and weights disagree on N, or bad tie sizes.
        PairStructureError: A grid is not (anti)symmetric.
        ValueRangeError: Non-finite lags, negative or non-finite weights.
        SingularSystemError: The normal equations are singular, typically
            because the observation graph is disconnected.
    """
    lag = _compact_values(lags, PairSymmetry.ANTISYMMETRIC, "lags")
    n_pairs = lag.shape[0]
    n_items = CompactPairs(lag).n_items
    if not np.all(np.isfinite(lag)):
        raise ValueRangeError("lags must be finite")

    if weights is None:
        w = np.ones(n_pairs, dtype=np.float64)
    else:
        w = _compact_values(weights, PairSymmetry.SYMMETRIC, "weights")
        if w.shape[0] != n_pairs:
            raise PairShapeError(
                "lags and weights are inconsistent in size",
                n_lags=n_pairs,
                n_weights=w.shape[0],
            )
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise ValueRangeError("weights must be finite and >= 0")

    i, j = pair_indices(n_items)
    pair_rows = np.arange(n_pairs)

    if ties is None:
        tie_values = np.zeros(1, dtype=np.float64)
        tie_weights = np.ones(1, dtype=np.float64)
        tied_items = None
        extra_rows = np.full(n_items, n_pairs, dtype=np.intp)
        extra_cols = np.arange(n_items, dtype=np.intp)
    else:
        tie_values, tied_items, tie_weights = ties.resolve(n_items)
        extra_rows = n_pairs + np.arange(tied_items.size, dtype=np.intp)
        extra_cols = tied_items
    total_rows = n_pairs + tie_values.size

    rows = np.concatenate([pair_rows, pair_rows, extra_rows])
    cols = np.concatenate([i, j, extra_cols])
    vals = np.concatenate(
        [-np.ones(n_pairs), np.ones(n_pairs), np.ones(extra_rows.size)]
    )
    g = sparse.csr_matrix((vals, (rows, cols)), shape=(total_rows, n_items))
    wdiag = sparse.diags(np.concatenate([w, tie_weights]))

    anchors = None if tied_items is None else tied_items[tie_weights > 0]
    n_components = _count_components(n_items, i, j, w, anchors, anchored=ties is not None)
    if n_components > 1:
        raise SingularSystemError(
            f"observation graph has {n_components} connected components; "
            "every item needs a weighted path to the rest"
            + (" or to an absolute tie" if ties is not None else ""),
            n_components=n_components,
        )

    gtw = (g.T @ wdiag).tocsr()
    normal = (gtw @ g).toarray()
    condition = float(np.linalg.cond(normal))
    logger.debug(
        f"Solving {total_rows}x{n_items} system ({n_pairs} pairs, "
        f"{'anchored' if ties is not None else 'zero-mean'}), cond={condition:.3e}"
    )
    if not np.isfinite(condition) or condition > MAX_CONDITION:
        raise SingularSystemError(
            f"normal equations are singular (condition {condition:.3e})",
            condition=condition,
            n_components=n_components,
        )

    try:
        gg = linalg.solve(normal, gtw.toarray(), assume_a="sym")
    except linalg.LinAlgError as exc:
        raise SingularSystemError(f"normal equations could not be solved: {exc}") from exc

    data = np.concatenate([lag, tie_values])
    times = gg @ data

    return AlignmentSolution(
        times=np.asarray(times, dtype=np.float64),
        generalized_inverse=np.asarray(gg, dtype=np.float64),
        n_items=n_items,
        n_pairs=n_pairs,
        anchored=ties is not None,
    )


def predict_lags(times: ArrayLike) -> CompactPairs:
    """Compact lags implied by a time vector: times[j] - times[i]."""
    t = np.asarray(times, dtype=np.float64).ravel()
    i, j = pair_indices(t.size)
    return CompactPairs(t[j] - t[i])


def lag_residuals(lags: Pairs | ArrayLike, times: ArrayLike) -> CompactPairs:
    """Observed minus predicted compact lags.

    Trailing dimensions (candidate rank) are broadcast against the
    prediction.
    """
    pairs = as_pairs(lags)
    if isinstance(pairs, GridPairs):
        pairs.check(PairSymmetry.ANTISYMMETRIC, "lags")
    compact = pairs.to_compact()
    t = np.asarray(times, dtype=np.float64).ravel()
    if t.size != compact.n_items:
        raise PairShapeError(
            f"times has length {t.size} but lags describe {compact.n_items} items",
            n_times=t.size,
            n_items=compact.n_items,
        )
    predicted = predict_lags(t).values
    predicted = predicted.reshape(predicted.shape + (1,) * len(compact.trailing_shape))
    return CompactPairs(compact.values - predicted)

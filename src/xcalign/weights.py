"""Correlation-derived weights for the travel-time solver.

Raw correlation coefficients bunch up near 1 for good pairs. Their Fisher
z-transform is closer to normally distributed and spreads those values out,
which makes for better least-squares weights.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike, NDArray

from xcalign.errors import ValueRangeError
from xcalign.pairs import CompactPairs, GridPairs, Pairs, as_pairs

__all__ = ["fisher_z", "correlation_weights"]


def fisher_z(corr: ArrayLike, clip: float = 0.999999) -> NDArray[np.float64]:
    """Fisher z-transform, atanh(r), with |r| clipped below 1.

    Args:
        corr: Correlation values within [-1, 1].
        clip: Largest |r| passed to atanh; keeps perfect correlations finite.

    Returns:
        z-values, same shape as corr.
    """
    if not 0 < clip < 1:
        raise ValueRangeError(f"clip must lie in (0, 1), got {clip}")
    r = np.asarray(corr, dtype=np.float64)
    if not np.all(np.isfinite(r)) or np.any(np.abs(r) > 1):
        raise ValueRangeError("correlation values must be finite and within -1 & 1")
    z: NDArray[np.float64] = np.arctanh(np.clip(r, -clip, clip))
    return z


def correlation_weights(corr: Pairs | ArrayLike, clip: float = 0.999999) -> Pairs:
    """Non-negative pairwise weights |z| from rank-1 correlations.

    The pairwise form of the input is preserved. When a candidate axis is
    present only rank 1 is used. Grid diagonals are set to zero.
    """
    pairs = as_pairs(corr)
    values = np.asarray(pairs.values, dtype=np.float64)
    if pairs.trailing_shape:
        lead = 2 if isinstance(pairs, GridPairs) else 1
        values = values.reshape(values.shape[:lead] + (-1,))[..., 0]
    if isinstance(pairs, GridPairs):
        offdiag = ~np.eye(pairs.n_items, dtype=bool)
        weights = np.zeros_like(values)
        weights[offdiag] = np.abs(fisher_z(values[offdiag], clip=clip))
        return GridPairs(weights)
    return CompactPairs(np.abs(fisher_z(values, clip=clip)))

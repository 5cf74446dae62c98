"""Peak refinement for multi-candidate pairwise measurements.

Given P ranked (correlation, lag, polarity) candidates per pair and the
current travel-time solution, move the candidate whose lag best matches the
solution to rank 1 (index 0 along the candidate axis).

Misfit for a candidate of pair (i, j):

    score = (1 / w) * max(min_std, |lag - (t_j - t_i)| / sqrt(s_i**2 + s_j**2))

Timing misfits below min_std standard deviations are all clamped to
min_std, so once candidates are close enough the weights decide. With
force_polarity, candidates whose polarity differs from the product of the two
item polarities carry no score at all and are never selected.

Inputs are never modified; refined arrays are returned as new objects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike, NDArray

from xcalign.errors import PairShapeError, ValueRangeError
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
    "RefineConfig",
    "RefinementDiagnostics",
    "RefinementResult",
    "score_candidates",
    "refine_peaks",
]


@dataclass(frozen=True)
class RefineConfig:
    """Refinement knobs.

    Attributes
    ----------
    min_std : float
        Floor on the timing misfit, in standard deviations (default 2).
        Raising it reorders fewer peaks on timing and more on weights.
    force_polarity : bool
        Exclude candidates whose polarity disagrees with the target
        polarity product (default True). False lets polarity be refined too.
    diagnostic_only : bool
        Score and select without swapping anything (default False).
    """

    min_std: float = 2.0
    force_polarity: bool = True
    diagnostic_only: bool = False


@dataclass(frozen=True)
class RefinementDiagnostics:
    """Per-pair selection details.

    Pair-shaped arrays are (L,) for compact input and (N, N) for grid input.

    Attributes:
        changed: True where the best candidate is not at rank 1.
        best_rank: Winning candidate index, -1 where no candidate is eligible
            (and on grid diagonals).
        scores: Misfit per candidate, masked where the candidate is
            ineligible. Shape (L, P) or (N, N, P).
        unresolved: True where every candidate was excluded.
        grid: True for grid input, where each pair appears twice.
    """

    changed: NDArray[np.bool_]
    best_rank: NDArray[np.intp]
    scores: np.ma.MaskedArray
    unresolved: NDArray[np.bool_]
    grid: bool

    @property
    def changed_pairs(self) -> tuple[NDArray[np.intp], ...]:
        return tuple(np.nonzero(self.changed))

    @property
    def n_unresolved(self) -> int:
        count = int(np.count_nonzero(self.unresolved))
        return count // 2 if self.grid else count


@dataclass(frozen=True)
class RefinementResult:
    """Refined candidate arrays plus selection details.

    Attributes:
        corr: Correlations, same form as the input.
        lag: Lags, same form as the input.
        pol: Polarities, same form as the input.
        n_changed: Number of pairs whose rank-1 candidate changed (or would
            change, in diagnostic mode).
        diagnostics: Selection details.
    """

    corr: Pairs
    lag: Pairs
    pol: Pairs
    n_changed: int
    diagnostics: RefinementDiagnostics


@dataclass(frozen=True)
class _CandidateSet:
    """Candidates flattened to (cells, P) with the items each cell relates.

    A cell is one compact row, or one grid cell (row a, column b). Its lag
    approximates t[hi] - t[lo].
    """

    corr: NDArray[np.float64]
    lag: NDArray[np.float64]
    pol: NDArray[np.float64]
    hi: NDArray[np.intp]
    lo: NDArray[np.intp]
    valid: NDArray[np.bool_]
    n_items: int
    pair_shape: tuple[int, ...]
    grid: bool
    single: bool

    @property
    def n_candidates(self) -> int:
        return int(self.corr.shape[1])

    def unflatten(self, values: NDArray) -> NDArray:
        return values.reshape(self.pair_shape + values.shape[1:])

    def wrap(self, values: NDArray) -> Pairs:
        """Restore the pairwise layout, dropping the candidate axis if the input had none."""
        shaped = self.unflatten(values)
        if self.single:
            shaped = shaped[..., 0]
        return GridPairs(shaped) if self.grid else CompactPairs(shaped)


def _candidate_values(pairs: Pairs, name: str) -> NDArray:
    values = np.asarray(pairs.values)
    if np.iscomplexobj(values):
        raise ValueRangeError(f"{name} must be real-valued", name=name)
    trailing = pairs.trailing_shape
    if len(trailing) == 0:
        values = values[..., np.newaxis]
    elif len(trailing) > 1:
        raise PairShapeError(
            f"{name} has too many dimensions: trailing shape {trailing}",
            name=name,
            trailing_shape=trailing,
        )
    return values.astype(np.float64)


def _prepare_candidates(
    corr: Pairs | ArrayLike, lag: Pairs | ArrayLike, pol: Pairs | ArrayLike
) -> _CandidateSet:
    tagged = {"corr": as_pairs(corr), "lag": as_pairs(lag), "pol": as_pairs(pol)}
    kinds = {type(p) for p in tagged.values()}
    if len(kinds) != 1:
        raise PairShapeError("corr, lag and pol must all be compact or all be grids")
    grid = kinds.pop() is GridPairs
    single = not tagged["corr"].trailing_shape

    values = {name: _candidate_values(p, name) for name, p in tagged.items()}
    shapes = {v.shape for v in values.values()}
    if len(shapes) != 1:
        raise PairShapeError(
            "corr, lag and pol must be equal-sized arrays",
            shapes={name: v.shape for name, v in values.items()},
        )

    n_items = tagged["corr"].n_items
    if grid:
        pair_shape: tuple[int, ...] = (n_items, n_items)
        hi, lo = np.indices(pair_shape, dtype=np.intp)
        hi, lo = hi.ravel(), lo.ravel()
        valid = hi != lo
    else:
        pair_shape = (tagged["corr"].n_pairs,)
        lo, hi = pair_indices(n_items)
        valid = np.ones(hi.shape, dtype=bool)

    n_candidates = values["corr"].shape[-1]
    flat = {name: v.reshape(-1, n_candidates) for name, v in values.items()}

    corr_v = flat["corr"][valid]
    if not np.all(np.isfinite(corr_v)) or np.any(np.abs(corr_v) > 1):
        raise ValueRangeError("corr must hold real values within -1 & 1")
    if np.any(np.abs(flat["pol"][valid]) != 1):
        raise ValueRangeError("pol must hold only 1s & -1s")
    if not np.all(np.isfinite(flat["lag"][valid])):
        raise ValueRangeError("lag must hold finite real values")

    if grid:
        tagged["corr"].check(PairSymmetry.SYMMETRIC, "corr")
        tagged["lag"].check(PairSymmetry.ANTISYMMETRIC, "lag")
        tagged["pol"].check(PairSymmetry.SYMMETRIC, "pol")

    return _CandidateSet(
        corr=flat["corr"],
        lag=flat["lag"],
        pol=flat["pol"],
        hi=hi,
        lo=lo,
        valid=valid,
        n_items=n_items,
        pair_shape=pair_shape,
        grid=grid,
        single=single,
    )


def _item_vector(x: ArrayLike, n_items: int, name: str) -> NDArray[np.float64]:
    arr = np.asarray(x)
    if np.iscomplexobj(arr):
        raise ValueRangeError(f"{name} must be real-valued", name=name)
    if arr.ndim == 2 and 1 in arr.shape:
        arr = arr.ravel()
    if arr.ndim != 1 or arr.size != n_items:
        raise PairShapeError(
            f"{name} must be a vector of length {n_items}, got shape {arr.shape}",
            name=name,
            n_items=n_items,
        )
    return arr.astype(np.float64)


def _prepare_weights(
    weights: Pairs | ArrayLike | None, cands: _CandidateSet
) -> NDArray[np.float64]:
    flat_shape = (cands.hi.size, cands.n_candidates)
    if weights is None:
        return np.ones(flat_shape, dtype=np.float64)

    raw = weights if isinstance(weights, (CompactPairs, GridPairs)) else np.asarray(weights)
    if isinstance(raw, np.ndarray) and raw.ndim == 0:
        w = np.full(flat_shape, float(raw), dtype=np.float64)
    else:
        tagged = as_pairs(raw)
        if isinstance(tagged, GridPairs) != cands.grid:
            raise PairShapeError("weights must use the same pairwise form as corr/lag/pol")
        if cands.grid:
            tagged.check(PairSymmetry.SYMMETRIC, "weights")
        values = _candidate_values(tagged, "weights")
        if values.shape != cands.pair_shape + (cands.n_candidates,):
            raise PairShapeError(
                "non-scalar weights must match the size of corr/lag/pol",
                weights_shape=values.shape,
            )
        w = values.reshape(flat_shape)

    if not np.all(np.isfinite(w[cands.valid])) or np.any(w[cands.valid] < 0):
        raise ValueRangeError("weights must be finite and >= 0")
    return w


def _check_config(config: RefineConfig) -> None:
    if not np.isfinite(config.min_std):
        raise ValueRangeError(f"min_std must be a finite real scalar, got {config.min_std}")


def _score(
    cands: _CandidateSet,
    times: ArrayLike,
    std: ArrayLike,
    polarity: ArrayLike,
    weights: Pairs | ArrayLike | None,
    config: RefineConfig,
) -> np.ma.MaskedArray:
    _check_config(config)
    n = cands.n_items
    t = _item_vector(times, n, "times")
    s = _item_vector(std, n, "std")
    p = _item_vector(polarity, n, "polarity")
    if not np.all(np.isfinite(t)):
        raise ValueRangeError("times must be finite")
    if not np.all(np.isfinite(s)) or np.any(s < 0):
        raise ValueRangeError("std must be finite and >= 0")
    allowed = (np.abs(p) == 1) | ((p == 0) & (not config.force_polarity))
    if not np.all(allowed):
        raise ValueRangeError(
            "polarity must hold only 1s & -1s (0 allowed when polarity is not forced)"
        )
    w = _prepare_weights(weights, cands)

    expected = t[cands.hi] - t[cands.lo]
    sigma = np.sqrt(s[cands.hi] ** 2 + s[cands.lo] ** 2)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = np.abs(cands.lag - expected[:, None]) / sigma[:, None]
        # fmax ignores NaN: zero residual over zero sigma clamps to min_std
        clamped = np.fmax(config.min_std, z)
        raw = np.where(w > 0, clamped / w, np.inf)

    mask = np.repeat(~cands.valid[:, None], cands.n_candidates, axis=1)
    if config.force_polarity:
        target = p[cands.hi] * p[cands.lo]
        mask |= cands.pol != target[:, None]
    return np.ma.MaskedArray(raw, mask=mask)


def _select(scores: np.ma.MaskedArray) -> tuple[NDArray[np.intp], NDArray[np.bool_]]:
    """Lowest eligible score per cell; ties keep the lower rank.

    Returns (best, unresolved). Unresolved cells (no eligible candidate) get
    best = 0 so rank 1 stays in place.
    """
    mask = np.ma.getmaskarray(scores)
    unresolved = mask.all(axis=1)
    filled = np.where(mask, np.inf, scores.data)
    best = np.argmin(filled, axis=1)

    # every eligible score may be inf; never let a masked candidate win
    rows = np.arange(best.size)
    stale = mask[rows, best] & ~unresolved
    if np.any(stale):
        best[stale] = np.argmax(~mask[stale], axis=1)
    best[unresolved] = 0
    return best.astype(np.intp), unresolved


def score_candidates(
    corr: Pairs | ArrayLike,
    lag: Pairs | ArrayLike,
    pol: Pairs | ArrayLike,
    times: ArrayLike,
    std: ArrayLike,
    polarity: ArrayLike,
    weights: Pairs | ArrayLike | None = None,
    config: RefineConfig | None = None,
) -> np.ma.MaskedArray:
    """Misfit of every candidate against the current solution.

    Returns a masked array shaped like the candidate arrays, (L, P) or
    (N, N, P). Masked entries have no score (wrong polarity, grid diagonal).
    """
    config = config or RefineConfig()
    cands = _prepare_candidates(corr, lag, pol)
    scores = _score(cands, times, std, polarity, weights, config)
    return np.ma.MaskedArray(
        cands.unflatten(scores.data), mask=cands.unflatten(np.ma.getmaskarray(scores))
    )


def refine_peaks(
    corr: Pairs | ArrayLike,
    lag: Pairs | ArrayLike,
    pol: Pairs | ArrayLike,
    times: ArrayLike,
    std: ArrayLike,
    polarity: ArrayLike,
    weights: Pairs | ArrayLike | None = None,
    config: RefineConfig | None = None,
) -> RefinementResult:
    """Reorder candidates so rank 1 holds the best match to the solution.

    Args:
        corr: Candidate correlations, compact (L, P) or symmetric grid
            (N, N, P). Values within [-1, 1].
        lag: Candidate lags, same form; antisymmetric when a grid.
        pol: Candidate polarities (1 or -1), same form; symmetric grid.
        times: Current travel-time solution, length N.
        std: Per-item standard deviations, length N, >= 0.
        polarity: Per-item target polarities, length N.
        weights: Optional candidate weights, scalar or shaped like corr.
            Higher weights give lower misfits.
        config: RefineConfig; defaults to min_std=2, forced polarity.

    Returns:
        RefinementResult. Refined arrays keep the input shape, so inputs
        without a candidate axis (P=1) come back without one; diagnostic
        scores always carry it. In diagnostic mode the arrays are returned
        unchanged and n_changed counts the pairs that would change.

    Raises:
        PairShapeError: Inconsistent array sizes or vector lengths.
        PairStructureError: Grids that are not (anti)symmetric.
        ValueRangeError: Out-of-range correlation, polarity, std or weights.
    """
    config = config or RefineConfig()
    cands = _prepare_candidates(corr, lag, pol)
    scores = _score(cands, times, std, polarity, weights, config)
    best, unresolved = _select(scores)

    changed = (best > 0) & cands.valid & ~unresolved
    factor = 2 if cands.grid else 1
    n_changed = int(np.count_nonzero(changed)) // factor

    diagnostics = RefinementDiagnostics(
        changed=cands.unflatten(changed),
        best_rank=cands.unflatten(np.where(unresolved, -1, best).astype(np.intp)),
        scores=np.ma.MaskedArray(
            cands.unflatten(scores.data), mask=cands.unflatten(np.ma.getmaskarray(scores))
        ),
        unresolved=cands.unflatten(unresolved & cands.valid),
        grid=cands.grid,
    )
    if diagnostics.n_unresolved:
        logger.warning(
            f"{diagnostics.n_unresolved} pair(s) have no candidate matching the target "
            "polarity; keeping their rank-1 candidate"
        )
    logger.debug(
        f"Refinement over {cands.n_items} items x {cands.n_candidates} candidates: "
        f"{n_changed} pair(s) {'would change' if config.diagnostic_only else 'changed'}"
    )

    if config.diagnostic_only or n_changed == 0:
        return RefinementResult(
            corr=cands.wrap(cands.corr.copy()),
            lag=cands.wrap(cands.lag.copy()),
            pol=cands.wrap(cands.pol.copy()),
            n_changed=n_changed,
            diagnostics=diagnostics,
        )

    rows = np.nonzero(changed)[0]
    ranks = best[rows]
    swapped = []
    for arr in (cands.corr, cands.lag, cands.pol):
        out = arr.copy()
        out[rows, 0] = arr[rows, ranks]
        out[rows, ranks] = arr[rows, 0]
        swapped.append(cands.wrap(out))

    return RefinementResult(
        corr=swapped[0],
        lag=swapped[1],
        pol=swapped[2],
        n_changed=n_changed,
        diagnostics=diagnostics,
    )

"""Caller-side solve/refine loop.

The solver and the refinement engine never iterate on their own. This module
wires them together the usual way:

1. solve the rank-1 lags,
2. ask the caller for per-item uncertainties and target polarities,
3. refine the candidates against that solution,
4. repeat until no pair changes or the iteration budget runs out.

Uncertainty and polarity estimation belong to the caller and are passed in
as callables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable

import numpy as np
from numpy.typing import ArrayLike, NDArray

from xcalign.errors import ValueRangeError
from xcalign.pairs import CompactPairs, GridPairs, Pairs, as_pairs
from xcalign.refine import RefineConfig, refine_peaks
from xcalign.solver import AbsoluteTies, AlignmentSolution, lag_residuals, solve_travel_times

logger = logging.getLogger(__name__)

__all__ = ["IterationResult", "align_iteratively", "rank_one"]

UncertaintyFn = Callable[[AlignmentSolution, CompactPairs], ArrayLike]
PolarityFn = Callable[[Pairs], ArrayLike]
WeightsFn = Callable[[Pairs, Pairs, Pairs], "Pairs | ArrayLike"]


@dataclass(frozen=True)
class IterationResult:
    """Outcome of align_iteratively.

    Attributes:
        solution: Solution for the returned rank-1 lags.
        std: Per-item uncertainties from the last iteration.
        polarity: Per-item target polarities from the last iteration.
        corr: Refined candidate correlations.
        lag: Refined candidate lags.
        pol: Refined candidate polarities.
        n_iterations: Refinement passes run.
        converged: True when the last pass changed nothing.
        history: Pairs changed by each pass.
    """

    solution: AlignmentSolution
    std: NDArray[np.float64]
    polarity: NDArray[np.float64]
    corr: Pairs
    lag: Pairs
    pol: Pairs
    n_iterations: int
    converged: bool
    history: list[int] = field(default_factory=list)


def rank_one(pairs: Pairs | ArrayLike) -> Pairs:
    """Rank-1 slice of a candidate array, in the same pairwise form."""
    tagged = as_pairs(pairs)
    if not tagged.trailing_shape:
        return tagged
    values = np.asarray(tagged.values)[..., 0]
    return GridPairs(values) if isinstance(tagged, GridPairs) else CompactPairs(values)


def align_iteratively(
    corr: Pairs | ArrayLike,
    lag: Pairs | ArrayLike,
    pol: Pairs | ArrayLike,
    uncertainty_fn: UncertaintyFn,
    polarity_fn: PolarityFn,
    *,
    weights_fn: WeightsFn | None = None,
    ties: AbsoluteTies | None = None,
    config: RefineConfig | None = None,
    max_iterations: int = 10,
) -> IterationResult:
    """Alternate solving and refinement until the candidates settle.

    Args:
        corr: Candidate correlations (compact or grid, with candidate axis).
        lag: Candidate lags, same form.
        pol: Candidate polarities, same form.
        uncertainty_fn: (solution, rank-1 lag residuals) -> per-item std.
        polarity_fn: rank-1 polarities -> per-item target polarity.
        weights_fn: Optional (corr, lag, pol) -> solver weights, evaluated on
            the current candidates each iteration.
        ties: Optional absolute ties passed to the solver.
        config: Refinement config. diagnostic_only is ignored here.
        max_iterations: Maximum refinement passes (>= 1).

    Returns:
        IterationResult whose solution matches the returned rank-1 lags.
    """
    if max_iterations < 1:
        raise ValueRangeError(f"max_iterations must be >= 1, got {max_iterations}")
    config = replace(config or RefineConfig(), diagnostic_only=False)

    corr_p, lag_p, pol_p = as_pairs(corr), as_pairs(lag), as_pairs(pol)
    history: list[int] = []
    converged = False

    for iteration in range(1, max_iterations + 1):
        weights = weights_fn(corr_p, lag_p, pol_p) if weights_fn is not None else None
        top_lag = rank_one(lag_p)
        solution = solve_travel_times(top_lag, weights, ties)
        residuals = lag_residuals(top_lag, solution.times)
        std = np.asarray(uncertainty_fn(solution, residuals), dtype=np.float64)
        polarity = np.asarray(polarity_fn(rank_one(pol_p)), dtype=np.float64)

        result = refine_peaks(
            corr_p, lag_p, pol_p, solution.times, std, polarity, config=config
        )
        history.append(result.n_changed)
        corr_p, lag_p, pol_p = result.corr, result.lag, result.pol
        logger.debug(f"Iteration {iteration}: {result.n_changed} pair(s) changed")

        if result.n_changed == 0:
            converged = True
            break

    if not converged:
        logger.warning(
            f"Candidates still changing after {max_iterations} iteration(s); "
            "returning the last refinement"
        )
        weights = weights_fn(corr_p, lag_p, pol_p) if weights_fn is not None else None
        solution = solve_travel_times(rank_one(lag_p), weights, ties)

    return IterationResult(
        solution=solution,
        std=std,
        polarity=polarity,
        corr=corr_p,
        lag=lag_p,
        pol=pol_p,
        n_iterations=len(history),
        converged=converged,
        history=history,
    )

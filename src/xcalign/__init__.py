"""Relative and absolute arrival-time alignment from pairwise lags.

- pairs: compact/grid pairwise data model
- solver: weighted least-squares travel-time solver
- refine: multi-candidate peak refinement
- workflow: optional solve/refine loop
"""

from __future__ import annotations

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
from xcalign.pairs import (
    CompactPairs,
    GridPairs,
    Pairs,
    PairSymmetry,
    as_pairs,
    check_symmetry,
    n_items_from_length,
    pair_indices,
    to_compact,
    to_grid,
)
from xcalign.refine import (
    RefineConfig,
    RefinementDiagnostics,
    RefinementResult,
    refine_peaks,
    score_candidates,
)
from xcalign.solver import (
    AbsoluteTies,
    AlignmentSolution,
    lag_residuals,
    predict_lags,
    solve_travel_times,
)
from xcalign.weights import correlation_weights, fisher_z
from xcalign.workflow import IterationResult, align_iteratively, rank_one

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # errors
    "AlignmentError",
    "ErrorEnvelope",
    "ErrorType",
    "PairShapeError",
    "PairStructureError",
    "SingularSystemError",
    "ValueRangeError",
    "make_error",
    # pairs
    "CompactPairs",
    "GridPairs",
    "Pairs",
    "PairSymmetry",
    "as_pairs",
    "check_symmetry",
    "n_items_from_length",
    "pair_indices",
    "to_compact",
    "to_grid",
    # solver
    "AbsoluteTies",
    "AlignmentSolution",
    "lag_residuals",
    "predict_lags",
    "solve_travel_times",
    # refine
    "RefineConfig",
    "RefinementDiagnostics",
    "RefinementResult",
    "refine_peaks",
    "score_candidates",
    # weights
    "correlation_weights",
    "fisher_z",
    # workflow
    "IterationResult",
    "align_iteratively",
    "rank_one",
]

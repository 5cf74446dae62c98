"""Shared fixtures for alignment tests."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.typing import NDArray

from xcalign import CompactPairs, pair_indices


@pytest.fixture
def true_times() -> NDArray[np.float64]:
    return np.array([0.0, 2.0, 5.0, 9.0], dtype=np.float64)


@pytest.fixture
def exact_lags(true_times: NDArray[np.float64]) -> NDArray[np.float64]:
    """Noise-free compact lags t_j - t_i."""
    i, j = pair_indices(true_times.size)
    return true_times[j] - true_times[i]


@pytest.fixture
def multi_peak_problem() -> dict[str, object]:
    """Five items, three candidates per pair.

    Rank 1 is a near-exact pick for every pair except pairs 2 and 7, where
    rank 1 is 5 s off and rank 2 is the near-exact pick. Rank 3 is always
    4 s early. All polarities agree with the item polarities.

    Returns:
        Dictionary with compact corr/lag/pol candidates, the true times,
        per-item std and polarity, and the pairs expected to change.
    """
    times = np.array([0.0, 1.5, 3.0, 4.2, 7.0], dtype=np.float64)
    polarity = np.array([1.0, -1.0, 1.0, 1.0, -1.0], dtype=np.float64)
    i, j = pair_indices(times.size)
    true_lag = times[j] - times[i]
    n_pairs = true_lag.size
    bad = np.array([2, 7])

    lag = np.empty((n_pairs, 3), dtype=np.float64)
    lag[:, 0] = true_lag + 0.01
    lag[:, 1] = true_lag + 3.0
    lag[:, 2] = true_lag - 4.0
    lag[bad, 0] = true_lag[bad] + 5.0
    lag[bad, 1] = true_lag[bad] + 0.02

    corr = np.tile(np.array([0.9, 0.8, 0.7]), (n_pairs, 1))
    pol = np.repeat((polarity[i] * polarity[j])[:, None], 3, axis=1)

    return {
        "corr": CompactPairs(corr),
        "lag": CompactPairs(lag),
        "pol": CompactPairs(pol),
        "times": times,
        "std": np.full(times.size, 0.1),
        "polarity": polarity,
        "bad": bad,
        "true_lag": true_lag,
    }

import numpy as np


def candidate_thresholds(
    values: np.ndarray,
    max_thresholds: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Candidate split thresholds for one feature over the examples of a node.

    Thresholds are midpoints between adjacent distinct values, so every
    candidate puts at least one example on each side of a ``value < threshold``
    split. If there are more than ``max_thresholds`` midpoints, a random subset
    is returned in ascending order.
    """
    if max_thresholds < 1:
        raise ValueError("max_thresholds must be at least 1")

    values = np.asarray(values, dtype=np.float64)
    finite = values[np.isfinite(values)]
    if finite.size < 2:
        return np.empty(0, dtype=np.float64)

    distinct = np.unique(finite)
    if distinct.size <= 1:
        return np.empty(0, dtype=np.float64)

    mids = (distinct[:-1] + distinct[1:]) * 0.5
    if mids.size <= max_thresholds:
        return mids

    chosen = rng.choice(mids.size, size=max_thresholds, replace=False)
    return mids[np.sort(chosen)]

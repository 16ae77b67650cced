from __future__ import annotations

from dataclasses import dataclass, field
import time

import numpy as np

from hough_options import HoughForestOptions
from thresholds import candidate_thresholds
from training_data import TrainingCache

# Scores at or below this are treated as no improvement.
MIN_IMPROVEMENT = 1e-12


@dataclass(frozen=True)
class SplitCandidate:
    feature: int
    threshold: float


@dataclass
class SplitSearchMetrics:
    rounds: int = 0
    features_tried: list[int] = field(default_factory=list)
    candidates_evaluated: int = 0
    time_spent_sec: float = 0.0


@dataclass
class SplitSearchResult:
    candidate: SplitCandidate | None
    score: float
    metrics: SplitSearchMetrics


def class_counts(classes: np.ndarray, num_classes: int) -> np.ndarray:
    return np.bincount(np.asarray(classes, dtype=np.int64), minlength=num_classes).astype(np.int64)


def dominant_fraction(counts: np.ndarray) -> float:
    """Fraction of a node covered by its most frequent class (0 for an empty node)."""
    total = int(np.sum(counts))
    if total == 0:
        return 0.0
    return float(np.max(counts)) / total


def class_uncertainty(counts: np.ndarray) -> float:
    return 1.0 - dominant_fraction(counts) if int(np.sum(counts)) > 0 else 0.0


def gini_impurity(counts: np.ndarray) -> float:
    counts = np.asarray(counts, dtype=np.float64)
    total = counts.sum()
    if total <= 0:
        return 0.0
    p = counts / total
    return float(1.0 - np.sum(p * p))


def _weighted_gini(counts: np.ndarray, totals: np.ndarray) -> np.ndarray:
    # Size-weighted Gini impurity per row, i.e. n * gini.
    sq = np.sum(counts * counts, axis=-1)
    return totals - np.divide(sq, totals, out=np.zeros_like(sq), where=totals > 0)


def _prefix_sums(rows: np.ndarray) -> np.ndarray:
    # Row k holds the sum of the first k rows.
    out = np.zeros((rows.shape[0] + 1,) + rows.shape[1:], dtype=np.float64)
    np.cumsum(rows, axis=0, out=out[1:])
    return out


def _sse(sums: np.ndarray, sq_sums: np.ndarray, n: np.ndarray) -> np.ndarray:
    # Per-class sum of squared deviations from the class mean, summed over classes.
    norm2 = np.sum(sums * sums, axis=-1)
    within = sq_sums - np.divide(norm2, n, out=np.zeros_like(norm2), where=n > 0)
    return np.maximum(within, 0.0).sum(axis=-1)


class SplitSearch:
    """Randomized search for the best split of one node.

    The score of a split is

        dGini / gini_max + (1 - gini(S) / gini_max) * dSSE / SSE(S)

    The first term rewards reducing class uncertainty. The second rewards
    reducing the dispersion of self-votes within each non-background class
    and gains weight as the node becomes purer.
    """

    def __init__(
        self,
        node_indices: np.ndarray,
        cache: TrainingCache,
        num_classes: int,
        options: HoughForestOptions,
        rng: np.random.Generator | None = None,
    ) -> None:
        if not options.is_resolved():
            raise ValueError("SplitSearch needs resolved options")

        self.node_indices = np.asarray(node_indices, dtype=np.int64)
        self.cache = cache
        self.num_classes = int(num_classes)
        self.options = options
        self.rng = rng if rng is not None else np.random.default_rng(0)

        self.n_node = int(self.node_indices.size)
        node_classes = self.cache.classes[self.node_indices]

        self._onehot = np.zeros((self.n_node, self.num_classes), dtype=np.float64)
        self._onehot[np.arange(self.n_node), node_classes] = 1.0
        self.node_counts = self._onehot.sum(axis=0)

        # Self-votes of non-background examples, split by class.
        fg_onehot = self._onehot[:, 1:]
        votes = self.cache.self_votes[self.node_indices]
        self._fg_onehot = fg_onehot
        self._votes = votes
        self._vote_sq = np.sum(votes * votes, axis=1)

        self.gini_max = 1.0 - 1.0 / self.num_classes if self.num_classes > 1 else 1.0
        self.node_gini = gini_impurity(self.node_counts)
        self.node_sse = float(
            _sse(
                np.einsum("nc,np->cp", fg_onehot, votes),
                fg_onehot.T @ self._vote_sq,
                fg_onehot.sum(axis=0),
            )
        )

    def score_thresholds(self, feature: int, thresholds: np.ndarray) -> np.ndarray:
        """Score every ``value < threshold`` split of the node on one feature.

        Examples are sorted once by feature value; the statistics of each left
        side are then read off prefix sums at the threshold positions.
        """
        thresholds = np.asarray(thresholds, dtype=np.float64)
        values = self.cache.features[self.node_indices, feature]
        order = np.argsort(values, kind="stable")
        pos = np.searchsorted(values[order], thresholds, side="left")

        n_left = pos.astype(np.float64)
        n_right = float(self.n_node) - n_left

        left_counts = _prefix_sums(self._onehot[order])[pos]
        right_counts = self.node_counts[None, :] - left_counts
        child_gini = (
            _weighted_gini(left_counts, n_left) + _weighted_gini(right_counts, n_right)
        ) / max(self.n_node, 1)
        class_gain = (self.node_gini - child_gini) / self.gini_max

        regression_gain = np.zeros(thresholds.size, dtype=np.float64)
        if self.node_sse > 0.0:
            fg = self._fg_onehot[order]
            votes = self._votes[order]
            n_fg_left = _prefix_sums(fg)[pos]
            sums_left = _prefix_sums(fg[:, :, None] * votes[:, None, :])[pos]
            sq_left = _prefix_sums(fg * self._vote_sq[order, None])[pos]

            n_fg_total = self._fg_onehot.sum(axis=0)
            sums_total = np.einsum("nc,np->cp", self._fg_onehot, self._votes)
            sq_total = self._fg_onehot.T @ self._vote_sq

            sse_left = _sse(sums_left, sq_left, n_fg_left)
            sse_right = _sse(
                sums_total[None, :, :] - sums_left,
                sq_total[None, :] - sq_left,
                n_fg_total[None, :] - n_fg_left,
            )
            regression_gain = (self.node_sse - sse_left - sse_right) / self.node_sse

        weight = 1.0 - self.node_gini / self.gini_max
        scores = class_gain + weight * regression_gain
        scores[(n_left <= 0) | (n_right <= 0)] = -np.inf
        return scores

    def _sample_features(self, tried: np.ndarray) -> np.ndarray:
        pool = np.flatnonzero(~tried)
        if pool.size == 0:
            pool = np.arange(tried.size)
        size = min(self.options.max_candidate_features, pool.size)
        return self.rng.choice(pool, size=size, replace=False)

    def search(self) -> SplitSearchResult:
        start = time.perf_counter()
        metrics = SplitSearchMetrics()

        best: SplitCandidate | None = None
        best_score = MIN_IMPROVEMENT
        num_features = self.cache.num_features
        if self.n_node < 2 or num_features == 0:
            metrics.time_spent_sec = time.perf_counter() - start
            return SplitSearchResult(None, 0.0, metrics)

        tried = np.zeros(num_features, dtype=bool)
        for _ in range(1 + self.options.num_feature_expansions):
            metrics.rounds += 1
            for feature in self._sample_features(tried):
                feature = int(feature)
                tried[feature] = True
                metrics.features_tried.append(feature)

                thresholds = candidate_thresholds(
                    self.cache.features[self.node_indices, feature],
                    self.options.max_candidate_thresholds,
                    self.rng,
                )
                if thresholds.size == 0:
                    continue

                scores = self.score_thresholds(feature, thresholds)
                metrics.candidates_evaluated += int(thresholds.size)
                j = int(np.argmax(scores))
                if scores[j] > best_score:
                    best_score = float(scores[j])
                    best = SplitCandidate(feature=feature, threshold=float(thresholds[j]))

            if best is not None:
                break

        metrics.time_spent_sec = time.perf_counter() - start
        return SplitSearchResult(best, best_score if best is not None else 0.0, metrics)

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from dataclasses import replace
import logging
from pathlib import Path
from typing import IO, Callable, Union
import zipfile

import numpy as np

from forest_io import ForestState, read_forest, write_forest
from hough_options import HoughForestOptions, auto_select_unspecified_options
from training_data import TrainingCache, TrainingData, cache_training_data
from tree_builder import HoughTree, HoughTreeBuilder, TreeBuildMetrics
from voting import Vote, VoteCallback

logger = logging.getLogger(__name__)

VoteSink = Union[VoteCallback, Callable[[Vote], None]]

_LOAD_ERRORS = (OSError, EOFError, ValueError, KeyError, IndexError, TypeError, AttributeError, zipfile.BadZipFile)


def _build_one_tree(
    args: tuple[TrainingCache, int, HoughForestOptions, int],
) -> tuple[HoughTree, TreeBuildMetrics]:
    """Build a single tree. Executed in a worker process when n_jobs != 1."""
    cache, num_classes, options, seed = args
    builder = HoughTreeBuilder(
        cache=cache,
        num_classes=num_classes,
        options=options,
        rng=np.random.default_rng(seed),
    )
    tree = builder.build_tree()
    return tree, builder.metrics


class HoughForest:
    """Multi-class Hough forest.

    Based on J. Gall and V. Lempitsky, "Class-Specific Hough Forests for
    Object Detection", CVPR 2009, extended to several object classes plus a
    background class. Class 0 is always background: background examples
    shape the class splits but never cast or train votes.

    Subclass ``TrainingData`` (or use ``ArrayTrainingData``), call
    ``train()``, then call ``vote_self()``.
    """

    def __init__(
        self,
        num_classes: int,
        num_features: int,
        num_vote_params: list[int] | np.ndarray,
        options: HoughForestOptions | None = None,
        random_state: int = 0,
        n_jobs: int = 1,
    ) -> None:
        if num_classes < 1:
            raise ValueError("num_classes must be at least 1")
        if num_features < 0:
            raise ValueError("num_features must be non-negative")

        num_vote_params = np.array(num_vote_params, dtype=np.int64).reshape(-1)
        if num_vote_params.size != num_classes:
            raise ValueError("num_vote_params must have one entry per class")
        if np.any(num_vote_params < 0):
            raise ValueError("num_vote_params must be non-negative")

        self._num_classes = int(num_classes)
        self._num_features = int(num_features)
        self._num_vote_params = num_vote_params
        self._initial_options = options or HoughForestOptions()
        self.options = self._initial_options
        self.random_state = int(random_state)
        self.n_jobs = int(n_jobs)

        self.trees: list[HoughTree] = []
        self.cache: TrainingCache | None = None
        self.rng = np.random.default_rng(self.random_state)
        self.metrics: dict = {}

    @classmethod
    def from_file(cls, path: str | Path) -> "HoughForest":
        """Construct a forest from a file written by ``save``."""
        with open(path, "rb") as f:
            state = read_forest(f)
        meta = state.meta
        forest = cls(
            num_classes=int(meta["num_classes"]),
            num_features=int(meta["num_features"]),
            num_vote_params=meta["num_vote_params"],
            random_state=int(meta["random_state"]),
        )
        forest._apply_state(cls._decode_state(state))
        return forest

    @property
    def num_classes(self) -> int:
        return self._num_classes

    @property
    def num_features(self) -> int:
        return self._num_features

    @property
    def max_vote_params(self) -> int:
        return int(self._num_vote_params[1:].max()) if self._num_classes > 1 else 0

    def num_vote_parameters(self, class_index: int) -> int:
        return int(self._num_vote_params[class_index])

    def num_trees(self) -> int:
        return len(self.trees)

    def clear(self) -> None:
        """Reset the forest to its untrained state."""
        self.trees = []
        self.cache = None
        self.options = self._initial_options
        self.rng = np.random.default_rng(self.random_state)
        self.metrics = {}

    def set_verbose(self, level: int) -> None:
        """Change the verbosity, overriding the value in the initial options."""
        self.options = replace(self.options, verbose=level)
        self._initial_options = replace(self._initial_options, verbose=level)

    def train(self, num_trees: int, training_data: TrainingData) -> "HoughForest":
        if num_trees < 0:
            raise ValueError("num_trees must be non-negative")

        cache = cache_training_data(
            training_data,
            num_classes=self._num_classes,
            num_features=self._num_features,
            num_vote_params=self._num_vote_params,
        )
        options = auto_select_unspecified_options(
            self._initial_options,
            num_examples=cache.num_examples,
            num_features=self._num_features,
        )

        if options.verbose >= 1:
            logger.info(
                f"HoughForest: training {num_trees} trees on {cache.num_examples} examples "
                f"with {self._num_features} features; options={options}"
            )

        rng = np.random.default_rng(self.random_state)
        jobs = [
            (cache, self._num_classes, options, int(rng.integers(1, 2**31 - 1)))
            for _ in range(num_trees)
        ]
        if self.n_jobs == 1 or num_trees <= 1:
            results = [_build_one_tree(job) for job in jobs]
        else:
            with ProcessPoolExecutor(max_workers=None if self.n_jobs < 0 else self.n_jobs) as ex:
                results = list(ex.map(_build_one_tree, jobs))

        metrics = {
            "num_examples": cache.num_examples,
            "split_search_time_sec": 0.0,
            "tree_metrics": [],
        }
        for tree_idx, (tree, tree_metrics) in enumerate(results):
            metrics["split_search_time_sec"] += tree_metrics.split_search_time_sec
            metrics["tree_metrics"].append(
                {
                    "tree_idx": tree_idx,
                    "depth": tree.depth,
                    "nodes_visited": tree_metrics.nodes_visited,
                    "nodes_split": tree_metrics.nodes_split,
                    "split_rounds": tree_metrics.split_rounds,
                }
            )
            if options.verbose >= 1:
                logger.info(
                    f"HoughForest: tree {tree_idx + 1}/{num_trees} has depth {tree.depth}, "
                    f"{tree.num_leaves} leaves"
                )

        self.cache = cache
        self.options = options
        self.trees = [tree for tree, _ in results]
        self.rng = np.random.default_rng(self.random_state)
        self.metrics = metrics
        return self

    def _vote_quotas(self, num_votes: int, rng: np.random.Generator) -> np.ndarray:
        num_trees = len(self.trees)
        if self.options.probabilistic_sampling:
            return rng.multinomial(num_votes, np.full(num_trees, 1.0 / num_trees))

        base, extra = divmod(num_votes, num_trees)
        quotas = np.full(num_trees, base, dtype=np.int64)
        quotas[:extra] += 1
        return quotas

    def _single_self_vote_by_lookup(self, index: int, weight: float, callback: VoteSink) -> None:
        """Cast the vote of one cached training example for its parent object."""
        assert self.cache is not None
        target_class = int(self.cache.classes[index])
        n_params = int(self._num_vote_params[target_class])
        callback(
            Vote(
                target_class=target_class,
                params=self.cache.self_votes[index, :n_params],
                weight=weight,
                index=index,
                features=self.cache.features[index],
            )
        )

    def vote_self(
        self,
        query_class: int,
        features: np.ndarray,
        num_votes: int,
        callback: VoteSink,
        rng: np.random.Generator | None = None,
    ) -> int:
        """Sample Hough votes for ``query_class`` from a point with the given features.

        Each tree contributes its share of ``num_votes``, drawn from the
        training examples of ``query_class`` in the leaf the point reaches.
        A leaf without such examples casts nothing, so the return value (the
        number of votes actually cast) may be below ``num_votes``.

        The leaf class probability p(query_class | leaf) only decides whether a
        leaf can vote; it does not scale a tree's share of votes or their
        weights. Every vote from a tree weighs ``1 / (num_trees * quota)``.
        """
        if not 1 <= query_class < self._num_classes:
            raise ValueError(
                f"query_class must be in [1, {self._num_classes}) (0 is background), got {query_class}"
            )
        features = np.asarray(features, dtype=np.float64).reshape(-1)
        if features.size != self._num_features:
            raise ValueError(f"expected {self._num_features} features, got {features.size}")

        if num_votes <= 0 or not self.trees or self.cache is None:
            return 0

        rng = rng if rng is not None else self.rng
        num_trees = len(self.trees)
        quotas = self._vote_quotas(int(num_votes), rng)

        num_cast = 0
        for tree, quota in zip(self.trees, quotas):
            quota = int(quota)
            if quota == 0:
                continue

            leaf = tree.find_leaf(features)
            candidates = leaf.indices[self.cache.classes[leaf.indices] == query_class]
            if candidates.size == 0:
                continue

            if self.options.probabilistic_sampling:
                drawn = rng.choice(candidates, size=quota, replace=True)
            else:
                drawn = np.resize(rng.permutation(candidates), quota)

            weight = 1.0 / (num_trees * quota)
            for index in drawn:
                self._single_self_vote_by_lookup(int(index), weight, callback)
            num_cast += quota

        return num_cast

    def _state_meta(self) -> dict:
        return {
            "num_classes": self._num_classes,
            "num_features": self._num_features,
            "num_vote_params": self._num_vote_params.tolist(),
            "random_state": self.random_state,
            "options": self.options.to_dict(),
            "initial_options": self._initial_options.to_dict(),
        }

    @staticmethod
    def _decode_state(state: ForestState) -> dict:
        meta = state.meta
        options = HoughForestOptions.from_dict(meta["options"])
        initial_options = HoughForestOptions.from_dict(meta["initial_options"])
        num_vote_params = np.array(meta["num_vote_params"], dtype=np.int64)
        num_classes = int(meta["num_classes"])
        num_features = int(meta["num_features"])
        if num_vote_params.size != num_classes:
            raise ValueError("num_vote_params must have one entry per class")
        if state.cache is not None and state.cache.features.shape[1] != num_features:
            raise ValueError("cached features do not match num_features")

        return {
            "_num_classes": num_classes,
            "_num_features": num_features,
            "_num_vote_params": num_vote_params,
            "random_state": int(meta["random_state"]),
            "_initial_options": initial_options,
            "options": options,
            "cache": state.cache,
            "trees": state.trees,
        }

    def _apply_state(self, decoded: dict) -> None:
        for name, value in decoded.items():
            setattr(self, name, value)
        self.rng = np.random.default_rng(self.random_state)
        self.metrics = {}

    def save(self, target: str | Path | IO[bytes]) -> bool:
        """Save the forest to a path or binary stream. Returns False on failure."""
        try:
            if hasattr(target, "write"):
                write_forest(target, self._state_meta(), self.cache, self.trees)
            else:
                with open(target, "wb") as f:
                    write_forest(f, self._state_meta(), self.cache, self.trees)
        except (OSError, ValueError, TypeError) as exc:
            logger.error(f"HoughForest: could not save forest to {target!r}: {exc}")
            return False
        return True

    def load(self, source: str | Path | IO[bytes]) -> bool:
        """Load a forest from a path or binary stream. On failure the forest is unchanged."""
        try:
            if hasattr(source, "read"):
                state = read_forest(source)
            else:
                with open(source, "rb") as f:
                    state = read_forest(f)
            decoded = self._decode_state(state)
        except _LOAD_ERRORS as exc:
            logger.error(f"HoughForest: could not load forest from {source!r}: {exc}")
            return False

        self._apply_state(decoded)
        if self.options.verbose >= 1:
            logger.info(f"HoughForest: loaded {self.num_trees()} trees from {source!r}")
        return True

    def summary(self) -> str:
        n_cached = 0 if self.cache is None else self.cache.num_examples
        lines = [
            f"HoughForest: {self.num_trees()} trees, {self._num_classes} classes, "
            f"{self._num_features} features, {n_cached} cached examples",
            f"  vote parameters per class: {self._num_vote_params.tolist()}",
            f"  options: {self.options}",
        ]
        for i, tree in enumerate(self.trees):
            lines.append(
                f"  tree {i}: depth {tree.depth}, {tree.num_nodes} nodes, {tree.num_leaves} leaves"
            )
        return "\n".join(lines)

    def dump_to_console(self) -> None:
        print(self.summary())

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterator

import numpy as np

from hough_options import HoughForestOptions
from split_search import SplitSearch, class_counts, dominant_fraction
from training_data import TrainingCache

logger = logging.getLogger(__name__)

NO_CHILD = -1


@dataclass
class TreeNode:
    indices: np.ndarray
    depth: int
    is_leaf: bool = True
    split_feature: int | None = None
    split_threshold: float | None = None
    score: float = 0.0
    num_examples: int = 0
    class_counts: np.ndarray | None = None
    left: TreeNode | None = None
    right: TreeNode | None = None

    @property
    def class_probabilities(self) -> np.ndarray:
        assert self.class_counts is not None
        total = int(self.class_counts.sum())
        if total == 0:
            return np.zeros(self.class_counts.size, dtype=np.float64)
        return self.class_counts.astype(np.float64) / total


@dataclass
class TreeBuildMetrics:
    nodes_visited: int = 0
    nodes_split: int = 0
    split_rounds: int = 0
    split_search_time_sec: float = 0.0
    max_depth_seen: int = 0


class HoughTree:
    """A trained Hough tree. Leaves hold indices into the forest's training cache."""

    def __init__(self, root: TreeNode, num_classes: int) -> None:
        self.root = root
        self.num_classes = num_classes
        self.depth = max((node.depth for node in self.leaves()), default=0)

    def nodes(self) -> Iterator[TreeNode]:
        """Nodes in preorder."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            if not node.is_leaf:
                assert node.left is not None and node.right is not None
                stack.append(node.right)
                stack.append(node.left)

    def leaves(self) -> Iterator[TreeNode]:
        return (node for node in self.nodes() if node.is_leaf)

    @property
    def num_nodes(self) -> int:
        return sum(1 for _ in self.nodes())

    @property
    def num_leaves(self) -> int:
        return sum(1 for _ in self.leaves())

    def find_leaf(self, features: np.ndarray) -> TreeNode:
        node = self.root
        while not node.is_leaf:
            assert node.split_feature is not None
            assert node.split_threshold is not None

            go_left = features[node.split_feature] < node.split_threshold
            node = node.left if go_left else node.right
            assert node is not None

        return node

    def leaf_depth(self, features: np.ndarray) -> int:
        return self.find_leaf(features).depth


class HoughTreeBuilder:
    def __init__(
        self,
        cache: TrainingCache,
        num_classes: int,
        options: HoughForestOptions,
        rng: np.random.Generator | None = None,
    ) -> None:
        if not options.is_resolved():
            raise ValueError("HoughTreeBuilder needs resolved options, see auto_select_unspecified_options")

        self.cache = cache
        self.num_classes = int(num_classes)
        self.options = options
        self.rng = rng if rng is not None else np.random.default_rng(0)
        self.metrics = TreeBuildMetrics()

    def _leaf_reason(self, node: TreeNode) -> str | None:
        if node.depth >= self.options.max_depth:
            return "max depth"
        if node.indices.size <= self.options.max_leaf_elements:
            return "leaf size"
        if dominant_fraction(node.class_counts) > self.options.max_dominant_fraction:
            return "class purity"
        return None

    def _partition(self, indices: np.ndarray, feature: int, threshold: float) -> tuple[np.ndarray, np.ndarray]:
        left_mask = self.cache.features[indices, feature] < threshold
        return indices[left_mask], indices[~left_mask]

    def build_tree(self, indices: np.ndarray | None = None) -> HoughTree:
        if indices is None:
            indices = np.arange(self.cache.num_examples, dtype=np.int64)
        else:
            indices = np.asarray(indices, dtype=np.int64)

        root = TreeNode(indices=indices, depth=0)
        stack = [root]

        while stack:
            node = stack.pop()
            self.metrics.nodes_visited += 1
            self.metrics.max_depth_seen = max(self.metrics.max_depth_seen, node.depth)

            node.num_examples = int(node.indices.size)
            node.class_counts = class_counts(self.cache.classes[node.indices], self.num_classes)

            reason = self._leaf_reason(node)
            if reason is not None:
                if self.options.verbose >= 2:
                    logger.debug(
                        f"HoughTree: leaf at depth {node.depth} with {node.num_examples} examples ({reason})"
                    )
                continue

            search = SplitSearch(
                node_indices=node.indices,
                cache=self.cache,
                num_classes=self.num_classes,
                options=self.options,
                rng=self.rng,
            )
            result = search.search()
            self.metrics.split_rounds += result.metrics.rounds
            self.metrics.split_search_time_sec += result.metrics.time_spent_sec

            if result.candidate is None:
                if self.options.verbose >= 2:
                    logger.debug(
                        f"HoughTree: leaf at depth {node.depth} with {node.num_examples} examples "
                        f"(no split after {result.metrics.rounds} rounds)"
                    )
                continue

            left_indices, right_indices = self._partition(
                node.indices, result.candidate.feature, result.candidate.threshold
            )
            if left_indices.size == 0 or right_indices.size == 0:
                continue

            node.is_leaf = False
            node.split_feature = result.candidate.feature
            node.split_threshold = result.candidate.threshold
            node.score = result.score
            node.indices = np.empty(0, dtype=np.int64)

            node.left = TreeNode(indices=left_indices, depth=node.depth + 1)
            node.right = TreeNode(indices=right_indices, depth=node.depth + 1)
            self.metrics.nodes_split += 1

            if self.options.verbose >= 2:
                logger.debug(
                    f"HoughTree: split at depth {node.depth} on feature {node.split_feature} "
                    f"< {node.split_threshold:.6g} (score {node.score:.4f}, "
                    f"{left_indices.size} | {right_indices.size})"
                )

            stack.append(node.right)
            stack.append(node.left)

        return HoughTree(root=root, num_classes=self.num_classes)


def flatten_tree(tree: HoughTree) -> dict[str, np.ndarray]:
    """Index-addressed node arrays for a tree, in preorder."""
    nodes = list(tree.nodes())
    ids = {id(node): i for i, node in enumerate(nodes)}

    n = len(nodes)
    feature = np.full(n, NO_CHILD, dtype=np.int64)
    threshold = np.zeros(n, dtype=np.float64)
    left = np.full(n, NO_CHILD, dtype=np.int64)
    right = np.full(n, NO_CHILD, dtype=np.int64)
    depth = np.zeros(n, dtype=np.int64)
    score = np.zeros(n, dtype=np.float64)
    num_examples = np.zeros(n, dtype=np.int64)
    leaf_start = np.zeros(n, dtype=np.int64)
    leaf_end = np.zeros(n, dtype=np.int64)

    leaf_parts = []
    offset = 0
    for i, node in enumerate(nodes):
        depth[i] = node.depth
        num_examples[i] = node.num_examples
        score[i] = node.score
        if node.is_leaf:
            leaf_start[i] = offset
            offset += int(node.indices.size)
            leaf_end[i] = offset
            leaf_parts.append(node.indices)
        else:
            feature[i] = node.split_feature
            threshold[i] = node.split_threshold
            left[i] = ids[id(node.left)]
            right[i] = ids[id(node.right)]

    leaf_indices = np.concatenate(leaf_parts) if leaf_parts else np.empty(0, dtype=np.int64)
    return {
        "feature": feature,
        "threshold": threshold,
        "left": left,
        "right": right,
        "depth": depth,
        "score": score,
        "num_examples": num_examples,
        "leaf_start": leaf_start,
        "leaf_end": leaf_end,
        "leaf_indices": leaf_indices.astype(np.int64),
    }


def unflatten_tree(arrays: dict[str, np.ndarray], cache: TrainingCache, num_classes: int) -> HoughTree:
    """Rebuild a tree from ``flatten_tree`` output. Leaf class counts come from ``cache``."""
    feature = arrays["feature"]
    n = int(feature.size)
    if n == 0:
        raise ValueError("a tree needs at least one node")

    leaf_indices = np.asarray(arrays["leaf_indices"], dtype=np.int64)
    if leaf_indices.size > 0 and (leaf_indices.min() < 0 or leaf_indices.max() >= cache.num_examples):
        raise ValueError("leaf indices refer to examples outside the training cache")

    nodes = []
    for i in range(n):
        node = TreeNode(
            indices=np.empty(0, dtype=np.int64),
            depth=int(arrays["depth"][i]),
            score=float(arrays["score"][i]),
            num_examples=int(arrays["num_examples"][i]),
        )
        if feature[i] == NO_CHILD:
            start, end = int(arrays["leaf_start"][i]), int(arrays["leaf_end"][i])
            if not 0 <= start <= end <= leaf_indices.size:
                raise ValueError(f"leaf {i} has an invalid index range [{start}, {end})")
            node.indices = leaf_indices[start:end].copy()
            node.class_counts = class_counts(cache.classes[node.indices], num_classes)
        else:
            node.is_leaf = False
            node.split_feature = int(feature[i])
            node.split_threshold = float(arrays["threshold"][i])
        nodes.append(node)

    for i, node in enumerate(nodes):
        if node.is_leaf:
            continue
        l, r = int(arrays["left"][i]), int(arrays["right"][i])
        if not (i < l < n and i < r < n):
            raise ValueError(f"node {i} has invalid children ({l}, {r})")
        node.left = nodes[l]
        node.right = nodes[r]

    return HoughTree(root=nodes[0], num_classes=num_classes)

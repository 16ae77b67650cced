"""Binary (npz) codec for trained Hough forests.

Trees are stored as index-addressed node arrays concatenated across the
forest, together with the training cache they refer to and a JSON metadata
record holding the forest shape and options.
"""
from __future__ import annotations

from dataclasses import dataclass
import json
from typing import IO

import numpy as np

from tree_builder import HoughTree, flatten_tree, unflatten_tree
from training_data import TrainingCache

FORMAT_VERSION = 1

NODE_KEYS = ("feature", "threshold", "left", "right", "depth", "score", "num_examples", "leaf_start", "leaf_end")


@dataclass
class ForestState:
    meta: dict
    cache: TrainingCache | None
    trees: list[HoughTree]


def write_forest(target: IO[bytes], meta: dict, cache: TrainingCache | None, trees: list[HoughTree]) -> None:
    meta = dict(meta, format_version=FORMAT_VERSION, trained=cache is not None)
    arrays: dict[str, np.ndarray] = {"meta": np.array(json.dumps(meta))}

    if cache is not None:
        arrays["classes"] = np.asarray(cache.classes)
        arrays["features"] = np.asarray(cache.features)
        arrays["self_votes"] = np.asarray(cache.self_votes)

    flats = [flatten_tree(tree) for tree in trees]
    arrays["tree_num_nodes"] = np.array([f["feature"].size for f in flats], dtype=np.int64)
    arrays["tree_num_leaf_indices"] = np.array([f["leaf_indices"].size for f in flats], dtype=np.int64)
    for key in NODE_KEYS + ("leaf_indices",):
        parts = [f[key] for f in flats]
        dtype = np.float64 if key in ("threshold", "score") else np.int64
        arrays[key] = np.concatenate(parts).astype(dtype) if parts else np.empty(0, dtype=dtype)

    np.savez(target, **arrays)


def read_forest(source: IO[bytes]) -> ForestState:
    """Decode a forest written by ``write_forest``. Raises on malformed input."""
    with np.load(source, allow_pickle=False) as data:
        meta = json.loads(data["meta"].item())
        if meta.get("format_version") != FORMAT_VERSION:
            raise ValueError(f"unsupported forest format version {meta.get('format_version')!r}")

        num_classes = int(meta["num_classes"])
        num_vote_params = np.array(meta["num_vote_params"], dtype=np.int64)

        cache = None
        if meta["trained"]:
            cache = TrainingCache(
                classes=np.array(data["classes"], dtype=np.int64),
                features=np.ascontiguousarray(data["features"], dtype=np.float64),
                self_votes=np.array(data["self_votes"], dtype=np.float64),
                num_vote_params=num_vote_params,
            ).freeze()

        tree_num_nodes = data["tree_num_nodes"]
        tree_num_leaf_indices = data["tree_num_leaf_indices"]
        node_arrays = {key: data[key] for key in NODE_KEYS}
        leaf_indices = data["leaf_indices"]

    if tree_num_nodes.shape != tree_num_leaf_indices.shape:
        raise ValueError("per-tree node and leaf index counts differ in length")
    total_nodes = int(tree_num_nodes.sum())
    for key, values in node_arrays.items():
        if values.shape != (total_nodes,):
            raise ValueError(f"node array {key!r} has shape {values.shape}, expected ({total_nodes},)")
    if leaf_indices.shape != (int(tree_num_leaf_indices.sum()),):
        raise ValueError("leaf index array does not match the per-tree leaf index counts")

    trees = []
    if tree_num_nodes.size > 0 and cache is None:
        raise ValueError("forest file has trees but no training cache")

    node_offset = 0
    leaf_offset = 0
    for n_nodes, n_leaf in zip(tree_num_nodes, tree_num_leaf_indices):
        n_nodes, n_leaf = int(n_nodes), int(n_leaf)
        arrays = {key: values[node_offset:node_offset + n_nodes] for key, values in node_arrays.items()}
        arrays["leaf_indices"] = leaf_indices[leaf_offset:leaf_offset + n_leaf]
        trees.append(unflatten_tree(arrays, cache, num_classes))
        node_offset += n_nodes
        leaf_offset += n_leaf

    return ForestState(meta=meta, cache=cache, trees=trees)

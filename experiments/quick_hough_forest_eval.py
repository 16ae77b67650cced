import argparse
import logging
import sys
import time
from pathlib import Path

import numpy as np

# Allow running as: python experiments/quick_hough_forest_eval.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hough_forest import HoughForest
from hough_options import OptionsBuilder
from training_data import ArrayTrainingData
from voting import VoteCollector


def _make_object_points(center, n_points, radius, noise, rng):
    """Points scattered around an object center, with features describing their offset."""
    angles = rng.uniform(0.0, 2.0 * np.pi, size=n_points)
    radii = rng.uniform(0.2, 1.0, size=n_points) * radius
    offsets = np.stack([np.cos(angles) * radii, np.sin(angles) * radii], axis=1)
    points = center[None, :] + offsets

    features = np.stack(
        [
            radii / radius,
            np.cos(angles),
            np.sin(angles),
            rng.uniform(0.0, 1.0, size=n_points),
        ],
        axis=1,
    )
    features[:, :3] += noise * rng.normal(size=(n_points, 3))
    votes = center[None, :] - points
    return points, features, votes


def make_synthetic_scene(n_objects, points_per_object, n_background, radius, noise, random_state):
    rng = np.random.default_rng(random_state)

    features_parts = []
    classes_parts = []
    votes_parts = []
    for _ in range(n_objects):
        center = rng.uniform(-10.0, 10.0, size=2)
        _, feats, votes = _make_object_points(center, points_per_object, radius, noise, rng)
        features_parts.append(feats)
        classes_parts.append(np.ones(points_per_object, dtype=np.int64))
        votes_parts.append(votes)

    bg_features = np.column_stack(
        [
            rng.uniform(0.0, 1.5, size=n_background),
            rng.uniform(-1.0, 1.0, size=(n_background, 2)),
            rng.uniform(0.0, 1.0, size=n_background) + 0.5,
        ]
    )
    features_parts.append(bg_features)
    classes_parts.append(np.zeros(n_background, dtype=np.int64))
    votes_parts.append(np.zeros((n_background, 2), dtype=np.float64))

    return (
        np.vstack(features_parts),
        np.concatenate(classes_parts),
        np.vstack(votes_parts),
    )


def evaluate(args):
    features, classes, votes = make_synthetic_scene(
        n_objects=args.n_objects,
        points_per_object=args.points_per_object,
        n_background=args.n_background,
        radius=args.radius,
        noise=args.noise,
        random_state=args.random_state,
    )
    data = ArrayTrainingData(features, classes, votes, num_vote_params=[0, 2])

    options = (
        OptionsBuilder()
        .set_max_depth(args.max_depth)
        .set_max_leaf_elements(args.max_leaf_elements)
        .set_probabilistic_sampling(not args.stratified)
        .set_verbose(args.verbose)
        .build()
    )
    forest = HoughForest(
        num_classes=2,
        num_features=features.shape[1],
        num_vote_params=[0, 2],
        options=options,
        random_state=args.random_state,
        n_jobs=args.n_jobs,
    )

    start = time.perf_counter()
    forest.train(args.n_trees, data)
    train_time = time.perf_counter() - start
    print(f"Trained {forest.num_trees()} trees in {train_time:.3f}s")
    forest.dump_to_console()

    rng = np.random.default_rng(args.random_state + 1)
    errors = []
    shortfall = 0
    for _ in range(args.n_queries):
        center = rng.uniform(-10.0, 10.0, size=2)
        points, feats, _ = _make_object_points(center, args.points_per_query, args.radius, args.noise, rng)

        collector = VoteCollector()
        predicted_centers = []
        for point, feat in zip(points, feats):
            before = len(collector)
            cast = forest.vote_self(1, feat, args.votes_per_point, collector, rng=rng)
            shortfall += args.votes_per_point - cast
            for vote in collector.votes[before:]:
                predicted_centers.append((point + vote.params, vote.weight))

        if not predicted_centers:
            continue
        centers = np.array([c for c, _ in predicted_centers])
        weights = np.array([w for _, w in predicted_centers])
        estimate = (centers * weights[:, None]).sum(axis=0) / weights.sum()
        errors.append(float(np.linalg.norm(estimate - center)))

    if errors:
        print(
            f"Center error over {len(errors)} queries: mean={np.mean(errors):.4f} "
            f"median={np.median(errors):.4f} max={np.max(errors):.4f}"
        )
    print(f"Votes not cast (leaves without object examples): {shortfall}")


def main():
    parser = argparse.ArgumentParser(description="Quick Hough forest check on a synthetic scene")
    parser.add_argument("--n-objects", type=int, default=20)
    parser.add_argument("--points-per-object", type=int, default=40)
    parser.add_argument("--n-background", type=int, default=400)
    parser.add_argument("--radius", type=float, default=2.0)
    parser.add_argument("--noise", type=float, default=0.05)
    parser.add_argument("--n-trees", type=int, default=8)
    parser.add_argument("--max-depth", type=int, default=-1, help="Negative to auto-select")
    parser.add_argument("--max-leaf-elements", type=int, default=-1, help="Negative to auto-select")
    parser.add_argument(
        "--stratified",
        action="store_true",
        help="Split votes evenly across trees instead of sampling trees at random.",
    )
    parser.add_argument("--n-queries", type=int, default=10)
    parser.add_argument("--points-per-query", type=int, default=20)
    parser.add_argument("--votes-per-point", type=int, default=16)
    parser.add_argument("--n-jobs", type=int, default=1)
    parser.add_argument("--verbose", type=int, default=1)
    parser.add_argument("--random-state", type=int, default=42)

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose >= 2 else logging.INFO, format="%(message)s")
    evaluate(args)


if __name__ == "__main__":
    main()

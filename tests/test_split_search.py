import numpy as np

from hough_options import HoughForestOptions, auto_select_unspecified_options
from split_search import (
    SplitSearch,
    class_counts,
    class_uncertainty,
    dominant_fraction,
    gini_impurity,
)
from thresholds import candidate_thresholds
from training_data import ArrayTrainingData, cache_training_data


def _search_for(X, classes, votes, num_vote_params, random_state=0, **option_kwargs):
    X = np.asarray(X, dtype=np.float64)
    num_classes = len(num_vote_params)
    data = ArrayTrainingData(X, np.asarray(classes), votes, num_vote_params=num_vote_params)
    cache = cache_training_data(data, num_classes, X.shape[1], np.asarray(num_vote_params))
    options = auto_select_unspecified_options(
        HoughForestOptions(verbose=0, **option_kwargs), cache.num_examples, cache.num_features
    )
    return SplitSearch(
        node_indices=np.arange(X.shape[0]),
        cache=cache,
        num_classes=num_classes,
        options=options,
        rng=np.random.default_rng(random_state),
    )


def test_class_statistics():
    counts = class_counts(np.array([0, 0, 1, 2, 2, 2]), 4)
    np.testing.assert_array_equal(counts, [2, 1, 3, 0])
    assert np.isclose(dominant_fraction(counts), 0.5)
    assert np.isclose(class_uncertainty(counts), 0.5)
    assert np.isclose(gini_impurity(counts), 1.0 - (4 + 1 + 9) / 36.0)

    empty = np.zeros(3, dtype=np.int64)
    assert dominant_fraction(empty) == 0.0
    assert class_uncertainty(empty) == 0.0
    assert gini_impurity(empty) == 0.0


def test_candidate_thresholds_are_midpoints():
    rng = np.random.default_rng(0)
    mids = candidate_thresholds(np.array([0.9, 0.1, 0.2, 0.8, 0.8]), 10, rng)
    np.testing.assert_allclose(mids, [0.15, 0.5, 0.85])

    assert candidate_thresholds(np.array([1.0, 1.0]), 10, rng).size == 0
    assert candidate_thresholds(np.array([np.nan, 2.0]), 10, rng).size == 0


def test_candidate_thresholds_are_capped_and_sorted():
    rng = np.random.default_rng(1)
    values = np.arange(100, dtype=np.float64)
    chosen = candidate_thresholds(values, 7, rng)

    assert chosen.size == 7
    assert np.all(np.diff(chosen) > 0)
    assert np.all(np.isin(chosen, values[:-1] + 0.5))


def test_perfect_class_split_scores_one():
    search = _search_for([[0.1], [0.2], [0.8], [0.9]], [0, 0, 1, 1], np.array([[0], [0], [0.5], [0.6]]), [0, 1])
    scores = search.score_thresholds(0, np.array([0.15, 0.5, 0.85]))

    assert np.isclose(scores[1], 1.0)
    assert np.isclose(scores[0], 1.0 / 3.0)
    assert np.isclose(scores[2], 1.0 / 3.0)

    result = search.search()
    assert result.candidate is not None
    assert result.candidate.feature == 0
    assert np.isclose(result.candidate.threshold, 0.5)
    assert np.isclose(result.score, 1.0)


def test_empty_side_is_invalid():
    search = _search_for([[0.1], [0.2], [0.9]], [0, 1, 1], np.array([[0.0], [1.0], [2.0]]), [0, 1])
    scores = search.score_thresholds(0, np.array([0.0, 1.0]))
    assert np.all(np.isneginf(scores))


def test_regression_term_ignores_background_votes():
    # Background rows carry large bogus votes; they must not affect dispersion.
    X = np.array([[0.0], [1.0], [2.0], [3.0], [4.0], [5.0]])
    classes = np.array([1, 1, 1, 1, 0, 0])
    votes = np.array([[0.0], [0.0], [10.0], [10.0], [500.0], [-500.0]])
    search = _search_for(X, classes, votes, [0, 1])

    assert np.isclose(search.node_sse, 4 * 25.0)

    scores = search.score_thresholds(0, np.array([1.5, 3.5]))
    # 1.5 separates the two vote groups of class 1; 3.5 separates the classes.
    gini_max = 0.5
    node_gini = 1.0 - ((4 / 6) ** 2 + (2 / 6) ** 2)
    weight = 1.0 - node_gini / gini_max

    right_counts = np.array([2.0, 2.0])
    right_gini = 1.0 - np.sum((right_counts / 4) ** 2)
    class_gain = (node_gini - 4 * right_gini / 6) / gini_max
    assert np.isclose(scores[0], class_gain + weight * 1.0)
    assert np.isclose(scores[1], node_gini / gini_max + weight * 0.0)


def test_class_term_prefers_purer_children():
    X = np.arange(8, dtype=np.float64)[:, None]
    classes = np.array([0, 0, 0, 1, 0, 1, 1, 1])
    search = _search_for(X, classes, None, [0, 1])

    scores = search.score_thresholds(0, np.array([2.5, 3.5, 4.5]))
    # 2.5 and 4.5 each leave one pure side; 3.5 leaves both sides mixed.
    assert scores[0] > scores[1]
    assert np.isclose(scores[0], scores[2])


def test_no_improvement_returns_no_candidate():
    X = np.arange(10, dtype=np.float64)[:, None]
    search = _search_for(X, np.zeros(10, dtype=np.int64), None, [0, 1], num_feature_expansions=3)
    result = search.search()

    assert result.candidate is None
    assert result.score == 0.0
    assert result.metrics.rounds == 4


def test_expansion_rounds_try_untried_features_first():
    rng = np.random.default_rng(2)
    X = np.column_stack([np.zeros(20), np.zeros(20), rng.uniform(size=20), np.zeros(20)])
    classes = (X[:, 2] > 0.5).astype(np.int64)
    search = _search_for(X, classes, None, [0, 1], max_candidate_features=1, num_feature_expansions=3, random_state=3)
    result = search.search()

    assert result.candidate is not None
    assert result.candidate.feature == 2
    tried = result.metrics.features_tried
    assert len(tried) == len(set(tried))
    assert tried[-1] == 2


def _direct_score(search, values, threshold):
    # Recompute one split score from the partition itself.
    classes = search.cache.classes[search.node_indices]
    votes = search.cache.self_votes[search.node_indices]
    left = values < threshold
    n = values.size

    def sse(mask):
        total = 0.0
        for c in range(1, search.num_classes):
            v = votes[mask & (classes == c)]
            if v.shape[0] > 0:
                total += float(np.sum((v - v.mean(axis=0)) ** 2))
        return total

    child_gini = (
        left.sum() * gini_impurity(class_counts(classes[left], search.num_classes))
        + (~left).sum() * gini_impurity(class_counts(classes[~left], search.num_classes))
    ) / n
    class_gain = (search.node_gini - child_gini) / search.gini_max
    everything = np.ones(n, dtype=bool)
    regression_gain = (sse(everything) - sse(left) - sse(~left)) / sse(everything)
    return class_gain + (1.0 - search.node_gini / search.gini_max) * regression_gain


def test_scores_match_direct_partition_statistics():
    rng = np.random.default_rng(11)
    X = np.round(rng.normal(size=(200, 2)), 1)
    classes = rng.integers(0, 3, size=200)
    votes = rng.normal(size=(200, 2)) + classes[:, None]
    search = _search_for(X, classes, votes, [0, 2, 2])

    values = X[:, 1]
    thresholds = candidate_thresholds(values, 40, np.random.default_rng(0))
    scores = search.score_thresholds(1, thresholds)

    expected = [_direct_score(search, values, t) for t in thresholds]
    np.testing.assert_allclose(scores, expected, rtol=1e-9, atol=1e-9)

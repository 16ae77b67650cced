import numpy as np
import pytest

from training_data import ArrayTrainingData, cache_training_data


def _data():
    features = np.array([[0.0, 1.0], [2.0, 3.0], [4.0, 5.0]])
    classes = np.array([0, 1, 2])
    votes = np.array([[9.0, 9.0, 9.0], [1.0, 2.0, 0.0], [3.0, 4.0, 5.0]])
    return ArrayTrainingData(features, classes, votes, num_vote_params=[0, 2, 3])


def test_adapter_subsets():
    data = _data()
    np.testing.assert_array_equal(data.get_features(1), [1.0, 3.0, 5.0])
    np.testing.assert_array_equal(data.get_features(0, np.array([2, 0])), [4.0, 0.0])
    np.testing.assert_array_equal(data.get_classes(np.array([1])), [1])
    np.testing.assert_array_equal(data.get_self_vote(1), [1.0, 2.0])
    np.testing.assert_array_equal(data.get_self_vote(2), [3.0, 4.0, 5.0])


def test_cache_copies_and_is_read_only():
    data = _data()
    cache = cache_training_data(data, 3, 2, np.array([0, 2, 3]))

    assert cache.num_examples == 3
    assert cache.features.flags.c_contiguous
    np.testing.assert_array_equal(cache.features, data.features)
    # Background votes are never cached.
    np.testing.assert_array_equal(cache.self_votes[0], [0.0, 0.0, 0.0])
    np.testing.assert_array_equal(cache.self_votes[1], [1.0, 2.0, 0.0])

    data.features[0, 0] = 100.0
    assert cache.features[0, 0] == 0.0
    with pytest.raises(ValueError):
        cache.features[0, 0] = 1.0
    assert data.classes.flags.writeable


def test_cache_rejects_inconsistent_data():
    data = _data()
    with pytest.raises(ValueError):
        cache_training_data(data, 4, 2, np.array([0, 2, 3, 1]))
    with pytest.raises(ValueError):
        cache_training_data(data, 3, 3, np.array([0, 2, 3]))
    with pytest.raises(ValueError):
        cache_training_data(data, 3, 2, np.array([0, 1, 3]))

    bad_labels = ArrayTrainingData(data.features, np.array([0, 1, 5]), data.self_votes, [0, 2, 3])
    with pytest.raises(ValueError):
        cache_training_data(bad_labels, 3, 2, np.array([0, 2, 3]))


def test_adapter_validates_shapes():
    with pytest.raises(ValueError):
        ArrayTrainingData(np.zeros(3), np.zeros(3), None, [0, 1])
    with pytest.raises(ValueError):
        ArrayTrainingData(np.zeros((3, 2)), np.zeros(2), None, [0, 1])
    with pytest.raises(ValueError):
        ArrayTrainingData(np.zeros((3, 2)), np.zeros(3), np.zeros((3, 1)), [0, 2])

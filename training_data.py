from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np


class TrainingData(ABC):
    """Read-only access to the examples a Hough forest is trained on.

    Class 0 is the background class. Examples of any other class carry a
    self-vote, i.e. the Hough parameters of their parent object.
    """

    @abstractmethod
    def num_examples(self) -> int:
        """Number of training examples."""

    @abstractmethod
    def num_classes(self) -> int:
        """Number of possible class labels, some of which may be absent."""

    @abstractmethod
    def num_features(self) -> int:
        """Number of features per example."""

    @abstractmethod
    def num_vote_parameters(self, class_index: int) -> int:
        """Dimension of the Hough space of a class."""

    @abstractmethod
    def get_features(self, feature_index: int, indices: np.ndarray | None = None) -> np.ndarray:
        """Values of one feature for all examples, or for the selected subset."""

    @abstractmethod
    def get_classes(self, indices: np.ndarray | None = None) -> np.ndarray:
        """Class labels of all examples, or of the selected subset."""

    @abstractmethod
    def get_self_vote(self, example_index: int) -> np.ndarray:
        """Hough vote of one (non-background) example for its parent object."""


class ArrayTrainingData(TrainingData):
    """Training data held in numpy arrays.

    ``self_votes`` is an ``(n_examples, max_vote_params)`` matrix; rows of
    background examples and trailing columns beyond a class's vote dimension
    are ignored.
    """

    def __init__(
        self,
        features: np.ndarray,
        classes: np.ndarray,
        self_votes: np.ndarray | None,
        num_vote_params: list[int] | np.ndarray,
        num_classes: int | None = None,
    ) -> None:
        self.features = np.asarray(features, dtype=np.float64)
        self.classes = np.asarray(classes, dtype=np.int64)
        self.num_vote_params = np.asarray(num_vote_params, dtype=np.int64)

        if self.features.ndim != 2:
            raise ValueError("features must be a 2D array")
        if self.classes.ndim != 1 or self.classes.shape[0] != self.features.shape[0]:
            raise ValueError("classes must be a 1D array with the same number of rows as features")

        max_params = int(self.num_vote_params.max()) if self.num_vote_params.size > 0 else 0
        if self_votes is None:
            self_votes = np.zeros((self.features.shape[0], max_params), dtype=np.float64)
        self.self_votes = np.asarray(self_votes, dtype=np.float64)
        if self.self_votes.ndim == 1:
            self.self_votes = self.self_votes.reshape(-1, 1)
        if self.self_votes.ndim != 2 or self.self_votes.shape[0] != self.features.shape[0]:
            raise ValueError("self_votes must be a 2D array with the same number of rows as features")
        if self.self_votes.shape[1] < max_params:
            raise ValueError("self_votes must have a column for every vote parameter")

        self._num_classes = int(num_classes) if num_classes is not None else int(self.num_vote_params.size)

    def num_examples(self) -> int:
        return int(self.features.shape[0])

    def num_classes(self) -> int:
        return self._num_classes

    def num_features(self) -> int:
        return int(self.features.shape[1])

    def num_vote_parameters(self, class_index: int) -> int:
        return int(self.num_vote_params[class_index])

    def get_features(self, feature_index: int, indices: np.ndarray | None = None) -> np.ndarray:
        column = self.features[:, feature_index]
        return column.copy() if indices is None else column[np.asarray(indices, dtype=np.int64)]

    def get_classes(self, indices: np.ndarray | None = None) -> np.ndarray:
        return self.classes.copy() if indices is None else self.classes[np.asarray(indices, dtype=np.int64)]

    def get_self_vote(self, example_index: int) -> np.ndarray:
        n_params = self.num_vote_parameters(int(self.classes[example_index]))
        return self.self_votes[example_index, :n_params].copy()


@dataclass
class TrainingCache:
    """Forest-owned copy of the training data, indexed by example."""

    classes: np.ndarray
    features: np.ndarray
    self_votes: np.ndarray
    num_vote_params: np.ndarray

    @property
    def num_examples(self) -> int:
        return int(self.classes.shape[0])

    @property
    def num_features(self) -> int:
        return int(self.features.shape[1])

    def freeze(self) -> "TrainingCache":
        for arr in (self.classes, self.features, self.self_votes, self.num_vote_params):
            arr.flags.writeable = False
        return self


def cache_training_data(
    training_data: TrainingData,
    num_classes: int,
    num_features: int,
    num_vote_params: np.ndarray,
) -> TrainingCache:
    """Copy everything the forest needs out of ``training_data``."""
    if training_data.num_classes() != num_classes:
        raise ValueError(
            f"training data has {training_data.num_classes()} classes, forest expects {num_classes}"
        )
    if training_data.num_features() != num_features:
        raise ValueError(
            f"training data has {training_data.num_features()} features, forest expects {num_features}"
        )
    for c in range(1, num_classes):
        if training_data.num_vote_parameters(c) != int(num_vote_params[c]):
            raise ValueError(f"number of vote parameters for class {c} does not match the forest")

    n = int(training_data.num_examples())
    if n < 0:
        raise ValueError("num_examples must be non-negative")

    classes = np.array(training_data.get_classes(), dtype=np.int64).reshape(-1)
    if classes.shape[0] != n:
        raise ValueError("get_classes returned the wrong number of labels")
    if n > 0 and (classes.min() < 0 or classes.max() >= num_classes):
        raise ValueError(f"class labels must lie in [0, {num_classes})")

    # Row-major so that one example's features are contiguous for lookups.
    features = np.empty((n, num_features), dtype=np.float64, order="C")
    for feature_index in range(num_features):
        values = np.asarray(training_data.get_features(feature_index), dtype=np.float64).reshape(-1)
        if values.shape[0] != n:
            raise ValueError(f"get_features({feature_index}) returned the wrong number of values")
        features[:, feature_index] = values

    max_vote_params = int(num_vote_params[1:].max()) if num_classes > 1 else 0
    self_votes = np.zeros((n, max_vote_params), dtype=np.float64)
    for i in np.flatnonzero(classes != 0):
        n_params = int(num_vote_params[classes[i]])
        vote = np.asarray(training_data.get_self_vote(int(i)), dtype=np.float64).reshape(-1)
        if vote.shape[0] != n_params:
            raise ValueError(
                f"self-vote of example {i} has {vote.shape[0]} parameters, expected {n_params}"
            )
        self_votes[i, :n_params] = vote

    return TrainingCache(
        classes=classes,
        features=features,
        self_votes=self_votes,
        num_vote_params=np.array(num_vote_params, dtype=np.int64),
    ).freeze()

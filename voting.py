from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True, eq=False)
class Vote:
    """A single Hough vote.

    ``params`` and ``features`` are read-only views into the forest's training
    cache and are only valid while the forest is neither retrained nor cleared.
    ``index`` is the training example the vote was looked up from, or -1.
    """

    target_class: int
    params: np.ndarray
    weight: float
    index: int = -1
    features: np.ndarray | None = None

    @property
    def num_parameters(self) -> int:
        return int(self.params.size)

    @property
    def num_voting_features(self) -> int:
        return -1 if self.features is None else int(self.features.size)


class VoteCallback(ABC):
    """Sink called once for every cast vote."""

    @abstractmethod
    def __call__(self, vote: Vote) -> None:
        ...


@dataclass
class VoteCollector(VoteCallback):
    """Callback that keeps copies of every vote it receives."""

    votes: list[Vote] = field(default_factory=list)

    def __call__(self, vote: Vote) -> None:
        self.votes.append(
            Vote(
                target_class=vote.target_class,
                params=np.array(vote.params, dtype=np.float64),
                weight=vote.weight,
                index=vote.index,
                features=None if vote.features is None else np.array(vote.features, dtype=np.float64),
            )
        )

    def __len__(self) -> int:
        return len(self.votes)

    def parameters(self) -> np.ndarray:
        if not self.votes:
            return np.empty((0, 0), dtype=np.float64)
        return np.vstack([vote.params for vote in self.votes])

    def weights(self) -> np.ndarray:
        return np.array([vote.weight for vote in self.votes], dtype=np.float64)

    def weighted_mean(self) -> np.ndarray | None:
        """Weighted mean of the collected vote parameters, or None without votes."""
        if not self.votes:
            return None
        w = self.weights()
        return (self.parameters() * w[:, None]).sum(axis=0) / w.sum()

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import json
import logging
import math
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

AUTO = -1


def _check_count(name: str, value: int, minimum: int) -> int:
    if isinstance(value, bool) or int(value) != value:
        raise ValueError(f"{name} must be an integer")
    value = int(value)
    if 0 <= value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, or negative to auto-select")
    return value


def _check_fraction(name: str, value: float) -> float:
    value = float(value)
    if math.isnan(value):
        raise ValueError(f"{name} must not be NaN")
    if value > 1.0:
        raise ValueError(f"{name} must be in [0, 1], or negative to auto-select")
    return value


@dataclass(frozen=True)
class HoughForestOptions:
    """Options controlling Hough forest induction and voting.

    A negative value for a numeric option auto-selects it from the training
    data (see ``auto_select_unspecified_options``).
    """

    max_depth: int = AUTO
    max_leaf_elements: int = AUTO
    max_candidate_features: int = AUTO
    num_feature_expansions: int = AUTO
    max_candidate_thresholds: int = AUTO
    # Stored as uncertainty; max_dominant_fraction is 1 - min_class_uncertainty.
    min_class_uncertainty: float = float(AUTO)
    probabilistic_sampling: bool = True
    verbose: int = 1

    def __post_init__(self) -> None:
        _check_count("max_depth", self.max_depth, 0)
        _check_count("max_leaf_elements", self.max_leaf_elements, 0)
        _check_count("max_candidate_features", self.max_candidate_features, 1)
        _check_count("num_feature_expansions", self.num_feature_expansions, 1)
        _check_count("max_candidate_thresholds", self.max_candidate_thresholds, 1)
        _check_fraction("min_class_uncertainty", self.min_class_uncertainty)
        if int(self.verbose) != self.verbose or self.verbose < 0:
            raise ValueError("verbose must be a non-negative integer")

    @property
    def max_dominant_fraction(self) -> float:
        if self.min_class_uncertainty < 0:
            return float(AUTO)
        return 1.0 - self.min_class_uncertainty

    def is_resolved(self) -> bool:
        return (
            self.max_depth >= 0
            and self.max_leaf_elements >= 0
            and self.max_candidate_features >= 1
            and self.num_feature_expansions >= 1
            and self.max_candidate_thresholds >= 1
            and self.min_class_uncertainty >= 0
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HoughForestOptions":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown options: {sorted(unknown)}")
        return cls(**data)

    def save(self, target: str | Path | IO[str]) -> bool:
        """Save the options as JSON to a path or text stream."""
        try:
            if hasattr(target, "write"):
                json.dump(self.to_dict(), target, indent=2)
            else:
                with open(target, "w", encoding="utf-8") as f:
                    json.dump(self.to_dict(), f, indent=2)
        except (OSError, TypeError) as exc:
            logger.error(f"HoughForestOptions: could not save options to {target!r}: {exc}")
            return False
        return True

    @classmethod
    def defaults(cls) -> "HoughForestOptions":
        return cls()


class OptionsBuilder:
    """Mutable builder for ``HoughForestOptions`` with chained setters."""

    def __init__(self, options: HoughForestOptions | None = None) -> None:
        self._values = (options or HoughForestOptions()).to_dict()

    def set_max_depth(self, value: int) -> "OptionsBuilder":
        """Maximum depth of a tree."""
        self._values["max_depth"] = _check_count("max_depth", value, 0)
        return self

    def set_max_leaf_elements(self, value: int) -> "OptionsBuilder":
        """Maximum number of examples in a leaf, unless the maximum depth is reached first."""
        self._values["max_leaf_elements"] = _check_count("max_leaf_elements", value, 0)
        return self

    def set_max_candidate_features(self, value: int) -> "OptionsBuilder":
        """Maximum number of features considered for splitting per round."""
        self._values["max_candidate_features"] = _check_count("max_candidate_features", value, 1)
        return self

    def set_num_feature_expansions(self, value: int) -> "OptionsBuilder":
        """Number of times the candidate feature set is resampled to find a split."""
        self._values["num_feature_expansions"] = _check_count("num_feature_expansions", value, 1)
        return self

    def set_max_candidate_thresholds(self, value: int) -> "OptionsBuilder":
        """Maximum number of thresholds considered per candidate feature."""
        self._values["max_candidate_thresholds"] = _check_count("max_candidate_thresholds", value, 1)
        return self

    def set_min_class_uncertainty(self, value: float) -> "OptionsBuilder":
        """Minimum class uncertainty (1 - dominant class fraction) for a node to be split."""
        value = _check_fraction("min_class_uncertainty", value)
        self._values["min_class_uncertainty"] = float(AUTO) if value < 0 else value
        return self

    def set_max_dominant_fraction(self, value: float) -> "OptionsBuilder":
        """Maximum fraction of a node covered by its dominant class for the node to be split."""
        value = _check_fraction("max_dominant_fraction", value)
        self._values["min_class_uncertainty"] = float(AUTO) if value < 0 else 1.0 - value
        return self

    def set_probabilistic_sampling(self, value: bool) -> "OptionsBuilder":
        self._values["probabilistic_sampling"] = bool(value)
        return self

    def set_verbose(self, value: int) -> "OptionsBuilder":
        """0 is silent, 1 logs forest progress, 2 and above log every node."""
        if int(value) != value or value < 0:
            raise ValueError("verbose must be a non-negative integer")
        self._values["verbose"] = int(value)
        return self

    def build(self) -> HoughForestOptions:
        return HoughForestOptions(**self._values)

    def load(self, source: str | Path | IO[str]) -> bool:
        """Load options from a JSON path or text stream. The builder is unchanged on failure."""
        try:
            if hasattr(source, "read"):
                data = json.load(source)
            else:
                with open(source, "r", encoding="utf-8") as f:
                    data = json.load(f)
            options = HoughForestOptions.from_dict(data)
        except (OSError, ValueError, TypeError) as exc:
            logger.error(f"OptionsBuilder: could not load options from {source!r}: {exc}")
            return False

        self._values = options.to_dict()
        return True

    def save(self, target: str | Path | IO[str]) -> bool:
        return self.build().save(target)


def auto_select_unspecified_options(
    options: HoughForestOptions,
    num_examples: int,
    num_features: int,
) -> HoughForestOptions:
    """Resolve every auto-selected option against the shape of the training data."""
    n = max(int(num_examples), 2)
    resolved = options

    if resolved.max_depth < 0:
        resolved = replace(resolved, max_depth=max(1, int(math.ceil(2.0 * math.log2(n)))))
    if resolved.max_leaf_elements < 0:
        resolved = replace(resolved, max_leaf_elements=max(1, int(round(math.log2(n)))))
    if resolved.max_candidate_features < 0:
        resolved = replace(resolved, max_candidate_features=max(1, int(num_features)))
    if resolved.num_feature_expansions < 0:
        expansions = int(math.ceil(num_features / float(resolved.max_candidate_features)))
        resolved = replace(resolved, num_feature_expansions=max(1, expansions))
    if resolved.max_candidate_thresholds < 0:
        resolved = replace(resolved, max_candidate_thresholds=max(16, int(math.ceil(math.sqrt(n)))))
    if resolved.min_class_uncertainty < 0:
        resolved = replace(resolved, min_class_uncertainty=0.0)

    return resolved

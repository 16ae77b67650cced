import io
import json

import pytest

from hough_options import HoughForestOptions, OptionsBuilder, auto_select_unspecified_options


def test_defaults_are_auto():
    options = HoughForestOptions.defaults()
    assert options.max_depth < 0
    assert options.min_class_uncertainty < 0
    assert options.max_dominant_fraction < 0
    assert options.probabilistic_sampling
    assert options.verbose == 1
    assert not options.is_resolved()


def test_builder_chains_setters():
    options = (
        OptionsBuilder()
        .set_max_depth(7)
        .set_max_leaf_elements(3)
        .set_max_candidate_features(2)
        .set_num_feature_expansions(4)
        .set_max_candidate_thresholds(9)
        .set_probabilistic_sampling(False)
        .set_verbose(0)
        .build()
    )
    assert options == HoughForestOptions(
        max_depth=7,
        max_leaf_elements=3,
        max_candidate_features=2,
        num_feature_expansions=4,
        max_candidate_thresholds=9,
        probabilistic_sampling=False,
        verbose=0,
    )


def test_uncertainty_and_dominant_fraction_are_one_threshold():
    builder = OptionsBuilder().set_min_class_uncertainty(0.25)
    assert builder.build().max_dominant_fraction == pytest.approx(0.75)

    builder.set_max_dominant_fraction(0.9)
    assert builder.build().min_class_uncertainty == pytest.approx(0.1)

    builder.set_min_class_uncertainty(0.4)
    assert builder.build().max_dominant_fraction == pytest.approx(0.6)

    builder.set_max_dominant_fraction(-1)
    assert builder.build().min_class_uncertainty < 0


@pytest.mark.parametrize(
    "setter, value",
    [
        ("set_max_candidate_features", 0),
        ("set_num_feature_expansions", 0),
        ("set_max_candidate_thresholds", 0),
        ("set_min_class_uncertainty", 1.5),
        ("set_max_dominant_fraction", float("nan")),
        ("set_verbose", -1),
        ("set_max_depth", 2.5),
    ],
)
def test_invalid_values_are_rejected_at_the_setter(setter, value):
    builder = OptionsBuilder()
    before = builder.build()
    with pytest.raises(ValueError):
        getattr(builder, setter)(value)
    assert builder.build() == before


def test_frozen_options_validate():
    with pytest.raises(ValueError):
        HoughForestOptions(max_candidate_thresholds=0)
    with pytest.raises(ValueError):
        HoughForestOptions(min_class_uncertainty=2.0)


def test_auto_select_resolves_only_unspecified_options():
    draft = HoughForestOptions(max_depth=5, verbose=0)
    resolved = auto_select_unspecified_options(draft, num_examples=1000, num_features=12)

    assert resolved.is_resolved()
    assert resolved.max_depth == 5
    assert resolved.max_leaf_elements == 10
    assert resolved.max_candidate_features == 12
    assert resolved.num_feature_expansions == 1
    assert resolved.max_candidate_thresholds == 32
    assert resolved.max_dominant_fraction == 1.0
    assert draft.max_leaf_elements < 0

    resolved = auto_select_unspecified_options(
        HoughForestOptions(max_candidate_features=5), num_examples=0, num_features=12
    )
    assert resolved.num_feature_expansions == 3
    assert resolved.max_depth == 2
    assert resolved.max_leaf_elements == 1


def test_save_and_load_round_trip(tmp_path):
    options = (
        OptionsBuilder()
        .set_max_depth(12)
        .set_max_dominant_fraction(0.1 + 0.2)
        .set_probabilistic_sampling(False)
        .build()
    )
    path = tmp_path / "options.json"
    assert options.save(path)

    builder = OptionsBuilder()
    assert builder.load(path)
    assert builder.build() == options

    stream = io.StringIO()
    assert OptionsBuilder(options).save(stream)
    stream.seek(0)
    assert json.loads(stream.getvalue())["max_depth"] == 12
    builder = OptionsBuilder()
    assert builder.load(stream)
    assert builder.build() == options


def test_failed_load_leaves_builder_unchanged(tmp_path):
    builder = OptionsBuilder().set_max_depth(3)
    assert not builder.load(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert not builder.load(bad)

    unknown = tmp_path / "unknown.json"
    unknown.write_text(json.dumps({"max_depth": 4, "colour": "red"}))
    assert not builder.load(unknown)

    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"max_candidate_features": 0}))
    assert not builder.load(invalid)

    assert builder.build().max_depth == 3


def test_save_to_unwritable_path_fails(tmp_path):
    assert not HoughForestOptions().save(tmp_path / "no" / "such" / "dir" / "options.json")

import json
from datetime import datetime

import pytest

from cineai_rec.recommender import TemporalPreferences, TimeSlotPreference
from cineai_rec.signal_weights import (
    BoostCeilings,
    SignalWeights,
    Signals,
    UnknownSignalError,
    WeightConfig,
    compute_score,
    genre_affinity_boost,
    load_weight_config,
    memory_affinity_boost,
    save_weight_config,
    temporal_affinity_boost,
)


def test_default_weights_score_weighted_sum():
    score = compute_score({"semantic": 1.0, "storyline": 0.5}, WeightConfig())

    # 0.30 * 1.0 + 0.20 * 0.5
    assert score == pytest.approx(0.4)


def test_absent_signals_count_as_zero():
    assert compute_score({}, WeightConfig()) == 0.0
    assert compute_score(Signals(), WeightConfig()) == 0.0


def test_boosts_are_capped_at_their_ceilings():
    config = WeightConfig()

    score = compute_score({"genre_boost": 0.9, "temporal_boost": 0.05, "memory": 5.0}, config)

    assert score == pytest.approx(0.20 + 0.05 + 0.25)


def test_score_is_not_clamped_to_one():
    all_ones = {name: 1.0 for name in ("semantic", "storyline", "talent", "genre", "temporal", "sentiment", "social")}
    score = compute_score({**all_ones, "genre_boost": 1.0, "temporal_boost": 1.0, "memory": 1.0}, WeightConfig())

    assert score == pytest.approx(1.0 + 0.20 + 0.15 + 0.25)


def test_score_is_monotonic_in_each_signal():
    config = WeightConfig()
    base = {"semantic": 0.3, "genre": 0.2}

    for name in ("semantic", "storyline", "talent", "genre", "temporal", "sentiment", "social"):
        raised = {**base, name: min(1.0, base.get(name, 0.0) + 0.5)}
        assert compute_score(raised, config) >= compute_score(base, config)


def test_unknown_signal_is_rejected():
    with pytest.raises(UnknownSignalError):
        compute_score({"semantic": 1.0, "vibes": 0.5}, WeightConfig())


@pytest.mark.parametrize("value", [-0.1, 1.5, "high", True])
def test_primary_signal_out_of_range_is_rejected(value):
    with pytest.raises(ValueError):
        Signals(semantic=value)


def test_negative_boost_is_rejected():
    with pytest.raises(ValueError):
        Signals(memory=-0.5)
    assert Signals(memory=3.0).memory == 3.0


def test_weights_file_overrides_defaults(weights_file):
    path = weights_file({
        "metadata": {"tuned_by": "ops"},
        "weights": {"semantic": 0.5, "social": 0.0},
        "boosts": {"memory": 0.1},
    })

    config = load_weight_config(path, environ={})

    assert config.weights.semantic == 0.5
    assert config.weights.social == 0.0
    assert config.weights.storyline == 0.20
    assert config.ceilings.memory == 0.1
    assert config.ceilings.genre == 0.20
    assert config.metadata == {"tuned_by": "ops"}


def test_invalid_file_values_fall_back_per_key(weights_file):
    path = weights_file({
        "weights": {"semantic": "lots", "storyline": 1.7, "talent": -1, "genre": 0.4, "mystery": 0.9},
        "boosts": {"temporal": None},
    })

    config = load_weight_config(path, environ={})

    assert config.weights.semantic == 0.30
    assert config.weights.storyline == 0.20
    assert config.weights.talent == 0.15
    assert config.weights.genre == 0.4
    assert config.ceilings.temporal == 0.15


def test_malformed_or_missing_file_uses_defaults(weights_file, tmp_path):
    assert load_weight_config(weights_file("{not json"), environ={}) == WeightConfig()
    assert load_weight_config(weights_file("[1, 2]"), environ={}) == WeightConfig()
    assert load_weight_config(tmp_path / "absent.json", environ={}) == WeightConfig()


def test_env_overrides_take_precedence_over_file(weights_file):
    path = weights_file({"weights": {"semantic": 0.5}})
    environ = {
        "CINEAI_WEIGHT_SEMANTIC": "0.6",
        "CINEAI_WEIGHT_SOCIAL": "nope",
        "CINEAI_BOOST_MEMORY_MAX": "0.05",
    }

    config = load_weight_config(path, environ=environ)

    assert config.weights.semantic == 0.6
    assert config.weights.social == 0.05
    assert config.ceilings.memory == 0.05


def test_tuned_weights_change_the_score(weights_file):
    path = weights_file({"weights": {"semantic": 1.0, "storyline": 0.0}})
    config = load_weight_config(path, environ={})

    assert compute_score({"semantic": 1.0, "storyline": 0.5}, config) == pytest.approx(1.0)


def test_normalized_weights_sum_to_one():
    weights = SignalWeights(semantic=0.6, storyline=0.6, talent=0.0, genre=0.0,
                            temporal=0.0, sentiment=0.0, social=0.0)

    normalized = weights.normalized()

    assert normalized.total() == pytest.approx(1.0)
    assert normalized.semantic == pytest.approx(0.5)

    zero = SignalWeights(**{name: 0.0 for name in ("semantic", "storyline", "talent", "genre",
                                                   "temporal", "sentiment", "social")})
    with pytest.raises(ValueError):
        zero.normalized()


def test_save_and_reload_weights(tmp_path):
    config = WeightConfig(
        weights=SignalWeights(semantic=0.4),
        ceilings=BoostCeilings(memory=0.1),
        metadata={"version": 2},
    )

    path = save_weight_config(config, tmp_path / "nested" / "weights.json")
    payload = json.loads(path.read_text())

    assert set(payload) == {"metadata", "weights", "boosts"}
    assert load_weight_config(path, environ={}) == config


def test_genre_and_memory_boosts_are_case_insensitive_means():
    affinity = {"Horror": 0.8, "drama": 0.4}

    assert genre_affinity_boost(["horror", "Drama"], affinity) == pytest.approx(0.6)
    assert genre_affinity_boost(["Comedy"], affinity) == 0.0
    assert genre_affinity_boost([], affinity) == 0.0
    assert memory_affinity_boost(["Horror"], {"horror": 3.0}) == 1.0


def test_temporal_boost_uses_hour_and_weekday_slots():
    # 2024-05-06 is a Monday (weekday 0)
    now = datetime(2024, 5, 6, 21, 0)
    prefs = TemporalPreferences(
        time_of_day={21: TimeSlotPreference(preferred_genres=["Horror"], confidence=0.6)},
        day_of_week={0: TimeSlotPreference(preferred_genres=["horror"], watch_count=2)},
    )

    assert temporal_affinity_boost(["Horror"], prefs, now) == pytest.approx(0.6 + 2 / 5)
    assert temporal_affinity_boost(["Comedy"], prefs, now) == 0.0
    assert temporal_affinity_boost(["Horror"], None, now) == 0.0

    busy = TemporalPreferences(day_of_week={0: TimeSlotPreference(["Horror"], watch_count=12)})
    assert temporal_affinity_boost(["Horror"], busy, now) == 1.0

"""
Signal weights and the weighted scoring model for recommendations.

Each recommendation carries a fixed set of named signal scores in [0,1].
The relevance score is the weighted sum of the primary signals plus three
secondary boosts (genre, temporal, memory), each capped by its own ceiling:

    score = sum(weight[s] * signals[s] for s in primary)
            + min(genre_boost, GENRE_MAX)
            + min(temporal_boost, TEMPORAL_MAX)
            + min(memory, MEMORY_MAX)

Genre and temporal affinity are counted twice on purpose, once as a
weighted primary term and once as a capped boost, so a little extra credit
is available without unbounded compounding.

The result is NOT normalized. Weights are operator-tunable and need not sum
to 1, and boosts are added on top, so scores can exceed 1. Callers that
need a bounded value must clamp or rescale it themselves; the model never
renormalizes weights behind the operator's back.

Weights are data: defaults live in config.py, overrides come from a JSON
file and from CINEAI_WEIGHT_<NAME> / CINEAI_BOOST_<NAME>_MAX environment
variables. A bad value falls back to the default for that key only.
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping

from .config import (
    BOOST_ENV_PREFIX,
    DEFAULT_BOOST_CEILINGS,
    DEFAULT_SIGNAL_WEIGHTS,
    TEMPORAL_DAY_FULL_WATCH_COUNT,
    WEIGHT_ENV_PREFIX,
    WEIGHTS_PATH,
)

logger = logging.getLogger(__name__)

PRIMARY_SIGNALS = ("semantic", "storyline", "talent", "genre", "temporal", "sentiment", "social")
BOOST_SIGNALS = ("genre_boost", "temporal_boost", "memory")


class UnknownSignalError(ValueError):
    """Raised when a signal or weight name outside the closed set is used."""


def _check_unit(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Signal '{name}' must be a number, got {value!r}")
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"Signal '{name}' must be within [0, 1], got {value}")
    return value


def _check_non_negative(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Boost '{name}' must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value) or value < 0.0:
        raise ValueError(f"Boost '{name}' must be a finite non-negative number, got {value}")
    return value


@dataclass(frozen=True)
class Signals:
    """
    Closed set of recommendation signals.

    Primary signals are bounded scores in [0,1]. The boost fields are raw
    secondary magnitudes (>= 0) that the model caps at the configured
    ceilings; `memory` is conversational-memory affinity and only ever
    contributes as a boost.
    """

    semantic: float = 0.0
    storyline: float = 0.0
    talent: float = 0.0
    genre: float = 0.0
    temporal: float = 0.0
    sentiment: float = 0.0
    social: float = 0.0
    genre_boost: float = 0.0
    temporal_boost: float = 0.0
    memory: float = 0.0

    def __post_init__(self) -> None:
        for name in PRIMARY_SIGNALS:
            object.__setattr__(self, name, _check_unit(name, getattr(self, name)))
        for name in BOOST_SIGNALS:
            object.__setattr__(self, name, _check_non_negative(name, getattr(self, name)))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Signals":
        """Build from a name->score mapping, rejecting names outside the set."""
        unknown = sorted(set(values) - set(PRIMARY_SIGNALS) - set(BOOST_SIGNALS))
        if unknown:
            raise UnknownSignalError(f"Unknown signal(s): {', '.join(map(str, unknown))}")
        return cls(**dict(values))

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class SignalWeights:
    semantic: float = DEFAULT_SIGNAL_WEIGHTS["semantic"]
    storyline: float = DEFAULT_SIGNAL_WEIGHTS["storyline"]
    talent: float = DEFAULT_SIGNAL_WEIGHTS["talent"]
    genre: float = DEFAULT_SIGNAL_WEIGHTS["genre"]
    temporal: float = DEFAULT_SIGNAL_WEIGHTS["temporal"]
    sentiment: float = DEFAULT_SIGNAL_WEIGHTS["sentiment"]
    social: float = DEFAULT_SIGNAL_WEIGHTS["social"]

    def total(self) -> float:
        return sum(getattr(self, name) for name in PRIMARY_SIGNALS)

    def normalized(self) -> "SignalWeights":
        """
        Return a copy whose weights sum to 1.

        Operator tooling only (e.g. `cineai-rec weights --normalize`);
        compute_score never calls this.
        """
        total = self.total()
        if total <= 0:
            raise ValueError("Total weight cannot be zero")
        return SignalWeights(**{name: getattr(self, name) / total for name in PRIMARY_SIGNALS})


@dataclass(frozen=True)
class BoostCeilings:
    genre: float = DEFAULT_BOOST_CEILINGS["genre"]
    temporal: float = DEFAULT_BOOST_CEILINGS["temporal"]
    memory: float = DEFAULT_BOOST_CEILINGS["memory"]


@dataclass(frozen=True)
class WeightConfig:
    """Effective weights and boost ceilings used by compute_score."""

    weights: SignalWeights = field(default_factory=SignalWeights)
    ceilings: BoostCeilings = field(default_factory=BoostCeilings)
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata,
            "weights": asdict(self.weights),
            "boosts": asdict(self.ceilings),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WeightConfig":
        """
        Build from the persisted JSON shape.

        Each value is validated on its own; invalid values fall back to the
        documented default for that key, unknown keys are ignored.
        """
        weights = _overlay(SignalWeights(), payload.get("weights") or {}, "weights")
        ceilings = _overlay(BoostCeilings(), payload.get("boosts") or {}, "boosts")
        return cls(weights=weights, ceilings=ceilings, metadata=dict(payload.get("metadata") or {}))


def _parse_weight(source: str, raw: Any, default: float) -> float:
    """Parse one weight/ceiling value; anything unusable yields `default`."""
    try:
        if isinstance(raw, bool):
            raise TypeError("booleans are not weights")
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid weight {source}={raw!r}, using default {default}")
        return default
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        logger.warning(f"Weight {source}={value} is outside [0, 1], using default {default}")
        return default
    return value


def _overlay(base, values: Mapping[str, Any], section: str):
    names = {f.name for f in fields(base)}
    defaults = type(base)()
    updates = {}
    for name, raw in values.items():
        if name not in names:
            logger.warning(f"Ignoring unknown {section} key '{name}'")
            continue
        updates[name] = _parse_weight(f"{section}.{name}", raw, getattr(defaults, name))
    return replace(base, **updates)


def _env_overrides(environ: Mapping[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    weight_values = {}
    for name in PRIMARY_SIGNALS:
        key = f"{WEIGHT_ENV_PREFIX}{name.upper()}"
        if key in environ:
            weight_values[name] = environ[key]

    boost_values = {}
    for name in asdict(BoostCeilings()):
        key = f"{BOOST_ENV_PREFIX}{name.upper()}_MAX"
        if key in environ:
            boost_values[name] = environ[key]
    return weight_values, boost_values


def load_weight_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> WeightConfig:
    """
    Resolve the effective configuration: defaults, then file, then env.

    A missing file is normal (defaults apply). An unreadable or malformed
    file is logged and skipped. Never raises for bad values.
    """
    weight_path = Path(path) if path else WEIGHTS_PATH
    environ = os.environ if environ is None else environ

    config = WeightConfig()
    if weight_path.exists():
        try:
            payload = json.loads(weight_path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("top-level JSON value must be an object")
            config = WeightConfig.from_dict(payload)
        except (OSError, ValueError) as exc:
            logger.warning(f"Failed to load weights from {weight_path}: {exc}; using defaults")
    else:
        logger.debug(f"Weights file not found at {weight_path}; using defaults")

    weight_values, boost_values = _env_overrides(environ)
    if weight_values or boost_values:
        config = WeightConfig(
            weights=_overlay(config.weights, weight_values, WEIGHT_ENV_PREFIX.rstrip("_")),
            ceilings=_overlay(config.ceilings, boost_values, BOOST_ENV_PREFIX.rstrip("_")),
            metadata=config.metadata,
        )
    return config


def save_weight_config(config: WeightConfig, path: str | Path | None = None) -> Path:
    """Persist weights to disk (used by the `weights --save` command)."""
    weight_path = Path(path) if path else WEIGHTS_PATH
    weight_path.parent.mkdir(parents=True, exist_ok=True)
    weight_path.write_text(json.dumps(config.to_dict(), indent=2))
    return weight_path


def compute_score(signals: Signals | Mapping[str, Any], config: WeightConfig) -> float:
    """
    Weighted relevance score for one item. Pure and deterministic.

    Absent signals count as 0. Unknown signal names raise UnknownSignalError.
    The result is unclamped (see module docstring).
    """
    if not isinstance(signals, Signals):
        signals = Signals.from_mapping(signals)

    weights = config.weights
    ceilings = config.ceilings

    score = sum(getattr(weights, name) * getattr(signals, name) for name in PRIMARY_SIGNALS)
    score += min(signals.genre_boost, ceilings.genre)
    score += min(signals.temporal_boost, ceilings.temporal)
    score += min(signals.memory, ceilings.memory)
    return score


# Raw boost helpers. These return uncapped magnitudes; the ceilings are
# applied only inside compute_score.

def _mean_affinity(genres: Iterable[str], affinity: Mapping[str, float]) -> float:
    keys = [g.lower() for g in genres if g]
    if not keys:
        return 0.0
    table = {str(k).lower(): v for k, v in affinity.items()}
    return sum(max(0.0, float(table.get(k, 0.0))) for k in keys) / len(keys)


def genre_affinity_boost(genres: Iterable[str], affinity: Mapping[str, float]) -> float:
    """Mean interaction-based affinity across the item's genres."""
    return _mean_affinity(genres, affinity)


def memory_affinity_boost(genres: Iterable[str], memory: Mapping[str, float]) -> float:
    """Mean remembered genre-preference strength across the item's genres."""
    return _mean_affinity(genres, {k: min(1.0, v) for k, v in memory.items()})


def temporal_affinity_boost(genres: Iterable[str], prefs, now: datetime | None = None) -> float:
    """
    Credit for genres the user tends to watch at this hour and on this weekday.

    `prefs` is a TemporalPreferences (see recommender.py): per-hour slots
    contribute their confidence, per-weekday slots contribute
    min(1, watch_count / TEMPORAL_DAY_FULL_WATCH_COUNT).
    """
    if prefs is None:
        return 0.0
    item_genres = {g.lower() for g in genres if g}
    if not item_genres:
        return 0.0

    now = now or datetime.now()
    boost = 0.0

    hour_pref = prefs.time_of_day.get(now.hour)
    if hour_pref and item_genres & {g.lower() for g in hour_pref.preferred_genres}:
        boost += max(0.0, hour_pref.confidence)

    day_pref = prefs.day_of_week.get(now.weekday())
    if day_pref and item_genres & {g.lower() for g in day_pref.preferred_genres}:
        boost += min(1.0, max(0, day_pref.watch_count) / TEMPORAL_DAY_FULL_WATCH_COUNT)

    return boost

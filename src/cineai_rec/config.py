"""
Configuration constants for the CineAI recommendation subsystem.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables; signal weights can
additionally be tuned through a JSON weights file (see signal_weights.py).
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("CINEAI_DB", "data/cineai.db"))

# Weights file (operator-tuned overrides of the defaults below)
WEIGHTS_PATH = Path(os.environ.get("CINEAI_WEIGHTS_PATH", "config/recommender-weights.json"))
WEIGHT_ENV_PREFIX = "CINEAI_WEIGHT_"
BOOST_ENV_PREFIX = "CINEAI_BOOST_"

# Request coalescing windows (seconds), one per concern
SEARCH_DEDUP_TIMEOUT = _get_float_env("CINEAI_SEARCH_DEDUP_TIMEOUT", 5.0, min_val=0.0)
MOVIE_DEDUP_TIMEOUT = _get_float_env("CINEAI_MOVIE_DEDUP_TIMEOUT", 10.0, min_val=0.0)
AI_DEDUP_TIMEOUT = _get_float_env("CINEAI_AI_DEDUP_TIMEOUT", 30.0, min_val=0.0)

# Match confidence floors when the AI gave no confidence of its own
DB_MATCH_CONFIDENCE = _get_float_env("CINEAI_DB_MATCH_CONFIDENCE", 0.8, min_val=0.0)
EXTERNAL_MATCH_CONFIDENCE = _get_float_env("CINEAI_EXTERNAL_MATCH_CONFIDENCE", 0.7, min_val=0.0)

# TMDB (external search provider)
TMDB_API_KEY = os.environ.get("TMDB_API_KEY")
TMDB_BASE_URL = os.environ.get("CINEAI_TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"
HTTP_TIMEOUT = _get_float_env("CINEAI_HTTP_TIMEOUT", 10.0, min_val=0.1)
TMDB_MAX_CONCURRENT = _get_int_env("CINEAI_TMDB_MAX_CONCURRENT", 5, min_val=1)

# Retry and Rate Limiting
MAX_HTTP_RETRIES = 3
DEFAULT_RETRY_AFTER = 5  # Default wait time if Retry-After header missing

# AI provider
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY")
ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
AI_MODEL = os.environ.get("CINEAI_AI_MODEL", "claude-3-5-sonnet-latest")
AI_MAX_TOKENS = _get_int_env("CINEAI_AI_MAX_TOKENS", 4000, min_val=1)
AI_TEMPERATURE = _get_float_env("CINEAI_AI_TEMPERATURE", 0.3, min_val=0.0)
AI_HTTP_TIMEOUT = _get_float_env("CINEAI_AI_HTTP_TIMEOUT", 60.0, min_val=1.0)
AI_MAX_RETRIES = _get_int_env("CINEAI_AI_MAX_RETRIES", 2, min_val=1)
AI_RETRY_DELAY = _get_float_env("CINEAI_AI_RETRY_DELAY", 1.0, min_val=0.0)

# Recommendation defaults
DEFAULT_RECOMMENDATION_COUNT = 10
TOP_GENRES_CONSIDERED = 5
POPULARITY_SATURATION = 100.0  # TMDB popularity at which the social signal saturates
HIGH_RATING_THRESHOLD = 7.0
POPULAR_THRESHOLD = 50.0

# Signal weights (primary weighted terms). Defaults sum to 1.0, but the
# scoring model does not enforce it.
DEFAULT_SIGNAL_WEIGHTS = {
    'semantic': 0.30,
    'storyline': 0.20,
    'talent': 0.15,
    'genre': 0.15,
    'temporal': 0.10,
    'sentiment': 0.05,
    'social': 0.05,
}

# Boost ceilings (max additive contribution of each secondary boost)
DEFAULT_BOOST_CEILINGS = {
    'genre': 0.20,
    'temporal': 0.15,
    'memory': 0.25,
}

# Temporal boost: day-of-week watch count giving full credit
TEMPORAL_DAY_FULL_WATCH_COUNT = 5

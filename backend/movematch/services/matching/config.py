from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

_ENV_PATH = Path(__file__).resolve().parents[3] / '.env'
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return int(default)


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in _TRUE_VALUES


@lru_cache(maxsize=1)
def max_leg_km() -> float:
    """Largest distance allowed on any leg of a qualifying route test."""
    return _float_env("MATCH_MAX_LEG_KM", "50")


@lru_cache(maxsize=1)
def max_date_diff_days() -> int:
    return max(0, _int_env("MATCH_MAX_DATE_DIFF_DAYS", "7"))


@lru_cache(maxsize=1)
def date_weight() -> float:
    """Score points added per day between desired dates."""
    return _float_env("MATCH_DATE_WEIGHT", "3")


@lru_cache(maxsize=1)
def missing_date_diff_days() -> int:
    """Placeholder day difference when either side has no date."""
    return max(0, _int_env("MATCH_MISSING_DATE_DIFF_DAYS", "3"))


@lru_cache(maxsize=1)
def default_volume_m3() -> float:
    return _float_env("MATCH_DEFAULT_VOLUME_M3", "5")


@lru_cache(maxsize=1)
def truck_capacity_m3() -> float:
    """Single-truck heuristic capacity used for request pairs."""
    return _float_env("MATCH_TRUCK_CAPACITY_M3", "50")


@lru_cache(maxsize=1)
def distance_parallelism() -> int:
    return max(1, _int_env("MATCH_DISTANCE_PARALLELISM", "6"))


@lru_cache(maxsize=1)
def pair_timeout_seconds() -> float:
    return max(0.1, _float_env("MATCH_PAIR_TIMEOUT_SECONDS", "15"))


@lru_cache(maxsize=1)
def accept_max_attempts() -> int:
    """Attempts at the optimistic capacity increment before giving up."""
    return max(1, _int_env("MATCH_ACCEPT_MAX_ATTEMPTS", "3"))


@lru_cache(maxsize=1)
def distance_cache_ttl_seconds() -> float:
    return max(0.0, _float_env("DISTANCE_CACHE_TTL_SECONDS", "900"))


@lru_cache(maxsize=1)
def distance_cache_max_entries() -> int:
    return max(1, _int_env("DISTANCE_CACHE_MAX_ENTRIES", "2048"))


def distance_cache_enabled() -> bool:
    return _bool_env("DISTANCE_CACHE_ENABLED", True)


def reset_cache() -> None:
    """Clear memoized values (useful in tests when env vars change)."""
    for fn in (
        max_leg_km,
        max_date_diff_days,
        date_weight,
        missing_date_diff_days,
        default_volume_m3,
        truck_capacity_m3,
        distance_parallelism,
        pair_timeout_seconds,
        accept_max_attempts,
        distance_cache_ttl_seconds,
        distance_cache_max_entries,
    ):
        fn.cache_clear()

"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Immutable process settings.

    Every field can be overridden through a ``REASSIGN_``-prefixed environment
    variable. Tests build isolated copies with ``dataclasses.replace``.
    """

    app_name: str
    app_version: str
    database_path: Path
    log_level: str

    candidate_limit: int
    availability_check_workers: int
    availability_check_timeout_seconds: float

    supervisor_user_id: str
    default_user_priority: str
    penalty_suppression_points_threshold: int
    penalty_suppression_days: int

    analytics_min_reassignments: int
    analytics_problematic_success_rate: float
    analytics_min_equivalence_acceptance_rate: float
    analytics_default_limit: int

    synthetic_random_seed: int
    synthetic_reservation_days: int
    synthetic_reservations_per_day: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings resolved from the environment."""
    return Settings(
        app_name=_env_str("REASSIGN_APP_NAME", "Resource Reassignment Engine"),
        app_version=_env_str("REASSIGN_APP_VERSION", "1.0.0"),
        database_path=Path(
            _env_str("REASSIGN_DATABASE_PATH", "data/reassignment.db")
        ),
        log_level=_env_str("REASSIGN_LOG_LEVEL", "INFO"),
        candidate_limit=_env_int("REASSIGN_CANDIDATE_LIMIT", 50),
        availability_check_workers=_env_int("REASSIGN_AVAILABILITY_WORKERS", 8),
        availability_check_timeout_seconds=_env_float(
            "REASSIGN_AVAILABILITY_TIMEOUT_SECONDS", 2.0
        ),
        supervisor_user_id=_env_str("REASSIGN_SUPERVISOR_USER_ID", "supervisor"),
        default_user_priority=_env_str("REASSIGN_DEFAULT_USER_PRIORITY", "STUDENT"),
        penalty_suppression_points_threshold=_env_int(
            "REASSIGN_PENALTY_SUPPRESSION_POINTS", 20
        ),
        penalty_suppression_days=_env_int("REASSIGN_PENALTY_SUPPRESSION_DAYS", 14),
        analytics_min_reassignments=_env_int("REASSIGN_ANALYTICS_MIN_REASSIGNMENTS", 3),
        analytics_problematic_success_rate=_env_float(
            "REASSIGN_ANALYTICS_PROBLEMATIC_SUCCESS_RATE", 0.5
        ),
        analytics_min_equivalence_acceptance_rate=_env_float(
            "REASSIGN_ANALYTICS_MIN_EQUIVALENCE_ACCEPTANCE", 0.4
        ),
        analytics_default_limit=_env_int("REASSIGN_ANALYTICS_DEFAULT_LIMIT", 10),
        synthetic_random_seed=_env_int("REASSIGN_SYNTHETIC_RANDOM_SEED", 42),
        synthetic_reservation_days=_env_int("REASSIGN_SYNTHETIC_RESERVATION_DAYS", 7),
        synthetic_reservations_per_day=_env_int(
            "REASSIGN_SYNTHETIC_RESERVATIONS_PER_DAY", 6
        ),
    )

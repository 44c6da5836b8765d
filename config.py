from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

SKIP_UNPARSEABLE = "skip"
BLOCK_UNPARSEABLE = "block"


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_url: str
    reservation_api_key: str
    admin_api_key: str
    default_slot_interval_minutes: int = 30
    default_reservation_duration_minutes: int = 120
    default_max_results: int = 5
    max_combination_size: int = 2
    unparseable_reservation_policy: str = SKIP_UNPARSEABLE
    log_level: str = "INFO"


def _clean(value: str) -> str:
    return value.strip().strip('"').strip("'")


def _get_required_env(name: str) -> str:
    value = _clean(os.getenv(name, ""))
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _get_int_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _clean(os.getenv(name, ""))
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise RuntimeError(f"Environment variable {name} must be >= {minimum}, got {value}")
    return value


def _get_policy_env(name: str) -> str:
    value = _clean(os.getenv(name, "")).lower() or SKIP_UNPARSEABLE
    if value not in (SKIP_UNPARSEABLE, BLOCK_UNPARSEABLE):
        raise RuntimeError(f"Environment variable {name} must be '{SKIP_UNPARSEABLE}' or '{BLOCK_UNPARSEABLE}'")
    return value


@lru_cache
def get_settings() -> Settings:
    max_combination_size = _get_int_env("MAX_COMBINATION_SIZE", 2, minimum=1)
    if max_combination_size > 3:
        raise RuntimeError("MAX_COMBINATION_SIZE supports at most 3 tables per combination")

    return Settings(
        app_name="Table Reservation API",
        app_version="1.0.0",
        database_url=_get_required_env("DATABASE_URL"),
        reservation_api_key=_get_required_env("RESERVATION_API_KEY"),
        admin_api_key=_get_required_env("ADMIN_API_KEY"),
        default_slot_interval_minutes=_get_int_env("DEFAULT_SLOT_INTERVAL_MINUTES", 30),
        default_reservation_duration_minutes=_get_int_env("DEFAULT_RESERVATION_DURATION_MINUTES", 120),
        default_max_results=_get_int_env("DEFAULT_MAX_RESULTS", 5),
        max_combination_size=max_combination_size,
        unparseable_reservation_policy=_get_policy_env("UNPARSEABLE_RESERVATION_POLICY"),
        log_level=_clean(os.getenv("LOG_LEVEL", "")).upper() or "INFO",
    )

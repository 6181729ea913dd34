"""Runtime settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path


_ENV_PREFIX = "VENUE_PRICING_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name, "true" if default else "false")
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Venue Pricing Engine"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    database_path: Path = Path("data/venue_pricing.db")
    seed_demo_data: bool = True

    default_timezone: str = "America/Detroit"
    currency: str = "USD"

    # Demand aggregation
    demand_throttle_minutes: float = 5.0
    demand_history_lookback_days: int = 30
    demand_default_historical_pressure: float = 1.0
    demand_default_capacity: int = 100

    # Surge materialization
    surge_base_priority: int = 10000
    surge_default_duration_hours: int = 1
    surge_default_supply_divisor: float = 10.0

    # Event auto-ratesheets
    event_ratesheet_priority: int = 4900

    # Consumer pipeline
    booking_queue_size: int = 1000
    observation_queue_size: int = 1000
    consumer_poll_timeout_seconds: float = 0.5
    publish_timeout_seconds: float = 2.0
    start_consumers: bool = True

    level_priority_ranges: dict[str, tuple[int, int]] = field(
        default_factory=lambda: {
            "CUSTOMER": (1000, 1999),
            "LOCATION": (2000, 2999),
            "SUBLOCATION": (3000, 3999),
            "EVENT": (4000, 4999),
        }
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests derive copies via dataclasses.replace."""
    return Settings(
        app_name=_env("APP_NAME", "Venue Pricing Engine"),
        app_version=_env("APP_VERSION", "1.0.0"),
        log_level=_env("LOG_LEVEL", "INFO"),
        database_path=Path(_env("DATABASE_PATH", "data/venue_pricing.db")),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", True),
        default_timezone=_env("DEFAULT_TIMEZONE", "America/Detroit"),
        currency=_env("CURRENCY", "USD"),
        demand_throttle_minutes=_env_float("DEMAND_THROTTLE_MINUTES", 5.0),
        demand_history_lookback_days=_env_int("DEMAND_HISTORY_LOOKBACK_DAYS", 30),
        demand_default_historical_pressure=_env_float(
            "DEMAND_DEFAULT_HISTORICAL_PRESSURE", 1.0
        ),
        demand_default_capacity=_env_int("DEMAND_DEFAULT_CAPACITY", 100),
        surge_base_priority=_env_int("SURGE_BASE_PRIORITY", 10000),
        surge_default_duration_hours=_env_int("SURGE_DEFAULT_DURATION_HOURS", 1),
        surge_default_supply_divisor=_env_float("SURGE_DEFAULT_SUPPLY_DIVISOR", 10.0),
        event_ratesheet_priority=_env_int("EVENT_RATESHEET_PRIORITY", 4900),
        booking_queue_size=_env_int("BOOKING_QUEUE_SIZE", 1000),
        observation_queue_size=_env_int("OBSERVATION_QUEUE_SIZE", 1000),
        consumer_poll_timeout_seconds=_env_float("CONSUMER_POLL_TIMEOUT_SECONDS", 0.5),
        publish_timeout_seconds=_env_float("PUBLISH_TIMEOUT_SECONDS", 2.0),
        start_consumers=_env_bool("START_CONSUMERS", True),
    )

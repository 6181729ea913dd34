"""Domain-level validation rules for surge tuning and booking windows."""

from __future__ import annotations

import math
from datetime import datetime

from venue_pricing.domain.models import SurgeParams


def validate_surge_params(params: SurgeParams) -> None:
    if not math.isfinite(params.alpha) or params.alpha < 0.0:
        raise ValueError("alpha must be a finite value >= 0")
    if params.min_multiplier <= 0.0:
        raise ValueError("min_multiplier must be > 0")
    if params.max_multiplier < params.min_multiplier:
        raise ValueError("max_multiplier must be >= min_multiplier")
    if not 0.0 < params.ema_alpha <= 1.0:
        raise ValueError("ema_alpha must be in (0, 1]")


def validate_booking_window(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise ValueError("booking start and end must be timezone-aware")
    if end <= start:
        raise ValueError("booking end must be after booking start")


def validate_priority_range(level: str, priority: int, ranges: dict[str, tuple[int, int]]) -> None:
    bounds = ranges.get(level)
    if bounds is None:
        raise ValueError(f"no priority range configured for level {level}")
    low, high = bounds
    if not low <= priority <= high:
        raise ValueError(f"priority {priority} outside {level} range [{low}, {high}]")

"""Pure surge factor computation from demand/supply pressure.

The factor is ``1 + alpha * ln(smoothed)`` clamped into the configured
multiplier band, where ``smoothed`` is the EMA of the pressure normalized by
its historical baseline. Nothing here touches storage.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from venue_pricing.domain.models import SurgeParams


@dataclass(frozen=True)
class SurgeCalculation:
    surge_factor: float
    pressure: float
    normalized_pressure: float
    smoothed_pressure: Optional[float]
    raw_factor: float
    applied: bool

    def to_dict(self) -> dict[str, float | bool | None]:
        """JSON-safe view; an unbounded raw factor is reported as ``None``."""
        return {
            "surge_factor": self.surge_factor,
            "pressure": self.pressure,
            "normalized_pressure": self.normalized_pressure,
            "smoothed_pressure": self.smoothed_pressure,
            "raw_factor": self.raw_factor if math.isfinite(self.raw_factor) else None,
            "applied": self.applied,
        }


NEUTRAL = SurgeCalculation(
    surge_factor=1.0,
    pressure=0.0,
    normalized_pressure=0.0,
    smoothed_pressure=None,
    raw_factor=1.0,
    applied=False,
)


def calculate_surge_factor(
    demand: float,
    supply: float,
    historical_avg_pressure: float = 1.0,
    *,
    alpha: float = 0.3,
    min_multiplier: float = 0.75,
    max_multiplier: float = 1.8,
    ema_alpha: float = 0.3,
    previous_smoothed_pressure: Optional[float] = None,
) -> SurgeCalculation:
    if supply == 0:
        return NEUTRAL

    baseline = historical_avg_pressure if historical_avg_pressure != 0 else 1.0
    pressure = demand / supply
    normalized = pressure / baseline
    if previous_smoothed_pressure is None:
        smoothed = normalized
    else:
        smoothed = ema_alpha * normalized + (1.0 - ema_alpha) * previous_smoothed_pressure

    # ln is undefined at or below zero; the factor falls to the lower bound.
    raw_factor = 1.0 + alpha * math.log(smoothed) if smoothed > 0 else -math.inf
    surge_factor = min(max(raw_factor, min_multiplier), max_multiplier)
    return SurgeCalculation(
        surge_factor=surge_factor,
        pressure=pressure,
        normalized_pressure=normalized,
        smoothed_pressure=smoothed,
        raw_factor=raw_factor,
        applied=True,
    )


def calculate_with_params(
    demand: float,
    supply: float,
    historical_avg_pressure: float,
    params: SurgeParams,
    previous_smoothed_pressure: Optional[float] = None,
) -> SurgeCalculation:
    return calculate_surge_factor(
        demand,
        supply,
        historical_avg_pressure,
        alpha=params.alpha,
        min_multiplier=params.min_multiplier,
        max_multiplier=params.max_multiplier,
        ema_alpha=params.ema_alpha,
        previous_smoothed_pressure=previous_smoothed_pressure,
    )


def apply_surge_to_price(base_price: float, surge_factor: float) -> float:
    return base_price * surge_factor

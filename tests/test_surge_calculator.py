from __future__ import annotations

import math

import pytest

from venue_pricing.domain.models import SurgeParams
from venue_pricing.services.surge_calculator import (
    NEUTRAL,
    apply_surge_to_price,
    calculate_surge_factor,
    calculate_with_params,
)


def test_double_pressure_yields_log_scaled_factor():
    result = calculate_surge_factor(20, 10, 1.0, alpha=0.3, min_multiplier=0.75, max_multiplier=1.8)

    assert result.pressure == pytest.approx(2.0)
    assert result.normalized_pressure == pytest.approx(2.0)
    assert result.raw_factor == pytest.approx(1 + 0.3 * math.log(2))
    assert result.surge_factor == pytest.approx(1.208, abs=1e-3)
    assert result.applied is True


def test_factor_is_clamped_into_band():
    high = calculate_surge_factor(10_000, 1, 1.0)
    low = calculate_surge_factor(1, 10_000, 1.0)

    assert high.surge_factor == pytest.approx(1.8)
    assert high.raw_factor > 1.8
    assert low.surge_factor == pytest.approx(0.75)
    assert low.raw_factor < 0.75


def test_zero_supply_is_neutral():
    result = calculate_surge_factor(50, 0, 1.0)

    assert result is NEUTRAL
    assert result.surge_factor == 1.0
    assert result.applied is False


def test_zero_historical_baseline_is_treated_as_one():
    with_zero = calculate_surge_factor(20, 10, 0.0)
    with_one = calculate_surge_factor(20, 10, 1.0)

    assert with_zero.surge_factor == pytest.approx(with_one.surge_factor)


def test_zero_demand_falls_to_lower_bound_and_serializes_raw_as_none():
    result = calculate_surge_factor(0, 10, 1.0)

    assert result.surge_factor == pytest.approx(0.75)
    assert result.to_dict()["raw_factor"] is None


def test_previous_smoothed_pressure_is_blended_with_ema():
    result = calculate_surge_factor(30, 10, 1.0, ema_alpha=0.5, previous_smoothed_pressure=1.0)

    assert result.smoothed_pressure == pytest.approx(0.5 * 3.0 + 0.5 * 1.0)
    assert result.surge_factor == pytest.approx(1 + 0.3 * math.log(2.0))


def test_calculate_with_params_uses_configured_band():
    params = SurgeParams(alpha=1.0, min_multiplier=0.9, max_multiplier=1.1, ema_alpha=0.3)

    result = calculate_with_params(20, 10, 1.0, params)

    assert result.surge_factor == pytest.approx(1.1)


def test_neutral_multiplier_leaves_price_unchanged():
    assert apply_surge_to_price(125.0, 1.0) == pytest.approx(125.0)
    assert apply_surge_to_price(100.0, 1.5) == pytest.approx(150.0)

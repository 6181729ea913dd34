from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from venue_pricing.domain.models import ApprovalStatus, DemandObservation, SurgeRule
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.surge_materializer import (
    SUPERSEDED_REASON,
    SurgeMaterializer,
    SurgeNotApplicableError,
)
from venue_pricing.services.surge_service import (
    SurgeConfigNotFoundError,
    SurgeService,
    SurgeUpdateService,
    SurgeValidationError,
)
from venue_pricing.utils.config import get_settings


NOW = datetime(2026, 3, 6, 15, 20, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, default_timezone="UTC")


def _seed_config(repository: PricingRepository, **overrides) -> tuple[str, str]:
    customer_id = repository.create_customer("Customer")
    location_id = repository.create_location("Location", customer_id)
    sublocation_id = repository.create_sublocation("Hall", location_id, maxCapacity=100)
    document = {
        "name": "Hall Surge",
        "appliesTo": {"level": "SUBLOCATION", "entityId": sublocation_id},
        "priority": 700,
        "demandSupplyParams": {"currentDemand": 20, "currentSupply": 10, "historicalAvgPressure": 1.0},
        "surgeParams": {"alpha": 0.3, "minMultiplier": 0.75, "maxMultiplier": 1.8, "emaAlpha": 0.3},
        "effectiveFrom": NOW - timedelta(days=1),
    }
    document.update(overrides)
    return repository.insert_surge_config(document), sublocation_id


def _build(tmp_path, filename: str, **overrides):
    settings = _build_test_settings(tmp_path, filename)
    repository = PricingRepository(settings)
    repository.initialize_database()
    config_id, sublocation_id = _seed_config(repository, **overrides)
    materializer = SurgeMaterializer(repository=repository, settings=settings, clock=lambda: NOW)
    return settings, repository, materializer, config_id, sublocation_id


def _observation(sublocation_id: str, bookings: int = 6) -> DemandObservation:
    hour = NOW.replace(minute=0)
    return DemandObservation(
        sublocation_id=sublocation_id,
        hour_start=hour,
        hour_end=hour + timedelta(hours=1),
        bookings_count=bookings,
        total_attendees=bookings * 10,
        available_capacity=100,
        demand_pressure=float(bookings),
        historical_avg_pressure=2.0,
        pressure_delta=bookings - 2.0,
        capacity_utilization=bookings * 10.0,
        emitted_at=NOW,
    )


def test_materialize_creates_inactive_draft_with_offset_priority(tmp_path):
    _, repository, materializer, config_id, _ = _build(tmp_path, "materialize.db")

    result = materializer.materialize(repository.get_surge_config(config_id))

    rule = result.rule
    assert isinstance(rule, SurgeRule)
    assert rule.name == "SURGE: Hall Surge"
    assert rule.priority == 10_700
    assert rule.approval_status is ApprovalStatus.DRAFT
    assert rule.is_active is False
    assert rule.surge_config_id == config_id
    assert rule.multiplier_snapshot == pytest.approx(1.208, abs=1e-3)
    assert rule.time_windows[0].start_time == "00:00"
    assert rule.time_windows[0].end_time == "24:00"
    assert rule.time_windows[0].value == pytest.approx(rule.multiplier_snapshot)


def test_materialize_writes_back_pointer_and_smoothed_state(tmp_path):
    _, repository, materializer, config_id, _ = _build(tmp_path, "writeback.db")

    first = materializer.materialize(repository.get_surge_config(config_id))
    config = repository.get_surge_config(config_id)

    assert config.materialized_ratesheet_id == first.rule_id
    assert config.last_materialized == NOW
    assert config.smoothed_pressure == pytest.approx(2.0)

    repository.update_surge_config(config_id, {"demandSupplyParams.currentDemand": 10})
    second = materializer.materialize(repository.get_surge_config(config_id))

    # EMA step: 0.3 * 1.0 + 0.7 * 2.0
    assert second.calculation.smoothed_pressure == pytest.approx(1.7)


def test_predictive_window_starts_at_next_hour(tmp_path):
    _, repository, materializer, config_id, sublocation_id = _build(
        tmp_path, "predictive.db", surgeDurationHours=2
    )

    result = materializer.materialize(repository.get_surge_config(config_id), _observation(sublocation_id))

    rule = result.rule
    assert rule.effective_from == datetime(2026, 3, 6, 16, tzinfo=timezone.utc)
    assert rule.effective_to == datetime(2026, 3, 6, 18, tzinfo=timezone.utc)
    assert (rule.time_windows[0].start_time, rule.time_windows[0].end_time) == ("16:00", "18:00")


def test_predictive_window_uses_config_timezone(tmp_path):
    _, repository, materializer, config_id, sublocation_id = _build(
        tmp_path, "predictive_tz.db", timezone="America/Detroit"
    )

    result = materializer.materialize(repository.get_surge_config(config_id), _observation(sublocation_id))

    assert (result.rule.time_windows[0].start_time, result.rule.time_windows[0].end_time) == ("11:00", "12:00")


def test_only_future_effective_rules_are_superseded(tmp_path):
    _, repository, materializer, config_id, sublocation_id = _build(tmp_path, "supersede.db")
    expired = repository.insert_rule(
        {
            "name": "old surge",
            "type": "SURGE_MULTIPLIER",
            "appliesTo": {"level": "SUBLOCATION", "entityId": sublocation_id},
            "priority": 10_700,
            "effectiveFrom": NOW - timedelta(hours=5),
            "effectiveTo": NOW - timedelta(hours=4),
            "timeWindows": [{"startTime": "00:00", "endTime": "24:00", "multiplier": 1.1}],
            "surgeConfigId": config_id,
            "approvalStatus": "APPROVED",
            "isActive": True,
        }
    )
    first = materializer.materialize(repository.get_surge_config(config_id), _observation(sublocation_id))
    second = materializer.materialize(repository.get_surge_config(config_id), _observation(sublocation_id))

    assert second.superseded_ids == (first.rule_id,)
    superseded = repository.get_rule_document(first.rule_id)
    assert superseded["approvalStatus"] == "SUPERSEDED"
    assert superseded["isActive"] is False
    assert superseded["supersededReason"] == SUPERSEDED_REASON
    assert repository.get_rule_document(expired)["approvalStatus"] == "APPROVED"


def test_surge_service_recalculate_and_status(tmp_path):
    settings, repository, materializer, config_id, _ = _build(tmp_path, "service.db")
    service = SurgeService(repository=repository, settings=settings, materializer=materializer)

    assert service.materialized_status(config_id).status == "none"
    service.materialize(config_id)
    repository.update_surge_config(config_id, {"demandSupplyParams.currentDemand": 40})
    recalculation = service.recalculate(config_id)

    assert recalculation.old_multiplier == pytest.approx(1.208, abs=1e-3)
    assert recalculation.new_multiplier > recalculation.old_multiplier
    assert recalculation.change_percent > 0
    assert service.materialized_status(config_id).status == "draft"
    assert service.archive(config_id) is True

    with pytest.raises(SurgeConfigNotFoundError):
        service.materialize("missing")


def test_surge_service_preview_rejects_invalid_params(tmp_path):
    settings, repository, materializer, _, _ = _build(tmp_path, "preview.db")
    service = SurgeService(repository=repository, settings=settings, materializer=materializer)
    config = repository.get_surge_config(repository.store.find("surge_configs")[0]["_id"])

    with pytest.raises(SurgeValidationError):
        service.preview(10, 5, 1.0, replace(config.surge_params, ema_alpha=0.0))
    with pytest.raises(SurgeValidationError):
        service.preview(-1, 5, 1.0, config.surge_params)


def test_update_service_feeds_observation_into_matching_configs(tmp_path):
    settings, repository, materializer, config_id, sublocation_id = _build(tmp_path, "updater.db")
    updater = SurgeUpdateService(repository=repository, settings=settings, materializer=materializer)

    results = updater.apply_observation(_observation(sublocation_id, bookings=30))

    assert len(results) == 1
    config = repository.get_surge_config(config_id)
    assert config.demand_supply.current_demand == 30
    assert config.demand_supply.current_supply == 10
    assert config.demand_supply.historical_avg_pressure == pytest.approx(2.0)
    assert config.materialized_ratesheet_id == results[0].rule_id
    assert results[0].calculation.normalized_pressure == pytest.approx(1.5)


def test_update_service_derives_supply_from_capacity(tmp_path):
    settings, repository, materializer, config_id, sublocation_id = _build(
        tmp_path,
        "updater_supply.db",
        demandSupplyParams={"currentDemand": 0, "currentSupply": 0, "historicalAvgPressure": 1.0},
    )
    updater = SurgeUpdateService(repository=repository, settings=settings, materializer=materializer)

    updater.apply_observation(_observation(sublocation_id, bookings=20))

    assert repository.get_surge_config(config_id).demand_supply.current_supply == pytest.approx(10.0)


def test_materialize_refuses_config_without_demand(tmp_path):
    _, repository, materializer, config_id, _ = _build(
        tmp_path,
        "materialize_no_demand.db",
        demandSupplyParams={"currentDemand": 0, "currentSupply": 10, "historicalAvgPressure": 1.0},
    )

    with pytest.raises(SurgeNotApplicableError):
        materializer.materialize(repository.get_surge_config(config_id))

    assert repository.count_rules({"surgeConfigId": config_id}) == 0
    assert repository.get_surge_config(config_id).materialized_ratesheet_id is None


def test_update_service_skips_observation_with_no_bookings(tmp_path):
    settings, repository, materializer, config_id, sublocation_id = _build(tmp_path, "updater_empty.db")
    updater = SurgeUpdateService(repository=repository, settings=settings, materializer=materializer)
    updater.apply_observation(_observation(sublocation_id, bookings=30))

    results = updater.apply_observation(_observation(sublocation_id, bookings=0))

    assert results == []
    config = repository.get_surge_config(config_id)
    assert config.demand_supply.current_demand == 0
    drafts = repository.list_rules_for_surge_config(config_id, [ApprovalStatus.DRAFT])
    assert len(drafts) == 1
    assert drafts[0].time_windows[0].value > 1.0

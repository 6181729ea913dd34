"""Turn a surge config (plus an optional demand observation) into a draft rule.

Materialized rules are SURGE_MULTIPLIER ratesheets created as inactive
drafts. Future-effective drafts and approved rules of the same config are
superseded first; rules whose effective period already ended are left as
history.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from venue_pricing.domain.approval import transition
from venue_pricing.domain.models import (
    ApprovalStatus,
    ConflictResolution,
    DemandObservation,
    RuleKind,
    SurgeConfig,
    SurgeRule,
)
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.surge_calculator import SurgeCalculation, calculate_with_params
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import floor_hour, resolve_zone, utc_now


logger = get_logger(__name__)

SUPERSEDED_REASON = "Replaced by newer surge prediction"
_SUPERSEDABLE = (ApprovalStatus.DRAFT, ApprovalStatus.APPROVED)


class SurgeNotApplicableError(Exception):
    """Raised when a config has no positive demand or supply to derive a surge from."""


@dataclass(frozen=True)
class SurgeWindowPlan:
    time_windows: list[dict[str, Any]]
    effective_from: datetime
    effective_to: Optional[datetime]
    predictive: bool


@dataclass(frozen=True)
class MaterializedSurge:
    rule_id: str
    rule: SurgeRule
    calculation: SurgeCalculation
    superseded_ids: tuple[str, ...]


class SurgeMaterializer:
    def __init__(
        self,
        repository: Optional[PricingRepository] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)
        self._clock = clock

    def compute_factor(self, config: SurgeConfig) -> SurgeCalculation:
        """One EMA step from the config's stored smoothed pressure."""
        params = config.demand_supply
        return calculate_with_params(
            params.current_demand,
            params.current_supply,
            params.historical_avg_pressure,
            config.surge_params,
            previous_smoothed_pressure=config.smoothed_pressure,
        )

    def build_time_windows(
        self,
        config: SurgeConfig,
        multiplier: float,
        observation: Optional[DemandObservation] = None,
    ) -> SurgeWindowPlan:
        if observation is not None:
            return self._predictive_windows(config, multiplier, observation)

        windows = [
            {
                "startTime": window.start_time or "00:00",
                "endTime": window.end_time or "24:00",
                "multiplier": multiplier,
                "daysOfWeek": list(window.days_of_week),
            }
            for window in config.time_windows
        ] or [{"startTime": "00:00", "endTime": "24:00", "multiplier": multiplier, "daysOfWeek": []}]
        return SurgeWindowPlan(
            time_windows=windows,
            effective_from=config.effective_from or self._clock(),
            effective_to=config.effective_to,
            predictive=False,
        )

    def _predictive_windows(
        self,
        config: SurgeConfig,
        multiplier: float,
        observation: DemandObservation,
    ) -> SurgeWindowPlan:
        duration = config.surge_duration_hours or self._settings.surge_default_duration_hours
        effective_from = floor_hour(observation.hour_start) + timedelta(hours=1)
        effective_to = effective_from + timedelta(hours=duration)

        # Window clock times are local to the config's zone.
        zone = resolve_zone(config.timezone or self._settings.default_timezone)
        local_start = effective_from.astimezone(zone)
        local_end = effective_to.astimezone(zone)
        if duration >= 24:
            start_time = end_time = "00:00"
        else:
            start_time = local_start.strftime("%H:%M")
            end_time = local_end.strftime("%H:%M")
        return SurgeWindowPlan(
            time_windows=[
                {"startTime": start_time, "endTime": end_time, "multiplier": multiplier, "daysOfWeek": []}
            ],
            effective_from=effective_from,
            effective_to=effective_to,
            predictive=True,
        )

    def supersede_future_rules(self, config_id: str, now: Optional[datetime] = None) -> list[str]:
        moment = now or self._clock()
        superseded: list[str] = []
        for rule in self._repository.list_rules_for_surge_config(config_id, _SUPERSEDABLE):
            if rule.effective_to is None or rule.effective_to <= moment:
                continue
            status = transition(rule.approval_status, ApprovalStatus.SUPERSEDED)
            modified = self._repository.update_rule_if_status(
                rule.rule_id,
                rule.approval_status,
                {
                    "approvalStatus": status.value,
                    "isActive": False,
                    "supersededAt": moment,
                    "supersededReason": SUPERSEDED_REASON,
                },
            )
            if modified:
                superseded.append(rule.rule_id)
        if superseded:
            logger.info(
                "Superseded future surge ratesheets | config=%s | count=%s",
                config_id,
                len(superseded),
            )
        return superseded

    def materialize(
        self,
        config: SurgeConfig,
        observation: Optional[DemandObservation] = None,
    ) -> MaterializedSurge:
        params = config.demand_supply
        if params.current_demand <= 0 or params.current_supply <= 0:
            raise SurgeNotApplicableError(
                f"Surge config {config.config_id} needs positive demand and supply "
                f"(demand={params.current_demand:g}, supply={params.current_supply:g})"
            )
        calculation = self.compute_factor(config)
        if not calculation.applied or (calculation.smoothed_pressure or 0.0) <= 0:
            raise SurgeNotApplicableError(
                f"Surge config {config.config_id} has no positive smoothed pressure"
            )

        now = self._clock()
        multiplier = calculation.surge_factor
        plan = self.build_time_windows(config, multiplier, observation)
        superseded = self.supersede_future_rules(config.config_id, now)

        description = (
            f"Predictive surge for {observation.hour_start.isoformat()}"
            if observation is not None
            else f"Auto-generated surge ratesheet from config {config.config_id}"
        )
        rule_id = self._repository.insert_rule(
            {
                "name": f"SURGE: {config.name}",
                "description": description,
                "type": RuleKind.SURGE_MULTIPLIER.value,
                "appliesTo": {
                    "level": config.applies_to.level.value,
                    "entityId": config.applies_to.entity_id,
                },
                "priority": self._settings.surge_base_priority + config.priority,
                "conflictResolution": ConflictResolution.PRIORITY.value,
                "effectiveFrom": plan.effective_from,
                "effectiveTo": plan.effective_to,
                "timeWindows": plan.time_windows,
                "surgeConfigId": config.config_id,
                "surgeMultiplierSnapshot": multiplier,
                "demandSupplySnapshot": {
                    "demand": params.current_demand,
                    "supply": params.current_supply,
                    "pressure": calculation.pressure,
                    "timestamp": now,
                },
                "approvalStatus": ApprovalStatus.DRAFT.value,
                "isActive": False,
                "createdBy": "surge-materializer",
            }
        )

        config_update: dict[str, Any] = {
            "materializedRatesheetId": rule_id,
            "lastMaterialized": now,
        }
        if calculation.smoothed_pressure is not None:
            config_update["surgeState.smoothedPressure"] = calculation.smoothed_pressure
        self._repository.update_surge_config(config.config_id, config_update)

        rule = self._repository.get_rule(rule_id)
        if not isinstance(rule, SurgeRule):
            raise RuntimeError(f"materialized ratesheet {rule_id} could not be read back")
        logger.info(
            "Surge ratesheet materialized | config=%s | ratesheet=%s | multiplier=%.3f | predictive=%s",
            config.config_id,
            rule_id,
            multiplier,
            plan.predictive,
        )
        return MaterializedSurge(
            rule_id=rule_id,
            rule=rule,
            calculation=calculation,
            superseded_ids=tuple(superseded),
        )

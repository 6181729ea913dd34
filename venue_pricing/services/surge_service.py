"""Surge config operations and the observation-driven surge updater."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

from venue_pricing.domain.constraints import validate_surge_params
from venue_pricing.domain.models import ApprovalStatus, DemandObservation, SurgeConfig, SurgeParams
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.surge_calculator import SurgeCalculation, calculate_with_params
from venue_pricing.services.surge_materializer import (
    MaterializedSurge,
    SurgeMaterializer,
    SurgeNotApplicableError,
)
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger


logger = get_logger(__name__)


class SurgeConfigNotFoundError(Exception):
    """Raised when a surge config id does not resolve."""


class SurgeValidationError(Exception):
    """Raised when surge inputs or tuning parameters are invalid."""


_STATUS_LABELS = {
    ApprovalStatus.DRAFT: "draft",
    ApprovalStatus.PENDING_APPROVAL: "pending",
    ApprovalStatus.APPROVED: "approved",
    ApprovalStatus.REJECTED: "rejected",
    ApprovalStatus.SUPERSEDED: "superseded",
}


@dataclass(frozen=True)
class Recalculation:
    old_multiplier: Optional[float]
    new_multiplier: float
    materialized: MaterializedSurge

    @property
    def change_percent(self) -> Optional[float]:
        if not self.old_multiplier:
            return None
        return (self.new_multiplier - self.old_multiplier) / self.old_multiplier * 100


@dataclass(frozen=True)
class MaterializedStatus:
    status: str
    ratesheet: Optional[dict[str, Any]]


class SurgeService:
    def __init__(
        self,
        repository: Optional[PricingRepository] = None,
        settings: Optional[Settings] = None,
        materializer: Optional[SurgeMaterializer] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)
        self._materializer = materializer or SurgeMaterializer(self._repository, self._settings)

    def get_config(self, config_id: str) -> SurgeConfig:
        config = self._repository.get_surge_config(config_id)
        if config is None:
            raise SurgeConfigNotFoundError(f"Surge config {config_id} not found")
        return config

    def preview(
        self,
        demand: float,
        supply: float,
        historical_avg_pressure: float,
        params: SurgeParams,
        previous_smoothed_pressure: Optional[float] = None,
    ) -> SurgeCalculation:
        """Compute a factor from raw inputs without touching storage."""
        try:
            validate_surge_params(params)
        except ValueError as exc:
            raise SurgeValidationError(str(exc)) from exc
        for name, value in (
            ("demand", demand),
            ("supply", supply),
            ("historical_avg_pressure", historical_avg_pressure),
        ):
            if not math.isfinite(value) or value < 0:
                raise SurgeValidationError(f"{name} must be a finite value >= 0")
        return calculate_with_params(
            demand,
            supply,
            historical_avg_pressure,
            params,
            previous_smoothed_pressure=previous_smoothed_pressure,
        )

    def materialize(
        self,
        config_id: str,
        observation: Optional[DemandObservation] = None,
    ) -> MaterializedSurge:
        config = self.get_config(config_id)
        try:
            validate_surge_params(config.surge_params)
        except ValueError as exc:
            raise SurgeValidationError(str(exc)) from exc
        return self._materializer.materialize(config, observation)

    def recalculate(self, config_id: str) -> Recalculation:
        """Re-materialize from current parameters; report old vs new multiplier."""
        config = self.get_config(config_id)
        old_multiplier: Optional[float] = None
        if config.materialized_ratesheet_id:
            previous = self._repository.get_rule_document(config.materialized_ratesheet_id)
            if previous is not None and previous.get("surgeMultiplierSnapshot") is not None:
                old_multiplier = float(previous["surgeMultiplierSnapshot"])
        materialized = self.materialize(config_id)
        return Recalculation(
            old_multiplier=old_multiplier,
            new_multiplier=materialized.calculation.surge_factor,
            materialized=materialized,
        )

    def archive(self, config_id: str) -> bool:
        """Deactivate the config's materialized ratesheet without deleting it."""
        config = self.get_config(config_id)
        if not config.materialized_ratesheet_id:
            return False
        modified = self._repository.update_rule(
            config.materialized_ratesheet_id,
            {"isActive": False},
        )
        logger.info(
            "Surge ratesheet archived | config=%s | ratesheet=%s",
            config_id,
            config.materialized_ratesheet_id,
        )
        return modified > 0

    def materialized_status(self, config_id: str) -> MaterializedStatus:
        config = self.get_config(config_id)
        if not config.materialized_ratesheet_id:
            return MaterializedStatus(status="none", ratesheet=None)
        document = self._repository.get_rule_document(config.materialized_ratesheet_id)
        if document is None:
            return MaterializedStatus(status="none", ratesheet=None)
        status = ApprovalStatus(document.get("approvalStatus", ApprovalStatus.DRAFT.value))
        return MaterializedStatus(status=_STATUS_LABELS[status], ratesheet=document)


class SurgeUpdateService:
    """Feeds demand observations into every matching active surge config."""

    def __init__(
        self,
        repository: Optional[PricingRepository] = None,
        settings: Optional[Settings] = None,
        materializer: Optional[SurgeMaterializer] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)
        self._materializer = materializer or SurgeMaterializer(self._repository, self._settings)

    def apply_observation(self, observation: DemandObservation) -> list[MaterializedSurge]:
        location_id = observation.location_id
        if location_id is None:
            sublocation = self._repository.get_sublocation(observation.sublocation_id)
            location_id = sublocation.parent_id if sublocation is not None else None

        configs = self._repository.list_active_surge_configs(observation.sublocation_id, location_id)
        results: list[MaterializedSurge] = []
        for config in configs:
            supply = config.demand_supply.current_supply or (
                observation.available_capacity / self._settings.surge_default_supply_divisor
            )
            demand_supply = {
                "currentDemand": observation.bookings_count,
                "currentSupply": supply,
                "historicalAvgPressure": observation.historical_avg_pressure,
            }
            self._repository.update_surge_config(config.config_id, {"demandSupplyParams": demand_supply})
            refreshed = self._repository.get_surge_config(config.config_id)
            if refreshed is None:
                continue
            try:
                validate_surge_params(refreshed.surge_params)
            except ValueError as exc:
                logger.warning(
                    "Skipping surge config with invalid parameters | config=%s | error=%s",
                    config.config_id,
                    exc,
                )
                continue
            try:
                results.append(self._materializer.materialize(refreshed, observation))
            except SurgeNotApplicableError as exc:
                logger.info(
                    "Surge materialization skipped | config=%s | reason=%s",
                    config.config_id,
                    exc,
                )
        logger.info(
            "Surge configs updated from demand | sublocation=%s | hour=%s | configs=%s",
            observation.sublocation_id,
            observation.hour_start.isoformat(),
            len(results),
        )
        return results

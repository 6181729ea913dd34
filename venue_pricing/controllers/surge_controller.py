"""HTTP controller for surge previews and surge config operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from venue_pricing.controllers.dependencies import get_surge_service
from venue_pricing.controllers.schemas import CamelModel
from venue_pricing.domain.models import SurgeParams
from venue_pricing.services.surge_calculator import apply_surge_to_price
from venue_pricing.services.surge_materializer import MaterializedSurge, SurgeNotApplicableError
from venue_pricing.services.surge_service import (
    SurgeConfigNotFoundError,
    SurgeService,
    SurgeValidationError,
)
from venue_pricing.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/surge-pricing", tags=["surge"])


class SurgePreviewRequest(CamelModel):
    demand: float = Field(ge=0.0)
    supply: float = Field(ge=0.0)
    historical_avg_pressure: float = Field(default=1.0, ge=0.0)
    alpha: float = Field(default=0.3, ge=0.0)
    min_multiplier: float = Field(default=0.75, gt=0.0)
    max_multiplier: float = Field(default=1.8, gt=0.0)
    ema_alpha: float = Field(default=0.3, gt=0.0, le=1.0)
    previous_smoothed_pressure: Optional[float] = Field(default=None, ge=0.0)
    base_price: Optional[float] = Field(default=None, ge=0.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "SurgePreviewRequest":
        if self.max_multiplier < self.min_multiplier:
            raise ValueError("maxMultiplier must be >= minMultiplier")
        return self


class SurgePreviewResponse(BaseModel):
    surge_factor: float
    pressure: float
    normalized_pressure: float
    smoothed_pressure: Optional[float] = None
    raw_factor: Optional[float] = None
    applied: bool
    base_price: Optional[float] = None
    final_price: Optional[float] = None


class MaterializeResponse(CamelModel):
    ratesheet_id: str
    name: str
    multiplier: float
    approval_status: str
    is_active: bool
    priority: int
    effective_from: datetime
    effective_to: Optional[datetime] = None
    superseded_ids: list[str]
    calculation: dict[str, Any]

    @classmethod
    def from_materialized(cls, materialized: MaterializedSurge) -> "MaterializeResponse":
        rule = materialized.rule
        return cls(
            ratesheet_id=materialized.rule_id,
            name=rule.name,
            multiplier=materialized.calculation.surge_factor,
            approval_status=rule.approval_status.value,
            is_active=rule.is_active,
            priority=rule.priority,
            effective_from=rule.effective_from,
            effective_to=rule.effective_to,
            superseded_ids=list(materialized.superseded_ids),
            calculation=materialized.calculation.to_dict(),
        )


class RecalculateResponse(CamelModel):
    success: bool = True
    old_multiplier: Optional[float] = None
    new_multiplier: float
    change_percent: Optional[str] = None
    ratesheet: MaterializeResponse


class ArchiveResponse(CamelModel):
    success: bool


class MaterializedStatusResponse(CamelModel):
    status: str
    ratesheet: Optional[dict[str, Any]] = None


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _conflict(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.post(
    "/calculate",
    response_model=SurgePreviewResponse,
    status_code=status.HTTP_200_OK,
)
async def calculate_surge(
    payload: SurgePreviewRequest,
    service: SurgeService = Depends(get_surge_service),
) -> SurgePreviewResponse:
    """Compute a surge factor from raw inputs; nothing is persisted."""
    try:
        calculation = service.preview(
            payload.demand,
            payload.supply,
            payload.historical_avg_pressure,
            SurgeParams(
                alpha=payload.alpha,
                min_multiplier=payload.min_multiplier,
                max_multiplier=payload.max_multiplier,
                ema_alpha=payload.ema_alpha,
            ),
            previous_smoothed_pressure=payload.previous_smoothed_pressure,
        )
        final_price = (
            apply_surge_to_price(payload.base_price, calculation.surge_factor)
            if payload.base_price is not None
            else None
        )
        return SurgePreviewResponse(
            **calculation.to_dict(),
            base_price=payload.base_price,
            final_price=final_price,
        )
    except SurgeValidationError as exc:
        raise _bad_request(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected surge preview failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to calculate surge factor",
        ) from exc


@router.post(
    "/configs/{config_id}/materialize",
    response_model=MaterializeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def materialize_config(
    config_id: str,
    service: SurgeService = Depends(get_surge_service),
) -> MaterializeResponse:
    try:
        return MaterializeResponse.from_materialized(service.materialize(config_id))
    except SurgeConfigNotFoundError as exc:
        raise _not_found(exc) from exc
    except SurgeValidationError as exc:
        raise _bad_request(exc) from exc
    except SurgeNotApplicableError as exc:
        raise _conflict(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected surge materialization failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to materialize surge config",
        ) from exc


@router.post(
    "/configs/{config_id}/recalculate",
    response_model=RecalculateResponse,
    status_code=status.HTTP_200_OK,
)
async def recalculate_config(
    config_id: str,
    service: SurgeService = Depends(get_surge_service),
) -> RecalculateResponse:
    try:
        result = service.recalculate(config_id)
        change = result.change_percent
        return RecalculateResponse(
            old_multiplier=result.old_multiplier,
            new_multiplier=result.new_multiplier,
            change_percent=f"{change:.1f}%" if change is not None else None,
            ratesheet=MaterializeResponse.from_materialized(result.materialized),
        )
    except SurgeConfigNotFoundError as exc:
        raise _not_found(exc) from exc
    except SurgeValidationError as exc:
        raise _bad_request(exc) from exc
    except SurgeNotApplicableError as exc:
        raise _conflict(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected surge recalculation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to recalculate surge config",
        ) from exc


@router.post(
    "/configs/{config_id}/archive",
    response_model=ArchiveResponse,
    status_code=status.HTTP_200_OK,
)
async def archive_config_ratesheet(
    config_id: str,
    service: SurgeService = Depends(get_surge_service),
) -> ArchiveResponse:
    try:
        return ArchiveResponse(success=service.archive(config_id))
    except SurgeConfigNotFoundError as exc:
        raise _not_found(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected surge archive failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to archive materialized ratesheet",
        ) from exc


@router.get(
    "/configs/{config_id}/ratesheet",
    response_model=MaterializedStatusResponse,
    status_code=status.HTTP_200_OK,
)
async def get_materialized_ratesheet(
    config_id: str,
    service: SurgeService = Depends(get_surge_service),
) -> MaterializedStatusResponse:
    try:
        result = service.materialized_status(config_id)
        return MaterializedStatusResponse(status=result.status, ratesheet=result.ratesheet)
    except SurgeConfigNotFoundError as exc:
        raise _not_found(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected materialized ratesheet lookup failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get materialized ratesheet",
        ) from exc

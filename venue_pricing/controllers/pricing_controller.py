"""HTTP controller for hourly price calculation."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field, field_validator

from venue_pricing.controllers.dependencies import get_pricing_service
from venue_pricing.controllers.schemas import CamelModel, HourlyPricingResponse
from venue_pricing.services.pricing_service import (
    EntityNotFoundError,
    HourlyPricingRequest,
    PricingService,
    PricingValidationError,
)
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import ensure_utc


logger = get_logger(__name__)

router = APIRouter(prefix="/pricing", tags=["pricing"])


class HourlyPricingRequestBody(CamelModel):
    """Input DTO; time-range semantics are validated in the service layer."""

    sublocation_id: str = Field(alias="subLocationId", min_length=1)
    start_time: datetime
    end_time: datetime
    timezone: Optional[str] = None
    event_id: Optional[str] = None
    is_event_booking: bool = False
    include_surge: bool = True

    @field_validator("timezone", "event_id")
    @classmethod
    def blank_as_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


@router.post(
    "/calculate-hourly",
    response_model=HourlyPricingResponse,
    status_code=status.HTTP_200_OK,
)
async def calculate_hourly(
    payload: HourlyPricingRequestBody,
    service: PricingService = Depends(get_pricing_service),
) -> HourlyPricingResponse:
    try:
        result = service.calculate_hourly(
            HourlyPricingRequest(
                sublocation_id=payload.sublocation_id,
                start=ensure_utc(payload.start_time),
                end=ensure_utc(payload.end_time),
                timezone=payload.timezone,
                event_id=payload.event_id,
                is_event_booking=payload.is_event_booking,
                include_surge=payload.include_surge,
            )
        )
        return HourlyPricingResponse.from_result(result, currency=service.currency)
    except PricingValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except EntityNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected pricing failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to calculate hourly pricing",
        ) from exc

"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from venue_pricing.services.approval_service import ApprovalService
from venue_pricing.services.event_pipeline import EventPipeline
from venue_pricing.services.event_ratesheets import EventRatesheetService
from venue_pricing.services.pricing_service import PricingService
from venue_pricing.services.surge_service import SurgeService


def _state_service(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_pricing_service(request: Request) -> PricingService:
    return _state_service(request, "pricing_service", "Pricing service")


def get_surge_service(request: Request) -> SurgeService:
    return _state_service(request, "surge_service", "Surge service")


def get_approval_service(request: Request) -> ApprovalService:
    return _state_service(request, "approval_service", "Approval service")


def get_event_ratesheet_service(request: Request) -> EventRatesheetService:
    return _state_service(request, "event_ratesheet_service", "Event ratesheet service")


def get_event_pipeline(request: Request) -> EventPipeline:
    return _state_service(request, "event_pipeline", "Event pipeline")

"""HTTP controller for ratesheet approval and event ratesheet generation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field

from venue_pricing.controllers.dependencies import get_approval_service, get_event_ratesheet_service
from venue_pricing.controllers.schemas import CamelModel
from venue_pricing.domain.approval import InvalidApprovalTransitionError
from venue_pricing.services.approval_service import (
    ApprovalConflictError,
    ApprovalOutcome,
    ApprovalService,
    ApprovalValidationError,
    RuleNotFoundError,
)
from venue_pricing.services.event_ratesheets import (
    EventNotFoundError,
    EventRatesheetError,
    EventRatesheetService,
)
from venue_pricing.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["ratesheets"])


class SubmitRequest(CamelModel):
    submitted_by: Optional[str] = None


class ApproveRequest(CamelModel):
    approved_by: str = Field(min_length=1)


class RejectRequest(CamelModel):
    rejected_by: str = Field(min_length=1)
    rejection_reason: str = Field(min_length=1)


class ApprovalResponse(CamelModel):
    id: str
    previous_status: str
    approval_status: str
    is_active: bool

    @classmethod
    def from_outcome(cls, outcome: ApprovalOutcome) -> "ApprovalResponse":
        return cls(**outcome.to_dict())


class EventRatesheetResponse(CamelModel):
    ratesheet_id: str
    event_id: str
    hourly_rate: float
    time_windows: list[dict[str, object]]
    superseded_ids: list[str]


def _run_transition(action, *args) -> ApprovalResponse:
    try:
        return ApprovalResponse.from_outcome(action(*args))
    except RuleNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except ApprovalValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except (InvalidApprovalTransitionError, ApprovalConflictError) as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected approval failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update ratesheet status",
        ) from exc


@router.post("/ratesheets/{rule_id}/submit", response_model=ApprovalResponse)
async def submit_ratesheet(
    rule_id: str,
    payload: Optional[SubmitRequest] = None,
    service: ApprovalService = Depends(get_approval_service),
) -> ApprovalResponse:
    submitted_by = payload.submitted_by if payload is not None else None
    return _run_transition(service.submit, rule_id, submitted_by)


@router.post("/ratesheets/{rule_id}/approve", response_model=ApprovalResponse)
async def approve_ratesheet(
    rule_id: str,
    payload: ApproveRequest,
    service: ApprovalService = Depends(get_approval_service),
) -> ApprovalResponse:
    return _run_transition(service.approve, rule_id, payload.approved_by)


@router.post("/ratesheets/{rule_id}/reject", response_model=ApprovalResponse)
async def reject_ratesheet(
    rule_id: str,
    payload: RejectRequest,
    service: ApprovalService = Depends(get_approval_service),
) -> ApprovalResponse:
    return _run_transition(service.reject, rule_id, payload.rejected_by, payload.rejection_reason)


@router.post(
    "/events/{event_id}/ratesheet",
    response_model=EventRatesheetResponse,
    status_code=status.HTTP_201_CREATED,
)
async def generate_event_ratesheet(
    event_id: str,
    service: EventRatesheetService = Depends(get_event_ratesheet_service),
) -> EventRatesheetResponse:
    try:
        generated = service.generate(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except EventRatesheetError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected event ratesheet failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate event ratesheet",
        ) from exc
    return EventRatesheetResponse(
        ratesheet_id=generated.rule_id,
        event_id=generated.event_id,
        hourly_rate=generated.hourly_rate,
        time_windows=generated.time_windows,
        superseded_ids=list(generated.superseded_ids),
    )

"""HTTP ingress for booking lifecycle events."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from venue_pricing.controllers.dependencies import get_event_pipeline
from venue_pricing.controllers.schemas import CamelModel
from venue_pricing.services.demand_aggregator import BookingEventMessage
from venue_pricing.services.event_pipeline import ChannelUnavailableError, EventPipeline
from venue_pricing.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/demand", tags=["demand"])


class EnqueueResponse(CamelModel):
    accepted: bool
    event_id: str
    partition_key: str
    pending: int


@router.post(
    "/events",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_booking_event(
    payload: BookingEventMessage,
    pipeline: EventPipeline = Depends(get_event_pipeline),
) -> EnqueueResponse:
    try:
        pipeline.publish_booking_event(payload.model_dump(mode="json", by_alias=True))
    except ChannelUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return EnqueueResponse(
        accepted=True,
        event_id=payload.event_id,
        partition_key=payload.sublocation_id,
        pending=pipeline.booking_channel.pending(),
    )

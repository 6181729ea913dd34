"""Response DTOs shared by the HTTP controllers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from venue_pricing.domain.models import (
    CandidateEntry,
    DecisionRecord,
    HourlySegment,
    PricingResult,
    RuleRef,
    RuleUsage,
)


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RuleRefResponse(CamelModel):
    id: str
    name: str
    type: str
    level: str
    priority: int

    @classmethod
    def from_ref(cls, ref: Optional[RuleRef]) -> Optional["RuleRefResponse"]:
        if ref is None:
            return None
        return cls(**ref.to_dict())


class CandidateResponse(RuleRefResponse):
    price: float
    matched_time_window: Optional[str] = None
    reason: str

    @classmethod
    def from_entry(cls, entry: CandidateEntry) -> "CandidateResponse":
        return cls(**entry.to_dict())


class DecisionResponse(CamelModel):
    hour_start: datetime
    hour_end: datetime
    local_time: str
    candidates: list[CandidateResponse]
    winner: Optional[RuleRefResponse] = None
    winner_reason: str
    price_per_hour: float
    rejected: list[CandidateResponse]

    @classmethod
    def from_record(cls, record: DecisionRecord) -> "DecisionResponse":
        return cls(
            hour_start=record.slot_start,
            hour_end=record.slot_end,
            local_time=record.local_time,
            candidates=[CandidateResponse.from_entry(item) for item in record.candidates],
            winner=RuleRefResponse.from_ref(record.winner),
            winner_reason=record.winner_reason,
            price_per_hour=record.price_per_hour,
            rejected=[CandidateResponse.from_entry(item) for item in record.rejected],
        )


class SegmentResponse(CamelModel):
    hour_start: datetime
    hour_end: datetime
    duration_hours: float = Field(gt=0.0)
    billed_hours: float = Field(gt=0.0)
    price_per_hour: float = Field(ge=0.0)
    total_price: float = Field(ge=0.0)
    winning_rule: Optional[RuleRefResponse] = None
    source: str
    matched_time_window: Optional[str] = None
    surge_multiplier: Optional[float] = None
    base_price_per_hour: Optional[float] = None
    base_rule: Optional[RuleRefResponse] = None
    grace_suppressed: bool = False
    price_clamped: bool = False

    @classmethod
    def from_segment(cls, segment: HourlySegment) -> "SegmentResponse":
        return cls(
            hour_start=segment.hour_start,
            hour_end=segment.hour_end,
            duration_hours=segment.duration_hours,
            billed_hours=segment.billed_hours,
            price_per_hour=segment.price_per_hour,
            total_price=segment.total_price,
            winning_rule=RuleRefResponse.from_ref(segment.winning_rule),
            source=segment.source,
            matched_time_window=segment.matched_window,
            surge_multiplier=segment.surge_multiplier,
            base_price_per_hour=segment.base_price_per_hour,
            base_rule=RuleRefResponse.from_ref(segment.base_rule),
            grace_suppressed=segment.grace_suppressed,
            price_clamped=segment.price_clamped,
        )


class RuleUsageResponse(RuleRefResponse):
    times_applied: int = Field(ge=0)
    total_revenue: float = Field(ge=0.0)

    @classmethod
    def from_usage(cls, usage: RuleUsage) -> "RuleUsageResponse":
        return cls(
            **usage.rule.to_dict(),
            times_applied=usage.times_applied,
            total_revenue=usage.total_revenue,
        )


class BreakdownResponse(CamelModel):
    ratesheet_segments: int = Field(ge=0)
    default_rate_segments: int = Field(ge=0)


class HourlyPricingResponse(CamelModel):
    segments: list[SegmentResponse]
    total_hours: float = Field(ge=0.0)
    total_price: float = Field(ge=0.0)
    timezone: str
    currency: str
    breakdown: BreakdownResponse
    ratesheet_usage: list[RuleUsageResponse]
    decision_log: list[DecisionResponse]

    @classmethod
    def from_result(cls, result: PricingResult, currency: str) -> "HourlyPricingResponse":
        return cls(
            segments=[SegmentResponse.from_segment(item) for item in result.segments],
            total_hours=result.total_hours,
            total_price=result.total_price,
            timezone=result.timezone,
            currency=currency,
            breakdown=BreakdownResponse(
                ratesheet_segments=result.ratesheet_segments,
                default_rate_segments=result.default_rate_segments,
            ),
            ratesheet_usage=[RuleUsageResponse.from_usage(item) for item in result.usage],
            decision_log=[DecisionResponse.from_record(item) for item in result.decision_log],
        )

"""Domain models for hierarchical hourly pricing and demand-driven surge."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, Optional


class HierarchyLevel(str, Enum):
    CUSTOMER = "CUSTOMER"
    LOCATION = "LOCATION"
    SUBLOCATION = "SUBLOCATION"
    EVENT = "EVENT"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    HierarchyLevel.CUSTOMER: 1,
    HierarchyLevel.LOCATION: 2,
    HierarchyLevel.SUBLOCATION: 3,
    HierarchyLevel.EVENT: 4,
}


class RuleKind(str, Enum):
    TIMING_BASED = "TIMING_BASED"
    DURATION_BASED = "DURATION_BASED"
    SURGE_MULTIPLIER = "SURGE_MULTIPLIER"


class ConflictResolution(str, Enum):
    PRIORITY = "PRIORITY"
    HIGHEST_PRICE = "HIGHEST_PRICE"
    LOWEST_PRICE = "LOWEST_PRICE"


class ApprovalStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUPERSEDED = "SUPERSEDED"


class BookingAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class AppliesTo:
    level: HierarchyLevel
    entity_id: str


@dataclass(frozen=True)
class TimeWindow:
    """Clock window; ``value`` is a price per hour, or a multiplier on surge rules."""

    start_time: str
    end_time: str
    value: float
    days_of_week: tuple[str, ...] = ()


@dataclass(frozen=True)
class DurationPackage:
    duration_hours: float
    total_price: float
    description: str = ""

    @property
    def hourly_rate(self) -> float:
        return self.total_price / self.duration_hours


@dataclass(frozen=True)
class PricingRule:
    """Shared envelope of every ratesheet variant.

    ``sequence`` is the store's insertion order and is the creation-order
    tie-break between rules of equal level and priority.
    """

    kind: ClassVar[RuleKind]

    rule_id: str
    name: str
    applies_to: AppliesTo
    priority: int
    effective_from: datetime
    effective_to: Optional[datetime] = None
    conflict_resolution: ConflictResolution = ConflictResolution.PRIORITY
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    is_active: bool = False
    sequence: int = 0

    @property
    def level(self) -> HierarchyLevel:
        return self.applies_to.level

    @property
    def is_live(self) -> bool:
        return self.is_active and self.approval_status is ApprovalStatus.APPROVED

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Inclusive overlap of the effective period with ``[start, end]``."""
        if self.effective_from > end:
            return False
        return self.effective_to is None or self.effective_to >= start


@dataclass(frozen=True)
class TimingRule(PricingRule):
    kind: ClassVar[RuleKind] = RuleKind.TIMING_BASED

    time_windows: tuple[TimeWindow, ...] = ()


@dataclass(frozen=True)
class DurationRule(PricingRule):
    kind: ClassVar[RuleKind] = RuleKind.DURATION_BASED

    packages: tuple[DurationPackage, ...] = ()


@dataclass(frozen=True)
class SurgeRule(PricingRule):
    kind: ClassVar[RuleKind] = RuleKind.SURGE_MULTIPLIER

    time_windows: tuple[TimeWindow, ...] = ()
    surge_config_id: Optional[str] = None
    multiplier_snapshot: Optional[float] = None


@dataclass(frozen=True)
class EventWindow:
    event_id: str
    start: datetime
    end: datetime
    grace_before_minutes: int = 0
    grace_after_minutes: int = 0

    @property
    def effective_start(self) -> datetime:
        return self.start - timedelta(minutes=self.grace_before_minutes)

    @property
    def effective_end(self) -> datetime:
        return self.end + timedelta(minutes=self.grace_after_minutes)

    def in_grace(self, moment: datetime) -> bool:
        """True inside the grace margins but outside the core window."""
        in_effective = self.effective_start <= moment < self.effective_end
        in_core = self.start <= moment < self.end
        return in_effective and not in_core


@dataclass(frozen=True)
class DefaultRates:
    sublocation: Optional[float] = None
    location: Optional[float] = None
    customer: Optional[float] = None

    def resolve(self) -> tuple[float, Optional[HierarchyLevel]]:
        """Nearest configured ancestor rate: SubLocation, then Location, then Customer."""
        for rate, level in (
            (self.sublocation, HierarchyLevel.SUBLOCATION),
            (self.location, HierarchyLevel.LOCATION),
            (self.customer, HierarchyLevel.CUSTOMER),
        ):
            if rate is not None:
                return float(rate), level
        return 0.0, None


@dataclass(frozen=True)
class BookingContext:
    start: datetime
    end: datetime
    timezone: str
    customer_id: str
    location_id: str
    sublocation_id: str
    event_id: Optional[str] = None
    is_event_booking: bool = False
    event_windows: tuple[EventWindow, ...] = ()
    default_rates: DefaultRates = field(default_factory=DefaultRates)
    include_surge: bool = True

    def entity_for(self, level: HierarchyLevel) -> frozenset[str]:
        if level is HierarchyLevel.CUSTOMER:
            return frozenset({self.customer_id})
        if level is HierarchyLevel.LOCATION:
            return frozenset({self.location_id})
        if level is HierarchyLevel.SUBLOCATION:
            return frozenset({self.sublocation_id})
        event_ids = {window.event_id for window in self.event_windows}
        if self.event_id:
            event_ids.add(self.event_id)
        return frozenset(event_ids)


@dataclass(frozen=True)
class RuleRef:
    rule_id: str
    name: str
    kind: RuleKind
    level: HierarchyLevel
    priority: int

    @classmethod
    def of(cls, rule: PricingRule) -> "RuleRef":
        return cls(
            rule_id=rule.rule_id,
            name=rule.name,
            kind=rule.kind,
            level=rule.level,
            priority=rule.priority,
        )

    def to_dict(self) -> dict[str, str | int]:
        return {
            "id": self.rule_id,
            "name": self.name,
            "type": self.kind.value,
            "level": self.level.value,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class CandidateEntry:
    rule: RuleRef
    price: float
    matched_window: Optional[str]
    reason: str = "Candidate"

    def to_dict(self) -> dict[str, object]:
        return {
            **self.rule.to_dict(),
            "price": self.price,
            "matchedTimeWindow": self.matched_window,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DecisionRecord:
    slot_start: datetime
    slot_end: datetime
    local_time: str
    candidates: tuple[CandidateEntry, ...]
    winner: Optional[RuleRef]
    winner_reason: str
    price_per_hour: float
    rejected: tuple[CandidateEntry, ...] = ()


@dataclass(frozen=True)
class HourlySegment:
    hour_start: datetime
    hour_end: datetime
    duration_hours: float
    billed_hours: float
    price_per_hour: float
    total_price: float
    winning_rule: Optional[RuleRef]
    source: str
    matched_window: Optional[str] = None
    surge_multiplier: Optional[float] = None
    base_price_per_hour: Optional[float] = None
    base_rule: Optional[RuleRef] = None
    grace_suppressed: bool = False
    price_clamped: bool = False


@dataclass(frozen=True)
class RuleUsage:
    rule: RuleRef
    times_applied: int
    total_revenue: float


@dataclass(frozen=True)
class PricingResult:
    segments: tuple[HourlySegment, ...]
    total_hours: float
    total_price: float
    decision_log: tuple[DecisionRecord, ...]
    timezone: str
    ratesheet_segments: int
    default_rate_segments: int
    usage: tuple[RuleUsage, ...] = ()


@dataclass(frozen=True)
class BookingEvent:
    event_id: str
    action: BookingAction
    sublocation_id: str
    start_date: datetime
    end_date: datetime
    attendees: int = 0
    location_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DemandObservation:
    sublocation_id: str
    hour_start: datetime
    hour_end: datetime
    bookings_count: int
    total_attendees: int
    available_capacity: int
    demand_pressure: float
    historical_avg_pressure: float
    pressure_delta: float
    capacity_utilization: float
    emitted_at: datetime
    location_id: Optional[str] = None
    events_processed: tuple[str, ...] = ()


@dataclass(frozen=True)
class DemandSupplyParams:
    current_demand: float
    current_supply: float
    historical_avg_pressure: float = 1.0


@dataclass(frozen=True)
class SurgeParams:
    alpha: float = 0.3
    min_multiplier: float = 0.75
    max_multiplier: float = 1.8
    ema_alpha: float = 0.3


@dataclass(frozen=True)
class SurgeTimeWindow:
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    days_of_week: tuple[str, ...] = ()


@dataclass(frozen=True)
class SurgeConfig:
    config_id: str
    name: str
    applies_to: AppliesTo
    demand_supply: DemandSupplyParams
    surge_params: SurgeParams
    priority: int = 0
    time_windows: tuple[SurgeTimeWindow, ...] = ()
    surge_duration_hours: Optional[int] = None
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    is_active: bool = True
    smoothed_pressure: Optional[float] = None
    materialized_ratesheet_id: Optional[str] = None
    last_materialized: Optional[datetime] = None
    timezone: Optional[str] = None

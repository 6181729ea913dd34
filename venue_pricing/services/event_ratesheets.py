"""Auto-generated EVENT ratesheets with free grace windows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from venue_pricing.domain.approval import transition
from venue_pricing.domain.constraints import validate_priority_range
from venue_pricing.domain.models import (
    ApprovalStatus,
    ConflictResolution,
    HierarchyLevel,
    RuleKind,
)
from venue_pricing.repository.pricing_repository import RATESHEETS, EventRecord, PricingRepository
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import resolve_zone


logger = get_logger(__name__)


class EventRatesheetError(Exception):
    """Raised when an event cannot be turned into a ratesheet."""


class EventNotFoundError(EventRatesheetError):
    """Raised when the event id does not resolve."""


@dataclass(frozen=True)
class GeneratedEventRatesheet:
    rule_id: str
    event_id: str
    hourly_rate: float
    time_windows: list[dict[str, Any]]
    superseded_ids: tuple[str, ...]


class EventRatesheetService:
    def __init__(
        self,
        repository: Optional[PricingRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)

    def _event_timezone(self, event: EventRecord) -> str:
        if event.sublocation_id:
            sublocation = self._repository.get_sublocation(event.sublocation_id)
            if sublocation is not None:
                return self._repository.resolve_timezone(sublocation)
        if event.location_id:
            location = self._repository.get_location(event.location_id)
            if location is not None and location.timezone:
                return location.timezone
        if event.customer_id:
            customer = self._repository.get_customer(event.customer_id)
            if customer is not None and customer.timezone:
                return customer.timezone
        return self._settings.default_timezone

    def _event_rate(self, event: EventRecord) -> float:
        if event.default_hourly_rate is not None:
            return event.default_hourly_rate
        if event.sublocation_id:
            sublocation = self._repository.get_sublocation(event.sublocation_id)
            if sublocation is not None and sublocation.default_hourly_rate is not None:
                return sublocation.default_hourly_rate
        return 0.0

    @staticmethod
    def build_windows(event: EventRecord, zone_name: str, rate: float) -> list[dict[str, Any]]:
        """Grace-before at 0, core at ``rate``, grace-after at 0, in local clock time."""
        zone = resolve_zone(zone_name)
        window = event.window()

        def clock(moment: datetime) -> str:
            return moment.astimezone(zone).strftime("%H:%M")

        if window.effective_end - window.effective_start >= timedelta(hours=24):
            return [{"startTime": "00:00", "endTime": "00:00", "pricePerHour": rate}]

        windows: list[dict[str, Any]] = []
        if event.grace_before_minutes > 0:
            windows.append(
                {"startTime": clock(window.effective_start), "endTime": clock(event.start), "pricePerHour": 0.0}
            )
        windows.append({"startTime": clock(event.start), "endTime": clock(event.end), "pricePerHour": rate})
        if event.grace_after_minutes > 0:
            windows.append(
                {"startTime": clock(event.end), "endTime": clock(window.effective_end), "pricePerHour": 0.0}
            )
        return windows

    def _supersede_previous(self, event_id: str) -> list[str]:
        superseded: list[str] = []
        documents = self._repository.store.find(
            RATESHEETS,
            {
                "eventId": event_id,
                "autoGenerated": True,
                "approvalStatus": {"$in": [ApprovalStatus.DRAFT.value, ApprovalStatus.APPROVED.value]},
            },
        )
        for document in documents:
            current = ApprovalStatus(document["approvalStatus"])
            status = transition(current, ApprovalStatus.SUPERSEDED)
            modified = self._repository.update_rule_if_status(
                document["_id"],
                current,
                {
                    "approvalStatus": status.value,
                    "isActive": False,
                    "supersededReason": "Event ratesheet regenerated",
                },
            )
            if modified:
                superseded.append(document["_id"])
        return superseded

    def generate(self, event_id: str) -> GeneratedEventRatesheet:
        event = self._repository.get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        if event.end <= event.start:
            raise EventRatesheetError(f"Event {event_id} ends before it starts")

        priority = self._settings.event_ratesheet_priority
        try:
            validate_priority_range(
                HierarchyLevel.EVENT.value, priority, self._settings.level_priority_ranges
            )
        except ValueError as exc:
            raise EventRatesheetError(str(exc)) from exc

        rate = self._event_rate(event)
        windows = self.build_windows(event, self._event_timezone(event), rate)
        superseded = self._supersede_previous(event_id)
        window = event.window()
        rule_id = self._repository.insert_rule(
            {
                "name": f"Auto-generated: {event.name}",
                "type": RuleKind.TIMING_BASED.value,
                "appliesTo": {"level": HierarchyLevel.EVENT.value, "entityId": event_id},
                "priority": priority,
                "conflictResolution": ConflictResolution.PRIORITY.value,
                "effectiveFrom": window.effective_start,
                "effectiveTo": window.effective_end,
                "timeWindows": windows,
                "eventId": event_id,
                "autoGenerated": True,
                "approvalStatus": ApprovalStatus.APPROVED.value,
                "isActive": True,
                "createdBy": "event-ratesheets",
            }
        )
        logger.info(
            "Event ratesheet generated | event=%s | ratesheet=%s | rate=%.2f | windows=%s",
            event_id,
            rule_id,
            rate,
            len(windows),
        )
        return GeneratedEventRatesheet(
            rule_id=rule_id,
            event_id=event_id,
            hourly_rate=rate,
            time_windows=windows,
            superseded_ids=tuple(superseded),
        )

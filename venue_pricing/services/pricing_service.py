"""Hourly price requests: validation, entity chain lookup and rule fetch."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from venue_pricing.domain.constraints import validate_booking_window
from venue_pricing.domain.models import (
    BookingContext,
    DefaultRates,
    HierarchyLevel,
    PricingResult,
    PricingRule,
)
from venue_pricing.repository.pricing_repository import EntityRecord, EventRecord, PricingRepository
from venue_pricing.services.pricing_engine import HourlyPricingEngine
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import resolve_zone


logger = get_logger(__name__)


class PricingError(Exception):
    """Base class for hourly pricing request failures."""


class PricingValidationError(PricingError):
    """Raised when the booking window or timezone is invalid."""


class EntityNotFoundError(PricingError):
    """Raised when an entity in the booking chain does not exist."""


@dataclass(frozen=True)
class HourlyPricingRequest:
    sublocation_id: str
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    event_id: Optional[str] = None
    is_event_booking: bool = False
    include_surge: bool = True


@dataclass(frozen=True)
class EntityChain:
    customer: EntityRecord
    location: EntityRecord
    sublocation: EntityRecord


class PricingService:
    """Builds the booking context and candidate rules, then runs the engine."""

    def __init__(
        self,
        repository: Optional[PricingRepository] = None,
        settings: Optional[Settings] = None,
        engine: Optional[HourlyPricingEngine] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)
        self._engine = engine or HourlyPricingEngine()

    @property
    def currency(self) -> str:
        return self._settings.currency

    def resolve_chain(self, sublocation_id: str) -> EntityChain:
        sublocation = self._repository.get_sublocation(sublocation_id)
        if sublocation is None:
            raise EntityNotFoundError(f"SubLocation {sublocation_id} not found")
        location = (
            self._repository.get_location(sublocation.parent_id) if sublocation.parent_id else None
        )
        if location is None:
            raise EntityNotFoundError(f"Location for SubLocation {sublocation_id} not found")
        customer = self._repository.get_customer(location.parent_id) if location.parent_id else None
        if customer is None:
            raise EntityNotFoundError(f"Customer for Location {location.entity_id} not found")
        return EntityChain(customer=customer, location=location, sublocation=sublocation)

    def _events_for(self, request: HourlyPricingRequest, chain: EntityChain) -> list[EventRecord]:
        if request.event_id:
            event = self._repository.get_event(request.event_id)
            if event is None:
                raise EntityNotFoundError(f"Event {request.event_id} not found")
            return [event]
        return self._repository.list_overlapping_events(
            sublocation_id=chain.sublocation.entity_id,
            location_id=chain.location.entity_id,
            customer_id=chain.customer.entity_id,
            start=request.start,
            end=request.end,
        )

    def _candidate_rules(
        self,
        chain: EntityChain,
        events: list[EventRecord],
        request: HourlyPricingRequest,
    ) -> dict[HierarchyLevel, list[PricingRule]]:
        entity_ids = {
            HierarchyLevel.CUSTOMER: [chain.customer.entity_id],
            HierarchyLevel.LOCATION: [chain.location.entity_id],
            HierarchyLevel.SUBLOCATION: [chain.sublocation.entity_id],
            HierarchyLevel.EVENT: [event.event_id for event in events],
        }
        return {
            level: self._repository.list_rules_for(level, ids, request.start, request.end)
            for level, ids in entity_ids.items()
        }

    def calculate_hourly(self, request: HourlyPricingRequest) -> PricingResult:
        try:
            validate_booking_window(request.start, request.end)
        except ValueError as exc:
            raise PricingValidationError(str(exc)) from exc

        chain = self.resolve_chain(request.sublocation_id)
        timezone = request.timezone or self._repository.resolve_timezone(chain.sublocation)
        try:
            resolve_zone(timezone)
        except ValueError as exc:
            raise PricingValidationError(str(exc)) from exc

        events = self._events_for(request, chain)
        context = BookingContext(
            start=request.start,
            end=request.end,
            timezone=timezone,
            customer_id=chain.customer.entity_id,
            location_id=chain.location.entity_id,
            sublocation_id=chain.sublocation.entity_id,
            event_id=request.event_id,
            is_event_booking=request.is_event_booking,
            event_windows=tuple(event.window() for event in events),
            default_rates=DefaultRates(
                sublocation=chain.sublocation.default_hourly_rate,
                location=chain.location.default_hourly_rate,
                customer=chain.customer.default_hourly_rate,
            ),
            include_surge=request.include_surge,
        )
        result = self._engine.resolve(context, self._candidate_rules(chain, events, request))
        logger.info(
            "Hourly price calculated | sublocation=%s | slots=%s | total=%.2f | events=%s | timezone=%s",
            chain.sublocation.entity_id,
            len(result.segments),
            result.total_price,
            len(events),
            timezone,
        )
        return result

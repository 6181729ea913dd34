"""Booking lifecycle stream -> hourly demand observations.

Live bookings are buffered per ``(sublocation, hour)`` key and every
qualifying event recomputes that key's demand pressure. Emission is
throttled per key; an event arriving inside the throttle window still
updates the buffer so the next eligible emission carries the latest state.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from venue_pricing.domain.models import BookingAction, BookingEvent, DemandObservation
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import ensure_utc, floor_hour, parse_datetime, utc_now


logger = get_logger(__name__)

BufferKey = tuple[str, datetime]


class BookingEventError(Exception):
    """Raised when a booking lifecycle message cannot be parsed."""


class BookingEventMessage(BaseModel):
    """Wire shape of a booking lifecycle event."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_id: str = Field(alias="eventId", min_length=1)
    action: BookingAction
    sublocation_id: str = Field(alias="subLocationId", min_length=1)
    location_id: Optional[str] = Field(default=None, alias="locationId")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    attendees: int = Field(default=0, ge=0)
    timestamp: Optional[datetime] = None

    @field_validator("attendees", mode="before")
    @classmethod
    def default_missing_attendees(cls, value: Any) -> Any:
        return 0 if value is None else value

    @model_validator(mode="after")
    def validate_range(self) -> "BookingEventMessage":
        if ensure_utc(self.end_date) <= ensure_utc(self.start_date):
            raise ValueError("endDate must be after startDate")
        return self

    def to_domain(self) -> BookingEvent:
        return BookingEvent(
            event_id=self.event_id,
            action=self.action,
            sublocation_id=self.sublocation_id,
            start_date=ensure_utc(self.start_date),
            end_date=ensure_utc(self.end_date),
            attendees=self.attendees,
            location_id=self.location_id,
            timestamp=ensure_utc(self.timestamp) if self.timestamp else None,
        )


def parse_booking_event(payload: Mapping[str, Any] | str | bytes) -> BookingEvent:
    try:
        if isinstance(payload, (str, bytes)):
            return BookingEventMessage.model_validate_json(payload).to_domain()
        return BookingEventMessage.model_validate(dict(payload)).to_domain()
    except (ValidationError, TypeError, ValueError) as exc:
        raise BookingEventError(f"malformed booking event: {exc}") from exc


def observation_to_message(observation: DemandObservation) -> dict[str, Any]:
    """Outbound JSON payload of a demand observation."""
    return {
        "subLocationId": observation.sublocation_id,
        "locationId": observation.location_id,
        "hour": observation.hour_start.isoformat(),
        "hourEnd": observation.hour_end.isoformat(),
        "bookingsCount": observation.bookings_count,
        "totalAttendees": observation.total_attendees,
        "availableCapacity": observation.available_capacity,
        "capacityUtilization": observation.capacity_utilization,
        "demandPressure": observation.demand_pressure,
        "historicalAvgPressure": observation.historical_avg_pressure,
        "pressureDelta": observation.pressure_delta,
        "timestamp": observation.emitted_at.isoformat(),
        "eventsProcessed": list(observation.events_processed),
    }


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = Lock()
        self.holders = 0


class DemandBuffer:
    """Keyed in-memory store of live bookings and last emission times.

    Callers hold ``hold(key)`` across the whole read-modify-emit sequence
    for that key. Moving a booking between keys happens in one step under
    the buffer guard, so a booking lives in at most one bucket.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[BufferKey, _KeyLock] = {}
        self._events: dict[BufferKey, dict[str, BookingEvent]] = {}
        self._last_emitted: dict[BufferKey, datetime] = {}
        self._event_keys: dict[str, BufferKey] = {}

    @contextmanager
    def hold(self, key: BufferKey) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1

    def key_of(self, event_id: str) -> Optional[BufferKey]:
        with self._guard:
            return self._event_keys.get(event_id)

    def apply(self, key: BufferKey, event: BookingEvent) -> Optional[BufferKey]:
        """Place ``event`` under ``key`` (or drop it on DELETED).

        Returns the other key the booking was removed from, if any.
        """
        with self._guard:
            previous = self._event_keys.pop(event.event_id, None)
            if previous is not None:
                self._events.get(previous, {}).pop(event.event_id, None)
            if event.action is BookingAction.DELETED:
                self._events.get(key, {}).pop(event.event_id, None)
            else:
                self._events.setdefault(key, {})[event.event_id] = event
                self._event_keys[event.event_id] = key
            return previous if previous != key else None

    def snapshot(self, key: BufferKey) -> tuple[BookingEvent, ...]:
        with self._guard:
            return tuple(self._events.get(key, {}).values())

    def last_emitted(self, key: BufferKey) -> Optional[datetime]:
        with self._guard:
            return self._last_emitted.get(key)

    def mark_emitted(self, key: BufferKey, moment: datetime) -> None:
        with self._guard:
            self._last_emitted[key] = moment

    def prune(self, now: datetime, throttle: timedelta) -> int:
        """Evict keys nobody holds whose hour has ended, or that are empty and past throttle."""
        current_hour = floor_hour(now)
        with self._guard:
            evicted = []
            for key in set(self._locks) | set(self._events) | set(self._last_emitted):
                entry = self._locks.get(key)
                if entry is not None and entry.holders:
                    continue
                last = self._last_emitted.get(key)
                past_hour = key[1] < current_hour
                idle = not self._events.get(key) and (last is None or now - last >= throttle)
                if past_hour or idle:
                    evicted.append(key)
            for key in evicted:
                self._locks.pop(key, None)
                self._last_emitted.pop(key, None)
                for event_id in self._events.pop(key, {}):
                    if self._event_keys.get(event_id) == key:
                        del self._event_keys[event_id]
            return len(evicted)

    def size(self) -> int:
        with self._guard:
            return len(set(self._locks) | set(self._events) | set(self._last_emitted))

    def clear(self) -> None:
        with self._guard:
            self._events.clear()
            self._last_emitted.clear()
            self._event_keys.clear()
            self._locks = {key: entry for key, entry in self._locks.items() if entry.holders}


@dataclass(frozen=True)
class IngestOutcome:
    key: BufferKey
    observation: Optional[DemandObservation]
    throttled: bool


class DemandAggregator:
    def __init__(
        self,
        buffer: DemandBuffer,
        repository: Optional[PricingRepository] = None,
        publisher: Optional[Callable[[DemandObservation], None]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)
        self._buffer = buffer
        self._publisher = publisher
        self._clock = clock
        self._throttle = timedelta(minutes=self._settings.demand_throttle_minutes)

    @property
    def buffer(self) -> DemandBuffer:
        return self._buffer

    def handle(self, payload: Mapping[str, Any] | str | bytes) -> Optional[DemandObservation]:
        """Consumer entry point: malformed messages are logged and skipped."""
        try:
            event = parse_booking_event(payload)
        except BookingEventError as exc:
            logger.warning("Skipping malformed booking event | error=%s", exc)
            return None
        return self.ingest(event).observation

    def ingest(self, event: BookingEvent) -> IngestOutcome:
        key: BufferKey = (event.sublocation_id, floor_hour(event.start_date))
        try:
            return self._ingest(key, event)
        finally:
            self._buffer.prune(self._clock(), self._throttle)

    def _ingest(self, key: BufferKey, event: BookingEvent) -> IngestOutcome:
        with self._buffer.hold(key):
            moved_from = self._buffer.apply(key, event)
            if moved_from is not None:
                logger.info(
                    "Booking moved between hours | event=%s | from=%s | to=%s",
                    event.event_id,
                    moved_from[1].isoformat(),
                    key[1].isoformat(),
                )

            now = self._clock()
            last = self._buffer.last_emitted(key)
            if last is not None and now - last < self._throttle:
                logger.info(
                    "Demand emission throttled | sublocation=%s | hour=%s | since_last_seconds=%.1f",
                    key[0],
                    key[1].isoformat(),
                    (now - last).total_seconds(),
                )
                return IngestOutcome(key=key, observation=None, throttled=True)

            observation = self._observe(key, self._buffer.snapshot(key), event, now)
            # A failed publish leaves the key unthrottled so the next event retries.
            if self._publisher is not None:
                self._publisher(observation)
            self._buffer.mark_emitted(key, now)
            self._repository.append_demand_observation(observation)

        logger.info(
            "Demand observation emitted | sublocation=%s | hour=%s | bookings=%s | pressure=%.2f | historical=%.2f",
            observation.sublocation_id,
            observation.hour_start.isoformat(),
            observation.bookings_count,
            observation.demand_pressure,
            observation.historical_avg_pressure,
        )
        return IngestOutcome(key=key, observation=observation, throttled=False)

    def _capacity(self, sublocation_id: str) -> int:
        default = self._settings.demand_default_capacity
        try:
            capacity = self._repository.get_sublocation_capacity(sublocation_id)
        except Exception as exc:
            logger.warning(
                "Capacity lookup failed; using default | sublocation=%s | default=%s | error=%s",
                sublocation_id,
                default,
                exc,
            )
            return default
        if capacity is None or capacity <= 0:
            return default
        return int(capacity)

    def _historical_pressure(self, sublocation_id: str, hour_start: datetime, now: datetime) -> float:
        value = self._repository.historical_average_pressure(
            sublocation_id,
            hour_start.weekday(),
            hour_start.hour,
            now=now,
            lookback_days=self._settings.demand_history_lookback_days,
        )
        if value is None:
            return self._settings.demand_default_historical_pressure
        return value

    def _observe(
        self,
        key: BufferKey,
        events: tuple[BookingEvent, ...],
        trigger: BookingEvent,
        now: datetime,
    ) -> DemandObservation:
        sublocation_id, hour_start = key
        bookings_count = len(events)
        total_attendees = sum(item.attendees for item in events)
        capacity = self._capacity(sublocation_id)
        demand_pressure = bookings_count / (capacity / 100)
        historical = self._historical_pressure(sublocation_id, hour_start, now)
        location_id = trigger.location_id or next(
            (item.location_id for item in events if item.location_id), None
        )
        return DemandObservation(
            sublocation_id=sublocation_id,
            hour_start=hour_start,
            hour_end=hour_start + timedelta(hours=1),
            bookings_count=bookings_count,
            total_attendees=total_attendees,
            available_capacity=capacity,
            demand_pressure=demand_pressure,
            historical_avg_pressure=historical,
            pressure_delta=demand_pressure - historical,
            capacity_utilization=total_attendees / capacity * 100,
            emitted_at=now,
            location_id=location_id,
            events_processed=tuple(item.event_id for item in events),
        )


def observation_from_message(payload: Mapping[str, Any] | str | bytes) -> DemandObservation:
    """Inverse of :func:`observation_to_message` for the surge consumer group."""
    data = json.loads(payload) if isinstance(payload, (str, bytes)) else dict(payload)
    hour_start = parse_datetime(data["hour"])
    return DemandObservation(
        sublocation_id=str(data["subLocationId"]),
        hour_start=hour_start,
        hour_end=parse_datetime(data.get("hourEnd") or (hour_start + timedelta(hours=1))),
        bookings_count=int(data.get("bookingsCount", 0)),
        total_attendees=int(data.get("totalAttendees", 0)),
        available_capacity=int(data.get("availableCapacity", 0)),
        demand_pressure=float(data.get("demandPressure", 0.0)),
        historical_avg_pressure=float(data.get("historicalAvgPressure", 1.0)),
        pressure_delta=float(data.get("pressureDelta", 0.0)),
        capacity_utilization=float(data.get("capacityUtilization", 0.0)),
        emitted_at=parse_datetime(data.get("timestamp") or utc_now()),
        location_id=data.get("locationId"),
        events_processed=tuple(data.get("eventsProcessed") or ()),
    )

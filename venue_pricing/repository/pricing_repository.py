"""Typed access to entities, ratesheets, surge configs and demand history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

import pandas as pd

from venue_pricing.domain.models import (
    AppliesTo,
    ApprovalStatus,
    ConflictResolution,
    DemandObservation,
    DemandSupplyParams,
    DurationPackage,
    DurationRule,
    EventWindow,
    HierarchyLevel,
    PricingRule,
    RuleKind,
    SurgeConfig,
    SurgeParams,
    SurgeRule,
    SurgeTimeWindow,
    TimeWindow,
    TimingRule,
)
from venue_pricing.repository.document_store import Document, DocumentStore, SQLiteDocumentStore
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import parse_datetime, utc_now


logger = get_logger(__name__)

CUSTOMERS = "customers"
LOCATIONS = "locations"
SUBLOCATIONS = "sublocations"
EVENTS = "events"
RATESHEETS = "ratesheets"
SURGE_CONFIGS = "surge_configs"
DEMAND_HISTORY = "demand_history"


class RuleDataError(ValueError):
    """Raised when a stored ratesheet document cannot be mapped to a rule."""


@dataclass(frozen=True)
class EntityRecord:
    """Customer, location or sublocation projection used by pricing."""

    entity_id: str
    name: str
    parent_id: Optional[str]
    default_hourly_rate: Optional[float]
    timezone: Optional[str]
    max_capacity: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    name: str
    start: datetime
    end: datetime
    grace_before_minutes: int
    grace_after_minutes: int
    default_hourly_rate: Optional[float]
    sublocation_id: Optional[str]
    location_id: Optional[str]
    customer_id: Optional[str]
    is_active: bool = True

    def window(self) -> EventWindow:
        return EventWindow(
            event_id=self.event_id,
            start=self.start,
            end=self.end,
            grace_before_minutes=self.grace_before_minutes,
            grace_after_minutes=self.grace_after_minutes,
        )


def _optional_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_datetime(value)


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _time_windows(raw: Iterable[Mapping[str, Any]], value_key: str) -> tuple[TimeWindow, ...]:
    windows = []
    for item in raw or ():
        value = item.get(value_key, item.get("pricePerHour"))
        windows.append(
            TimeWindow(
                start_time=str(item.get("startTime", "")),
                end_time=str(item.get("endTime", "")),
                value=float(value if value is not None else 0.0),
                days_of_week=tuple(str(day).upper() for day in item.get("daysOfWeek") or ()),
            )
        )
    return tuple(windows)


def rule_from_document(document: Mapping[str, Any]) -> PricingRule:
    """Map a ratesheet document onto the rule variant named by its ``type``."""
    try:
        applies_to = document["appliesTo"]
        envelope = {
            "rule_id": str(document["_id"]),
            "name": str(document.get("name", "")),
            "applies_to": AppliesTo(
                level=HierarchyLevel(applies_to["level"]),
                entity_id=str(applies_to["entityId"]),
            ),
            "priority": int(document.get("priority", 0)),
            "effective_from": parse_datetime(document["effectiveFrom"]),
            "effective_to": _optional_datetime(document.get("effectiveTo")),
            "conflict_resolution": ConflictResolution(
                document.get("conflictResolution", ConflictResolution.PRIORITY.value)
            ),
            "approval_status": ApprovalStatus(
                document.get("approvalStatus", ApprovalStatus.DRAFT.value)
            ),
            "is_active": bool(document.get("isActive", False)),
            "sequence": int(document.get("_seq", 0)),
        }
        kind = RuleKind(document.get("type", RuleKind.TIMING_BASED.value))
    except (KeyError, TypeError, ValueError) as exc:
        raise RuleDataError(f"ratesheet {document.get('_id')} is malformed: {exc}") from exc

    if kind is RuleKind.DURATION_BASED:
        packages = tuple(
            DurationPackage(
                duration_hours=float(item["durationHours"]),
                total_price=float(item["totalPrice"]),
                description=str(item.get("description", "")),
            )
            for item in document.get("durationRules") or ()
            if float(item.get("durationHours", 0)) > 0
        )
        return DurationRule(**envelope, packages=packages)
    if kind is RuleKind.SURGE_MULTIPLIER:
        return SurgeRule(
            **envelope,
            time_windows=_time_windows(document.get("timeWindows"), "multiplier"),
            surge_config_id=(
                str(document["surgeConfigId"]) if document.get("surgeConfigId") else None
            ),
            multiplier_snapshot=_optional_float(document.get("surgeMultiplierSnapshot")),
        )
    return TimingRule(
        **envelope,
        time_windows=_time_windows(document.get("timeWindows"), "pricePerHour"),
    )


def surge_config_from_document(document: Mapping[str, Any]) -> SurgeConfig:
    applies_to = document["appliesTo"]
    demand_supply = document.get("demandSupplyParams") or {}
    surge_params = document.get("surgeParams") or {}
    state = document.get("surgeState") or {}
    return SurgeConfig(
        config_id=str(document["_id"]),
        name=str(document.get("name", "")),
        applies_to=AppliesTo(
            level=HierarchyLevel(applies_to["level"]),
            entity_id=str(applies_to["entityId"]),
        ),
        demand_supply=DemandSupplyParams(
            current_demand=float(demand_supply.get("currentDemand", 0.0)),
            current_supply=float(demand_supply.get("currentSupply", 0.0)),
            historical_avg_pressure=float(demand_supply.get("historicalAvgPressure", 1.0)),
        ),
        surge_params=SurgeParams(
            alpha=float(surge_params.get("alpha", 0.3)),
            min_multiplier=float(surge_params.get("minMultiplier", 0.75)),
            max_multiplier=float(surge_params.get("maxMultiplier", 1.8)),
            ema_alpha=float(surge_params.get("emaAlpha", 0.3)),
        ),
        priority=int(document.get("priority", 0)),
        time_windows=tuple(
            SurgeTimeWindow(
                start_time=item.get("startTime"),
                end_time=item.get("endTime"),
                days_of_week=tuple(str(day).upper() for day in item.get("daysOfWeek") or ()),
            )
            for item in document.get("timeWindows") or ()
        ),
        surge_duration_hours=(
            int(document["surgeDurationHours"]) if document.get("surgeDurationHours") else None
        ),
        effective_from=_optional_datetime(document.get("effectiveFrom")),
        effective_to=_optional_datetime(document.get("effectiveTo")),
        is_active=bool(document.get("isActive", True)),
        smoothed_pressure=_optional_float(state.get("smoothedPressure")),
        materialized_ratesheet_id=(
            str(document["materializedRatesheetId"])
            if document.get("materializedRatesheetId")
            else None
        ),
        last_materialized=_optional_datetime(document.get("lastMaterialized")),
        timezone=document.get("timezone"),
    )


def observation_to_document(observation: DemandObservation) -> Document:
    return {
        "subLocationId": observation.sublocation_id,
        "locationId": observation.location_id,
        "hour": observation.hour_start,
        "hourEnd": observation.hour_end,
        "bookingsCount": observation.bookings_count,
        "totalAttendees": observation.total_attendees,
        "availableCapacity": observation.available_capacity,
        "capacityUtilization": observation.capacity_utilization,
        "demandPressure": observation.demand_pressure,
        "historicalAvgPressure": observation.historical_avg_pressure,
        "pressureDelta": observation.pressure_delta,
        "eventsProcessed": list(observation.events_processed),
        "timestamp": observation.emitted_at,
        "dayOfWeek": observation.hour_start.weekday(),
        "hourOfDay": observation.hour_start.hour,
        "createdAt": observation.emitted_at,
    }


class PricingRepository:
    """Encapsulates document access so pricing logic stays storage-agnostic."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or SQLiteDocumentStore(self._settings.database_path)

    @property
    def store(self) -> DocumentStore:
        return self._store

    def initialize_database(self) -> None:
        initializer = getattr(self._store, "initialize", None)
        if callable(initializer):
            initializer()

    # --- Entities -------------------------------------------------------

    def _entity(self, collection: str, entity_id: str, parent_key: Optional[str]) -> Optional[EntityRecord]:
        document = self._store.find_one(collection, {"_id": entity_id})
        if document is None:
            return None
        return EntityRecord(
            entity_id=str(document["_id"]),
            name=str(document.get("name") or document.get("label") or ""),
            parent_id=str(document[parent_key]) if parent_key and document.get(parent_key) else None,
            default_hourly_rate=_optional_float(document.get("defaultHourlyRate")),
            timezone=document.get("timezone"),
            max_capacity=(
                int(document["maxCapacity"]) if document.get("maxCapacity") is not None else None
            ),
            is_active=bool(document.get("isActive", True)),
        )

    def get_customer(self, customer_id: str) -> Optional[EntityRecord]:
        return self._entity(CUSTOMERS, customer_id, None)

    def get_location(self, location_id: str) -> Optional[EntityRecord]:
        return self._entity(LOCATIONS, location_id, "customerId")

    def get_sublocation(self, sublocation_id: str) -> Optional[EntityRecord]:
        return self._entity(SUBLOCATIONS, sublocation_id, "locationId")

    def get_sublocation_capacity(self, sublocation_id: str) -> Optional[int]:
        sublocation = self.get_sublocation(sublocation_id)
        if sublocation is None:
            return None
        return sublocation.max_capacity

    def create_customer(self, name: str, **fields: Any) -> str:
        return self._store.insert_one(CUSTOMERS, {"name": name, "isActive": True, **fields})

    def create_location(self, name: str, customer_id: str, **fields: Any) -> str:
        return self._store.insert_one(
            LOCATIONS,
            {"name": name, "customerId": customer_id, "isActive": True, **fields},
        )

    def create_sublocation(self, label: str, location_id: str, **fields: Any) -> str:
        return self._store.insert_one(
            SUBLOCATIONS,
            {"label": label, "locationId": location_id, "isActive": True, **fields},
        )

    # --- Events ---------------------------------------------------------

    @staticmethod
    def _event_from_document(document: Mapping[str, Any]) -> EventRecord:
        return EventRecord(
            event_id=str(document["_id"]),
            name=str(document.get("name", "")),
            start=parse_datetime(document["startDate"]),
            end=parse_datetime(document["endDate"]),
            grace_before_minutes=int(document.get("gracePeriodBefore") or 0),
            grace_after_minutes=int(document.get("gracePeriodAfter") or 0),
            default_hourly_rate=_optional_float(document.get("defaultHourlyRate")),
            sublocation_id=document.get("subLocationId"),
            location_id=document.get("locationId"),
            customer_id=document.get("customerId"),
            is_active=bool(document.get("isActive", True)),
        )

    def create_event(self, name: str, start: datetime, end: datetime, **fields: Any) -> str:
        return self._store.insert_one(
            EVENTS,
            {"name": name, "startDate": start, "endDate": end, "isActive": True, **fields},
        )

    def get_event(self, event_id: str) -> Optional[EventRecord]:
        document = self._store.find_one(EVENTS, {"_id": event_id})
        if document is None:
            return None
        return self._event_from_document(document)

    def list_overlapping_events(
        self,
        *,
        sublocation_id: str,
        location_id: str,
        customer_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventRecord]:
        """Active events on the chain whose grace-extended window overlaps the booking."""
        documents = self._store.find(
            EVENTS,
            {
                "isActive": True,
                "$or": [
                    {"subLocationId": sublocation_id},
                    {"locationId": location_id, "subLocationId": {"$exists": False}},
                    {
                        "customerId": customer_id,
                        "locationId": {"$exists": False},
                        "subLocationId": {"$exists": False},
                    },
                ],
            },
        )
        events = []
        for document in documents:
            event = self._event_from_document(document)
            window = event.window()
            if window.effective_end >= start and window.effective_start <= end:
                events.append(event)
        return events

    # --- Ratesheets -----------------------------------------------------

    def insert_rule(self, document: Mapping[str, Any]) -> str:
        now = utc_now()
        payload = {"createdAt": now, "updatedAt": now, **document}
        return self._store.insert_one(RATESHEETS, payload)

    def get_rule_document(self, rule_id: str) -> Optional[Document]:
        return self._store.find_one(RATESHEETS, {"_id": rule_id})

    def get_rule(self, rule_id: str) -> Optional[PricingRule]:
        document = self.get_rule_document(rule_id)
        if document is None:
            return None
        return rule_from_document(document)

    def update_rule(self, rule_id: str, fields: Mapping[str, Any]) -> int:
        return self._store.update_one(
            RATESHEETS,
            {"_id": rule_id},
            {"$set": {**fields, "updatedAt": utc_now()}},
        )

    def update_rule_if_status(
        self,
        rule_id: str,
        expected: ApprovalStatus,
        fields: Mapping[str, Any],
    ) -> int:
        """Compare-and-set on ``approvalStatus``; a missing status reads as DRAFT."""
        status_filter: dict[str, Any] = {"approvalStatus": expected.value}
        if expected is ApprovalStatus.DRAFT:
            status_filter = {"$or": [status_filter, {"approvalStatus": {"$exists": False}}]}
        return self._store.update_one(
            RATESHEETS,
            {"_id": rule_id, **status_filter},
            {"$set": {**fields, "updatedAt": utc_now()}},
        )

    def _rules_from_documents(self, documents: Iterable[Mapping[str, Any]]) -> list[PricingRule]:
        rules: list[PricingRule] = []
        for document in documents:
            try:
                rules.append(rule_from_document(document))
            except RuleDataError as exc:
                logger.warning("Skipping malformed ratesheet | error=%s", exc)
        return rules

    def list_rules_for(
        self,
        level: HierarchyLevel,
        entity_ids: Iterable[str],
        start: datetime,
        end: datetime,
        *,
        live_only: bool = True,
    ) -> list[PricingRule]:
        """Ratesheets on ``level`` for the given entities overlapping ``[start, end]``."""
        ids = sorted(set(entity_ids))
        if not ids:
            return []
        filter_: dict[str, Any] = {
            "appliesTo.level": level.value,
            "appliesTo.entityId": {"$in": ids},
        }
        if live_only:
            filter_["isActive"] = True
            filter_["approvalStatus"] = ApprovalStatus.APPROVED.value
        rules = self._rules_from_documents(self._store.find(RATESHEETS, filter_))
        return [rule for rule in rules if rule.overlaps(start, end)]

    def list_rules_for_surge_config(
        self,
        config_id: str,
        statuses: Iterable[ApprovalStatus],
    ) -> list[PricingRule]:
        return self._rules_from_documents(
            self._store.find(
                RATESHEETS,
                {
                    "surgeConfigId": config_id,
                    "approvalStatus": {"$in": [status.value for status in statuses]},
                },
            )
        )

    def count_rules(self, filter_: Optional[Mapping[str, Any]] = None) -> int:
        return self._store.count(RATESHEETS, filter_)

    # --- Surge configs --------------------------------------------------

    def insert_surge_config(self, document: Mapping[str, Any]) -> str:
        now = utc_now()
        return self._store.insert_one(
            SURGE_CONFIGS,
            {"isActive": True, "createdAt": now, "updatedAt": now, **document},
        )

    def get_surge_config(self, config_id: str) -> Optional[SurgeConfig]:
        document = self._store.find_one(SURGE_CONFIGS, {"_id": config_id})
        if document is None:
            return None
        return surge_config_from_document(document)

    def list_active_surge_configs(
        self,
        sublocation_id: str,
        location_id: Optional[str],
    ) -> list[SurgeConfig]:
        branches: list[dict[str, Any]] = [
            {"appliesTo.level": HierarchyLevel.SUBLOCATION.value, "appliesTo.entityId": sublocation_id}
        ]
        if location_id:
            branches.append(
                {"appliesTo.level": HierarchyLevel.LOCATION.value, "appliesTo.entityId": location_id}
            )
        documents = self._store.find(SURGE_CONFIGS, {"isActive": True, "$or": branches})
        return [surge_config_from_document(document) for document in documents]

    def update_surge_config(self, config_id: str, fields: Mapping[str, Any]) -> int:
        return self._store.update_one(
            SURGE_CONFIGS,
            {"_id": config_id},
            {"$set": {**fields, "updatedAt": utc_now()}},
        )

    # --- Demand history -------------------------------------------------

    def append_demand_observation(self, observation: DemandObservation) -> str:
        """Append-only; observations are never updated after emission."""
        return self._store.insert_one(DEMAND_HISTORY, observation_to_document(observation))

    def count_demand_history(self, sublocation_id: Optional[str] = None) -> int:
        filter_ = {"subLocationId": sublocation_id} if sublocation_id else None
        return self._store.count(DEMAND_HISTORY, filter_)

    def demand_history_frame(self, sublocation_id: str, since: datetime) -> pd.DataFrame:
        documents = self._store.find(
            DEMAND_HISTORY,
            {"subLocationId": sublocation_id, "createdAt": {"$gte": since}},
        )
        frame = pd.DataFrame(
            [
                {
                    "day_of_week": int(document["dayOfWeek"]),
                    "hour_of_day": int(document["hourOfDay"]),
                    "demand_pressure": float(document["demandPressure"]),
                }
                for document in documents
            ],
            columns=["day_of_week", "hour_of_day", "demand_pressure"],
        )
        return frame

    def historical_average_pressure(
        self,
        sublocation_id: str,
        day_of_week: int,
        hour_of_day: int,
        *,
        now: Optional[datetime] = None,
        lookback_days: Optional[int] = None,
    ) -> Optional[float]:
        """Mean pressure for the same weekday/hour over the trailing window."""
        reference = now or utc_now()
        window_days = lookback_days or self._settings.demand_history_lookback_days
        frame = self.demand_history_frame(sublocation_id, reference - timedelta(days=window_days))
        if frame.empty:
            return None
        baseline = frame.groupby(["day_of_week", "hour_of_day"])["demand_pressure"].mean()
        value = baseline.get((day_of_week, hour_of_day))
        if value is None or pd.isna(value):
            return None
        return float(value)

    # --- Timezones ------------------------------------------------------

    def resolve_timezone(self, sublocation: EntityRecord) -> str:
        """SubLocation -> Location -> Customer -> system default."""
        if sublocation.timezone:
            return str(sublocation.timezone)
        location = self.get_location(sublocation.parent_id) if sublocation.parent_id else None
        if location is not None and location.timezone:
            return str(location.timezone)
        customer = (
            self.get_customer(location.parent_id)
            if location is not None and location.parent_id
            else None
        )
        if customer is not None and customer.timezone:
            return str(customer.timezone)
        return self._settings.default_timezone

    # --- Seed -----------------------------------------------------------

    def seed_demo_data(self) -> None:
        """Seed one hierarchy chain with ratesheets only when the store is empty."""
        if self._store.count(CUSTOMERS) > 0:
            logger.info("Demo data already present; skipping seed")
            return

        now = utc_now()
        effective_from = now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=30)
        customer_id = self.create_customer(
            "Acme Venues", defaultHourlyRate=60.0, timezone=self._settings.default_timezone
        )
        location_id = self.create_location("Downtown Center", customer_id, defaultHourlyRate=80.0)
        sublocation_id = self.create_sublocation(
            "Main Hall", location_id, defaultHourlyRate=100.0, maxCapacity=200
        )
        self.insert_rule(
            {
                "name": "Main Hall Standard Hours",
                "type": RuleKind.TIMING_BASED.value,
                "appliesTo": {"level": HierarchyLevel.SUBLOCATION.value, "entityId": sublocation_id},
                "priority": 3100,
                "conflictResolution": ConflictResolution.PRIORITY.value,
                "effectiveFrom": effective_from,
                "effectiveTo": None,
                "timeWindows": [
                    {"startTime": "08:00", "endTime": "18:00", "pricePerHour": 120.0},
                    {"startTime": "18:00", "endTime": "23:00", "pricePerHour": 150.0},
                ],
                "approvalStatus": ApprovalStatus.APPROVED.value,
                "isActive": True,
                "createdBy": "seed",
            }
        )
        self.insert_rule(
            {
                "name": "Downtown Overnight",
                "type": RuleKind.TIMING_BASED.value,
                "appliesTo": {"level": HierarchyLevel.LOCATION.value, "entityId": location_id},
                "priority": 2100,
                "conflictResolution": ConflictResolution.PRIORITY.value,
                "effectiveFrom": effective_from,
                "effectiveTo": None,
                "timeWindows": [
                    {"startTime": "23:00", "endTime": "08:00", "pricePerHour": 70.0},
                ],
                "approvalStatus": ApprovalStatus.APPROVED.value,
                "isActive": True,
                "createdBy": "seed",
            }
        )
        event_start = effective_from + timedelta(days=44, hours=15)
        event_id = self.create_event(
            "Spring Trade Show",
            event_start,
            event_start + timedelta(hours=4),
            subLocationId=sublocation_id,
            gracePeriodBefore=60,
            gracePeriodAfter=30,
            defaultHourlyRate=180.0,
        )
        self.insert_surge_config(
            {
                "name": "Main Hall Demand Surge",
                "appliesTo": {"level": HierarchyLevel.SUBLOCATION.value, "entityId": sublocation_id},
                "priority": 700,
                "demandSupplyParams": {
                    "currentDemand": 10,
                    "currentSupply": 10,
                    "historicalAvgPressure": 1.0,
                },
                "surgeParams": {
                    "alpha": 0.3,
                    "minMultiplier": 0.75,
                    "maxMultiplier": 1.8,
                    "emaAlpha": 0.3,
                },
                "surgeDurationHours": self._settings.surge_default_duration_hours,
                "effectiveFrom": effective_from,
            }
        )
        logger.info(
            "Demo seed completed | customer=%s | location=%s | sublocation=%s | event=%s",
            customer_id,
            location_id,
            sublocation_id,
            event_id,
        )

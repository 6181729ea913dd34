"""Hourly resolution of competing pricing rules across the entity hierarchy.

The engine is a pure function of a booking context and the candidate rules
its caller fetched. For every clock-hour slot it builds the candidate set,
ranks it (level, then priority, then creation order), composes surge
multipliers on top of the base winner and falls back to ancestor default
rates when nothing matches. Every slot yields a decision record.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, Iterator, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from venue_pricing.domain.models import (
    BookingContext,
    CandidateEntry,
    ConflictResolution,
    DecisionRecord,
    DurationPackage,
    DurationRule,
    HierarchyLevel,
    HourlySegment,
    PricingResult,
    PricingRule,
    RuleRef,
    RuleUsage,
    SurgeRule,
    TimingRule,
)
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import (
    MINUTES_PER_DAY,
    WEEKDAY_NAMES,
    format_hhmm,
    hours_between,
    local_clock,
    minute_in_window,
    parse_hhmm,
    resolve_zone,
)


logger = get_logger(__name__)

SOURCE_RATESHEET = "RATESHEET"
SOURCE_SURGE = "SURGE"
SOURCE_DEFAULT = "DEFAULT_RATE"

_ONE_HOUR = timedelta(hours=1)


class RuleDefinitionError(ValueError):
    """Raised internally when a rule cannot take part in resolution."""


@dataclass(frozen=True)
class _ClockWindow:
    start_minute: int
    end_minute: int
    value: float
    days: frozenset[str]
    label: str

    def covers(self, minute_of_day: int, weekday: str) -> bool:
        if self.days and weekday not in self.days:
            return False
        return minute_in_window(minute_of_day, self.start_minute, self.end_minute)


@dataclass(frozen=True)
class _PreparedRule:
    rule: PricingRule
    ref: RuleRef
    windows: tuple[_ClockWindow, ...]
    package: Optional[DurationPackage] = None

    def active_during(self, slot_start: datetime, slot_end: datetime) -> bool:
        """Half-open: a rule taking effect at ``slot_end`` starts with the next slot."""
        if self.rule.effective_from >= slot_end:
            return False
        return self.rule.effective_to is None or self.rule.effective_to > slot_start


@dataclass(frozen=True)
class _Candidate:
    prepared: _PreparedRule
    price: float
    window_label: Optional[str]

    @property
    def rule(self) -> PricingRule:
        return self.prepared.rule

    @property
    def ref(self) -> RuleRef:
        return self.prepared.ref

    @property
    def is_surge(self) -> bool:
        return isinstance(self.rule, SurgeRule)

    @property
    def rank_key(self) -> tuple[int, int, int]:
        return (-self.rule.level.rank, -self.rule.priority, self.rule.sequence)

    def entry(self, reason: str) -> CandidateEntry:
        return CandidateEntry(
            rule=self.ref,
            price=self.price,
            matched_window=self.window_label,
            reason=reason,
        )


def iter_hour_slots(
    start: datetime,
    end: datetime,
    zone: tzinfo = timezone.utc,
) -> Iterator[tuple[datetime, datetime]]:
    """Slots cut at each clock-hour boundary of ``zone``.

    The first and last slots may be partial when the booking does not
    start or end on the hour.
    """
    cursor = start
    while cursor < end:
        local = cursor.astimezone(zone)
        to_boundary = _ONE_HOUR - timedelta(
            minutes=local.minute, seconds=local.second, microseconds=local.microsecond
        )
        slot_end = min(cursor + to_boundary, end)
        yield cursor, slot_end
        cursor = slot_end


def select_duration_package(
    packages: Sequence[DurationPackage],
    booking_hours: float,
) -> Optional[DurationPackage]:
    """Largest package not exceeding the booking, else the smallest package."""
    if not packages:
        return None
    ordered = sorted(packages, key=lambda item: item.duration_hours)
    fitting = [item for item in ordered if item.duration_hours <= booking_hours]
    return fitting[-1] if fitting else ordered[0]


def _parse_windows(rule: TimingRule | SurgeRule) -> tuple[_ClockWindow, ...]:
    windows = []
    for window in rule.time_windows:
        try:
            start_minute = parse_hhmm(window.start_time)
            end_minute = parse_hhmm(window.end_time)
        except ValueError as exc:
            raise RuleDefinitionError(str(exc)) from exc
        if start_minute == MINUTES_PER_DAY:
            raise RuleDefinitionError("24:00 is only valid as an end time")
        days = frozenset(day.upper() for day in window.days_of_week)
        unknown = days.difference(WEEKDAY_NAMES)
        if unknown:
            raise RuleDefinitionError(f"unknown days of week {sorted(unknown)}")
        value = float(window.value)
        windows.append(
            _ClockWindow(
                start_minute=start_minute,
                end_minute=end_minute,
                value=value,
                days=days,
                label=f"{window.start_time}-{window.end_time}",
            )
        )
    return tuple(windows)


class HourlyPricingEngine:
    """Stateless resolver; safe to share between concurrent requests."""

    def resolve(
        self,
        context: BookingContext,
        candidate_rules_by_level: Mapping[HierarchyLevel, Iterable[PricingRule]],
    ) -> PricingResult:
        zone = resolve_zone(context.timezone)
        booking_hours = hours_between(context.start, context.end)
        prepared = self._prepare(context, candidate_rules_by_level, booking_hours)

        segments: list[HourlySegment] = []
        decisions: list[DecisionRecord] = []
        for slot_start, slot_end in iter_hour_slots(context.start, context.end, zone):
            segment, decision = self._price_slot(context, zone, prepared, slot_start, slot_end)
            segments.append(segment)
            decisions.append(decision)

        total_hours = sum(segment.duration_hours for segment in segments)
        total_price = sum(segment.total_price for segment in segments)
        ratesheet_segments = sum(1 for segment in segments if segment.winning_rule is not None)
        return PricingResult(
            segments=tuple(segments),
            total_hours=total_hours,
            total_price=total_price,
            decision_log=tuple(decisions),
            timezone=context.timezone,
            ratesheet_segments=ratesheet_segments,
            default_rate_segments=len(segments) - ratesheet_segments,
            usage=self._summarize_usage(segments),
        )

    # --- Candidate preparation ----------------------------------------

    def _prepare(
        self,
        context: BookingContext,
        candidate_rules_by_level: Mapping[HierarchyLevel, Iterable[PricingRule]],
        booking_hours: float,
    ) -> list[_PreparedRule]:
        prepared: list[_PreparedRule] = []
        seen: set[str] = set()
        for rules in candidate_rules_by_level.values():
            for rule in rules:
                if rule.rule_id in seen:
                    continue
                seen.add(rule.rule_id)
                if not rule.is_live:
                    continue
                if rule.applies_to.entity_id not in context.entity_for(rule.level):
                    continue
                if isinstance(rule, SurgeRule) and not context.include_surge:
                    continue
                try:
                    prepared.append(self._prepare_rule(rule, booking_hours))
                except RuleDefinitionError as exc:
                    logger.warning(
                        "Excluding malformed rule | rule_id=%s | name=%s | error=%s",
                        rule.rule_id,
                        rule.name,
                        exc,
                    )
        return prepared

    @staticmethod
    def _prepare_rule(rule: PricingRule, booking_hours: float) -> _PreparedRule:
        if rule.effective_to is not None and rule.effective_to < rule.effective_from:
            raise RuleDefinitionError("effective_to precedes effective_from")
        ref = RuleRef.of(rule)
        match rule:
            case DurationRule(packages=packages):
                package = select_duration_package(packages, booking_hours)
                if package is None or package.duration_hours <= 0:
                    raise RuleDefinitionError("duration rule has no usable package")
                return _PreparedRule(rule=rule, ref=ref, windows=(), package=package)
            case TimingRule() | SurgeRule():
                return _PreparedRule(rule=rule, ref=ref, windows=_parse_windows(rule))
            case _:
                raise RuleDefinitionError(f"unsupported rule type {type(rule).__name__}")

    # --- Slot resolution ----------------------------------------------

    @staticmethod
    def _match(
        prepared: _PreparedRule,
        minute_of_day: int,
        weekday: str,
    ) -> Optional[tuple[float, Optional[str]]]:
        if prepared.package is not None:
            package = prepared.package
            return package.hourly_rate, f"{package.duration_hours:g}h package"
        for window in prepared.windows:
            if window.covers(minute_of_day, weekday):
                return window.value, window.label
        return None

    @staticmethod
    def _select(
        candidates: Sequence[_Candidate],
    ) -> tuple[Optional[_Candidate], str, list[CandidateEntry]]:
        if not candidates:
            return None, "No matching candidate", []

        ordered = sorted(candidates, key=lambda item: item.rank_key)
        top = ordered[0]
        group = [
            item
            for item in ordered
            if item.rule.level is top.rule.level and item.rule.priority == top.rule.priority
        ]
        mode = top.rule.conflict_resolution
        if len(group) > 1 and mode is ConflictResolution.HIGHEST_PRICE:
            winner = max(group, key=lambda item: (item.price, -item.rule.sequence))
            reason = f"HIGHEST_PRICE among {len(group)} rules at {top.rule.level.value} priority {top.rule.priority}"
        elif len(group) > 1 and mode is ConflictResolution.LOWEST_PRICE:
            winner = min(group, key=lambda item: (item.price, item.rule.sequence))
            reason = f"LOWEST_PRICE among {len(group)} rules at {top.rule.level.value} priority {top.rule.priority}"
        elif len(group) > 1:
            winner = top
            reason = f"Earliest created among {len(group)} tied rules at {top.rule.level.value} priority {top.rule.priority}"
        else:
            winner = top
            reason = f"Highest ranked: level {top.rule.level.value}, priority {top.rule.priority}"

        rejected = [
            item.entry(f"Outranked by {winner.ref.name}")
            for item in ordered
            if item is not winner
        ]
        return winner, reason, rejected

    def _price_slot(
        self,
        context: BookingContext,
        zone: ZoneInfo,
        prepared: Sequence[_PreparedRule],
        slot_start: datetime,
        slot_end: datetime,
    ) -> tuple[HourlySegment, DecisionRecord]:
        minute_of_day, weekday = local_clock(slot_start, zone)
        local_label = f"{format_hhmm(minute_of_day)} {weekday}"

        candidates: list[_Candidate] = []
        rejected: list[CandidateEntry] = []
        for item in prepared:
            if not item.active_during(slot_start, slot_end):
                rejected.append(CandidateEntry(item.ref, 0.0, None, "Outside effective period"))
                continue
            matched = self._match(item, minute_of_day, weekday)
            if matched is None:
                rejected.append(
                    CandidateEntry(item.ref, 0.0, None, f"No time window covers {local_label}")
                )
                continue
            price, window_label = matched
            candidates.append(_Candidate(prepared=item, price=price, window_label=window_label))

        base_candidates = [item for item in candidates if not item.is_surge]
        winner, reason, losers = self._select(base_candidates)

        grace_suppressed = False
        in_grace = any(window.in_grace(slot_start) for window in context.event_windows)
        if (
            winner is not None
            and not context.is_event_booking
            and in_grace
            and winner.price == 0
        ):
            suppressed = [
                item
                for item in base_candidates
                if item.rule.level is HierarchyLevel.EVENT and item.price == 0
            ]
            rejected.extend(
                item.entry("Grace period rate not available to non-event bookings")
                for item in suppressed
            )
            base_candidates = [item for item in base_candidates if item not in suppressed]
            winner, reason, losers = self._select(base_candidates)
            grace_suppressed = True
        rejected.extend(losers)

        default_rate, default_level = context.default_rates.resolve()
        base_price = winner.price if winner is not None else default_rate

        surge_candidates = [item for item in candidates if item.is_surge]
        surge: Optional[_Candidate] = None
        if surge_candidates:
            ranked = sorted(base_candidates + surge_candidates, key=lambda item: item.rank_key)
            if ranked[0].is_surge:
                surge = ranked[0]
                rejected.extend(
                    item.entry(f"Surge {surge.ref.name} outranks this multiplier")
                    for item in surge_candidates
                    if item is not surge
                )
            else:
                rejected.extend(
                    item.entry("Surge multiplier outranked by base rule")
                    for item in surge_candidates
                )

        if surge is not None:
            price = base_price * surge.price
            winning_ref: Optional[RuleRef] = surge.ref
            source = SOURCE_SURGE
            matched_window = surge.window_label
            reason = f"Surge x{surge.price:g} applied to base {base_price:g}"
        elif winner is not None:
            price = winner.price
            winning_ref = winner.ref
            source = SOURCE_RATESHEET
            matched_window = winner.window_label
        else:
            price = default_rate
            winning_ref = None
            source = SOURCE_DEFAULT
            matched_window = None
            level_name = default_level.value if default_level is not None else "NONE"
            reason = f"Default rate from {level_name}"
        if grace_suppressed:
            reason = f"{reason} (grace suppressed)"

        price_clamped = False
        if not math.isfinite(price) or price < 0:
            logger.warning(
                "Clamping invalid slot price | slot=%s | price=%s | rule=%s",
                slot_start.isoformat(),
                price,
                winning_ref.rule_id if winning_ref else None,
            )
            price = 0.0
            price_clamped = True

        billed_hours = 1.0
        segment = HourlySegment(
            hour_start=slot_start,
            hour_end=slot_end,
            duration_hours=hours_between(slot_start, slot_end),
            billed_hours=billed_hours,
            price_per_hour=price,
            total_price=price * billed_hours,
            winning_rule=winning_ref,
            source=source,
            matched_window=matched_window,
            surge_multiplier=surge.price if surge is not None else None,
            base_price_per_hour=base_price if surge is not None else None,
            base_rule=winner.ref if surge is not None and winner is not None else None,
            grace_suppressed=grace_suppressed,
            price_clamped=price_clamped,
        )
        decision = DecisionRecord(
            slot_start=slot_start,
            slot_end=slot_end,
            local_time=local_label,
            candidates=tuple(item.entry("Candidate") for item in candidates),
            winner=winning_ref,
            winner_reason=reason,
            price_per_hour=price,
            rejected=tuple(rejected),
        )
        return segment, decision

    @staticmethod
    def _summarize_usage(segments: Sequence[HourlySegment]) -> tuple[RuleUsage, ...]:
        counts: dict[str, int] = defaultdict(int)
        revenue: dict[str, float] = defaultdict(float)
        refs: dict[str, RuleRef] = {}
        for segment in segments:
            if segment.winning_rule is None:
                continue
            rule_id = segment.winning_rule.rule_id
            refs[rule_id] = segment.winning_rule
            counts[rule_id] += 1
            revenue[rule_id] += segment.total_price
        return tuple(
            RuleUsage(rule=refs[rule_id], times_applied=counts[rule_id], total_revenue=revenue[rule_id])
            for rule_id in refs
        )

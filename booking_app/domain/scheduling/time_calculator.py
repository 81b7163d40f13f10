"""
Slot suggestion engine

Pure functions that turn busy intervals and scheduling constraints into a
list of bookable slots. Nothing here touches the database or the network, so
every result is reproducible from (busy intervals, date range, constraints, now).

All instants are aware UTC datetimes. Business hours and lunch are wall-clock
times resolved per calendar day in the constraint's timezone, so DST changes
move the UTC window with the local clock.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable, Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...config import (
    BUSY_MERGE_EPSILON_SECONDS,
    DEFAULT_BUSINESS_HOURS_END,
    DEFAULT_BUSINESS_HOURS_START,
    DEFAULT_MINIMUM_NOTICE_MINUTES,
    DEFAULT_TIMEZONE,
    MAX_SUGGESTED_SLOTS,
    SLOT_INCREMENT_MINUTES,
)
from ...utils.datetimes import ensure_utc, to_utc_iso, utcnow

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class BusySource(str, Enum):
    """Where busy intervals come from"""

    FREEBUSY = "freebusy"  # trust the provider's free/busy computation
    EVENTS = "events"  # derive busy time from the event listing

    @classmethod
    def parse(cls, value: Optional[str]) -> "BusySource":
        if isinstance(value, cls):
            return value
        if value and str(value).strip().lower() == cls.EVENTS.value:
            return cls.EVENTS
        return cls.FREEBUSY


def parse_hhmm(value: str) -> time:
    """Parse 'HH:MM' (24h) into a time"""
    match = _HHMM.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def __post_init__(self):
        start = ensure_utc(self.start)
        end = ensure_utc(self.end)
        if start >= end:
            raise ValueError(f"Busy interval must end after it starts ({start} >= {end})")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start

    def to_dict(self) -> dict:
        return {"start": to_utc_iso(self.start), "end": to_utc_iso(self.end)}


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    label: str

    def to_dict(self) -> dict:
        return {"start": to_utc_iso(self.start), "end": to_utc_iso(self.end), "label": self.label}


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates in the request timezone"""

    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError("Date range end must not be before its start")

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def utc_bounds(self, zone: ZoneInfo) -> tuple[datetime, datetime]:
        """Absolute instants covering local midnight of the first day to local midnight after the last"""
        start = datetime.combine(self.start, time.min, tzinfo=zone)
        end = datetime.combine(self.end + timedelta(days=1), time.min, tzinfo=zone)
        return ensure_utc(start), ensure_utc(end)


@dataclass(frozen=True)
class AvailabilityConstraints:
    duration_minutes: int = 60
    business_hours_start: str = DEFAULT_BUSINESS_HOURS_START
    business_hours_end: str = DEFAULT_BUSINESS_HOURS_END
    lunch_start: Optional[str] = None
    lunch_end: Optional[str] = None
    minimum_notice_minutes: int = DEFAULT_MINIMUM_NOTICE_MINUTES
    timezone: str = DEFAULT_TIMEZONE
    weekends_allowed: bool = False
    slot_increment_minutes: int = SLOT_INCREMENT_MINUTES
    max_slots: Optional[int] = MAX_SUGGESTED_SLOTS
    busy_source: BusySource = BusySource.FREEBUSY

    def __post_init__(self):
        if self.duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        if self.slot_increment_minutes <= 0:
            raise ValueError("slot_increment_minutes must be positive")
        if self.minimum_notice_minutes < 0:
            raise ValueError("minimum_notice_minutes must not be negative")
        parse_hhmm(self.business_hours_start)
        parse_hhmm(self.business_hours_end)
        if bool(self.lunch_start) != bool(self.lunch_end):
            raise ValueError("lunch_start and lunch_end must be set together")
        if self.lunch_start:
            parse_hhmm(self.lunch_start)
            parse_hhmm(self.lunch_end)
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{self.timezone}'") from e
        object.__setattr__(self, "busy_source", BusySource.parse(self.busy_source))

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ============================================================================
# INTERVAL ARITHMETIC
# ============================================================================


def merge_busy_intervals(
    intervals: Iterable[BusyInterval],
    epsilon: timedelta = timedelta(seconds=BUSY_MERGE_EPSILON_SECONDS),
) -> list[BusyInterval]:
    """
    Sort by start and coalesce intervals that overlap or sit within `epsilon` of each other.

    Merging an already merged list returns an equal list.
    """
    merged: list[BusyInterval] = []
    for interval in sorted(intervals, key=lambda i: (i.start, i.end)):
        if merged and interval.start - merged[-1].end <= epsilon:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = BusyInterval(last.start, interval.end)
            continue
        merged.append(interval)
    return merged


def slot_overlaps_busy(start: datetime, end: datetime, busy: Iterable[BusyInterval]) -> bool:
    """Half-open overlap test; touching boundaries do not conflict"""
    return any(b.overlaps(start, end) for b in busy)


def business_window(day: date, constraints: AvailabilityConstraints) -> tuple[datetime, datetime]:
    zone = constraints.zone
    start = datetime.combine(day, parse_hhmm(constraints.business_hours_start), tzinfo=zone)
    end = datetime.combine(day, parse_hhmm(constraints.business_hours_end), tzinfo=zone)
    return ensure_utc(start), ensure_utc(end)


def lunch_interval(day: date, constraints: AvailabilityConstraints) -> Optional[BusyInterval]:
    if not constraints.lunch_start:
        return None
    zone = constraints.zone
    start = datetime.combine(day, parse_hhmm(constraints.lunch_start), tzinfo=zone)
    end = datetime.combine(day, parse_hhmm(constraints.lunch_end), tzinfo=zone)
    if end <= start:
        return None
    return BusyInterval(start, end)


def free_gaps(
    window_start: datetime, window_end: datetime, busy: list[BusyInterval]
) -> Iterator[tuple[datetime, datetime]]:
    """Yield the free spans of [window_start, window_end) around sorted, merged busy blocks"""
    cursor = window_start
    for block in busy:
        if block.end <= cursor:
            continue
        if block.start >= window_end:
            break
        if block.start > cursor:
            yield cursor, block.start
        cursor = max(cursor, block.end)
    if cursor < window_end:
        yield cursor, window_end


def _first_aligned(gap_start: datetime, anchor: datetime, stride: timedelta) -> datetime:
    """First stride point at or after gap_start, counted from the business-day anchor"""
    offset = gap_start - anchor
    steps = -(-offset // stride)  # ceil division
    return anchor + steps * stride


def format_slot_label(start: datetime, end: datetime, zone: ZoneInfo) -> str:
    """'9:00 AM - 10:00 AM' in local wall-clock time"""

    def _fmt(value: datetime) -> str:
        return value.astimezone(zone).strftime("%I:%M %p").lstrip("0")

    return f"{_fmt(start)} - {_fmt(end)}"


# ============================================================================
# SUGGESTION
# ============================================================================


def suggest_slots(
    busy_intervals: Iterable[BusyInterval],
    date_range: DateRange,
    duration_minutes: int,
    constraints: AvailabilityConstraints,
    now: Optional[datetime] = None,
) -> list[Slot]:
    """
    Generate bookable slots for every allowed day in `date_range`.

    Candidates start on a fixed stride counted from each day's business-hours
    start, must start at or after now + minimum notice, and must end within a
    free gap. Output is ascending by start and capped at `constraints.max_slots`.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")

    zone = constraints.zone
    now = ensure_utc(now) if now else utcnow()
    earliest_start = now + timedelta(minutes=constraints.minimum_notice_minutes)
    duration = timedelta(minutes=duration_minutes)
    stride = timedelta(minutes=constraints.slot_increment_minutes)
    cap = constraints.max_slots

    merged = merge_busy_intervals(busy_intervals)
    slots: list[Slot] = []

    for day in date_range.days():
        if not constraints.weekends_allowed and day.weekday() >= 5:
            continue

        window_start, window_end = business_window(day, constraints)
        if window_end - window_start < duration or window_end <= earliest_start:
            continue

        day_busy = [b for b in merged if b.overlaps(window_start, window_end)]
        lunch = lunch_interval(day, constraints)
        if lunch:
            day_busy = merge_busy_intervals(day_busy + [lunch])

        for gap_start, gap_end in free_gaps(window_start, window_end, day_busy):
            if gap_end - gap_start < duration:
                continue
            candidate = _first_aligned(gap_start, window_start, stride)
            while candidate + duration <= gap_end:
                if candidate >= earliest_start:
                    end = candidate + duration
                    slots.append(Slot(candidate, end, format_slot_label(candidate, end, zone)))
                    if cap and len(slots) >= cap:
                        return slots
                candidate += stride

    return slots


def describe_day(
    busy_intervals: Iterable[BusyInterval],
    day: date,
    constraints: AvailabilityConstraints,
    sample_size: int = 5,
) -> dict:
    """Debug view of one day: the resolved window and the busy blocks that intersect it"""
    window_start, window_end = business_window(day, constraints)
    merged = merge_busy_intervals(busy_intervals)
    in_window = [b for b in merged if b.overlaps(window_start, window_end)]
    lunch = lunch_interval(day, constraints)
    return {
        "timezone": constraints.timezone,
        "windowStart": to_utc_iso(window_start),
        "windowEnd": to_utc_iso(window_end),
        "lunch": lunch.to_dict() if lunch else None,
        "mergedBusyCount": len(merged),
        "busyInWindowCount": len(in_window),
        "busySample": [b.to_dict() for b in in_window[:sample_size]],
    }

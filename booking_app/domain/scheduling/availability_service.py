"""
Availability orchestrator
Combines the token manager, the busy fetcher and the suggestion engine across
several participants (and optionally a room) to answer "what times work for everyone".

Availability is best-effort: a participant whose calendar cannot be read is
skipped and reported, never fatal for the group.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session

from ...config import (
    AVAILABILITY_BUSY_SOURCE,
    DEFAULT_BUSINESS_HOURS_END,
    DEFAULT_BUSINESS_HOURS_START,
    DEFAULT_MINIMUM_NOTICE_MINUTES,
    DEFAULT_TIMEZONE,
    MAX_SUGGESTED_SLOTS,
    SLOT_INCREMENT_MINUTES,
)
from ...models_calendar import CalendarConnection, CalendarProvider
from ...utils.datetimes import ensure_utc, utcnow
from .busy_fetcher import BusyFetchResult, fetch_busy, resolve_calendar_ids
from .errors import AuthExpired, PreconditionFailed, ProviderApiError, TokenRefreshFailed
from .providers import get_provider
from .repository import SchedulingRepository
from .time_calculator import (
    AvailabilityConstraints,
    BusyInterval,
    BusySource,
    DateRange,
    Slot,
    describe_day,
    merge_busy_intervals,
    slot_overlaps_busy,
    suggest_slots,
)
from .token_service import call_with_token_retry

logger = logging.getLogger(__name__)

DAY_VIEW_MINIMUM_NOTICE_MINUTES = 60

# Meeting preference keys (camelCase, as stored by the booking UI) -> constraint fields
PREFERENCE_FIELDS = {
    "businessHoursStart": "business_hours_start",
    "businessHoursEnd": "business_hours_end",
    "lunchStart": "lunch_start",
    "lunchEnd": "lunch_end",
    "minimumNoticeMinutes": "minimum_notice_minutes",
    "timezone": "timezone",
    "weekendsAllowed": "weekends_allowed",
    "busySource": "busy_source",
    "maxSlots": "max_slots",
}


@dataclass
class AvailabilityResult:
    slots: list[Slot]
    busy_intervals: list[BusyInterval]
    participants_checked: int
    skipped: list[dict] = field(default_factory=list)
    room_checked: Optional[bool] = None  # None when no room was requested

    def to_dict(self) -> dict:
        return {
            "slots": [s.to_dict() for s in self.slots],
            "busyIntervals": [b.to_dict() for b in self.busy_intervals],
            "participantsChecked": self.participants_checked,
            "skippedParticipants": self.skipped,
            "roomChecked": self.room_checked,
        }


@dataclass
class BusyCollection:
    busy: list[BusyInterval] = field(default_factory=list)
    participants_checked: int = 0
    skipped: list[dict] = field(default_factory=list)
    room_checked: Optional[bool] = None
    working_connections: list[CalendarConnection] = field(default_factory=list)


@dataclass
class SlotCheck:
    """Outcome of re-validating one concrete slot against live calendars"""

    free: bool
    participants_checked: int
    conflicts: list[BusyInterval] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    room_checked: Optional[bool] = None


class AvailabilityService:
    """Service layer for availability queries"""

    def __init__(self, db: Session, http: httpx.AsyncClient, now: Optional[datetime] = None):
        self.db = db
        self.http = http
        self.now = ensure_utc(now) if now else None
        self.repo = SchedulingRepository()

    def _now(self) -> datetime:
        return self.now or utcnow()

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def resolve_constraints(
        self,
        duration_minutes: int,
        preferences: Optional[dict[str, Any]] = None,
        timezone: Optional[str] = None,
    ) -> AvailabilityConstraints:
        """Meeting preferences override app settings, which override environment defaults"""
        values: dict[str, Any] = {
            "duration_minutes": duration_minutes,
            "business_hours_start": DEFAULT_BUSINESS_HOURS_START,
            "business_hours_end": DEFAULT_BUSINESS_HOURS_END,
            "minimum_notice_minutes": DEFAULT_MINIMUM_NOTICE_MINUTES,
            "timezone": timezone or DEFAULT_TIMEZONE,
            "slot_increment_minutes": SLOT_INCREMENT_MINUTES,
            "max_slots": MAX_SUGGESTED_SLOTS,
            "busy_source": self.repo.get_setting(self.db, "availability_busy_source", AVAILABILITY_BUSY_SOURCE),
        }
        for key, field_name in PREFERENCE_FIELDS.items():
            value = (preferences or {}).get(key)
            if value is not None and value != "":
                values[field_name] = value
        try:
            return AvailabilityConstraints(**values)
        except ValueError as e:
            raise PreconditionFailed(f"Invalid scheduling preferences: {e}") from e

    # ------------------------------------------------------------------
    # Busy collection
    # ------------------------------------------------------------------

    async def collect_busy_intervals(
        self,
        participant_ids: list[int],
        room_resource_email: Optional[str],
        start: datetime,
        end: datetime,
        constraints: AvailabilityConstraints,
    ) -> BusyCollection:
        collection = BusyCollection()
        seen: set[int] = set()

        for user_id in participant_ids:
            if user_id in seen:
                continue
            seen.add(user_id)

            connections = self.repo.get_connections_for_user(self.db, user_id)
            if not connections:
                logger.info(f"ℹ️ Participant {user_id} has no calendar connection, skipping")
                collection.skipped.append({"userId": user_id, "reason": "no_connection"})
                continue

            readable = False
            errors = []
            for connection in connections:
                result = await fetch_busy(
                    self.db,
                    connection,
                    None,
                    start,
                    end,
                    self.http,
                    busy_source=constraints.busy_source,
                    zone=constraints.zone,
                    now=self.now,
                )
                if result.ok:
                    readable = True
                    collection.busy.extend(result.busy)
                    collection.working_connections.append(connection)
                else:
                    errors.append({"provider": connection.provider, "type": result.error_type, "error": result.error})

            if readable:
                collection.participants_checked += 1
            else:
                collection.skipped.append({"userId": user_id, "reason": "unreadable", "errors": errors})

        if room_resource_email:
            collection.room_checked = await self._collect_room_busy(
                room_resource_email, start, end, collection
            )

        return collection

    async def _collect_room_busy(
        self, room_email: str, start: datetime, end: datetime, collection: BusyCollection
    ) -> bool:
        """Read the room's resource calendar through the first staff connection that can see it"""
        candidates = list(collection.working_connections)
        for connection in self.repo.get_staff_connections(self.db):
            if connection not in candidates:
                candidates.append(connection)

        for connection in candidates:
            # Resource calendars expose free/busy even where their events are hidden
            result: BusyFetchResult = await fetch_busy(
                self.db, connection, [room_email], start, end, self.http, BusySource.FREEBUSY, now=self.now
            )
            if result.ok:
                collection.busy.extend(result.busy)
                return True
            logger.info(f"ℹ️ Room {room_email} not readable via connection {connection.id}: {result.error}")

        logger.warning(f"⚠️ Room {room_email} could not be checked through any staff connection")
        return False

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def check_availability(
        self,
        participant_ids: list[int],
        room_resource_email: Optional[str],
        date_range: DateRange,
        duration_minutes: int,
        preferences: Optional[dict[str, Any]] = None,
        constraints: Optional[AvailabilityConstraints] = None,
    ) -> AvailabilityResult:
        constraints = constraints or self.resolve_constraints(duration_minutes, preferences)
        start, end = date_range.utc_bounds(constraints.zone)

        collection = await self.collect_busy_intervals(
            participant_ids, room_resource_email, start, end, constraints
        )
        slots = suggest_slots(collection.busy, date_range, duration_minutes, constraints, now=self._now())

        logger.info(
            f"📅 Availability {date_range.start}..{date_range.end}: {len(slots)} slots, "
            f"{collection.participants_checked}/{len(set(participant_ids))} participants checked"
        )
        return AvailabilityResult(
            slots=slots,
            busy_intervals=merge_busy_intervals(collection.busy),
            participants_checked=collection.participants_checked,
            skipped=collection.skipped,
            room_checked=collection.room_checked,
        )

    async def suggest_slots_for_day(
        self,
        internal_user_id: int,
        day: date,
        duration_minutes: int,
        business_start: str,
        business_end: str,
        timezone: str,
        calendar_ids: Optional[list[str]] = None,
        debug: bool = False,
    ) -> dict:
        """
        Slots for one staff member on one day.

        Failures come back in `error` with an empty slot list rather than raising.
        """
        connection = self.primary_connection(internal_user_id)
        if connection is None:
            return {"date": day.isoformat(), "slots": [], "error": "No calendar connection found", "calendarsChecked": []}

        try:
            constraints = AvailabilityConstraints(
                duration_minutes=duration_minutes,
                business_hours_start=business_start,
                business_hours_end=business_end,
                minimum_notice_minutes=DAY_VIEW_MINIMUM_NOTICE_MINUTES,
                timezone=timezone,
                max_slots=None,
                busy_source=self.repo.get_setting(self.db, "availability_busy_source", AVAILABILITY_BUSY_SOURCE),
            )
        except ValueError as e:
            raise PreconditionFailed(str(e)) from e
        date_range = DateRange(day, day)
        start, end = date_range.utc_bounds(constraints.zone)
        ids = resolve_calendar_ids(connection, calendar_ids)

        result = await fetch_busy(
            self.db, connection, ids, start, end, self.http, constraints.busy_source, constraints.zone, self.now
        )
        response = {
            "date": day.isoformat(),
            "slots": [],
            "error": result.error,
            "calendarsChecked": ids,
            "busySource": constraints.busy_source.value,
        }
        if not result.ok:
            return response

        slots = suggest_slots(result.busy, date_range, duration_minutes, constraints, now=self._now())
        response["slots"] = [s.to_dict() for s in slots]
        if debug:
            response["debug"] = {
                **describe_day(result.busy, day, constraints),
                "eventsCount": result.events_count,
                "rawBusyCount": len(result.busy),
            }
        return response

    async def is_slot_free(
        self,
        participant_ids: list[int],
        room_resource_email: Optional[str],
        start: datetime,
        end: datetime,
        busy_source: BusySource = BusySource.FREEBUSY,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> SlotCheck:
        """Re-read live calendars over exactly [start, end) and report any overlap"""
        constraints = AvailabilityConstraints(busy_source=busy_source, minimum_notice_minutes=0, timezone=timezone)
        collection = await self.collect_busy_intervals(
            participant_ids, room_resource_email, start, end, constraints
        )
        conflicts = [b for b in merge_busy_intervals(collection.busy) if b.overlaps(start, end)]
        return SlotCheck(
            free=not slot_overlaps_busy(start, end, conflicts),
            participants_checked=collection.participants_checked,
            conflicts=conflicts,
            skipped=collection.skipped,
            room_checked=collection.room_checked,
        )

    def primary_connection(self, user_id: int) -> Optional[CalendarConnection]:
        """Google first, then Microsoft"""
        connections = self.repo.get_connections_for_user(self.db, user_id)
        for provider in (CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT):
            for connection in connections:
                if connection.provider == provider:
                    return connection
        return connections[0] if connections else None

    # ------------------------------------------------------------------
    # Connection verification
    # ------------------------------------------------------------------

    async def verify_connection(self, connection: CalendarConnection) -> dict:
        """List the account's calendars and record the outcome on the connection"""
        provider = get_provider(connection.provider)
        verified_at = self._now()
        try:
            calendars = await call_with_token_retry(
                self.db, connection, self.http, lambda token: provider.list_calendars(self.http, token), self.now
            )
        except (TokenRefreshFailed, AuthExpired, ProviderApiError) as e:
            error = e.message
        except httpx.HTTPError as e:
            error = f"{connection.provider} request failed: {type(e).__name__}"
        else:
            connection.last_verified_at = verified_at
            connection.last_verify_status = "ok"
            connection.last_verify_error = None
            connection.last_verify_count = len(calendars)
            self.db.commit()
            logger.info(f"✅ Verified {connection.provider} connection {connection.id}: {len(calendars)} calendars")
            return {"ok": True, "calendars": [c.to_dict() for c in calendars], "checkedAt": verified_at.isoformat()}

        connection.last_verified_at = verified_at
        connection.last_verify_status = "error"
        connection.last_verify_error = error
        connection.last_verify_count = None
        self.db.commit()
        logger.warning(f"⚠️ Verification failed for connection {connection.id}: {error}")
        return {"ok": False, "error": error, "checkedAt": verified_at.isoformat()}


def default_search_window(start: date, days: int) -> DateRange:
    return DateRange(start, start + timedelta(days=max(days, 1) - 1))

"""
Public booking service
Token-addressed views for clients: what the booking is, which times are
open, and friendly state only (never provider errors).
"""

import logging
from datetime import date, datetime
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from ...models import BookingRequest, BookingRequestStatus, Meeting, MeetingStatus
from ...utils.datetimes import ensure_utc, get_zone, to_utc_iso, utcnow
from .availability_service import AvailabilityService, default_search_window
from .errors import PreconditionFailed
from .lifecycle_service import DEFAULT_SEARCH_WINDOW_DAYS, BookingLifecycleService
from .repository import SchedulingRepository

logger = logging.getLogger(__name__)

CONTACT_SETTING_KEYS = {
    "phone": "public_contact_phone",
    "email": "public_contact_email",
    "message": "public_contact_message",
}


class PublicBookingService:
    """Service layer for the client-facing booking link"""

    def __init__(self, db: Session, http: httpx.AsyncClient, now: Optional[datetime] = None):
        self.db = db
        self.http = http
        self.now = ensure_utc(now) if now else None
        self.repo = SchedulingRepository()
        self.availability = AvailabilityService(db, http, now=now)
        self.lifecycle = BookingLifecycleService(db, http, now=now)

    def _now(self) -> datetime:
        return self.now or utcnow()

    def _load(self, public_token: str) -> tuple[BookingRequest, Meeting]:
        request = self.repo.get_booking_request_by_token(self.db, public_token)
        if not request:
            raise PreconditionFailed("Booking link not found", 404)
        meeting = self.repo.get_meeting(self.db, request.meeting_id)
        if not meeting:
            raise PreconditionFailed("Booking link not found", 404)
        return request, meeting

    def _state(self, request: BookingRequest, meeting: Meeting) -> str:
        if meeting.status == MeetingStatus.CANCELLED:
            return "cancelled"
        if meeting.status == MeetingStatus.BOOKED:
            return "already_booked"
        expires_at = ensure_utc(request.expires_at)
        if request.status != BookingRequestStatus.OPEN or (expires_at and expires_at < self._now()):
            return "expired"
        if meeting.status == MeetingStatus.FAILED:
            return "contact_office"
        return "needs_scheduling"

    def _contact(self) -> dict:
        return {key: self.repo.get_setting(self.db, setting) for key, setting in CONTACT_SETTING_KEYS.items()}

    def booking_info(self, public_token: str) -> dict:
        request, meeting = self._load(public_token)
        summary = {
            "meetingTypeName": meeting.meeting_type.name if meeting.meeting_type else None,
            "durationMinutes": meeting.duration_minutes,
            "locationMode": meeting.location_mode,
            "roomName": meeting.room.name if meeting.room else None,
            "timezone": meeting.timezone,
            "start": None,
            "end": None,
        }
        if meeting.status == MeetingStatus.BOOKED and meeting.start_datetime:
            summary["start"] = to_utc_iso(meeting.start_datetime)
            summary["end"] = to_utc_iso(meeting.end_datetime)

        return {
            "state": self._state(request, meeting),
            "expiresAt": to_utc_iso(request.expires_at) if request.expires_at else None,
            "meeting": summary,
            "contact": self._contact(),
        }

    async def available_slots(
        self,
        public_token: str,
        start_date: Optional[date] = None,
        client_timezone: Optional[str] = None,
    ) -> dict:
        """Open slots for the link's meeting; busy detail and skipped participants stay internal"""
        request, meeting = self._load(public_token)
        self.lifecycle.ensure_request_open(request)
        if meeting.status in (MeetingStatus.BOOKED, MeetingStatus.CANCELLED, MeetingStatus.FAILED):
            raise PreconditionFailed("This appointment can no longer be scheduled online", 409)

        constraints = self.availability.resolve_constraints(
            meeting.duration_minutes, meeting.preferences, meeting.timezone
        )
        if start_date is None:
            start_date = self._now().astimezone(constraints.zone).date()
        window = self.lifecycle.setting_number(
            meeting, "searchWindowDays", "search_window_days", DEFAULT_SEARCH_WINDOW_DAYS
        )
        result = await self.availability.check_availability(
            BookingLifecycleService.participant_ids(meeting),
            BookingLifecycleService.room_email(meeting),
            default_search_window(start_date, window),
            meeting.duration_minutes,
            constraints=constraints,
        )

        display_zone = get_zone(client_timezone, constraints.timezone)
        slots = []
        for slot in result.slots:
            local_start = slot.start.astimezone(display_zone)
            entry = slot.to_dict()
            entry["date"] = local_start.date().isoformat()
            entry["localStart"] = local_start.isoformat()
            slots.append(entry)

        if result.participants_checked == 0 and result.skipped:
            logger.warning(f"⚠️ Public slot list for meeting {meeting.id} built without any readable staff calendar")

        return {"timezone": display_zone.key, "durationMinutes": meeting.duration_minutes, "slots": slots}

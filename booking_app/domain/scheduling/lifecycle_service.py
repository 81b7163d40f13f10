"""
Booking lifecycle controller

Drives a meeting through Draft -> Proposed -> Booked (and on to Rescheduled or
Cancelled) while keeping the calendar provider and the CRM in step.

The meeting's own status change is the primary transition: precondition
failures abort before it is written, and once it is committed every
calendar/CRM side effect is best-effort. Side-effect failures become warnings
plus a progress-log entry, never an exception to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import (
    BOOKING_REQUEST_EXPIRES_DAYS,
    CONFIRM_RECHECK_ENABLED,
    MANAGE_MIN_NOTICE_HOURS,
)
from ...models import BookingRequest, BookingRequestStatus, LocationMode, Meeting, MeetingStatus
from ...models_calendar import MeetingCalendarEvent
from ...security_utils import TokenDecryptionError, decrypt_token
from ...utils.datetimes import ensure_utc, get_zone, to_utc_iso, utcnow
from ..integrations.lawmatics import AppointmentDraft, LawmaticsClient, LawmaticsError
from .availability_service import AvailabilityService, default_search_window
from .errors import (
    AuthExpired,
    PartialSyncFailure,
    PreconditionFailed,
    ProviderApiError,
    SchedulingError,
    TokenRefreshFailed,
)
from .progress_log import ProgressLogger
from .providers import CalendarEventDraft, EventAttendee, get_provider
from .repository import SchedulingRepository
from .state_machine import TERMINAL_STATUSES, can_transition, ensure_transition
from .time_calculator import DateRange, Slot
from .token_service import call_with_token_retry

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_WINDOW_DAYS = 14


class BookingAction(str, Enum):
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"


@dataclass
class BookingContext:
    """How side effects are performed for one booking (test bookings go to an admin calendar)"""

    is_test: bool = False
    admin_calendar_id: Optional[str] = None
    send_invites: bool = True

    @classmethod
    def from_meeting(cls, meeting: Meeting) -> "BookingContext":
        prefs = meeting.preferences or {}
        is_test = bool(prefs.get("isTest"))
        return cls(
            is_test=is_test,
            admin_calendar_id=prefs.get("adminCalendarId") or None,
            send_invites=bool(prefs.get("sendInvites", not is_test)),
        )

    def title(self, base: str) -> str:
        return f"[TEST] {base}" if self.is_test else base

    @property
    def calendar_id(self) -> str:
        if self.is_test and self.admin_calendar_id:
            return self.admin_calendar_id
        return "primary"


@dataclass
class SyncReport:
    """Warnings and structured errors collected from best-effort steps"""

    warnings: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def add(self, failure: PartialSyncFailure, plog: ProgressLogger, step: str, level: str = "error") -> None:
        self.warnings.append(failure.message)
        self.errors.append(failure.to_dict())
        plog.write(step, level, failure.message, system=failure.system, status=failure.status, responseExcerpt=failure.excerpt)

    def warn(self, message: str, plog: ProgressLogger, step: str, **details: Any) -> None:
        self.warnings.append(message)
        plog.warn(step, message, **details)


@dataclass
class ConfirmResult:
    meeting_id: int
    run_id: str
    meeting_status: str
    calendar_event_id: Optional[str] = None
    lawmatics_appointment_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "hasErrors": self.has_errors,
            "warnings": self.warnings,
            "errors": self.errors,
            "meetingId": self.meeting_id,
            "meetingStatus": self.meeting_status,
            "runId": self.run_id,
            "calendarEventId": self.calendar_event_id,
            "lawmaticsAppointmentId": self.lawmatics_appointment_id,
        }


@dataclass
class ManageResult:
    action: str
    meeting_id: int
    meeting_status: str
    booking_request_id: Optional[int] = None
    booking_status: Optional[str] = None
    public_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self, include_token: bool = False) -> dict:
        data = {
            "success": True,
            "action": self.action,
            "meetingId": self.meeting_id,
            "bookingRequestId": self.booking_request_id,
            "meetingStatus": self.meeting_status,
            "bookingStatus": self.booking_status,
            "expiresAt": to_utc_iso(self.expires_at) if self.expires_at else None,
            "warnings": self.warnings,
        }
        if include_token:
            data["publicToken"] = self.public_token
        return data


class BookingLifecycleService:
    """Service layer for the meeting booking lifecycle"""

    def __init__(self, db: Session, http: httpx.AsyncClient, now: Optional[datetime] = None):
        self.db = db
        self.http = http
        self.now = ensure_utc(now) if now else None
        self.repo = SchedulingRepository()
        self.availability = AvailabilityService(db, http, now=now)

    def _now(self) -> datetime:
        return self.now or utcnow()

    # ========================================================================
    # LOOKUPS AND SETTINGS
    # ========================================================================

    def get_meeting(self, meeting_id: int) -> Meeting:
        meeting = self.repo.get_meeting(self.db, meeting_id)
        if not meeting:
            raise PreconditionFailed("Meeting not found", 404)
        return meeting

    def get_booking_request(self, public_token: str) -> BookingRequest:
        request = self.repo.get_booking_request_by_token(self.db, public_token)
        if not request:
            raise PreconditionFailed("Booking link not found", 404)
        return request

    def ensure_request_open(self, request: BookingRequest) -> None:
        if request.status == BookingRequestStatus.COMPLETED:
            raise PreconditionFailed("This booking link has already been used", 409)
        if request.status != BookingRequestStatus.OPEN:
            raise PreconditionFailed("This booking link is no longer active", 409)
        expires_at = ensure_utc(request.expires_at)
        if expires_at and expires_at < self._now():
            raise PreconditionFailed("This booking link has expired", 400)

    def setting_number(self, meeting: Meeting, preference_key: str, setting_key: str, default: int) -> int:
        """Meeting preference, then app setting, then environment default"""
        for candidate in (
            (meeting.preferences or {}).get(preference_key),
            self.repo.get_setting(self.db, setting_key),
        ):
            try:
                if candidate is not None and candidate != "":
                    return int(candidate)
            except (TypeError, ValueError):
                logger.warning(f"⚠️ Ignoring non-numeric {preference_key}/{setting_key}: {candidate!r}")
        return default

    def _expires_days(self, meeting: Meeting) -> int:
        days = self.setting_number(
            meeting, "bookingRequestExpiresDays", "booking_request_expires_days", BOOKING_REQUEST_EXPIRES_DAYS
        )
        return max(1, days)

    @staticmethod
    def participant_ids(meeting: Meeting) -> list[int]:
        return [uid for uid in (meeting.host_user_id, meeting.support_user_id) if uid]

    @staticmethod
    def room_email(meeting: Meeting) -> Optional[str]:
        if meeting.location_mode == LocationMode.IN_PERSON and meeting.room:
            return meeting.room.resource_email or None
        return None

    @staticmethod
    def client_attendee(meeting: Meeting) -> Optional[dict]:
        for attendee in meeting.external_attendees or []:
            if attendee.get("email"):
                return attendee
        return None

    def _new_booking_request(self, meeting: Meeting) -> BookingRequest:
        """Stage a fresh Open request and expire any other open link (caller commits)"""
        self.repo.expire_open_requests(self.db, meeting.id)
        request = BookingRequest(
            meeting_id=meeting.id,
            status=BookingRequestStatus.OPEN,
            expires_at=self._now() + timedelta(days=self._expires_days(meeting)),
        )
        self.db.add(request)
        self.db.flush()
        return request

    def _commit(self, plog: Optional[ProgressLogger], step: str, failure_message: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ {step} commit failed: {e}")
            if plog:
                plog.error(step, failure_message, error=type(e).__name__)
            raise SchedulingError(failure_message, 500) from e

    # ========================================================================
    # PROPOSE
    # ========================================================================

    async def propose(
        self,
        meeting_id: int,
        slots: Optional[list[Slot]] = None,
        date_range: Optional[DateRange] = None,
    ) -> tuple[Meeting, BookingRequest, list[Slot]]:
        """
        Attach suggested slots to the meeting and open a booking link.

        When no slots are given they are computed from the participants'
        calendars. No calendar or CRM writes happen here.
        """
        meeting = self.get_meeting(meeting_id)
        ensure_transition(meeting.status, MeetingStatus.PROPOSED)

        if slots is None:
            constraints = self.availability.resolve_constraints(
                meeting.duration_minutes, meeting.preferences, meeting.timezone
            )
            if date_range is None:
                today = self._now().astimezone(constraints.zone).date()
                window = self.setting_number(meeting, "searchWindowDays", "search_window_days", DEFAULT_SEARCH_WINDOW_DAYS)
                date_range = default_search_window(today, window)
            result = await self.availability.check_availability(
                self.participant_ids(meeting),
                self.room_email(meeting),
                date_range,
                meeting.duration_minutes,
                constraints=constraints,
            )
            slots = result.slots

        preferences = dict(meeting.preferences or {})
        preferences["proposedSlots"] = [s.to_dict() for s in slots]
        meeting.preferences = preferences
        previous_status = meeting.status
        meeting.status = MeetingStatus.PROPOSED
        request = self._new_booking_request(meeting)
        self.repo.add_audit(
            self.db,
            meeting.id,
            "Proposed",
            {"previous_status": previous_status, "slot_count": len(slots)},
        )
        self._commit(None, "propose", "Could not save the proposal")
        self.db.refresh(request)

        logger.info(f"📨 Meeting {meeting.id} proposed with {len(slots)} slots")
        return meeting, request, slots

    def issue_booking_request(self, meeting_id: int) -> BookingRequest:
        """New public link for a meeting (e.g. so a booked client can cancel or reschedule)"""
        meeting = self.get_meeting(meeting_id)
        if meeting.status in TERMINAL_STATUSES:
            raise PreconditionFailed(f"Meeting is {meeting.status}", 409)
        request = self._new_booking_request(meeting)
        self._commit(None, "booking_request", "Could not create the booking link")
        self.db.refresh(request)
        return request

    # ========================================================================
    # CONFIRM
    # ========================================================================

    def _validate_slot(self, meeting: Meeting, start: datetime, end: datetime) -> None:
        if end <= start:
            raise PreconditionFailed("Slot end must be after its start")
        if end - start != timedelta(minutes=meeting.duration_minutes):
            raise PreconditionFailed(f"Slot must be exactly {meeting.duration_minutes} minutes")
        if start < self._now():
            raise PreconditionFailed("The selected time is in the past")

    async def confirm_by_token(self, public_token: str, start: datetime, end: datetime) -> ConfirmResult:
        request = self.get_booking_request(public_token)
        self.ensure_request_open(request)
        return await self.confirm(request.meeting_id, start, end, booking_request=request)

    async def confirm(
        self,
        meeting_id: int,
        start: datetime,
        end: datetime,
        run_id: Optional[str] = None,
        booking_request: Optional[BookingRequest] = None,
    ) -> ConfirmResult:
        """
        Book the meeting into the chosen slot.

        Raises PreconditionFailed (nothing written) when the meeting cannot be
        booked or the slot is no longer free. Calendar and CRM failures after
        the meeting is Booked come back as warnings/errors on the result.
        """
        meeting = self.get_meeting(meeting_id)
        start, end = ensure_utc(start), ensure_utc(end)
        self._validate_slot(meeting, start, end)
        ensure_transition(meeting.status, MeetingStatus.BOOKED)
        if booking_request is None:
            current = self.repo.get_current_booking_request(self.db, meeting.id)
            if current and current.status == BookingRequestStatus.OPEN:
                booking_request = current

        context = BookingContext.from_meeting(meeting)
        plog = ProgressLogger(self.db, meeting.id, run_id)
        report = SyncReport()
        plog.info(
            "confirm_started",
            "Confirming booking",
            start=to_utc_iso(start),
            end=to_utc_iso(end),
            isTest=context.is_test,
            bookingRequestId=booking_request.id if booking_request else None,
        )

        await self._recheck_slot(meeting, start, end, plog, report)

        previous_status = meeting.status
        meeting.start_datetime = start
        meeting.end_datetime = end
        meeting.status = MeetingStatus.BOOKED
        if booking_request is not None:
            booking_request.status = BookingRequestStatus.COMPLETED
        self.repo.add_audit(
            self.db,
            meeting.id,
            "Booked",
            {
                "previous_status": previous_status,
                "start_datetime": to_utc_iso(start),
                "end_datetime": to_utc_iso(end),
                "booking_request_id": booking_request.id if booking_request else None,
                "run_id": plog.run_id,
                "is_test": context.is_test,
            },
        )
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            plog.error("meeting_update", "Meeting could not be saved as Booked", error=type(e).__name__)
            self._mark_failed(meeting, "meeting_update_failed", plog)
            raise SchedulingError("Could not save the booking", 500) from e
        plog.success("meeting_update", "Meeting booked", status=MeetingStatus.BOOKED)

        await self._create_calendar_event(meeting, context, plog, report)
        await self._sync_crm(meeting, context, plog, report)

        plog.write(
            "confirm_completed",
            "warn" if report.errors else "success",
            "Booking confirmed with warnings" if report.errors else "Booking confirmed",
            warnings=report.warnings,
        )
        return ConfirmResult(
            meeting_id=meeting.id,
            run_id=plog.run_id,
            meeting_status=meeting.status,
            calendar_event_id=meeting.calendar_event_id,
            lawmatics_appointment_id=meeting.lawmatics_appointment_id,
            warnings=report.warnings,
            errors=report.errors,
        )

    async def _recheck_slot(
        self, meeting: Meeting, start: datetime, end: datetime, plog: ProgressLogger, report: SyncReport
    ) -> None:
        """Re-read live calendars for exactly the chosen slot before anything is written"""
        if not CONFIRM_RECHECK_ENABLED:
            plog.info("slot_recheck", "Slot re-check disabled")
            return

        participants = self.participant_ids(meeting)
        room_email = self.room_email(meeting)
        if not participants and not room_email:
            plog.info("slot_recheck", "No staff calendars to re-check")
            return

        constraints = self.availability.resolve_constraints(
            meeting.duration_minutes, meeting.preferences, meeting.timezone
        )
        check = await self.availability.is_slot_free(
            participants, room_email, start, end, constraints.busy_source, constraints.timezone
        )
        if not check.free:
            plog.error(
                "slot_recheck",
                "Selected slot is no longer free",
                conflicts=[b.to_dict() for b in check.conflicts],
            )
            raise PreconditionFailed("The selected time is no longer available. Please choose another time.", 409)

        if participants and check.participants_checked == 0:
            report.warn(
                "Availability could not be re-checked; no participant calendar was readable",
                plog,
                "slot_recheck",
                skipped=check.skipped,
            )
        elif room_email and check.room_checked is False:
            report.warn("Room availability could not be re-checked", plog, "slot_recheck", room=room_email)
        else:
            plog.success("slot_recheck", "Slot still free", participantsChecked=check.participants_checked)

    # ------------------------------------------------------------------
    # Calendar side effect
    # ------------------------------------------------------------------

    def _event_draft(self, meeting: Meeting, context: BookingContext) -> CalendarEventDraft:
        client = self.client_attendee(meeting) or {}
        type_name = meeting.meeting_type.name if meeting.meeting_type else "Meeting"
        client_name = client.get("name") or client.get("email") or "Client"

        attendees: list[EventAttendee] = []
        seen: set[str] = set()

        def _add(email: Optional[str], name: Optional[str] = None, resource: bool = False):
            if email and email.lower() not in seen:
                seen.add(email.lower())
                attendees.append(EventAttendee(email=email, name=name, resource=resource))

        if meeting.support:
            _add(meeting.support.email, meeting.support.full_name)
        for attendee in meeting.external_attendees or []:
            _add(attendee.get("email"), attendee.get("name"))
        room_email = self.room_email(meeting)
        if room_email:
            _add(room_email, meeting.room.name, resource=True)

        if meeting.location_mode == LocationMode.IN_PERSON:
            location = meeting.room.name if meeting.room else "In person"
        else:
            location = "Zoom"

        description = [f"{type_name} with {client_name}", f"Location: {location}"]
        if client.get("phone"):
            description.append(f"Phone: {client['phone']}")

        return CalendarEventDraft(
            summary=context.title(f"{type_name} - {client_name}"),
            start=ensure_utc(meeting.start_datetime),
            end=ensure_utc(meeting.end_datetime),
            timezone=meeting.timezone,
            description="\n".join(description),
            location=location,
            attendees=attendees,
        )

    async def _create_calendar_event(
        self, meeting: Meeting, context: BookingContext, plog: ProgressLogger, report: SyncReport
    ) -> None:
        connection = self.availability.primary_connection(meeting.host_user_id) if meeting.host_user_id else None
        if connection is None:
            report.add(
                PartialSyncFailure("calendar", "Host has no calendar connection; calendar event not created"),
                plog,
                "calendar_event",
            )
            return

        provider = get_provider(connection.provider)
        calendar_id = context.calendar_id
        draft = self._event_draft(meeting, context)
        plog.info(
            "calendar_event",
            f"Creating {connection.provider} calendar event",
            calendarId=calendar_id,
            attendeeCount=len(draft.attendees),
            sendInvites=context.send_invites,
        )

        async def _create(token: str) -> str:
            return await provider.create_event(self.http, token, calendar_id, draft, context.send_invites)

        try:
            event_id = await call_with_token_retry(self.db, connection, self.http, _create, self.now)
        except (TokenRefreshFailed, AuthExpired, ProviderApiError) as e:
            report.add(
                PartialSyncFailure(
                    "calendar",
                    f"Calendar event could not be created: {e.message}",
                    getattr(e, "status", None),
                    getattr(e, "excerpt", None),
                ),
                plog,
                "calendar_event",
            )
            return
        except httpx.HTTPError as e:
            report.add(
                PartialSyncFailure("calendar", f"Calendar provider unreachable ({type(e).__name__})"),
                plog,
                "calendar_event",
            )
            return
        except Exception as e:
            # The meeting is already Booked; anything else here is reported, not raised
            logger.exception(f"❌ Unexpected error creating calendar event for meeting {meeting.id}")
            report.add(
                PartialSyncFailure("calendar", f"Calendar event could not be created ({type(e).__name__})"),
                plog,
                "calendar_event",
            )
            return

        meeting.calendar_event_id = event_id
        self.db.add(
            MeetingCalendarEvent(
                meeting_id=meeting.id,
                user_id=connection.user_id,
                provider=connection.provider,
                calendar_id=calendar_id,
                event_id=event_id,
            )
        )
        self.db.commit()
        plog.success("calendar_event", "Calendar event created", eventId=event_id, provider=connection.provider)

    # ------------------------------------------------------------------
    # CRM side effect
    # ------------------------------------------------------------------

    def _lawmatics_client(self) -> Optional[LawmaticsClient]:
        connection = self.repo.latest_lawmatics_connection(self.db)
        if connection is None:
            return None
        return LawmaticsClient(decrypt_token(connection.access_token), self.http)

    async def _sync_crm(
        self, meeting: Meeting, context: BookingContext, plog: ProgressLogger, report: SyncReport
    ) -> None:
        try:
            client = self._lawmatics_client()
        except TokenDecryptionError:
            report.add(
                PartialSyncFailure("lawmatics", "Lawmatics credentials unreadable; reconnect required"),
                plog,
                "lawmatics_connection",
            )
            return
        if client is None:
            report.add(
                PartialSyncFailure("lawmatics", "Lawmatics not connected; CRM appointment not created"),
                plog,
                "lawmatics_connection",
                level="warn",
            )
            return

        try:
            await self._sync_crm_records(meeting, context, client, plog, report)
        except LawmaticsError as e:
            report.add(PartialSyncFailure("lawmatics", e.message, e.status, e.excerpt), plog, "lawmatics")
        except httpx.HTTPError as e:
            report.add(PartialSyncFailure("lawmatics", f"Lawmatics unreachable ({type(e).__name__})"), plog, "lawmatics")
        except Exception as e:
            logger.exception(f"❌ Unexpected error syncing meeting {meeting.id} to Lawmatics")
            report.add(
                PartialSyncFailure("lawmatics", f"Lawmatics sync failed unexpectedly ({type(e).__name__})"),
                plog,
                "lawmatics",
            )

    async def _sync_crm_records(
        self,
        meeting: Meeting,
        context: BookingContext,
        client: LawmaticsClient,
        plog: ProgressLogger,
        report: SyncReport,
    ) -> None:
        host = meeting.host
        owner_id = host.lawmatics_user_id if host else None
        crm_timezone = meeting.timezone

        if not owner_id:
            try:
                owner = await client.resolve_user(host.email if host else None)
            except LawmaticsError as e:
                report.warn(f"Lawmatics host could not be resolved: {e.message}", plog, "lawmatics_host", status=e.status)
                owner = None
            if owner:
                owner_id = owner.id
                if owner.timezone:
                    crm_timezone = get_zone(owner.timezone, meeting.timezone).key
                plog.info("lawmatics_host", "Resolved Lawmatics host", userId=owner.id, matchedBy=owner.matched_by)

        attendee = self.client_attendee(meeting)
        if not attendee:
            raise LawmaticsError("No client email on the meeting; CRM contact not created")

        contact_id, created = await client.find_or_create_contact(attendee["email"], attendee.get("name"))
        meeting.lawmatics_contact_id = contact_id
        plog.success("lawmatics_contact", "Contact created" if created else "Contact found", contactId=contact_id)

        type_name = meeting.meeting_type.name if meeting.meeting_type else "Meeting"
        client_name = attendee.get("name") or attendee["email"]
        matter_id = None
        try:
            matter_id, created = await client.find_or_create_matter(
                contact_id, attendee["email"], f"{type_name} - {client_name}"
            )
            meeting.lawmatics_matter_id = matter_id
            plog.success("lawmatics_matter", "Matter created" if created else "Matter found", matterId=matter_id)
        except LawmaticsError as e:
            report.warn(f"Lawmatics matter not linked: {e.message}", plog, "lawmatics_matter", status=e.status)

        in_person = meeting.location_mode == LocationMode.IN_PERSON
        draft = AppointmentDraft(
            name=context.title(f"{type_name} - {client_name}"),
            description=f"Booked via scheduling ({meeting.location_mode})",
            start=ensure_utc(meeting.start_datetime),
            end=ensure_utc(meeting.end_datetime),
            timezone=crm_timezone,
            user_id=owner_id,
            contact_id=contact_id,
            matter_id=matter_id,
            event_type_id=meeting.meeting_type.lawmatics_event_type_id if meeting.meeting_type else None,
            location_id=meeting.room.lawmatics_location_id if in_person and meeting.room else None,
            requires_location=in_person,
        )
        result = await client.create_appointment(draft)
        if not result.created_id:
            raise LawmaticsError(result.error or "Lawmatics appointment not created")

        meeting.lawmatics_appointment_id = result.created_id
        self.db.commit()

        if result.persisted:
            plog.success(
                "lawmatics_appointment",
                "Lawmatics appointment created",
                appointmentId=result.created_id,
                timeFormat=result.time_format,
                attempts=result.attempts,
            )
        else:
            report.add(
                PartialSyncFailure(
                    "lawmatics",
                    f"Lawmatics appointment {result.created_id} is incomplete (missing {', '.join(result.missing_fields)})",
                ),
                plog,
                "lawmatics_appointment",
                level="warn",
            )

    def _mark_failed(self, meeting: Meeting, reason: str, plog: ProgressLogger) -> None:
        """Best-effort move to Failed after an unrecoverable error"""
        self.db.refresh(meeting)
        if not can_transition(meeting.status, MeetingStatus.FAILED):
            return
        previous_status = meeting.status
        meeting.status = MeetingStatus.FAILED
        self.repo.add_audit(self.db, meeting.id, "Failed", {"previous_status": previous_status, "reason": reason})
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Could not mark meeting {meeting.id} as Failed: {e}")
            return
        plog.error("meeting_failed", "Meeting marked Failed", reason=reason)

    # ========================================================================
    # MANAGE (cancel / reschedule)
    # ========================================================================

    async def manage(self, public_token: str, action: str) -> ManageResult:
        """
        Client-initiated cancel or reschedule through the public booking link.

        The link must be Open and unexpired, and the change must be outside the
        minimum-notice cut-off. Cleanup failures are returned as warnings.
        """
        try:
            action = BookingAction(action)
        except ValueError:
            raise PreconditionFailed("Action must be 'reschedule' or 'cancel'") from None

        request = self.get_booking_request(public_token)
        meeting = self.get_meeting(request.meeting_id)

        if meeting.status == MeetingStatus.CANCELLED:
            if action == BookingAction.CANCEL:
                return ManageResult(
                    action=action.value,
                    meeting_id=meeting.id,
                    meeting_status=meeting.status,
                    booking_request_id=request.id,
                    booking_status=request.status,
                    expires_at=ensure_utc(request.expires_at),
                )
            raise PreconditionFailed("This appointment has been cancelled", 409)

        self.ensure_request_open(request)
        target = MeetingStatus.RESCHEDULED if action == BookingAction.RESCHEDULE else MeetingStatus.CANCELLED
        ensure_transition(meeting.status, target)
        self._check_change_cutoff(meeting)

        plog = ProgressLogger(self.db, meeting.id)
        plog.info(f"manage_{action.value}", f"Client requested {action.value}", bookingRequestId=request.id)
        warnings: list[str] = []
        await self._cleanup_external(meeting, plog, warnings)

        if action == BookingAction.RESCHEDULE:
            return self._apply_reschedule(meeting, request, plog, warnings, notify_creator=True)
        return self._apply_cancel(meeting, request, plog, warnings, notify_creator=True)

    async def cancel_meeting(self, meeting_id: int) -> ManageResult:
        """Staff cancel; no cut-off applies"""
        meeting = self.get_meeting(meeting_id)
        if meeting.status == MeetingStatus.CANCELLED:
            return ManageResult(action=BookingAction.CANCEL.value, meeting_id=meeting.id, meeting_status=meeting.status)
        ensure_transition(meeting.status, MeetingStatus.CANCELLED)

        plog = ProgressLogger(self.db, meeting.id)
        plog.info("staff_cancel", "Staff cancelled meeting")
        warnings: list[str] = []
        await self._cleanup_external(meeting, plog, warnings)
        return self._apply_cancel(meeting, None, plog, warnings, notify_creator=False)

    async def reschedule_meeting(self, meeting_id: int) -> ManageResult:
        """Staff reschedule: clears the booked slot and issues a fresh booking link"""
        meeting = self.get_meeting(meeting_id)
        ensure_transition(meeting.status, MeetingStatus.RESCHEDULED)

        plog = ProgressLogger(self.db, meeting.id)
        plog.info("staff_reschedule", "Staff reopened meeting for rescheduling")
        warnings: list[str] = []
        await self._cleanup_external(meeting, plog, warnings)
        return self._apply_reschedule(meeting, None, plog, warnings, notify_creator=False)

    def _check_change_cutoff(self, meeting: Meeting) -> None:
        start = ensure_utc(meeting.start_datetime)
        if start is None:
            return
        hours = self.setting_number(meeting, "minNoticeHours", "min_notice_hours", MANAGE_MIN_NOTICE_HOURS)
        if self._now() > start - timedelta(hours=hours):
            raise PreconditionFailed(f"Changes are not allowed within {hours} hours of the appointment")

    def _previous_state(self, meeting: Meeting) -> dict:
        return {
            "previous_status": meeting.status,
            "previous_start_datetime": to_utc_iso(meeting.start_datetime) if meeting.start_datetime else None,
            "previous_end_datetime": to_utc_iso(meeting.end_datetime) if meeting.end_datetime else None,
        }

    def _notify_creator(self, meeting: Meeting, type: str, title: str, verb: str) -> None:
        if not meeting.created_by_user_id:
            return
        client = self.client_attendee(meeting) or {}
        attendees = meeting.external_attendees or []
        client_name = client.get("name") or (attendees[0].get("name") if attendees else None) or client.get("email") or "A client"
        self.repo.add_notification(
            self.db, meeting.created_by_user_id, meeting.id, type, title, f"{client_name} has {verb}."
        )

    def _clear_booking(self, meeting: Meeting) -> None:
        self.db.query(MeetingCalendarEvent).filter(MeetingCalendarEvent.meeting_id == meeting.id).delete(
            synchronize_session=False
        )
        meeting.calendar_event_id = None

    def _apply_reschedule(
        self,
        meeting: Meeting,
        request: Optional[BookingRequest],
        plog: ProgressLogger,
        warnings: list[str],
        notify_creator: bool,
    ) -> ManageResult:
        details = self._previous_state(meeting)
        meeting.status = MeetingStatus.RESCHEDULED
        meeting.start_datetime = None
        meeting.end_datetime = None
        meeting.lawmatics_appointment_id = None
        self._clear_booking(meeting)

        if request is None:
            request = self._new_booking_request(meeting)
        else:
            request.status = BookingRequestStatus.OPEN
            request.expires_at = self._now() + timedelta(days=self._expires_days(meeting))

        self.repo.add_audit(
            self.db,
            meeting.id,
            "Rescheduled",
            {**details, "reopened_at": to_utc_iso(self._now()), "booking_request_id": request.id, "warnings": warnings},
        )
        if notify_creator:
            self._notify_creator(
                meeting, "meeting_rescheduled", "Appointment Rescheduled", "requested to reschedule their appointment"
            )
        self._commit(plog, "meeting_update", "Failed to reopen the appointment")
        self.db.refresh(request)
        plog.success("meeting_update", "Meeting reopened for rescheduling", warnings=warnings)

        return ManageResult(
            action=BookingAction.RESCHEDULE.value,
            meeting_id=meeting.id,
            meeting_status=meeting.status,
            booking_request_id=request.id,
            booking_status=request.status,
            public_token=request.public_token,
            expires_at=ensure_utc(request.expires_at),
            warnings=warnings,
        )

    def _apply_cancel(
        self,
        meeting: Meeting,
        request: Optional[BookingRequest],
        plog: ProgressLogger,
        warnings: list[str],
        notify_creator: bool,
    ) -> ManageResult:
        details = self._previous_state(meeting)
        now = self._now()
        meeting.status = MeetingStatus.CANCELLED
        self._clear_booking(meeting)
        if request is not None:
            request.status = BookingRequestStatus.EXPIRED
            request.expires_at = now
        self.repo.expire_open_requests(self.db, meeting.id)

        self.repo.add_audit(
            self.db,
            meeting.id,
            "Cancelled",
            {
                **details,
                "cancelled_at": to_utc_iso(now),
                "booking_request_id": request.id if request else None,
                "warnings": warnings,
            },
        )
        if notify_creator:
            self._notify_creator(meeting, "meeting_cancelled", "Appointment Cancelled", "cancelled their appointment")
        self._commit(plog, "meeting_update", "Failed to cancel the appointment")
        plog.success("meeting_update", "Meeting cancelled", warnings=warnings)

        return ManageResult(
            action=BookingAction.CANCEL.value,
            meeting_id=meeting.id,
            meeting_status=meeting.status,
            booking_request_id=request.id if request else None,
            booking_status=request.status if request else None,
            expires_at=now if request else None,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # External cleanup
    # ------------------------------------------------------------------

    async def _cleanup_external(self, meeting: Meeting, plog: ProgressLogger, warnings: list[str]) -> None:
        if meeting.lawmatics_appointment_id:
            await self._cancel_crm_appointment(meeting.lawmatics_appointment_id, plog, warnings)
        await self._delete_calendar_events(meeting, plog, warnings)

    async def _cancel_crm_appointment(self, appointment_id: str, plog: ProgressLogger, warnings: list[str]) -> None:
        try:
            client = self._lawmatics_client()
        except TokenDecryptionError:
            client = None
        if client is None:
            message = "Lawmatics not connected; appointment was not updated."
            warnings.append(message)
            plog.warn("lawmatics_cancel", message, appointmentId=appointment_id)
            return

        try:
            await client.cancel_event(appointment_id)
        except LawmaticsError as e:
            warnings.append(e.message)
            plog.warn("lawmatics_cancel", e.message, status=e.status, responseExcerpt=e.excerpt)
            return
        except httpx.HTTPError as e:
            message = f"Lawmatics update failed for appointment {appointment_id}."
            warnings.append(message)
            plog.warn("lawmatics_cancel", message, error=type(e).__name__)
            return
        except Exception as e:
            logger.exception(f"❌ Unexpected error cancelling Lawmatics appointment {appointment_id}")
            message = f"Lawmatics update failed for appointment {appointment_id}."
            warnings.append(message)
            plog.warn("lawmatics_cancel", message, error=type(e).__name__)
            return
        plog.success("lawmatics_cancel", "Lawmatics appointment marked cancelled", appointmentId=appointment_id)

    async def _delete_calendar_events(self, meeting: Meeting, plog: ProgressLogger, warnings: list[str]) -> None:
        events = self.repo.get_meeting_calendar_events(self.db, meeting.id)
        for record in events:
            connection = (
                self.repo.get_connection(self.db, record.user_id, record.provider) if record.user_id else None
            )
            if connection is None:
                message = f"Calendar event {record.event_id} could not be removed (calendar not connected)."
                warnings.append(message)
                plog.warn("calendar_cleanup", message)
                continue

            provider = get_provider(record.provider)

            async def _delete(token: str, record=record, provider=provider) -> None:
                await provider.delete_event(self.http, token, record.calendar_id, record.event_id)

            try:
                await call_with_token_retry(self.db, connection, self.http, _delete, self.now)
            except (TokenRefreshFailed, AuthExpired, ProviderApiError, httpx.HTTPError) as e:
                message = f"Could not remove calendar event {record.event_id}."
                warnings.append(message)
                plog.warn("calendar_cleanup", message, error=getattr(e, "message", type(e).__name__))
                continue
            except Exception as e:
                logger.exception(f"❌ Unexpected error removing calendar event {record.event_id}")
                message = f"Could not remove calendar event {record.event_id}."
                warnings.append(message)
                plog.warn("calendar_cleanup", message, error=type(e).__name__)
                continue
            plog.success("calendar_cleanup", "Calendar event removed", eventId=record.event_id)

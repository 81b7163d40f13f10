"""Scheduling router - staff endpoints for availability, booking lifecycle and calendar connections"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import require_staff_api_key
from ...database import get_db
from ...http_client import get_http_client
from ...models_calendar import CalendarProvider
from .availability_service import AvailabilityService
from .errors import PreconditionFailed
from .lifecycle_service import BookingLifecycleService
from .progress_log import list_entries
from .schemas import (
    BookingRequestResponse,
    CalendarConnectionResponse,
    CheckAvailabilityRequest,
    CheckAvailabilityResponse,
    ConfirmRequest,
    ConfirmResponse,
    DaySlotsRequest,
    DaySlotsResponse,
    ManageResponse,
    ProgressLogEntryResponse,
    ProposeRequest,
    ProposeResponse,
    VerifyConnectionResponse,
)
from .time_calculator import DateRange, Slot, format_slot_label

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Scheduling"], dependencies=[Depends(require_staff_api_key)])


def get_availability_service(
    db: Session = Depends(get_db), http: httpx.AsyncClient = Depends(get_http_client)
) -> AvailabilityService:
    """Dependency injection for AvailabilityService"""
    return AvailabilityService(db, http)


def get_lifecycle_service(
    db: Session = Depends(get_db), http: httpx.AsyncClient = Depends(get_http_client)
) -> BookingLifecycleService:
    """Dependency injection for BookingLifecycleService"""
    return BookingLifecycleService(db, http)


def _booking_request_response(request) -> BookingRequestResponse:
    return BookingRequestResponse(
        id=request.id,
        meetingId=request.meeting_id,
        publicToken=request.public_token,
        status=request.status,
        expiresAt=request.expires_at,
    )


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.post("/availability/check", response_model=CheckAvailabilityResponse)
async def check_availability(
    data: CheckAvailabilityRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    """Common free slots for several staff members (and optionally a room)"""
    room_email = data.roomResourceEmail
    if data.roomId is not None:
        room = service.repo.get_room(service.db, data.roomId)
        if not room:
            raise PreconditionFailed("Room not found", 404)
        room_email = room.resource_email

    preferences = data.preferences.model_dump(exclude_none=True) if data.preferences else None
    result = await service.check_availability(
        data.participantIds,
        room_email,
        DateRange(data.startDate, data.endDate),
        data.durationMinutes,
        preferences=preferences,
    )
    return result.to_dict()


@router.post("/availability/day", response_model=DaySlotsResponse)
async def suggest_slots_for_day(
    data: DaySlotsRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    """Slots for one staff member on one day; calendar failures come back in `error`"""
    return await service.suggest_slots_for_day(
        data.internalUserId,
        data.date,
        data.durationMinutes,
        data.businessHoursStart,
        data.businessHoursEnd,
        data.timezone,
        calendar_ids=data.calendarIds,
        debug=data.debug,
    )


# ============================================================================
# BOOKING LIFECYCLE
# ============================================================================


@router.post("/meetings/{meeting_id}/propose", response_model=ProposeResponse)
async def propose_meeting(
    meeting_id: int,
    data: ProposeRequest,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    slots = None
    if data.slots is not None:
        meeting = service.get_meeting(meeting_id)
        zone = service.availability.resolve_constraints(
            meeting.duration_minutes, meeting.preferences, meeting.timezone
        ).zone
        slots = [
            Slot(s.start, s.end, s.label or format_slot_label(s.start, s.end, zone))
            for s in data.slots
        ]
    date_range = DateRange(data.startDate, data.endDate) if data.startDate else None

    meeting, request, slots = await service.propose(meeting_id, slots=slots, date_range=date_range)
    return ProposeResponse(
        meetingId=meeting.id,
        meetingStatus=meeting.status,
        slots=[s.to_dict() for s in slots],
        bookingRequest=_booking_request_response(request),
    )


@router.post("/meetings/{meeting_id}/confirm", response_model=ConfirmResponse)
async def confirm_meeting(
    meeting_id: int,
    data: ConfirmRequest,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    """Book a slot; calendar/CRM problems are reported in warnings and errors, not as failures"""
    result = await service.confirm(meeting_id, data.startDatetime, data.endDatetime, run_id=data.runId)
    return result.to_dict()


@router.post("/meetings/{meeting_id}/cancel", response_model=ManageResponse)
async def cancel_meeting(
    meeting_id: int,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    result = await service.cancel_meeting(meeting_id)
    return result.to_dict()


@router.post("/meetings/{meeting_id}/reschedule", response_model=ManageResponse)
async def reschedule_meeting(
    meeting_id: int,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    result = await service.reschedule_meeting(meeting_id)
    return result.to_dict(include_token=True)


@router.post("/meetings/{meeting_id}/booking-request", response_model=BookingRequestResponse)
async def issue_booking_request(
    meeting_id: int,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    """New public link (e.g. so a booked client can cancel or reschedule)"""
    return _booking_request_response(service.issue_booking_request(meeting_id))


@router.get("/meetings/{meeting_id}/progress-logs", response_model=list[ProgressLogEntryResponse])
async def get_progress_logs(
    meeting_id: int,
    run_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return [
        ProgressLogEntryResponse(
            id=e.id,
            meetingId=e.meeting_id,
            runId=e.run_id,
            step=e.step,
            level=e.level,
            message=e.message,
            details=e.details_json or {},
            createdAt=e.created_at,
        )
        for e in list_entries(db, meeting_id, run_id)
    ]


# ============================================================================
# CALENDAR CONNECTIONS
# ============================================================================


def _get_connection(service: AvailabilityService, user_id: int, provider: str):
    if provider not in (CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT):
        raise PreconditionFailed(f"Unknown calendar provider: {provider}")
    connection = service.repo.get_connection(service.db, user_id, provider)
    if not connection:
        raise PreconditionFailed("Calendar connection not found", 404)
    return connection


@router.get("/calendar-connections/{user_id}", response_model=list[CalendarConnectionResponse])
async def list_calendar_connections(
    user_id: int,
    service: AvailabilityService = Depends(get_availability_service),
):
    """Connection status only; tokens never leave the server"""
    return [
        CalendarConnectionResponse(
            id=c.id,
            provider=c.provider,
            accountEmail=c.provider_account_email,
            selectedCalendarIds=c.selected_calendar_ids or [],
            tokenExpiresAt=c.token_expires_at,
            hasRefreshToken=bool(c.refresh_token),
            lastVerifiedAt=c.last_verified_at,
            lastVerifyStatus=c.last_verify_status,
            lastVerifyError=c.last_verify_error,
            lastVerifyCount=c.last_verify_count,
        )
        for c in service.repo.get_connections_for_user(service.db, user_id)
    ]


@router.post("/calendar-connections/{user_id}/{provider}/verify", response_model=VerifyConnectionResponse)
async def verify_calendar_connection(
    user_id: int,
    provider: str,
    service: AvailabilityService = Depends(get_availability_service),
):
    connection = _get_connection(service, user_id, provider)
    return await service.verify_connection(connection)


@router.delete("/calendar-connections/{user_id}/{provider}")
async def disconnect_calendar(
    user_id: int,
    provider: str,
    service: AvailabilityService = Depends(get_availability_service),
):
    connection = _get_connection(service, user_id, provider)
    service.repo.delete_connection(service.db, connection)
    logger.info(f"🔌 Disconnected {provider} calendar for user {user_id}")
    return {"success": True}

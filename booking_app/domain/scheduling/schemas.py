"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .time_calculator import parse_hhmm


def _validate_hhmm(v):
    if v is not None:
        parse_hhmm(v)
    return v


# ============================================================================
# AVAILABILITY
# ============================================================================


class SchedulingPreferences(BaseModel):
    """Constraint overrides; unset fields fall back to app settings and defaults"""

    businessHoursStart: Optional[str] = None
    businessHoursEnd: Optional[str] = None
    lunchStart: Optional[str] = None
    lunchEnd: Optional[str] = None
    minimumNoticeMinutes: Optional[int] = Field(None, ge=0)
    timezone: Optional[str] = None
    weekendsAllowed: Optional[bool] = None
    busySource: Optional[str] = None
    maxSlots: Optional[int] = Field(None, gt=0)

    @field_validator("businessHoursStart", "businessHoursEnd", "lunchStart", "lunchEnd")
    @classmethod
    def validate_times(cls, v):
        return _validate_hhmm(v)

    @field_validator("busySource")
    @classmethod
    def validate_busy_source(cls, v):
        if v is not None and v not in ("freebusy", "events"):
            raise ValueError("busySource must be 'freebusy' or 'events'")
        return v


class CheckAvailabilityRequest(BaseModel):
    participantIds: list[int] = Field(default_factory=list)
    roomId: Optional[int] = None
    roomResourceEmail: Optional[str] = None
    startDate: date
    endDate: date
    durationMinutes: int = Field(60, gt=0, le=24 * 60)
    preferences: Optional[SchedulingPreferences] = None

    @model_validator(mode="after")
    def validate_range(self):
        if self.endDate < self.startDate:
            raise ValueError("endDate must not be before startDate")
        if (self.endDate - self.startDate).days > 62:
            raise ValueError("Date range is limited to 62 days")
        return self


class SlotSchema(BaseModel):
    start: datetime
    end: datetime
    label: Optional[str] = None


class BusyIntervalSchema(BaseModel):
    start: datetime
    end: datetime


class CheckAvailabilityResponse(BaseModel):
    slots: list[SlotSchema]
    busyIntervals: list[BusyIntervalSchema]
    participantsChecked: int
    skippedParticipants: list[dict[str, Any]] = Field(default_factory=list)
    roomChecked: Optional[bool] = None


class DaySlotsRequest(BaseModel):
    internalUserId: int
    date: date
    durationMinutes: int = Field(60, gt=0, le=24 * 60)
    businessHoursStart: str = "09:00"
    businessHoursEnd: str = "17:00"
    timezone: str = "America/New_York"
    calendarIds: Optional[list[str]] = None
    debug: bool = False

    @field_validator("businessHoursStart", "businessHoursEnd")
    @classmethod
    def validate_times(cls, v):
        return _validate_hhmm(v)


class DaySlotsResponse(BaseModel):
    date: str
    slots: list[SlotSchema]
    error: Optional[str] = None
    calendarsChecked: list[str] = Field(default_factory=list)
    busySource: Optional[str] = None
    debug: Optional[dict[str, Any]] = None


# ============================================================================
# LIFECYCLE
# ============================================================================


class ProposeRequest(BaseModel):
    """Either explicit slots, or a date range to compute them from (defaults to the search window)"""

    slots: Optional[list[SlotSchema]] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None

    @model_validator(mode="after")
    def validate_range(self):
        if (self.startDate is None) != (self.endDate is None):
            raise ValueError("startDate and endDate must be provided together")
        if self.startDate and self.endDate < self.startDate:
            raise ValueError("endDate must not be before startDate")
        return self


class BookingRequestResponse(BaseModel):
    id: int
    meetingId: int
    publicToken: str
    status: str
    expiresAt: Optional[datetime] = None


class ProposeResponse(BaseModel):
    success: bool = True
    meetingId: int
    meetingStatus: str
    slots: list[SlotSchema]
    bookingRequest: BookingRequestResponse


class ConfirmRequest(BaseModel):
    startDatetime: datetime
    endDatetime: datetime
    runId: Optional[str] = None

    @field_validator("startDatetime", "endDatetime")
    @classmethod
    def require_offset(cls, v: datetime):
        if v.tzinfo is None:
            raise ValueError("Datetime must include a UTC offset")
        return v


class SyncErrorSchema(BaseModel):
    system: str
    message: str
    status: Optional[int] = None
    responseExcerpt: Optional[str] = None


class ConfirmResponse(BaseModel):
    success: bool
    hasErrors: bool
    warnings: list[str] = Field(default_factory=list)
    errors: list[SyncErrorSchema] = Field(default_factory=list)
    meetingId: int
    meetingStatus: str
    runId: str
    calendarEventId: Optional[str] = None
    lawmaticsAppointmentId: Optional[str] = None


class ManageRequest(BaseModel):
    action: str

    @field_validator("action")
    @classmethod
    def normalize_action(cls, v: str):
        return (v or "").strip().lower()


class ManageResponse(BaseModel):
    success: bool
    action: str
    meetingId: int
    meetingStatus: str
    bookingRequestId: Optional[int] = None
    bookingStatus: Optional[str] = None
    expiresAt: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    publicToken: Optional[str] = None


class ProgressLogEntryResponse(BaseModel):
    id: int
    meetingId: int
    runId: str
    step: str
    level: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[datetime] = None


# ============================================================================
# CALENDAR CONNECTIONS
# ============================================================================


class CalendarConnectionResponse(BaseModel):
    id: int
    provider: str
    accountEmail: Optional[str] = None
    selectedCalendarIds: list[str] = Field(default_factory=list)
    tokenExpiresAt: Optional[datetime] = None
    hasRefreshToken: bool
    lastVerifiedAt: Optional[datetime] = None
    lastVerifyStatus: Optional[str] = None
    lastVerifyError: Optional[str] = None
    lastVerifyCount: Optional[int] = None


class VerifyConnectionResponse(BaseModel):
    ok: bool
    calendars: list[dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    checkedAt: str


# ============================================================================
# PUBLIC BOOKING
# ============================================================================


class PublicSlotsRequest(BaseModel):
    startDate: Optional[date] = None
    timezone: Optional[str] = None


class PublicConfirmResponse(BaseModel):
    """Client-facing confirmation; sync problems are reduced to a flag"""

    success: bool
    status: str
    hasIssues: bool
    start: datetime
    end: datetime

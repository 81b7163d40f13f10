"""Shared test fixtures and helpers."""

import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from booking_app import models_calendar  # noqa: F401
from booking_app.database import Base
from booking_app.models import (
    AppSetting,
    BookingRequest,
    BookingRequestStatus,
    LocationMode,
    Meeting,
    MeetingStatus,
    MeetingType,
    Room,
    User,
)
from booking_app.models_calendar import CalendarConnection, CalendarProvider, LawmaticsConnection
from booking_app.security_utils import encrypt_token
from booking_app.utils.datetimes import to_utc_iso

# Friday 2026-11-06 10:00 in New York (EST, UTC-5)
NOW = datetime(2026, 11, 6, 15, 0, tzinfo=timezone.utc)

# Monday 2026-11-09, 9:00-10:00 in New York
MONDAY_9AM = datetime(2026, 11, 9, 14, 0, tzinfo=timezone.utc)
MONDAY_10AM = datetime(2026, 11, 9, 15, 0, tzinfo=timezone.utc)

GOOGLE_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GRAPH_API = "https://graph.microsoft.com/v1.0"
LAWMATICS_API = "https://api.lawmatics.com"


# ============================================================================
# DATABASE
# ============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    yield session
    session.close()


# ============================================================================
# FAKE PROVIDER APIS
# ============================================================================

Handler = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], list]


class FakeApi:
    """
    Routes requests by (method, URL prefix) to canned responses and records every call.

    A handler may be a Response, a callable taking the request, or a list of
    either consumed one per call (the last one repeats).
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, handler: Handler) -> "FakeApi":
        self.routes[(method.upper(), url)] = handler
        return self

    def calls(self, method: str, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and str(r.url).startswith(url)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        matches = [
            key for key in self.routes if key[0] == request.method and url.startswith(key[1])
        ]
        if not matches:
            return httpx.Response(404, json={"error": f"no fake route for {request.method} {url}"})

        key = max(matches, key=lambda k: len(k[1]))
        handler = self.routes[key]
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if callable(handler):
            return handler(request)
        return handler


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def http(fake_api):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_api))


def bearer(request: httpx.Request) -> str:
    return request.headers.get("Authorization", "").replace("Bearer ", "", 1)


def google_freebusy(
    busy_by_token: Optional[dict[str, list]] = None,
    busy_by_calendar: Optional[dict[str, list]] = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """freeBusy handler answering every requested calendar; blocks are (start, end) datetimes"""

    def handler(request: httpx.Request) -> httpx.Response:
        items = json.loads(request.content)["items"]
        calendars = {}
        for item in items:
            blocks = (busy_by_calendar or {}).get(item["id"])
            if blocks is None:
                blocks = (busy_by_token or {}).get(bearer(request), [])
            calendars[item["id"]] = {
                "busy": [{"start": to_utc_iso(start), "end": to_utc_iso(end)} for start, end in blocks]
            }
        return httpx.Response(200, json={"kind": "calendar#freeBusy", "calendars": calendars})

    return handler


def token_grant(access_token: str = "fresh-token", expires_in: int = 3600, refresh_token: Optional[str] = None):
    body = {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh_token:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)


# ============================================================================
# FACTORIES
# ============================================================================


def make_user(
    db,
    email: str = "host@firm.example",
    full_name: str = "Harriet Host",
    role: str = "attorney",
    lawmatics_user_id: Optional[str] = None,
) -> User:
    user = User(email=email, full_name=full_name, role=role, lawmatics_user_id=lawmatics_user_id)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_connection(
    db,
    user: User,
    provider: str = CalendarProvider.GOOGLE,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = "refresh-token",
    expires_at: Optional[datetime] = NOW + timedelta(hours=1),
    account_email: Optional[str] = None,
    selected_calendar_ids: Optional[list[str]] = None,
) -> CalendarConnection:
    connection = CalendarConnection(
        user_id=user.id,
        provider=provider,
        access_token=encrypt_token(access_token or f"token-{user.id}"),
        refresh_token=encrypt_token(refresh_token) if refresh_token else None,
        token_expires_at=expires_at,
        provider_account_email=account_email or user.email,
        selected_calendar_ids=selected_calendar_ids or [],
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def make_room(db, name: str = "Conference Room A", resource_email: str = "room-a@resource.example") -> Room:
    room = Room(name=name, resource_email=resource_email, lawmatics_location_id="31")
    db.add(room)
    db.commit()
    db.refresh(room)
    return room


def make_meeting_type(db, name: str = "Initial Consultation", lawmatics_event_type_id: Optional[str] = None):
    meeting_type = MeetingType(name=name, lawmatics_event_type_id=lawmatics_event_type_id)
    db.add(meeting_type)
    db.commit()
    db.refresh(meeting_type)
    return meeting_type


def make_meeting(
    db,
    host: Optional[User] = None,
    support: Optional[User] = None,
    created_by: Optional[User] = None,
    status: str = MeetingStatus.PROPOSED,
    duration_minutes: int = 60,
    location_mode: str = LocationMode.ZOOM,
    room: Optional[Room] = None,
    meeting_type: Optional[MeetingType] = None,
    external_attendees: Optional[list[dict]] = None,
    preferences: Optional[dict] = None,
    timezone_name: str = "America/New_York",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    **fields,
) -> Meeting:
    meeting = Meeting(
        host_user_id=host.id if host else None,
        support_user_id=support.id if support else None,
        created_by_user_id=created_by.id if created_by else None,
        status=status,
        duration_minutes=duration_minutes,
        location_mode=location_mode,
        room_id=room.id if room else None,
        meeting_type_id=meeting_type.id if meeting_type else None,
        external_attendees=external_attendees
        if external_attendees is not None
        else [{"name": "Jane Client", "email": "jane@client.example", "phone": "555-0100"}],
        preferences=preferences or {},
        timezone=timezone_name,
        start_datetime=start,
        end_datetime=end,
        **fields,
    )
    db.add(meeting)
    db.commit()
    db.refresh(meeting)
    return meeting


def make_booking_request(
    db,
    meeting: Meeting,
    status: str = BookingRequestStatus.OPEN,
    expires_at: Optional[datetime] = NOW + timedelta(days=7),
) -> BookingRequest:
    request = BookingRequest(meeting_id=meeting.id, status=status, expires_at=expires_at)
    db.add(request)
    db.commit()
    db.refresh(request)
    return request


def make_lawmatics_connection(db, access_token: str = "lawmatics-token") -> LawmaticsConnection:
    connection = LawmaticsConnection(access_token=encrypt_token(access_token))
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def set_setting(db, key: str, value) -> None:
    db.merge(AppSetting(key=key, value=value))
    db.commit()

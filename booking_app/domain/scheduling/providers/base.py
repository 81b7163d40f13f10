"""
Base Calendar Provider

Defines the interface every calendar provider adapter implements. Adapters are
stateless: the caller passes the shared httpx client and a valid access token.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

import httpx

from ..errors import AuthExpired, ProviderApiError, TokenRefreshFailed, excerpt
from ..time_calculator import BusyInterval


@dataclass
class TokenGrant:
    """Result of a refresh-grant exchange"""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None  # set when the provider rotates it


@dataclass
class EventAttendee:
    email: str
    name: Optional[str] = None
    resource: bool = False  # room or equipment calendar


@dataclass
class CalendarEventDraft:
    summary: str
    start: datetime
    end: datetime
    timezone: str
    description: str = ""
    location: Optional[str] = None
    attendees: list[EventAttendee] = field(default_factory=list)


@dataclass
class CalendarInfo:
    id: str
    name: str
    primary: bool = False

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "primary": self.primary}


class CalendarProviderAdapter(ABC):
    """
    Interface for calendar providers.

    Every call raises AuthExpired on a 401 so the token manager can refresh and
    retry once; any other non-2xx response raises ProviderApiError.
    """

    name: str = ""

    @abstractmethod
    async def refresh_grant(self, http: httpx.AsyncClient, refresh_token: str) -> TokenGrant:
        """Exchange a refresh credential for a new access credential"""

    @abstractmethod
    async def free_busy(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
        account_email: Optional[str] = None,
    ) -> list[BusyInterval]:
        """
        Busy intervals as computed by the provider's free/busy endpoint.

        Raises ProviderApiError when any requested calendar is reported as
        unreadable, since an unreadable calendar is not a free one.
        """

    @abstractmethod
    async def list_event_busy(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
        zone: ZoneInfo,
    ) -> tuple[list[BusyInterval], int]:
        """
        Busy intervals derived from the event listing.

        Cancelled and transparent (free) events are dropped; all-day events cover
        whole local days in `zone`. Returns (intervals, events seen).
        """

    @abstractmethod
    async def list_calendars(self, http: httpx.AsyncClient, access_token: str) -> list[CalendarInfo]:
        pass

    @abstractmethod
    async def create_event(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        calendar_id: str,
        draft: CalendarEventDraft,
        send_invites: bool = True,
    ) -> str:
        """Create an event and return the provider's event id"""

    @abstractmethod
    async def delete_event(
        self, http: httpx.AsyncClient, access_token: str, calendar_id: str, event_id: str
    ) -> None:
        """Delete an event; an event that is already gone is not an error"""


def raise_for_provider_status(response: httpx.Response, context: str) -> None:
    if response.status_code == 401:
        raise AuthExpired(f"{context}: access token rejected")
    if response.status_code >= 400:
        raise ProviderApiError(
            f"{context} failed ({response.status_code})",
            status=response.status_code,
            excerpt=excerpt(response.text),
        )


def read_json(response: httpx.Response, context: str) -> dict:
    """Decode a 2xx provider body; anything but a JSON object is a provider error"""
    try:
        payload = response.json()
    except ValueError as e:
        raise ProviderApiError(
            f"{context} returned an unreadable body",
            status=response.status_code,
            excerpt=excerpt(response.text),
        ) from e
    if not isinstance(payload, dict):
        raise ProviderApiError(
            f"{context} returned an unexpected payload",
            status=response.status_code,
            excerpt=excerpt(response.text),
        )
    return payload


def pick_event_id(payload: dict, context: str) -> str:
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise ProviderApiError(f"{context} returned no event id", excerpt=excerpt(str(payload)))
    return event_id


def parse_token_response(response: httpx.Response, provider: str) -> TokenGrant:
    if response.status_code != 200:
        raise TokenRefreshFailed(
            f"{provider} token refresh rejected ({response.status_code}): {excerpt(response.text, 200)}"
        )
    try:
        tokens = response.json()
        access_token = tokens.get("access_token")
        expires_in = int(tokens.get("expires_in", 3600))
    except (AttributeError, TypeError, ValueError) as e:
        raise TokenRefreshFailed(f"{provider} token refresh returned an unreadable body") from e
    if not access_token:
        raise TokenRefreshFailed(f"{provider} token refresh returned no access token")
    return TokenGrant(
        access_token=access_token,
        expires_in=expires_in,
        refresh_token=tokens.get("refresh_token"),
    )


def all_day_interval(start_day: date, end_day: date, zone: ZoneInfo) -> Optional[BusyInterval]:
    """All-day events end on the (exclusive) following date"""
    start = datetime.combine(start_day, time.min, tzinfo=zone)
    end = datetime.combine(end_day, time.min, tzinfo=zone)
    if end <= start:
        return None
    return BusyInterval(start, end)

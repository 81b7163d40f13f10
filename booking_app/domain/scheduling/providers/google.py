"""
Google Calendar adapter
Free/busy, event listing, calendar listing and event create/delete
"""

import logging
from datetime import date, datetime
from typing import Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from ....config import GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET
from ....utils.datetimes import parse_iso_datetime, to_utc_iso
from ..errors import ProviderApiError, excerpt
from ..time_calculator import BusyInterval
from .base import (
    CalendarEventDraft,
    CalendarInfo,
    CalendarProviderAdapter,
    TokenGrant,
    all_day_interval,
    parse_token_response,
    pick_event_id,
    raise_for_provider_status,
    read_json,
)

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
EVENTS_PAGE_SIZE = 250


def _auth(access_token: str) -> dict:
    return {"Authorization": f"Bearer {access_token}"}


def _calendar_path(calendar_id: str) -> str:
    return quote(calendar_id, safe="@")


class GoogleCalendarAdapter(CalendarProviderAdapter):
    name = "google"

    async def refresh_grant(self, http: httpx.AsyncClient, refresh_token: str) -> TokenGrant:
        response = await http.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return parse_token_response(response, "Google")

    async def free_busy(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
        account_email: Optional[str] = None,
    ) -> list[BusyInterval]:
        response = await http.post(
            f"{GOOGLE_CALENDAR_API}/freeBusy",
            headers=_auth(access_token),
            json={
                "timeMin": to_utc_iso(start),
                "timeMax": to_utc_iso(end),
                "items": [{"id": calendar_id} for calendar_id in calendar_ids],
            },
        )
        raise_for_provider_status(response, "Google freeBusy")
        calendars = read_json(response, "Google freeBusy").get("calendars") or {}
        if not isinstance(calendars, dict):
            raise ProviderApiError("Google freeBusy returned an unexpected calendars payload")

        # Google answers 200 and flags inaccessible calendars (notFound) per calendar
        failed = {}
        for calendar_id, calendar in calendars.items():
            if not isinstance(calendar, dict):
                raise ProviderApiError(f"Google freeBusy returned an unexpected entry for {calendar_id}")
            if calendar.get("errors"):
                failed[calendar_id] = calendar["errors"]
        if failed:
            logger.warning(f"⚠️ Google freeBusy could not read calendars: {failed}")
            raise ProviderApiError(
                f"Google freeBusy could not read calendar(s): {', '.join(failed)}",
                excerpt=excerpt(str(failed)),
            )

        busy: list[BusyInterval] = []
        for calendar in calendars.values():
            for block in calendar.get("busy") or []:
                start_at = parse_iso_datetime(block["start"])
                end_at = parse_iso_datetime(block["end"])
                if end_at > start_at:
                    busy.append(BusyInterval(start_at, end_at))
        return busy

    async def list_event_busy(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
        zone: ZoneInfo,
    ) -> tuple[list[BusyInterval], int]:
        busy: list[BusyInterval] = []
        events_seen = 0

        for calendar_id in calendar_ids:
            page_token = None
            while True:
                params = {
                    "timeMin": to_utc_iso(start),
                    "timeMax": to_utc_iso(end),
                    "singleEvents": "true",
                    "orderBy": "startTime",
                    "maxResults": str(EVENTS_PAGE_SIZE),
                }
                if page_token:
                    params["pageToken"] = page_token

                response = await http.get(
                    f"{GOOGLE_CALENDAR_API}/calendars/{_calendar_path(calendar_id)}/events",
                    headers=_auth(access_token),
                    params=params,
                )
                raise_for_provider_status(response, f"Google events list ({calendar_id})")
                payload = read_json(response, f"Google events list ({calendar_id})")

                for item in payload.get("items") or []:
                    if not isinstance(item, dict):
                        continue
                    events_seen += 1
                    interval = self._event_to_busy(item, zone)
                    if interval:
                        busy.append(interval)

                page_token = payload.get("nextPageToken")
                if not page_token:
                    break

        return busy, events_seen

    @staticmethod
    def _event_to_busy(item: dict, zone: ZoneInfo) -> Optional[BusyInterval]:
        if item.get("status") == "cancelled":
            return None
        if item.get("transparency") == "transparent":
            return None

        start = item.get("start") or {}
        end = item.get("end") or {}
        if start.get("dateTime") and end.get("dateTime"):
            start_at = parse_iso_datetime(start["dateTime"])
            end_at = parse_iso_datetime(end["dateTime"])
            return BusyInterval(start_at, end_at) if end_at > start_at else None
        if start.get("date") and end.get("date"):
            return all_day_interval(date.fromisoformat(start["date"]), date.fromisoformat(end["date"]), zone)
        return None

    async def list_calendars(self, http: httpx.AsyncClient, access_token: str) -> list[CalendarInfo]:
        response = await http.get(f"{GOOGLE_CALENDAR_API}/users/me/calendarList", headers=_auth(access_token))
        raise_for_provider_status(response, "Google calendarList")
        return [
            CalendarInfo(
                id=item["id"],
                name=item.get("summaryOverride") or item.get("summary") or item["id"],
                primary=bool(item.get("primary")),
            )
            for item in read_json(response, "Google calendarList").get("items") or []
            if isinstance(item, dict) and item.get("id")
        ]

    async def create_event(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        calendar_id: str,
        draft: CalendarEventDraft,
        send_invites: bool = True,
    ) -> str:
        event_data = {
            "summary": draft.summary,
            "description": draft.description,
            "start": {"dateTime": to_utc_iso(draft.start), "timeZone": draft.timezone},
            "end": {"dateTime": to_utc_iso(draft.end), "timeZone": draft.timezone},
        }
        if draft.location:
            event_data["location"] = draft.location
        if draft.attendees:
            event_data["attendees"] = [
                {
                    "email": attendee.email,
                    **({"displayName": attendee.name} if attendee.name else {}),
                    **({"resource": True} if attendee.resource else {}),
                }
                for attendee in draft.attendees
            ]

        response = await http.post(
            f"{GOOGLE_CALENDAR_API}/calendars/{_calendar_path(calendar_id)}/events",
            headers=_auth(access_token),
            params={"sendUpdates": "all" if send_invites else "none"},
            json=event_data,
        )
        raise_for_provider_status(response, "Google event create")
        event_id = pick_event_id(read_json(response, "Google event create"), "Google event create")
        logger.info(f"✅ Google Calendar event created: {event_id}")
        return event_id

    async def delete_event(
        self, http: httpx.AsyncClient, access_token: str, calendar_id: str, event_id: str
    ) -> None:
        response = await http.delete(
            f"{GOOGLE_CALENDAR_API}/calendars/{_calendar_path(calendar_id)}/events/{event_id}",
            headers=_auth(access_token),
            params={"sendUpdates": "all"},
        )
        if response.status_code in (404, 410):
            logger.info(f"ℹ️ Google event {event_id} already deleted")
            return
        raise_for_provider_status(response, "Google event delete")
        logger.info(f"✅ Google Calendar event deleted: {event_id}")

"""
Microsoft 365 calendar adapter (Microsoft Graph)
"""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from ....config import MICROSOFT_CLIENT_ID, MICROSOFT_CLIENT_SECRET, MICROSOFT_TENANT
from ....utils.datetimes import parse_iso_datetime
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

GRAPH_API = "https://graph.microsoft.com/v1.0"
MICROSOFT_SCOPES = "offline_access User.Read Calendars.ReadWrite"
SCHEDULE_INTERVAL_MINUTES = 15
EVENTS_PAGE_SIZE = 250


def microsoft_token_url() -> str:
    return f"https://login.microsoftonline.com/{MICROSOFT_TENANT}/oauth2/v2.0/token"


def _graph_time(value: datetime) -> str:
    """Graph dateTime fields are naive; the zone travels separately as 'UTC'"""
    return value.astimezone(ZoneInfo("UTC")).replace(tzinfo=None).isoformat(timespec="seconds")


def _parse_graph_time(value: str) -> datetime:
    # With Prefer: outlook.timezone="UTC" Graph returns naive UTC values
    return parse_iso_datetime(value if value.endswith("Z") else value + "Z")


def _is_default_calendar(calendar_id: Optional[str]) -> bool:
    return not calendar_id or calendar_id == "primary"


class MicrosoftCalendarAdapter(CalendarProviderAdapter):
    name = "microsoft"

    def _headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }

    async def refresh_grant(self, http: httpx.AsyncClient, refresh_token: str) -> TokenGrant:
        response = await http.post(
            microsoft_token_url(),
            data={
                "client_id": MICROSOFT_CLIENT_ID,
                "client_secret": MICROSOFT_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": MICROSOFT_SCOPES,
            },
        )
        return parse_token_response(response, "Microsoft")

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
        getSchedule works on mailbox addresses, so 'primary' resolves to the
        connected account. Every schedule item that is not 'free' counts as busy.
        """
        schedules = []
        for calendar_id in calendar_ids:
            address = account_email if _is_default_calendar(calendar_id) else calendar_id
            if address and address not in schedules:
                schedules.append(address)
        if not schedules:
            raise ProviderApiError("Microsoft getSchedule needs the connected account email")

        response = await http.post(
            f"{GRAPH_API}/me/calendar/getSchedule",
            headers=self._headers(access_token),
            json={
                "schedules": schedules,
                "startTime": {"dateTime": _graph_time(start), "timeZone": "UTC"},
                "endTime": {"dateTime": _graph_time(end), "timeZone": "UTC"},
                "availabilityViewInterval": SCHEDULE_INTERVAL_MINUTES,
            },
        )
        raise_for_provider_status(response, "Microsoft getSchedule")
        results = read_json(response, "Microsoft getSchedule").get("value") or []

        failed = {}
        for schedule in results:
            if not isinstance(schedule, dict):
                raise ProviderApiError("Microsoft getSchedule returned an unexpected schedule entry")
            if schedule.get("error"):
                failed[schedule.get("scheduleId") or "unknown"] = schedule["error"]
        if failed:
            logger.warning(f"⚠️ getSchedule could not read schedules: {failed}")
            raise ProviderApiError(
                f"Microsoft getSchedule could not read schedule(s): {', '.join(failed)}",
                excerpt=excerpt(str(failed)),
            )

        busy: list[BusyInterval] = []
        for schedule in results:
            for item in schedule.get("scheduleItems") or []:
                if item.get("status") == "free":
                    continue
                start_raw = (item.get("start") or {}).get("dateTime")
                end_raw = (item.get("end") or {}).get("dateTime")
                if not start_raw or not end_raw:
                    continue
                start_at = _parse_graph_time(start_raw)
                end_at = _parse_graph_time(end_raw)
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
            if _is_default_calendar(calendar_id):
                url = f"{GRAPH_API}/me/calendarView"
            else:
                url = f"{GRAPH_API}/me/calendars/{quote(calendar_id, safe='')}/calendarView"
            params = {
                "startDateTime": _graph_time(start),
                "endDateTime": _graph_time(end),
                "$top": str(EVENTS_PAGE_SIZE),
                "$orderby": "start/dateTime",
                "$select": "id,start,end,showAs,isCancelled,isAllDay",
            }

            while url:
                response = await http.get(url, headers=self._headers(access_token), params=params)
                raise_for_provider_status(response, f"Microsoft calendarView ({calendar_id})")
                payload = read_json(response, f"Microsoft calendarView ({calendar_id})")

                for item in payload.get("value") or []:
                    if not isinstance(item, dict):
                        continue
                    events_seen += 1
                    interval = self._event_to_busy(item, zone)
                    if interval:
                        busy.append(interval)

                # nextLink already carries the query string
                url = payload.get("@odata.nextLink")
                params = None

        return busy, events_seen

    @staticmethod
    def _event_to_busy(item: dict, zone: ZoneInfo) -> Optional[BusyInterval]:
        if item.get("isCancelled") or item.get("showAs") == "free":
            return None
        start_raw = (item.get("start") or {}).get("dateTime")
        end_raw = (item.get("end") or {}).get("dateTime")
        if not start_raw or not end_raw:
            return None
        if item.get("isAllDay"):
            return all_day_interval(
                _parse_graph_time(start_raw).date(), _parse_graph_time(end_raw).date(), zone
            )
        start_at = _parse_graph_time(start_raw)
        end_at = _parse_graph_time(end_raw)
        return BusyInterval(start_at, end_at) if end_at > start_at else None

    async def list_calendars(self, http: httpx.AsyncClient, access_token: str) -> list[CalendarInfo]:
        response = await http.get(f"{GRAPH_API}/me/calendars", headers=self._headers(access_token))
        raise_for_provider_status(response, "Microsoft calendars")
        return [
            CalendarInfo(
                id=item["id"],
                name=item.get("name") or item["id"],
                primary=bool(item.get("isDefaultCalendar")),
            )
            for item in read_json(response, "Microsoft calendars").get("value") or []
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
        # Graph always mails attendees it is given; without invites only the room is booked
        attendees = [a for a in draft.attendees if send_invites or a.resource]
        event_data = {
            "subject": draft.summary,
            "body": {"contentType": "text", "content": draft.description},
            "start": {"dateTime": _graph_time(draft.start), "timeZone": "UTC"},
            "end": {"dateTime": _graph_time(draft.end), "timeZone": "UTC"},
            "attendees": [
                {
                    "emailAddress": {"address": a.email, **({"name": a.name} if a.name else {})},
                    "type": "resource" if a.resource else "required",
                }
                for a in attendees
            ],
        }
        if draft.location:
            event_data["location"] = {"displayName": draft.location}

        if _is_default_calendar(calendar_id):
            url = f"{GRAPH_API}/me/events"
        else:
            url = f"{GRAPH_API}/me/calendars/{quote(calendar_id, safe='')}/events"

        response = await http.post(url, headers=self._headers(access_token), json=event_data)
        raise_for_provider_status(response, "Microsoft event create")
        event_id = pick_event_id(read_json(response, "Microsoft event create"), "Microsoft event create")
        logger.info(f"✅ Microsoft calendar event created: {event_id}")
        return event_id

    async def delete_event(
        self, http: httpx.AsyncClient, access_token: str, calendar_id: str, event_id: str
    ) -> None:
        response = await http.delete(
            f"{GRAPH_API}/me/events/{quote(event_id, safe='')}", headers=self._headers(access_token)
        )
        if response.status_code in (404, 410):
            logger.info(f"ℹ️ Microsoft event {event_id} already deleted")
            return
        raise_for_provider_status(response, "Microsoft event delete")

"""
Lawmatics API client
Contacts, matters, users and appointment (event) operations used by the booking lifecycle.

Every call returns or raises with a short response excerpt so failures are
diagnosable from the progress log without storing full provider payloads.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx

from ....config import LAWMATICS_API_BASE

logger = logging.getLogger(__name__)

USERS_PAGE_SIZE = 100
MAX_USER_PAGES = 10
EXCERPT_LIMIT = 300


class LawmaticsError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, excerpt: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.excerpt = excerpt


@dataclass
class LawmaticsResponse:
    ok: bool
    status: int
    data: Any
    excerpt: str


@dataclass
class LawmaticsUser:
    id: str
    email: Optional[str]
    timezone: Optional[str]
    matched_by: str  # email or first


@dataclass
class AppointmentDraft:
    name: str
    description: str
    start: datetime
    end: datetime
    timezone: str
    user_id: Optional[str] = None
    contact_id: Optional[str] = None
    matter_id: Optional[str] = None
    event_type_id: Optional[str] = None
    location_id: Optional[str] = None
    requires_location: bool = False


@dataclass
class AppointmentResult:
    created_id: Optional[str]
    persisted: bool
    missing_fields: list[str] = field(default_factory=list)
    time_format: Optional[str] = None
    readback: Optional[dict] = None
    attempts: list[dict] = field(default_factory=list)
    error: Optional[str] = None


def pick_id(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_number(value: Any) -> Any:
    """Lawmatics expects numeric ids; keep non-numeric ids as they are"""
    text = pick_id(value)
    if text is None:
        return None
    return int(text) if text.isdigit() else text


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _created_id(payload: Any) -> Optional[str]:
    """Id from either {"data": {"id": ...}} or {"id": ...}"""
    body = _as_dict(payload)
    return pick_id(_as_dict(body.get("data")).get("id") or body.get("id"))


def _records(payload: Any, *keys: str) -> list[dict]:
    records: Any = []
    if isinstance(payload, list):
        records = payload
    elif isinstance(payload, dict):
        for key in ("data", *keys):
            if isinstance(payload.get(key), list):
                records = payload[key]
                break
    return [record for record in records if isinstance(record, dict)]


def _attrs(record: dict) -> dict:
    attributes = record.get("attributes")
    return attributes if isinstance(attributes, dict) else record


def local_parts(value: datetime, timezone: str) -> dict:
    """Date and time parts in the appointment's timezone"""
    local = value.astimezone(ZoneInfo(timezone))
    return {
        "date": local.strftime("%Y-%m-%d"),
        "hms": local.strftime("%H:%M:%S"),
        "hm": local.strftime("%H:%M"),
        "h12": local.strftime("%I:%M %p").lstrip("0"),
        "iso": local.isoformat(timespec="seconds"),
    }


class LawmaticsClient:
    """Thin async wrapper over the Lawmatics REST API"""

    def __init__(self, access_token: str, http: httpx.AsyncClient, base_url: str = LAWMATICS_API_BASE):
        self.access_token = access_token
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def _request(
        self, method: str, path: str, json: Optional[dict] = None, params: Optional[dict] = None
    ) -> LawmaticsResponse:
        response = await self.http.request(
            method,
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"},
            json=json,
            params=params,
        )
        try:
            data = response.json() if response.content else None
        except ValueError:
            data = None
        return LawmaticsResponse(
            ok=response.is_success,
            status=response.status_code,
            data=data,
            excerpt=(response.text or "")[:EXCERPT_LIMIT],
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def list_users(self) -> list[dict]:
        users: list[dict] = []
        for page in range(1, MAX_USER_PAGES + 1):
            res = await self._request("GET", "/v1/users", params={"page": page, "per_page": USERS_PAGE_SIZE})
            if not res.ok:
                raise LawmaticsError(f"Lawmatics user list failed ({res.status})", res.status, res.excerpt)
            batch = _records(res.data, "users")
            users.extend(batch)
            if len(batch) < USERS_PAGE_SIZE:
                break
        return users

    async def resolve_user(self, email: Optional[str]) -> Optional[LawmaticsUser]:
        """Match a firm user by email, falling back to the first user on the account"""
        users = await self.list_users()
        if not users:
            return None

        target = (email or "").strip().lower()
        for record in users:
            attrs = _attrs(record)
            if target and str(attrs.get("email") or "").strip().lower() == target:
                return self._to_user(record, "email")
        return self._to_user(users[0], "first")

    @staticmethod
    def _to_user(record: dict, matched_by: str) -> LawmaticsUser:
        attrs = _attrs(record)
        return LawmaticsUser(
            id=pick_id(record.get("id")),
            email=attrs.get("email"),
            timezone=attrs.get("time_zone") or attrs.get("timezone") or attrs.get("timeZone"),
            matched_by=matched_by,
        )

    # ------------------------------------------------------------------
    # Contacts and matters
    # ------------------------------------------------------------------

    async def find_or_create_contact(self, email: str, name: Optional[str] = None) -> tuple[str, bool]:
        """Return (contact id, created)"""
        if not email:
            raise LawmaticsError("No attendee email to match a contact")

        res = await self._request("GET", "/v1/contacts", params={"search": email, "per_page": 10})
        if res.ok:
            for record in _records(res.data, "contacts"):
                contact_id = pick_id(record.get("id"))
                if contact_id and str(_attrs(record).get("email") or "").lower() == email.lower():
                    logger.info(f"ℹ️ Found existing Lawmatics contact {contact_id}")
                    return contact_id, False
        else:
            logger.warning(f"⚠️ Lawmatics contact search failed ({res.status}): {res.excerpt}")

        tokens = (name or "").split()
        payload = {
            "first_name": tokens[0] if tokens else "Client",
            "last_name": " ".join(tokens[1:]) or "Booking",
            "email": email,
        }
        res = await self._request("POST", "/v1/contacts", json=payload)
        contact_id = _created_id(res.data) if res.ok else None
        if not contact_id:
            raise LawmaticsError(f"Lawmatics contact create failed ({res.status})", res.status, res.excerpt)
        logger.info(f"✅ Created Lawmatics contact {contact_id}")
        return contact_id, True

    async def find_or_create_matter(
        self, contact_id: str, email: Optional[str] = None, name: Optional[str] = None
    ) -> tuple[str, bool]:
        """Return (matter id, created); an existing matter for the contact is reused"""
        for params in ({"contact_id": contact_id, "per_page": 5}, {"search": email, "per_page": 5} if email else None):
            if not params:
                continue
            res = await self._request("GET", "/v1/matters", params=params)
            if res.ok:
                matter_ids = [pick_id(m.get("id")) for m in _records(res.data)]
                if any(matter_ids):
                    return next(m for m in matter_ids if m), False

        payload = {"name": name or f"Booking - {email or 'Unknown'}", "contact_id": _as_number(contact_id)}
        res = await self._request("POST", "/v1/matters", json=payload)
        matter_id = _created_id(res.data) if res.ok else None
        if not matter_id:
            raise LawmaticsError(f"Lawmatics matter create failed ({res.status})", res.status, res.excerpt)
        logger.info(f"✅ Created Lawmatics matter {matter_id}")
        return matter_id, True

    # ------------------------------------------------------------------
    # Events (appointments)
    # ------------------------------------------------------------------

    async def read_event(self, event_id: str) -> Optional[dict]:
        """Normalize an event readback into flat fields"""
        res = await self._request("GET", f"/v1/events/{event_id}")
        if not res.ok:
            logger.warning(f"⚠️ Lawmatics event readback failed ({res.status}): {res.excerpt}")
            return None

        body = _as_dict(res.data)
        data = _as_dict(body.get("data")) or body
        attrs = _attrs(data)
        rel = _as_dict(data.get("relationships"))

        def rel_id(key: str) -> Optional[str]:
            return pick_id(_as_dict(_as_dict(rel.get(key)).get("data")).get("id"))

        users_rel = [u for u in (_as_dict(rel.get("users")).get("data") or []) if isinstance(u, dict)]
        eventable = _as_dict(_as_dict(rel.get("eventable")).get("data"))
        eventable_type = str(eventable.get("type") or "").lower()
        name = attrs.get("name")

        return {
            "id": pick_id(data.get("id")) or event_id,
            "name": name if isinstance(name, str) else None,
            "user_id": pick_id(attrs.get("user_id")) or rel_id("user") or (pick_id(users_rel[0].get("id")) if users_rel else None),
            "contact_id": pick_id(attrs.get("contact_id"))
            or rel_id("contact")
            or (pick_id(eventable.get("id")) if "contact" in eventable_type else None),
            "starts_at": attrs.get("starts_at"),
            "ends_at": attrs.get("ends_at"),
            "start_time": attrs.get("start_time"),
            "end_time": attrs.get("end_time"),
            "event_type_id": pick_id(attrs.get("event_type_id")) or rel_id("event_type"),
            "location_id": pick_id(attrs.get("location_id")) or rel_id("location"),
        }

    @staticmethod
    def missing_fields(draft: AppointmentDraft, readback: Optional[dict]) -> list[str]:
        if not readback:
            return ["readback"]
        missing = [key for key in ("start_time", "end_time", "starts_at", "ends_at") if not readback.get(key)]
        expected = {
            "user_id": draft.user_id,
            "contact_id": draft.contact_id,
            "event_type_id": draft.event_type_id,
            "location_id": draft.location_id,
        }
        for key, value in expected.items():
            if value and pick_id(readback.get(key)) != pick_id(value):
                missing.append(key)
        if draft.requires_location and not draft.location_id:
            missing.append("location_id")
        return missing

    @staticmethod
    def _event_payload(draft: AppointmentDraft, time_format: str, event_id: Optional[str] = None) -> dict:
        start = local_parts(draft.start, draft.timezone)
        end = local_parts(draft.end, draft.timezone)
        attributes: dict[str, Any] = {
            "name": draft.name,
            "description": draft.description,
            "start_date": start["date"],
            "end_date": end["date"],
            "start_time": start[time_format],
            "end_time": end[time_format],
            "starts_at": start["iso"],
            "ends_at": end["iso"],
            "all_day": False,
        }
        relationships = {}
        for key, rel_type, value in (
            ("user", "users", draft.user_id),
            ("contact", "contacts", draft.contact_id),
            ("matter", "matters", draft.matter_id),
            ("event_type", "event_types", draft.event_type_id),
            ("location", "locations", draft.location_id),
        ):
            if value:
                relationships[key] = {"data": {"type": rel_type, "id": str(value)}}
                attributes[f"{key}_id"] = _as_number(value)
        if draft.contact_id:
            attributes["eventable_type"] = "Contact"
            attributes["eventable_id"] = _as_number(draft.contact_id)

        data: dict[str, Any] = {"type": "events", "attributes": attributes}
        if event_id:
            data["id"] = str(event_id)
        if relationships:
            data["relationships"] = relationships
        return {"data": data}

    async def create_appointment(self, draft: AppointmentDraft) -> AppointmentResult:
        """
        Create the appointment, read it back, and repair missing fields once per time format.

        Time formats are tried in order (HH:MM:SS, HH:MM, 12-hour) since
        installations differ in which one they persist.
        """
        formats = ("hms", "hm", "h12")
        result = AppointmentResult(created_id=None, persisted=False)

        for time_format in formats:
            res = await self._request("POST", "/v1/events", json=self._event_payload(draft, time_format))
            result.attempts.append({"step": f"create_{time_format}", "status": res.status, "ok": res.ok})
            created_id = None
            if res.ok:
                created_id = _created_id(res.data)
            if not created_id:
                result.error = f"Lawmatics create failed ({res.status}): {res.excerpt}"
                continue

            result.created_id = created_id
            result.time_format = time_format
            result.readback = await self.read_event(created_id)
            result.missing_fields = self.missing_fields(draft, result.readback)
            result.persisted = not result.missing_fields
            break

        if not result.created_id or result.persisted:
            if result.persisted:
                result.error = None
            return result

        for time_format in formats:
            payload = self._event_payload(draft, time_format, event_id=result.created_id)
            res = await self._request("PUT", f"/v1/events/{result.created_id}", json=payload)
            result.attempts.append({"step": f"repair_{time_format}", "status": res.status, "ok": res.ok})
            result.readback = await self.read_event(result.created_id)
            result.missing_fields = self.missing_fields(draft, result.readback)
            if not result.missing_fields:
                result.persisted = True
                result.time_format = time_format
                result.error = None
                return result

        result.error = f"Appointment created but missing fields: {', '.join(result.missing_fields)}"
        return result

    async def cancel_event(self, event_id: str) -> None:
        """Mark an appointment cancelled, falling back to a rename when status is rejected"""
        existing = await self.read_event(event_id)
        existing_name = (existing or {}).get("name")
        if existing_name and not existing_name.lower().startswith("cancelled"):
            cancelled_name = f"Cancelled - {existing_name}"
        else:
            cancelled_name = existing_name or "Cancelled appointment"

        res = await self._request("PATCH", f"/v1/events/{event_id}", json={"status": "cancelled", "name": cancelled_name})
        if res.ok:
            return
        if existing_name:
            fallback = await self._request("PATCH", f"/v1/events/{event_id}", json={"name": cancelled_name})
            if fallback.ok:
                return
        raise LawmaticsError(f"Lawmatics update failed for appointment {event_id}", res.status, res.excerpt)

"""
Busy-interval fetcher
Reads busy time for one connection across its calendars and normalizes it to UTC intervals.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy.orm import Session

from ...models_calendar import CalendarConnection
from .errors import AuthExpired, ProviderApiError, TokenRefreshFailed
from .providers import get_provider
from .time_calculator import BusyInterval, BusySource
from .token_service import call_with_token_retry

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"


@dataclass
class BusyFetchResult:
    busy: list[BusyInterval] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None  # token_refresh_failed, auth_expired, provider_error, network_error
    status: Optional[int] = None
    events_count: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def resolve_calendar_ids(connection: CalendarConnection, requested: Optional[list[str]] = None) -> list[str]:
    """Explicit ids win, then the connection's selection, then the primary calendar"""
    for candidate in (requested, connection.selected_calendar_ids):
        ids = [c for c in (candidate or []) if c]
        if ids:
            return ids
    return [DEFAULT_CALENDAR_ID]


async def fetch_busy(
    db: Session,
    connection: CalendarConnection,
    calendar_ids: Optional[list[str]],
    start: datetime,
    end: datetime,
    http: httpx.AsyncClient,
    busy_source: BusySource = BusySource.FREEBUSY,
    zone: Optional[ZoneInfo] = None,
    now: Optional[datetime] = None,
) -> BusyFetchResult:
    """
    Fetch busy intervals for `connection` over [start, end).

    A 401 triggers one token refresh and one retry. Every failure, including a
    calendar the provider reports as unreadable and a body that cannot be
    parsed, is returned in the result instead of raised so callers can skip
    this connection.
    """
    try:
        provider = get_provider(connection.provider)
    except ValueError as e:
        return BusyFetchResult(error=str(e), error_type="provider_error")

    ids = resolve_calendar_ids(connection, calendar_ids)
    zone = zone or ZoneInfo("UTC")
    source = BusySource.parse(busy_source)

    async def _call(access_token: str) -> BusyFetchResult:
        if source == BusySource.EVENTS:
            busy, count = await provider.list_event_busy(http, access_token, ids, start, end, zone)
            return BusyFetchResult(busy=busy, events_count=count)
        busy = await provider.free_busy(
            http, access_token, ids, start, end, account_email=connection.provider_account_email
        )
        return BusyFetchResult(busy=busy)

    try:
        result = await call_with_token_retry(db, connection, http, _call, now)
    except TokenRefreshFailed as e:
        logger.warning(f"⚠️ Skipping connection {connection.id}: {e.message}")
        return BusyFetchResult(error=e.message, error_type="token_refresh_failed")
    except AuthExpired as e:
        logger.warning(f"⚠️ Connection {connection.id} still unauthorized after refresh")
        return BusyFetchResult(error=e.message, error_type="auth_expired", status=401)
    except ProviderApiError as e:
        logger.warning(f"⚠️ {connection.provider} busy fetch failed for connection {connection.id}: {e.message}")
        return BusyFetchResult(error=e.message, error_type="provider_error", status=e.status)
    except httpx.HTTPError as e:
        logger.warning(f"⚠️ {connection.provider} unreachable for connection {connection.id}: {e}")
        return BusyFetchResult(error=f"{connection.provider} request failed: {type(e).__name__}", error_type="network_error")
    except (KeyError, TypeError, ValueError) as e:
        # Busy blocks without start/end or with unparseable timestamps
        logger.warning(f"⚠️ {connection.provider} sent a malformed busy response for connection {connection.id}: {e!r}")
        return BusyFetchResult(error=f"{connection.provider} returned a malformed response", error_type="provider_error")

    logger.info(
        f"📅 Connection {connection.id} ({connection.provider}, {source.value}): "
        f"{len(result.busy)} busy intervals across {len(ids)} calendar(s)"
    )
    return result

"""
Calendar token manager
Keeps each (user, provider) connection's access token usable, refreshing it
through the provider's refresh grant when it is about to expire.

Concurrent refreshes of the same connection are last-writer-wins: both writes
hold a token the provider accepted.
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import TOKEN_REFRESH_MARGIN_MINUTES
from ...models_calendar import CalendarConnection
from ...security_utils import TokenDecryptionError, decrypt_token, encrypt_token
from ...utils.datetimes import ensure_utc, utcnow
from .errors import AuthExpired, TokenRefreshFailed
from .providers import get_provider
from .repository import SchedulingRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


def token_needs_refresh(connection: CalendarConnection, now: Optional[datetime] = None) -> bool:
    """True when the token expires within the safety margin (unknown expiry is trusted until a 401)"""
    expires_at = ensure_utc(connection.token_expires_at)
    if expires_at is None:
        return False
    now = ensure_utc(now) if now else utcnow()
    return expires_at <= now + timedelta(minutes=TOKEN_REFRESH_MARGIN_MINUTES)


async def get_valid_token(
    db: Session,
    connection: CalendarConnection,
    http: httpx.AsyncClient,
    now: Optional[datetime] = None,
) -> str:
    """
    Return a usable access token for the connection.

    Performs at most one refresh; raises TokenRefreshFailed when the refresh
    is rejected or no refresh token is stored.
    """
    if token_needs_refresh(connection, now):
        logger.info(f"🔄 {connection.provider} token for connection {connection.id} expiring, refreshing...")
        return await refresh_access_token(db, connection, http, now)

    try:
        return decrypt_token(connection.access_token)
    except TokenDecryptionError:
        logger.warning(f"⚠️ Access token for connection {connection.id} unreadable, refreshing")
        return await refresh_access_token(db, connection, http, now)


async def refresh_access_token(
    db: Session,
    connection: CalendarConnection,
    http: httpx.AsyncClient,
    now: Optional[datetime] = None,
) -> str:
    """Run the refresh grant and persist the new credentials in a single commit"""
    if not connection.refresh_token:
        raise TokenRefreshFailed(
            f"No refresh token stored for {connection.provider} connection {connection.id}; reconnect required",
            connection.id,
        )

    try:
        refresh_token = decrypt_token(connection.refresh_token)
        provider = get_provider(connection.provider)
    except (TokenDecryptionError, ValueError) as e:
        raise TokenRefreshFailed(str(e), connection.id) from e

    try:
        grant = await provider.refresh_grant(http, refresh_token)
    except httpx.HTTPError as e:
        logger.error(f"❌ Token refresh request failed for connection {connection.id}: {e}")
        raise TokenRefreshFailed(f"{connection.provider} token endpoint unreachable", connection.id) from e
    except TokenRefreshFailed as e:
        logger.error(f"❌ Token refresh rejected for connection {connection.id}: {e.message}")
        e.connection_id = connection.id
        raise

    issued_at = ensure_utc(now) if now else utcnow()
    try:
        connection.access_token = encrypt_token(grant.access_token)
        connection.token_expires_at = issued_at + timedelta(seconds=grant.expires_in)
        if grant.refresh_token:
            connection.refresh_token = encrypt_token(grant.refresh_token)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Could not persist refreshed token for connection {connection.id}: {e}")
        raise TokenRefreshFailed("Refreshed token could not be saved", connection.id) from e

    logger.info(f"✅ {connection.provider} token refreshed for connection {connection.id}")
    return grant.access_token


async def call_with_token_retry(
    db: Session,
    connection: CalendarConnection,
    http: httpx.AsyncClient,
    call: Callable[[str], Awaitable[T]],
    now: Optional[datetime] = None,
) -> T:
    """
    Run `call(access_token)`; on AuthExpired refresh exactly once and retry once.

    A second AuthExpired propagates to the caller.
    """
    token = await get_valid_token(db, connection, http, now)
    try:
        return await call(token)
    except AuthExpired:
        logger.info(f"🔄 {connection.provider} rejected token for connection {connection.id}, retrying after refresh")
        token = await refresh_access_token(db, connection, http, now)
        return await call(token)


def save_connection_tokens(
    db: Session,
    user_id: int,
    provider: str,
    access_token: str,
    refresh_token: Optional[str],
    expires_in: int,
    account_email: Optional[str] = None,
    selected_calendar_ids: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> CalendarConnection:
    """Store the credentials handed over by an OAuth callback (one connection per user and provider)"""
    issued_at = ensure_utc(now) if now else utcnow()
    fields = {
        "access_token": encrypt_token(access_token),
        "token_expires_at": issued_at + timedelta(seconds=expires_in),
        "provider_account_email": account_email,
    }
    if refresh_token:
        fields["refresh_token"] = encrypt_token(refresh_token)
    if selected_calendar_ids is not None:
        fields["selected_calendar_ids"] = selected_calendar_ids
    connection = SchedulingRepository.upsert_connection(db, user_id, provider, **fields)
    logger.info(f"✅ Saved {provider} connection for user {user_id}")
    return connection

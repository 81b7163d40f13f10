"""Outbound HTTP client dependency shared by the calendar and CRM integrations"""

from typing import AsyncIterator

import httpx

from .config import HTTP_TIMEOUT_SECONDS


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    """One AsyncClient per request, closed when the response is sent"""
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
        yield client

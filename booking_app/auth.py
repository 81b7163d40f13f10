import logging
from typing import Optional

from fastapi import Header, HTTPException

from . import config
from .security_utils import constant_time_compare

logger = logging.getLogger(__name__)


async def require_staff_api_key(x_staff_api_key: Optional[str] = Header(None)) -> None:
    """
    Guard for staff endpoints.
    The caller must send X-Staff-Api-Key matching STAFF_API_KEY; when the key is
    not configured staff endpoints are unavailable rather than open.
    """
    expected = config.STAFF_API_KEY
    if not expected:
        logger.error("❌ STAFF_API_KEY not configured, refusing staff request")
        raise HTTPException(status_code=503, detail="Staff API is not configured")

    if not x_staff_api_key or not constant_time_compare(x_staff_api_key, expected):
        logger.warning("⚠️ Rejected staff request with missing or invalid API key")
        raise HTTPException(status_code=401, detail="Invalid staff API key")

"""Public booking router - token-addressed endpoints used by clients (no staff key)"""

import logging

import httpx
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...database import get_db
from ...http_client import get_http_client
from .lifecycle_service import BookingLifecycleService
from .public_service import PublicBookingService
from .schemas import ConfirmRequest, ManageRequest, ManageResponse, PublicConfirmResponse, PublicSlotsRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public/booking", tags=["Public Booking"])


def get_public_service(
    db: Session = Depends(get_db), http: httpx.AsyncClient = Depends(get_http_client)
) -> PublicBookingService:
    """Dependency injection for PublicBookingService"""
    return PublicBookingService(db, http)


def get_lifecycle_service(
    db: Session = Depends(get_db), http: httpx.AsyncClient = Depends(get_http_client)
) -> BookingLifecycleService:
    return BookingLifecycleService(db, http)


@router.get("/{public_token}")
async def get_booking_info(public_token: str, service: PublicBookingService = Depends(get_public_service)):
    """Booking summary and state: needs_scheduling, already_booked, expired, cancelled or contact_office"""
    return service.booking_info(public_token)


@router.post("/{public_token}/slots")
async def get_available_slots(
    public_token: str,
    data: PublicSlotsRequest,
    service: PublicBookingService = Depends(get_public_service),
):
    return await service.available_slots(public_token, data.startDate, data.timezone)


@router.post("/{public_token}/confirm", response_model=PublicConfirmResponse)
async def confirm_booking(
    public_token: str,
    data: ConfirmRequest,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    """
    Client picks a slot.
    Calendar/CRM follow-up problems are reduced to `hasIssues`; staff read the
    details from the progress log.
    """
    result = await service.confirm_by_token(public_token, data.startDatetime, data.endDatetime)
    if result.has_errors:
        logger.warning(f"⚠️ Public booking for meeting {result.meeting_id} confirmed with issues (run {result.run_id})")
    return PublicConfirmResponse(
        success=True,
        status="confirmed",
        hasIssues=result.has_errors,
        start=data.startDatetime,
        end=data.endDatetime,
    )


@router.post("/{public_token}/manage", response_model=ManageResponse)
async def manage_booking(
    public_token: str,
    data: ManageRequest,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    """Client cancel or reschedule; cleanup problems come back as warnings"""
    result = await service.manage(public_token, data.action)
    return result.to_dict(include_token=data.action == "reschedule")

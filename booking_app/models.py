import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class MeetingStatus:
    DRAFT = "Draft"
    PROPOSED = "Proposed"
    BOOKED = "Booked"
    RESCHEDULED = "Rescheduled"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class BookingRequestStatus:
    OPEN = "Open"
    COMPLETED = "Completed"
    EXPIRED = "Expired"


class LocationMode:
    ZOOM = "Zoom"
    IN_PERSON = "InPerson"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(50), default="staff")  # admin, attorney, support, staff
    lawmatics_user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    calendar_connections = relationship(
        "CalendarConnection", back_populates="user", cascade="all, delete-orphan"
    )


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    resource_email = Column(String(255), nullable=True)  # Resource calendar address
    lawmatics_location_id = Column(String(64), nullable=True)


class MeetingType(Base):
    __tablename__ = "meeting_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    lawmatics_event_type_id = Column(String(64), nullable=True)


class Meeting(Base):
    __tablename__ = "meetings"

    id = Column(Integer, primary_key=True, index=True)
    meeting_type_id = Column(Integer, ForeignKey("meeting_types.id"), nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    location_mode = Column(String(20), nullable=False, default=LocationMode.ZOOM)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True)

    # Staff references are nulled (not deleted) when a user goes away
    created_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    host_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    support_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    external_attendees = Column(JSON, default=list)  # [{"name": ..., "email": ..., "phone": ...}]
    timezone = Column(String(64), nullable=False, default="America/New_York")
    preferences = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default=MeetingStatus.DRAFT, index=True)

    start_datetime = Column(DateTime(timezone=True), nullable=True)
    end_datetime = Column(DateTime(timezone=True), nullable=True)

    # Provider-side artifacts
    calendar_event_id = Column(String(500), nullable=True)
    lawmatics_contact_id = Column(String(64), nullable=True)
    lawmatics_matter_id = Column(String(64), nullable=True)
    lawmatics_appointment_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    meeting_type = relationship("MeetingType")
    room = relationship("Room")
    host = relationship("User", foreign_keys=[host_user_id])
    support = relationship("User", foreign_keys=[support_user_id])
    booking_requests = relationship(
        "BookingRequest", back_populates="meeting", order_by="BookingRequest.created_at"
    )
    calendar_events = relationship("MeetingCalendarEvent", back_populates="meeting")


class BookingRequest(Base):
    __tablename__ = "booking_requests"

    id = Column(Integer, primary_key=True, index=True)
    meeting_id = Column(Integer, ForeignKey("meetings.id"), nullable=False, index=True)
    public_token = Column(String(64), unique=True, index=True, nullable=False, default=generate_public_id)
    status = Column(String(20), nullable=False, default=BookingRequestStatus.OPEN)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    meeting = relationship("Meeting", back_populates="booking_requests")


class BookingProgressLog(Base):
    """Append-only step log; one run_id per lifecycle attempt"""

    __tablename__ = "booking_progress_logs"

    id = Column(Integer, primary_key=True, index=True)
    meeting_id = Column(Integer, ForeignKey("meetings.id"), nullable=False, index=True)
    run_id = Column(String(64), nullable=False, index=True)
    step = Column(String(100), nullable=False)
    level = Column(String(10), nullable=False)  # info, success, warn, error
    message = Column(Text, nullable=False)
    details_json = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    meeting_id = Column(Integer, ForeignKey("meetings.id"), nullable=True, index=True)
    action_type = Column(String(50), nullable=False)  # Booked, Cancelled, Rescheduled, Failed
    details_json = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    meeting_id = Column(Integer, ForeignKey("meetings.id"), nullable=True)
    type = Column(String(50), nullable=False)  # meeting_cancelled, meeting_rescheduled
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

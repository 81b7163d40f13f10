"""
Calendar Integration Models
Stores per-user OAuth connections (Google, Microsoft) and the provider events created for meetings
"""
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class CalendarProvider:
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class CalendarConnection(Base):
    __tablename__ = "calendar_connections"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_calendar_connection_user_provider"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False, default=CalendarProvider.GOOGLE)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    provider_account_email = Column(String(255), nullable=True)
    selected_calendar_ids = Column(JSON, default=list)

    # Last manual verification
    last_verified_at = Column(DateTime(timezone=True), nullable=True)
    last_verify_status = Column(String(10), nullable=True)  # ok, error
    last_verify_error = Column(Text, nullable=True)
    last_verify_count = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="calendar_connections")


class MeetingCalendarEvent(Base):
    """One provider-side event created for a meeting"""

    __tablename__ = "meeting_calendar_events"

    id = Column(Integer, primary_key=True, index=True)
    meeting_id = Column(Integer, ForeignKey("meetings.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    provider = Column(String(20), nullable=False, default=CalendarProvider.GOOGLE)
    calendar_id = Column(String(500), nullable=False)
    event_id = Column(String(500), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    meeting = relationship("Meeting", back_populates="calendar_events")


class LawmaticsConnection(Base):
    """Firm-wide CRM connection; the most recently connected row wins"""

    __tablename__ = "lawmatics_connections"

    id = Column(Integer, primary_key=True, index=True)
    access_token = Column(Text, nullable=False)  # encrypted
    connected_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    connected_at = Column(DateTime(timezone=True), server_default=func.now())

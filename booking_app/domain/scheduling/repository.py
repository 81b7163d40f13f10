"""Scheduling repository - Database operations for meetings, booking requests and connections"""

from typing import Any, Optional

from sqlalchemy.orm import Session, joinedload

from ...models import (
    AppSetting,
    AuditLog,
    BookingRequest,
    BookingRequestStatus,
    Meeting,
    Notification,
    Room,
    User,
)
from ...models_calendar import CalendarConnection, LawmaticsConnection, MeetingCalendarEvent


class SchedulingRepository:
    """Repository for scheduling database operations"""

    # ------------------------------------------------------------------
    # Meetings and booking requests
    # ------------------------------------------------------------------

    @staticmethod
    def get_meeting(db: Session, meeting_id: int) -> Optional[Meeting]:
        return (
            db.query(Meeting)
            .options(joinedload(Meeting.room), joinedload(Meeting.meeting_type))
            .filter(Meeting.id == meeting_id)
            .first()
        )

    @staticmethod
    def get_booking_request_by_token(db: Session, public_token: str) -> Optional[BookingRequest]:
        return db.query(BookingRequest).filter(BookingRequest.public_token == public_token).first()

    @staticmethod
    def get_current_booking_request(db: Session, meeting_id: int) -> Optional[BookingRequest]:
        """Most recent booking request for a meeting"""
        return (
            db.query(BookingRequest)
            .filter(BookingRequest.meeting_id == meeting_id)
            .order_by(BookingRequest.created_at.desc(), BookingRequest.id.desc())
            .first()
        )

    @staticmethod
    def expire_open_requests(db: Session, meeting_id: int, keep_id: Optional[int] = None) -> int:
        """Expire every Open request for a meeting except `keep_id` (caller commits)"""
        query = db.query(BookingRequest).filter(
            BookingRequest.meeting_id == meeting_id,
            BookingRequest.status == BookingRequestStatus.OPEN,
        )
        if keep_id is not None:
            query = query.filter(BookingRequest.id != keep_id)
        return query.update({BookingRequest.status: BookingRequestStatus.EXPIRED}, synchronize_session=False)

    @staticmethod
    def get_room(db: Session, room_id: int) -> Optional[Room]:
        return db.query(Room).filter(Room.id == room_id).first()

    @staticmethod
    def get_user(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def delete_user(db: Session, user: User) -> None:
        """Delete a staff user; meetings keep their history with the user references nulled"""
        for column in (Meeting.created_by_user_id, Meeting.host_user_id, Meeting.support_user_id):
            db.query(Meeting).filter(column == user.id).update({column: None}, synchronize_session=False)
        db.query(MeetingCalendarEvent).filter(MeetingCalendarEvent.user_id == user.id).update(
            {MeetingCalendarEvent.user_id: None}, synchronize_session=False
        )
        db.query(Notification).filter(Notification.user_id == user.id).delete(synchronize_session=False)
        db.delete(user)
        db.commit()

    # ------------------------------------------------------------------
    # Calendar connections
    # ------------------------------------------------------------------

    @staticmethod
    def get_connections_for_user(db: Session, user_id: int) -> list[CalendarConnection]:
        return (
            db.query(CalendarConnection)
            .filter(CalendarConnection.user_id == user_id)
            .order_by(CalendarConnection.id)
            .all()
        )

    @staticmethod
    def get_connection(db: Session, user_id: int, provider: str) -> Optional[CalendarConnection]:
        return (
            db.query(CalendarConnection)
            .filter(CalendarConnection.user_id == user_id, CalendarConnection.provider == provider)
            .first()
        )

    @staticmethod
    def get_staff_connections(db: Session) -> list[CalendarConnection]:
        """All connections, oldest first; used when any staff calendar can see a room"""
        return db.query(CalendarConnection).order_by(CalendarConnection.id).all()

    @staticmethod
    def upsert_connection(db: Session, user_id: int, provider: str, **fields: Any) -> CalendarConnection:
        """Create or replace the single connection for (user, provider)"""
        connection = SchedulingRepository.get_connection(db, user_id, provider)
        if connection is None:
            connection = CalendarConnection(user_id=user_id, provider=provider)
            db.add(connection)
        for key, value in fields.items():
            setattr(connection, key, value)
        db.commit()
        db.refresh(connection)
        return connection

    @staticmethod
    def delete_connection(db: Session, connection: CalendarConnection) -> None:
        db.delete(connection)
        db.commit()

    @staticmethod
    def get_meeting_calendar_events(db: Session, meeting_id: int) -> list[MeetingCalendarEvent]:
        return (
            db.query(MeetingCalendarEvent)
            .filter(MeetingCalendarEvent.meeting_id == meeting_id)
            .order_by(MeetingCalendarEvent.id)
            .all()
        )

    # ------------------------------------------------------------------
    # Settings, CRM connection, audit and notifications
    # ------------------------------------------------------------------

    @staticmethod
    def get_setting(db: Session, key: str, default: Any = None) -> Any:
        setting = db.query(AppSetting).filter(AppSetting.key == key).first()
        if setting is None or setting.value is None:
            return default
        return setting.value

    @staticmethod
    def latest_lawmatics_connection(db: Session) -> Optional[LawmaticsConnection]:
        return (
            db.query(LawmaticsConnection)
            .order_by(LawmaticsConnection.connected_at.desc(), LawmaticsConnection.id.desc())
            .first()
        )

    @staticmethod
    def add_audit(db: Session, meeting_id: Optional[int], action_type: str, details: dict) -> AuditLog:
        """Stage an audit row (caller commits)"""
        entry = AuditLog(meeting_id=meeting_id, action_type=action_type, details_json=details)
        db.add(entry)
        return entry

    @staticmethod
    def add_notification(
        db: Session, user_id: int, meeting_id: Optional[int], type: str, title: str, message: str
    ) -> Notification:
        """Stage a notification row (caller commits)"""
        notification = Notification(
            user_id=user_id, meeting_id=meeting_id, type=type, title=title, message=message
        )
        db.add(notification)
        return notification

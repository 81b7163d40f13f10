"""
Booking progress log
Append-only step log for lifecycle runs; every entry is committed as soon as it
is written so a crash mid-run still leaves the trail up to that point.
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import BookingProgressLog

logger = logging.getLogger(__name__)

LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def new_run_id() -> str:
    return uuid.uuid4().hex


class ProgressLogger:
    """
    Writes ProgressLogEntry rows for one meeting under a shared run id.

    Entries are committed on the caller's session, so writing one also commits
    whatever the caller has pending at that point.
    """

    def __init__(self, db: Session, meeting_id: int, run_id: Optional[str] = None):
        self.db = db
        self.meeting_id = meeting_id
        self.run_id = run_id or new_run_id()

    def write(self, step: str, level: str, message: str, **details: Any) -> Optional[BookingProgressLog]:
        if level not in LEVELS:
            raise ValueError(f"Unknown progress level: {level}")

        logger.log(LEVELS[level], f"[meeting {self.meeting_id} run {self.run_id[:8]}] {step}: {message}")

        entry = BookingProgressLog(
            meeting_id=self.meeting_id,
            run_id=self.run_id,
            step=step,
            level=level,
            message=message,
            details_json=details or {},
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            # The trail is diagnostic; losing one entry must not fail the booking
            self.db.rollback()
            logger.error(f"❌ Could not persist progress entry {step}: {e}")
            return None
        return entry

    def info(self, step: str, message: str, **details: Any):
        return self.write(step, "info", message, **details)

    def success(self, step: str, message: str, **details: Any):
        return self.write(step, "success", message, **details)

    def warn(self, step: str, message: str, **details: Any):
        return self.write(step, "warn", message, **details)

    def error(self, step: str, message: str, **details: Any):
        return self.write(step, "error", message, **details)


def list_entries(db: Session, meeting_id: int, run_id: Optional[str] = None) -> list[BookingProgressLog]:
    query = db.query(BookingProgressLog).filter(BookingProgressLog.meeting_id == meeting_id)
    if run_id:
        query = query.filter(BookingProgressLog.run_id == run_id)
    return query.order_by(BookingProgressLog.id).all()

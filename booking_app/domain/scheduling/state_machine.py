"""
Meeting status state machine

    Draft -> Proposed -> Booked -> Rescheduled -> Proposed/Booked
    any non-terminal status -> Cancelled
    any non-terminal status -> Failed

Cancelled and Failed are terminal.
"""

from ...models import MeetingStatus
from .errors import InvalidTransition

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    MeetingStatus.DRAFT: frozenset({MeetingStatus.PROPOSED, MeetingStatus.CANCELLED, MeetingStatus.FAILED}),
    MeetingStatus.PROPOSED: frozenset(
        {MeetingStatus.PROPOSED, MeetingStatus.BOOKED, MeetingStatus.CANCELLED, MeetingStatus.FAILED}
    ),
    MeetingStatus.BOOKED: frozenset({MeetingStatus.RESCHEDULED, MeetingStatus.CANCELLED, MeetingStatus.FAILED}),
    MeetingStatus.RESCHEDULED: frozenset(
        {MeetingStatus.PROPOSED, MeetingStatus.BOOKED, MeetingStatus.CANCELLED, MeetingStatus.FAILED}
    ),
    MeetingStatus.CANCELLED: frozenset(),
    MeetingStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

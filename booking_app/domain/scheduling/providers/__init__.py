from .base import CalendarEventDraft, CalendarInfo, CalendarProviderAdapter, EventAttendee, TokenGrant
from .factory import get_provider

__all__ = [
    "CalendarEventDraft",
    "CalendarInfo",
    "CalendarProviderAdapter",
    "EventAttendee",
    "TokenGrant",
    "get_provider",
]

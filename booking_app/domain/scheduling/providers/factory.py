"""
Calendar provider factory
"""

from .base import CalendarProviderAdapter


def get_provider(provider: str) -> CalendarProviderAdapter:
    """
    Get the adapter for a connection's provider.

    Raises:
        ValueError: if the provider is not supported
    """
    if provider == "google":
        from .google import GoogleCalendarAdapter

        return GoogleCalendarAdapter()
    elif provider == "microsoft":
        from .microsoft import MicrosoftCalendarAdapter

        return MicrosoftCalendarAdapter()
    else:
        raise ValueError(f"Unsupported calendar provider: {provider}")

"""Scheduling error taxonomy

Precondition failures abort before any write. Provider and sync failures are
caught at the step that caused them and reported as warnings.
"""

from typing import Optional


class SchedulingError(Exception):
    """Base error carrying an HTTP status and a client-safe message"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthExpired(SchedulingError):
    """Provider rejected the access token (401); the caller may refresh once and retry"""

    status_code = 401


class TokenRefreshFailed(SchedulingError):
    status_code = 502

    def __init__(self, message: str, connection_id: Optional[int] = None):
        super().__init__(message)
        self.connection_id = connection_id


class ProviderApiError(SchedulingError):
    """Non-2xx provider response other than 401"""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, excerpt: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.excerpt = excerpt


class PreconditionFailed(SchedulingError):
    status_code = 400


class InvalidTransition(PreconditionFailed):
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"Meeting cannot move from {current} to {target}")
        self.current = current
        self.target = target


class PartialSyncFailure(SchedulingError):
    """A calendar or CRM side effect failed after the primary transition was committed"""

    def __init__(
        self,
        system: str,
        message: str,
        status: Optional[int] = None,
        excerpt: Optional[str] = None,
    ):
        super().__init__(message)
        self.system = system
        self.status = status
        self.excerpt = excerpt

    def to_dict(self) -> dict:
        data = {"system": self.system, "message": self.message}
        if self.status is not None:
            data["status"] = self.status
        if self.excerpt:
            data["responseExcerpt"] = self.excerpt
        return data


def excerpt(text: Optional[str], limit: int = 300) -> str:
    """Trim a provider response body for diagnostics"""
    if not text:
        return ""
    return text[:limit]

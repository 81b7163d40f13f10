from .client import AppointmentDraft, AppointmentResult, LawmaticsClient, LawmaticsError

__all__ = ["AppointmentDraft", "AppointmentResult", "LawmaticsClient", "LawmaticsError"]

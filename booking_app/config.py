import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Fernet key for OAuth tokens at rest (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
# When unset a key is derived from SECRET_KEY
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")

# Shared key for staff endpoints (X-Staff-Api-Key header)
STAFF_API_KEY = os.getenv("STAFF_API_KEY")

# Google Calendar OAuth Configuration
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

# Microsoft 365 OAuth Configuration
MICROSOFT_CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID")
MICROSOFT_CLIENT_SECRET = os.getenv("MICROSOFT_CLIENT_SECRET")
MICROSOFT_TENANT = os.getenv("MICROSOFT_TENANT", "common")

# Lawmatics CRM
LAWMATICS_API_BASE = os.getenv("LAWMATICS_API_BASE", "https://api.lawmatics.com")

# Outbound HTTP
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

# Token lifecycle
TOKEN_REFRESH_MARGIN_MINUTES = int(os.getenv("TOKEN_REFRESH_MARGIN_MINUTES", "5"))

# Availability defaults
AVAILABILITY_BUSY_SOURCE = os.getenv("AVAILABILITY_BUSY_SOURCE", "freebusy")  # freebusy or events
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
DEFAULT_BUSINESS_HOURS_START = os.getenv("DEFAULT_BUSINESS_HOURS_START", "09:00")
DEFAULT_BUSINESS_HOURS_END = os.getenv("DEFAULT_BUSINESS_HOURS_END", "17:00")
DEFAULT_MINIMUM_NOTICE_MINUTES = int(os.getenv("DEFAULT_MINIMUM_NOTICE_MINUTES", "60"))
SLOT_INCREMENT_MINUTES = int(os.getenv("SLOT_INCREMENT_MINUTES", "30"))
MAX_SUGGESTED_SLOTS = int(os.getenv("MAX_SUGGESTED_SLOTS", "20"))
BUSY_MERGE_EPSILON_SECONDS = int(os.getenv("BUSY_MERGE_EPSILON_SECONDS", "60"))

# Booking lifecycle
BOOKING_REQUEST_EXPIRES_DAYS = int(os.getenv("BOOKING_REQUEST_EXPIRES_DAYS", "7"))
MANAGE_MIN_NOTICE_HOURS = int(os.getenv("MANAGE_MIN_NOTICE_HOURS", "24"))
CONFIRM_RECHECK_ENABLED = os.getenv("CONFIRM_RECHECK_ENABLED", "true").lower() == "true"

# HTTP surface
IS_PRODUCTION = os.getenv("ENVIRONMENT", "development").lower() == "production"
SECURITY_HEADERS_ENABLED = os.getenv("SECURITY_HEADERS_ENABLED", "true").lower() == "true"
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]

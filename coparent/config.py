import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coparent.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Session tokens are issued by the auth service and verified here
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Fernet key for OAuth tokens at rest (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
# Falls back to a key derived from SECRET_KEY when unset
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:5173").split(",")

# Google Calendar OAuth Configuration
# Note: GOOGLE_REDIRECT_URI should point to FRONTEND (not backend API)
# OAuth flow: Google → Frontend → Frontend sends code to Backend API
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", f"{FRONTEND_URL}/calendar-connect-callback")

# Name of the provider calendar every parent mirrors the shared calendar into
SHARED_CALENDAR_NAME = os.getenv("SHARED_CALENDAR_NAME", "Coparent")
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

# Token lifecycle
TOKEN_REFRESH_MARGIN_SECONDS = int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "120"))

# Provider calls
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))
RATE_LIMIT_MAX_ATTEMPTS = int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "4"))
RATE_LIMIT_BACKOFF_SECONDS = float(os.getenv("RATE_LIMIT_BACKOFF_SECONDS", "1.0"))

# Sync windows
SYNC_PULL_PAST_DAYS = int(os.getenv("SYNC_PULL_PAST_DAYS", "30"))
SYNC_PULL_FUTURE_DAYS = int(os.getenv("SYNC_PULL_FUTURE_DAYS", "365"))
SYNC_PUSH_LOOKBACK_DAYS = int(os.getenv("SYNC_PUSH_LOOKBACK_DAYS", "30"))
SYNC_INTERVAL_MINUTES = int(os.getenv("SYNC_INTERVAL_MINUTES", "15"))

# One pass per user across processes; an abandoned lease expires after SYNC_LEASE_SECONDS
SYNC_LEASE_SECONDS = int(os.getenv("SYNC_LEASE_SECONDS", "600"))
SYNC_LEASE_WAIT_SECONDS = float(os.getenv("SYNC_LEASE_WAIT_SECONDS", "30"))
SYNC_LEASE_POLL_SECONDS = float(os.getenv("SYNC_LEASE_POLL_SECONDS", "1.0"))

# Custody schedule materialization window applied on approval
MATERIALIZE_WINDOW_DAYS = int(os.getenv("MATERIALIZE_WINDOW_DAYS", "90"))

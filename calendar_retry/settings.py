"""Configuration for the calendar retry queue."""
import os
from pathlib import Path
from dotenv import load_dotenv

from calendar_retry.errors import ConfigError

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Queue storage: "spool" (JSON files) or "postgres"
QUEUE_BACKEND = os.getenv("QUEUE_BACKEND", "spool").strip().lower()
SPOOL_DIR = Path(os.getenv("SPOOL_DIR", str(BASE_DIR / "spool")))
DATABASE_URL = os.getenv("DATABASE_URL")

# Processing
TRIGGER_INTERVAL_MINUTES = int(os.getenv("TRIGGER_INTERVAL_MINUTES", "5"))
LOCK_STALE_MINUTES = int(os.getenv("LOCK_STALE_MINUTES", "30"))

# Google Calendar
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REFRESH_TOKEN = os.getenv("GOOGLE_REFRESH_TOKEN")
GOOGLE_ACCESS_TOKEN = os.getenv("GOOGLE_ACCESS_TOKEN")
CALENDAR_TIMEOUT = int(os.getenv("CALENDAR_TIMEOUT", "30"))

# Notifications
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_USE_TLS = _flag("SMTP_USE_TLS", "true")
NOTIFY_FROM = os.getenv("NOTIFY_FROM")
NOTIFY_ON_SUCCESS = _flag("NOTIFY_ON_SUCCESS", "true")

# End-to-end drills
RETRY_QUEUE_TEST_MODE = _flag("RETRY_QUEUE_TEST_MODE")
RETRY_QUEUE_FORCE_FAILURE = _flag("RETRY_QUEUE_FORCE_FAILURE")


def validate_config():
    """Validate required configuration."""
    errors = []

    if QUEUE_BACKEND not in ("spool", "postgres"):
        errors.append(f"QUEUE_BACKEND must be 'spool' or 'postgres': {QUEUE_BACKEND}")

    if QUEUE_BACKEND == "postgres" and not DATABASE_URL:
        errors.append("DATABASE_URL is required for the postgres backend")

    if QUEUE_BACKEND == "spool":
        try:
            SPOOL_DIR.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            errors.append(f"Cannot create SPOOL_DIR: {e}")

    has_refresh = GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET and GOOGLE_REFRESH_TOKEN
    if not has_refresh and not GOOGLE_ACCESS_TOKEN:
        errors.append(
            "Google credentials are required: GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET "
            "and GOOGLE_REFRESH_TOKEN, or GOOGLE_ACCESS_TOKEN"
        )

    if TRIGGER_INTERVAL_MINUTES < 1:
        errors.append("TRIGGER_INTERVAL_MINUTES must be at least 1")

    if SMTP_HOST and not NOTIFY_FROM:
        errors.append("NOTIFY_FROM is required when SMTP_HOST is set")

    if errors:
        raise ConfigError("Config errors:\n  " + "\n  ".join(errors))

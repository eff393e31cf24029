"""Runtime configuration for the PMO dashboard service.

Every value is read once from the environment at import time. `PMO_*` variables take
precedence; generic container variables are honored so the app runs unchanged on
App Platform style hosts.
"""

from __future__ import annotations

import datetime as dt
import os
from pathlib import Path
from zoneinfo import ZoneInfo

APP_NAME = "PMO Dashboard"
APP_TAGLINE = "Portfolio status, daily updates and executive briefings"
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.environ.get("PMO_DB_PATH", str(DATA_DIR / "pmo_dashboard.db")))
DATABASE_URL = os.environ.get("PMO_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
HOST = os.environ.get("PMO_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("PMO_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("PMO_WSGI_THREADED", "1") == "1"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("PMO_DB_BUSY_TIMEOUT_MS", "6000")))
DB_JOURNAL_MODE = os.environ.get("PMO_DB_JOURNAL_MODE", "WAL").strip().upper()

GEMINI_API_KEY = (
    os.environ.get("PMO_GEMINI_API_KEY")
    or os.environ.get("GEMINI_API_KEY")
    or os.environ.get("API_KEY")
    or ""
).strip()
GEMINI_MODEL = os.environ.get("PMO_GEMINI_MODEL", "gemini-3-flash-preview").strip()
AI_MAX_RETRIES = max(1, min(5, int(os.environ.get("PMO_AI_MAX_RETRIES", "2"))))

RECENT_UPDATES_LIMIT = max(1, int(os.environ.get("PMO_RECENT_UPDATES_LIMIT", "100")))
DEFAULT_PROJECT_DAYS = max(1, int(os.environ.get("PMO_DEFAULT_PROJECT_DAYS", "90")))
TIMEZONE_NAME = os.environ.get("PMO_TIMEZONE", "Asia/Bangkok").strip() or "UTC"


def local_today() -> dt.date:
    try:
        tz: dt.tzinfo = ZoneInfo(TIMEZONE_NAME)
    except Exception:
        tz = dt.timezone.utc
    return dt.datetime.now(tz).date()

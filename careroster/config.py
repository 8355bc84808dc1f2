from __future__ import annotations

import datetime
import os
from pathlib import Path
from typing import List
from zoneinfo import ZoneInfo


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
EXPORT_DIR = DATA_DIR / "exports"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DATABASE_URL = os.environ.get(
    "CAREROSTER_DATABASE_URL", f"sqlite:///{(DATA_DIR / 'careroster.db').as_posix()}"
)
SESSION_COOKIE_NAME = os.environ.get("CAREROSTER_SESSION_COOKIE", "careroster.sid")
SESSION_MAX_AGE_SECONDS = _env_int("CAREROSTER_SESSION_MAX_AGE", 24 * 60 * 60)
SESSION_COOKIE_SECURE = os.environ.get("CAREROSTER_SESSION_SECURE", "").lower() in {"1", "true", "yes"}
LOCAL_TIMEZONE = ZoneInfo(os.environ.get("CAREROSTER_TIMEZONE", "UTC"))
LOG_LEVEL = os.environ.get("CAREROSTER_LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = _env_list(
    "CAREROSTER_CORS_ORIGINS", ["http://localhost:5173", "http://127.0.0.1:5173"]
)
MAX_LOGIN_ATTEMPTS = _env_int("CAREROSTER_MAX_LOGIN_ATTEMPTS", 5)
LOCKOUT_MINUTES = _env_int("CAREROSTER_LOCKOUT_MINUTES", 15)
PAY_PERIOD_ANCHOR = datetime.date.fromisoformat(
    os.environ.get("CAREROSTER_PAY_PERIOD_ANCHOR", "2024-01-01")
)
PAY_PERIOD_DAYS = 14
WEEKLY_HOURS_LIMIT = _env_int("CAREROSTER_WEEKLY_HOURS_LIMIT", 38)

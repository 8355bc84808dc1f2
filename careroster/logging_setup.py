"""Logging configuration shared by the API, services and scripts.

Records are rendered as one line, with any ``extra=`` fields appended as
``key=value`` pairs so log lines stay grep-able::

    [2024-01-01 09:00:00,000] INFO in budget: budget deduction applied shift_id=4 amount=520.0
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from . import config


LOG_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"
_RESERVED = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}

logger = logging.getLogger("careroster.http")


class KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {
            key: value for key, value in record.__dict__.items() if key not in _RESERVED and not key.startswith("_")
        }
        if not fields:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{line} {pairs}"


def configure_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    root.setLevel(level or config.LOG_LEVEL)
    for handler in root.handlers:
        if isinstance(handler.formatter, KeyValueFormatter):
            return
    handler = logging.StreamHandler()
    handler.setFormatter(KeyValueFormatter(LOG_FORMAT))
    root.addHandler(handler)


def get_logger(name: str, injected: Optional[logging.Logger] = None) -> logging.Logger:
    """Return the injected logger when a caller supplied one, else the module logger."""
    return injected if injected is not None else logging.getLogger(name)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log its outcome."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
        logger.info(
            "request handled",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": elapsed_ms,
            },
        )
        response.headers["X-Request-ID"] = request_id
        return response

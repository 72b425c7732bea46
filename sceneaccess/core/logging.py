"""
Logging setup for the "sceneaccess" logger tree.

Production emits one JSON object per line; other environments get a readable
single-line format. Both carry the request id bound by RequestIdMiddleware, and
the JSON form also carries the structured extras listed in EXTRA_FIELDS.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

LOGGER_NAME = "sceneaccess"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

EXTRA_FIELDS = (
    "user_id",
    "scene_id",
    "work_id",
    "access_type",
    "reason",
    "error_code",
    "status",
    "path",
    "method",
    "latency_bucket",
    "event_type",
    "retry_after_ms",
)

# Upper bounds in milliseconds
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id() -> Optional[str]:
    return request_id_ctx_var.get()


def latency_bucket_ms(latency_ms: float) -> str:
    for bound, label in _LATENCY_BUCKETS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    created = datetime.fromtimestamp(record.created, timezone.utc)
    return created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{created.microsecond // 1000:03d}Z"


class RequestIdFilter(logging.Filter):
    """Stamp records with the bound request id unless the caller passed one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        entry.update(
            (name, getattr(record, name))
            for name in EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        prefix = f"{_utc_timestamp(record)} {record.levelname:<7} {record.name}"
        if rid:
            prefix += f" rid={rid}"
        text = f"{prefix} | {record.getMessage()}"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(env: str = "development", level: int = logging.INFO) -> logging.Logger:
    """Install a single stdout handler on the "sceneaccess" logger (idempotent)."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn installs its own handlers
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False
    return logger

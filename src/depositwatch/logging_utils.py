from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, TextIO

from depositwatch.logging_context import CONTEXT_FIELDS, get_logging_context
from depositwatch.security.redaction import redact_data

# HTTP client loggers echo full request URLs, query-string API keys included.
_CHATTY_LOGGERS = {"httpx": "HTTPX_LOG_LEVEL", "httpcore": "HTTPCORE_LOG_LEVEL"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured fields come from ``extra={"extra": {...}}``."""

    def format(self, record: logging.LogRecord) -> str:
        context = get_logging_context()
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **{field: context.get(field) for field in CONTEXT_FIELDS},
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = "" if exc_value is None else str(exc_value)
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def _level_from(value: str | int | None, default: int) -> int:
    if isinstance(value, int):
        return value
    if value is None or not str(value).strip():
        return default
    resolved = logging.getLevelName(str(value).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None, *, stream: TextIO | None = None) -> None:
    root = logging.getLogger()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)

    resolved = _level_from(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)
    root.setLevel(resolved)

    chatty_default = logging.DEBUG if resolved <= logging.DEBUG else logging.WARNING
    for name, env_name in _CHATTY_LOGGERS.items():
        logging.getLogger(name).setLevel(_level_from(os.getenv(env_name), chatty_default))

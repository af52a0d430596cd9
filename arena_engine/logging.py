"""
Logging for the Arena engine.

- Text lines for development, one JSON object per line for production
- Request id correlation through a ContextVar set by the HTTP middleware
- A bounded in-memory buffer behind `/diagnostics/logs`
- `redact_sensitive` for anything that may carry backend keys
"""

import json
import logging
import sys
from collections import deque
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

current_request_id: ContextVar[str | None] = ContextVar("current_request_id", default=None)

# Substrings of keys whose values never reach a log line
REDACTED_FIELDS = {
    "password",
    "api_key",
    "apikey",
    "secret",
    "token",
    "authorization",
    "credential",
    "x-cmc_pro_api_key",
}

REDACTED = "[REDACTED]"
MAX_REDACTION_DEPTH = 10

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(field in lowered for field in REDACTED_FIELDS)


def redact_sensitive(data: Any, depth: int = 0) -> Any:
    """
    Copy of `data` with sensitive dict values replaced by "[REDACTED]".

    Walks nested dicts and lists; scalars pass through unchanged.
    """
    if depth > MAX_REDACTION_DEPTH:
        return data
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_sensitive(key) else redact_sensitive(value, depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive(item, depth + 1) for item in data]
    return data


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """The structured view of a record shared by JSON output and the buffer."""
    return {
        "timestamp": getattr(record, "timestamp", None) or datetime.now(UTC).isoformat(),
        "level": record.levelname,
        "level_no": record.levelno,
        "logger": record.name,
        "request_id": current_request_id.get(),
        "message": record.getMessage(),
    }


class ArenaFormatter(logging.Formatter):
    """Text or JSON-lines formatter stamped with time and request id."""

    TEXT_FORMAT = "%(timestamp)s | %(levelname)-8s | %(name)s | %(request_tag)s%(message)s"

    def __init__(self, json_output: bool = False) -> None:
        super().__init__(self.TEXT_FORMAT)
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        record.timestamp = datetime.now(UTC).isoformat()
        request_id = current_request_id.get()
        record.request_tag = f"[{request_id}] " if request_id else ""

        if not self.json_output:
            return super().format(record)

        payload = record_fields(record)
        del payload["level_no"]
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class InMemoryHandler(logging.Handler):
    """Ring buffer of recent records for the diagnostics endpoint."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self.logs: deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.logs.append(record_fields(record))
        except Exception:
            self.handleError(record)


_in_memory_handler = InMemoryHandler()


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Install the stdout and in-memory handlers on the root logger.

    Args:
        level: Minimum level name
        json_output: Emit JSON lines instead of text

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = ArenaFormatter(json_output=json_output)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)

    stream = logging.StreamHandler(sys.stdout)
    stream.setLevel(numeric_level)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    _in_memory_handler.setLevel(numeric_level)
    root.addHandler(_in_memory_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_in_memory_logs(level: str = "INFO", limit: int = 50) -> list[dict[str, Any]]:
    """Buffered records at or above `level`, newest last."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    matching = [entry for entry in _in_memory_handler.logs if entry["level_no"] >= numeric_level]
    return matching[-limit:]


def set_request_id(request_id: str) -> None:
    current_request_id.set(request_id)


def clear_request_id() -> None:
    current_request_id.set(None)

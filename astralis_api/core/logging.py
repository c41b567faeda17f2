from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from astralis_api.core.settings import get_settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
_configured = False

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}
_PROMOTED_KEYS = frozenset({"component", "request_id"})
_REDACTED = "[redacted]"
_SENSITIVE_KEY_FRAGMENTS = (
    "secret",
    "token",
    "password",
    "apikey",
    "api_key",
    "signature",
    "authorization",
    "cookie",
)
_MAX_ERROR_CHARS = 500


def set_request_id(request_id: str | None) -> Token[str | None]:
    return _request_id_var.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id_var.reset(token)


def get_request_id() -> str | None:
    return _request_id_var.get()


def _utc_iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _to_json(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, Enum):
        return _to_json(value.value)
    if isinstance(value, datetime):
        return _utc_iso(value)
    if isinstance(value, dict):
        return {str(k): _to_json(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [_to_json(item) for item in value]
    return str(value)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS or key in _PROMOTED_KEYS or key.startswith("_"):
            continue
        fields[key] = _REDACTED if _is_sensitive(key) else _to_json(value)
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``msg``, ``component``, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": _utc_iso(datetime.now(UTC)),
            "level": record.levelname,
            "msg": record.getMessage(),
            "component": getattr(record, "component", record.name),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        payload.update(_extra_fields(record))

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error"] = str(exc_value)[:_MAX_ERROR_CHARS] if exc_value else "unknown"

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return

    level_name = (level or get_settings().LOG_LEVEL).strip().upper() or "INFO"
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    # Stripe's SDK logs request lines at INFO; keep them out of the app stream.
    logging.getLogger("stripe").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)

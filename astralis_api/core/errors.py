from __future__ import annotations

import re

from fastapi import HTTPException, status

_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key|token|secret|password)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
    re.compile(r"\b(whsec|sk_live|sk_test|rk_live|rk_test)_[a-z0-9]+", re.IGNORECASE),
)


class StoreError(HTTPException):
    """The persistence backend could not be reached or rejected the request."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


def sanitize_error(exc: Exception, *, default_message: str) -> str:
    if isinstance(exc, HTTPException) and isinstance(exc.detail, str) and exc.detail.strip():
        message = exc.detail.strip()
    else:
        message = str(exc).strip()
    if not message:
        message = default_message

    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]


class ApiError(Exception):
    """An error whose response body carries a machine-readable ``error`` code."""

    def __init__(self, status_code: int, error: str, **fields: object) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.fields = fields

    def as_body(self) -> dict[str, object]:
        return {"error": self.error, **self.fields}

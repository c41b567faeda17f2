import json
import logging

from astralis_api.core.errors import ApiError, StoreError, sanitize_error
from astralis_api.core.logging import JsonLogFormatter, reset_request_id, set_request_id


def test_sanitize_error_redacts_credentials() -> None:
    exc = RuntimeError(
        "call failed: Authorization: Bearer eyJhbGciOi.abc.def token=abc123 key whsec_livesecret sk_test_4242"
    )

    message = sanitize_error(exc, default_message="failed")

    assert "eyJhbGciOi" not in message
    assert "abc123" not in message
    assert "whsec_livesecret" not in message
    assert "sk_test_4242" not in message
    assert message.startswith("call failed")


def test_sanitize_error_prefers_http_detail_and_truncates() -> None:
    assert sanitize_error(StoreError("Failed to fetch usage."), default_message="x") == "Failed to fetch usage."
    assert sanitize_error(RuntimeError(""), default_message="Default text.") == "Default text."
    assert len(sanitize_error(RuntimeError("x" * 2000), default_message="x")) == 500


def test_api_error_body_carries_code_and_fields() -> None:
    error = ApiError(402, "FREE_LIMIT_REACHED", upgrade_required=True, remaining=0)

    assert error.status_code == 402
    assert error.as_body() == {"error": "FREE_LIMIT_REACHED", "upgrade_required": True, "remaining": 0}


def test_json_formatter_includes_request_id_and_redacts_secrets() -> None:
    record = logging.makeLogRecord(
        {
            "name": "billing.webhook",
            "levelname": "INFO",
            "msg": "billing.webhook.applied",
            "component": "billing",
            "event_id": "evt_1",
            "stripe_signature": "t=1,v1=abc",
        }
    )
    token = set_request_id("req-123")
    try:
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_request_id(token)

    assert payload["msg"] == "billing.webhook.applied"
    assert payload["component"] == "billing"
    assert payload["request_id"] == "req-123"
    assert payload["event_id"] == "evt_1"
    assert payload["stripe_signature"] == "[redacted]"

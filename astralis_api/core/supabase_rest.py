from typing import Any

import httpx

from astralis_api.core.errors import StoreError
from astralis_api.core.settings import get_settings

SUBSCRIPTION_COLUMNS = ",".join(
    (
        "user_id",
        "stripe_customer_id",
        "stripe_subscription_id",
        "stripe_checkout_session_id",
        "stripe_price_id",
        "plan_slug",
        "plan_name",
        "status",
        "stripe_status",
        "current_period_end",
        "canceled_at",
        "last_event_at",
        "last_event_id",
        "updated_at",
    )
)
BILLING_EVENT_COLUMNS = (
    "stripe_event_id,event_type,user_id,stripe_customer_id,status,error,occurred_at,processed_at"
)
USAGE_TABLES = {
    "guest": ("guest_usage_lifetime", "guest_id"),
    "user": ("user_usage_lifetime", "user_id"),
}


def _rest_url(path: str) -> str:
    settings = get_settings()
    return f"{settings.SUPABASE_URL.rstrip('/')}/rest/v1/{path}"


def _timeout() -> float:
    return get_settings().SUPABASE_TIMEOUT_SECONDS


def supabase_service_role_headers() -> dict[str, str]:
    settings = get_settings()
    service_role_key = settings.SUPABASE_SERVICE_ROLE_KEY
    if not service_role_key or not service_role_key.strip():
        raise StoreError("Supabase service role key is not configured.")
    return {
        "Authorization": f"Bearer {service_role_key}",
        "apikey": service_role_key,
        "Accept": "application/json",
    }


def _supabase_error_detail(response: httpx.Response) -> str | None:
    payload: Any
    try:
        payload = response.json()
    except ValueError:
        return None

    if not isinstance(payload, dict):
        return None

    detail = payload.get("message")
    if isinstance(detail, str) and detail:
        return detail

    detail = payload.get("detail")
    if isinstance(detail, str) and detail:
        return detail

    return None


def _validated_list_payload(payload: Any, error_message: str) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise StoreError(error_message)
    for item in payload:
        if not isinstance(item, dict):
            raise StoreError(error_message)
    return payload


async def _service_role_select(
    table: str,
    params: dict[str, str],
    *,
    error_detail: str,
) -> list[dict[str, Any]]:
    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.get(
                _rest_url(table),
                params=params,
                headers=supabase_service_role_headers(),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise StoreError(error_detail) from exc

    try:
        payload = response.json()
    except ValueError as exc:
        raise StoreError(error_detail) from exc
    return _validated_list_payload(payload, error_detail)


async def _service_role_rpc(function: str, payload: dict[str, Any], *, error_detail: str) -> Any:
    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.post(
                _rest_url(f"rpc/{function}"),
                json=payload,
                headers=supabase_service_role_headers(),
            )
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        upstream = _supabase_error_detail(exc.response)
        raise StoreError(f"{error_detail} {upstream}" if upstream else error_detail) from exc
    except httpx.HTTPError as exc:
        raise StoreError(error_detail) from exc

    try:
        return response.json()
    except ValueError as exc:
        raise StoreError(error_detail) from exc


def _single_object(payload: Any, error_detail: str) -> dict[str, Any]:
    # PostgREST returns a scalar jsonb result bare, but set-returning functions as a list.
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        raise StoreError(error_detail)
    return payload


async def select_subscription_by_user_service(user_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "user_subscriptions",
        {"select": SUBSCRIPTION_COLUMNS, "user_id": f"eq.{user_id}", "limit": "1"},
        error_detail="Failed to fetch subscription from Supabase.",
    )
    return rows[0] if rows else None


async def select_subscription_by_customer_service(customer_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "user_subscriptions",
        {
            "select": SUBSCRIPTION_COLUMNS,
            "stripe_customer_id": f"eq.{customer_id}",
            "order": "updated_at.desc",
            "limit": "1",
        },
        error_detail="Failed to fetch subscription by customer from Supabase.",
    )
    return rows[0] if rows else None


async def rpc_upsert_user_subscription_service(payload: dict[str, Any]) -> dict[str, Any]:
    error_detail = "Failed to upsert subscription in Supabase."
    result = await _service_role_rpc("upsert_user_subscription", payload, error_detail=error_detail)
    return _single_object(result, error_detail)


async def select_usage_count_service(kind: str, identity: str) -> int:
    table, column = USAGE_TABLES[kind]
    rows = await _service_role_select(
        table,
        {"select": "used", column: f"eq.{identity}", "limit": "1"},
        error_detail="Failed to fetch usage from Supabase.",
    )
    if not rows:
        return 0
    used = rows[0].get("used")
    if not isinstance(used, int) or used < 0:
        raise StoreError("Invalid usage response from Supabase.")
    return used


async def rpc_consume_usage_service(kind: str, identity: str, limit: int) -> dict[str, Any]:
    error_detail = "Failed to consume usage in Supabase."
    result = await _service_role_rpc(
        "consume_usage",
        {"p_kind": kind, "p_identity": identity, "p_limit": limit},
        error_detail=error_detail,
    )
    return _single_object(result, error_detail)


async def rpc_increment_usage_service(kind: str, identity: str) -> int:
    result = await _service_role_rpc(
        "increment_usage",
        {"p_kind": kind, "p_identity": identity},
        error_detail="Failed to increment usage in Supabase.",
    )
    if isinstance(result, list):
        result = result[0] if result else None
    if isinstance(result, dict):
        result = result.get("used")
    if not isinstance(result, int) or result < 0:
        raise StoreError("Invalid increment usage response from Supabase.")
    return result


async def insert_billing_event_service(payload: dict[str, Any]) -> None:
    headers = supabase_service_role_headers()
    headers["Prefer"] = "resolution=merge-duplicates,return=minimal"

    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.post(
                _rest_url("billing_events"),
                params={"on_conflict": "stripe_event_id,status"},
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise StoreError("Failed to record billing event in Supabase.") from exc


async def select_billing_events_service(user_id: str, limit: int = 20) -> list[dict[str, Any]]:
    return await _service_role_select(
        "billing_events",
        {
            "select": BILLING_EVENT_COLUMNS,
            "user_id": f"eq.{user_id}",
            "order": "processed_at.desc",
            "limit": str(limit),
        },
        error_detail="Failed to fetch billing events from Supabase.",
    )

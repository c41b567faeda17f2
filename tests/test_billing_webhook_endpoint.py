import asyncio

from fastapi.testclient import TestClient

from astralis_api.api.dependencies import get_event_log, get_subscription_store
from astralis_api.billing.event_log import InMemoryBillingEventLog
from astralis_api.billing.models import SubscriptionStatus
from astralis_api.billing.store import InMemorySubscriptionStore
from astralis_api.core.errors import StoreError
from astralis_api.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth
from astralis_api.main import app
from stripe_helpers import sign_payload, stripe_event

USER_ID = "22222222-2222-2222-2222-222222222222"
T1 = 1_772_000_000
WEBHOOK_URL = "/api/v1/billing/webhook"


def _subscription(status: str = "active", period_end: int = T1 + 30 * 86400) -> dict:
    return {
        "id": "sub_1",
        "customer": "cus_1",
        "status": status,
        "current_period_end": period_end,
        "metadata": {"user_id": USER_ID},
        "items": {"data": [{"price": {"id": "price_monthly"}}]},
    }


def _post(client: TestClient, payload: bytes, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else sign_payload(payload)
    return client.post(WEBHOOK_URL, content=payload, headers=headers)


def test_signed_subscription_event_is_applied() -> None:
    store = InMemorySubscriptionStore()
    app.dependency_overrides[get_subscription_store] = lambda: store

    try:
        client = TestClient(app)
        response = _post(client, stripe_event("customer.subscription.updated", _subscription(), created=T1))
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "outcome": "applied",
        "event_type": "customer.subscription.updated",
        "warning": None,
    }
    record = asyncio.run(store.get_by_user(USER_ID))
    assert record is not None
    assert record.user_id == USER_ID
    assert record.status is SubscriptionStatus.ACTIVE
    assert record.plan_slug == "monthly_essential"


def test_invalid_signature_returns_400() -> None:
    client = TestClient(app)
    payload = stripe_event("customer.subscription.updated", _subscription(), created=T1)

    response = _post(client, payload, signature="t=1,v1=deadbeef")

    assert response.status_code == 400
    assert response.json() == {"error": "INVALID_SIGNATURE"}


def test_missing_signature_header_returns_400() -> None:
    client = TestClient(app)
    payload = stripe_event("customer.subscription.updated", _subscription(), created=T1)

    response = client.post(WEBHOOK_URL, content=payload, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json() == {"error": "INVALID_SIGNATURE"}


def test_reserialized_body_fails_verification() -> None:
    client = TestClient(app)
    payload = stripe_event("customer.subscription.updated", _subscription(), created=T1)
    signature = sign_payload(payload)

    response = _post(client, payload.replace(b'", "', b'","'), signature=signature)

    assert response.status_code == 400


def test_malformed_payload_returns_400() -> None:
    client = TestClient(app)

    response = _post(client, b"[1, 2, 3]")

    assert response.status_code == 400
    assert response.json() == {"error": "MALFORMED_PAYLOAD"}


def test_unlinkable_checkout_returns_200_and_stores_nothing() -> None:
    store = InMemorySubscriptionStore()
    app.dependency_overrides[get_subscription_store] = lambda: store
    session = {"id": "cs_1", "client_reference_id": "guest", "customer": "cus_1", "metadata": {"user_id": "guest"}}

    try:
        client = TestClient(app)
        response = _post(client, stripe_event("checkout.session.completed", session, created=T1))
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["outcome"] == "unlinkable"
    assert response.json()["warning"]
    assert asyncio.run(store.get_by_customer("cus_1")) is None


class _UnavailableStore(InMemorySubscriptionStore):
    async def upsert(self, key, patch):
        raise StoreError("Failed to upsert subscription in Supabase.")


def test_persistence_failure_is_acknowledged_and_reported_in_health() -> None:
    app.dependency_overrides[get_subscription_store] = lambda: _UnavailableStore()

    try:
        client = TestClient(app)
        response = _post(client, stripe_event("customer.subscription.updated", _subscription(), created=T1))
        health = client.get("/api/v1/system/health")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["outcome"] == "store_failed"
    assert health.status_code == 200
    assert health.json()["webhook_store_failures"] == 1
    assert health.json()["webhook_last_failure_at"] is not None


def test_subscription_and_events_endpoints_reflect_webhooks() -> None:
    store = InMemorySubscriptionStore()
    event_log = InMemoryBillingEventLog()
    app.dependency_overrides[get_subscription_store] = lambda: store
    app.dependency_overrides[get_event_log] = lambda: event_log

    try:
        client = TestClient(app)
        far_future = 4_102_444_800
        payload = stripe_event(
            "customer.subscription.updated",
            _subscription(period_end=far_future),
            created=T1,
            event_id="evt_1",
        )
        _post(client, payload)
        app.dependency_overrides[verify_supabase_auth] = lambda: VerifiedSupabaseAuth(
            access_token="token-123",
            claims={"sub": USER_ID},
        )
        subscription = client.get("/api/v1/billing/subscription")
        events = client.get("/api/v1/billing/events")
    finally:
        app.dependency_overrides.clear()

    assert subscription.status_code == 200
    body = subscription.json()
    assert body["user_id"] == USER_ID
    assert body["status"] == "active"
    assert body["plan_slug"] == "monthly_essential"
    assert body["stripe_customer_id"] == "cus_1"
    assert body["entitled"] is True
    assert events.status_code == 200
    assert [event["stripe_event_id"] for event in events.json()["events"]] == ["evt_1"]
    assert events.json()["events"][0]["status"] == "processed"


def test_subscription_endpoint_without_record() -> None:
    app.dependency_overrides[verify_supabase_auth] = lambda: VerifiedSupabaseAuth(
        access_token="token-123",
        claims={"sub": USER_ID},
    )

    try:
        client = TestClient(app)
        response = client.get("/api/v1/billing/subscription")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["entitled"] is False
    assert response.json()["status"] is None


def test_billing_read_endpoints_require_token() -> None:
    client = TestClient(app)
    assert client.get("/api/v1/billing/subscription").status_code == 401
    assert client.get("/api/v1/billing/events").status_code == 401

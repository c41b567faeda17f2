import asyncio
import json
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient

from astralis_api.api.dependencies import get_subscription_store
from astralis_api.api.v1.endpoints import billing as billing_endpoint
from astralis_api.billing.catalog import PlanCatalog
from astralis_api.billing.checkout import CheckoutIntentFactory, UnknownPlanError, safe_next_path
from astralis_api.billing.ingestor import resolve_user_id
from astralis_api.billing.models import SubscriptionKey, SubscriptionPatch, SubscriptionStatus
from astralis_api.billing.store import InMemorySubscriptionStore
from astralis_api.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth
from astralis_api.main import app

USER_ID = "22222222-2222-2222-2222-222222222222"
CATALOG = PlanCatalog({"price_monthly": {"slug": "monthly_essential", "name": "Monthly Essential"}})


def _factory(trial_days: int = 0) -> CheckoutIntentFactory:
    return CheckoutIntentFactory(
        CATALOG,
        app_tag="luna-astralis",
        site_url="https://astralis.example/",
        trial_days=trial_days,
    )


def test_metadata_links_back_to_the_user() -> None:
    contract = _factory().build_checkout_metadata(USER_ID, "monthly_essential")

    assert contract.client_reference_id == USER_ID
    assert contract.metadata == {"app": "luna-astralis", "plan": "monthly_essential", "user_id": USER_ID}
    assert contract.subscription_metadata == contract.metadata
    assert resolve_user_id(contract.client_reference_id, contract.metadata["user_id"]) == USER_ID
    assert resolve_user_id(contract.subscription_metadata["user_id"]) == USER_ID


def test_missing_user_is_written_as_unlinkable_placeholder() -> None:
    contract = _factory().build_checkout_metadata(None, "monthly_essential")

    assert contract.client_reference_id is None
    assert contract.metadata["user_id"] == "guest"
    assert resolve_user_id(contract.client_reference_id, contract.metadata["user_id"]) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, "/chat"),
        ("", "/chat"),
        ("chat?signe=belier", "/chat?signe=belier"),
        ("/pricing", "/pricing"),
        ("https://evil.example", "/chat"),
        ("//evil.example", "/chat"),
        ("/\\evil.example", "/chat"),
    ],
)
def test_safe_next_path(raw, expected) -> None:
    assert safe_next_path(raw) == expected


def test_session_params_carry_the_contract() -> None:
    params = _factory(trial_days=3).build_session_params(
        user_id=USER_ID,
        plan_slug="monthly_essential",
        next_path="/chat?signe=lion",
        customer_email="luna@example.com",
    )

    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_monthly", "quantity": 1}]
    assert params["client_reference_id"] == USER_ID
    assert params["customer_email"] == "luna@example.com"
    assert params["metadata"]["user_id"] == USER_ID
    assert params["metadata"]["next"] == "/chat?signe=lion"
    assert params["subscription_data"]["metadata"]["user_id"] == USER_ID
    assert params["subscription_data"]["trial_period_days"] == 3
    assert params["success_url"] == (
        "https://astralis.example/chat?signe=lion&paid=1&session_id={CHECKOUT_SESSION_ID}"
    )
    assert params["cancel_url"] == "https://astralis.example/pricing?canceled=1&next=%2Fchat%3Fsigne%3Dlion"


def test_unknown_plan_is_rejected() -> None:
    with pytest.raises(UnknownPlanError):
        _factory().build_session_params(user_id=USER_ID, plan_slug="lifetime")


def test_checkout_requires_token() -> None:
    client = TestClient(app)
    response = client.post("/api/v1/billing/checkout", json={"plan": "monthly_essential"})
    assert response.status_code == 401


def test_checkout_endpoint_creates_session(monkeypatch) -> None:
    captured: dict = {}

    def fake_create(api_key: str, params: dict):
        captured["api_key"] = api_key
        captured["params"] = params
        return {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}

    monkeypatch.setattr(billing_endpoint, "create_checkout_session", fake_create)
    app.dependency_overrides[verify_supabase_auth] = lambda: VerifiedSupabaseAuth(
        access_token="token-123",
        claims={"sub": USER_ID, "email": "luna@example.com"},
    )

    try:
        client = TestClient(app)
        response = client.post(
            "/api/v1/billing/checkout",
            json={"plan": "monthly_essential", "next": "/chat"},
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test_1", "session_id": "cs_test_1"}
    assert captured["api_key"] == "sk_test_dummy"
    assert captured["params"]["client_reference_id"] == USER_ID
    assert json.dumps(captured["params"]["metadata"], sort_keys=True) == json.dumps(
        {"app": "luna-astralis", "next": "/chat", "plan": "monthly_essential", "user_id": USER_ID},
        sort_keys=True,
    )


def test_checkout_endpoint_unknown_plan() -> None:
    app.dependency_overrides[verify_supabase_auth] = lambda: VerifiedSupabaseAuth(
        access_token="token-123",
        claims={"sub": USER_ID},
    )

    try:
        client = TestClient(app)
        response = client.post("/api/v1/billing/checkout", json={"plan": "lifetime"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 400
    assert response.json()["detail"] == "Unknown plan."


def test_checkout_endpoint_maps_stripe_errors(monkeypatch) -> None:
    def fake_create(api_key: str, params: dict):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(billing_endpoint, "create_checkout_session", fake_create)
    app.dependency_overrides[verify_supabase_auth] = lambda: VerifiedSupabaseAuth(
        access_token="token-123",
        claims={"sub": USER_ID},
    )

    try:
        client = TestClient(app)
        response = client.post("/api/v1/billing/checkout", json={"plan": "monthly_essential"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to create checkout session."


def _store_with_customer(customer_id: str | None = "cus_1") -> InMemorySubscriptionStore:
    store = InMemorySubscriptionStore()
    patch = SubscriptionPatch(
        occurred_at=datetime(2026, 3, 1, tzinfo=UTC),
        stripe_customer_id=customer_id,
        stripe_checkout_session_id="cs_1",
        initial_status=SubscriptionStatus.PENDING,
    )
    asyncio.run(store.upsert(SubscriptionKey(user_id=USER_ID), patch))
    return store


def _portal_settings(configuration: str | None = None):
    return SimpleNamespace(
        STRIPE_SECRET_KEY="sk_test_dummy",
        SITE_URL="https://astralis.example/",
        STRIPE_PORTAL_CONFIGURATION=configuration,
    )


def _post_portal(store: InMemorySubscriptionStore):
    app.dependency_overrides[get_subscription_store] = lambda: store
    app.dependency_overrides[verify_supabase_auth] = lambda: VerifiedSupabaseAuth(
        access_token="token-123",
        claims={"sub": USER_ID},
    )
    try:
        client = TestClient(app)
        return client.post("/api/v1/billing/portal")
    finally:
        app.dependency_overrides.clear()


def test_portal_requires_token() -> None:
    client = TestClient(app)
    response = client.post("/api/v1/billing/portal")
    assert response.status_code == 401


def test_portal_creates_session_for_the_stored_customer(monkeypatch) -> None:
    captured: dict = {}

    def fake_create(api_key: str, params: dict):
        captured["api_key"] = api_key
        captured["params"] = params
        return {"id": "bps_1", "url": "https://billing.stripe.com/p/session/bps_1"}

    monkeypatch.setattr(billing_endpoint, "create_portal_session", fake_create)
    monkeypatch.setattr(billing_endpoint, "get_settings", lambda: _portal_settings("bpc_123"))

    response = _post_portal(_store_with_customer())

    assert response.status_code == 200
    assert response.json() == {"url": "https://billing.stripe.com/p/session/bps_1"}
    assert captured["api_key"] == "sk_test_dummy"
    assert captured["params"] == {
        "customer": "cus_1",
        "return_url": "https://astralis.example/account",
        "configuration": "bpc_123",
    }


def test_portal_omits_configuration_when_unset(monkeypatch) -> None:
    captured: dict = {}

    def fake_create(api_key: str, params: dict):
        captured["params"] = params
        return {"url": "https://billing.stripe.com/p/session/bps_2"}

    monkeypatch.setattr(billing_endpoint, "create_portal_session", fake_create)
    monkeypatch.setattr(billing_endpoint, "get_settings", lambda: _portal_settings())

    response = _post_portal(_store_with_customer())

    assert response.status_code == 200
    assert "configuration" not in captured["params"]


def test_portal_without_customer_is_rejected(monkeypatch) -> None:
    def fake_create(api_key: str, params: dict):
        raise AssertionError("Stripe should not be called without a customer")

    monkeypatch.setattr(billing_endpoint, "create_portal_session", fake_create)

    missing_row = _post_portal(InMemorySubscriptionStore())
    missing_customer = _post_portal(_store_with_customer(None))

    assert missing_row.status_code == 400
    assert missing_row.json()["detail"] == "No billing customer."
    assert missing_customer.status_code == 400


def test_portal_not_configured_without_secret_key(monkeypatch) -> None:
    settings = _portal_settings()
    settings.STRIPE_SECRET_KEY = None
    monkeypatch.setattr(billing_endpoint, "get_settings", lambda: settings)

    response = _post_portal(_store_with_customer())

    assert response.status_code == 501


def test_portal_maps_stripe_errors(monkeypatch) -> None:
    def fake_create(api_key: str, params: dict):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(billing_endpoint, "create_portal_session", fake_create)

    response = _post_portal(_store_with_customer())

    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to create billing portal session."

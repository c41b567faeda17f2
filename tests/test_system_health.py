from types import SimpleNamespace

from fastapi.testclient import TestClient

from astralis_api.api.v1.endpoints import system as system_endpoint
from astralis_api.billing.ingestor import webhook_store_failures
from astralis_api.main import app


def _settings(backend: str = "supabase"):
    return SimpleNamespace(
        APP_VERSION="1.2.3",
        ENTITLEMENT_BACKEND=backend,
        SUPABASE_URL="https://example.supabase.co",
        SUPABASE_ANON_KEY="test-anon-key",
    )


def test_system_health_memory_backend_skips_probe(monkeypatch) -> None:
    async def fail_probe(**kwargs):
        raise AssertionError("Supabase should not be probed for the memory backend")

    monkeypatch.setattr(system_endpoint, "_probe_supabase_health", fail_probe)
    monkeypatch.setattr(system_endpoint, "get_settings", lambda: _settings("memory"))

    client = TestClient(app)
    response = client.get("/api/v1/system/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["version"] == "1.2.3"
    assert body["entitlement_backend"] == "memory"
    assert body["supabase_ok"] is None
    assert body["webhook_store_failures"] == 0
    assert body["webhook_last_failure_at"] is None


def test_system_health_reports_supabase_and_webhook_failures(monkeypatch) -> None:
    async def fake_probe(*, supabase_url: str, supabase_anon_key: str) -> bool:
        assert supabase_url == "https://example.supabase.co"
        assert supabase_anon_key == "test-anon-key"
        return False

    monkeypatch.setattr(system_endpoint, "_probe_supabase_health", fake_probe)
    monkeypatch.setattr(system_endpoint, "get_settings", lambda: _settings())
    webhook_store_failures.record()
    webhook_store_failures.record()

    client = TestClient(app)
    response = client.get("/api/v1/system/health")

    assert response.status_code == 200
    body = response.json()
    assert body["supabase_ok"] is False
    assert body["webhook_store_failures"] == 2
    assert body["webhook_last_failure_at"] is not None

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.marketplace import WebhookEnsureResult
from app.routers import marketplace_credentials
from app.services.auth import CurrentUser, create_access_token, get_current_user
from app.services.credential_vault import ConnectionTestResult, credential_vault


TENANT = "tenant-1"
BRICKLINK_FIELDS = {
    "consumer_key": "ck-123",
    "consumer_secret": "cs-456",
    "token_value": "tv-789",
    "token_secret": "ts-012",
}


def _headers(role="owner", tenant_id=TENANT):
    token = create_access_token({"sub": "user-1", "tenant_id": tenant_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def connection_tests(monkeypatch):
    """Replaces the live connection test; records (tenant, provider) calls."""

    calls = []

    async def _fake(tenant_id, provider, **kwargs):
        calls.append((tenant_id, provider))
        return ConnectionTestResult(success=True, message=f"Connected to {provider}", correlation_id="corr-1")

    monkeypatch.setattr(credential_vault, "test_connection", _fake)
    return calls


@pytest.fixture
def client(db, connection_tests):
    return TestClient(app)


def test_requires_a_valid_token(client):
    assert client.get("/api/marketplaces/credentials").status_code in (401, 403)

    response = client.get("/api/marketplaces/credentials", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401


def test_save_and_read_credentials(client, connection_tests):
    """Saving returns a pending, masked status and schedules a connection test."""

    response = client.put("/api/marketplaces/credentials/bricklink", json=BRICKLINK_FIELDS, headers=_headers())

    assert response.status_code == 200
    data = response.json()
    assert data["configured"] is True
    assert data["validation_status"] == "pending"
    assert data["webhook_status"] == "unconfigured"
    assert "ck-123" not in response.text
    assert connection_tests == [(TENANT, "bricklink")]

    listing = client.get("/api/marketplaces/credentials", headers=_headers()).json()
    assert {entry["provider"]: entry["configured"] for entry in listing} == {"bricklink": True, "brickowl": False}

    providers = client.get("/api/marketplaces/providers", headers=_headers(role="member")).json()
    assert providers == {"providers": ["bricklink"]}


def test_credentials_are_scoped_to_the_callers_tenant(client):
    client.put("/api/marketplaces/credentials/bricklink", json=BRICKLINK_FIELDS, headers=_headers())

    other = client.get("/api/marketplaces/credentials/bricklink", headers=_headers(tenant_id="tenant-2"))

    assert other.status_code == 200
    assert other.json()["configured"] is False


def test_mutations_require_owner(client):
    response = client.put(
        "/api/marketplaces/credentials/brickowl", json={"api_key": "owl"}, headers=_headers(role="member"),
    )
    assert response.status_code == 403

    response = client.delete("/api/marketplaces/credentials/brickowl", headers=_headers(role="viewer"))
    assert response.status_code == 403


def test_status_and_connection_tests_require_owner(client, connection_tests):
    client.put("/api/marketplaces/credentials/bricklink", json=BRICKLINK_FIELDS, headers=_headers())
    member = _headers(role="member")

    assert client.get("/api/marketplaces/credentials", headers=member).status_code == 403
    assert client.get("/api/marketplaces/credentials/bricklink", headers=member).status_code == 403
    assert client.post("/api/marketplaces/credentials/bricklink/test", headers=member).status_code == 403
    # only the save-triggered test ran
    assert connection_tests == [(TENANT, "bricklink")]

    providers = client.get("/api/marketplaces/providers", headers=member)
    assert providers.status_code == 200


def test_validation_errors_map_to_400(client):
    response = client.put("/api/marketplaces/credentials/bricklink", json={"consumer_key": "ck"}, headers=_headers())

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "VALIDATION"
    assert detail["details"]["missing_fields"] == ["consumer_secret", "token_value", "token_secret"]

    assert client.get("/api/marketplaces/credentials/etsy", headers=_headers()).status_code == 400


def test_connection_test_endpoint(client, connection_tests):
    assert client.post("/api/marketplaces/credentials/brickowl/test", headers=_headers()).status_code == 404

    client.put("/api/marketplaces/credentials/brickowl", json={"api_key": "owl"}, headers=_headers())
    response = client.post("/api/marketplaces/credentials/brickowl/test", headers=_headers())

    assert response.status_code == 200
    assert response.json() == {
        "provider": "brickowl",
        "success": True,
        "message": "Connected to brickowl",
        "error_code": None,
        "correlation_id": "corr-1",
    }


def test_sync_settings(client):
    client.put("/api/marketplaces/credentials/brickowl", json={"api_key": "owl"}, headers=_headers())

    response = client.patch(
        "/api/marketplaces/credentials/brickowl/sync-settings", json={"sync_enabled": True}, headers=_headers(),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["sync_enabled"] is True
    assert data["orders_sync_enabled"] is True
    assert data["inventory_sync_enabled"] is True

    missing = client.patch(
        "/api/marketplaces/credentials/bricklink/sync-settings", json={"sync_enabled": True}, headers=_headers(),
    )
    assert missing.status_code == 404


def test_revoke(client):
    client.put("/api/marketplaces/credentials/brickowl", json={"api_key": "owl"}, headers=_headers())

    response = client.delete("/api/marketplaces/credentials/brickowl", headers=_headers())
    assert response.json() == {"provider": "brickowl", "revoked": True}

    assert client.get("/api/marketplaces/credentials/brickowl", headers=_headers()).json()["configured"] is False
    assert client.delete("/api/marketplaces/credentials/brickowl", headers=_headers()).status_code == 404


def test_ensure_webhook_endpoint(client, monkeypatch):
    calls = []

    async def _fake_ensure(force=False, *, tenant_id=None, store_client_factory=None):
        calls.append((force, tenant_id))
        if tenant_id != TENANT:
            return []
        return [WebhookEnsureResult(tenant_id=tenant_id, status="registered", endpoint="https://x/cb", refreshed=True)]

    monkeypatch.setattr(marketplace_credentials, "ensure_webhooks", _fake_ensure)

    response = client.post("/api/marketplaces/bricklink/webhook/ensure", headers=_headers())
    assert response.status_code == 200
    assert response.json()["status"] == "registered"
    assert calls == [(True, TENANT)]

    missing = client.post("/api/marketplaces/bricklink/webhook/ensure", headers=_headers(tenant_id="tenant-2"))
    assert missing.status_code == 404

    forbidden = client.post("/api/marketplaces/bricklink/webhook/ensure", headers=_headers(role="member"))
    assert forbidden.status_code == 403


def _override_current_user() -> CurrentUser:
    return CurrentUser(id="user-9", tenant_id="tenant-9", role="member")


def test_tenant_comes_from_the_resolved_user(db, client):
    """Overriding the auth dependency scopes every read to that user's tenant."""

    credential_vault.save(db, "tenant-9", "brickowl", {"api_key": "owl"})
    app.dependency_overrides[get_current_user] = _override_current_user
    try:
        response = client.get("/api/marketplaces/providers")
    finally:
        app.dependency_overrides.pop(get_current_user, None)

    assert response.status_code == 200
    assert response.json() == {"providers": ["brickowl"]}

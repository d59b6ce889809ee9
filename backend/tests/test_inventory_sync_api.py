import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models_sqlalchemy.models import InventoryItem, InventorySyncOutbox
from app.services.auth import create_access_token
from app.services.credential_vault import credential_vault


TENANT = "tenant-1"


def _headers(role="owner", tenant_id=TENANT):
    token = create_access_token({"sub": "user-1", "tenant_id": tenant_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db):
    return TestClient(app)


@pytest.fixture
def stock(db):
    item = InventoryItem(
        tenant_id=TENANT,
        part_number="3001",
        color_id="5",
        condition="new",
        location="A-1",
        quantity_available=10,
        quantity_reserved=0,
        bricklink_lot_id=5001,
    )
    db.add(item)
    db.commit()
    return item


def test_owner_queues_item_sync_for_every_target(client, db, stock):
    credential_vault.save(db, TENANT, "bricklink", {
        "consumer_key": "ck", "consumer_secret": "cs", "token_value": "tv", "token_secret": "ts",
    })
    credential_vault.update_sync_settings(db, TENANT, "bricklink", sync_enabled=True)

    response = client.post(f"/api/inventory/items/{stock.id}/sync", json={}, headers=_headers())

    assert response.status_code == 200
    (message,) = response.json()
    assert message["provider"] == "bricklink"
    assert message["kind"] == "update"
    assert message["status"] == "pending"

    listing = client.get("/api/inventory/sync/outbox?status=pending", headers=_headers()).json()
    assert [m["id"] for m in listing] == [message["id"]]
    assert client.get("/api/inventory/sync/outbox", headers=_headers(tenant_id="tenant-2")).json() == []


def test_item_sync_validation(client, stock):
    missing = client.post("/api/inventory/items/nope/sync", json={}, headers=_headers())
    assert missing.status_code == 404

    other_tenant = client.post(f"/api/inventory/items/{stock.id}/sync", json={}, headers=_headers(tenant_id="tenant-2"))
    assert other_tenant.status_code == 404

    bad_provider = client.post(
        f"/api/inventory/items/{stock.id}/sync", json={"provider": "etsy"}, headers=_headers(),
    )
    assert bad_provider.status_code == 400

    bad_kind = client.post(
        f"/api/inventory/items/{stock.id}/sync", json={"provider": "bricklink", "kind": "merge"}, headers=_headers(),
    )
    assert bad_kind.status_code == 422

    assert client.get("/api/inventory/sync/outbox?status=lost", headers=_headers()).status_code == 400


def test_outbox_routes_require_owner(client, stock):
    member = _headers(role="member")

    assert client.get("/api/inventory/sync/outbox", headers=member).status_code == 403
    assert client.post(f"/api/inventory/items/{stock.id}/sync", json={}, headers=member).status_code == 403
    assert client.post("/api/inventory/sync/outbox/x/requeue", headers=member).status_code == 403


def test_requeue_only_accepts_failed_rows(client, db, stock):
    failed = InventorySyncOutbox(
        tenant_id=TENANT,
        inventory_item_id=stock.id,
        provider="bricklink",
        kind="update",
        status="failed",
        attempt=5,
        last_error="SERVER_ERROR: boom",
    )
    db.add(failed)
    db.commit()

    response = client.post(f"/api/inventory/sync/outbox/{failed.id}/requeue", headers=_headers())

    assert response.status_code == 200
    data = response.json()
    assert data["id"] != failed.id
    assert data["status"] == "pending"
    assert data["attempt"] == 0

    again = client.post(f"/api/inventory/sync/outbox/{data['id']}/requeue", headers=_headers())
    assert again.status_code == 404

from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.models_sqlalchemy.models import BrickLinkNotification, MarketplaceOrder
from app.services.credential_vault import credential_vault
from app.services.marketplace_errors import ErrorCode, MarketplaceError
from app.services.webhook_notifications import (
    build_dedupe_key,
    is_replay,
    parse_event_timestamp,
    poll_notifications,
    poll_tenant,
    process_notification,
    upsert_notification,
)
from marketplace_payloads import bricklink_item, bricklink_order


TENANT = "tenant-1"
EVENT_TS = datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)


class FakeStoreClient:
    def __init__(self, orders=None, notifications=None):
        self.orders = orders or {}
        self.notifications = notifications or []
        self.calls = []

    async def get_order(self, order_id):
        self.calls.append(("get_order", order_id))
        if order_id not in self.orders:
            raise MarketplaceError(ErrorCode.NOT_FOUND, f"order {order_id} not found", http_status=404, retryable=False)
        return self.orders[order_id]

    async def get_order_items(self, order_id):
        self.calls.append(("get_order_items", order_id))
        return [[bricklink_item()]]

    async def get_notifications(self):
        return self.notifications


def _factory(client):
    return lambda db, tenant_id: client


def _notification(db, notification_id):
    db.expire_all()
    return db.get(BrickLinkNotification, notification_id)


def test_dedupe_key_and_timestamps():
    assert build_dedupe_key(TENANT, "Order", 3001, EVENT_TS) == "tenant-1:Order:3001:2024-03-01T10:15:00Z"
    assert parse_event_timestamp("2024-03-01T10:15:00Z") == EVENT_TS
    assert parse_event_timestamp("2024-03-01T10:15:00") == EVENT_TS
    assert parse_event_timestamp("soon") is None
    assert parse_event_timestamp(None) is None


def test_replay_window():
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    window = timedelta(seconds=settings.WEBHOOK_REPLAY_WINDOW_SECONDS)

    assert is_replay(now - window - timedelta(seconds=1), now=now) is True
    assert is_replay(now - window + timedelta(seconds=1), now=now) is False
    assert is_replay((now - window * 2).replace(tzinfo=None), now=now) is True


def test_upsert_notification_deduplicates(db):
    row, created = upsert_notification(db, TENANT, "Order", 3001, EVENT_TS)
    assert created is True
    assert row.status == "pending"
    assert row.attempts == 0

    row.status = "failed"
    row.attempts = 3
    row.last_error = "SERVER_ERROR: boom"
    db.commit()

    again, created = upsert_notification(db, TENANT, "Order", 3001, EVENT_TS)
    assert created is False
    assert again.id == row.id
    assert again.attempts == 0
    assert again.last_error is None
    assert db.query(BrickLinkNotification).count() == 1


def test_upsert_leaves_completed_notifications_alone(db):
    row, _ = upsert_notification(db, TENANT, "Order", 3001, EVENT_TS)
    row.status = "completed"
    row.attempts = 1
    db.commit()

    again, created = upsert_notification(db, TENANT, "Order", 3001, EVENT_TS)
    assert created is False
    assert again.status == "completed"
    assert again.attempts == 1


@pytest.mark.asyncio
async def test_order_notification_ingests_the_order(db):
    """An Order event fetches the order with its items and stores it."""

    row, _ = upsert_notification(db, TENANT, "Order", 3001, EVENT_TS)
    client = FakeStoreClient(orders={3001: bricklink_order()})

    status = await process_notification(row.id, store_client_factory=_factory(client))

    assert status == "completed"
    assert client.calls == [("get_order", 3001), ("get_order_items", 3001)]
    refreshed = _notification(db, row.id)
    assert refreshed.status == "completed"
    assert refreshed.attempts == 1
    assert refreshed.processed_at is not None
    assert db.query(MarketplaceOrder).filter_by(tenant_id=TENANT, order_id="3001").count() == 1

    # Already completed: nothing else happens.
    assert await process_notification(row.id, store_client_factory=_factory(client)) == "completed"
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_failed_processing_records_normalized_error(db):
    row, _ = upsert_notification(db, TENANT, "Order", 4040, EVENT_TS)

    status = await process_notification(row.id, store_client_factory=_factory(FakeStoreClient()))

    assert status == "failed"
    refreshed = _notification(db, row.id)
    assert refreshed.status == "failed"
    assert refreshed.attempts == 1
    assert refreshed.last_error.startswith(f"{ErrorCode.NOT_FOUND.value}:")


@pytest.mark.asyncio
async def test_unmappable_order_is_recorded_as_invalid_response(db):
    row, _ = upsert_notification(db, TENANT, "Order", 3001, EVENT_TS)
    client = FakeStoreClient(orders={3001: bricklink_order(status="TELEPORTED")})

    assert await process_notification(row.id, store_client_factory=_factory(client)) == "failed"
    assert _notification(db, row.id).last_error.startswith("INVALID_RESPONSE: UnsupportedStatus")


@pytest.mark.asyncio
async def test_exhausted_notification_goes_to_dead_letter(db):
    row, _ = upsert_notification(db, TENANT, "Order", 3001, EVENT_TS)
    row.status = "failed"
    row.attempts = settings.WEBHOOK_MAX_PROCESSING_ATTEMPTS
    db.commit()
    client = FakeStoreClient(orders={3001: bricklink_order()})

    assert await process_notification(row.id, store_client_factory=_factory(client)) == "dead_letter"
    assert client.calls == []
    assert _notification(db, row.id).status == "dead_letter"


@pytest.mark.asyncio
async def test_message_notifications_are_acknowledged(db):
    row, _ = upsert_notification(db, TENANT, "Message", 42, EVENT_TS)
    client = FakeStoreClient()

    assert await process_notification(row.id, store_client_factory=_factory(client)) == "completed"
    assert client.calls == []


@pytest.mark.asyncio
async def test_unknown_notification_id(db):
    assert await process_notification("missing") is None


@pytest.mark.asyncio
async def test_poll_tenant_stores_and_processes_backlog(db):
    client = FakeStoreClient(
        orders={3001: bricklink_order()},
        notifications=[
            {"event_type": "Order", "resource_id": 3001, "timestamp": "2024-03-01T10:15:00Z"},
            {"event_type": "Order", "resource_id": "3001", "timestamp": "2024-03-01T10:15:00Z"},
            {"event_type": "Shipment", "resource_id": 1, "timestamp": "2024-03-01T10:15:00Z"},
        ],
    )

    result = await poll_tenant(db, TENANT, store_client_factory=_factory(client))

    assert result == {"fetched": 3, "stored": 1, "skipped": 2, "processed": 1}
    db.expire_all()
    assert db.query(BrickLinkNotification).one().status == "completed"


@pytest.mark.asyncio
async def test_poll_notifications_only_visits_syncing_tenants(db):
    fields = {"consumer_key": "ck", "consumer_secret": "cs", "token_value": "tv", "token_secret": "ts"}
    credential_vault.save(db, "syncing", "bricklink", fields)
    credential_vault.update_sync_settings(db, "syncing", "bricklink", sync_enabled=True)
    credential_vault.save(db, "paused", "bricklink", fields)

    visited = []
    client = FakeStoreClient()

    def factory(session, tenant_id):
        visited.append(tenant_id)
        return client

    summary = await poll_notifications(store_client_factory=factory)

    assert visited == ["syncing"]
    assert summary["tenants"] == 1
    assert summary["failed_tenants"] == 0

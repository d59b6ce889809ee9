from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.models.marketplace import StoreOperationError, StoreOperationResult, StoreRollbackData
from app.models_sqlalchemy.models import InventoryItem, InventoryQuantityLedger, InventorySyncOutbox
from app.services.credential_vault import credential_vault
from app.services.inventory_sync import (
    drain_outbox,
    enqueue_inventory_sync,
    requeue_failed,
    sync_targets,
    window_delta,
)
from app.services.marketplace_errors import ErrorCode, MarketplaceError
from app.services.order_ingestion import upsert_order
from marketplace_payloads import bricklink_item, bricklink_order


TENANT = "tenant-1"
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

BRICKLINK_FIELDS = {"consumer_key": "ck", "consumer_secret": "cs", "token_value": "tv", "token_secret": "ts"}


class FakeStoreClient:
    """Records inventory writes; answers with queued results or a plain success."""

    def __init__(self, results=None):
        self.calls = []
        self.results = list(results or [])

    def _result(self, marketplace_id):
        if self.results:
            return self.results.pop(0)
        return StoreOperationResult(
            success=True,
            correlation_id="corr-1",
            marketplace_id=marketplace_id,
            rollback_data=StoreRollbackData(previous_quantity=10),
        )

    async def create_inventory(self, payload):
        self.calls.append(("create", payload))
        return self._result(7001)

    async def update_inventory(self, lot_id, payload):
        self.calls.append(("update", lot_id, payload))
        return self._result(lot_id)

    async def delete_inventory(self, lot_id):
        self.calls.append(("delete", lot_id))
        return self._result(lot_id)


def _factory(client):
    return lambda db, tenant_id, provider: client


def _failure(code, retryable):
    return StoreOperationResult(
        success=False,
        correlation_id="corr-err",
        error=StoreOperationError(code=code.value, message="store said no", retryable=retryable),
    )


def _stock(db, **overrides):
    values = dict(
        tenant_id=TENANT,
        part_number="3001",
        name="Brick 2 x 4",
        color_id="5",
        condition="new",
        location="A-1",
        quantity_available=10,
        quantity_reserved=0,
        price=0.25,
    )
    values.update(overrides)
    item = InventoryItem(**values)
    db.add(item)
    db.commit()
    return item


def _entry(db, item, seq, delta, *, source="user", reason="manual_adjustment"):
    pre = item.quantity_available
    item.quantity_available = pre + delta
    db.add(
        InventoryQuantityLedger(
            tenant_id=TENANT,
            inventory_item_id=item.id,
            seq=seq,
            pre_available=pre,
            post_available=pre + delta,
            delta_available=delta,
            reason=reason,
            source=source,
        )
    )
    db.commit()


def _enable_inventory_sync(db, provider, fields):
    credential_vault.save(db, TENANT, provider, fields)
    credential_vault.update_sync_settings(db, TENANT, provider, sync_enabled=True, inventory_sync_enabled=True)


def _outbox(db):
    db.expire_all()
    return db.query(InventorySyncOutbox).order_by(InventorySyncOutbox.created_at).all()


def test_sync_targets_follow_inventory_sync_settings(db):
    _enable_inventory_sync(db, "brickowl", {"api_key": "k"})
    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)
    credential_vault.update_sync_settings(db, TENANT, "bricklink", sync_enabled=True, inventory_sync_enabled=False)

    assert sync_targets(db, TENANT) == ["brickowl"]
    assert sync_targets(db, TENANT, exclude="brickowl") == []
    assert sync_targets(db, "someone-else") == []


def test_order_sale_queues_push_to_the_other_store(db):
    _enable_inventory_sync(db, "brickowl", {"api_key": "k"})
    _enable_inventory_sync(db, "bricklink", BRICKLINK_FIELDS)
    stock = _stock(db)

    result = upsert_order(db, TENANT, "bricklink", bricklink_order(), [[bricklink_item()]])

    assert result.sync_messages == 1
    (message,) = _outbox(db)
    assert message.provider == "brickowl"
    assert message.kind == "update"
    assert message.status == "pending"
    assert (message.from_seq_exclusive, message.to_seq_inclusive) == (0, 1)
    assert message.correlation_id == result.correlation_id
    assert db.get(InventoryItem, stock.id).brickowl_sync_status == "pending"


def test_order_sale_without_inventory_sync_queues_nothing(db):
    credential_vault.save(db, TENANT, "brickowl", {"api_key": "k"})
    credential_vault.update_sync_settings(db, TENANT, "brickowl", sync_enabled=True, inventory_sync_enabled=False)
    _stock(db)

    result = upsert_order(db, TENANT, "bricklink", bricklink_order(), [[bricklink_item()]])

    assert result.ledger_entries == 1
    assert result.sync_messages == 0
    assert _outbox(db) == []


def test_pending_row_absorbs_later_changes(db):
    stock = _stock(db, bricklink_lot_id=5001)
    _entry(db, stock, 1, -2)
    first = enqueue_inventory_sync(db, stock, "bricklink", now=NOW)
    db.commit()
    _entry(db, stock, 2, -1)
    second = enqueue_inventory_sync(db, stock, "bricklink", kind="delete", now=NOW)
    db.commit()

    assert first.id == second.id
    (message,) = _outbox(db)
    assert (message.from_seq_exclusive, message.to_seq_inclusive) == (0, 2)
    assert message.kind == "delete"

    with pytest.raises(ValueError):
        enqueue_inventory_sync(db, stock, "lego-shop")


def test_window_delta_leaves_out_the_stores_own_sales(db):
    stock = _stock(db)
    _entry(db, stock, 1, -3, source="bricklink", reason="order_sale")
    _entry(db, stock, 2, 5)
    _entry(db, stock, 3, -1, source="brickowl", reason="order_sale")

    assert window_delta(db, stock.id, 0, 3, "bricklink") == 4
    assert window_delta(db, stock.id, 0, 3, "brickowl") == 2
    assert window_delta(db, stock.id, 1, 2, "brickowl") == 5


@pytest.mark.asyncio
async def test_bricklink_update_pushes_relative_delta_and_advances_cursor(db):
    stock = _stock(db, bricklink_lot_id=5001)
    _entry(db, stock, 1, -3, source="bricklink", reason="order_sale")
    _entry(db, stock, 2, 5)
    enqueue_inventory_sync(db, stock, "bricklink", now=NOW)
    db.commit()
    client = FakeStoreClient()

    summary = await drain_outbox(now=NOW, client_factory=_factory(client))

    assert summary == {"due": 1, "succeeded": 1, "retrying": 0, "failed": 0, "skipped": 0}
    assert client.calls == [("update", 5001, {"quantity": "+5"})]
    (message,) = _outbox(db)
    assert message.status == "succeeded"
    assert message.attempt == 1
    assert message.rollback_data["previous_quantity"] == 10
    item = db.get(InventoryItem, stock.id)
    assert item.bricklink_synced_seq == 2
    assert item.bricklink_synced_available == 12
    assert item.bricklink_sync_status == "synced"


@pytest.mark.asyncio
async def test_bricklink_create_links_the_new_lot(db):
    stock = _stock(db)
    enqueue_inventory_sync(db, stock, "bricklink", kind="create", now=NOW)
    db.commit()
    client = FakeStoreClient()

    await drain_outbox(now=NOW, client_factory=_factory(client))

    (call,) = client.calls
    assert call[0] == "create"
    assert call[1]["item"] == {"no": "3001", "type": "PART"}
    assert call[1]["quantity"] == 10
    assert call[1]["new_or_used"] == "N"
    assert call[1]["unit_price"] == "0.250"
    db.expire_all()
    assert db.get(InventoryItem, stock.id).bricklink_lot_id == 7001


@pytest.mark.asyncio
async def test_brickowl_gets_absolute_quantity(db):
    stock = _stock(db, brickowl_lot_id="BO-1")
    _entry(db, stock, 1, -2, source="bricklink", reason="order_sale")
    enqueue_inventory_sync(db, stock, "brickowl", now=NOW)
    db.commit()
    client = FakeStoreClient()

    await drain_outbox(now=NOW, client_factory=_factory(client))

    assert client.calls == [("update", "BO-1", {"absolute_quantity": 8})]
    db.expire_all()
    assert db.get(InventoryItem, stock.id).brickowl_synced_available == 8


@pytest.mark.asyncio
async def test_unlinked_brickowl_item_fails_permanently(db):
    stock = _stock(db)
    enqueue_inventory_sync(db, stock, "brickowl", now=NOW)
    db.commit()
    client = FakeStoreClient()

    summary = await drain_outbox(now=NOW, client_factory=_factory(client))

    assert summary["failed"] == 1
    assert client.calls == []
    (message,) = _outbox(db)
    assert message.status == "failed"
    assert message.last_error.startswith("VALIDATION:")
    item = db.get(InventoryItem, stock.id)
    assert item.brickowl_sync_status == "failed"
    assert "BrickOwl lot" in item.brickowl_sync_error


@pytest.mark.asyncio
async def test_delete_without_a_lot_needs_no_call(db):
    stock = _stock(db)
    enqueue_inventory_sync(db, stock, "bricklink", kind="delete", now=NOW)
    db.commit()
    client = FakeStoreClient()

    summary = await drain_outbox(now=NOW, client_factory=_factory(client))

    assert summary["succeeded"] == 1
    assert client.calls == []


@pytest.mark.asyncio
async def test_retryable_failure_backs_off_then_gives_up(db, monkeypatch):
    monkeypatch.setattr(settings, "INVENTORY_SYNC_JITTER_MS", 0)
    monkeypatch.setattr(settings, "INVENTORY_SYNC_MAX_ATTEMPTS", 2)
    stock = _stock(db, bricklink_lot_id=5001)
    _entry(db, stock, 1, -1)
    enqueue_inventory_sync(db, stock, "bricklink", now=NOW)
    db.commit()
    client = FakeStoreClient(
        results=[_failure(ErrorCode.SERVER_ERROR, True), _failure(ErrorCode.SERVER_ERROR, True)]
    )

    first = await drain_outbox(now=NOW, client_factory=_factory(client))
    assert first["retrying"] == 1
    (message,) = _outbox(db)
    assert message.status == "pending"
    assert message.attempt == 1
    assert message.last_error == "SERVER_ERROR: store said no"

    not_due = await drain_outbox(now=NOW + timedelta(seconds=1), client_factory=_factory(client))
    assert not_due["due"] == 0

    second = await drain_outbox(now=NOW + timedelta(seconds=3), client_factory=_factory(client))
    assert second["failed"] == 1
    (message,) = _outbox(db)
    assert message.status == "failed"
    assert message.attempt == 2
    assert db.get(InventoryItem, stock.id).bricklink_synced_seq is None


@pytest.mark.asyncio
async def test_client_errors_are_recorded_as_failures(db):
    stock = _stock(db, bricklink_lot_id=5001)
    _entry(db, stock, 1, -1)
    enqueue_inventory_sync(db, stock, "bricklink", now=NOW)
    db.commit()

    def factory(session, tenant_id, provider):
        raise MarketplaceError(ErrorCode.CREDENTIALS_NOT_FOUND, "no bricklink credentials", retryable=False)

    summary = await drain_outbox(now=NOW, client_factory=factory)

    assert summary["failed"] == 1
    (message,) = _outbox(db)
    assert message.last_error.startswith("CREDENTIALS_NOT_FOUND")


@pytest.mark.asyncio
async def test_requeue_failed_covers_the_missed_window(db):
    stock = _stock(db, bricklink_lot_id=5001)
    _entry(db, stock, 1, -2)
    enqueue_inventory_sync(db, stock, "bricklink", now=NOW)
    db.commit()
    client = FakeStoreClient(results=[_failure(ErrorCode.VALIDATION, False)])
    await drain_outbox(now=NOW, client_factory=_factory(client))
    (failed,) = _outbox(db)

    assert requeue_failed(db, "someone-else", failed.id, now=NOW) is None
    fresh = requeue_failed(db, TENANT, failed.id, now=NOW)

    assert fresh.id != failed.id
    assert (fresh.from_seq_exclusive, fresh.to_seq_inclusive) == (0, 1)
    await drain_outbox(now=NOW, client_factory=_factory(client))
    assert client.calls[-1] == ("update", 5001, {"quantity": "-2"})
    assert requeue_failed(db, TENANT, fresh.id, now=NOW) is None

import pytest

from app.models.marketplace import WebhookEnsureResult
from app.workers import marketplace_sync_loop


def _patch_sweeps(monkeypatch, calls, *, poll=None, brickowl=None, drain=None, ensure=None):
    async def _poll():
        calls.append("notifications")
        return {"tenants": 2, "failed_tenants": 0, "processed": 3, "stored": 1}

    async def _brickowl():
        calls.append("brickowl_orders")
        return {"tenants": 1, "failed_tenants": 0, "ingested": 2, "failed_orders": 0}

    async def _drain():
        calls.append("inventory_outbox")
        return {"due": 2, "succeeded": 2, "retrying": 0, "failed": 0, "skipped": 0}

    async def _ensure():
        calls.append("webhooks")
        return []

    monkeypatch.setattr(marketplace_sync_loop, "poll_notifications", poll or _poll)
    monkeypatch.setattr(marketplace_sync_loop, "poll_brickowl_orders", brickowl or _brickowl)
    monkeypatch.setattr(marketplace_sync_loop, "drain_outbox", drain or _drain)
    monkeypatch.setattr(marketplace_sync_loop, "ensure_webhooks", ensure or _ensure)


@pytest.mark.asyncio
async def test_sync_once_runs_every_sweep(monkeypatch):
    calls = []

    async def _ensure():
        calls.append("webhooks")
        return [
            WebhookEnsureResult(tenant_id="a", status="registered", refreshed=True),
            WebhookEnsureResult(tenant_id="b", status="registered", refreshed=False),
            WebhookEnsureResult(tenant_id="c", status="error", refreshed=True, error="AUTH: bad token"),
        ]

    _patch_sweeps(monkeypatch, calls, ensure=_ensure)

    result = await marketplace_sync_loop.run_marketplace_sync_once()

    assert calls == ["notifications", "brickowl_orders", "inventory_outbox", "webhooks"]
    assert result["notifications"]["processed"] == 3
    assert result["brickowl_orders"]["ingested"] == 2
    assert result["inventory_outbox"]["succeeded"] == 2
    assert result["webhooks"]["checked"] == 3
    assert result["webhooks"]["refreshed"] == 2
    assert [e["tenant_id"] for e in result["webhooks"]["errors"]] == ["c"]


@pytest.mark.asyncio
async def test_polling_failure_does_not_skip_webhook_sweep(monkeypatch):
    calls = []

    async def _poll():
        raise RuntimeError("database unavailable")

    _patch_sweeps(monkeypatch, calls, poll=_poll)

    result = await marketplace_sync_loop.run_marketplace_sync_once()

    assert result["notifications"] == {"status": "error", "error": "database unavailable"}
    assert calls == ["brickowl_orders", "inventory_outbox", "webhooks"]
    assert result["webhooks"]["checked"] == 0


@pytest.mark.asyncio
async def test_brickowl_and_outbox_failures_are_isolated(monkeypatch):
    calls = []

    async def _brickowl():
        raise RuntimeError("brickowl down")

    async def _drain():
        raise RuntimeError("outbox locked")

    _patch_sweeps(monkeypatch, calls, brickowl=_brickowl, drain=_drain)

    result = await marketplace_sync_loop.run_marketplace_sync_once()

    assert result["brickowl_orders"] == {"status": "error", "error": "brickowl down"}
    assert result["inventory_outbox"] == {"status": "error", "error": "outbox locked"}
    assert calls == ["notifications", "webhooks"]

from types import SimpleNamespace

import pytest

from app.services.bricklink_store_client import BrickLinkStoreClient
from app.services.brickowl_store_client import BrickOwlStoreClient
from app.services.marketplace_errors import ErrorCode, MarketplaceError


class FakeTransport:
    """Answers ``(method, path)`` from a table; entries may be exceptions."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    async def request(self, request):
        self.requests.append(request)
        result = self.routes[(request.method, request.path)]
        if isinstance(result, Exception):
            raise result
        return SimpleNamespace(data=result)


def _bricklink(routes):
    transport = FakeTransport(routes)
    return BrickLinkStoreClient("tenant-1", None, transport=transport), transport


def _brickowl(routes):
    transport = FakeTransport(routes)
    return BrickOwlStoreClient("tenant-1", None, transport=transport), transport


NEW_LOT = {
    "item": {"no": "3001", "type": "PART"},
    "color_id": 5,
    "quantity": 10,
    "unit_price": "0.75",
    "new_or_used": "N",
    "remarks": "A-1",
}


# --- BrickLink ---

@pytest.mark.asyncio
async def test_bricklink_create_inventory_returns_id_and_payload():
    client, transport = _bricklink({("POST", "/inventories"): {"inventory_id": 777}})

    result = await client.create_inventory(NEW_LOT)

    assert result.success is True
    assert result.marketplace_id == 777
    assert result.rollback_data.original_payload["item"] == {"no": "3001", "type": "PART"}
    (request,) = transport.requests
    assert request.body["quantity"] == 10
    assert request.correlation_id == result.correlation_id
    assert request.retry_safe is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"quantity": -1}, {"unit_price": "cheap"}, {"new_or_used": "X"}, {"item": {"no": " ", "type": "PART"}}],
)
async def test_bricklink_create_inventory_validates_before_calling(overrides):
    client, transport = _bricklink({})

    result = await client.create_inventory({**NEW_LOT, **overrides})

    assert result.success is False
    assert result.error.code == ErrorCode.VALIDATION.value
    assert result.error.retryable is False
    assert transport.requests == []


@pytest.mark.asyncio
async def test_bricklink_create_inventory_wraps_provider_errors():
    client, _ = _bricklink({
        ("POST", "/inventories"): MarketplaceError(ErrorCode.RATE_LIMITED, "slow down", http_status=429, retryable=True),
    })

    result = await client.create_inventory(NEW_LOT)

    assert result.success is False
    assert result.error.code == ErrorCode.RATE_LIMITED.value
    assert result.error.retryable is True
    assert result.error.http_status == 429


@pytest.mark.asyncio
async def test_bricklink_create_inventory_requires_inventory_id():
    client, _ = _bricklink({("POST", "/inventories"): {"unexpected": True}})

    result = await client.create_inventory(NEW_LOT)

    assert result.success is False
    assert result.error.code == ErrorCode.INVALID_RESPONSE.value


@pytest.mark.asyncio
async def test_bricklink_update_inventory_snapshots_touched_fields():
    client, transport = _bricklink({
        ("GET", "/inventories/555"): {"inventory_id": 555, "quantity": 4, "unit_price": "1.0000", "remarks": "A-1"},
        ("PUT", "/inventories/555"): {"inventory_id": 555},
    })

    result = await client.update_inventory(555, {"quantity": "-2", "remarks": "B-2"})

    assert result.success is True
    assert result.marketplace_id == 555
    assert result.rollback_data.previous_quantity == 4
    assert result.rollback_data.previous_location == "A-1"
    assert result.rollback_data.previous_price is None
    assert [r.method for r in transport.requests] == ["GET", "PUT"]
    assert transport.requests[1].body == {"quantity": "-2", "remarks": "B-2"}


@pytest.mark.asyncio
async def test_bricklink_update_inventory_requires_delta_quantity():
    client, transport = _bricklink({})

    result = await client.update_inventory(555, {"quantity": "5"})

    assert result.success is False
    assert result.error.code == ErrorCode.VALIDATION.value
    assert transport.requests == []


@pytest.mark.asyncio
async def test_bricklink_delete_inventory():
    client, transport = _bricklink({
        ("GET", "/inventories/555"): {"inventory_id": 555, "quantity": 4, "unit_price": "1.0000", "description": "d"},
        ("DELETE", "/inventories/555"): None,
    })

    result = await client.delete_inventory(555)

    assert result.success is True
    assert result.rollback_data.previous_quantity == 4
    assert result.rollback_data.previous_notes == "d"
    assert result.rollback_data.original_payload["inventory_id"] == 555

    invalid = await client.delete_inventory(0)
    assert invalid.success is False
    assert invalid.error.code == ErrorCode.VALIDATION.value
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_bricklink_reads_and_webhook_registration():
    client, transport = _bricklink({
        ("GET", "/orders/3001"): [],
        ("GET", "/orders"): None,
        ("POST", "/notifications/register"): {},
    })

    with pytest.raises(MarketplaceError) as exc_info:
        await client.get_order(3001)
    assert exc_info.value.code == ErrorCode.INVALID_RESPONSE.value

    assert await client.list_orders(status="PAID") == []
    assert transport.requests[1].query == {"direction": "in", "status": "PAID"}

    await client.register_webhook("https://connector.example.com/api/bricklink/webhook/abc")
    register = transport.requests[2]
    assert register.body == {"url": "https://connector.example.com/api/bricklink/webhook/abc"}
    assert register.retry_safe is True


# --- BrickOwl ---

@pytest.mark.asyncio
async def test_brickowl_update_inventory():
    client, transport = _brickowl({
        ("GET", "/inventory/list"): [{"lot_id": "L1", "qty": "4", "price": 1.25, "personal_note": "shelf"}],
        ("POST", "/inventory/update"): {"status": "ok"},
    })

    result = await client.update_inventory("L1", {"absolute_quantity": 6})

    assert result.success is True
    assert result.marketplace_id == "L1"
    assert result.rollback_data.previous_quantity == 4
    assert result.rollback_data.previous_price == "1.25"
    assert result.rollback_data.previous_notes == "shelf"
    update = transport.requests[1]
    assert update.body == {"lot_id": "L1", "absolute_quantity": 6}
    assert update.retry_safe is True


@pytest.mark.asyncio
async def test_brickowl_update_inventory_failures():
    client, transport = _brickowl({("GET", "/inventory/list"): []})

    empty = await client.update_inventory("L1", {})
    assert empty.error.code == ErrorCode.VALIDATION.value
    assert transport.requests == []

    missing = await client.update_inventory("L1", {"price": "2.00"})
    assert missing.success is False
    assert missing.error.code == ErrorCode.NOT_FOUND.value
    assert missing.error.retryable is False


@pytest.mark.asyncio
async def test_brickowl_delete_inventory():
    client, transport = _brickowl({
        ("GET", "/inventory/list"): [{"lot_id": "L1", "qty": "4", "price": 1.25}],
        ("POST", "/inventory/delete"): {"status": "ok"},
    })

    result = await client.delete_inventory("L1")

    assert result.success is True
    assert result.marketplace_id == "L1"
    assert result.rollback_data.previous_quantity == 4
    delete = transport.requests[1]
    assert delete.body == {"lot_id": "L1"}
    assert delete.retry_safe is False

    blank = await client.delete_inventory("")
    assert blank.error.code == ErrorCode.VALIDATION.value
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_brickowl_reads_unwrap_envelopes():
    client, _ = _brickowl({
        ("GET", "/order/list"): {"orders": [{"order_id": "8812"}]},
        ("GET", "/order/view"): {},
        ("GET", "/order/items"): {"items": [{"boid": "3001"}]},
    })

    assert await client.list_orders() == [{"order_id": "8812"}]
    assert await client.get_order_items("8812") == [{"boid": "3001"}]
    with pytest.raises(MarketplaceError) as exc_info:
        await client.get_order("8812")
    assert exc_info.value.code == ErrorCode.NOT_FOUND.value

"""
BrickOwl order normalizer.

BrickOwl payloads are loosely shaped (several spellings for the same field),
so fields are read with fallbacks. Statuses still fail loud when unknown.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from .common import (
    UNKNOWN_LOCATION,
    CanonicalOrder,
    CanonicalOrderItem,
    NormalizationError,
    NormalizationErrorCode,
    OrderStatus,
    current_time_ms,
    normalize_currency,
    parse_int_like,
    parse_number_like,
    parse_timestamp_like,
    pick_first_string,
    require_id,
    stringify_address,
)

PROVIDER = "brickowl"

ORDER_ID_KEYS = ("order_id", "id", "orderId", "orderID", "uuid")

STATUS_MAP: Dict[str, str] = {
    "0": OrderStatus.PENDING.value,
    "1": OrderStatus.UPDATED.value,
    "2": OrderStatus.PAID.value,
    "3": OrderStatus.PROCESSING.value,
    "4": OrderStatus.READY.value,
    "5": OrderStatus.SHIPPED.value,
    "6": OrderStatus.RECEIVED.value,
    "7": OrderStatus.HOLD.value,
    "8": OrderStatus.CANCELLED.value,
    "pending": OrderStatus.PENDING.value,
    "payment submitted": OrderStatus.UPDATED.value,
    "payment received": OrderStatus.PAID.value,
    "processing": OrderStatus.PROCESSING.value,
    "processed": OrderStatus.READY.value,
    "shipped": OrderStatus.SHIPPED.value,
    "received": OrderStatus.RECEIVED.value,
    "on hold": OrderStatus.HOLD.value,
    "cancelled": OrderStatus.CANCELLED.value,
}


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def normalize_status(status: Any) -> str:
    if status is None:
        return OrderStatus.PENDING.value

    if isinstance(status, bool):
        key = ""
    elif isinstance(status, (int, float)):
        key = str(int(status))
    elif isinstance(status, str):
        key = status.strip().lower()
    else:
        key = ""

    if key in STATUS_MAP:
        return STATUS_MAP[key]
    raise NormalizationError(
        NormalizationErrorCode.UnsupportedStatus,
        f"Unsupported BrickOwl order status: {status}",
        provider=PROVIDER,
        field="status",
        value=status,
    )


def normalize_condition(condition: Any) -> Optional[str]:
    if condition is None:
        return None
    value = str(condition).strip().lower()
    if value.startswith("new") or value == "n":
        return "new"
    if value.startswith("used") or value == "u":
        return "used"
    return None


def extract_order_id(payload: Mapping[str, Any]) -> Optional[str]:
    return pick_first_string(_first(payload, *ORDER_ID_KEYS))


def extract_provider_status(payload: Mapping[str, Any]) -> Optional[str]:
    """The status label BrickOwl gave the order, kept verbatim."""

    if isinstance(payload.get("status"), str):
        return payload["status"]
    if payload.get("status_text"):
        return str(payload["status_text"])
    if payload.get("status_id") is not None:
        return str(payload["status_id"])
    if payload.get("status") is not None:
        return str(payload["status"])
    return None


def normalize_order(payload: Any) -> CanonicalOrder:
    if not isinstance(payload, dict):
        raise NormalizationError(
            NormalizationErrorCode.InvalidValue, "BrickOwl order must be an object", provider=PROVIDER, field="order",
        )

    order_id = require_id(_first(payload, *ORDER_ID_KEYS), provider=PROVIDER)

    buyer = _mapping(payload.get("buyer")) or _mapping(payload.get("customer"))
    shipping = _mapping(payload.get("shipping"))
    payment = _mapping(payload.get("payment"))
    store = _mapping(payload.get("store"))

    raw_status = _first(payload, "status", "status_id", "status_text")
    provider_status = extract_provider_status(payload)

    currency = normalize_currency(
        _first(payment, "currency", "currency_code") or _first(payload, "currency", "currency_code"),
        provider=PROVIDER,
    )

    if payload.get("order_number"):
        external_key = str(payload["order_number"])
    elif payload.get("store_id"):
        external_key = f"{order_id}:{payload['store_id']}"
    else:
        external_key = order_id

    date_ordered = parse_timestamp_like(_first(payload, "created", "order_time", "created_at"))

    return CanonicalOrder(
        order_id=order_id,
        external_order_key=external_key,
        date_ordered=date_ordered if date_ordered is not None else current_time_ms(),
        date_status_changed=parse_timestamp_like(_first(payload, "updated", "updated_at")),
        status=normalize_status(raw_status),
        provider_status=provider_status,
        buyer_name=pick_first_string(buyer.get("username"), buyer.get("name"), payload.get("buyer_name")),
        buyer_email=pick_first_string(buyer.get("email"), payload.get("buyer_email")),
        buyer_order_count=parse_int_like(_first(buyer, "order_count") or payload.get("buyer_order_count")),
        store_name=pick_first_string(payload.get("store_name"), store.get("name")),
        seller_name=pick_first_string(payload.get("seller_name")),
        remarks=pick_first_string(payload.get("note"), payload.get("notes"), payload.get("remark")),
        total_count=parse_int_like(_first(payload, "total_items", "total_quantity", "item_count")),
        lot_count=parse_int_like(_first(payload, "unique_items", "unique_count")),
        total_weight=parse_number_like(payload.get("total_weight")),
        payment_method=pick_first_string(payment.get("method")),
        payment_currency_code=currency,
        payment_date_paid=parse_timestamp_like(_first(payment, "date_paid") or payload.get("payment_time")),
        payment_status=pick_first_string(payment.get("status")),
        shipping_method=pick_first_string(shipping.get("method"), payload.get("shipping_method")),
        shipping_method_id=str(shipping["method_id"]) if shipping.get("method_id") is not None else None,
        shipping_tracking_no=pick_first_string(
            shipping.get("tracking_id"), shipping.get("tracking_no"), payload.get("tracking_id"),
        ),
        shipping_tracking_link=pick_first_string(shipping.get("tracking_url"), shipping.get("tracking_link")),
        shipping_date_shipped=parse_timestamp_like(_first(shipping, "date_shipped") or payload.get("shipped_time")),
        shipping_address=stringify_address(shipping.get("address")),
        cost_currency_code=currency,
        cost_subtotal=parse_number_like(_first(payload, "subtotal", "items_total")),
        cost_grand_total=parse_number_like(_first(payload, "total", "grand_total")),
        cost_sales_tax=parse_number_like(payload.get("tax_total")),
        cost_final_total=parse_number_like(_first(payload, "final_total", "total")),
        cost_insurance=parse_number_like(payload.get("insurance_total")),
        cost_shipping=parse_number_like(payload.get("shipping_total")),
        cost_credit=parse_number_like(_first(payload, "credit_total", "discount_total")),
        cost_coupon=parse_number_like(payload.get("coupon_total")),
        provider_data=payload,
    )


def _normalize_item(order_id: str, item: Dict[str, Any]) -> CanonicalOrderItem:
    item_no = pick_first_string(item.get("boid"), item.get("item_no"), item.get("external_id"))
    if item_no is None:
        item_no = require_id(_first(item, "lot_id", "order_item_id") or order_id, provider=PROVIDER, field="order_item_id")

    quantity = parse_int_like(_first(item, "quantity", "qty", "total_quantity")) or 0

    return CanonicalOrderItem(
        provider_order_key=pick_first_string(item.get("order_id")) or order_id,
        provider_item_id=pick_first_string(item.get("order_item_id"), item.get("lot_id")),
        item_no=item_no,
        item_name=pick_first_string(item.get("name")),
        item_type=pick_first_string(item.get("type")),
        item_category_id=parse_int_like(item.get("category_id")),
        color_id=parse_int_like(item.get("color_id")),
        color_name=pick_first_string(item.get("color_name")),
        quantity=quantity,
        condition=normalize_condition(item.get("condition")),
        completeness=pick_first_string(item.get("completeness")),
        unit_price=parse_number_like(_first(item, "price", "unit_price")),
        unit_price_final=parse_number_like(_first(item, "final_price", "price")),
        currency_code=normalize_currency(item.get("currency"), provider=PROVIDER, field="currency"),
        remarks=pick_first_string(item.get("note"), item.get("remarks")),
        description=pick_first_string(item.get("description")),
        weight=parse_number_like(item.get("weight")),
        location=pick_first_string(item.get("location"), item.get("bin")) or UNKNOWN_LOCATION,
        provider_data=item,
    )


def normalize_order_items(order_id: str, payload: Any) -> List[CanonicalOrderItem]:
    """Accepts either a bare list of items or ``{"items": [...]}``."""

    if isinstance(payload, dict):
        payload = payload.get("items") or []
    if not isinstance(payload, list):
        raise NormalizationError(
            NormalizationErrorCode.InvalidValue,
            "BrickOwl order items must be a list",
            provider=PROVIDER,
            field="items",
        )

    items: List[CanonicalOrderItem] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise NormalizationError(
                NormalizationErrorCode.InvalidValue,
                "BrickOwl order item must be an object",
                provider=PROVIDER,
                field=f"items.{index}",
            )
        items.append(_normalize_item(order_id, item))
    return items

"""Provider payloads shaped like real BrickLink / BrickOwl responses."""

import copy
from typing import Any, Dict, List


_BRICKLINK_ORDER: Dict[str, Any] = {
    "order_id": 3001,
    "date_ordered": "2024-03-01T10:15:00.000Z",
    "date_status_changed": "2024-03-01T11:00:00.000Z",
    "seller_name": "brick_seller",
    "store_name": "Brick Seller Store",
    "buyer_name": "jane_builder",
    "buyer_email": "jane@example.com",
    "buyer_order_count": 4,
    "require_insurance": False,
    "status": "PAID",
    "is_invoiced": True,
    "is_filed": False,
    "drive_thru_sent": False,
    "salesTax_collected_by_bl": False,
    "remarks": "Please pack carefully",
    "total_count": 2,
    "unique_count": 1,
    "total_weight": "4.20",
    "payment": {
        "method": "PayPal",
        "currency_code": "usd",
        "date_paid": "2024-03-01T10:20:00.000Z",
        "status": "Received",
    },
    "shipping": {
        "method": "USPS First Class",
        "method_id": 12,
        "address": {
            "name": {"full": "Jane Builder"},
            "full": "1 Brick Lane",
            "country_code": "US",
        },
    },
    "cost": {
        "currency_code": "USD",
        "subtotal": "1.5000",
        "grand_total": "5.5000",
        "shipping": "4.0000",
        "insurance": "0.0000",
    },
}

_BRICKLINK_ITEM: Dict[str, Any] = {
    "inventory_id": 555001,
    "item": {"no": "3001", "name": "Brick 2 x 4", "type": "PART", "category_id": 5},
    "color_id": 5,
    "color_name": "Red",
    "quantity": 2,
    "new_or_used": "N",
    "completeness": None,
    "unit_price": "0.7500",
    "unit_price_final": "0.7500",
    "currency_code": "USD",
    "remarks": "A-1",
    "description": "",
    "weight": "2.10",
}

_BRICKOWL_ORDER: Dict[str, Any] = {
    "order_id": "8812",
    "order_time": 1709288100,
    "status": "Payment Received",
    "buyer": {"username": "owlfan", "email": "owl@example.com", "order_count": "2"},
    "payment": {"method": "Stripe", "currency": "eur"},
    "shipping": {"method": "DHL", "tracking_id": "TRK1"},
    "total_items": "3",
    "unique_items": "2",
    "subtotal": "2.40",
    "total": "7.90",
}

_BRICKOWL_ITEMS: List[Dict[str, Any]] = [
    {
        "order_item_id": "9001",
        "boid": "3001",
        "name": "Brick 2 x 4",
        "color_id": "5",
        "quantity": "2",
        "condition": "New",
        "price": "0.80",
        "location": "A-1",
    },
    {
        "order_item_id": "9002",
        "boid": "3003",
        "name": "Brick 2 x 2",
        "color_id": 1,
        "qty": 1,
        "condition": "usedc",
        "price": "0.80",
    },
]


def bricklink_order(**overrides: Any) -> Dict[str, Any]:
    order = copy.deepcopy(_BRICKLINK_ORDER)
    order.update(overrides)
    return order


def bricklink_item(**overrides: Any) -> Dict[str, Any]:
    item = copy.deepcopy(_BRICKLINK_ITEM)
    item.update(overrides)
    return item


def brickowl_order(**overrides: Any) -> Dict[str, Any]:
    order = copy.deepcopy(_BRICKOWL_ORDER)
    order.update(overrides)
    return order


def brickowl_items() -> List[Dict[str, Any]]:
    return copy.deepcopy(_BRICKOWL_ITEMS)

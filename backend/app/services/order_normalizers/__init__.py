"""Provider order payloads -> canonical orders.

This package contains:
- Canonical records, value parsers and errors (common.py)
- BrickLink normalizer with strict schemas (bricklink.py)
- BrickOwl normalizer (brickowl.py)
"""

from typing import Any, List

from . import bricklink, brickowl
from .common import (
    ORDER_STATUS_VALUES,
    UNKNOWN_LOCATION,
    CanonicalOrder,
    CanonicalOrderItem,
    NormalizationError,
    NormalizationErrorCode,
    OrderStatus,
    ms_to_datetime,
    parse_number_like,
    parse_timestamp_like,
    stringify_address,
)

_NORMALIZERS = {
    bricklink.PROVIDER: bricklink,
    brickowl.PROVIDER: brickowl,
}


def _normalizer_for(provider: str):
    try:
        return _NORMALIZERS[provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}") from None


def normalize_order(provider: str, payload: Any) -> CanonicalOrder:
    return _normalizer_for(provider).normalize_order(payload)


def normalize_order_items(provider: str, order_id: str, batches: Any) -> List[CanonicalOrderItem]:
    return _normalizer_for(provider).normalize_order_items(order_id, batches)


__all__ = [
    "ORDER_STATUS_VALUES",
    "UNKNOWN_LOCATION",
    "CanonicalOrder",
    "CanonicalOrderItem",
    "NormalizationError",
    "NormalizationErrorCode",
    "OrderStatus",
    "ms_to_datetime",
    "normalize_order",
    "normalize_order_items",
    "parse_number_like",
    "parse_timestamp_like",
    "stringify_address",
]

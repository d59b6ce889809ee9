"""
Canonical order model shared by all provider normalizers.

Timestamps are epoch milliseconds (``int``); money and weights are floats.
Optional numeric fields that are absent or unparsable become ``None``.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================================
# STATUSES
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    UPDATED = "UPDATED"
    PROCESSING = "PROCESSING"
    READY = "READY"
    PAID = "PAID"
    PACKED = "PACKED"
    SHIPPED = "SHIPPED"
    RECEIVED = "RECEIVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    HOLD = "HOLD"
    ARCHIVED = "ARCHIVED"


ORDER_STATUS_VALUES = frozenset(s.value for s in OrderStatus)

UNKNOWN_LOCATION = "UNKNOWN"


# ============================================================================
# ERRORS
# ============================================================================

class NormalizationErrorCode(str, Enum):
    MissingField = "MissingField"
    UnsupportedStatus = "UnsupportedStatus"
    InvalidCurrency = "InvalidCurrency"
    InvalidValue = "InvalidValue"


_DEFAULT_MESSAGES = {
    NormalizationErrorCode.MissingField: "Normalization failed: required field is missing or empty.",
    NormalizationErrorCode.UnsupportedStatus: "Normalization failed: status value is not supported.",
    NormalizationErrorCode.InvalidCurrency: "Normalization failed: currency value could not be normalized.",
    NormalizationErrorCode.InvalidValue: "Normalization failed due to an invalid field value.",
}


class NormalizationError(ValueError):
    """A provider payload could not be mapped onto the canonical model."""

    def __init__(
        self,
        code: NormalizationErrorCode | str,
        message: Optional[str] = None,
        *,
        provider: Optional[str] = None,
        field: Optional[str] = None,
        value: Any = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.code = NormalizationErrorCode(code)
        self.message = message or _DEFAULT_MESSAGES[self.code]
        super().__init__(self.message)
        self.provider = provider
        self.field = field
        self.value = value
        self.meta = meta or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.provider:
            payload["provider"] = self.provider
        if self.field:
            payload["field"] = self.field
        if self.value is not None:
            payload["value"] = self.value
        if self.meta:
            payload["meta"] = self.meta
        return payload


# ============================================================================
# VALUE PARSERS
# ============================================================================

# Numbers below this are taken to be seconds rather than milliseconds.
UNIX_SECOND_THRESHOLD = 1e11


def _finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _number_from_string(value: str) -> Optional[float]:
    s = value.strip()
    if not s:
        return None
    try:
        parsed = float(s)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def parse_number_like(value: Any) -> Optional[float]:
    """Parse numbers and numeric strings; anything else is ``None``. Never raises."""

    if _finite_number(value):
        return value
    if isinstance(value, str):
        return _number_from_string(value)
    return None


def parse_int_like(value: Any) -> Optional[int]:
    parsed = parse_number_like(value)
    return int(parsed) if parsed is not None else None


def _parse_iso(value: str) -> Optional[datetime]:
    s = value.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_timestamp_like(value: Any) -> Optional[int]:
    """Convert ISO strings, numbers or numeric strings to epoch milliseconds.

    Values between 0 and 1e11 are treated as seconds.
    """

    if _finite_number(value):
        if 0 < value < UNIX_SECOND_THRESHOLD:
            return int(value * 1000)
        return int(value)

    if isinstance(value, str) and value.strip():
        numeric = _number_from_string(value)
        if numeric is not None:
            return parse_timestamp_like(numeric)
        parsed = _parse_iso(value)
        if parsed is not None:
            return int(parsed.timestamp() * 1000)

    return None


def current_time_ms() -> int:
    return int(time.time() * 1000)


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def pick_first_string(*candidates: Any) -> Optional[str]:
    """First non-empty (trimmed) string; numbers are stringified."""

    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, str):
            trimmed = candidate.strip()
            if trimmed:
                return trimmed
            continue
        if _finite_number(candidate):
            return str(candidate)
    return None


def require_id(raw: Any, *, provider: Optional[str] = None, field: str = "order_id") -> str:
    candidate = pick_first_string(raw)
    if not candidate:
        raise NormalizationError(NormalizationErrorCode.MissingField, provider=provider, field=field, value=raw)
    return candidate


def normalize_currency(value: Any, *, provider: Optional[str] = None, field: str = "currency_code") -> Optional[str]:
    """Upper-cased ISO-4217 code, ``None`` when absent."""

    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    code = str(value).strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise NormalizationError(NormalizationErrorCode.InvalidCurrency, provider=provider, field=field, value=value)
    return code


def stringify_address(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError):
        return None


# ============================================================================
# CANONICAL RECORDS
# ============================================================================

@dataclass
class CanonicalOrder:
    order_id: str
    date_ordered: int
    status: str
    external_order_key: Optional[str] = None
    date_status_changed: Optional[int] = None
    provider_status: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_order_count: Optional[int] = None
    store_name: Optional[str] = None
    seller_name: Optional[str] = None
    remarks: Optional[str] = None
    total_count: Optional[int] = None
    lot_count: Optional[int] = None
    total_weight: Optional[float] = None
    payment_method: Optional[str] = None
    payment_currency_code: Optional[str] = None
    payment_date_paid: Optional[int] = None
    payment_status: Optional[str] = None
    shipping_method: Optional[str] = None
    shipping_method_id: Optional[str] = None
    shipping_tracking_no: Optional[str] = None
    shipping_tracking_link: Optional[str] = None
    shipping_date_shipped: Optional[int] = None
    shipping_address: Optional[str] = None
    cost_currency_code: Optional[str] = None
    cost_subtotal: Optional[float] = None
    cost_grand_total: Optional[float] = None
    cost_sales_tax: Optional[float] = None
    cost_final_total: Optional[float] = None
    cost_insurance: Optional[float] = None
    cost_shipping: Optional[float] = None
    cost_credit: Optional[float] = None
    cost_coupon: Optional[float] = None
    provider_data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CanonicalOrderItem:
    item_no: str
    quantity: int
    location: str = UNKNOWN_LOCATION
    status: str = "unpicked"
    provider_order_key: Optional[str] = None
    provider_item_id: Optional[str] = None
    item_name: Optional[str] = None
    item_type: Optional[str] = None
    item_category_id: Optional[int] = None
    color_id: Optional[int] = None
    color_name: Optional[str] = None
    condition: Optional[str] = None  # new, used
    completeness: Optional[str] = None
    unit_price: Optional[float] = None
    unit_price_final: Optional[float] = None
    currency_code: Optional[str] = None
    remarks: Optional[str] = None
    description: Optional[str] = None
    weight: Optional[float] = None
    provider_data: Any = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

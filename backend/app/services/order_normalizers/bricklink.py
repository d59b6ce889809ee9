"""
BrickLink order normalizer.

Payloads are validated against strict pydantic models first; a shape or
type mismatch is a :class:`NormalizationError`, never a silent coercion.
"""

from __future__ import annotations

from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .common import (
    ORDER_STATUS_VALUES,
    UNKNOWN_LOCATION,
    CanonicalOrder,
    CanonicalOrderItem,
    NormalizationError,
    NormalizationErrorCode,
    OrderStatus,
    normalize_currency,
    parse_number_like,
    parse_timestamp_like,
    stringify_address,
)

PROVIDER = "bricklink"

# Order "alert" statuses (payment/shipping problems) all surface as HOLD.
ALERT_STATUSES = frozenset({"OCR", "NPB", "NPX", "NRS", "NSS"})


# ============================================================================
# SCHEMAS
# ============================================================================

class _Strict(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")


class BLPayment(_Strict):
    method: str
    currency_code: str
    date_paid: Optional[str] = None
    status: str


class BLAddressName(_Strict):
    full: Optional[str] = None
    first: Optional[str] = None
    last: Optional[str] = None


class BLAddress(_Strict):
    name: Optional[BLAddressName] = None
    full: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    phone_number: Optional[str] = None


class BLShipping(_Strict):
    method: Optional[str] = None
    method_id: Optional[Union[str, int]] = None
    tracking_no: Optional[str] = None
    tracking_link: Optional[str] = None
    date_shipped: Optional[str] = None
    address: Optional[BLAddress] = None


class BLCost(_Strict):
    currency_code: str
    subtotal: str
    grand_total: str
    salesTax_collected_by_BL: Optional[str] = None
    final_total: Optional[str] = None
    etc1: Optional[str] = None
    etc2: Optional[str] = None
    insurance: Optional[str] = None
    shipping: Optional[str] = None
    credit: Optional[str] = None
    coupon: Optional[str] = None
    vat_rate: Optional[str] = None
    vat_amount: Optional[str] = None


class BLOrder(_Strict):
    order_id: Union[str, int]
    resource_id: Optional[Union[str, int]] = None
    date_ordered: str
    date_status_changed: str
    seller_name: str
    store_name: str
    buyer_name: str
    buyer_email: str
    buyer_order_count: int
    require_insurance: bool
    status: str
    is_invoiced: bool
    is_filed: bool
    drive_thru_sent: bool
    salesTax_collected_by_bl: bool
    remarks: Optional[str] = None
    total_count: int
    unique_count: int
    total_weight: Optional[str] = None
    payment: Optional[BLPayment] = None
    shipping: Optional[BLShipping] = None
    cost: BLCost


class BLItemRef(_Strict):
    no: str
    name: str
    type: str
    category_id: Optional[int] = None


class BLOrderItem(_Strict):
    inventory_id: Optional[int] = None
    item: BLItemRef
    color_id: int
    color_name: Optional[str] = None
    quantity: int
    new_or_used: Literal["N", "U"]
    completeness: Optional[Literal["C", "B", "S"]] = None
    unit_price: str
    unit_price_final: str
    disp_unit_price: Optional[str] = None
    disp_unit_price_final: Optional[str] = None
    currency_code: str
    disp_currency_code: Optional[str] = None
    remarks: Optional[str] = None
    description: Optional[str] = None
    weight: Optional[str] = None


def _schema_error(exc: ValidationError, payload: Any) -> NormalizationError:
    first = exc.errors(include_url=False)[0]
    field = ".".join(str(part) for part in first.get("loc", ()))
    code = NormalizationErrorCode.MissingField if first.get("type") == "missing" else NormalizationErrorCode.InvalidValue
    return NormalizationError(
        code,
        f"BrickLink payload failed validation at '{field}': {first.get('msg')}",
        provider=PROVIDER,
        field=field or None,
        meta={"issues": exc.errors(include_url=False, include_input=False)},
    )


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_status(status: str) -> str:
    normalized = status.strip().upper()
    if normalized in ALERT_STATUSES:
        return OrderStatus.HOLD.value
    if normalized in ORDER_STATUS_VALUES:
        return normalized
    raise NormalizationError(
        NormalizationErrorCode.UnsupportedStatus,
        f"Unsupported BrickLink order status: {status}",
        provider=PROVIDER,
        field="status",
        value=status,
    )


def normalize_order(payload: Any) -> CanonicalOrder:
    try:
        raw = BLOrder.model_validate(payload)
    except ValidationError as exc:
        raise _schema_error(exc, payload) from exc

    order_id = str(raw.order_id)
    date_ordered = parse_timestamp_like(raw.date_ordered)
    if date_ordered is None:
        raise NormalizationError(
            NormalizationErrorCode.InvalidValue, provider=PROVIDER, field="date_ordered", value=raw.date_ordered,
        )

    payment = raw.payment
    shipping = raw.shipping
    cost = raw.cost

    return CanonicalOrder(
        order_id=order_id,
        external_order_key=str(raw.resource_id) if raw.resource_id else order_id,
        date_ordered=date_ordered,
        date_status_changed=parse_timestamp_like(raw.date_status_changed),
        status=normalize_status(raw.status),
        provider_status=raw.status,
        buyer_name=raw.buyer_name,
        buyer_email=raw.buyer_email,
        buyer_order_count=raw.buyer_order_count,
        store_name=raw.store_name,
        seller_name=raw.seller_name,
        remarks=raw.remarks,
        total_count=raw.total_count,
        lot_count=raw.unique_count,
        total_weight=parse_number_like(raw.total_weight),
        payment_method=payment.method if payment else None,
        payment_currency_code=(
            normalize_currency(payment.currency_code, provider=PROVIDER, field="payment.currency_code")
            if payment else None
        ),
        payment_date_paid=parse_timestamp_like(payment.date_paid) if payment else None,
        payment_status=payment.status if payment else None,
        shipping_method=shipping.method if shipping else None,
        shipping_method_id=str(shipping.method_id) if shipping and shipping.method_id is not None else None,
        shipping_tracking_no=shipping.tracking_no if shipping else None,
        shipping_tracking_link=shipping.tracking_link if shipping else None,
        shipping_date_shipped=parse_timestamp_like(shipping.date_shipped) if shipping else None,
        shipping_address=(
            stringify_address(shipping.address.model_dump(exclude_none=True))
            if shipping and shipping.address else None
        ),
        cost_currency_code=normalize_currency(cost.currency_code, provider=PROVIDER, field="cost.currency_code"),
        cost_subtotal=parse_number_like(cost.subtotal),
        cost_grand_total=parse_number_like(cost.grand_total),
        cost_sales_tax=parse_number_like(cost.salesTax_collected_by_BL),
        cost_final_total=parse_number_like(cost.final_total),
        cost_insurance=parse_number_like(cost.insurance),
        cost_shipping=parse_number_like(cost.shipping),
        cost_credit=parse_number_like(cost.credit),
        cost_coupon=parse_number_like(cost.coupon),
        provider_data=payload,
    )


def _normalize_item(order_id: str, raw: BLOrderItem, payload: Any) -> CanonicalOrderItem:
    location = (raw.remarks or "").strip() or UNKNOWN_LOCATION
    return CanonicalOrderItem(
        provider_order_key=order_id,
        provider_item_id=str(raw.inventory_id) if raw.inventory_id else None,
        item_no=raw.item.no,
        item_name=raw.item.name,
        item_type=raw.item.type,
        item_category_id=raw.item.category_id,
        color_id=raw.color_id,
        color_name=raw.color_name,
        quantity=raw.quantity,
        condition="new" if raw.new_or_used == "N" else "used",
        completeness=raw.completeness,
        unit_price=parse_number_like(raw.unit_price),
        unit_price_final=parse_number_like(raw.unit_price_final),
        currency_code=normalize_currency(raw.currency_code, provider=PROVIDER),
        remarks=raw.remarks,
        description=raw.description,
        weight=parse_number_like(raw.weight),
        location=location,
        provider_data=payload,
    )


def normalize_order_items(order_id: str, batches: Any) -> List[CanonicalOrderItem]:
    """Flatten BrickLink's list-of-batches item payload."""

    if not isinstance(batches, list) or not all(isinstance(batch, list) for batch in batches):
        raise NormalizationError(
            NormalizationErrorCode.InvalidValue,
            "BrickLink order items must be a list of batches",
            provider=PROVIDER,
            field="items",
        )

    items: List[CanonicalOrderItem] = []
    for batch_index, batch in enumerate(batches):
        for item_index, payload in enumerate(batch):
            try:
                raw = BLOrderItem.model_validate(payload)
            except ValidationError as exc:
                error = _schema_error(exc, payload)
                error.meta["batch"] = batch_index
                error.meta["index"] = item_index
                raise error from exc
            items.append(_normalize_item(order_id, raw, payload))
    return items

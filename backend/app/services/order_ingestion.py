"""Persist a provider order and reserve matching inventory.

``upsert_order`` is one transaction: the order row, its full item set, the
inventory reservations and their ledger entries are committed together or
not at all.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import (
    InventoryItem,
    InventoryMatchStatus,
    InventoryQuantityLedger,
    LedgerReason,
    MarketplaceOrder,
    MarketplaceOrderItem,
)
from app.services.inventory_sync import enqueue_for_change, sync_targets
from app.services.order_normalizers import (
    CanonicalOrder,
    CanonicalOrderItem,
    NormalizationError,
    NormalizationErrorCode,
    ms_to_datetime,
    normalize_order,
    normalize_order_items,
)
from app.utils.logger import logger


ORDER_SALE_REASON = LedgerReason.order_sale.value


@dataclass
class IngestionResult:
    order_id: str
    created: bool
    correlation_id: str
    item_count: int = 0
    matched_items: int = 0
    unmatched_items: List[str] = field(default_factory=list)
    ledger_entries: int = 0
    sync_messages: int = 0


def _get_session(db: Optional[Session] = None) -> Tuple[Session, bool]:
    """Return a session and a flag indicating ownership."""

    if db is not None:
        return db, False
    return SessionLocal(), True


def _normalize(provider: str, order_payload: Any, item_batches: Any) -> Tuple[CanonicalOrder, List[CanonicalOrderItem]]:
    try:
        order = normalize_order(provider, order_payload)
    except NormalizationError:
        raise
    except Exception as exc:
        raise NormalizationError(
            NormalizationErrorCode.InvalidValue,
            "Failed to normalize provider order payload.",
            provider=provider,
            meta={"stage": "order", "error": str(exc)},
        ) from exc

    try:
        items = normalize_order_items(provider, order.order_id, item_batches)
    except NormalizationError:
        raise
    except Exception as exc:
        raise NormalizationError(
            NormalizationErrorCode.InvalidValue,
            "Failed to normalize provider order items.",
            provider=provider,
            meta={"stage": "items", "order_id": order.order_id, "error": str(exc)},
        ) from exc

    return order, items


def _apply_order_fields(row: MarketplaceOrder, order: CanonicalOrder, now: datetime) -> None:
    row.external_order_key = order.external_order_key
    row.date_ordered = ms_to_datetime(order.date_ordered)
    row.date_status_changed = ms_to_datetime(order.date_status_changed)
    row.status = order.status
    row.provider_status = order.provider_status
    row.buyer_name = order.buyer_name
    row.buyer_email = order.buyer_email
    row.buyer_order_count = order.buyer_order_count
    row.store_name = order.store_name
    row.seller_name = order.seller_name
    row.remarks = order.remarks
    row.total_count = order.total_count
    row.lot_count = order.lot_count
    row.total_weight = order.total_weight
    row.payment_method = order.payment_method
    row.payment_currency_code = order.payment_currency_code
    row.payment_date_paid = ms_to_datetime(order.payment_date_paid)
    row.payment_status = order.payment_status
    row.shipping_method = order.shipping_method
    row.shipping_method_id = order.shipping_method_id
    row.shipping_tracking_no = order.shipping_tracking_no
    row.shipping_tracking_link = order.shipping_tracking_link
    row.shipping_date_shipped = ms_to_datetime(order.shipping_date_shipped)
    row.shipping_address = order.shipping_address
    row.cost_currency_code = order.cost_currency_code
    row.cost_subtotal = order.cost_subtotal
    row.cost_grand_total = order.cost_grand_total
    row.cost_sales_tax = order.cost_sales_tax
    row.cost_final_total = order.cost_final_total
    row.cost_insurance = order.cost_insurance
    row.cost_shipping = order.cost_shipping
    row.cost_credit = order.cost_credit
    row.cost_coupon = order.cost_coupon
    row.provider_data = order.provider_data
    row.last_synced_at = now
    row.updated_at = now


def find_inventory_item(db: Session, tenant_id: str, item: CanonicalOrderItem) -> Optional[InventoryItem]:
    """Strict business-key match, locked for the rest of the transaction."""

    if item.color_id is None or not item.condition:
        return None
    return (
        db.query(InventoryItem)
        .filter(
            InventoryItem.tenant_id == tenant_id,
            InventoryItem.part_number == item.item_no,
            InventoryItem.color_id == str(item.color_id),
            InventoryItem.condition == item.condition,
            InventoryItem.location == item.location,
        )
        .with_for_update()
        .one_or_none()
    )


def last_ledger_entry(db: Session, inventory_item_id: str) -> Optional[InventoryQuantityLedger]:
    return (
        db.query(InventoryQuantityLedger)
        .filter(InventoryQuantityLedger.inventory_item_id == inventory_item_id)
        .order_by(InventoryQuantityLedger.seq.desc())
        .first()
    )


def _reserved_by_earlier_sync(
    db: Session, inventory_item_id: str, provider: str, order_id: str, correlation_id: str,
) -> bool:
    count = (
        db.query(func.count(InventoryQuantityLedger.id))
        .filter(
            InventoryQuantityLedger.inventory_item_id == inventory_item_id,
            InventoryQuantityLedger.reason == ORDER_SALE_REASON,
            InventoryQuantityLedger.source == provider,
            InventoryQuantityLedger.order_id == order_id,
            InventoryQuantityLedger.correlation_id != correlation_id,
        )
        .scalar()
    )
    return bool(count)


def reserve_inventory(
    db: Session,
    inventory_item: InventoryItem,
    quantity: int,
    *,
    tenant_id: str,
    provider: str,
    order_id: str,
    correlation_id: str,
    now: datetime,
) -> InventoryQuantityLedger:
    """Move ``quantity`` from available to reserved and append a ledger entry.

    ``pre_available`` comes from the ledger itself; the mutable row value is
    only used for the very first entry of an item.
    """

    previous = last_ledger_entry(db, inventory_item.id)
    seq = previous.seq + 1 if previous is not None else 1
    pre_available = previous.post_available if previous is not None else (inventory_item.quantity_available or 0)
    post_available = pre_available - quantity

    inventory_item.quantity_available = (inventory_item.quantity_available or 0) - quantity
    inventory_item.quantity_reserved = (inventory_item.quantity_reserved or 0) + quantity
    inventory_item.updated_at = now

    entry = InventoryQuantityLedger(
        tenant_id=tenant_id,
        inventory_item_id=inventory_item.id,
        seq=seq,
        pre_available=pre_available,
        post_available=post_available,
        delta_available=-quantity,
        reason=ORDER_SALE_REASON,
        source=provider,
        order_id=order_id,
        correlation_id=correlation_id,
        created_at=now,
    )
    db.add(entry)
    return entry


def upsert_order(
    db: Optional[Session],
    tenant_id: str,
    provider: str,
    order_payload: Any,
    item_batches: Any,
) -> IngestionResult:
    """Normalize and store one order with full-replace item semantics.

    Re-ingesting the same order refreshes the order row and replaces its
    items; inventory already reserved for this order is not reserved again.
    Raises :class:`NormalizationError` for payloads that cannot be mapped.
    """

    order, items = _normalize(provider, order_payload, item_batches)

    session, owns_session = _get_session(db)
    now = datetime.now(timezone.utc)
    correlation_id = str(uuid.uuid4())

    try:
        row = (
            session.query(MarketplaceOrder)
            .filter(
                MarketplaceOrder.tenant_id == tenant_id,
                MarketplaceOrder.provider == provider,
                MarketplaceOrder.order_id == order.order_id,
            )
            .with_for_update()
            .one_or_none()
        )
        created = row is None
        if created:
            row = MarketplaceOrder(tenant_id=tenant_id, provider=provider, order_id=order.order_id, created_at=now)
            session.add(row)
        _apply_order_fields(row, order, now)

        session.query(MarketplaceOrderItem).filter(
            MarketplaceOrderItem.tenant_id == tenant_id,
            MarketplaceOrderItem.provider == provider,
            MarketplaceOrderItem.order_id == order.order_id,
        ).delete(synchronize_session=False)

        result = IngestionResult(
            order_id=order.order_id,
            created=created,
            correlation_id=correlation_id,
            item_count=len(items),
        )
        # Other stores this tenant pushes inventory to, looked up on first reservation.
        targets = None

        for item in items:
            item_row = MarketplaceOrderItem(
                tenant_id=tenant_id,
                provider=provider,
                order_id=order.order_id,
                provider_item_id=item.provider_item_id,
                item_no=item.item_no,
                item_name=item.item_name,
                item_type=item.item_type,
                item_category_id=item.item_category_id,
                color_id=item.color_id,
                color_name=item.color_name,
                quantity=item.quantity,
                condition=item.condition,
                completeness=item.completeness,
                unit_price=item.unit_price,
                unit_price_final=item.unit_price_final,
                currency_code=item.currency_code,
                remarks=item.remarks,
                description=item.description,
                weight=item.weight,
                location=item.location,
                status=item.status,
                inventory_match_status=InventoryMatchStatus.not_applicable.value,
                provider_data=item.provider_data,
                created_at=now,
            )
            session.add(item_row)

            if item.quantity <= 0:
                continue

            inventory_item = find_inventory_item(session, tenant_id, item)
            if inventory_item is None:
                item_row.inventory_match_status = InventoryMatchStatus.unmatched.value
                result.unmatched_items.append(item.item_no)
                logger.warning(
                    "Unmatched order line: tenant=%s provider=%s order=%s part=%s color=%s condition=%s location=%s qty=%s",
                    tenant_id, provider, order.order_id, item.item_no, item.color_id,
                    item.condition, item.location, item.quantity,
                )
                continue

            item_row.inventory_item_id = inventory_item.id
            item_row.inventory_match_status = InventoryMatchStatus.matched.value
            result.matched_items += 1

            if _reserved_by_earlier_sync(session, inventory_item.id, provider, order.order_id, correlation_id):
                logger.debug(
                    "Inventory already reserved for order=%s item=%s; skipping", order.order_id, inventory_item.id,
                )
                continue

            entry = reserve_inventory(
                session,
                inventory_item,
                item.quantity,
                tenant_id=tenant_id,
                provider=provider,
                order_id=order.order_id,
                correlation_id=correlation_id,
                now=now,
            )
            # Flushed per item so the next ledger lookup for the same item sees it.
            session.flush()
            result.ledger_entries += 1

            if targets is None:
                targets = sync_targets(session, tenant_id, exclude=provider)
            queued = enqueue_for_change(
                session, inventory_item, entry.seq, targets=targets, correlation_id=correlation_id, now=now,
            )
            result.sync_messages += len(queued)

        session.commit()
    except Exception:
        session.rollback()
        logger.error(
            "Order ingestion failed: tenant=%s provider=%s order=%s correlation_id=%s",
            tenant_id, provider, order.order_id, correlation_id, exc_info=True,
        )
        raise
    finally:
        if owns_session:
            session.close()

    logger.info(
        f"Order {'created' if result.created else 'updated'}: tenant={tenant_id} provider={provider} "
        f"order={result.order_id} items={result.item_count} matched={result.matched_items} "
        f"unmatched={len(result.unmatched_items)} correlation_id={correlation_id}"
    )
    return result

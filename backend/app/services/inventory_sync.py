"""Inventory push outbox.

Every change to an item's available quantity queues, in the same
transaction as its ledger entry, one outbox row per connected store. A row
covers the ledger window ``(from_seq_exclusive, to_seq_inclusive]`` and
moves through

    pending -> inflight -> succeeded
    pending -> inflight -> pending     (retryable failure, backed off)
    pending -> inflight -> failed      (permanent failure or attempts exhausted)

BrickLink only accepts relative quantity changes, so it receives the sum of
the window's deltas, leaving out the sales it reported itself. BrickOwl is
given the absolute quantity after the window. BrickOwl lots are never
created from here: an item has to be linked to an existing BrickOwl lot.
"""

from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, not_
from sqlalchemy.orm import Session

from app.config import settings
from app.models.marketplace import StoreOperationError, StoreOperationResult
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import (
    InventoryItem,
    InventoryQuantityLedger,
    InventorySyncOutbox,
    LedgerReason,
    MarketplaceCredential,
    MarketplaceProvider,
    OutboxKind,
    OutboxStatus,
)
from app.services.bricklink_store_client import BrickLinkStoreClient
from app.services.brickowl_store_client import BrickOwlStoreClient
from app.services.marketplace_errors import ErrorCode, failed_operation
from app.utils.logger import logger

BRICKLINK = MarketplaceProvider.bricklink.value
BRICKOWL = MarketplaceProvider.brickowl.value
PROVIDERS = (BRICKLINK, BRICKOWL)
KINDS = tuple(kind.value for kind in OutboxKind)

SyncClientFactory = Callable[[Session, str, str], Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def default_client_factory(db: Session, tenant_id: str, provider: str) -> Any:
    if provider == BRICKLINK:
        return BrickLinkStoreClient.for_tenant(db, tenant_id)
    if provider == BRICKOWL:
        return BrickOwlStoreClient.for_tenant(db, tenant_id)
    raise ValueError(f"Unsupported provider: {provider}")


# ============================================================================
# Ledger helpers
# ============================================================================

def latest_seq(db: Session, inventory_item_id: str) -> int:
    seq = (
        db.query(func.max(InventoryQuantityLedger.seq))
        .filter(InventoryQuantityLedger.inventory_item_id == inventory_item_id)
        .scalar()
    )
    return int(seq or 0)


def available_at(db: Session, item: InventoryItem, seq: int) -> int:
    """Available quantity right after ledger entry ``seq``.

    Items without ledger history report their current row value.
    """

    if seq > 0:
        entry = (
            db.query(InventoryQuantityLedger)
            .filter(
                InventoryQuantityLedger.inventory_item_id == item.id,
                InventoryQuantityLedger.seq == seq,
            )
            .one_or_none()
        )
        if entry is not None:
            return entry.post_available
    return item.quantity_available or 0


def window_delta(db: Session, inventory_item_id: str, from_seq: int, to_seq: int, provider: str) -> int:
    """Sum of deltas in ``(from_seq, to_seq]`` that ``provider`` has not applied itself."""

    own_sale = and_(
        InventoryQuantityLedger.source == provider,
        InventoryQuantityLedger.reason == LedgerReason.order_sale.value,
    )
    total = (
        db.query(func.coalesce(func.sum(InventoryQuantityLedger.delta_available), 0))
        .filter(
            InventoryQuantityLedger.inventory_item_id == inventory_item_id,
            InventoryQuantityLedger.seq > from_seq,
            InventoryQuantityLedger.seq <= to_seq,
            not_(own_sale),
        )
        .scalar()
    )
    return int(total or 0)


# ============================================================================
# Enqueue
# ============================================================================

def sync_targets(db: Session, tenant_id: str, *, exclude: Optional[str] = None) -> List[str]:
    """Providers the tenant pushes inventory to."""

    credentials = (
        db.query(MarketplaceCredential)
        .filter(
            MarketplaceCredential.tenant_id == tenant_id,
            MarketplaceCredential.is_active.is_(True),
        )
        .order_by(MarketplaceCredential.provider)
        .all()
    )
    return [
        c.provider for c in credentials
        if c.provider != exclude and c.sync_enabled and c.inventory_sync_enabled
    ]


def _synced_seq(item: InventoryItem, provider: str) -> int:
    return getattr(item, f"{provider}_synced_seq") or 0


def enqueue_inventory_sync(
    db: Session,
    item: InventoryItem,
    provider: str,
    *,
    kind: str = OutboxKind.update.value,
    to_seq: Optional[int] = None,
    correlation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> InventorySyncOutbox:
    """Queue a push of ``item`` to ``provider``. The caller commits.

    A pending row for the same item and store absorbs the new window
    instead of a second row being added. A delete replaces whatever was
    queued and a create replaces a queued update.
    """

    if provider not in PROVIDERS:
        raise ValueError(f"Unsupported provider: {provider}")
    if kind not in KINDS:
        raise ValueError(f"Unsupported outbox kind: {kind}")

    now = now or _now()
    if to_seq is None:
        to_seq = latest_seq(db, item.id)

    pending = (
        db.query(InventorySyncOutbox)
        .filter(
            InventorySyncOutbox.inventory_item_id == item.id,
            InventorySyncOutbox.provider == provider,
            InventorySyncOutbox.status == OutboxStatus.pending.value,
        )
        .order_by(InventorySyncOutbox.created_at)
        .with_for_update()
        .first()
    )
    if pending is not None:
        pending.to_seq_inclusive = max(pending.to_seq_inclusive, to_seq)
        if kind == OutboxKind.delete.value or pending.kind == OutboxKind.update.value:
            pending.kind = kind
        pending.updated_at = now
        return pending

    # Windows already on their way to the store must not be pushed twice.
    inflight_seq = (
        db.query(func.max(InventorySyncOutbox.to_seq_inclusive))
        .filter(
            InventorySyncOutbox.inventory_item_id == item.id,
            InventorySyncOutbox.provider == provider,
            InventorySyncOutbox.status == OutboxStatus.inflight.value,
        )
        .scalar()
    )
    from_seq = min(max(_synced_seq(item, provider), inflight_seq or 0), to_seq)

    message = InventorySyncOutbox(
        tenant_id=item.tenant_id,
        inventory_item_id=item.id,
        provider=provider,
        kind=kind,
        from_seq_exclusive=from_seq,
        to_seq_inclusive=to_seq,
        status=OutboxStatus.pending.value,
        attempt=0,
        next_attempt_at=now,
        correlation_id=correlation_id,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    setattr(item, f"{provider}_sync_status", OutboxStatus.pending.value)
    return message


def enqueue_for_change(
    db: Session,
    item: InventoryItem,
    to_seq: int,
    *,
    targets: List[str],
    correlation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[InventorySyncOutbox]:
    return [
        enqueue_inventory_sync(db, item, provider, to_seq=to_seq, correlation_id=correlation_id, now=now)
        for provider in targets
    ]


# ============================================================================
# Drain
# ============================================================================

def backoff_delay(attempt: int) -> timedelta:
    delay_ms = min(settings.INVENTORY_SYNC_BASE_DELAY_MS * (2 ** attempt), settings.INVENTORY_SYNC_MAX_DELAY_MS)
    delay_ms += random.randint(0, max(settings.INVENTORY_SYNC_JITTER_MS, 0))
    return timedelta(milliseconds=delay_ms)


def _noop(message: InventorySyncOutbox, marketplace_id: Any) -> StoreOperationResult:
    return StoreOperationResult(
        success=True,
        correlation_id=message.correlation_id or str(uuid.uuid4()),
        marketplace_id=marketplace_id,
    )


def _permanent_failure(message: InventorySyncOutbox, error_message: str) -> StoreOperationResult:
    return StoreOperationResult(
        success=False,
        correlation_id=message.correlation_id or str(uuid.uuid4()),
        error=StoreOperationError(code=ErrorCode.VALIDATION.value, message=error_message, retryable=False),
    )


def bricklink_create_payload(item: InventoryItem, quantity: int) -> Dict[str, Any]:
    return {
        "item": {"no": item.part_number, "type": "PART"},
        "color_id": item.color_id,
        "quantity": quantity,
        "unit_price": f"{item.price or 0:.3f}",
        "new_or_used": "N" if item.condition == "new" else "U",
        "remarks": item.location,
    }


async def _push_bricklink(db: Session, client: Any, item: InventoryItem, message: InventorySyncOutbox) -> StoreOperationResult:
    lot_id = item.bricklink_lot_id
    if message.kind == OutboxKind.delete.value:
        if lot_id is None:
            return _noop(message, None)
        return await client.delete_inventory(int(lot_id))

    if lot_id is None:
        quantity = available_at(db, item, message.to_seq_inclusive)
        if quantity <= 0:
            return _noop(message, None)
        return await client.create_inventory(bricklink_create_payload(item, quantity))

    delta = window_delta(db, item.id, message.from_seq_exclusive, message.to_seq_inclusive, BRICKLINK)
    if delta == 0:
        return _noop(message, lot_id)
    return await client.update_inventory(int(lot_id), {"quantity": f"{delta:+d}"})


async def _push_brickowl(db: Session, client: Any, item: InventoryItem, message: InventorySyncOutbox) -> StoreOperationResult:
    lot_id = item.brickowl_lot_id
    if lot_id is None:
        if message.kind == OutboxKind.delete.value:
            return _noop(message, None)
        return _permanent_failure(message, "Inventory item is not linked to a BrickOwl lot")

    if message.kind == OutboxKind.delete.value:
        return await client.delete_inventory(lot_id)

    quantity = max(available_at(db, item, message.to_seq_inclusive), 0)
    return await client.update_inventory(lot_id, {"absolute_quantity": quantity})


def _record_success(
    db: Session, message: InventorySyncOutbox, item: InventoryItem, result: StoreOperationResult, now: datetime,
) -> None:
    provider = message.provider
    message.status = OutboxStatus.succeeded.value
    message.attempt = message.attempt + 1
    message.last_error = None
    message.correlation_id = message.correlation_id or result.correlation_id
    message.rollback_data = result.rollback_data.model_dump() if result.rollback_data is not None else None
    message.updated_at = now

    if message.kind == OutboxKind.delete.value:
        setattr(item, f"{provider}_lot_id", None)
    elif result.marketplace_id is not None:
        lot_id = int(result.marketplace_id) if provider == BRICKLINK else str(result.marketplace_id)
        setattr(item, f"{provider}_lot_id", lot_id)

    synced_seq = max(_synced_seq(item, provider), message.to_seq_inclusive)
    setattr(item, f"{provider}_synced_seq", synced_seq)
    setattr(item, f"{provider}_synced_available", available_at(db, item, synced_seq))
    setattr(item, f"{provider}_sync_status", "synced")
    setattr(item, f"{provider}_sync_error", None)


def _record_failure(
    message: InventorySyncOutbox, item: Optional[InventoryItem], error: StoreOperationError, now: datetime,
) -> None:
    message.attempt = message.attempt + 1
    message.last_error = f"{error.code}: {error.message}"[:2000]
    message.updated_at = now

    if error.retryable and message.attempt < settings.INVENTORY_SYNC_MAX_ATTEMPTS:
        message.status = OutboxStatus.pending.value
        message.next_attempt_at = now + backoff_delay(message.attempt)
    else:
        message.status = OutboxStatus.failed.value

    if item is not None:
        setattr(item, f"{message.provider}_sync_error", message.last_error)
        if message.status == OutboxStatus.failed.value:
            setattr(item, f"{message.provider}_sync_status", OutboxStatus.failed.value)


def _claim(db: Session, message: InventorySyncOutbox, now: datetime) -> bool:
    claimed = (
        db.query(InventorySyncOutbox)
        .filter(
            InventorySyncOutbox.id == message.id,
            InventorySyncOutbox.status == OutboxStatus.pending.value,
            InventorySyncOutbox.attempt == message.attempt,
        )
        .update({"status": OutboxStatus.inflight.value, "updated_at": now}, synchronize_session=False)
    )
    db.commit()
    return claimed == 1


async def process_outbox_message(
    message_id: str,
    *,
    client_factory: Optional[SyncClientFactory] = None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Push one outbox row; returns its final status. Never raises."""

    factory = client_factory or default_client_factory
    now = now or _now()
    db = SessionLocal()
    try:
        message = db.query(InventorySyncOutbox).filter(InventorySyncOutbox.id == message_id).one_or_none()
        if message is None:
            logger.warning(f"Outbox message {message_id} not found")
            return None
        if message.status != OutboxStatus.pending.value:
            return message.status

        item = db.query(InventoryItem).filter(InventoryItem.id == message.inventory_item_id).one_or_none()

        if message.attempt >= settings.INVENTORY_SYNC_MAX_ATTEMPTS:
            message.status = OutboxStatus.failed.value
            message.updated_at = now
            if item is not None:
                setattr(item, f"{message.provider}_sync_status", OutboxStatus.failed.value)
            db.commit()
            logger.error(f"Outbox message {message.id} failed after {message.attempt} attempts: {message.last_error}")
            return message.status

        if not _claim(db, message, now):
            logger.info(f"Outbox message {message_id} was claimed by another worker")
            return None
        db.refresh(message)

        if item is None:
            result = _permanent_failure(message, "Inventory item no longer exists")
        else:
            try:
                client = factory(db, message.tenant_id, message.provider)
                if message.provider == BRICKLINK:
                    result = await _push_bricklink(db, client, item, message)
                else:
                    result = await _push_brickowl(db, client, item, message)
            except Exception as exc:
                result = failed_operation(message.provider, message.correlation_id or str(uuid.uuid4()), exc)

        if result.success:
            _record_success(db, message, item, result, now)
            logger.info(
                f"Outbox message {message.id} pushed {message.kind} to {message.provider} "
                f"item={message.inventory_item_id} window=({message.from_seq_exclusive},{message.to_seq_inclusive}]"
            )
        else:
            _record_failure(message, item, result.error, now)
            logger.warning(
                f"Outbox message {message.id} to {message.provider} failed (attempt {message.attempt}, "
                f"now {message.status}): {message.last_error}"
            )
        db.commit()
        return message.status
    except Exception as exc:
        db.rollback()
        logger.error(f"Outbox message {message_id} bookkeeping failed: {exc}", exc_info=True)
        return None
    finally:
        db.close()


async def drain_outbox(
    *,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
    client_factory: Optional[SyncClientFactory] = None,
) -> Dict[str, int]:
    """Push every due pending row, oldest first."""

    now = now or _now()
    db = SessionLocal()
    try:
        rows = (
            db.query(InventorySyncOutbox.id)
            .filter(
                InventorySyncOutbox.status == OutboxStatus.pending.value,
                InventorySyncOutbox.next_attempt_at <= now,
            )
            .order_by(InventorySyncOutbox.created_at, InventorySyncOutbox.id)
            .limit(limit or settings.INVENTORY_SYNC_BATCH_SIZE)
            .all()
        )
        message_ids = [message_id for (message_id,) in rows]
    finally:
        db.close()

    summary = {"due": len(message_ids), "succeeded": 0, "retrying": 0, "failed": 0, "skipped": 0}
    for message_id in message_ids:
        status = await process_outbox_message(message_id, client_factory=client_factory, now=now)
        if status == OutboxStatus.succeeded.value:
            summary["succeeded"] += 1
        elif status == OutboxStatus.pending.value:
            summary["retrying"] += 1
        elif status == OutboxStatus.failed.value:
            summary["failed"] += 1
        else:
            summary["skipped"] += 1

    logger.info(f"Inventory outbox drain finished: {summary}")
    return summary


def requeue_failed(db: Session, tenant_id: str, message_id: str, now: Optional[datetime] = None) -> Optional[InventorySyncOutbox]:
    """Queue a fresh push for the item behind a failed row.

    The failed row stays as history. The store cursor never moved past its
    window, so the new row covers it again.
    """

    failed = (
        db.query(InventorySyncOutbox)
        .filter(InventorySyncOutbox.id == message_id, InventorySyncOutbox.tenant_id == tenant_id)
        .one_or_none()
    )
    if failed is None or failed.status != OutboxStatus.failed.value:
        return None
    item = (
        db.query(InventoryItem)
        .filter(InventoryItem.id == failed.inventory_item_id)
        .with_for_update()
        .one_or_none()
    )
    if item is None:
        return None

    message = enqueue_inventory_sync(db, item, failed.provider, kind=failed.kind, now=now)
    db.commit()
    db.refresh(message)
    return message

"""BrickLink push-notification inbox.

Each notification is stored once per dedupe key
(``tenant:eventType:resourceId:timestamp``) and moves through

    pending -> processing -> completed
    pending -> processing -> failed      (picked up again by the poller)
    any non-completed state -> dead_letter once attempts run out

Processing is never retried in-process; ``poll_notifications`` is the
safety net for missed or failed deliveries.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import (
    BrickLinkNotification,
    MarketplaceCredential,
    MarketplaceProvider,
    NotificationStatus,
)
from app.services.bricklink_store_client import BrickLinkStoreClient
from app.services.credential_vault import credential_vault
from app.services.marketplace_errors import ErrorCode, normalize_error
from app.services.order_ingestion import upsert_order
from app.services.order_normalizers import NormalizationError
from app.utils.logger import logger

PROVIDER = MarketplaceProvider.bricklink.value

EVENT_TYPES = ("Order", "Message", "Feedback")

StoreClientFactory = Callable[[Session, str], BrickLinkStoreClient]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def format_event_timestamp(timestamp: datetime) -> str:
    return _as_utc(timestamp).isoformat().replace("+00:00", "Z")


def build_dedupe_key(tenant_id: str, event_type: str, resource_id: int, timestamp: datetime) -> str:
    return f"{tenant_id}:{event_type}:{resource_id}:{format_event_timestamp(timestamp)}"


def is_replay(timestamp: datetime, now: Optional[datetime] = None) -> bool:
    """True when the event is older than the replay window."""

    now = now or _now()
    return now - _as_utc(timestamp) > timedelta(seconds=settings.WEBHOOK_REPLAY_WINDOW_SECONDS)


def parse_event_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(s))
    except ValueError:
        return None


def upsert_notification(
    db: Session,
    tenant_id: str,
    event_type: str,
    resource_id: int,
    timestamp: datetime,
) -> Tuple[BrickLinkNotification, bool]:
    """Insert or refresh a notification; returns ``(row, created)``.

    An existing row that is still pending or failed gets a fresh attempt
    budget; rows in any other state are left alone.
    """

    dedupe_key = build_dedupe_key(tenant_id, event_type, resource_id, timestamp)
    now = _now()

    existing = db.query(BrickLinkNotification).filter(BrickLinkNotification.dedupe_key == dedupe_key).one_or_none()
    if existing is None:
        row = BrickLinkNotification(
            tenant_id=tenant_id,
            dedupe_key=dedupe_key,
            event_type=event_type,
            resource_id=resource_id,
            event_timestamp=_as_utc(timestamp),
            status=NotificationStatus.pending.value,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same notification.
            db.rollback()
            existing = db.query(BrickLinkNotification).filter(BrickLinkNotification.dedupe_key == dedupe_key).one()
        else:
            db.refresh(row)
            logger.info(f"Notification stored: {dedupe_key}")
            return row, True

    if existing.status in (NotificationStatus.pending.value, NotificationStatus.failed.value):
        existing.attempts = 0
        existing.last_error = None
        existing.updated_at = now
        db.commit()
        db.refresh(existing)
    return existing, False


def _error_text(exc: Exception) -> str:
    if isinstance(exc, NormalizationError):
        return f"{ErrorCode.INVALID_RESPONSE.value}: {exc.code.value}: {exc.message}"
    normalized = normalize_error(PROVIDER, exc)
    return f"{normalized.code}: {normalized.message}"


async def _handle_event(db: Session, notification: BrickLinkNotification, store_client_factory: StoreClientFactory) -> None:
    if notification.event_type == "Order":
        client = store_client_factory(db, notification.tenant_id)
        order = await client.get_order(notification.resource_id)
        item_batches = await client.get_order_items(notification.resource_id)
        upsert_order(db, notification.tenant_id, PROVIDER, order, item_batches)
        return

    # Messages and feedback are not synced yet.
    logger.info(
        "Notification %s (%s %s) acknowledged without action",
        notification.id, notification.event_type, notification.resource_id,
    )


async def process_notification(
    notification_id: str,
    *,
    store_client_factory: Optional[StoreClientFactory] = None,
) -> Optional[str]:
    """Process one notification; returns its final status. Never raises."""

    factory = store_client_factory or BrickLinkStoreClient.for_tenant
    db = SessionLocal()
    try:
        notification = db.query(BrickLinkNotification).filter(BrickLinkNotification.id == notification_id).one_or_none()
        if notification is None:
            logger.warning(f"Notification {notification_id} not found")
            return None

        if notification.status == NotificationStatus.completed.value:
            return notification.status

        if notification.attempts >= settings.WEBHOOK_MAX_PROCESSING_ATTEMPTS:
            notification.status = NotificationStatus.dead_letter.value
            notification.updated_at = _now()
            db.commit()
            logger.error(
                "Notification %s moved to dead_letter after %s attempts: %s",
                notification.id, notification.attempts, notification.last_error,
            )
            return notification.status

        notification.status = NotificationStatus.processing.value
        notification.attempts = notification.attempts + 1
        notification.updated_at = _now()
        db.commit()

        try:
            await _handle_event(db, notification, factory)
        except Exception as exc:
            db.rollback()
            notification = db.query(BrickLinkNotification).filter(BrickLinkNotification.id == notification_id).one()
            notification.status = NotificationStatus.failed.value
            notification.last_error = _error_text(exc)[:2000]
            notification.updated_at = _now()
            db.commit()
            logger.warning(
                "Notification %s failed (attempt %s): %s",
                notification.id, notification.attempts, notification.last_error,
            )
            return notification.status

        notification.status = NotificationStatus.completed.value
        notification.last_error = None
        notification.processed_at = _now()
        notification.updated_at = notification.processed_at
        db.commit()
        logger.info(f"Notification {notification.id} completed ({notification.event_type} {notification.resource_id})")
        return notification.status
    except Exception as exc:
        db.rollback()
        logger.error(f"Notification {notification_id} bookkeeping failed: {exc}", exc_info=True)
        return None
    finally:
        db.close()


def _pending_ids(db: Session, tenant_id: str) -> List[str]:
    rows = (
        db.query(BrickLinkNotification.id)
        .filter(
            BrickLinkNotification.tenant_id == tenant_id,
            BrickLinkNotification.status.in_([NotificationStatus.pending.value, NotificationStatus.failed.value]),
        )
        .order_by(BrickLinkNotification.event_timestamp)
        .all()
    )
    return [row_id for (row_id,) in rows]


def _sync_enabled(credential: MarketplaceCredential) -> bool:
    return bool(credential.sync_enabled and credential.orders_sync_enabled)


async def poll_tenant(
    db: Session,
    tenant_id: str,
    *,
    store_client_factory: Optional[StoreClientFactory] = None,
) -> Dict[str, int]:
    factory = store_client_factory or BrickLinkStoreClient.for_tenant
    client = factory(db, tenant_id)
    upstream = await client.get_notifications()

    stored = 0
    skipped = 0
    for entry in upstream:
        event_type = entry.get("event_type") if isinstance(entry, dict) else None
        resource_id = entry.get("resource_id") if isinstance(entry, dict) else None
        timestamp = parse_event_timestamp(entry.get("timestamp")) if isinstance(entry, dict) else None
        if event_type not in EVENT_TYPES or not isinstance(resource_id, int) or isinstance(resource_id, bool) or timestamp is None:
            skipped += 1
            logger.warning(f"Skipping malformed polled notification for tenant={tenant_id}: {entry!r}")
            continue
        _, created = upsert_notification(db, tenant_id, event_type, resource_id, timestamp)
        stored += int(created)

    processed = 0
    for notification_id in _pending_ids(db, tenant_id):
        await process_notification(notification_id, store_client_factory=factory)
        processed += 1

    return {"fetched": len(upstream), "stored": stored, "skipped": skipped, "processed": processed}


async def poll_notifications(*, store_client_factory: Optional[StoreClientFactory] = None) -> Dict[str, Any]:
    """Pull notifications for every syncing BrickLink tenant and process the backlog."""

    summary: Dict[str, Any] = {"tenants": 0, "failed_tenants": 0, "processed": 0, "stored": 0}
    db = SessionLocal()
    try:
        credentials = [c for c in credential_vault.list_active(db, PROVIDER) if _sync_enabled(c)]
        tenant_ids = [c.tenant_id for c in credentials]
    finally:
        db.close()

    for tenant_id in tenant_ids:
        db = SessionLocal()
        try:
            result = await poll_tenant(db, tenant_id, store_client_factory=store_client_factory)
            summary["tenants"] += 1
            summary["processed"] += result["processed"]
            summary["stored"] += result["stored"]
        except Exception as exc:
            db.rollback()
            summary["failed_tenants"] += 1
            normalized = normalize_error(PROVIDER, exc)
            logger.warning(f"Notification poll failed for tenant={tenant_id}: {normalized.code} {normalized.message}")
        finally:
            db.close()

    logger.info(f"Notification poll finished: {summary}")
    return summary

"""BrickOwl order polling.

BrickOwl is not wired for push callbacks here, so the sync loop lists each
syncing tenant's orders and ingests the ones that are new or whose status
label changed since the last sweep.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import MarketplaceCredential, MarketplaceOrder, MarketplaceProvider
from app.services.brickowl_store_client import BrickOwlStoreClient
from app.services.credential_vault import credential_vault
from app.services.marketplace_errors import normalize_error
from app.services.order_ingestion import upsert_order
from app.services.order_normalizers import NormalizationError
from app.services.order_normalizers.brickowl import extract_order_id, extract_provider_status
from app.utils.logger import logger

PROVIDER = MarketplaceProvider.brickowl.value

StoreClientFactory = Callable[[Session, str], BrickOwlStoreClient]


def _sync_enabled(credential: MarketplaceCredential) -> bool:
    return bool(credential.sync_enabled and credential.orders_sync_enabled)


def _stored_order(db: Session, tenant_id: str, order_id: str) -> Optional[MarketplaceOrder]:
    return (
        db.query(MarketplaceOrder)
        .filter(
            MarketplaceOrder.tenant_id == tenant_id,
            MarketplaceOrder.provider == PROVIDER,
            MarketplaceOrder.order_id == order_id,
        )
        .one_or_none()
    )


async def poll_tenant_orders(
    db: Session,
    tenant_id: str,
    *,
    store_client_factory: Optional[StoreClientFactory] = None,
) -> Dict[str, int]:
    """Ingest one tenant's new or changed BrickOwl orders.

    A failing order is logged and counted; it is retried on the next sweep
    because nothing was stored for it.
    """

    factory = store_client_factory or BrickOwlStoreClient.for_tenant
    client = factory(db, tenant_id)
    listed = await client.list_orders()

    result = {"listed": len(listed), "ingested": 0, "unchanged": 0, "failed": 0}
    for summary in listed:
        order_id = extract_order_id(summary) if isinstance(summary, dict) else None
        if order_id is None:
            result["failed"] += 1
            logger.warning(f"Skipping BrickOwl order without an id for tenant={tenant_id}: {summary!r}")
            continue

        stored = _stored_order(db, tenant_id, order_id)
        listed_status = extract_provider_status(summary)
        if stored is not None and listed_status is not None and stored.provider_status == listed_status:
            result["unchanged"] += 1
            continue

        try:
            order = await client.get_order(order_id)
            items = await client.get_order_items(order_id)
            upsert_order(db, tenant_id, PROVIDER, order, items)
            result["ingested"] += 1
        except NormalizationError as exc:
            result["failed"] += 1
            logger.warning(f"BrickOwl order {order_id} for tenant={tenant_id} could not be normalized: {exc}")
        except Exception as exc:
            db.rollback()
            result["failed"] += 1
            normalized = normalize_error(PROVIDER, exc)
            logger.warning(
                f"BrickOwl order {order_id} for tenant={tenant_id} failed: {normalized.code} {normalized.message}"
            )

    return result


async def poll_brickowl_orders(*, store_client_factory: Optional[StoreClientFactory] = None) -> Dict[str, Any]:
    """Poll orders for every BrickOwl tenant with order sync on."""

    summary: Dict[str, Any] = {"tenants": 0, "failed_tenants": 0, "ingested": 0, "failed_orders": 0}
    db = SessionLocal()
    try:
        tenant_ids = [c.tenant_id for c in credential_vault.list_active(db, PROVIDER) if _sync_enabled(c)]
    finally:
        db.close()

    for tenant_id in tenant_ids:
        db = SessionLocal()
        try:
            result = await poll_tenant_orders(db, tenant_id, store_client_factory=store_client_factory)
            summary["tenants"] += 1
            summary["ingested"] += result["ingested"]
            summary["failed_orders"] += result["failed"]
        except Exception as exc:
            db.rollback()
            summary["failed_tenants"] += 1
            normalized = normalize_error(PROVIDER, exc)
            logger.warning(f"BrickOwl order poll failed for tenant={tenant_id}: {normalized.code} {normalized.message}")
        finally:
            db.close()

    logger.info(f"BrickOwl order poll finished: {summary}")
    return summary

"""Keep each tenant's BrickLink push-notification callback registered.

``ensure_webhooks`` is safe to run on a timer: it only calls BrickLink when a
registration is missing, points at a different URL, failed last time, or has
not been checked within ``WEBHOOK_REGISTRATION_STALE_HOURS``. Callbacks an
owner disabled stay off until a forced ensure.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models.marketplace import WebhookEnsureResult
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import MarketplaceCredential, MarketplaceProvider, WebhookStatus
from app.services.bricklink_store_client import BrickLinkStoreClient
from app.services.credential_vault import credential_vault, generate_webhook_token
from app.services.marketplace_errors import ErrorCode, MarketplaceError, normalize_error
from app.utils.logger import logger

PROVIDER = MarketplaceProvider.bricklink.value

WEBHOOK_ROUTE = "/api/bricklink/webhook"

StoreClientFactory = Callable[[Session, str], BrickLinkStoreClient]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def build_webhook_url(token: str) -> str:
    base = settings.webhook_callback_base_url
    if not base:
        raise MarketplaceError(
            ErrorCode.VALIDATION,
            "WEBHOOK_PUBLIC_BASE_URL is not configured",
            retryable=False,
        )
    return f"{base}{WEBHOOK_ROUTE}/{token}"


def needs_refresh(credential: MarketplaceCredential, desired_url: str, now: Optional[datetime] = None, force: bool = False) -> bool:
    if force:
        return True
    # An owner turned the callback off; only a forced ensure turns it back on.
    if credential.webhook_status == WebhookStatus.disabled.value:
        return False
    if credential.webhook_endpoint != desired_url:
        return True
    if credential.webhook_status != WebhookStatus.registered.value:
        return True
    last_checked = _as_utc(credential.webhook_last_checked_at)
    if last_checked is None:
        return True
    now = now or _now()
    return now - last_checked > timedelta(hours=settings.WEBHOOK_REGISTRATION_STALE_HOURS)


async def ensure_webhook(
    db: Session,
    credential: MarketplaceCredential,
    *,
    force: bool = False,
    store_client_factory: Optional[StoreClientFactory] = None,
) -> WebhookEnsureResult:
    tenant_id = credential.tenant_id
    if not credential.webhook_token:
        credential.webhook_token = generate_webhook_token()
        db.commit()

    try:
        desired_url = build_webhook_url(credential.webhook_token)
    except MarketplaceError as exc:
        logger.warning(f"Webhook registration skipped for tenant={tenant_id}: {exc.message}")
        return WebhookEnsureResult(
            tenant_id=tenant_id, status=credential.webhook_status, refreshed=False, error=exc.message,
        )

    if not needs_refresh(credential, desired_url, force=force):
        return WebhookEnsureResult(
            tenant_id=tenant_id, status=credential.webhook_status, endpoint=credential.webhook_endpoint, refreshed=False,
        )

    credential.webhook_status = WebhookStatus.registering.value
    db.commit()

    factory = store_client_factory or BrickLinkStoreClient.for_tenant
    now = _now()
    try:
        client = factory(db, tenant_id)
        await client.register_webhook(desired_url)
    except Exception as exc:
        normalized = normalize_error(PROVIDER, exc)
        credential.webhook_status = WebhookStatus.error.value
        credential.webhook_last_error = f"{normalized.code}: {normalized.message}"
        credential.webhook_last_checked_at = now
        db.commit()
        logger.warning(f"Webhook registration failed for tenant={tenant_id}: {credential.webhook_last_error}")
        return WebhookEnsureResult(
            tenant_id=tenant_id,
            status=credential.webhook_status,
            endpoint=credential.webhook_endpoint,
            refreshed=True,
            error=credential.webhook_last_error,
        )

    credential.webhook_status = WebhookStatus.registered.value
    credential.webhook_endpoint = desired_url
    credential.webhook_registered_at = now
    credential.webhook_last_checked_at = now
    credential.webhook_last_error = None
    db.commit()
    logger.info(f"Webhook registered for tenant={tenant_id}")
    return WebhookEnsureResult(tenant_id=tenant_id, status=credential.webhook_status, endpoint=desired_url, refreshed=True)


async def ensure_webhooks(
    force: bool = False,
    *,
    tenant_id: Optional[str] = None,
    store_client_factory: Optional[StoreClientFactory] = None,
) -> List[WebhookEnsureResult]:
    """Sweep active BrickLink credentials (optionally one tenant) and re-register stale callbacks."""

    results: List[WebhookEnsureResult] = []
    db = SessionLocal()
    try:
        credentials = credential_vault.list_active(db, PROVIDER)
        if tenant_id is not None:
            credentials = [c for c in credentials if c.tenant_id == tenant_id]
        for credential in credentials:
            try:
                results.append(
                    await ensure_webhook(db, credential, force=force, store_client_factory=store_client_factory)
                )
            except Exception as exc:
                db.rollback()
                logger.error(f"Webhook sweep failed for tenant={credential.tenant_id}: {exc}", exc_info=True)
                results.append(
                    WebhookEnsureResult(
                        tenant_id=credential.tenant_id, status=WebhookStatus.error.value, refreshed=False, error=str(exc),
                    )
                )
    finally:
        db.close()
    return results


async def disable_webhook(
    db: Session,
    tenant_id: str,
    *,
    store_client_factory: Optional[StoreClientFactory] = None,
) -> WebhookEnsureResult:
    credential = (
        db.query(MarketplaceCredential)
        .filter(MarketplaceCredential.tenant_id == tenant_id, MarketplaceCredential.provider == PROVIDER)
        .one_or_none()
    )
    if credential is None:
        raise MarketplaceError(ErrorCode.CREDENTIALS_NOT_FOUND, "No bricklink credentials configured", retryable=False)

    factory = store_client_factory or BrickLinkStoreClient.for_tenant
    client = factory(db, tenant_id)
    await client.unregister_webhook()

    credential.webhook_status = WebhookStatus.disabled.value
    credential.webhook_endpoint = None
    credential.webhook_last_checked_at = _now()
    credential.webhook_last_error = None
    db.commit()
    logger.info(f"Webhook disabled for tenant={tenant_id}")
    return WebhookEnsureResult(tenant_id=tenant_id, status=credential.webhook_status, refreshed=True)

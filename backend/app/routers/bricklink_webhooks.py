from __future__ import annotations

import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.marketplace import BrickLinkWebhookPayload
from app.models_sqlalchemy import get_db
from app.services.credential_vault import credential_vault
from app.services.webhook_notifications import is_replay, process_notification, upsert_notification
from app.utils.logger import logger


router = APIRouter(prefix="/api/bricklink", tags=["bricklink_webhooks"])


@router.post("/webhook/{token}")
async def bricklink_webhook(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Push-notification callback registered with BrickLink.

    The path token identifies the tenant. Accepted notifications are stored
    and processed after the response is sent; BrickLink only needs a fast 2xx.
    Other methods on this path get Starlette's 405.
    """

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")
    raw_body = await request.body()
    if len(raw_body) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    credential = credential_vault.find_by_webhook_token(db, token)
    if credential is None:
        # 200 so BrickLink stops retrying against a revoked or unknown token.
        logger.warning("[bricklink-webhook] unknown token prefix=%s", token[:6])
        return {"received": False, "error": "Unknown webhook token"}

    tenant_id = credential.tenant_id
    try:
        payload = json.loads(raw_body) if raw_body else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning(f"[bricklink-webhook] invalid JSON body tenant={tenant_id}")
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    try:
        event = BrickLinkWebhookPayload.model_validate(payload)
    except ValidationError as exc:
        logger.warning(f"[bricklink-webhook] invalid payload tenant={tenant_id}: {exc.error_count()} errors")
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Invalid notification payload",
                "errors": exc.errors(include_url=False, include_context=False, include_input=False),
            },
        )

    if is_replay(event.timestamp):
        logger.info(
            "[bricklink-webhook] ignoring replayed %s %s tenant=%s ts=%s",
            event.event_type, event.resource_id, tenant_id, event.timestamp.isoformat(),
        )
        return {"received": True, "ignored": "replay"}

    try:
        notification, created = upsert_notification(db, tenant_id, event.event_type, event.resource_id, event.timestamp)
    except Exception as e:
        # Still a 2xx: the notification poller picks the event up on its next sweep.
        logger.error(f"[bricklink-webhook] failed to store notification tenant={tenant_id}: {str(e)}", exc_info=True)
        return {"received": True, "queued": False, "note": "Notification will be recovered by polling"}

    background_tasks.add_task(process_notification, notification.id)
    logger.info(
        f"[bricklink-webhook] accepted {event.event_type} {event.resource_id} tenant={tenant_id} "
        f"notification={notification.id} duplicate={not created}"
    )
    return {"received": True, "notification_id": notification.id, "duplicate": not created}

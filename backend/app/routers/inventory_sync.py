from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Literal, Optional
from datetime import datetime
from pydantic import BaseModel

from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import InventoryItem, InventorySyncOutbox, OutboxStatus
from app.services.auth import CurrentUser, owner_required
from app.services.inventory_sync import PROVIDERS, enqueue_inventory_sync, requeue_failed, sync_targets
from app.utils.logger import logger

router = APIRouter(prefix="/api/inventory", tags=["Inventory Sync"])


class OutboxMessageResponse(BaseModel):
    id: str
    inventory_item_id: str
    provider: str
    kind: str
    from_seq_exclusive: int
    to_seq_inclusive: int
    status: str
    attempt: int
    next_attempt_at: Optional[datetime]
    last_error: Optional[str]
    correlation_id: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class ItemSyncRequest(BaseModel):
    # Every store with inventory sync on when omitted.
    provider: Optional[str] = None
    kind: Literal["create", "update", "delete"] = "update"


@router.get("/sync/outbox", response_model=List[OutboxMessageResponse])
async def list_outbox(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    """Outbox rows for the tenant, newest first"""
    try:
        query = db.query(InventorySyncOutbox).filter(InventorySyncOutbox.tenant_id == current_user.tenant_id)
        if status:
            if status not in {s.value for s in OutboxStatus}:
                raise HTTPException(status_code=400, detail=f"Unknown outbox status: {status}")
            query = query.filter(InventorySyncOutbox.status == status)
        return query.order_by(InventorySyncOutbox.created_at.desc()).limit(limit).all()
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing inventory outbox: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/items/{item_id}/sync", response_model=List[OutboxMessageResponse])
async def sync_item(
    item_id: str,
    payload: ItemSyncRequest,
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    """Queue a push of one item's current state to the stores"""
    try:
        item = (
            db.query(InventoryItem)
            .filter(InventoryItem.id == item_id, InventoryItem.tenant_id == current_user.tenant_id)
            .with_for_update()
            .one_or_none()
        )
        if item is None:
            raise HTTPException(status_code=404, detail="Inventory item not found")

        if payload.provider is not None:
            if payload.provider not in PROVIDERS:
                raise HTTPException(status_code=400, detail=f"Unsupported provider: {payload.provider}")
            providers = [payload.provider]
        else:
            providers = sync_targets(db, current_user.tenant_id)

        messages = [enqueue_inventory_sync(db, item, provider, kind=payload.kind) for provider in providers]
        db.commit()
        for message in messages:
            db.refresh(message)
        logger.info(f"Queued {payload.kind} of item={item_id} to {providers} for tenant={current_user.tenant_id}")
        return messages
    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error queueing inventory sync for item={item_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sync/outbox/{message_id}/requeue", response_model=OutboxMessageResponse)
async def requeue_outbox_message(
    message_id: str,
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    """Queue a fresh push for a failed row"""
    try:
        message = requeue_failed(db, current_user.tenant_id, message_id)
        if message is None:
            raise HTTPException(status_code=404, detail="No failed outbox message with that id")
        return message
    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error requeueing outbox message {message_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List

from app.models_sqlalchemy import get_db
from app.models.marketplace import (
    ConfiguredProvidersResponse,
    ConnectionTestResponse,
    CredentialSaveRequest,
    CredentialStatusResponse,
    SyncSettingsUpdate,
    WebhookEnsureResult,
)
from app.services.auth import CurrentUser, get_current_user, owner_required
from app.services.credential_vault import CREDENTIAL_FIELDS, credential_vault
from app.services.marketplace_errors import ErrorCode, MarketplaceError
from app.services.webhook_registration import disable_webhook, ensure_webhooks
from app.utils.logger import logger

router = APIRouter(prefix="/api/marketplaces", tags=["Marketplace Credentials"])

_STATUS_BY_CODE = {
    ErrorCode.VALIDATION.value: 400,
    ErrorCode.CREDENTIALS_NOT_FOUND.value: 404,
    ErrorCode.BUSINESS_ACCOUNT_MISMATCH.value: 403,
}


def _http_error(exc: MarketplaceError) -> HTTPException:
    status_code = _STATUS_BY_CODE.get(exc.code, 502)
    detail = {"code": exc.code, "message": exc.message}
    if exc.details:
        detail["details"] = exc.details
    if exc.correlation_id:
        detail["correlation_id"] = exc.correlation_id
    return HTTPException(status_code=status_code, detail=detail)


@router.get("/credentials", response_model=List[CredentialStatusResponse])
async def list_credentials(
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    """Credential status for every supported provider"""
    try:
        statuses = [credential_vault.get_status(db, current_user.tenant_id, provider) for provider in CREDENTIAL_FIELDS]
        logger.info(f"Retrieved marketplace credential status for tenant: {current_user.tenant_id}")
        return statuses
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error retrieving marketplace credentials: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/providers", response_model=ConfiguredProvidersResponse)
async def list_configured_providers(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    try:
        providers = credential_vault.get_configured_providers(db, current_user.tenant_id)
        return ConfiguredProvidersResponse(providers=providers)
    except Exception as e:
        logger.error(f"Error listing configured providers: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/credentials/{provider}", response_model=CredentialStatusResponse)
async def get_credentials(
    provider: str,
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    """Masked status of one provider's credentials; secrets are never returned"""
    try:
        return credential_vault.get_status(db, current_user.tenant_id, provider)
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error retrieving {provider} credentials: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/credentials/{provider}", response_model=CredentialStatusResponse)
async def save_credentials(
    provider: str,
    payload: CredentialSaveRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    """Save credentials and schedule a connection test.

    The response reflects ``validation_status = pending``; the test result
    lands on the row once the background task finishes.
    """
    try:
        credential_vault.save(
            db,
            current_user.tenant_id,
            provider,
            payload.model_dump(),
            background_tasks=background_tasks,
        )
        return credential_vault.get_status(db, current_user.tenant_id, provider)
    except HTTPException:
        raise
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error saving {provider} credentials: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/credentials/{provider}")
async def revoke_credentials(
    provider: str,
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    try:
        credential_vault.revoke(db, current_user.tenant_id, provider)
        return {"provider": provider, "revoked": True}
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error revoking {provider} credentials: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/credentials/{provider}/test", response_model=ConnectionTestResponse)
async def test_credentials(
    provider: str,
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    """Run the connection test now and return its outcome"""
    try:
        status = credential_vault.get_status(db, current_user.tenant_id, provider)
        if not status.configured:
            raise HTTPException(status_code=404, detail=f"No {provider} credentials configured")

        result = await credential_vault.test_connection(
            current_user.tenant_id, provider, caller_tenant_id=current_user.tenant_id,
        )
        logger.info(f"Connection test for tenant={current_user.tenant_id} provider={provider}: success={result.success}")
        return credential_vault.to_test_response(provider, result)
    except HTTPException:
        raise
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error testing {provider} credentials: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/credentials/{provider}/sync-settings", response_model=CredentialStatusResponse)
async def update_sync_settings(
    provider: str,
    payload: SyncSettingsUpdate,
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    try:
        credential_vault.update_sync_settings(
            db,
            current_user.tenant_id,
            provider,
            sync_enabled=payload.sync_enabled,
            orders_sync_enabled=payload.orders_sync_enabled,
            inventory_sync_enabled=payload.inventory_sync_enabled,
        )
        logger.info(f"Sync settings updated for tenant={current_user.tenant_id} provider={provider}")
        return credential_vault.get_status(db, current_user.tenant_id, provider)
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error updating {provider} sync settings: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/bricklink/webhook/ensure", response_model=WebhookEnsureResult)
async def ensure_bricklink_webhook(
    current_user: CurrentUser = Depends(owner_required),
):
    """Force (re-)registration of the caller's BrickLink callback URL"""
    try:
        results = await ensure_webhooks(force=True, tenant_id=current_user.tenant_id)
        if not results:
            raise HTTPException(status_code=404, detail="No active bricklink credentials configured")
        return results[0]
    except HTTPException:
        raise
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error ensuring BrickLink webhook: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/bricklink/webhook", response_model=WebhookEnsureResult)
async def disable_bricklink_webhook(
    current_user: CurrentUser = Depends(owner_required),
    db: Session = Depends(get_db)
):
    try:
        return await disable_webhook(db, current_user.tenant_id)
    except MarketplaceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error disabling BrickLink webhook: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

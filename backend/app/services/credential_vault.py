from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx
from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from app.models.marketplace import ConnectionTestResponse, CredentialStatusResponse
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import (
    MarketplaceCredential,
    MarketplaceProvider,
    ValidationStatus,
    WebhookStatus,
)
from app.services.bricklink_oauth import BrickLinkCredentials
from app.services.marketplace_errors import ErrorCode, MarketplaceError, normalize_error
from app.services.marketplace_transport import BrickOwlCredentials, MarketplaceRequest, transport_for
from app.utils import crypto
from app.utils.logger import logger


MASKED_VALUE = "****-****-****-****"
# Caller id for background jobs that act on behalf of every tenant.
SYSTEM_CALLER = "__system__"
WEBHOOK_TOKEN_BYTES = 32

# Request field name -> model attribute, per provider.
CREDENTIAL_FIELDS: Dict[str, Dict[str, str]] = {
    MarketplaceProvider.bricklink.value: {
        "consumer_key": "bl_consumer_key",
        "consumer_secret": "bl_consumer_secret",
        "token_value": "bl_token_value",
        "token_secret": "bl_token_secret",
    },
    MarketplaceProvider.brickowl.value: {
        "api_key": "bo_api_key",
    },
}

# Providers that deliver push notifications and therefore need a webhook token.
WEBHOOK_PROVIDERS = {MarketplaceProvider.bricklink.value}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_provider(provider: str) -> str:
    if provider not in CREDENTIAL_FIELDS:
        raise MarketplaceError(
            ErrorCode.VALIDATION,
            f"Unsupported marketplace provider: {provider}",
            retryable=False,
            details={"provider": provider},
        )
    return provider


def generate_webhook_token() -> str:
    return secrets.token_hex(WEBHOOK_TOKEN_BYTES)


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    error_code: Optional[str] = None
    correlation_id: Optional[str] = None


class CredentialVault:
    """Stores, decrypts and validates per-tenant marketplace credentials."""

    def _get(self, db: Session, tenant_id: str, provider: str) -> Optional[MarketplaceCredential]:
        return (
            db.query(MarketplaceCredential)
            .filter(
                MarketplaceCredential.tenant_id == tenant_id,
                MarketplaceCredential.provider == provider,
            )
            .one_or_none()
        )

    def save(
        self,
        db: Session,
        tenant_id: str,
        provider: str,
        raw_fields: Mapping[str, Any],
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> MarketplaceCredential:
        """Validate, encrypt and upsert credentials for ``provider``.

        When ``background_tasks`` is given, a connection test is scheduled
        after the response is sent; it updates ``validation_status``.
        """

        _require_provider(provider)
        fields = CREDENTIAL_FIELDS[provider]
        cleaned = {name: str(raw_fields.get(name) or "").strip() for name in fields}
        missing = [name for name, value in cleaned.items() if not value]
        if missing:
            raise MarketplaceError(
                ErrorCode.VALIDATION,
                f"Missing required {provider} credential fields: {', '.join(missing)}",
                retryable=False,
                details={"provider": provider, "missing_fields": missing},
            )

        credential = self._get(db, tenant_id, provider)
        now = _now()
        try:
            if credential is None:
                credential = MarketplaceCredential(
                    tenant_id=tenant_id,
                    provider=provider,
                    is_active=True,
                    sync_enabled=False,
                    orders_sync_enabled=True,
                    inventory_sync_enabled=False,
                    validation_status=ValidationStatus.pending.value,
                    webhook_status=WebhookStatus.unconfigured.value,
                    webhook_token=generate_webhook_token() if provider in WEBHOOK_PROVIDERS else None,
                    created_at=now,
                    updated_at=now,
                )
                db.add(credential)
                action = "created"
            else:
                credential.is_active = True
                credential.validation_status = ValidationStatus.pending.value
                credential.validation_message = None
                credential.updated_at = now
                if provider in WEBHOOK_PROVIDERS and not credential.webhook_token:
                    credential.webhook_token = generate_webhook_token()
                action = "updated"

            # Each field is encrypted on its own (see the model properties).
            for name, attribute in fields.items():
                setattr(credential, attribute, cleaned[name])

            db.commit()
            db.refresh(credential)
        except Exception:
            db.rollback()
            logger.error("Failed to save %s credentials for tenant=%s", provider, tenant_id, exc_info=True)
            raise

        logger.info(f"Marketplace credentials {action}: tenant={tenant_id} provider={provider}")

        if background_tasks is not None:
            background_tasks.add_task(self.test_connection, tenant_id, provider, caller_tenant_id=SYSTEM_CALLER)

        return credential

    def revoke(self, db: Session, tenant_id: str, provider: str) -> None:
        """Hard-delete the credential row; no secret material is retained."""

        _require_provider(provider)
        credential = self._get(db, tenant_id, provider)
        if credential is None:
            raise MarketplaceError(
                ErrorCode.CREDENTIALS_NOT_FOUND,
                f"No {provider} credentials configured",
                retryable=False,
            )
        db.delete(credential)
        db.commit()
        logger.info(f"Marketplace credentials revoked: tenant={tenant_id} provider={provider}")

    def get_decrypted(
        self,
        db: Session,
        tenant_id: str,
        provider: str,
        *,
        caller_tenant_id: str,
    ) -> BrickLinkCredentials | BrickOwlCredentials:
        """Return usable plaintext credentials. Internal use only.

        ``caller_tenant_id`` is the tenant of the user asking and must match
        ``tenant_id``; background jobs pass :data:`SYSTEM_CALLER`.
        """

        if caller_tenant_id != SYSTEM_CALLER and caller_tenant_id != tenant_id:
            raise MarketplaceError(
                ErrorCode.BUSINESS_ACCOUNT_MISMATCH,
                "Caller does not belong to this business account",
                retryable=False,
            )

        _require_provider(provider)
        credential = self._get(db, tenant_id, provider)
        if credential is None or not credential.is_active:
            raise MarketplaceError(
                ErrorCode.CREDENTIALS_NOT_FOUND,
                f"No active {provider} credentials configured",
                retryable=False,
            )

        values: Dict[str, str] = {}
        for name, attribute in CREDENTIAL_FIELDS[provider].items():
            value = (getattr(credential, attribute) or "").strip()
            # A value still carrying the ciphertext prefix failed to decrypt.
            if not value or crypto.is_encrypted(value):
                raise MarketplaceError(
                    ErrorCode.INVALID_CREDENTIALS,
                    f"Stored {provider} credentials are incomplete or corrupted",
                    retryable=False,
                    details={"field": name},
                )
            values[name] = value

        if provider == MarketplaceProvider.bricklink.value:
            return BrickLinkCredentials(**values)
        return BrickOwlCredentials(**values)

    @staticmethod
    def mask(value: Optional[str]) -> str:
        """Fixed placeholder; never reveals any part of the secret."""

        return MASKED_VALUE

    def update_validation_status(
        self,
        db: Session,
        tenant_id: str,
        provider: str,
        status: str,
        message: Optional[str] = None,
    ) -> Optional[MarketplaceCredential]:
        credential = self._get(db, tenant_id, provider)
        if credential is None:
            # Revoked while the test was running.
            logger.info("Skipping validation update, credentials gone: tenant=%s provider=%s", tenant_id, provider)
            return None
        credential.validation_status = ValidationStatus(status).value
        credential.validation_message = message
        credential.last_validated_at = _now()
        db.commit()
        db.refresh(credential)
        return credential

    def update_sync_settings(
        self,
        db: Session,
        tenant_id: str,
        provider: str,
        *,
        sync_enabled: Optional[bool] = None,
        orders_sync_enabled: Optional[bool] = None,
        inventory_sync_enabled: Optional[bool] = None,
    ) -> MarketplaceCredential:
        _require_provider(provider)
        credential = self._get(db, tenant_id, provider)
        if credential is None:
            raise MarketplaceError(
                ErrorCode.CREDENTIALS_NOT_FOUND,
                f"No {provider} credentials configured",
                retryable=False,
            )

        if sync_enabled is not None:
            # The master switch drives both sub-switches.
            credential.sync_enabled = sync_enabled
            credential.orders_sync_enabled = sync_enabled
            credential.inventory_sync_enabled = sync_enabled
        if orders_sync_enabled is not None:
            credential.orders_sync_enabled = orders_sync_enabled
        if inventory_sync_enabled is not None:
            credential.inventory_sync_enabled = inventory_sync_enabled

        credential.updated_at = _now()
        db.commit()
        db.refresh(credential)
        return credential

    def get_status(self, db: Session, tenant_id: str, provider: str) -> CredentialStatusResponse:
        _require_provider(provider)
        credential = self._get(db, tenant_id, provider)
        if credential is None:
            return CredentialStatusResponse(provider=provider, configured=False)

        return CredentialStatusResponse(
            provider=provider,
            configured=True,
            is_active=credential.is_active,
            validation_status=credential.validation_status,
            validation_message=credential.validation_message,
            last_validated_at=credential.last_validated_at,
            sync_enabled=credential.sync_enabled,
            orders_sync_enabled=credential.orders_sync_enabled,
            inventory_sync_enabled=credential.inventory_sync_enabled,
            webhook_status=credential.webhook_status if provider in WEBHOOK_PROVIDERS else None,
            webhook_endpoint=credential.webhook_endpoint,
            webhook_registered_at=credential.webhook_registered_at,
            webhook_last_checked_at=credential.webhook_last_checked_at,
            webhook_last_error=credential.webhook_last_error,
            masked_fields={name: self.mask(None) for name in CREDENTIAL_FIELDS[provider]},
            created_at=credential.created_at,
            updated_at=credential.updated_at,
        )

    def get_configured_providers(self, db: Session, tenant_id: str) -> List[str]:
        rows = (
            db.query(MarketplaceCredential.provider)
            .filter(
                MarketplaceCredential.tenant_id == tenant_id,
                MarketplaceCredential.is_active.is_(True),
            )
            .all()
        )
        return sorted(provider for (provider,) in rows)

    def find_by_webhook_token(self, db: Session, token: str) -> Optional[MarketplaceCredential]:
        if not token:
            return None
        return (
            db.query(MarketplaceCredential)
            .filter(
                MarketplaceCredential.webhook_token == token,
                MarketplaceCredential.provider == MarketplaceProvider.bricklink.value,
                MarketplaceCredential.is_active.is_(True),
            )
            .one_or_none()
        )

    def list_active(self, db: Session, provider: str) -> List[MarketplaceCredential]:
        return (
            db.query(MarketplaceCredential)
            .filter(
                MarketplaceCredential.provider == provider,
                MarketplaceCredential.is_active.is_(True),
            )
            .order_by(MarketplaceCredential.tenant_id)
            .all()
        )

    async def test_connection(
        self,
        tenant_id: str,
        provider: str,
        *,
        caller_tenant_id: str,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> ConnectionTestResult:
        """Make one cheap read call and record the outcome. Never raises."""

        db = SessionLocal()
        try:
            try:
                credentials = self.get_decrypted(db, tenant_id, provider, caller_tenant_id=caller_tenant_id)
                transport = transport_for(tenant_id, provider, credentials, client_factory=client_factory)
                if provider == MarketplaceProvider.bricklink.value:
                    request = MarketplaceRequest(path="/orders", query={"direction": "in", "page": 1})
                else:
                    request = MarketplaceRequest(path="/order/list")
                response = await transport.request(request)
            except Exception as exc:
                normalized = normalize_error(provider, exc)
                logger.warning(
                    "Connection test failed: tenant=%s provider=%s code=%s message=%s",
                    tenant_id, provider, normalized.code, normalized.message,
                )
                self.update_validation_status(db, tenant_id, provider, ValidationStatus.failed.value, normalized.message)
                return ConnectionTestResult(
                    success=False,
                    message=normalized.message,
                    error_code=normalized.code,
                    correlation_id=(normalized.details or {}).get("correlation_id"),
                )

            message = f"Connected to {provider}"
            self.update_validation_status(db, tenant_id, provider, ValidationStatus.success.value, message)
            logger.info(f"Connection test succeeded: tenant={tenant_id} provider={provider}")
            return ConnectionTestResult(success=True, message=message, correlation_id=response.correlation_id)
        except Exception as exc:
            logger.error("Connection test bookkeeping failed: tenant=%s provider=%s: %s", tenant_id, provider, exc, exc_info=True)
            return ConnectionTestResult(success=False, message=str(exc), error_code=ErrorCode.UNEXPECTED_ERROR.value)
        finally:
            db.close()

    def to_test_response(self, provider: str, result: ConnectionTestResult) -> ConnectionTestResponse:
        return ConnectionTestResponse(
            provider=provider,
            success=result.success,
            message=result.message,
            error_code=result.error_code,
            correlation_id=result.correlation_id,
        )


credential_vault = CredentialVault()

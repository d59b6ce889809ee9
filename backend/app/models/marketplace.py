from pydantic import BaseModel, StrictInt, field_validator
from typing import Any, Dict, List, Literal, Optional, Union
from datetime import datetime, timezone


class CredentialSaveRequest(BaseModel):
    # BrickLink (OAuth 1.0a)
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    token_value: Optional[str] = None
    token_secret: Optional[str] = None
    # BrickOwl
    api_key: Optional[str] = None


class SyncSettingsUpdate(BaseModel):
    sync_enabled: Optional[bool] = None
    orders_sync_enabled: Optional[bool] = None
    inventory_sync_enabled: Optional[bool] = None


class CredentialStatusResponse(BaseModel):
    provider: str
    configured: bool
    is_active: bool = False
    validation_status: Optional[str] = None
    validation_message: Optional[str] = None
    last_validated_at: Optional[datetime] = None
    sync_enabled: bool = False
    orders_sync_enabled: bool = False
    inventory_sync_enabled: bool = False
    webhook_status: Optional[str] = None
    webhook_endpoint: Optional[str] = None
    webhook_registered_at: Optional[datetime] = None
    webhook_last_checked_at: Optional[datetime] = None
    webhook_last_error: Optional[str] = None
    masked_fields: Dict[str, str] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConnectionTestResponse(BaseModel):
    provider: str
    success: bool
    message: str
    error_code: Optional[str] = None
    correlation_id: Optional[str] = None


class BrickLinkWebhookPayload(BaseModel):
    """Body BrickLink posts to our callback URL."""

    event_type: Literal["Order", "Message", "Feedback"]
    resource_id: StrictInt
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_iso_timestamp(cls, value: Any) -> datetime:
        # Only ISO-8601 strings are accepted; bare epoch numbers are rejected.
        if not isinstance(value, str) or not value.strip():
            raise ValueError("timestamp must be an ISO-8601 string")
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        parsed = datetime.fromisoformat(s)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


class StoreRollbackData(BaseModel):
    previous_quantity: Optional[int] = None
    previous_price: Optional[str] = None
    previous_location: Optional[str] = None
    previous_notes: Optional[str] = None
    original_payload: Optional[Any] = None


class StoreOperationError(BaseModel):
    code: str
    message: str
    retryable: bool
    details: Optional[Any] = None
    rate_limit_reset_at: Optional[str] = None
    http_status: Optional[int] = None


class StoreOperationResult(BaseModel):
    success: bool
    correlation_id: str
    marketplace_id: Optional[Union[int, str]] = None
    rollback_data: Optional[StoreRollbackData] = None
    error: Optional[StoreOperationError] = None


class WebhookEnsureResult(BaseModel):
    tenant_id: str
    status: str
    endpoint: Optional[str] = None
    refreshed: bool
    error: Optional[str] = None


class ConfiguredProvidersResponse(BaseModel):
    providers: List[str]

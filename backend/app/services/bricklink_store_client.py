"""BrickLink Store API operations for one tenant.

Read calls raise :class:`MarketplaceError`. Inventory writes never raise for
provider failures; they return a :class:`StoreOperationResult` carrying either
the new marketplace id plus rollback data, or a normalized error.
"""

from __future__ import annotations

import re
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from sqlalchemy.orm import Session

from app.models.marketplace import StoreOperationError, StoreOperationResult, StoreRollbackData
from app.models_sqlalchemy.models import MarketplaceProvider
from app.services.bricklink_oauth import BrickLinkCredentials
from app.services.credential_vault import SYSTEM_CALLER, credential_vault
from app.services.marketplace_errors import ErrorCode, MarketplaceError, failed_operation
from app.services.marketplace_transport import BrickLinkTransport, MarketplaceRequest
from app.utils.logger import logger

PROVIDER = MarketplaceProvider.bricklink.value

_QUANTITY_DELTA = re.compile(r"^[+-]\d+$")


# ============================================================================
# Inventory payloads
# ============================================================================

class BLInventoryItemRef(BaseModel):
    no: str
    type: str

    @field_validator("no", "type")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value


class BLInventoryCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    item: BLInventoryItemRef
    color_id: int
    quantity: int
    unit_price: str
    new_or_used: Literal["N", "U"]
    completeness: Optional[Literal["C", "B", "S"]] = None
    description: Optional[str] = None
    remarks: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("quantity must be a non-negative number")
        return value

    @field_validator("unit_price")
    @classmethod
    def _price(cls, value: str) -> str:
        float(value)
        return value


class BLInventoryUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    # BrickLink only accepts relative quantity changes such as "+5" or "-3".
    quantity: Optional[str] = None
    unit_price: Optional[str] = None
    description: Optional[str] = None
    remarks: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def _delta(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _QUANTITY_DELTA.match(value):
            raise ValueError('quantity updates must use delta syntax with +/- prefix (e.g. "+5" or "-3")')
        return value

    @field_validator("unit_price")
    @classmethod
    def _price(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            float(value)
        return value


def _validation_failure(correlation_id: str, exc: ValidationError) -> StoreOperationResult:
    return StoreOperationResult(
        success=False,
        correlation_id=correlation_id,
        error=StoreOperationError(
            code=ErrorCode.VALIDATION.value,
            message="Invalid inventory payload",
            retryable=False,
            details=exc.errors(include_url=False, include_context=False),
        ),
    )


class BrickLinkStoreClient:
    def __init__(
        self,
        tenant_id: str,
        credentials: BrickLinkCredentials,
        transport: Optional[BrickLinkTransport] = None,
        **transport_kwargs: Any,
    ) -> None:
        self.tenant_id = tenant_id
        self.transport = transport or BrickLinkTransport(tenant_id, credentials, **transport_kwargs)

    @classmethod
    def for_tenant(cls, db: Session, tenant_id: str, **transport_kwargs: Any) -> "BrickLinkStoreClient":
        credentials = credential_vault.get_decrypted(db, tenant_id, PROVIDER, caller_tenant_id=SYSTEM_CALLER)
        return cls(tenant_id, credentials, **transport_kwargs)

    async def _call(self, path: str, method: str = "GET", *, query=None, body=None, retry_safe: bool = False,
                    correlation_id: Optional[str] = None) -> Any:
        response = await self.transport.request(
            MarketplaceRequest(
                path=path,
                method=method,
                query=query,
                body=body,
                retry_safe=retry_safe,
                correlation_id=correlation_id,
            )
        )
        return response.data

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    async def get_order(self, order_id: int | str) -> Dict[str, Any]:
        data = await self._call(f"/orders/{order_id}")
        if not isinstance(data, dict):
            raise MarketplaceError(
                ErrorCode.INVALID_RESPONSE, f"BrickLink order {order_id} response has no data", retryable=False,
            )
        return data

    async def get_order_items(self, order_id: int | str) -> List[List[Dict[str, Any]]]:
        """Order items grouped in batches, as BrickLink returns them."""

        data = await self._call(f"/orders/{order_id}/items")
        if not isinstance(data, list):
            raise MarketplaceError(
                ErrorCode.INVALID_RESPONSE, f"BrickLink order {order_id} items response is not a list", retryable=False,
            )
        return data

    async def list_orders(self, direction: str = "in", status: Optional[str] = None, filed: Optional[bool] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"direction": direction}
        if status:
            query["status"] = status
        if filed is not None:
            query["filed"] = filed
        data = await self._call("/orders", query=query)
        return data or []

    # ------------------------------------------------------------------
    # Push notifications
    # ------------------------------------------------------------------
    async def get_notifications(self) -> List[Dict[str, Any]]:
        data = await self._call("/notifications")
        return data or []

    async def register_webhook(self, url: str) -> Any:
        # Registering the same URL again is harmless, so this may be retried.
        return await self._call("/notifications/register", "POST", body={"url": url}, retry_safe=True)

    async def unregister_webhook(self) -> Any:
        return await self._call("/notifications/register", "DELETE", retry_safe=True)

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    async def get_inventory(self, inventory_id: int) -> Dict[str, Any]:
        data = await self._call(f"/inventories/{inventory_id}")
        if not isinstance(data, dict):
            raise MarketplaceError(
                ErrorCode.INVALID_RESPONSE, f"BrickLink inventory {inventory_id} response has no data", retryable=False,
            )
        return data

    async def create_inventory(self, payload: Dict[str, Any]) -> StoreOperationResult:
        correlation_id = str(uuid.uuid4())
        try:
            validated = BLInventoryCreate.model_validate(payload)
        except ValidationError as exc:
            return _validation_failure(correlation_id, exc)

        body = validated.model_dump(exclude_none=True)
        try:
            data = await self._call("/inventories", "POST", body=body, correlation_id=correlation_id)
            if not isinstance(data, dict) or "inventory_id" not in data:
                raise MarketplaceError(
                    ErrorCode.INVALID_RESPONSE,
                    "BrickLink API returned invalid response structure",
                    retryable=False,
                    correlation_id=correlation_id,
                    details={"body": data},
                )
        except Exception as exc:
            logger.warning("BrickLink create_inventory failed tenant=%s correlation_id=%s: %s", self.tenant_id, correlation_id, exc)
            return failed_operation(PROVIDER, correlation_id, exc)

        return StoreOperationResult(
            success=True,
            correlation_id=correlation_id,
            marketplace_id=data["inventory_id"],
            rollback_data=StoreRollbackData(original_payload=body),
        )

    async def update_inventory(self, inventory_id: int, payload: Dict[str, Any]) -> StoreOperationResult:
        correlation_id = str(uuid.uuid4())
        try:
            validated = BLInventoryUpdate.model_validate(payload)
        except ValidationError as exc:
            return _validation_failure(correlation_id, exc)

        body = validated.model_dump(exclude_none=True)
        try:
            # Snapshot first so the change can be reverted.
            current = await self.get_inventory(inventory_id)
            data = await self._call(f"/inventories/{inventory_id}", "PUT", body=body, correlation_id=correlation_id)
        except Exception as exc:
            logger.warning("BrickLink update_inventory failed tenant=%s id=%s correlation_id=%s: %s",
                           self.tenant_id, inventory_id, correlation_id, exc)
            return failed_operation(PROVIDER, correlation_id, exc)

        return StoreOperationResult(
            success=True,
            correlation_id=correlation_id,
            marketplace_id=(data or {}).get("inventory_id", inventory_id),
            rollback_data=StoreRollbackData(
                previous_quantity=current.get("quantity") if "quantity" in body else None,
                previous_price=current.get("unit_price") if "unit_price" in body else None,
                previous_location=current.get("remarks") if "remarks" in body else None,
                previous_notes=current.get("description") if "description" in body else None,
                original_payload=body,
            ),
        )

    async def delete_inventory(self, inventory_id: int) -> StoreOperationResult:
        correlation_id = str(uuid.uuid4())
        if not isinstance(inventory_id, int) or isinstance(inventory_id, bool) or inventory_id <= 0:
            return StoreOperationResult(
                success=False,
                correlation_id=correlation_id,
                error=StoreOperationError(
                    code=ErrorCode.VALIDATION.value,
                    message="inventory_id must be a positive integer",
                    retryable=False,
                ),
            )

        try:
            current = await self.get_inventory(inventory_id)
            await self._call(f"/inventories/{inventory_id}", "DELETE", correlation_id=correlation_id)
        except Exception as exc:
            logger.warning("BrickLink delete_inventory failed tenant=%s id=%s correlation_id=%s: %s",
                           self.tenant_id, inventory_id, correlation_id, exc)
            return failed_operation(PROVIDER, correlation_id, exc)

        return StoreOperationResult(
            success=True,
            correlation_id=correlation_id,
            marketplace_id=inventory_id,
            rollback_data=StoreRollbackData(
                previous_quantity=current.get("quantity"),
                previous_price=current.get("unit_price"),
                previous_location=current.get("remarks"),
                previous_notes=current.get("description"),
                original_payload=current,
            ),
        )

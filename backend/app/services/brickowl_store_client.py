"""BrickOwl API operations for one tenant."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.marketplace import StoreOperationError, StoreOperationResult, StoreRollbackData
from app.models_sqlalchemy.models import MarketplaceProvider
from app.services.credential_vault import SYSTEM_CALLER, credential_vault
from app.services.marketplace_errors import ErrorCode, MarketplaceError, failed_operation
from app.services.marketplace_transport import BrickOwlCredentials, BrickOwlTransport, MarketplaceRequest
from app.services.order_normalizers import parse_number_like
from app.utils.logger import logger

PROVIDER = MarketplaceProvider.brickowl.value


def _unwrap(body: Any, key: str) -> Any:
    """BrickOwl sometimes wraps results (``{"orders": [...]}``), sometimes not."""

    if isinstance(body, dict) and key in body:
        return body[key]
    return body


class BrickOwlStoreClient:
    def __init__(
        self,
        tenant_id: str,
        credentials: BrickOwlCredentials,
        transport: Optional[BrickOwlTransport] = None,
        **transport_kwargs: Any,
    ) -> None:
        self.tenant_id = tenant_id
        self.transport = transport or BrickOwlTransport(tenant_id, credentials, **transport_kwargs)

    @classmethod
    def for_tenant(cls, db: Session, tenant_id: str, **transport_kwargs: Any) -> "BrickOwlStoreClient":
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

    async def list_orders(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {"status": status} if status is not None else None
        orders = _unwrap(await self._call("/order/list", query=query), "orders")
        return orders if isinstance(orders, list) else []

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        order = _unwrap(await self._call("/order/view", query={"order_id": order_id}), "order")
        if not isinstance(order, dict) or not order:
            raise MarketplaceError(
                ErrorCode.NOT_FOUND, f"BrickOwl order {order_id} not found", retryable=False,
            )
        return order

    async def get_order_items(self, order_id: str) -> List[Dict[str, Any]]:
        items = _unwrap(await self._call("/order/items", query={"order_id": order_id}), "items")
        return items if isinstance(items, list) else []

    async def get_inventory(self, lot_id: str) -> Dict[str, Any]:
        lots = await self._call("/inventory/list", query={"active_only": "1", "lot_id": lot_id})
        if not isinstance(lots, list) or not lots:
            raise MarketplaceError(
                ErrorCode.NOT_FOUND, f"Inventory lot {lot_id} not found on BrickOwl", retryable=False,
            )
        return lots[0]

    async def update_inventory(self, lot_id: str, payload: Dict[str, Any]) -> StoreOperationResult:
        correlation_id = str(uuid.uuid4())
        if not lot_id or not isinstance(payload, dict) or not payload:
            return StoreOperationResult(
                success=False,
                correlation_id=correlation_id,
                error=StoreOperationError(
                    code=ErrorCode.VALIDATION.value,
                    message="lot_id and a non-empty payload are required",
                    retryable=False,
                ),
            )

        body = {"lot_id": lot_id, **payload}
        try:
            current = await self.get_inventory(lot_id)
            # inventory/update sets absolute values, so repeating it is safe.
            data = await self._call("/inventory/update", "POST", body=body, retry_safe=True, correlation_id=correlation_id)
        except Exception as exc:
            logger.warning("BrickOwl update_inventory failed tenant=%s lot=%s correlation_id=%s: %s",
                           self.tenant_id, lot_id, correlation_id, exc)
            return failed_operation(PROVIDER, correlation_id, exc)

        previous_quantity = parse_number_like(current.get("quantity", current.get("qty")))
        previous_price = current.get("price", current.get("base_price"))
        return StoreOperationResult(
            success=True,
            correlation_id=correlation_id,
            marketplace_id=(data or {}).get("lot_id", lot_id) if isinstance(data, dict) else lot_id,
            rollback_data=StoreRollbackData(
                previous_quantity=int(previous_quantity) if previous_quantity is not None else None,
                previous_price=str(previous_price) if previous_price is not None else None,
                previous_notes=current.get("personal_note"),
                original_payload=body,
            ),
        )

    async def delete_inventory(self, lot_id: str) -> StoreOperationResult:
        correlation_id = str(uuid.uuid4())
        if not lot_id:
            return StoreOperationResult(
                success=False,
                correlation_id=correlation_id,
                error=StoreOperationError(
                    code=ErrorCode.VALIDATION.value,
                    message="lot_id is required",
                    retryable=False,
                ),
            )

        try:
            current = await self.get_inventory(lot_id)
            await self._call("/inventory/delete", "POST", body={"lot_id": lot_id}, correlation_id=correlation_id)
        except Exception as exc:
            logger.warning("BrickOwl delete_inventory failed tenant=%s lot=%s correlation_id=%s: %s",
                           self.tenant_id, lot_id, correlation_id, exc)
            return failed_operation(PROVIDER, correlation_id, exc)

        previous_quantity = parse_number_like(current.get("quantity", current.get("qty")))
        previous_price = current.get("price", current.get("base_price"))
        return StoreOperationResult(
            success=True,
            correlation_id=correlation_id,
            marketplace_id=lot_id,
            rollback_data=StoreRollbackData(
                previous_quantity=int(previous_quantity) if previous_quantity is not None else None,
                previous_price=str(previous_price) if previous_price is not None else None,
                previous_notes=current.get("personal_note"),
                original_payload=current,
            ),
        )

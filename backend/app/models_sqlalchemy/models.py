from sqlalchemy import Column, Integer, BigInteger, String, Float, DateTime, Text, ForeignKey, Boolean, Index, UniqueConstraint, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
import enum
import uuid

from . import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class MarketplaceProvider(str, enum.Enum):
    bricklink = "bricklink"
    brickowl = "brickowl"


class ValidationStatus(str, enum.Enum):
    pending = "pending"
    success = "success"
    failed = "failed"


class WebhookStatus(str, enum.Enum):
    unconfigured = "unconfigured"
    registering = "registering"
    registered = "registered"
    disabled = "disabled"
    error = "error"


class NotificationStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    dead_letter = "dead_letter"


class OrderItemStatus(str, enum.Enum):
    picked = "picked"
    unpicked = "unpicked"
    skipped = "skipped"
    issue = "issue"


class InventoryMatchStatus(str, enum.Enum):
    matched = "matched"
    unmatched = "unmatched"
    not_applicable = "not_applicable"


class LedgerReason(str, enum.Enum):
    order_sale = "order_sale"
    manual_adjustment = "manual_adjustment"


class OutboxStatus(str, enum.Enum):
    pending = "pending"
    inflight = "inflight"
    succeeded = "succeeded"
    failed = "failed"


class OutboxKind(str, enum.Enum):
    create = "create"
    update = "update"
    delete = "delete"


class MarketplaceCredential(Base):
    """Per-tenant credentials for one marketplace provider.

    Secret columns always hold ``ENC:v1:`` ciphertext; read and write them
    through the properties below, which go through :mod:`app.utils.crypto`.
    BrickLink uses the four OAuth 1.0a fields, BrickOwl only the API key.
    """

    __tablename__ = "marketplace_credentials"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    provider = Column(String(32), nullable=False)

    _bl_consumer_key = Column("bl_consumer_key", Text, nullable=True)
    _bl_consumer_secret = Column("bl_consumer_secret", Text, nullable=True)
    _bl_token_value = Column("bl_token_value", Text, nullable=True)
    _bl_token_secret = Column("bl_token_secret", Text, nullable=True)
    _bo_api_key = Column("bo_api_key", Text, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    sync_enabled = Column(Boolean, nullable=False, default=False)
    orders_sync_enabled = Column(Boolean, nullable=False, default=True)
    inventory_sync_enabled = Column(Boolean, nullable=False, default=False)

    validation_status = Column(String(16), nullable=False, default=ValidationStatus.pending.value)
    validation_message = Column(Text, nullable=True)
    last_validated_at = Column(DateTime(timezone=True), nullable=True)

    # Push notifications (BrickLink only). The token is generated once and is
    # the only thing identifying the tenant on inbound webhook calls.
    webhook_token = Column(String(64), nullable=True, unique=True)
    webhook_status = Column(String(16), nullable=False, default=WebhookStatus.unconfigured.value)
    webhook_endpoint = Column(Text, nullable=True)
    webhook_registered_at = Column(DateTime(timezone=True), nullable=True)
    webhook_last_checked_at = Column(DateTime(timezone=True), nullable=True)
    webhook_last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_marketplace_credentials_tenant_provider"),
        Index("idx_marketplace_credentials_provider_active", "provider", "is_active"),
    )

    # ------------------------------------------------------------------
    # Encrypted secret accessors
    # ------------------------------------------------------------------
    @property
    def bl_consumer_key(self) -> str | None:
        from app.utils import crypto
        return crypto.decrypt(self._bl_consumer_key)

    @bl_consumer_key.setter
    def bl_consumer_key(self, value: str | None) -> None:
        from app.utils import crypto
        self._bl_consumer_key = crypto.encrypt(value)

    @property
    def bl_consumer_secret(self) -> str | None:
        from app.utils import crypto
        return crypto.decrypt(self._bl_consumer_secret)

    @bl_consumer_secret.setter
    def bl_consumer_secret(self, value: str | None) -> None:
        from app.utils import crypto
        self._bl_consumer_secret = crypto.encrypt(value)

    @property
    def bl_token_value(self) -> str | None:
        from app.utils import crypto
        return crypto.decrypt(self._bl_token_value)

    @bl_token_value.setter
    def bl_token_value(self, value: str | None) -> None:
        from app.utils import crypto
        self._bl_token_value = crypto.encrypt(value)

    @property
    def bl_token_secret(self) -> str | None:
        from app.utils import crypto
        return crypto.decrypt(self._bl_token_secret)

    @bl_token_secret.setter
    def bl_token_secret(self, value: str | None) -> None:
        from app.utils import crypto
        self._bl_token_secret = crypto.encrypt(value)

    @property
    def bo_api_key(self) -> str | None:
        from app.utils import crypto
        return crypto.decrypt(self._bo_api_key)

    @bo_api_key.setter
    def bo_api_key(self, value: str | None) -> None:
        from app.utils import crypto
        self._bo_api_key = crypto.encrypt(value)


class MarketplaceRateLimit(Base):
    """Sliding-window quota and circuit-breaker state per (tenant, provider).

    Times are epoch milliseconds so window arithmetic stays exact across
    databases that drop timezone information.
    """

    __tablename__ = "marketplace_rate_limits"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    provider = Column(String(32), nullable=False)

    window_start_ms = Column(BigInteger, nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    capacity = Column(Integer, nullable=False)
    window_duration_ms = Column(BigInteger, nullable=False)
    alert_threshold = Column(Float, nullable=False, default=0.8)
    alert_emitted = Column(Boolean, nullable=False, default=False)

    consecutive_failures = Column(Integer, nullable=False, default=0)
    circuit_breaker_open_until_ms = Column(BigInteger, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_marketplace_rate_limits_tenant_provider"),
    )


class MarketplaceOrder(Base):
    __tablename__ = "marketplace_orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    provider = Column(String(32), nullable=False)
    order_id = Column(String(64), nullable=False)
    external_order_key = Column(String(128), nullable=True)

    date_ordered = Column(DateTime(timezone=True), nullable=True)
    date_status_changed = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, index=True)  # canonical status
    provider_status = Column(String(64), nullable=True)

    buyer_name = Column(String(255), nullable=True)
    buyer_email = Column(String(255), nullable=True)
    buyer_order_count = Column(Integer, nullable=True)
    store_name = Column(String(255), nullable=True)
    seller_name = Column(String(255), nullable=True)
    remarks = Column(Text, nullable=True)
    total_count = Column(Integer, nullable=True)
    lot_count = Column(Integer, nullable=True)
    total_weight = Column(Float, nullable=True)

    payment_method = Column(String(64), nullable=True)
    payment_currency_code = Column(String(8), nullable=True)
    payment_date_paid = Column(DateTime(timezone=True), nullable=True)
    payment_status = Column(String(64), nullable=True)

    shipping_method = Column(String(128), nullable=True)
    shipping_method_id = Column(String(64), nullable=True)
    shipping_tracking_no = Column(String(128), nullable=True)
    shipping_tracking_link = Column(Text, nullable=True)
    shipping_date_shipped = Column(DateTime(timezone=True), nullable=True)
    shipping_address = Column(Text, nullable=True)

    cost_currency_code = Column(String(8), nullable=True)
    cost_subtotal = Column(Float, nullable=True)
    cost_grand_total = Column(Float, nullable=True)
    cost_sales_tax = Column(Float, nullable=True)
    cost_final_total = Column(Float, nullable=True)
    cost_insurance = Column(Float, nullable=True)
    cost_shipping = Column(Float, nullable=True)
    cost_credit = Column(Float, nullable=True)
    cost_coupon = Column(Float, nullable=True)

    provider_data = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", "order_id", name="uq_marketplace_orders_tenant_provider_order"),
        Index("idx_marketplace_orders_tenant_status", "tenant_id", "status"),
    )


class MarketplaceOrderItem(Base):
    __tablename__ = "marketplace_order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    provider = Column(String(32), nullable=False)
    order_id = Column(String(64), nullable=False)
    provider_item_id = Column(String(64), nullable=True)

    item_no = Column(String(64), nullable=False)
    item_name = Column(Text, nullable=True)
    item_type = Column(String(32), nullable=True)
    item_category_id = Column(Integer, nullable=True)
    color_id = Column(Integer, nullable=True)
    color_name = Column(String(128), nullable=True)
    quantity = Column(Integer, nullable=False)
    condition = Column(String(8), nullable=True)  # new, used
    completeness = Column(String(8), nullable=True)
    unit_price = Column(Float, nullable=True)
    unit_price_final = Column(Float, nullable=True)
    currency_code = Column(String(8), nullable=True)
    remarks = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    weight = Column(Float, nullable=True)
    # Join key against inventory_items.location; "UNKNOWN" when the provider sent none.
    location = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False, default=OrderItemStatus.unpicked.value)

    inventory_item_id = Column(String(36), ForeignKey("inventory_items.id", ondelete="SET NULL"), nullable=True)
    inventory_match_status = Column(String(16), nullable=False, default=InventoryMatchStatus.not_applicable.value)

    provider_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_marketplace_order_items_order", "tenant_id", "provider", "order_id"),
        Index("idx_marketplace_order_items_match", "tenant_id", "inventory_match_status"),
    )


class InventoryItem(Base):
    """Internal stock row, one per (tenant, part, color, condition, location)."""

    __tablename__ = "inventory_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False)
    part_number = Column(String(64), nullable=False)
    name = Column(Text, nullable=True)
    color_id = Column(String(16), nullable=False)
    condition = Column(String(8), nullable=False)  # new, used
    location = Column(String(128), nullable=False)

    quantity_available = Column(Integer, nullable=False, default=0)
    quantity_reserved = Column(Integer, nullable=False, default=0)
    price = Column(Float, nullable=True)

    bricklink_lot_id = Column(BigInteger, nullable=True)
    brickowl_lot_id = Column(String(64), nullable=True)
    bricklink_sync_status = Column(String(16), nullable=True)
    brickowl_sync_status = Column(String(16), nullable=True)
    # Last ledger seq and available quantity each store is known to match.
    bricklink_synced_seq = Column(Integer, nullable=True)
    bricklink_synced_available = Column(Integer, nullable=True)
    bricklink_sync_error = Column(Text, nullable=True)
    brickowl_synced_seq = Column(Integer, nullable=True)
    brickowl_synced_available = Column(Integer, nullable=True)
    brickowl_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "part_number", "color_id", "condition", "location",
            name="uq_inventory_items_business_key",
        ),
    )


class InventoryQuantityLedger(Base):
    """Append-only history of quantity_available changes per inventory item.

    ``seq`` starts at 1 and is gap-free per item; ``post_available`` of one
    entry is the ``pre_available`` of the next.
    """

    __tablename__ = "inventory_quantity_ledger"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    inventory_item_id = Column(String(36), ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)

    pre_available = Column(Integer, nullable=False)
    post_available = Column(Integer, nullable=False)
    delta_available = Column(Integer, nullable=False)

    reason = Column(String(32), nullable=False)  # order_sale, manual_adjustment, ...
    source = Column(String(32), nullable=False)  # bricklink, brickowl, user
    order_id = Column(String(64), nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("inventory_item_id", "seq", name="uq_inventory_quantity_ledger_item_seq"),
    )


class BrickLinkNotification(Base):
    """Inbox row for a BrickLink push notification (or a polled one).

    Deduplicated on ``dedupe_key`` = ``tenant:eventType:resourceId:timestamp``.
    """

    __tablename__ = "bricklink_notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    dedupe_key = Column(String(255), nullable=False, unique=True)

    event_type = Column(String(16), nullable=False)  # Order, Message, Feedback
    resource_id = Column(BigInteger, nullable=False)
    event_timestamp = Column(DateTime(timezone=True), nullable=False)

    status = Column(String(16), nullable=False, default=NotificationStatus.pending.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_bricklink_notifications_tenant_status", "tenant_id", "status"),
    )


class InventorySyncOutbox(Base):
    """Pending push of one inventory item's ledger window to one store.

    The window is ``(from_seq_exclusive, to_seq_inclusive]``. Rows are written
    in the same transaction as the ledger entries they cover and drained by
    the sync loop.
    """

    __tablename__ = "inventory_sync_outbox"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    inventory_item_id = Column(String(36), ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    kind = Column(String(16), nullable=False)

    from_seq_exclusive = Column(Integer, nullable=False, default=0)
    to_seq_inclusive = Column(Integer, nullable=False, default=0)

    status = Column(String(16), nullable=False, default=OutboxStatus.pending.value)
    attempt = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_error = Column(Text, nullable=True)
    correlation_id = Column(String(64), nullable=True)
    # Store snapshot taken before the write, kept for manual reverts.
    rollback_data = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_inventory_sync_outbox_status_next", "status", "next_attempt_at"),
        Index("idx_inventory_sync_outbox_item_provider", "inventory_item_id", "provider", "status"),
    )

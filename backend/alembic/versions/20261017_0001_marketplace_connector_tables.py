"""marketplace connector tables

Revision ID: marketplace_001
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = 'marketplace_001'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'marketplace_credentials' not in existing_tables:
        op.create_table(
            'marketplace_credentials',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('provider', sa.String(32), nullable=False),
            sa.Column('bl_consumer_key', sa.Text(), nullable=True),
            sa.Column('bl_consumer_secret', sa.Text(), nullable=True),
            sa.Column('bl_token_value', sa.Text(), nullable=True),
            sa.Column('bl_token_secret', sa.Text(), nullable=True),
            sa.Column('bo_api_key', sa.Text(), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('orders_sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('inventory_sync_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('validation_status', sa.String(16), nullable=False, server_default='pending'),
            sa.Column('validation_message', sa.Text(), nullable=True),
            sa.Column('last_validated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('webhook_token', sa.String(64), nullable=True, unique=True),
            sa.Column('webhook_status', sa.String(16), nullable=False, server_default='unconfigured'),
            sa.Column('webhook_endpoint', sa.Text(), nullable=True),
            sa.Column('webhook_registered_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('webhook_last_checked_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('webhook_last_error', sa.Text(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('tenant_id', 'provider', name='uq_marketplace_credentials_tenant_provider'),
        )
        op.create_index('ix_marketplace_credentials_tenant_id', 'marketplace_credentials', ['tenant_id'])
        op.create_index('idx_marketplace_credentials_provider_active', 'marketplace_credentials', ['provider', 'is_active'])

    if 'marketplace_rate_limits' not in existing_tables:
        op.create_table(
            'marketplace_rate_limits',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('provider', sa.String(32), nullable=False),
            sa.Column('window_start_ms', sa.BigInteger(), nullable=False),
            sa.Column('request_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('capacity', sa.Integer(), nullable=False),
            sa.Column('window_duration_ms', sa.BigInteger(), nullable=False),
            sa.Column('alert_threshold', sa.Float(), nullable=False, server_default='0.8'),
            sa.Column('alert_emitted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('circuit_breaker_open_until_ms', sa.BigInteger(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('tenant_id', 'provider', name='uq_marketplace_rate_limits_tenant_provider'),
        )

    if 'inventory_items' not in existing_tables:
        op.create_table(
            'inventory_items',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('part_number', sa.String(64), nullable=False),
            sa.Column('name', sa.Text(), nullable=True),
            sa.Column('color_id', sa.String(16), nullable=False),
            sa.Column('condition', sa.String(8), nullable=False),
            sa.Column('location', sa.String(128), nullable=False),
            sa.Column('quantity_available', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('quantity_reserved', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('price', sa.Float(), nullable=True),
            sa.Column('bricklink_lot_id', sa.BigInteger(), nullable=True),
            sa.Column('brickowl_lot_id', sa.String(64), nullable=True),
            sa.Column('bricklink_sync_status', sa.String(16), nullable=True),
            sa.Column('brickowl_sync_status', sa.String(16), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint(
                'tenant_id', 'part_number', 'color_id', 'condition', 'location',
                name='uq_inventory_items_business_key',
            ),
        )

    if 'marketplace_orders' not in existing_tables:
        op.create_table(
            'marketplace_orders',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('provider', sa.String(32), nullable=False),
            sa.Column('order_id', sa.String(64), nullable=False),
            sa.Column('external_order_key', sa.String(128), nullable=True),
            sa.Column('date_ordered', sa.DateTime(timezone=True), nullable=True),
            sa.Column('date_status_changed', sa.DateTime(timezone=True), nullable=True),
            sa.Column('status', sa.String(16), nullable=False),
            sa.Column('provider_status', sa.String(64), nullable=True),
            sa.Column('buyer_name', sa.String(255), nullable=True),
            sa.Column('buyer_email', sa.String(255), nullable=True),
            sa.Column('buyer_order_count', sa.Integer(), nullable=True),
            sa.Column('store_name', sa.String(255), nullable=True),
            sa.Column('seller_name', sa.String(255), nullable=True),
            sa.Column('remarks', sa.Text(), nullable=True),
            sa.Column('total_count', sa.Integer(), nullable=True),
            sa.Column('lot_count', sa.Integer(), nullable=True),
            sa.Column('total_weight', sa.Float(), nullable=True),
            sa.Column('payment_method', sa.String(64), nullable=True),
            sa.Column('payment_currency_code', sa.String(8), nullable=True),
            sa.Column('payment_date_paid', sa.DateTime(timezone=True), nullable=True),
            sa.Column('payment_status', sa.String(64), nullable=True),
            sa.Column('shipping_method', sa.String(128), nullable=True),
            sa.Column('shipping_method_id', sa.String(64), nullable=True),
            sa.Column('shipping_tracking_no', sa.String(128), nullable=True),
            sa.Column('shipping_tracking_link', sa.Text(), nullable=True),
            sa.Column('shipping_date_shipped', sa.DateTime(timezone=True), nullable=True),
            sa.Column('shipping_address', sa.Text(), nullable=True),
            sa.Column('cost_currency_code', sa.String(8), nullable=True),
            sa.Column('cost_subtotal', sa.Float(), nullable=True),
            sa.Column('cost_grand_total', sa.Float(), nullable=True),
            sa.Column('cost_sales_tax', sa.Float(), nullable=True),
            sa.Column('cost_final_total', sa.Float(), nullable=True),
            sa.Column('cost_insurance', sa.Float(), nullable=True),
            sa.Column('cost_shipping', sa.Float(), nullable=True),
            sa.Column('cost_credit', sa.Float(), nullable=True),
            sa.Column('cost_coupon', sa.Float(), nullable=True),
            sa.Column('provider_data', JSONType, nullable=True),
            sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('tenant_id', 'provider', 'order_id', name='uq_marketplace_orders_tenant_provider_order'),
        )
        op.create_index('ix_marketplace_orders_status', 'marketplace_orders', ['status'])
        op.create_index('idx_marketplace_orders_tenant_status', 'marketplace_orders', ['tenant_id', 'status'])

    if 'marketplace_order_items' not in existing_tables:
        op.create_table(
            'marketplace_order_items',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('provider', sa.String(32), nullable=False),
            sa.Column('order_id', sa.String(64), nullable=False),
            sa.Column('provider_item_id', sa.String(64), nullable=True),
            sa.Column('item_no', sa.String(64), nullable=False),
            sa.Column('item_name', sa.Text(), nullable=True),
            sa.Column('item_type', sa.String(32), nullable=True),
            sa.Column('item_category_id', sa.Integer(), nullable=True),
            sa.Column('color_id', sa.Integer(), nullable=True),
            sa.Column('color_name', sa.String(128), nullable=True),
            sa.Column('quantity', sa.Integer(), nullable=False),
            sa.Column('condition', sa.String(8), nullable=True),
            sa.Column('completeness', sa.String(8), nullable=True),
            sa.Column('unit_price', sa.Float(), nullable=True),
            sa.Column('unit_price_final', sa.Float(), nullable=True),
            sa.Column('currency_code', sa.String(8), nullable=True),
            sa.Column('remarks', sa.Text(), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('weight', sa.Float(), nullable=True),
            sa.Column('location', sa.String(128), nullable=False),
            sa.Column('status', sa.String(16), nullable=False, server_default='unpicked'),
            sa.Column(
                'inventory_item_id', sa.String(36),
                sa.ForeignKey('inventory_items.id', ondelete='SET NULL'), nullable=True,
            ),
            sa.Column('inventory_match_status', sa.String(16), nullable=False, server_default='not_applicable'),
            sa.Column('provider_data', JSONType, nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('idx_marketplace_order_items_order', 'marketplace_order_items', ['tenant_id', 'provider', 'order_id'])
        op.create_index('idx_marketplace_order_items_match', 'marketplace_order_items', ['tenant_id', 'inventory_match_status'])

    if 'inventory_quantity_ledger' not in existing_tables:
        op.create_table(
            'inventory_quantity_ledger',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column(
                'inventory_item_id', sa.String(36),
                sa.ForeignKey('inventory_items.id', ondelete='CASCADE'), nullable=False,
            ),
            sa.Column('seq', sa.Integer(), nullable=False),
            sa.Column('pre_available', sa.Integer(), nullable=False),
            sa.Column('post_available', sa.Integer(), nullable=False),
            sa.Column('delta_available', sa.Integer(), nullable=False),
            sa.Column('reason', sa.String(32), nullable=False),
            sa.Column('source', sa.String(32), nullable=False),
            sa.Column('order_id', sa.String(64), nullable=True),
            sa.Column('correlation_id', sa.String(64), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('inventory_item_id', 'seq', name='uq_inventory_quantity_ledger_item_seq'),
        )
        op.create_index('ix_inventory_quantity_ledger_tenant_id', 'inventory_quantity_ledger', ['tenant_id'])
        op.create_index('ix_inventory_quantity_ledger_correlation_id', 'inventory_quantity_ledger', ['correlation_id'])

    if 'bricklink_notifications' not in existing_tables:
        op.create_table(
            'bricklink_notifications',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column('dedupe_key', sa.String(255), nullable=False, unique=True),
            sa.Column('event_type', sa.String(16), nullable=False),
            sa.Column('resource_id', sa.BigInteger(), nullable=False),
            sa.Column('event_timestamp', sa.DateTime(timezone=True), nullable=False),
            sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        )
        op.create_index('ix_bricklink_notifications_tenant_id', 'bricklink_notifications', ['tenant_id'])
        op.create_index('ix_bricklink_notifications_status', 'bricklink_notifications', ['status'])
        op.create_index('idx_bricklink_notifications_tenant_status', 'bricklink_notifications', ['tenant_id', 'status'])


def downgrade():
    op.drop_table('bricklink_notifications')
    op.drop_table('inventory_quantity_ledger')
    op.drop_table('marketplace_order_items')
    op.drop_table('marketplace_orders')
    op.drop_table('inventory_items')
    op.drop_table('marketplace_rate_limits')
    op.drop_table('marketplace_credentials')

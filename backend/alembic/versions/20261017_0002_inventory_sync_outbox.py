"""inventory sync outbox and per-store sync cursors

Revision ID: marketplace_002
Revises: marketplace_001
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = 'marketplace_002'
down_revision = 'marketplace_001'
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

CURSOR_COLUMNS = (
    ('bricklink_synced_seq', sa.Integer()),
    ('bricklink_synced_available', sa.Integer()),
    ('bricklink_sync_error', sa.Text()),
    ('brickowl_synced_seq', sa.Integer()),
    ('brickowl_synced_available', sa.Integer()),
    ('brickowl_sync_error', sa.Text()),
)


def upgrade():
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_columns = {c['name'] for c in inspector.get_columns('inventory_items')}

    with op.batch_alter_table('inventory_items') as batch:
        for name, column_type in CURSOR_COLUMNS:
            if name not in existing_columns:
                batch.add_column(sa.Column(name, column_type, nullable=True))

    if 'inventory_sync_outbox' not in inspector.get_table_names():
        op.create_table(
            'inventory_sync_outbox',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), nullable=False),
            sa.Column(
                'inventory_item_id', sa.String(36),
                sa.ForeignKey('inventory_items.id', ondelete='CASCADE'), nullable=False,
            ),
            sa.Column('provider', sa.String(32), nullable=False),
            sa.Column('kind', sa.String(16), nullable=False),
            sa.Column('from_seq_exclusive', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('to_seq_inclusive', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
            sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('correlation_id', sa.String(64), nullable=True),
            sa.Column('rollback_data', JSONType, nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_inventory_sync_outbox_tenant_id', 'inventory_sync_outbox', ['tenant_id'])
        op.create_index(
            'idx_inventory_sync_outbox_status_next', 'inventory_sync_outbox', ['status', 'next_attempt_at'],
        )
        op.create_index(
            'idx_inventory_sync_outbox_item_provider', 'inventory_sync_outbox',
            ['inventory_item_id', 'provider', 'status'],
        )


def downgrade():
    op.drop_table('inventory_sync_outbox')
    with op.batch_alter_table('inventory_items') as batch:
        for name, _ in reversed(CURSOR_COLUMNS):
            batch.drop_column(name)

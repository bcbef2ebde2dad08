"""
Alembic migration: Create order workflow and piece-tracking schema.

Creates orders, order_items, order_item_pieces, order_status_history,
order_history and workflow_settings. The per-item piece sequence is unique
through a deferred constraint so that pieces can be renumbered inside one
transaction, and at most one active workflow_settings row may exist per
(tenant, service category) scope.

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        'id',
        postgresql.UUID(as_uuid=True),
        nullable=False,
        server_default=sa.text('gen_random_uuid()'),
        comment='Unique identifier for the record',
    )


def _tenant_column() -> sa.Column:
    return sa.Column(
        'tenant_id',
        postgresql.UUID(as_uuid=True),
        nullable=False,
        comment='Owning tenant',
    )


def _timestamp_columns() -> list:
    return [
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP'),
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """Create the workflow tables, constraints and indexes."""
    op.create_table(
        'orders',
        _id_column(),
        _tenant_column(),
        sa.Column('order_number', sa.String(length=50), nullable=False,
                  comment='Human-readable order number'),
        sa.Column('current_status', sa.String(length=32), nullable=False,
                  server_default='intake', comment='Current lifecycle status'),
        sa.Column('service_category_code', sa.String(length=50), nullable=True,
                  comment='Service category code'),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Customer identifier'),
        sa.Column('order_subtype', sa.String(length=20), nullable=True,
                  comment="Order subtype, 'split' for sub-orders"),
        sa.Column('has_split', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('has_issue', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('is_rejected', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('is_quick_drop', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('rack_location', sa.String(length=100), nullable=True,
                  comment='Pickup rack location'),
        sa.Column('ready_by', sa.TIMESTAMP(timezone=True), nullable=True,
                  comment='Promised ready timestamp'),
        sa.Column('ready_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('closed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False,
                  server_default=sa.text('0'), comment='Sum of item totals'),
        sa.Column('parent_order_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Order this sub-order was split from'),
        sa.Column('split_reason', sa.String(length=500), nullable=True,
                  comment='Reason recorded when the order was split off'),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False,
                  comment='Optimistic concurrency counter'),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.ForeignKeyConstraint(
            ['parent_order_id'],
            ['orders.id'],
            name='fk_orders_parent_order_id',
            ondelete='RESTRICT',
        ),
        sa.UniqueConstraint(
            'tenant_id', 'order_number', name='uq_orders_tenant_order_number'
        ),
        sa.CheckConstraint(
            'total_amount >= 0',
            name='ck_orders_total_amount_non_negative',
        ),
        comment='Laundry orders with workflow status',
    )
    op.create_index('ix_orders_tenant_id', 'orders', ['tenant_id'])
    op.create_index('ix_orders_current_status', 'orders', ['current_status'])
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_ready_by', 'orders', ['ready_by'])
    op.create_index('ix_orders_parent_order_id', 'orders', ['parent_order_id'])
    op.create_index('ix_orders_tenant_status', 'orders', ['tenant_id', 'current_status'])
    op.create_index('ix_orders_tenant_ready_by', 'orders', ['tenant_id', 'ready_by'])

    op.create_table(
        'order_items',
        _id_column(),
        _tenant_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Catalog product identifier'),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('quantity_ready', sa.Integer(), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('unit_price', sa.Numeric(precision=10, scale=2), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('total_price', sa.Numeric(precision=12, scale=2), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('has_stain', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('has_damage', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('issues_resolved', sa.Boolean(), nullable=False,
                  server_default=sa.text('false'),
                  comment='Stain, damage and rejection issues were resolved'),
        sa.Column('qa_status', sa.String(length=16), nullable=False,
                  server_default='pending'),
        sa.Column('piece_tracking', sa.Boolean(), nullable=False,
                  server_default=sa.text('false'),
                  comment='Pieces are tracked individually for this item'),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_items_order_id',
            ondelete='CASCADE',
        ),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint(
            'quantity_ready >= 0 AND quantity_ready <= quantity',
            name='ck_order_items_quantity_ready_bounds',
        ),
        sa.CheckConstraint(
            "qa_status IN ('pending', 'passed', 'failed')",
            name='ck_order_items_qa_status',
        ),
    )
    op.create_index('ix_order_items_tenant_id', 'order_items', ['tenant_id'])
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_item_pieces',
        _id_column(),
        _tenant_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_item_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('piece_seq', sa.Integer(), nullable=False),
        sa.Column('barcode', sa.String(length=100), nullable=False),
        sa.Column('scan_state', sa.String(length=16), nullable=False,
                  server_default='expected'),
        sa.Column('piece_status', sa.String(length=16), nullable=False,
                  server_default='intake'),
        sa.Column('is_rejected', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('issue_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='External issue reference'),
        sa.Column('rack_location', sa.String(length=100), nullable=True),
        sa.Column('last_step', sa.String(length=50), nullable=True),
        sa.Column('last_step_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_step_by', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_order_item_pieces'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_item_pieces_order_id',
            ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['order_item_id'],
            ['order_items.id'],
            name='fk_order_item_pieces_order_item_id',
            ondelete='CASCADE',
        ),
        sa.UniqueConstraint(
            'order_item_id',
            'piece_seq',
            name='uq_order_item_pieces_item_seq',
            deferrable=True,
            initially='DEFERRED',
        ),
        sa.UniqueConstraint(
            'tenant_id', 'barcode', name='uq_order_item_pieces_tenant_barcode'
        ),
        sa.CheckConstraint('piece_seq > 0', name='ck_order_item_pieces_seq_positive'),
        sa.CheckConstraint(
            "scan_state IN ('expected', 'scanned', 'missing', 'wrong')",
            name='ck_order_item_pieces_scan_state',
        ),
        sa.CheckConstraint(
            "piece_status IN ('intake', 'processing', 'qa', 'ready')",
            name='ck_order_item_pieces_piece_status',
        ),
    )
    op.create_index('ix_order_item_pieces_tenant_id', 'order_item_pieces', ['tenant_id'])
    op.create_index('ix_order_item_pieces_order_id', 'order_item_pieces', ['order_id'])
    op.create_index(
        'ix_order_item_pieces_order_item_id', 'order_item_pieces', ['order_item_id']
    )

    op.create_table(
        'order_status_history',
        _id_column(),
        _tenant_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('from_status', sa.String(length=32), nullable=True),
        sa.Column('to_status', sa.String(length=32), nullable=False),
        sa.Column('changed_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('changed_by_name', sa.String(length=255), nullable=True),
        sa.Column('changed_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_order_status_history'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_status_history_order_id',
            ondelete='CASCADE',
        ),
        comment='Append-only log of order status changes',
    )
    op.create_index(
        'ix_order_status_history_tenant_id', 'order_status_history', ['tenant_id']
    )
    op.create_index(
        'ix_order_status_history_order_id', 'order_status_history', ['order_id']
    )
    op.create_index(
        'ix_order_status_history_order_changed',
        'order_status_history',
        ['order_id', 'changed_at'],
    )

    op.create_table(
        'order_history',
        _id_column(),
        _tenant_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('actor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('actor_name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id', name='pk_order_history'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_history_order_id',
            ondelete='CASCADE',
        ),
        comment='Audit log of order creation, splits and rejections',
    )
    op.create_index('ix_order_history_tenant_id', 'order_history', ['tenant_id'])
    op.create_index('ix_order_history_order_id', 'order_history', ['order_id'])

    op.create_table(
        'workflow_settings',
        _id_column(),
        _tenant_column(),
        sa.Column('service_category_code', sa.String(length=50), nullable=True,
                  comment='Service category scope, NULL for tenant default'),
        sa.Column('status_transitions', postgresql.JSONB(astext_type=sa.Text()),
                  nullable=False, server_default=sa.text("'{}'::jsonb"),
                  comment='from_status -> [allowed to_status]'),
        sa.Column('quality_gate_rules', postgresql.JSONB(astext_type=sa.Text()),
                  nullable=False, server_default=sa.text("'{}'::jsonb"),
                  comment='to_status -> {predicate: bool}'),
        sa.Column('is_active', sa.Boolean(), nullable=False,
                  server_default=sa.text('true')),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_workflow_settings'),
    )
    op.create_index('ix_workflow_settings_tenant_id', 'workflow_settings', ['tenant_id'])
    op.create_index(
        'uq_workflow_settings_active_scope',
        'workflow_settings',
        ['tenant_id', sa.text("coalesce(service_category_code, '')")],
        unique=True,
        postgresql_where=sa.text('is_active'),
    )


def downgrade() -> None:
    """Drop the workflow schema in dependency order."""
    op.drop_index('uq_workflow_settings_active_scope', table_name='workflow_settings')
    op.drop_index('ix_workflow_settings_tenant_id', table_name='workflow_settings')
    op.drop_table('workflow_settings')

    op.drop_index('ix_order_history_order_id', table_name='order_history')
    op.drop_index('ix_order_history_tenant_id', table_name='order_history')
    op.drop_table('order_history')

    op.drop_index('ix_order_status_history_order_changed', table_name='order_status_history')
    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_index('ix_order_status_history_tenant_id', table_name='order_status_history')
    op.drop_table('order_status_history')

    op.drop_index('ix_order_item_pieces_order_item_id', table_name='order_item_pieces')
    op.drop_index('ix_order_item_pieces_order_id', table_name='order_item_pieces')
    op.drop_index('ix_order_item_pieces_tenant_id', table_name='order_item_pieces')
    op.drop_table('order_item_pieces')

    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_index('ix_order_items_tenant_id', table_name='order_items')
    op.drop_table('order_items')

    op.drop_index('ix_orders_tenant_ready_by', table_name='orders')
    op.drop_index('ix_orders_tenant_status', table_name='orders')
    op.drop_index('ix_orders_parent_order_id', table_name='orders')
    op.drop_index('ix_orders_ready_by', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_index('ix_orders_current_status', table_name='orders')
    op.drop_index('ix_orders_tenant_id', table_name='orders')
    op.drop_table('orders')

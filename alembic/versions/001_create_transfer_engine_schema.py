"""Create transfer engine schema

Revision ID: 001_transfer_engine
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_transfer_engine'
down_revision = None
branch_labels = None
depends_on = None


def _counters():
    return [
        sa.Column('total_quantity', sa.Integer, server_default='0', nullable=False),
        sa.Column('available_quantity', sa.Integer, server_default='0', nullable=False),
        sa.Column('reserved_quantity', sa.Integer, server_default='0', nullable=False),
        sa.Column('incoming_quantity', sa.Integer, server_default='0', nullable=False),
    ]


def _counter_checks(prefix):
    return [
        sa.CheckConstraint(
            'available_quantity + reserved_quantity = total_quantity',
            name=f'ck_{prefix}_additive',
        ),
        sa.CheckConstraint(
            'available_quantity >= 0 AND reserved_quantity >= 0 '
            'AND total_quantity >= 0 AND incoming_quantity >= 0',
            name=f'ck_{prefix}_non_negative',
        ),
    ]


def upgrade():
    """Create reference, ledger, transfer and history tables"""

    # ====================
    # REFERENCE TABLES (owned by the organization and catalog services)
    # ====================
    op.create_table(
        'departments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('organization_id', 'slug', name='uq_department_slug'),
    )
    op.create_index('ix_departments_organization_id', 'departments', ['organization_id'])

    op.create_table(
        'products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('generic_name', sa.String(200), nullable=True),
        sa.Column('base_unit', sa.String(50), server_default='unit', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('organization_id', 'code', name='uq_product_code'),
    )
    op.create_index('ix_products_organization_id', 'products', ['organization_id'])

    # ====================
    # STOCK LEDGERS
    # ====================
    op.create_table(
        'stocks',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('department_id', UUID(as_uuid=True), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=False),
        *_counters(),
        sa.Column('location', sa.String(100), nullable=True),
        sa.Column('min_stock_level', sa.Integer, nullable=True),
        sa.Column('max_stock_level', sa.Integer, nullable=True),
        sa.Column('reorder_point', sa.Integer, nullable=True),
        sa.Column('default_withdrawal_qty', sa.Integer, nullable=True),
        sa.Column('last_movement_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.UniqueConstraint('department_id', 'product_id', name='uq_stock_department_product'),
        *_counter_checks('stock'),
    )
    op.create_index('ix_stocks_organization_id', 'stocks', ['organization_id'])
    op.create_index('ix_stocks_department_id', 'stocks', ['department_id'])
    op.create_index('ix_stocks_product_id', 'stocks', ['product_id'])

    op.create_table(
        'stock_batches',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('stock_id', UUID(as_uuid=True), sa.ForeignKey('stocks.id'), nullable=False),
        sa.Column('lot_number', sa.String(100), nullable=False),
        sa.Column('expiry_date', sa.Date, nullable=True),
        sa.Column('manufacture_date', sa.Date, nullable=True),
        sa.Column('supplier', sa.String(200), nullable=True),
        sa.Column('cost_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('selling_price', sa.Numeric(12, 2), nullable=True),
        *_counters(),
        sa.Column('location', sa.String(100), nullable=True),
        sa.Column('status', sa.String(50), server_default='AVAILABLE', nullable=False,
                  comment='AVAILABLE, RESERVED, QUARANTINE, DAMAGED, EXPIRED'),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.UniqueConstraint('stock_id', 'lot_number', name='uq_stock_batch_lot'),
        *_counter_checks('stock_batch'),
    )
    op.create_index('ix_stock_batches_stock_id', 'stock_batches', ['stock_id'])
    op.create_index('ix_stock_batches_expiry_date', 'stock_batches', ['expiry_date'])
    op.create_index('ix_stock_batches_status', 'stock_batches', ['status'])

    # ====================
    # TRANSFERS
    # ====================
    op.create_table(
        'transfers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=True),
        sa.Column('requesting_department_id', UUID(as_uuid=True), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('supplying_department_id', UUID(as_uuid=True), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('status', sa.String(50), server_default='PENDING', nullable=False,
                  comment='PENDING, APPROVED, PREPARED, PARTIAL, COMPLETED, CANCELLED'),
        sa.Column('priority', sa.String(50), server_default='NORMAL', nullable=False,
                  comment='NORMAL, URGENT, CRITICAL'),
        sa.Column('request_reason', sa.Text, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('cancel_reason', sa.Text, nullable=True),
        sa.Column('requested_by', UUID(as_uuid=True), nullable=False),
        sa.Column('requested_by_snapshot', JSONB, nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('prepared_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.UniqueConstraint('organization_id', 'code', name='uq_transfer_org_code'),
        sa.CheckConstraint(
            'requesting_department_id <> supplying_department_id',
            name='ck_transfer_distinct_departments',
        ),
    )
    op.create_index('ix_transfers_organization_id', 'transfers', ['organization_id'])
    op.create_index('ix_transfers_code', 'transfers', ['code'])
    op.create_index('ix_transfers_status', 'transfers', ['status'])
    op.create_index('ix_transfers_requesting_department_id', 'transfers', ['requesting_department_id'])
    op.create_index('ix_transfers_supplying_department_id', 'transfers', ['supplying_department_id'])

    op.create_table(
        'transfer_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('transfer_id', UUID(as_uuid=True), sa.ForeignKey('transfers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('status', sa.String(50), server_default='PENDING', nullable=False,
                  comment='PENDING, APPROVED, PREPARED, DELIVERED, CANCELLED'),
        sa.Column('requested_quantity', sa.Integer, nullable=False),
        sa.Column('approved_quantity', sa.Integer, nullable=True),
        sa.Column('prepared_quantity', sa.Integer, nullable=True),
        sa.Column('received_quantity', sa.Integer, nullable=True),
        sa.Column('cancel_reason', sa.Text, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('prepared_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.UniqueConstraint('transfer_id', 'product_id', name='uq_transfer_item_product'),
        sa.CheckConstraint('requested_quantity > 0', name='ck_transfer_item_requested_positive'),
    )
    op.create_index('ix_transfer_items_transfer_id', 'transfer_items', ['transfer_id'])
    op.create_index('ix_transfer_items_product_id', 'transfer_items', ['product_id'])

    op.create_table(
        'transfer_item_batches',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('item_id', UUID(as_uuid=True), sa.ForeignKey('transfer_items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('batch_id', UUID(as_uuid=True), sa.ForeignKey('stock_batches.id'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('received_quantity', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('item_id', 'batch_id', name='uq_transfer_item_batch'),
        sa.CheckConstraint('quantity > 0', name='ck_transfer_item_batch_quantity_positive'),
        sa.CheckConstraint(
            'received_quantity IS NULL OR (received_quantity >= 0 AND received_quantity <= quantity)',
            name='ck_transfer_item_batch_received_range',
        ),
    )
    op.create_index('ix_transfer_item_batches_item_id', 'transfer_item_batches', ['item_id'])
    op.create_index('ix_transfer_item_batches_batch_id', 'transfer_item_batches', ['batch_id'])

    # ====================
    # HISTORY & AUDIT (append-only)
    # ====================
    op.create_table(
        'transfer_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('transfer_id', UUID(as_uuid=True), sa.ForeignKey('transfers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('item_id', UUID(as_uuid=True), sa.ForeignKey('transfer_items.id', ondelete='CASCADE'), nullable=True),
        sa.Column('sequence', sa.Integer, nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('from_status', sa.String(50), nullable=True),
        sa.Column('to_status', sa.String(50), nullable=True),
        sa.Column('changed_by', UUID(as_uuid=True), nullable=False),
        sa.Column('changed_by_snapshot', JSONB, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('payload', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('transfer_id', 'sequence', name='uq_transfer_history_sequence'),
    )
    op.create_index('ix_transfer_history_transfer_id', 'transfer_history', ['transfer_id'])
    op.create_index('ix_transfer_history_item_id', 'transfer_history', ['item_id'])
    op.create_index('ix_transfer_history_created_at', 'transfer_history', ['created_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('user_snapshot', JSONB, nullable=True),
        sa.Column('department_id', UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('category', sa.String(50), server_default='INVENTORY', nullable=False),
        sa.Column('severity', sa.String(20), server_default='INFO', nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', UUID(as_uuid=True), nullable=True),
        sa.Column('payload', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_audit_logs_organization_id', 'audit_logs', ['organization_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_resource_type', 'audit_logs', ['resource_type'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade():
    """Drop all transfer engine tables"""
    op.drop_table('audit_logs')
    op.drop_table('transfer_history')
    op.drop_table('transfer_item_batches')
    op.drop_table('transfer_items')
    op.drop_table('transfers')
    op.drop_table('stock_batches')
    op.drop_table('stocks')
    op.drop_table('products')
    op.drop_table('departments')

from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_erp_sync_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('operation', sa.String(64), nullable=False, index=True),
        sa.Column('source_id', sa.String(64), index=True),
        sa.Column('payload', sa.JSON),
        sa.Column('status', sa.String(16), nullable=False, index=True),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer, nullable=False, server_default='5'),
        sa.Column('next_retry_at', sa.DateTime),
        sa.Column('erp_reference', sa.String(128)),
        sa.Column('error_message', sa.Text),
        sa.Column('error_stack', sa.Text),
        sa.Column('correlation_id', sa.String(64)),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('started_at', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('expires_at', sa.DateTime, index=True),
    )
    op.create_index('ix_sync_job_source_status', 'sync_jobs', ['operation', 'source_id', 'status'])
    op.create_index('ix_sync_job_vendor_created', 'sync_jobs', ['vendor_id', 'created_at'])

    op.create_table(
        'agent_registrations',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('agent_url', sa.String(512), nullable=False),
        sa.Column('erp_type', sa.String(32), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, index=True),
        sa.Column('last_heartbeat', sa.DateTime, index=True),
        sa.Column('version', sa.String(32)),
        sa.Column('auth_token_hash', sa.String(128), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'erp_code_mappings',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('mapping_type', sa.String(16), nullable=False),
        sa.Column('erp_code', sa.String(64), nullable=False),
        sa.Column('resto_code', sa.String(64), nullable=False),
        sa.Column('resto_label', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true(), index=True),
        sa.Column('created_by', sa.String(64)),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('vendor_id', 'mapping_type', 'erp_code', name='uq_erp_mapping_vendor_type_code'),
    )

    op.create_table(
        'items',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('sku', sa.String(128), nullable=False),
        sa.Column('erp_id', sa.String(128)),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('slug', sa.String(300), nullable=False, index=True),
        sa.Column('barcode', sa.String(64)),
        sa.Column('erp_unit_code', sa.String(64), nullable=False),
        sa.Column('erp_vat_code', sa.String(64), nullable=False),
        sa.Column('erp_family_code', sa.String(64)),
        sa.Column('erp_subfamily_code', sa.String(64)),
        sa.Column('unit_code', sa.String(64), nullable=False),
        sa.Column('unit_label', sa.String(255), nullable=False),
        sa.Column('vat_code', sa.String(64), nullable=False),
        sa.Column('vat_rate', sa.String(255), nullable=False),
        sa.Column('family_code', sa.String(64)),
        sa.Column('family_label', sa.String(255)),
        sa.Column('subfamily_code', sa.String(64)),
        sa.Column('subfamily_label', sa.String(255)),
        sa.Column('unit_price', sa.Float),
        sa.Column('price_excl_vat', sa.Float),
        sa.Column('price_incl_vat', sa.Float),
        sa.Column('currency', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('total_stock', sa.Float, nullable=False, server_default='0'),
        sa.Column('reserved_stock', sa.Float, nullable=False, server_default='0'),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('last_synced_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('vendor_id', 'sku', name='uq_item_vendor_sku'),
    )

    op.create_table(
        'warehouses',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('erp_warehouse_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('code', sa.String(64)),
        sa.Column('address', sa.String(255)),
        sa.Column('city', sa.String(128)),
        sa.Column('postal_code', sa.String(16)),
        sa.Column('country', sa.String(2), nullable=False, server_default='FR'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('is_main', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('last_synced_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('vendor_id', 'erp_warehouse_id', name='uq_warehouse_vendor_erp_id'),
    )

    op.create_table(
        'stocks',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('item_id', sa.Integer, sa.ForeignKey('items.id'), nullable=False, index=True),
        sa.Column('warehouse_id', sa.Integer, sa.ForeignKey('warehouses.id'), nullable=False, index=True),
        sa.Column('item_sku', sa.String(128), nullable=False),
        sa.Column('erp_warehouse_id', sa.String(64), nullable=False),
        sa.Column('quantity', sa.Float, nullable=False, server_default='0'),
        sa.Column('reserved_quantity', sa.Float, nullable=False, server_default='0'),
        sa.Column('available_quantity', sa.Float, nullable=False, server_default='0'),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('last_synced_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('vendor_id', 'warehouse_id', 'item_id', name='uq_stock_vendor_warehouse_item'),
    )
    op.create_index('ix_stock_vendor_sku', 'stocks', ['vendor_id', 'item_sku'])

    op.create_table(
        'orders',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('erp_reference', sa.String(128)),
        sa.Column('erp_document_id', sa.String(128)),
        sa.Column('erp_synced_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'dead_letter_entries',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('original_job_id', sa.String(36), nullable=False, index=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('operation', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON),
        sa.Column('failure_reason', sa.Text, nullable=False),
        sa.Column('failure_stack', sa.Text),
        sa.Column('attempt_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime, nullable=False),
        sa.Column('resolved', sa.Boolean, nullable=False, server_default=sa.false(), index=True),
        sa.Column('resolved_at', sa.DateTime, index=True),
        sa.Column('resolved_by', sa.String(64)),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_retried_at', sa.DateTime),
        sa.Column('last_retry_job_id', sa.String(36)),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
    )
    op.create_index('ix_dlq_vendor_resolved', 'dead_letter_entries', ['vendor_id', 'resolved', 'created_at'])

    op.create_table(
        'reconciliation_events',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('vendor_id', sa.String(64), nullable=False, index=True),
        sa.Column('event_type', sa.String(32), nullable=False, index=True),
        sa.Column('summary', sa.JSON),
        sa.Column('duration_ms', sa.Integer),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
    )


def downgrade():
    op.drop_table('reconciliation_events')
    op.drop_index('ix_dlq_vendor_resolved', table_name='dead_letter_entries')
    op.drop_table('dead_letter_entries')
    op.drop_table('orders')
    op.drop_index('ix_stock_vendor_sku', table_name='stocks')
    op.drop_table('stocks')
    op.drop_table('warehouses')
    op.drop_table('items')
    op.drop_table('erp_code_mappings')
    op.drop_table('agent_registrations')
    op.drop_index('ix_sync_job_vendor_created', table_name='sync_jobs')
    op.drop_index('ix_sync_job_source_status', table_name='sync_jobs')
    op.drop_table('sync_jobs')

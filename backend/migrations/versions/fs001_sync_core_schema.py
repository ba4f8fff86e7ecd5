"""Sync core: tenants, settings, periods, server records, merge history, stock levels, device cursors

SYNC CORE MIGRATION:
1. Creates 'tenants' as the isolation root and 'tenant_settings' overrides
2. Creates 'reconciliation_periods' (cash period close/re-open)
3. Creates 'server_records' (authoritative state, optimistic-lock server_version)
4. Creates append-only 'merge_history' (unique per record_id + version + device_id)
5. Creates 'stock_levels' (integer thousandths) and 'device_cursors'

Revision ID: fs001_sync_core
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'fs001_sync_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # STEP 1: Tenants and settings
    # ==========================================================================
    op.create_table('tenants',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tenants_is_active', 'tenants', ['is_active'])

    op.create_table('tenant_settings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('updated_by', sa.String(length=128), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'key', name='uq_tenant_settings_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_tenant_settings_tenant_id', 'tenant_settings', ['tenant_id'])

    # ==========================================================================
    # STEP 2: Cash reconciliation periods
    # ==========================================================================
    op.create_table('reconciliation_periods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('period_key', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='CLOSED'),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_by', sa.String(length=128), nullable=True),
        sa.Column('reopened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reopened_by', sa.String(length=128), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'period_key', name='uq_reconciliation_periods_tenant_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reconciliation_periods_tenant_id', 'reconciliation_periods', ['tenant_id'])
    op.create_index('ix_reconciliation_periods_status', 'reconciliation_periods', ['status'])

    # ==========================================================================
    # STEP 3: Authoritative records and merge history
    # ==========================================================================
    op.create_table('server_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('record_id', sa.String(length=64), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('owner_device_id', sa.String(length=64), nullable=False),
        sa.Column('last_device_id', sa.String(length=64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('server_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at_device', sa.DateTime(timezone=True), nullable=False),
        sa.Column('server_received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('flags', sa.JSON(), nullable=False),
        sa.Column('period_key', sa.String(length=16), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('record_id', name='uq_server_records_record_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_server_records_tenant_id', 'server_records', ['tenant_id'])
    op.create_index('ix_server_records_tenant_kind', 'server_records', ['tenant_id', 'kind'])
    op.create_index('ix_server_records_period_key', 'server_records', ['period_key'])

    op.create_table('merge_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_record_id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('record_id', sa.String(length=64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.String(length=64), nullable=False),
        sa.Column('server_version', sa.Integer(), nullable=False),
        sa.Column('created_at_device', sa.DateTime(timezone=True), nullable=False),
        sa.Column('folded_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['server_record_id'], ['server_records.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('record_id', 'version', 'device_id', name='uq_merge_history_submission'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_merge_history_server_record_id', 'merge_history', ['server_record_id'])
    op.create_index('ix_merge_history_record_id', 'merge_history', ['record_id'])
    op.create_index('ix_merge_history_tenant_id_id', 'merge_history', ['tenant_id', 'id'])

    # ==========================================================================
    # STEP 4: Stock levels and device cursors
    # ==========================================================================
    op.create_table('stock_levels',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('warehouse_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('unit', sa.String(length=16), nullable=False),
        sa.Column('quantity_milli', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'warehouse_id', 'product_id', 'unit', name='uq_stock_levels_bucket'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_levels_tenant_id', 'stock_levels', ['tenant_id'])

    op.create_table('device_cursors',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('device_id', sa.String(length=64), nullable=False),
        sa.Column('cursor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_pull_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'device_id', name='uq_device_cursors_device'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_device_cursors_tenant_id', 'device_cursors', ['tenant_id'])


def downgrade():
    op.drop_index('ix_device_cursors_tenant_id', table_name='device_cursors')
    op.drop_table('device_cursors')
    op.drop_index('ix_stock_levels_tenant_id', table_name='stock_levels')
    op.drop_table('stock_levels')
    op.drop_index('ix_merge_history_tenant_id_id', table_name='merge_history')
    op.drop_index('ix_merge_history_record_id', table_name='merge_history')
    op.drop_index('ix_merge_history_server_record_id', table_name='merge_history')
    op.drop_table('merge_history')
    op.drop_index('ix_server_records_period_key', table_name='server_records')
    op.drop_index('ix_server_records_tenant_kind', table_name='server_records')
    op.drop_index('ix_server_records_tenant_id', table_name='server_records')
    op.drop_table('server_records')
    op.drop_index('ix_reconciliation_periods_status', table_name='reconciliation_periods')
    op.drop_index('ix_reconciliation_periods_tenant_id', table_name='reconciliation_periods')
    op.drop_table('reconciliation_periods')
    op.drop_index('ix_tenant_settings_tenant_id', table_name='tenant_settings')
    op.drop_table('tenant_settings')
    op.drop_index('ix_tenants_is_active', table_name='tenants')
    op.drop_table('tenants')

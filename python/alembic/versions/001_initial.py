"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-01 00:00:00.000000

This is the baseline migration that creates all tables for the Vault
Reconciliation Engine, matching database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    audit_action = postgresql.ENUM(
        'VAULT_UPSERT', 'BACKUP', 'BILLING_CHANGE', 'UPDATE_APPLIED',
        'UPDATE_CLEARED', 'BATCH_SAVED',
        name='audit_action', create_type=True
    )
    audit_action.create(op.get_bind(), checkfirst=True)

    # Create vault_records table
    op.create_table(
        'vault_records',
        sa.Column('vault_id', sa.String(100), primary_key=True),
        sa.Column('customer_id', sa.String(100), nullable=False, server_default=''),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('billing_status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('risk_score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('customer_info', postgresql.JSONB, nullable=False),
        sa.Column('payment_method', postgresql.JSONB),
        sa.Column('acu_data', postgresql.JSONB, nullable=False),
        sa.Column('delta_info', postgresql.JSONB, nullable=False),
        sa.Column('risk_assessment', postgresql.JSONB, nullable=False),
        sa.Column('transaction_summary', postgresql.JSONB, nullable=False),
        sa.Column('created_date', sa.String(40)),
        sa.Column('updated_date', sa.String(40)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.CheckConstraint(
            "status IN ('active', 'disabled', 'expired', 'pending_update')",
            name='ck_vault_status'
        ),
        sa.CheckConstraint('risk_score >= 0 AND risk_score <= 100', name='ck_vault_risk_score_range')
    )
    op.create_index('ix_vault_records_customer_id', 'vault_records', ['customer_id'])
    op.create_index('ix_vault_records_status', 'vault_records', ['status'])
    op.create_index('ix_vault_status_risk', 'vault_records', ['status', 'risk_score'])

    # Create vault_backups table
    op.create_table(
        'vault_backups',
        sa.Column('update_id', sa.String(200), primary_key=True),
        sa.Column('vault_id', sa.String(100), nullable=False),
        sa.Column('snapshot', postgresql.JSONB, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()'))
    )
    op.create_index('ix_vault_backups_vault_id', 'vault_backups', ['vault_id'])

    # Create applied_updates table
    op.create_table(
        'applied_updates',
        sa.Column('update_id', sa.String(200), primary_key=True),
        sa.Column('vault_id', sa.String(100), nullable=False),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()'))
    )
    op.create_index('ix_applied_updates_vault_id', 'applied_updates', ['vault_id'])

    # Create batch_runs table
    op.create_table(
        'batch_runs',
        sa.Column('batch_id', sa.String(200), primary_key=True),
        sa.Column('kind', sa.String(50), primary_key=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='RUNNING'),
        sa.Column('snapshot', postgresql.JSONB, nullable=False),
        sa.Column('payload', postgresql.JSONB),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()'))
    )
    op.create_index('ix_batch_runs_status', 'batch_runs', ['status'])

    # Create audit_logs table
    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('uuid_generate_v4()')),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('action', sa.Enum(name='audit_action', create_type=False), nullable=False),
        sa.Column('resource_type', sa.String(100), nullable=False),
        sa.Column('resource_id', sa.String(200)),
        sa.Column('details', postgresql.JSONB),
        sa.Column('old_value', postgresql.JSONB),
        sa.Column('new_value', postgresql.JSONB),
        sa.Column('success', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('error_message', sa.Text)
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_resource_type', 'audit_logs', ['resource_type'])
    op.create_index('ix_audit_timestamp_action', 'audit_logs', ['timestamp', 'action'])
    op.create_index('ix_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])


def downgrade() -> None:
    """Drop all tables and types."""
    # Drop tables in reverse order
    op.drop_table('audit_logs')
    op.drop_table('batch_runs')
    op.drop_table('applied_updates')
    op.drop_table('vault_backups')
    op.drop_table('vault_records')

    op.execute('DROP TYPE IF EXISTS audit_action')

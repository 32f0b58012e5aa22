"""Create ledger, aggregate, webhook, refund, audit, limit and review tables

Revision ID: 001
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables may already exist if Base.metadata.create_all ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'donations' not in existing_tables:
        op.create_table(
            'donations',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('donor_id', sa.String(length=255), nullable=False),
            sa.Column('donor_email', sa.String(length=255), nullable=True),
            sa.Column('donor_fingerprint', sa.String(length=64), nullable=False),
            sa.Column('fundraiser_id', sa.String(length=255), nullable=False),
            sa.Column('organization_id', sa.String(length=255), nullable=False),
            sa.Column('jurisdiction', sa.String(length=50), nullable=False),
            sa.Column('cycle_ids', sa.JSON(), nullable=False),
            sa.Column('state', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('external_transaction_id', sa.String(length=255), nullable=True),
            sa.Column('idempotency_key', sa.String(length=255), nullable=False),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('charge_parked', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('limit_override_actor', sa.String(length=255), nullable=True),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('amount_cents > 0', name='ck_donations_amount_positive')
        )
        op.create_index('ix_donations_id', 'donations', ['id'])
        op.create_index('ix_donations_donor_id', 'donations', ['donor_id'])
        op.create_index('ix_donations_donor_fingerprint', 'donations', ['donor_fingerprint'])
        op.create_index('ix_donations_fundraiser_id', 'donations', ['fundraiser_id'])
        op.create_index('ix_donations_organization_id', 'donations', ['organization_id'])
        op.create_index('ix_donations_state', 'donations', ['state'])
        op.create_index('ix_donations_external_transaction_id', 'donations', ['external_transaction_id'], unique=True)
        op.create_index('ix_donations_idempotency_key', 'donations', ['idempotency_key'], unique=True)
        op.create_index('ix_donations_donor_state', 'donations', ['donor_fingerprint', 'jurisdiction', 'state'])

    if 'donor_aggregates' not in existing_tables:
        op.create_table(
            'donor_aggregates',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('donor_fingerprint', sa.String(length=64), nullable=False),
            sa.Column('jurisdiction', sa.String(length=50), nullable=False),
            sa.Column('cycle_id', sa.String(length=100), nullable=False),
            sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('donor_fingerprint', 'jurisdiction', 'cycle_id', name='uq_donor_aggregates_key'),
            sa.CheckConstraint('total_cents >= 0', name='ck_donor_aggregates_total_non_negative')
        )
        op.create_index('ix_donor_aggregates_id', 'donor_aggregates', ['id'])
        op.create_index('ix_donor_aggregates_donor_fingerprint', 'donor_aggregates', ['donor_fingerprint'])

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('processor_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('payload_hash', sa.String(length=64), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('outcome', sa.String(length=50), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
        op.create_index('ix_webhook_events_processor_event_id', 'webhook_events', ['processor_event_id'], unique=True)
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])

    if 'refunds' not in existing_tables:
        op.create_table(
            'refunds',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('donation_id', sa.Integer(), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('state', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('is_full', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('gateway_refund_id', sa.String(length=255), nullable=True),
            sa.Column('parked', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('actor', sa.String(length=255), nullable=False),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['donation_id'], ['donations.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('amount_cents > 0', name='ck_refunds_amount_positive')
        )
        op.create_index('ix_refunds_id', 'refunds', ['id'])
        op.create_index('ix_refunds_donation_id', 'refunds', ['donation_id'])
        op.create_index('ix_refunds_gateway_refund_id', 'refunds', ['gateway_refund_id'], unique=True)

    if 'audit_entries' not in existing_tables:
        op.create_table(
            'audit_entries',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('donation_id', sa.Integer(), nullable=True),
            sa.Column('ledger_event', sa.String(length=50), nullable=True),
            sa.Column('from_state', sa.String(length=20), nullable=True),
            sa.Column('to_state', sa.String(length=20), nullable=True),
            sa.Column('trigger', sa.String(length=20), nullable=False),
            sa.Column('outcome', sa.String(length=20), nullable=False),
            sa.Column('causing_event_id', sa.String(length=255), nullable=True),
            sa.Column('refund_id', sa.Integer(), nullable=True),
            sa.Column('aggregate_delta_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('donor_fingerprint', sa.String(length=64), nullable=True),
            sa.Column('jurisdiction', sa.String(length=50), nullable=True),
            sa.Column('cycle_ids', sa.JSON(), nullable=True),
            sa.Column('error_code', sa.String(length=50), nullable=True),
            sa.Column('details', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_audit_entries_id', 'audit_entries', ['id'])
        op.create_index('ix_audit_entries_donation_id', 'audit_entries', ['donation_id'])
        op.create_index('ix_audit_entries_causing_event_id', 'audit_entries', ['causing_event_id'])
        op.create_index('ix_audit_entries_created_at', 'audit_entries', ['created_at'])
        op.create_index('ix_audit_entries_donation_created', 'audit_entries', ['donation_id', 'created_at'])

        # Append-only at the database level as well
        if conn.dialect.name == 'postgresql':
            op.execute("""
                CREATE OR REPLACE FUNCTION audit_entries_immutable() RETURNS trigger AS $$
                BEGIN
                    RAISE EXCEPTION 'audit_entries is append-only';
                END;
                $$ LANGUAGE plpgsql;
            """)
            op.execute("""
                CREATE TRIGGER audit_entries_no_update_delete
                BEFORE UPDATE OR DELETE ON audit_entries
                FOR EACH ROW EXECUTE FUNCTION audit_entries_immutable();
            """)

    if 'contribution_limits' not in existing_tables:
        op.create_table(
            'contribution_limits',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('jurisdiction', sa.String(length=50), nullable=False),
            sa.Column('cycle_id', sa.String(length=100), nullable=False),
            sa.Column('limit_cents', sa.Integer(), nullable=False),
            sa.Column('window_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('window_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('jurisdiction', 'cycle_id', name='uq_contribution_limits_window')
        )
        op.create_index('ix_contribution_limits_id', 'contribution_limits', ['id'])
        op.create_index('ix_contribution_limits_jurisdiction', 'contribution_limits', ['jurisdiction'])

    if 'review_items' not in existing_tables:
        op.create_table(
            'review_items',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('kind', sa.String(length=50), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
            sa.Column('donation_id', sa.Integer(), nullable=True),
            sa.Column('refund_id', sa.Integer(), nullable=True),
            sa.Column('processor_event_id', sa.String(length=255), nullable=True),
            sa.Column('details', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resolved_by', sa.String(length=255), nullable=True),
            sa.Column('resolution_notes', sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_review_items_id', 'review_items', ['id'])
        op.create_index('ix_review_items_kind', 'review_items', ['kind'])
        op.create_index('ix_review_items_donation_id', 'review_items', ['donation_id'])
        op.create_index('ix_review_items_status_kind', 'review_items', ['status', 'kind'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'audit_entries' in existing_tables and conn.dialect.name == 'postgresql':
        op.execute("DROP TRIGGER IF EXISTS audit_entries_no_update_delete ON audit_entries")
        op.execute("DROP FUNCTION IF EXISTS audit_entries_immutable()")

    for table in ('review_items', 'contribution_limits', 'audit_entries', 'refunds',
                  'webhook_events', 'donor_aggregates', 'donations'):
        if table in existing_tables:
            op.drop_table(table)

"""initial schema - create all tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    ]


def _tenant_id():
    return sa.Column('tenant_id', sa.String(36), nullable=False, index=True)


def upgrade() -> None:
    # Create tenants table
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('partition_key', sa.String(63), nullable=False, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        *_timestamps(),
    )

    # Create tenant_integrations table (credentials are a Fernet token)
    op.create_table(
        'tenant_integrations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('platform_type', sa.String(50), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('external_ref', sa.String(255), nullable=False),
        sa.Column('credentials_encrypted', sa.Text(), nullable=False),
        sa.Column('webhook_secret', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sync_cursor', sa.String(255), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('platform_type', 'external_ref', name='uq_integration_platform_ref'),
    )

    # Create users table (role as VARCHAR, not enum)
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='agent'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('ndr_capacity', sa.Integer(), nullable=True),
        sa.Column('last_assigned_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )

    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('integration_id', sa.String(36), sa.ForeignKey('tenant_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(100), nullable=False),
        sa.Column('order_number', sa.String(100), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='open'),
        sa.Column('financial_status', sa.String(30), nullable=True),
        sa.Column('payment_method', sa.String(20), nullable=True),
        sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(30), nullable=True),
        sa.Column('shipping_address', sa.Text(), nullable=True),
        sa.Column('ordered_at', sa.DateTime(), nullable=True),
        sa.Column('remote_updated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'integration_id', 'external_id', name='uq_order_external'),
    )

    # Create shipments table
    op.create_table(
        'shipments',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='SET NULL'), nullable=True),
        sa.Column('order_ref', sa.String(100), nullable=True),
        sa.Column('courier', sa.String(50), nullable=False),
        sa.Column('awb', sa.String(100), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='manifested'),
        sa.Column('raw_status', sa.String(255), nullable=True),
        sa.Column('last_location', sa.String(255), nullable=True),
        sa.Column('order_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('payment_method', sa.String(20), nullable=True),
        sa.Column('customer_phone', sa.String(30), nullable=True),
        sa.Column('last_status_at', sa.DateTime(), nullable=True),
        sa.Column('last_tracked_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('courier', 'awb', name='uq_shipment_awb'),
    )

    # Create inventory_items table
    op.create_table(
        'inventory_items',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('integration_id', sa.String(36), sa.ForeignKey('tenant_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sku', sa.String(100), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pushed_quantity', sa.Integer(), nullable=True),
        sa.Column('pushed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'integration_id', 'sku', name='uq_inventory_sku'),
    )

    # Create ndr_records table
    op.create_table(
        'ndr_records',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('shipment_id', sa.String(36), sa.ForeignKey('shipments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('order_ref', sa.String(100), nullable=True),
        sa.Column('awb', sa.String(100), nullable=False),
        sa.Column('reason', sa.String(40), nullable=False),
        sa.Column('carrier_remarks', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(30), nullable=False, server_default='open'),
        sa.Column('priority', sa.String(20), nullable=False),
        sa.Column('opened_at', sa.DateTime(), nullable=False),
        sa.Column('due_at', sa.DateTime(), nullable=False),
        sa.Column('order_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('payment_method', sa.String(20), nullable=True),
        sa.Column('customer_phone', sa.String(30), nullable=True),
        sa.Column('assigned_user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('assigned_at', sa.DateTime(), nullable=True),
        sa.Column('reattempt_at', sa.DateTime(), nullable=True),
        sa.Column('escalated_at', sa.DateTime(), nullable=True),
        sa.Column('resolution', sa.Text(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(36), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_ndr_tenant_status', 'ndr_records', ['tenant_id', 'status'])
    op.create_index('ix_ndr_tenant_awb', 'ndr_records', ['tenant_id', 'awb'])

    # Create ndr_actions table (append-only)
    op.create_table(
        'ndr_actions',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('ndr_id', sa.String(36), sa.ForeignKey('ndr_records.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(20), nullable=False),
        sa.Column('outcome', sa.String(30), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('reattempt_at', sa.DateTime(), nullable=True),
        sa.Column('performed_by', sa.String(36), nullable=True),
        sa.Column('performed_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('ndr_id', 'sequence', name='uq_ndr_action_sequence'),
    )

    # Create webhook_subscriptions table
    op.create_table(
        'webhook_subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('secret', sa.String(255), nullable=False),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # Create webhook_deliveries table (the retry store)
    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('webhook_subscriptions.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('response_code', sa.Integer(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'subscription_id', 'idempotency_key', name='uq_delivery_idempotency'),
    )
    op.create_index('ix_delivery_due', 'webhook_deliveries', ['status', 'next_attempt_at'])

    # Create notifications table
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('recipient', sa.String(255), nullable=False),
        sa.Column('template', sa.String(100), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('reference_id', sa.String(36), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('queued_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_notification_tenant_status', 'notifications', ['tenant_id', 'status'])

    # Create operator_alerts table
    op.create_table(
        'operator_alerts',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('kind', sa.String(40), nullable=False),
        sa.Column('reference', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('raised_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_alert_open', 'operator_alerts', ['tenant_id', 'kind', 'reference', 'resolved_at'])

    # Create job_runs table (one row per job kind and tenant)
    op.create_table(
        'job_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        _tenant_id(),
        sa.Column('job_kind', sa.String(40), nullable=False, index=True),
        sa.Column('outcome', sa.String(20), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('items_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_errored', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('job_runs')
    op.drop_table('operator_alerts')
    op.drop_table('notifications')
    op.drop_table('webhook_deliveries')
    op.drop_table('webhook_subscriptions')
    op.drop_table('ndr_actions')
    op.drop_table('ndr_records')
    op.drop_table('inventory_items')
    op.drop_table('shipments')
    op.drop_table('orders')
    op.drop_table('users')
    op.drop_table('tenant_integrations')
    op.drop_table('tenants')

"""Add subscription lifecycle tables

Revision ID: 20250101_001_subscriptions
Revises:
Create Date: 2025-01-01 00:00:00.000000

This migration adds the subscription core tables:
- billing_users: Users with identity, session, trial, subscription mirror,
  feature gates and usage totals
- usage_daily_buckets: Per-user daily usage counters
- webhook_events: Razorpay webhook dedupe log
- failed_webhooks: Dead letter for webhook events whose handler failed
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20250101_001_subscriptions'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    """Create subscription tables."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = inspector.get_table_names()

    # -------------------------------------------------------------------------
    # 1. billing_users - One row per user
    # -------------------------------------------------------------------------
    if 'billing_users' not in existing_tables:
        op.create_table(
            'billing_users',
            sa.Column('id', sa.String(length=36), nullable=False, comment='Opaque user id (uuid4)'),

            # Identity
            sa.Column('external_id', sa.String(length=255), nullable=False, comment='Identity provider subject'),
            sa.Column('email', sa.String(length=320), nullable=False, comment='Lowercased email'),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('picture', sa.String(length=1024), nullable=True),
            sa.Column('verified', sa.Boolean(), nullable=False),

            # Session
            sa.Column('session_token', sa.String(length=128), nullable=True),
            sa.Column('session_expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('session_last_active_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('login_count', sa.Integer(), nullable=False),

            # Trial
            sa.Column('trial_active', sa.Boolean(), nullable=False),
            sa.Column('trial_start_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('trial_end_at', sa.TIMESTAMP(timezone=True), nullable=True),

            # Subscription
            sa.Column('subscription_id', sa.String(length=255), nullable=True, comment='Razorpay subscription id'),
            sa.Column('plan_id', sa.String(length=255), nullable=True),
            sa.Column('plan_type', sa.String(length=20), nullable=True, comment='monthly, yearly'),
            sa.Column('status', sa.String(length=20), server_default='none', nullable=False),
            sa.Column('current_period_start', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('payment_link', sa.String(length=1024), nullable=True),
            sa.Column('payment_link_created_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('cancel_at_cycle_end', sa.Boolean(), nullable=False),
            sa.Column('cancelled_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('last_charge_attempt', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('last_webhook', JSONType, nullable=True),
            sa.Column('payment_history', JSONType, nullable=False),

            # Feature gates
            sa.Column('feature_auto_scroll', sa.Boolean(), nullable=False),
            sa.Column('feature_analytics', sa.Boolean(), nullable=False),
            sa.Column('feature_custom_settings', sa.Boolean(), nullable=False),
            sa.Column('feature_priority_support', sa.Boolean(), nullable=False),

            # Usage totals
            sa.Column('total_uses', sa.Integer(), nullable=False),
            sa.Column('last_used_at', sa.TIMESTAMP(timezone=True), nullable=True),

            # Optimistic lock
            sa.Column('version', sa.Integer(), nullable=False),

            # Timestamps
            sa.Column('created_time', sa.TIMESTAMP(timezone=True), nullable=False),
            sa.Column('updated_time', sa.TIMESTAMP(timezone=True), nullable=True),

            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('external_id'),
            sa.UniqueConstraint('email'),
            sa.UniqueConstraint('subscription_id'),
            comment='Users and their subscription state',
        )
        op.create_index('ix_billing_users_session_token', 'billing_users', ['session_token'], unique=True)
        op.create_index('ix_billing_users_trial_active', 'billing_users', ['trial_active'])
        op.create_index('ix_billing_users_status', 'billing_users', ['status'])

    # -------------------------------------------------------------------------
    # 2. usage_daily_buckets - Daily usage counters
    # -------------------------------------------------------------------------
    if 'usage_daily_buckets' not in existing_tables:
        op.create_table(
            'usage_daily_buckets',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            sa.Column('user_id', sa.String(length=36), nullable=False),
            sa.Column('bucket_date', sa.Date(), nullable=False),
            sa.Column('count', sa.Integer(), nullable=False),
            sa.Column('created_time', sa.TIMESTAMP(timezone=True), nullable=False),
            sa.Column('updated_time', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['user_id'], ['billing_users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'bucket_date', name='uq_usage_user_date'),
            comment='Daily usage buckets',
        )
        op.create_index('ix_usage_daily_buckets_user_id', 'usage_daily_buckets', ['user_id'])
        op.create_index('ix_usage_daily_buckets_bucket_date', 'usage_daily_buckets', ['bucket_date'])

    # -------------------------------------------------------------------------
    # 3. webhook_events - Webhook dedupe log
    # -------------------------------------------------------------------------
    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.String(length=255), nullable=False, comment='Dedupe key'),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('subscription_id', sa.String(length=255), nullable=True),
            sa.Column('provider_event_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), server_default='processing', nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
            sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
        op.create_index('ix_webhook_events_subscription_id', 'webhook_events', ['subscription_id'])
        op.create_index('ix_webhook_events_status', 'webhook_events', ['status'])
        op.create_index('ix_webhook_events_created_at', 'webhook_events', ['created_at'])

    # -------------------------------------------------------------------------
    # 4. failed_webhooks - Dead letter
    # -------------------------------------------------------------------------
    if 'failed_webhooks' not in existing_tables:
        op.create_table(
            'failed_webhooks',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            sa.Column('dedupe_key', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('event', JSONType, nullable=False, comment='Full verified event envelope'),
            sa.Column('error', sa.Text(), nullable=False),
            sa.Column('received_at', sa.TIMESTAMP(timezone=True), nullable=False),
            sa.Column('subscription_id', sa.String(length=255), nullable=True),
            sa.Column('provider_event_id', sa.String(length=255), nullable=True),
            sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
            sa.Column('status', sa.String(length=20), server_default='pending', nullable=False,
                      comment='pending, replayed, abandoned'),
            sa.Column('last_retry_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.Column('resolved_at', sa.TIMESTAMP(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_failed_webhooks_dedupe_key', 'failed_webhooks', ['dedupe_key'])
        op.create_index('ix_failed_webhooks_subscription_id', 'failed_webhooks', ['subscription_id'])
        op.create_index('ix_failed_webhooks_status', 'failed_webhooks', ['status'])


def downgrade() -> None:
    """Drop subscription tables."""
    op.drop_table('failed_webhooks')
    op.drop_table('webhook_events')
    op.drop_table('usage_daily_buckets')
    op.drop_table('billing_users')

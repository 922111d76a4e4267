"""Billing database models.

Tables:
- billing_users: one row per user, holding identity, session, trial,
  subscription mirror, feature gates and usage totals
- usage_daily_buckets: per-user daily usage counters
- webhook_events: webhook dedupe log (processing / completed / failed)
- failed_webhooks: dead letter of events whose handler raised after verification
"""

from datetime import date, datetime
from typing import Any

import sqlalchemy as sa

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.common.model import Base, DataClassBase, TimeZone, id_key, utc_now

JSONType = sa.JSON().with_variant(JSONB(), 'postgresql')


class BillingUser(Base):
    """User record with its subscription substructure.

    `version` is the optimistic lock: every ORM update is issued as
    `UPDATE ... WHERE id = :id AND version = :version`.
    """

    __tablename__ = 'billing_users'

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, comment='Opaque user id (uuid4)')

    # Identity
    external_id: Mapped[str] = mapped_column(sa.String(255), unique=True, comment='Identity provider subject')
    email: Mapped[str] = mapped_column(sa.String(320), unique=True, comment='Lowercased email')
    name: Mapped[str] = mapped_column(sa.String(255), default='')
    picture: Mapped[str | None] = mapped_column(sa.String(1024), default=None)
    verified: Mapped[bool] = mapped_column(default=False)

    # Session
    session_token: Mapped[str | None] = mapped_column(sa.String(128), default=None, unique=True, index=True)
    session_expires_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    session_last_active_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    login_count: Mapped[int] = mapped_column(default=0)

    # Trial
    trial_active: Mapped[bool] = mapped_column(default=False, index=True)
    trial_start_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    trial_end_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)

    # Subscription
    subscription_id: Mapped[str | None] = mapped_column(
        sa.String(255), default=None, unique=True, comment='Razorpay subscription id'
    )
    plan_id: Mapped[str | None] = mapped_column(sa.String(255), default=None)
    plan_type: Mapped[str | None] = mapped_column(sa.String(20), default=None, comment='monthly, yearly')
    status: Mapped[str] = mapped_column(sa.String(20), default='none', index=True)
    current_period_start: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    current_period_end: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    payment_link: Mapped[str | None] = mapped_column(sa.String(1024), default=None)
    payment_link_created_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    cancel_at_cycle_end: Mapped[bool] = mapped_column(default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    last_charge_attempt: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    last_webhook: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=None)
    payment_history: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default_factory=list)

    # Feature gates
    feature_auto_scroll: Mapped[bool] = mapped_column(default=False)
    feature_analytics: Mapped[bool] = mapped_column(default=False)
    feature_custom_settings: Mapped[bool] = mapped_column(default=False)
    feature_priority_support: Mapped[bool] = mapped_column(default=False)

    # Usage totals
    total_uses: Mapped[int] = mapped_column(default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)

    version: Mapped[int] = mapped_column(sa.Integer, init=False, nullable=False)

    __mapper_args__ = {'version_id_col': version}
    __table_args__ = ({'comment': 'Users and their subscription state'},)


class UsageDailyBucket(Base):
    """Per-user usage count for one UTC day."""

    __tablename__ = 'usage_daily_buckets'

    id: Mapped[id_key] = mapped_column(init=False)
    user_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey('billing_users.id', ondelete='CASCADE'), index=True
    )
    bucket_date: Mapped[date] = mapped_column(sa.Date, index=True)
    count: Mapped[int] = mapped_column(default=0)

    __table_args__ = (
        sa.UniqueConstraint('user_id', 'bucket_date', name='uq_usage_user_date'),
        {'comment': 'Daily usage buckets'},
    )


class WebhookEvent(DataClassBase):
    """Dedupe log keyed on (subscription id, event type, provider event id)."""

    __tablename__ = 'webhook_events'

    id: Mapped[str] = mapped_column(sa.String(255), primary_key=True, comment='Dedupe key')
    event_type: Mapped[str] = mapped_column(sa.String(100), index=True)
    subscription_id: Mapped[str | None] = mapped_column(sa.String(255), default=None, index=True)
    provider_event_id: Mapped[str | None] = mapped_column(sa.String(255), default=None)
    status: Mapped[str] = mapped_column(sa.String(20), default='processing', index=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text, default=None)
    created_at: Mapped[datetime] = mapped_column(TimeZone, default_factory=utc_now, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)


class FailedWebhook(DataClassBase):
    """Webhook events whose handler raised after signature verification."""

    __tablename__ = 'failed_webhooks'

    id: Mapped[id_key] = mapped_column(init=False)
    dedupe_key: Mapped[str] = mapped_column(sa.String(255), index=True)
    event_type: Mapped[str] = mapped_column(sa.String(100))
    event: Mapped[dict[str, Any]] = mapped_column(JSONType, comment='Full verified event envelope')
    error: Mapped[str] = mapped_column(sa.Text)
    received_at: Mapped[datetime] = mapped_column(TimeZone)
    subscription_id: Mapped[str | None] = mapped_column(sa.String(255), default=None, index=True)
    provider_event_id: Mapped[str | None] = mapped_column(sa.String(255), default=None)
    retry_count: Mapped[int] = mapped_column(default=0)
    status: Mapped[str] = mapped_column(sa.String(20), default='pending', index=True, comment='pending, replayed, abandoned')
    last_retry_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    resolved_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)

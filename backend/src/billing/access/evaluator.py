"""
Access Evaluator

Pure decision over a user record and an instant: may the user use a
feature right now, and under which access type.

Access types, checked in order:
- active: paid subscription inside its billing period
- trial_with_processing_subscription: subscription created/authenticated
  while the trial still runs
- trial: trial running
- subscription_processing: subscription created/authenticated, trial over,
  still inside the processing grace window
- premium_required: premium feature asked for without an active subscription
- expired: nothing grants access

The evaluator never mutates the record; a stale `trial.active` flag is just
treated as expired.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from backend.src.billing.domain.user import (
    PREMIUM_FEATURES,
    PROCESSING_STATUSES,
    TERMINAL_STATUSES,
    Feature,
    SubscriptionStatus,
    UserRecord,
)
from backend.src.billing.shared.config import PAYMENT_PROCESSING_WINDOW, PROCESSING_GRACE


class AccessType:
    ACTIVE = "active"
    TRIAL_WITH_PROCESSING_SUBSCRIPTION = "trial_with_processing_subscription"
    TRIAL = "trial"
    SUBSCRIPTION_PROCESSING = "subscription_processing"
    PREMIUM_REQUIRED = "premium_required"
    EXPIRED = "expired"


class DenialReason:
    TRIAL_EXPIRED = "trial_expired"
    PREMIUM_FEATURE = "premium_feature"


PROCESSING_MESSAGES = {
    'created': 'Subscription created - waiting for payment completion (may take 1-2 minutes)',
    'authenticated': 'Payment received - processing subscription activation (1-2 minutes for confirmation)',
    'payment_processing': 'Subscription payment completed - activating premium features (1-2 minutes for confirmation)',
}

PREMIUM_FEATURE_NAMES = frozenset(f.value for f in PREMIUM_FEATURES)
KNOWN_FEATURES = frozenset(f.value for f in Feature)

DENIAL_MESSAGES = {
    DenialReason.TRIAL_EXPIRED: 'Your free trial has expired. Please subscribe to continue using AutoScroll.',
    DenialReason.PREMIUM_FEATURE: 'This is a premium feature. Please subscribe to access it.',
}


@dataclass
class ProcessingView:
    """What the UI shows while a subscription is being set up."""
    is_processing: bool = False
    processing_state: Optional[str] = None
    processing_message: Optional[str] = None
    show_refresh_button: bool = False
    allow_trial_access: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isProcessing': self.is_processing,
            'processingState': self.processing_state,
            'processingMessage': self.processing_message,
            'showRefreshButton': self.show_refresh_button,
            'allowTrialAccess': self.allow_trial_access,
        }


@dataclass
class AccessDecision:
    allowed: bool
    access_type: str
    days_remaining: int = 0
    expiry_date: Optional[datetime] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    processing: ProcessingView = field(default_factory=ProcessingView)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'allowed': self.allowed,
            'accessType': self.access_type,
            'daysRemaining': self.days_remaining,
            'expiryDate': self.expiry_date.isoformat() if self.expiry_date else None,
            'isProcessing': self.processing.is_processing,
            'processingState': self.processing.processing_state,
        }
        if self.reason:
            data['reason'] = self.reason
        if self.message:
            data['message'] = self.message
        if self.processing.processing_message:
            data['processingMessage'] = self.processing.processing_message
        return data


def _days_until(end: datetime, now: datetime) -> int:
    return max(0, math.ceil((end - now) / timedelta(days=1)))


def trial_valid(record: UserRecord, now: datetime) -> bool:
    trial = record.trial
    return trial is not None and trial.active and now <= trial.end_at


def subscription_active(record: UserRecord, now: datetime) -> bool:
    sub = record.subscription
    return (
        sub.status == SubscriptionStatus.ACTIVE
        and sub.current_period_end is not None
        and sub.current_period_end > now
    )


def in_processing_grace(record: UserRecord, now: datetime) -> bool:
    sub = record.subscription
    return (
        sub.status in PROCESSING_STATUSES
        and not trial_valid(record, now)
        and sub.current_period_start is not None
        and now - sub.current_period_start < PROCESSING_GRACE
    )


def build_processing_view(record: UserRecord, now: datetime) -> ProcessingView:
    """
    Processing state for the UI.

    `created` / `authenticated` mirror the subscription status; the
    `payment_processing` pseudo-state covers the webhook delay right after
    checkout when the record is in neither.
    """
    sub = record.subscription
    has_trial = trial_valid(record, now)

    if sub.status == SubscriptionStatus.ACTIVE:
        return ProcessingView()
    if not sub.external_id:
        return ProcessingView(allow_trial_access=has_trial)

    if sub.status in PROCESSING_STATUSES:
        return ProcessingView(
            is_processing=True,
            processing_state=sub.status.value,
            processing_message=PROCESSING_MESSAGES[sub.status.value],
            show_refresh_button=True,
            allow_trial_access=has_trial,
        )

    if (
        not has_trial
        and sub.status not in TERMINAL_STATUSES
        and sub.current_period_start is not None
        and now - sub.current_period_start < PAYMENT_PROCESSING_WINDOW
    ):
        return ProcessingView(
            is_processing=True,
            processing_state='payment_processing',
            processing_message=PROCESSING_MESSAGES['payment_processing'],
            show_refresh_button=True,
            allow_trial_access=False,
        )

    return ProcessingView(allow_trial_access=has_trial)


def evaluate_access(
    record: UserRecord,
    now: datetime,
    feature: Optional[str] = None
) -> AccessDecision:
    """
    Decide access for `record` at `now`.

    Args:
        record: User record (not modified)
        now: Instant to evaluate at
        feature: Feature name as sent by the client; premium features need
            an active subscription

    Returns:
        AccessDecision
    """
    sub = record.subscription
    view = build_processing_view(record, now)

    if subscription_active(record, now):
        decision = AccessDecision(
            allowed=True,
            access_type=AccessType.ACTIVE,
            days_remaining=_days_until(sub.current_period_end, now),
            expiry_date=sub.current_period_end,
            processing=view,
        )
    elif sub.status in PROCESSING_STATUSES and trial_valid(record, now):
        decision = AccessDecision(
            allowed=True,
            access_type=AccessType.TRIAL_WITH_PROCESSING_SUBSCRIPTION,
            days_remaining=max(1, _days_until(record.trial.end_at, now)),
            expiry_date=record.trial.end_at,
            processing=view,
        )
    elif trial_valid(record, now):
        decision = AccessDecision(
            allowed=True,
            access_type=AccessType.TRIAL,
            days_remaining=_days_until(record.trial.end_at, now),
            expiry_date=record.trial.end_at,
            processing=view,
        )
    elif in_processing_grace(record, now):
        decision = AccessDecision(
            allowed=True,
            access_type=AccessType.SUBSCRIPTION_PROCESSING,
            days_remaining=1,
            expiry_date=sub.current_period_start + PROCESSING_GRACE,
            processing=view,
        )
    else:
        return AccessDecision(
            allowed=False,
            access_type=AccessType.EXPIRED,
            reason=DenialReason.TRIAL_EXPIRED,
            message=DENIAL_MESSAGES[DenialReason.TRIAL_EXPIRED],
            processing=view,
        )

    if feature in PREMIUM_FEATURE_NAMES and decision.access_type != AccessType.ACTIVE:
        return AccessDecision(
            allowed=False,
            access_type=AccessType.PREMIUM_REQUIRED,
            days_remaining=decision.days_remaining,
            expiry_date=decision.expiry_date,
            reason=DenialReason.PREMIUM_FEATURE,
            message=DENIAL_MESSAGES[DenialReason.PREMIUM_FEATURE],
            processing=view,
        )

    return decision


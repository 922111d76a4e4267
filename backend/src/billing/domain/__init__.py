"""Domain entities for billing module."""

from .user import (
    AuthSession,
    Feature,
    Features,
    Identity,
    PaymentRecord,
    PlanType,
    SubscriptionState,
    SubscriptionStatus,
    Trial,
    Usage,
    UsageBucket,
    UserRecord,
    WebhookAudit,
)

__all__ = [
    'AuthSession',
    'Feature',
    'Features',
    'Identity',
    'PaymentRecord',
    'PlanType',
    'SubscriptionState',
    'SubscriptionStatus',
    'Trial',
    'Usage',
    'UsageBucket',
    'UserRecord',
    'WebhookAudit',
]

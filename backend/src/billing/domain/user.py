"""
User Domain Entity

Plain-data representation of a user record: identity, session, trial,
subscription substructure, feature gates and usage counters.

Lifecycle decisions live in the access evaluator, the subscription service
and the webhook reconciler; this module only defines the shapes and their
(de)serialization.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SubscriptionStatus(str, Enum):
    """Local subscription statuses."""
    NONE = "none"
    TRIAL = "trial"
    CREATED = "created"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"


class PlanType(str, Enum):
    """Billing periods offered."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Feature(str, Enum):
    """Feature gates, named as the client sends them."""
    AUTO_SCROLL = "autoScroll"
    ANALYTICS = "analytics"
    CUSTOM_SETTINGS = "customSettings"
    PRIORITY_SUPPORT = "prioritySupport"


PREMIUM_FEATURES = frozenset({Feature.CUSTOM_SETTINGS, Feature.PRIORITY_SUPPORT})

# Statuses in which a provider subscription exists but is not yet active
PROCESSING_STATUSES = frozenset({SubscriptionStatus.CREATED, SubscriptionStatus.AUTHENTICATED})

# Statuses after which the user may subscribe again
TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.COMPLETED,
})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None


@dataclass
class Identity:
    """Profile received from the identity provider."""
    external_id: str
    email: str
    name: str
    picture: Optional[str] = None
    verified: bool = False


@dataclass
class AuthSession:
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    login_count: int = 0


@dataclass
class Trial:
    active: bool
    start_at: datetime
    end_at: datetime


@dataclass
class PaymentRecord:
    """One entry of the append-only payment history."""
    payment_id: str
    amount: int
    currency: str
    status: str
    paid_at: datetime
    failure_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        return cls(
            payment_id=data['payment_id'],
            amount=int(data.get('amount') or 0),
            currency=data.get('currency') or 'INR',
            status=data.get('status') or 'captured',
            paid_at=_parse_datetime(data.get('paid_at')),
            failure_reason=data.get('failure_reason'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment_id': self.payment_id,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status,
            'paid_at': _iso(self.paid_at),
            'failure_reason': self.failure_reason,
        }


@dataclass
class WebhookAudit:
    """Audit trail of the last webhook applied to the record."""
    type: str
    received_at: datetime
    previous_status: SubscriptionStatus
    preserved_status: bool = False
    notes: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WebhookAudit':
        return cls(
            type=data.get('type', ''),
            received_at=_parse_datetime(data.get('received_at')),
            previous_status=SubscriptionStatus(data.get('previous_status', 'none')),
            preserved_status=bool(data.get('preserved_status', False)),
            notes=data.get('notes', ''),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'received_at': _iso(self.received_at),
            'previous_status': self.previous_status.value,
            'preserved_status': self.preserved_status,
            'notes': self.notes,
        }


@dataclass
class SubscriptionState:
    """Local mirror of the provider subscription."""
    external_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_type: Optional[PlanType] = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    payment_link: Optional[str] = None
    payment_link_created_at: Optional[datetime] = None
    cancel_at_cycle_end: bool = False
    cancelled_at: Optional[datetime] = None
    last_charge_attempt: Optional[datetime] = None
    last_webhook: Optional[WebhookAudit] = None
    payment_history: List[PaymentRecord] = field(default_factory=list)


@dataclass
class Features:
    auto_scroll: bool = False
    analytics: bool = False
    custom_settings: bool = False
    priority_support: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            Feature.AUTO_SCROLL.value: self.auto_scroll,
            Feature.ANALYTICS.value: self.analytics,
            Feature.CUSTOM_SETTINGS.value: self.custom_settings,
            Feature.PRIORITY_SUPPORT.value: self.priority_support,
        }


@dataclass
class UsageBucket:
    date: date
    count: int = 0


@dataclass
class Usage:
    total_uses: int = 0
    last_used_at: Optional[datetime] = None
    daily_buckets: List[UsageBucket] = field(default_factory=list)


@dataclass
class UserRecord:
    """
    A user as the subscription core sees it.

    Attributes:
        id: Internal opaque identifier
        identity: Identity-provider profile (email is stored lowercase)
        auth_session: Current bearer session
        trial: Trial window, None until initialized
        subscription: Subscription substructure
        features: Feature gates derived from the subscription status
        usage: Usage counters and retained daily buckets
        created_at: When the record was first persisted
    """
    id: str
    identity: Identity
    auth_session: AuthSession = field(default_factory=AuthSession)
    trial: Optional[Trial] = None
    subscription: SubscriptionState = field(default_factory=SubscriptionState)
    features: Features = field(default_factory=Features)
    usage: Usage = field(default_factory=Usage)
    created_at: Optional[datetime] = None

"""
Subscription State Machine

Pure transition functions over a `UserRecord`. Webhooks, force refresh and
the scheduled status sync all go through `apply_event`, user actions through
`mark_created` / `cancel`, so every path obeys the same rules:

- Status hierarchy: active > authenticated > created > {none, trial}. An
  event never lowers a record within this hierarchy.
- Active is sticky: `authenticated` or `charged` arriving for an active record
  keep it active; only the billing period and audit metadata are refreshed,
  and the period end never moves backwards.
- Re-applying an event is a no-op apart from the period refresh.

Nothing here touches the database or the provider.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from backend.src.billing.domain.user import (
    PaymentRecord,
    PlanType,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    UserRecord,
)
from backend.src.billing.shared.clock import from_unix
from backend.src.billing.shared.config import Plan, get_plan, get_plan_by_id, infer_plan_type

logger = logging.getLogger(__name__)


class SubscriptionEvent(str, Enum):
    """Provider events the lifecycle reacts to."""
    CREATED = "subscription.created"
    AUTHENTICATED = "subscription.authenticated"
    ACTIVATED = "subscription.activated"
    CHARGED = "subscription.charged"
    CANCELLED = "subscription.cancelled"
    COMPLETED = "subscription.completed"
    PAYMENT_FAILED = "payment.failed"


HANDLED_EVENTS = frozenset(e.value for e in SubscriptionEvent)

# Position in the status hierarchy; statuses outside it have no rank.
# Events may raise a none/trial record straight to authenticated or active,
# so any delivery order of created, authenticated, activated and charged
# converges on the same record.
HIERARCHY_RANK = {
    SubscriptionStatus.NONE: 0,
    SubscriptionStatus.TRIAL: 0,
    SubscriptionStatus.CREATED: 1,
    SubscriptionStatus.AUTHENTICATED: 2,
    SubscriptionStatus.ACTIVE: 3,
}

PRE_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.NONE, SubscriptionStatus.TRIAL})

CANCELLABLE_STATUSES = frozenset({
    SubscriptionStatus.CREATED,
    SubscriptionStatus.AUTHENTICATED,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
})

# Provider subscription statuses that map onto a local status directly
PROVIDER_STATUS_EVENTS = {
    'created': SubscriptionEvent.CREATED,
    'authenticated': SubscriptionEvent.AUTHENTICATED,
    'active': SubscriptionEvent.ACTIVATED,
    'pending': SubscriptionEvent.PAYMENT_FAILED,
    'halted': SubscriptionEvent.PAYMENT_FAILED,
    'cancelled': SubscriptionEvent.CANCELLED,
    'completed': SubscriptionEvent.COMPLETED,
}


@dataclass
class TransitionResult:
    """Outcome of applying one event to one record."""
    event: str
    previous_status: SubscriptionStatus
    status: SubscriptionStatus
    applied: bool = True
    preserved_status: bool = False
    payment_recorded: bool = False
    notes: str = ''

    @property
    def changed(self) -> bool:
        return self.previous_status != self.status


def map_provider_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Local status for a provider subscription status."""
    if provider_status in ('pending', 'halted'):
        return SubscriptionStatus.PAST_DUE
    if provider_status == 'completed':
        return SubscriptionStatus.EXPIRED
    try:
        return SubscriptionStatus(provider_status)
    except ValueError:
        return None


# =============================================================================
# HELPERS
# =============================================================================

def _plan_for(record: UserRecord, entity: Dict[str, Any]) -> Optional[Plan]:
    sub = record.subscription
    plan = get_plan_by_id(entity.get('plan_id') or sub.plan_id)
    if plan is None and sub.plan_type is not None:
        plan = get_plan(sub.plan_type)
    if plan is None and (entity.get('plan_id') or sub.plan_id):
        plan = get_plan(infer_plan_type(entity.get('plan_id') or sub.plan_id))
    return plan


def refresh_period(record: UserRecord, entity: Dict[str, Any]) -> None:
    """Copy current_start / current_end from a provider entity when present."""
    sub = record.subscription
    start = from_unix(entity.get('current_start'))
    end = from_unix(entity.get('current_end'))
    if start is not None:
        sub.current_period_start = start
    if end is not None:
        sub.current_period_end = end


def advance_period(record: UserRecord, entity: Dict[str, Any]) -> bool:
    """
    Refresh the period of an active record, never moving its end backwards.

    A late event carries the period of an earlier cycle; it is ignored.

    Returns:
        Whether the entity's period was taken
    """
    sub = record.subscription
    end = from_unix(entity.get('current_end'))
    if end is not None and sub.current_period_end is not None and end < sub.current_period_end:
        return False
    refresh_period(record, entity)
    return True


def _active_refresh_note(period_taken: bool) -> str:
    if period_taken:
        return 'Subscription already active, billing period updated'
    return 'Subscription already active, stale billing period ignored'


def _payment_from_entity(payment: Dict[str, Any], status: Optional[str] = None) -> PaymentRecord:
    return PaymentRecord(
        payment_id=payment['id'],
        amount=int(payment.get('amount') or 0),
        currency=payment.get('currency') or 'INR',
        status=status or payment.get('status') or 'captured',
        paid_at=from_unix(payment.get('created_at')),
        failure_reason=(payment.get('error_description') or 'Payment failed') if status == 'failed' else None,
    )


def record_payment(record: UserRecord, payment: PaymentRecord) -> bool:
    """
    Add a payment to the history, keeping it ordered by paid_at.

    Returns:
        False if the payment id was already recorded
    """
    history = record.subscription.payment_history
    if any(p.payment_id == payment.payment_id for p in history):
        return False

    index = len(history)
    if payment.paid_at is not None:
        while index > 0 and history[index - 1].paid_at is not None and history[index - 1].paid_at > payment.paid_at:
            index -= 1
    history.insert(index, payment)
    return True


def activate(record: UserRecord, entity: Dict[str, Any], now: datetime) -> None:
    """
    Enter `active`: every feature on, trial consumed, cycle-end cancellation
    cleared, billing period from the provider (or derived from the plan).
    """
    sub = record.subscription
    sub.status = SubscriptionStatus.ACTIVE
    sub.cancel_at_cycle_end = False

    if entity.get('plan_id') and not sub.plan_id:
        sub.plan_id = entity['plan_id']
    if sub.plan_type is None and sub.plan_id:
        sub.plan_type = infer_plan_type(sub.plan_id)

    start = from_unix(entity.get('current_start')) or sub.current_period_start or now
    end = from_unix(entity.get('current_end'))
    if end is None or end <= start:
        plan = _plan_for(record, entity)
        period_days = plan.period_days if plan else 30
        end = start + timedelta(days=period_days)
    sub.current_period_start = start
    sub.current_period_end = end

    record.features.auto_scroll = True
    record.features.analytics = True
    record.features.custom_settings = True
    record.features.priority_support = True

    if record.trial is not None:
        record.trial.active = False


def _clear_premium(record: UserRecord) -> None:
    record.features.custom_settings = False
    record.features.priority_support = False


def cancel_immediately(record: UserRecord, now: datetime) -> None:
    sub = record.subscription
    sub.status = SubscriptionStatus.CANCELLED
    sub.cancelled_at = now
    _clear_premium(record)


def expire(record: UserRecord) -> None:
    record.subscription.status = SubscriptionStatus.EXPIRED
    _clear_premium(record)


# =============================================================================
# PROVIDER EVENTS
# =============================================================================

def apply_event(
    record: UserRecord,
    event_type: str,
    now: datetime,
    subscription: Optional[Dict[str, Any]] = None,
    payment: Optional[Dict[str, Any]] = None
) -> TransitionResult:
    """
    Apply one provider event to `record` in place.

    Args:
        record: Record to mutate
        event_type: Razorpay event name
        now: Current instant
        subscription: Subscription entity from the payload, if any
        payment: Payment entity from the payload, if any

    Returns:
        TransitionResult describing what happened
    """
    entity = subscription or {}
    sub = record.subscription
    previous = sub.status
    result = TransitionResult(event=event_type, previous_status=previous, status=previous)

    try:
        event = SubscriptionEvent(event_type)
    except ValueError:
        result.applied = False
        result.notes = 'Event acknowledged but not processed'
        return result

    if event == SubscriptionEvent.CREATED:
        if previous in PRE_SUBSCRIPTION_STATUSES:
            sub.status = SubscriptionStatus.CREATED
            refresh_period(record, entity)
            result.notes = 'Subscription created'
        elif previous == SubscriptionStatus.CREATED:
            result.notes = 'Already created'
        else:
            result.applied = False
            result.notes = f'Ignored subscription.created in status {previous.value}'

    elif event == SubscriptionEvent.AUTHENTICATED:
        if previous == SubscriptionStatus.ACTIVE:
            result.preserved_status = True
            result.notes = _active_refresh_note(advance_period(record, entity))
        elif previous in PRE_SUBSCRIPTION_STATUSES or previous in (
            SubscriptionStatus.CREATED, SubscriptionStatus.AUTHENTICATED
        ):
            sub.status = SubscriptionStatus.AUTHENTICATED
            refresh_period(record, entity)
            result.notes = 'Subscription authenticated'
        else:
            result.applied = False
            result.notes = f'Ignored authentication in status {previous.value}'

    elif event in (SubscriptionEvent.ACTIVATED, SubscriptionEvent.CHARGED):
        if previous in TERMINAL_STATUSES:
            result.applied = False
            result.notes = f'Ignored {event.value} for {previous.value} subscription'
        else:
            if previous == SubscriptionStatus.ACTIVE:
                if event == SubscriptionEvent.CHARGED:
                    result.preserved_status = True
                result.notes = _active_refresh_note(advance_period(record, entity))
            else:
                activate(record, entity, now)
                result.notes = 'Subscription activated'

            if event == SubscriptionEvent.CHARGED and payment and payment.get('id'):
                result.payment_recorded = record_payment(record, _payment_from_entity(payment))
                if result.payment_recorded:
                    result.notes += '; payment recorded'

    elif event == SubscriptionEvent.CANCELLED:
        if previous in CANCELLABLE_STATUSES:
            cancel_immediately(record, now)
            result.notes = 'Subscription cancelled'
        else:
            result.applied = False
            result.notes = f'Ignored cancellation in status {previous.value}'

    elif event == SubscriptionEvent.COMPLETED:
        if previous in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
            expire(record)
            result.notes = 'Subscription completed'
        else:
            result.applied = False
            result.notes = f'Ignored completion in status {previous.value}'

    elif event == SubscriptionEvent.PAYMENT_FAILED:
        if previous in CANCELLABLE_STATUSES:
            sub.status = SubscriptionStatus.PAST_DUE
            if payment and payment.get('id'):
                result.payment_recorded = record_payment(record, _payment_from_entity(payment, status='failed'))
            result.notes = 'Payment failure recorded'
        else:
            result.applied = False
            result.notes = f'Ignored payment failure in status {previous.value}'

    result.status = sub.status
    return result


def apply_provider_status(record: UserRecord, entity: Dict[str, Any], now: datetime) -> TransitionResult:
    """
    Reconcile `record` with a freshly fetched provider subscription.

    Uses the same transitions as webhooks, so the active guard and the hierarchy
    hold for force refresh and the scheduled sync too.
    """
    provider_status = entity.get('status')
    previous = record.subscription.status

    if provider_status == 'expired' and previous not in TERMINAL_STATUSES and previous not in PRE_SUBSCRIPTION_STATUSES:
        expire(record)
        return TransitionResult(
            event='sync.expired',
            previous_status=previous,
            status=record.subscription.status,
            notes='Provider reports subscription expired',
        )

    event = PROVIDER_STATUS_EVENTS.get(provider_status)
    if event is None:
        return TransitionResult(
            event=f'sync.{provider_status}',
            previous_status=previous,
            status=previous,
            applied=False,
            notes=f'Unknown provider status {provider_status!r}',
        )

    result = apply_event(record, event.value, now, subscription=entity)
    result.event = f'sync.{provider_status}'
    return result


# =============================================================================
# USER ACTIONS
# =============================================================================

def mark_created(
    record: UserRecord,
    plan: Plan,
    entity: Dict[str, Any],
    now: datetime
) -> None:
    """Store a freshly created provider subscription; the trial stays as it is."""
    sub = record.subscription
    sub.external_id = entity['id']
    sub.plan_id = entity.get('plan_id') or plan.plan_id
    sub.plan_type = plan.plan_type
    sub.status = SubscriptionStatus.CREATED
    sub.payment_link = entity.get('short_url')
    sub.payment_link_created_at = now
    sub.current_period_start = from_unix(entity.get('current_start')) or now
    sub.current_period_end = from_unix(entity.get('current_end'))
    sub.cancel_at_cycle_end = False
    sub.cancelled_at = None


def cancel(record: UserRecord, now: datetime, at_cycle_end: bool) -> bool:
    """
    Cancel on the user's request.

    Cycle-end cancellation is only honoured for active subscriptions; the
    record stays active until the provider reports the cancellation.

    Returns:
        Whether the cancellation takes effect at cycle end
    """
    sub = record.subscription
    if at_cycle_end and sub.status == SubscriptionStatus.ACTIVE:
        sub.cancel_at_cycle_end = True
        sub.cancelled_at = now
        return True

    cancel_immediately(record, now)
    return False

"""
Subscription Service

Main orchestrator for all subscription operations.
Provides a unified interface for:
- Trial initialization
- Subscription creation, cancellation and payment-link resume
- Manual recovery (force refresh, invoice charge)
- Feature access with state recovery and graceful degradation
- Usage recording and analytics
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from backend.src.billing.access.evaluator import (
    KNOWN_FEATURES,
    AccessDecision,
    build_processing_view,
    evaluate_access,
)
from backend.src.billing.domain.user import (
    PROCESSING_STATUSES,
    Feature,
    SubscriptionStatus,
    UsageBucket,
    UserRecord,
)
from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.config import (
    RECENT_CREATE_WINDOW,
    get_plan,
    get_plan_catalogue,
    infer_plan_type,
)
from backend.src.billing.shared.exceptions import (
    AccessDeniedError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UpstreamUnavailableError,
)
from backend.src.billing.storage.user_store import UserStore, user_store

from .state_machine import (
    CANCELLABLE_STATUSES,
    apply_provider_status,
    cancel,
    mark_created,
)
from .trial_service import TrialService

logger = logging.getLogger(__name__)

# Statuses worth asking the provider about before denying access
RECOVERABLE_STATUSES = frozenset({
    SubscriptionStatus.CREATED,
    SubscriptionStatus.AUTHENTICATED,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
})

DEGRADED_WARNING = "Payment gateway temporarily unavailable"
REFRESH_ERROR = "Could not reach payment provider"


def check_can_create(record: UserRecord, now: datetime) -> None:
    """
    Raise ConflictError when the user may not start a new subscription.

    Checked in order: active, recent pending link, processing, past due.
    """
    sub = record.subscription

    if sub.status == SubscriptionStatus.ACTIVE:
        raise ConflictError(
            message="You already have an active subscription",
            code="SUBSCRIPTION_ALREADY_ACTIVE",
            details={'subscriptionId': sub.external_id},
        )

    if (
        sub.status in PROCESSING_STATUSES
        and sub.payment_link
        and sub.payment_link_created_at is not None
        and now - sub.payment_link_created_at < RECENT_CREATE_WINDOW
    ):
        raise ConflictError(
            message="A subscription was created moments ago. Complete the payment using the existing link.",
            code="RECENT_SUBSCRIPTION_EXISTS",
            details={
                'subscriptionId': sub.external_id,
                'paymentLink': sub.payment_link,
                'createdAt': sub.payment_link_created_at.isoformat(),
            },
        )

    if sub.status in PROCESSING_STATUSES:
        raise ConflictError(
            message="Your subscription is being processed. Complete the payment or wait for confirmation.",
            code="SUBSCRIPTION_PROCESSING",
            details={
                'subscriptionId': sub.external_id,
                'status': sub.status.value,
                'paymentLink': sub.payment_link,
            },
        )

    if sub.status == SubscriptionStatus.PAST_DUE:
        raise ConflictError(
            message="Your subscription has a failed payment. Please update your payment to continue.",
            code="SUBSCRIPTION_PAST_DUE",
            details={'subscriptionId': sub.external_id},
        )


def pending_payment(record: UserRecord) -> Dict[str, Any]:
    sub = record.subscription
    if sub.status not in PROCESSING_STATUSES or not sub.payment_link:
        return {'hasPending': False}
    return {
        'hasPending': True,
        'paymentLink': sub.payment_link,
        'planType': (sub.plan_type or infer_plan_type(sub.plan_id)).value,
        'subscriptionId': sub.external_id,
        'status': sub.status.value,
        'createdAt': sub.payment_link_created_at.isoformat() if sub.payment_link_created_at else None,
    }


class SubscriptionService:
    """
    Unified subscription management service.

    Acts as the main entry point for all subscription-related operations.
    Every write goes through `UserStore.mutate`, so a transition and its
    side effects commit together.

    Usage:
        from backend.src.billing.subscriptions import subscription_service

        result = await subscription_service.create_subscription(user_id, 'monthly')
        status = await subscription_service.get_status(user_id)
    """

    def __init__(
        self,
        store: Optional[UserStore] = None,
        api=None,
        clock: Optional[Clock] = None
    ):
        self.store = store or user_store
        self.clock = clock or system_clock
        if api is None:
            from backend.src.billing.external.razorpay.client import razorpay_api
            api = razorpay_api
        self.api = api
        self.trials = TrialService(store=self.store, clock=self.clock)

    async def _load(self, user_id: str) -> UserRecord:
        if not user_id:
            raise InvalidInputError(message="User id is required", field='userId')
        record = await self.store.get(user_id)
        if record is None:
            raise NotFoundError(message="User not found", code="USER_NOT_FOUND", details={'userId': user_id})
        return record

    # =========================================================================
    # Trial
    # =========================================================================

    async def initialize_trial(self, user_id: str) -> Dict:
        return await self.trials.initialize_trial(user_id)

    # =========================================================================
    # Subscription Creation & Cancellation
    # =========================================================================

    async def create_subscription(self, user_id: str, plan_type: str) -> Dict[str, Any]:
        """
        Create a Razorpay subscription and store its payment link.

        The trial stays active until the subscription activates.

        Args:
            user_id: User id
            plan_type: 'monthly' or 'yearly'

        Returns:
            Dict with subscriptionId, paymentLink, planName, amount, currency

        Raises:
            InvalidInputError: Unknown plan type
            ConflictError: SUBSCRIPTION_ALREADY_ACTIVE, RECENT_SUBSCRIPTION_EXISTS,
                SUBSCRIPTION_PROCESSING or SUBSCRIPTION_PAST_DUE
            UpstreamUnavailableError: Razorpay failed or the circuit is open
        """
        plan = get_plan(plan_type)
        if plan is None:
            raise InvalidInputError(
                message="Invalid plan type. Must be 'monthly' or 'yearly'",
                code="INVALID_PLAN",
                field='planType',
            )

        record = await self._load(user_id)
        check_can_create(record, self.clock.now())

        logger.info(f"[SUBSCRIPTION] Creating {plan.plan_type.value} subscription for user {user_id}")
        entity = await self.api.create_subscription({
            'plan_id': plan.plan_id,
            'total_count': plan.total_count,
            'quantity': 1,
            'customer_notify': 1,
            'notes': {
                'userId': record.id,
                'email': record.identity.email,
                'planType': plan.plan_type.value,
            },
        })

        now = self.clock.now()

        async def mutator(current: UserRecord) -> None:
            check_can_create(current, now)
            mark_created(current, plan, entity, now)

        try:
            await self.store.mutate(mutator, user_id=user_id)
        except ConflictError:
            logger.warning(
                f"[SUBSCRIPTION] User {user_id} changed while creating {entity.get('id')}, "
                f"cancelling the orphaned subscription"
            )
            try:
                await self.api.cancel_subscription(entity['id'], False)
            except UpstreamUnavailableError as e:
                logger.error(f"[SUBSCRIPTION] Could not cancel orphaned subscription {entity.get('id')}: {e}")
            raise

        logger.info(f"[SUBSCRIPTION] Created subscription {entity['id']} for user {user_id}")
        return {
            'subscriptionId': entity['id'],
            'paymentLink': entity.get('short_url'),
            'planName': plan.name,
            'planType': plan.plan_type.value,
            'amount': plan.amount,
            'currency': plan.currency,
            'status': entity.get('status', SubscriptionStatus.CREATED.value),
        }

    async def cancel_subscription(self, user_id: str, at_cycle_end: bool = False) -> Dict[str, Any]:
        """
        Cancel the user's subscription.

        Cycle-end cancellation is only honoured for active subscriptions;
        anything else is cancelled immediately.

        Raises:
            NotFoundError: NO_SUBSCRIPTION
            ConflictError: INVALID_SUBSCRIPTION_STATUS
        """
        record = await self._load(user_id)
        sub = record.subscription

        if not sub.external_id:
            raise NotFoundError(message="No subscription found", code="NO_SUBSCRIPTION")
        if sub.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                message=f"Cannot cancel a subscription in status {sub.status.value}",
                code="INVALID_SUBSCRIPTION_STATUS",
                details={'status': sub.status.value},
            )

        cycle_end = at_cycle_end and sub.status == SubscriptionStatus.ACTIVE
        await self.api.cancel_subscription(sub.external_id, cycle_end)

        now = self.clock.now()

        async def mutator(current: UserRecord) -> bool:
            if current.subscription.status not in CANCELLABLE_STATUSES:
                return current.subscription.cancel_at_cycle_end
            return cancel(current, now, cycle_end)

        updated, took_cycle_end = await self.store.mutate(mutator, user_id=user_id)
        active_until = updated.subscription.current_period_end if took_cycle_end else now

        logger.info(
            f"[SUBSCRIPTION] Cancelled {sub.external_id} for user {user_id} "
            f"({'at cycle end' if took_cycle_end else 'immediately'})"
        )
        return {
            'subscriptionId': sub.external_id,
            'cancelAtCycleEnd': took_cycle_end,
            'activeUntil': active_until.isoformat() if active_until else None,
            'status': updated.subscription.status.value,
        }

    async def get_pending_payment_link(self, user_id: str) -> Dict[str, Any]:
        """Payment link of a subscription still waiting for payment, if any."""
        return pending_payment(await self._load(user_id))

    # =========================================================================
    # Manual Recovery
    # =========================================================================

    async def trigger_charge(
        self,
        subscription_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Push the first issued invoice of an authenticated subscription.

        Raises:
            NotFoundError: USER_NOT_FOUND, NO_SUBSCRIPTION or NO_PENDING_INVOICES
            ConflictError: INVALID_SUBSCRIPTION_STATUS if Razorpay does not
                report the subscription as authenticated
        """
        if subscription_id:
            record = await self.store.get_by_subscription_id(subscription_id)
            if record is None:
                raise NotFoundError(message="Subscription not found", code="NO_SUBSCRIPTION")
        else:
            record = await self._load(user_id)

        sub_id = record.subscription.external_id
        if not sub_id:
            raise NotFoundError(message="No subscription found", code="NO_SUBSCRIPTION")

        provider = await self.api.fetch_subscription(sub_id)
        if provider.get('status') != SubscriptionStatus.AUTHENTICATED.value:
            raise ConflictError(
                message=f"Subscription is in {provider.get('status')} state, expected authenticated",
                code="INVALID_SUBSCRIPTION_STATUS",
                details={'providerStatus': provider.get('status')},
            )

        invoices = [i for i in await self.api.fetch_pending_invoices(sub_id) if i.get('status') == 'issued']
        if not invoices:
            raise NotFoundError(message="No pending invoices found", code="NO_PENDING_INVOICES")

        invoice = invoices[0]
        charged = await self.api.charge_invoice(invoice['id'])
        now = self.clock.now()

        async def mutator(current: UserRecord) -> None:
            current.subscription.last_charge_attempt = now

        await self.store.mutate(mutator, user_id=record.id)
        logger.info(f"[SUBSCRIPTION] Triggered charge of invoice {invoice['id']} for {sub_id}")

        return {
            'subscriptionId': sub_id,
            'invoiceId': invoice['id'],
            'invoiceStatus': charged.get('status'),
            'amount': invoice.get('amount'),
        }

    async def sync_from_provider(self, user_id: str, sub_id: str):
        entity = await self.api.fetch_subscription(sub_id)
        now = self.clock.now()

        async def mutator(current: UserRecord):
            if current.subscription.external_id != sub_id:
                return None
            return apply_provider_status(current, entity, now)

        record, result = await self.store.mutate(mutator, user_id=user_id)
        if result is not None and result.changed:
            logger.info(
                f"[SUBSCRIPTION] Synced {sub_id} for user {user_id}: "
                f"{result.previous_status.value} -> {result.status.value} (provider: {entity.get('status')})"
            )
        return record, result, entity

    async def force_refresh(self, user_id: str) -> Dict[str, Any]:
        """
        Pull the subscription from Razorpay and reconcile the local record.

        If Razorpay cannot be reached the local status is returned with a
        refreshError instead of failing.
        """
        record = await self._load(user_id)
        sub_id = record.subscription.external_id
        if not sub_id:
            status = self._status_dict(record, self.clock.now())
            status['refreshed'] = False
            return status

        try:
            record, result, entity = await self.sync_from_provider(user_id, sub_id)
        except UpstreamUnavailableError as e:
            logger.warning(f"[SUBSCRIPTION] Force refresh of {sub_id} failed: {e.message}")
            status = self._status_dict(record, self.clock.now())
            status['refreshed'] = False
            status['refreshError'] = REFRESH_ERROR
            return status

        status = self._status_dict(record, self.clock.now())
        status['refreshed'] = True
        status['providerStatus'] = entity.get('status')
        if result is not None:
            status['previousStatus'] = result.previous_status.value
        return status

    # =========================================================================
    # Status & Access
    # =========================================================================

    def _status_dict(self, record: UserRecord, now: datetime) -> Dict[str, Any]:
        sub = record.subscription
        decision = evaluate_access(record, now)
        pending = pending_payment(record)
        return {
            'access': decision.to_dict(),
            'subscriptionStatus': sub.status.value,
            'subscriptionId': sub.external_id,
            'planId': sub.plan_id,
            'planType': sub.plan_type.value if sub.plan_type else None,
            'daysRemaining': decision.days_remaining,
            'expiryDate': decision.expiry_date.isoformat() if decision.expiry_date else None,
            'cancelAtCycleEnd': sub.cancel_at_cycle_end,
            'processingView': build_processing_view(record, now).to_dict(),
            'pendingPayment': pending if pending['hasPending'] else None,
            'features': record.features.to_dict(),
            'trial': self.trials.trial_summary(record, now),
            'plans': get_plan_catalogue(),
        }

    async def get_status(self, user_id: str) -> Dict[str, Any]:
        record = await self._load(user_id)
        return self._status_dict(record, self.clock.now())

    async def validate_feature_access(self, user_id: str, feature: str = Feature.AUTO_SCROLL.value) -> Dict[str, Any]:
        """
        Decide access to `feature`, recovering state from Razorpay first
        when the local record would deny a user who has a subscription.

        When Razorpay is unreachable the local decision is returned, tagged
        source=local_cache with a warning.
        """
        if feature not in KNOWN_FEATURES:
            raise InvalidInputError(message=f"Unknown feature: {feature}", code="INVALID_FEATURE", field='feature')

        record = await self._load(user_id)
        decision = evaluate_access(record, self.clock.now(), feature)
        gateway_available = self.api.is_available
        if decision.allowed:
            if not gateway_available:
                logger.warning(f"[ACCESS] Circuit open, allowing user {user_id} from the local record")
            return self._access_dict(decision, degraded=not gateway_available)

        sub = record.subscription
        if not sub.external_id or sub.status not in RECOVERABLE_STATUSES:
            return self._access_dict(decision, degraded=not gateway_available)

        if not gateway_available:
            logger.warning(f"[ACCESS] Circuit open, using local decision for user {user_id}")
            return self._access_dict(decision, degraded=True)

        try:
            record, result, _ = await self.sync_from_provider(user_id, sub.external_id)
        except UpstreamUnavailableError as e:
            logger.warning(f"[ACCESS] State recovery failed for user {user_id}: {e.message}")
            return self._access_dict(decision, degraded=True)

        recovered = evaluate_access(record, self.clock.now(), feature)
        data = self._access_dict(recovered)
        if recovered.allowed:
            logger.info(f"[ACCESS] Recovered access for user {user_id} ({recovered.access_type})")
            data['recovered'] = True
        return data

    @staticmethod
    def _access_dict(decision: AccessDecision, degraded: bool = False) -> Dict[str, Any]:
        data = decision.to_dict()
        if degraded:
            data['source'] = 'local_cache'
            data['warning'] = DEGRADED_WARNING
        else:
            data['source'] = decision.access_type
        return data

    # =========================================================================
    # Usage
    # =========================================================================

    async def record_usage(self, user_id: str, feature: str = Feature.AUTO_SCROLL.value) -> Dict[str, Any]:
        """
        Count one use of `feature` after checking access.

        Raises:
            AccessDeniedError: If access is denied
        """
        access = await self.validate_feature_access(user_id, feature)
        if not access['allowed']:
            raise AccessDeniedError(
                message=access.get('message') or "Access denied",
                reason=access.get('reason'),
                details={'accessType': access['accessType'], 'feature': feature},
            )

        now = self.clock.now()
        today = now.date()

        async def mutator(current: UserRecord) -> None:
            usage = current.usage
            usage.total_uses += 1
            usage.last_used_at = now
            for bucket in usage.daily_buckets:
                if bucket.date == today:
                    bucket.count += 1
                    break
            else:
                usage.daily_buckets.append(UsageBucket(date=today, count=1))

        record, _ = await self.store.mutate(mutator, user_id=user_id)
        return {
            'totalUses': record.usage.total_uses,
            'accessType': access['accessType'],
            'daysRemaining': access['daysRemaining'],
        }

    async def get_usage_analytics(self, user_id: str) -> Dict[str, Any]:
        record = await self._load(user_id)
        now = self.clock.now()
        decision = evaluate_access(record, now)

        recent = sorted(record.usage.daily_buckets, key=lambda b: b.date)[-7:]
        total_recent = sum(b.count for b in recent)

        return {
            'subscription': {
                'status': record.subscription.status.value,
                'accessType': decision.access_type,
                'daysRemaining': decision.days_remaining,
                'expiryDate': decision.expiry_date.isoformat() if decision.expiry_date else None,
            },
            'usage': {
                'totalUses': record.usage.total_uses,
                'lastUsedAt': record.usage.last_used_at.isoformat() if record.usage.last_used_at else None,
                'dailyUsage': [{'date': b.date.isoformat(), 'count': b.count} for b in recent],
                'averageDaily': round(total_recent / len(recent), 2) if recent else 0,
            },
            'features': record.features.to_dict(),
            'trial': self.trials.trial_summary(record, now),
        }

    # =========================================================================
    # Plans
    # =========================================================================

    def list_plans(self):
        return get_plan_catalogue()


# Global service instance
subscription_service = SubscriptionService()

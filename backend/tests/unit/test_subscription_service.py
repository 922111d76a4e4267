"""Tests for SubscriptionService.

Tests cover:
- Trial to paid subscription through webhooks, in and out of order
- Creation conflicts and the resumable payment link
- Cancellation
- Manual recovery (force refresh, invoice charge)
- Feature access with state recovery and graceful degradation
- Usage recording and analytics
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from backend.src.billing.domain.user import PlanType, SubscriptionStatus
from backend.src.billing.shared.exceptions import (
    AccessDeniedError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UpstreamUnavailableError,
)

PAYMENT_LINK = 'https://rzp.io/i/u1'


async def _subscribe(subscriptions, provider, payloads, user, t0):
    """Create a monthly subscription three days into the trial."""
    provider.create_subscription = AsyncMock(return_value=payloads.subscription(
        'sub_A', 'created', t0 + timedelta(days=3), t0 + timedelta(days=33), short_url=PAYMENT_LINK,
    ))
    subscriptions.clock.set(t0 + timedelta(days=3))
    return await subscriptions.create_subscription(user.id, 'monthly')


def _active_fields(t0):
    return {
        'external_id': 'sub_A',
        'plan_id': 'plan_monthly_premium',
        'plan_type': PlanType.MONTHLY,
        'status': SubscriptionStatus.ACTIVE,
        'current_period_start': t0,
        'current_period_end': t0 + timedelta(days=30),
    }


class TestTrialToSubscription:
    """End-to-end lifecycle through the service and webhooks."""

    @pytest.mark.asyncio
    async def test_happy_path(self, subscriptions, provider, payloads, deliver, make_user, store, t0):
        """Test authenticated, activated, charged delivered in order."""
        user = await make_user()

        created = await _subscribe(subscriptions, provider, payloads, user, t0)

        assert created['subscriptionId'] == 'sub_A'
        assert created['paymentLink'] == PAYMENT_LINK
        assert created['amount'] == 900
        record = await store.get(user.id)
        assert record.subscription.status == SubscriptionStatus.CREATED
        assert record.trial.active is True

        payload = provider.create_subscription.await_args.args[0]
        assert payload['plan_id'] == 'plan_monthly_premium'
        assert payload['notes']['userId'] == user.id

        entity = payloads.subscription('sub_A', 'active', t0 + timedelta(days=3), t0 + timedelta(days=33))
        payment = payloads.payment('pay_1', 'sub_A', t0 + timedelta(days=3))
        await deliver('subscription.authenticated', entity)
        await deliver('subscription.activated', entity)
        await deliver('subscription.charged', entity, payment)

        record = await store.get(user.id)
        assert record.subscription.status == SubscriptionStatus.ACTIVE
        assert record.trial.active is False
        assert all(record.features.to_dict().values())
        assert record.subscription.current_period_end == t0 + timedelta(days=33)
        assert [p.payment_id for p in record.subscription.payment_history] == ['pay_1']

    @pytest.mark.asyncio
    async def test_out_of_order_delivery(self, subscriptions, provider, payloads, deliver, make_user, store, t0):
        """Test a late authenticated refreshes the period but keeps active."""
        user = await make_user()
        await _subscribe(subscriptions, provider, payloads, user, t0)

        entity = payloads.subscription('sub_A', 'active', t0 + timedelta(days=3), t0 + timedelta(days=33))
        await deliver('subscription.activated', entity)
        await deliver(
            'subscription.charged', entity, payloads.payment('pay_1', 'sub_A', t0 + timedelta(days=3))
        )
        late = payloads.subscription('sub_A', 'authenticated', t0 + timedelta(days=3), t0 + timedelta(days=34))
        result = await deliver('subscription.authenticated', late)

        assert result['acknowledged'] is True
        assert result['preservedStatus'] is True

        record = await store.get(user.id)
        assert record.subscription.status == SubscriptionStatus.ACTIVE
        assert record.trial.active is False
        assert all(record.features.to_dict().values())
        assert record.subscription.current_period_end == t0 + timedelta(days=34)
        assert record.subscription.last_webhook.type == 'subscription.authenticated'
        assert record.subscription.last_webhook.preserved_status is True
        provider.fetch_pending_invoices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_authenticated_pushes_issued_invoices(self, subscriptions, provider, payloads, deliver, make_user, t0):
        user = await make_user()
        await _subscribe(subscriptions, provider, payloads, user, t0)
        provider.fetch_pending_invoices.return_value = [
            {'id': 'inv_1', 'status': 'issued'},
            {'id': 'inv_0', 'status': 'paid'},
        ]

        result = await deliver('subscription.authenticated', payloads.subscription('sub_A', 'authenticated'))

        assert result['invoicesCharged'] == 1
        provider.charge_invoice.assert_awaited_once_with('inv_1')


class TestCreateSubscription:
    """Tests for creation guards and the resumable payment link."""

    @pytest.mark.asyncio
    async def test_pending_link_and_recent_conflict(self, subscriptions, provider, payloads, make_user, t0):
        user = await make_user()
        await _subscribe(subscriptions, provider, payloads, user, t0)

        pending = await subscriptions.get_pending_payment_link(user.id)
        assert pending['hasPending'] is True
        assert pending['paymentLink'] == PAYMENT_LINK
        assert pending['planType'] == 'monthly'

        subscriptions.clock.advance(minutes=5)
        with pytest.raises(ConflictError) as exc_info:
            await subscriptions.create_subscription(user.id, 'monthly')

        assert exc_info.value.code == 'RECENT_SUBSCRIPTION_EXISTS'
        assert exc_info.value.details['paymentLink'] == PAYMENT_LINK
        assert provider.create_subscription.await_count == 1

    @pytest.mark.asyncio
    async def test_processing_conflict_after_window(self, subscriptions, provider, payloads, make_user, t0):
        user = await make_user()
        await _subscribe(subscriptions, provider, payloads, user, t0)

        subscriptions.clock.advance(minutes=11)
        with pytest.raises(ConflictError) as exc_info:
            await subscriptions.create_subscription(user.id, 'yearly')

        assert exc_info.value.code == 'SUBSCRIPTION_PROCESSING'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status, code', [
        (SubscriptionStatus.ACTIVE, 'SUBSCRIPTION_ALREADY_ACTIVE'),
        (SubscriptionStatus.PAST_DUE, 'SUBSCRIPTION_PAST_DUE'),
    ])
    async def test_blocking_statuses(self, subscriptions, provider, make_user, t0, status, code):
        fields = _active_fields(t0)
        fields['status'] = status
        user = await make_user(**fields)

        with pytest.raises(ConflictError) as exc_info:
            await subscriptions.create_subscription(user.id, 'monthly')

        assert exc_info.value.code == code
        provider.create_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resubscribe_after_cancellation(self, subscriptions, provider, make_user, store, t0):
        fields = _active_fields(t0)
        fields.update(external_id='sub_old', status=SubscriptionStatus.CANCELLED, cancelled_at=t0)
        user = await make_user(**fields)

        result = await subscriptions.create_subscription(user.id, 'monthly')

        record = await store.get(user.id)
        assert result['subscriptionId'] == 'sub_A'
        assert record.subscription.external_id == 'sub_A'
        assert record.subscription.status == SubscriptionStatus.CREATED
        assert record.subscription.cancelled_at is None

    @pytest.mark.asyncio
    async def test_invalid_plan(self, subscriptions, make_user):
        user = await make_user()

        with pytest.raises(InvalidInputError) as exc_info:
            await subscriptions.create_subscription(user.id, 'weekly')

        assert exc_info.value.code == 'INVALID_PLAN'

    @pytest.mark.asyncio
    async def test_unknown_user(self, subscriptions):
        with pytest.raises(NotFoundError):
            await subscriptions.create_subscription('missing', 'monthly')

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_record_untouched(self, subscriptions, provider, make_user, store):
        user = await make_user()
        provider.create_subscription = AsyncMock(side_effect=UpstreamUnavailableError())

        with pytest.raises(UpstreamUnavailableError):
            await subscriptions.create_subscription(user.id, 'monthly')

        record = await store.get(user.id)
        assert record.subscription.external_id is None
        assert record.subscription.status == SubscriptionStatus.TRIAL


class TestCancelSubscription:
    """Tests for user-initiated cancellation."""

    @pytest.mark.asyncio
    async def test_cycle_end_keeps_access(self, subscriptions, provider, make_user, t0):
        user = await make_user(**_active_fields(t0))

        result = await subscriptions.cancel_subscription(user.id, at_cycle_end=True)

        assert result['cancelAtCycleEnd'] is True
        assert result['status'] == 'active'
        assert result['activeUntil'] == (t0 + timedelta(days=30)).isoformat()
        provider.cancel_subscription.assert_awaited_once_with('sub_A', True)

    @pytest.mark.asyncio
    async def test_pending_subscription_cancelled_immediately(self, subscriptions, provider, make_user, store, t0):
        user = await make_user(external_id='sub_A', status=SubscriptionStatus.CREATED, current_period_start=t0)

        result = await subscriptions.cancel_subscription(user.id, at_cycle_end=True)

        assert result['cancelAtCycleEnd'] is False
        assert result['status'] == 'cancelled'
        provider.cancel_subscription.assert_awaited_once_with('sub_A', False)
        assert (await store.get(user.id)).subscription.status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_no_subscription(self, subscriptions, make_user):
        user = await make_user()

        with pytest.raises(NotFoundError) as exc_info:
            await subscriptions.cancel_subscription(user.id)

        assert exc_info.value.code == 'NO_SUBSCRIPTION'

    @pytest.mark.asyncio
    async def test_terminal_status_rejected(self, subscriptions, provider, make_user):
        user = await make_user(external_id='sub_A', status=SubscriptionStatus.EXPIRED)

        with pytest.raises(ConflictError) as exc_info:
            await subscriptions.cancel_subscription(user.id)

        assert exc_info.value.code == 'INVALID_SUBSCRIPTION_STATUS'
        provider.cancel_subscription.assert_not_awaited()


class TestManualRecovery:
    """Tests for a subscription stuck in authenticated."""

    @pytest.mark.asyncio
    async def test_force_refresh_activates(self, subscriptions, provider, payloads, deliver, make_user, store, t0):
        user = await make_user()
        await _subscribe(subscriptions, provider, payloads, user, t0)
        await deliver('subscription.authenticated', payloads.subscription('sub_A', 'authenticated'))

        subscriptions.clock.advance(minutes=6)
        provider.fetch_subscription.return_value = payloads.subscription(
            'sub_A', 'active', t0 + timedelta(days=3), t0 + timedelta(days=33)
        )
        status = await subscriptions.force_refresh(user.id)

        assert status['refreshed'] is True
        assert status['providerStatus'] == 'active'
        assert status['previousStatus'] == 'authenticated'
        assert status['subscriptionStatus'] == 'active'
        assert status['access']['accessType'] == 'active'
        assert (await store.get(user.id)).subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_force_refresh_provider_down(self, subscriptions, provider, make_user, t0):
        user = await make_user(external_id='sub_A', status=SubscriptionStatus.AUTHENTICATED, current_period_start=t0)
        provider.fetch_subscription.side_effect = UpstreamUnavailableError()

        status = await subscriptions.force_refresh(user.id)

        assert status['refreshed'] is False
        assert status['refreshError'] == 'Could not reach payment provider'
        assert status['subscriptionStatus'] == 'authenticated'

    @pytest.mark.asyncio
    async def test_trigger_charge_then_charged_webhook(
        self, subscriptions, provider, payloads, deliver, make_user, store, t0
    ):
        user = await make_user()
        await _subscribe(subscriptions, provider, payloads, user, t0)
        await deliver('subscription.authenticated', payloads.subscription('sub_A', 'authenticated'))

        subscriptions.clock.advance(minutes=6)
        provider.fetch_subscription.return_value = payloads.subscription('sub_A', 'authenticated')
        provider.fetch_pending_invoices.return_value = [{'id': 'inv_1', 'status': 'issued', 'amount': 900}]
        provider.charge_invoice.return_value = {'id': 'inv_1', 'status': 'paid'}

        result = await subscriptions.trigger_charge(user_id=user.id)

        assert result == {'subscriptionId': 'sub_A', 'invoiceId': 'inv_1', 'invoiceStatus': 'paid', 'amount': 900}
        record = await store.get(user.id)
        assert record.subscription.last_charge_attempt == subscriptions.clock.now()

        entity = payloads.subscription('sub_A', 'active', t0 + timedelta(days=3), t0 + timedelta(days=33))
        await deliver('subscription.charged', entity, payloads.payment('pay_1', 'sub_A', t0 + timedelta(days=3)))
        assert (await store.get(user.id)).subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_trigger_charge_requires_authenticated(self, subscriptions, provider, payloads, make_user, t0):
        user = await make_user(external_id='sub_A', status=SubscriptionStatus.CREATED, current_period_start=t0)
        provider.fetch_subscription.return_value = payloads.subscription('sub_A', 'created')

        with pytest.raises(ConflictError) as exc_info:
            await subscriptions.trigger_charge(subscription_id='sub_A')

        assert exc_info.value.code == 'INVALID_SUBSCRIPTION_STATUS'
        provider.charge_invoice.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trigger_charge_without_invoices(self, subscriptions, provider, payloads, make_user, t0):
        user = await make_user(external_id='sub_A', status=SubscriptionStatus.AUTHENTICATED, current_period_start=t0)
        provider.fetch_subscription.return_value = payloads.subscription('sub_A', 'authenticated')

        with pytest.raises(NotFoundError) as exc_info:
            await subscriptions.trigger_charge(user_id=user.id)

        assert exc_info.value.code == 'NO_PENDING_INVOICES'


class TestValidateFeatureAccess:
    """Tests for access checks with provider recovery."""

    @pytest.mark.asyncio
    async def test_trial_user_allowed_locally(self, subscriptions, provider, make_user):
        user = await make_user()

        result = await subscriptions.validate_feature_access(user.id, 'autoScroll')

        assert result['allowed'] is True
        assert result['source'] == 'trial'
        provider.fetch_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovers_missed_activation(self, subscriptions, provider, payloads, make_user, store, t0):
        """Test a denied user whose activation webhook never arrived is recovered from Razorpay."""
        user = await make_user(
            trial_started_at=t0 - timedelta(days=11),
            external_id='sub_A',
            plan_id='plan_monthly_premium',
            status=SubscriptionStatus.CREATED,
            current_period_start=t0 - timedelta(days=2),
        )
        provider.fetch_subscription.return_value = payloads.subscription(
            'sub_A', 'active', t0 - timedelta(days=1), t0 + timedelta(days=29)
        )

        result = await subscriptions.validate_feature_access(user.id, 'customSettings')

        assert result['allowed'] is True
        assert result['accessType'] == 'active'
        assert result['recovered'] is True
        assert (await store.get(user.id)).subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_circuit_open_uses_local_decision(self, subscriptions, provider, make_user, t0):
        user = await make_user(
            trial_started_at=t0 - timedelta(days=11),
            external_id='sub_A',
            status=SubscriptionStatus.CREATED,
            current_period_start=t0 - timedelta(days=2),
        )
        provider.is_available = False

        result = await subscriptions.validate_feature_access(user.id)

        assert result['allowed'] is False
        assert result['source'] == 'local_cache'
        assert result['warning'] == 'Payment gateway temporarily unavailable'
        provider.fetch_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_circuit_open_tags_allowed_decision(self, subscriptions, provider, make_user, t0):
        """Test an active user is still allowed while the circuit is open, from the local record."""
        user = await make_user(**_active_fields(t0))
        provider.is_available = False

        result = await subscriptions.validate_feature_access(user.id, 'autoScroll')

        assert result['allowed'] is True
        assert result['accessType'] == 'active'
        assert result['source'] == 'local_cache'
        assert result['warning'] == 'Payment gateway temporarily unavailable'
        provider.fetch_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_error_uses_local_decision(self, subscriptions, provider, make_user, t0):
        user = await make_user(trial_started_at=t0 - timedelta(days=40), **_active_fields(t0 - timedelta(days=40)))
        provider.fetch_subscription.side_effect = UpstreamUnavailableError(upstream_status=503)

        result = await subscriptions.validate_feature_access(user.id)

        assert result['allowed'] is False
        assert result['source'] == 'local_cache'

    @pytest.mark.asyncio
    async def test_unknown_feature(self, subscriptions, make_user):
        user = await make_user()

        with pytest.raises(InvalidInputError) as exc_info:
            await subscriptions.validate_feature_access(user.id, 'teleport')

        assert exc_info.value.code == 'INVALID_FEATURE'


class TestUsage:
    """Tests for usage recording and analytics."""

    @pytest.mark.asyncio
    async def test_record_usage_and_analytics(self, subscriptions, make_user, clock):
        user = await make_user()

        await subscriptions.record_usage(user.id)
        await subscriptions.record_usage(user.id)
        clock.advance(days=1)
        result = await subscriptions.record_usage(user.id)

        assert result['totalUses'] == 3
        assert result['accessType'] == 'trial'

        analytics = await subscriptions.get_usage_analytics(user.id)
        assert analytics['usage']['totalUses'] == 3
        assert analytics['usage']['dailyUsage'] == [
            {'date': '2025-01-01', 'count': 2},
            {'date': '2025-01-02', 'count': 1},
        ]
        assert analytics['usage']['averageDaily'] == 1.5
        assert analytics['trial']['active'] is True

    @pytest.mark.asyncio
    async def test_denied_usage_is_not_counted(self, subscriptions, make_user, store, t0):
        user = await make_user(trial_started_at=t0 - timedelta(days=11))

        with pytest.raises(AccessDeniedError) as exc_info:
            await subscriptions.record_usage(user.id)

        assert exc_info.value.reason == 'trial_expired'
        assert exc_info.value.status_code == 403
        assert (await store.get(user.id)).usage.total_uses == 0


class TestStatusAndTrial:
    """Tests for the status summary and trial initialization."""

    @pytest.mark.asyncio
    async def test_initialize_trial_once(self, subscriptions, make_user, t0):
        user = await make_user(with_trial=False)

        first = await subscriptions.initialize_trial(user.id)
        second = await subscriptions.initialize_trial(user.id)

        assert first['started'] is True
        assert first['trial']['endAt'] == (t0 + timedelta(days=10)).isoformat()
        assert second['started'] is False

    @pytest.mark.asyncio
    async def test_status_summary(self, subscriptions, make_user, clock):
        user = await make_user()
        clock.advance(days=5)

        status = await subscriptions.get_status(user.id)

        assert status['subscriptionStatus'] == 'trial'
        assert status['access']['accessType'] == 'trial'
        assert status['daysRemaining'] == 5
        assert status['pendingPayment'] is None
        assert status['trial']['daysRemaining'] == 5
        assert {p['planType'] for p in status['plans']} == {'monthly', 'yearly'}

"""Tests for Razorpay webhook processing.

Tests cover:
- Signature verification on the raw body
- Delivery deduplication and the stale processing lock
- Unknown events and unknown subscriptions
- Dead-lettering of failed handlers and replay
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from backend.src.billing.domain.user import SubscriptionStatus
from backend.src.billing.shared.exceptions import (
    InvalidInputError,
    WebhookProcessingError,
    WebhookVerificationError,
)


@pytest.fixture
def make_pending_user(make_user, t0):
    async def _make():
        return await make_user(
            external_id='sub_A',
            plan_id='plan_monthly_premium',
            status=SubscriptionStatus.CREATED,
            current_period_start=t0,
        )

    return _make


class TestSignatureVerification:
    """Tests for webhook signature checks."""

    @pytest.mark.asyncio
    async def test_missing_signature(self, webhooks, payloads):
        body = payloads.body(payloads.event('subscription.activated', payloads.subscription('sub_A', 'active')))

        with pytest.raises(WebhookVerificationError) as exc_info:
            await webhooks.process_razorpay_webhook(body, None)

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_tampered_body(self, webhooks, payloads, make_pending_user, store):
        user = await make_pending_user()
        body = payloads.body(payloads.event('subscription.activated', payloads.subscription('sub_A', 'active')))
        signature = payloads.sign(body)

        with pytest.raises(WebhookVerificationError):
            await webhooks.process_razorpay_webhook(body.replace(b'active', b'halted'), signature)

        assert (await store.get(user.id)).subscription.status == SubscriptionStatus.CREATED

    @pytest.mark.asyncio
    async def test_wrong_secret(self, webhooks, payloads):
        body = payloads.body(payloads.event('subscription.activated', payloads.subscription('sub_A', 'active')))

        with pytest.raises(WebhookVerificationError):
            await webhooks.process_razorpay_webhook(body, payloads.sign(body, secret='another_secret'))

    @pytest.mark.asyncio
    async def test_signed_garbage_is_invalid_input(self, webhooks, payloads):
        body = b'not json'

        with pytest.raises(InvalidInputError) as exc_info:
            await webhooks.process_razorpay_webhook(body, payloads.sign(body))

        assert exc_info.value.code == 'INVALID_WEBHOOK_PAYLOAD'


class TestEventHandling:
    """Tests for the outcome of verified events."""

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(self, deliver, payloads):
        result = await deliver('invoice.paid', payloads.subscription('sub_A', 'active'))

        assert result['acknowledged'] is True
        assert result['message'] == 'Event acknowledged but not processed'

    @pytest.mark.asyncio
    async def test_unknown_subscription_acknowledged(self, deliver, payloads):
        result = await deliver('subscription.activated', payloads.subscription('sub_unknown', 'active'))

        assert result['acknowledged'] is True
        assert result['success'] is False
        assert result['message'] == 'User not found'

    @pytest.mark.asyncio
    async def test_payment_failed_moves_to_past_due(self, deliver, payloads, make_user, store, t0):
        user = await make_user(
            external_id='sub_A',
            status=SubscriptionStatus.ACTIVE,
            current_period_start=t0,
            current_period_end=t0 + timedelta(days=30),
        )

        await deliver('payment.failed', payment=payloads.payment('pay_f', 'sub_A', t0, status='failed'))

        record = await store.get(user.id)
        assert record.subscription.status == SubscriptionStatus.PAST_DUE
        assert record.subscription.payment_history[0].failure_reason == 'Card declined'
        assert record.subscription.last_webhook.type == 'payment.failed'

    @pytest.mark.asyncio
    async def test_cancelled_clears_premium(self, deliver, payloads, make_pending_user, store):
        user = await make_pending_user()
        await deliver('subscription.activated', payloads.subscription('sub_A', 'active'))

        await deliver('subscription.cancelled', payloads.subscription('sub_A', 'cancelled'))

        record = await store.get(user.id)
        assert record.subscription.status == SubscriptionStatus.CANCELLED
        assert record.features.custom_settings is False
        assert record.features.priority_support is False


class TestDeduplication:
    """Tests for redelivered and concurrent events."""

    @pytest.mark.asyncio
    async def test_redelivery_with_same_event_id_is_skipped(self, deliver, payloads, make_pending_user, store, t0):
        user = await make_pending_user()
        entity = payloads.subscription('sub_A', 'active', t0, t0 + timedelta(days=30))
        payment = payloads.payment('pay_1', 'sub_A', t0)

        first = await deliver('subscription.charged', entity, payment, event_id='evt_1')
        after_first = await store.get(user.id)
        second = await deliver('subscription.charged', entity, payment, event_id='evt_1')

        assert first.get('duplicate') is None
        assert second['duplicate'] is True
        assert second['message'] == 'Event already processed'
        assert await store.get(user.id) == after_first

    @pytest.mark.asyncio
    async def test_same_payment_under_new_event_id_recorded_once(self, deliver, payloads, make_pending_user, store, t0):
        user = await make_pending_user()
        entity = payloads.subscription('sub_A', 'active', t0, t0 + timedelta(days=30))
        payment = payloads.payment('pay_1', 'sub_A', t0)

        await deliver('subscription.charged', entity, payment, event_id='evt_1')
        await deliver('subscription.charged', entity, payment, event_id='evt_2')

        record = await store.get(user.id)
        assert record.subscription.status == SubscriptionStatus.ACTIVE
        assert len(record.subscription.payment_history) == 1

    @pytest.mark.asyncio
    async def test_concurrent_charges_are_both_recorded(self, deliver, payloads, make_pending_user, store, t0):
        user = await make_pending_user()
        entity = payloads.subscription('sub_A', 'active', t0, t0 + timedelta(days=30))

        results = await asyncio.gather(
            deliver('subscription.charged', entity, payloads.payment('pay_1', 'sub_A', t0), event_id='evt_1'),
            deliver(
                'subscription.charged',
                entity,
                payloads.payment('pay_2', 'sub_A', t0 + timedelta(minutes=1)),
                event_id='evt_2',
            ),
        )

        assert all(result['success'] for result in results)
        record = await store.get(user.id)
        assert record.subscription.status == SubscriptionStatus.ACTIVE
        assert [p.payment_id for p in record.subscription.payment_history] == ['pay_1', 'pay_2']

    @pytest.mark.asyncio
    async def test_processing_lock_goes_stale(self, webhooks, clock):
        lock = webhooks.lock

        assert (await lock.check_and_mark_webhook_processing('sub_A:x:1', 'x'))[0] is True
        assert await lock.check_and_mark_webhook_processing('sub_A:x:1', 'x') == (
            False, 'Event currently being processed'
        )

        clock.advance(seconds=301)
        assert (await lock.check_and_mark_webhook_processing('sub_A:x:1', 'x'))[0] is True

        await lock.mark_webhook_completed('sub_A:x:1')
        assert await lock.check_and_mark_webhook_processing('sub_A:x:1', 'x') == (False, 'Event already processed')

    @pytest.mark.asyncio
    async def test_cleanup_old_events(self, webhooks, clock):
        await webhooks.lock.check_and_mark_webhook_processing('old', 'x')
        clock.advance(days=31)
        await webhooks.lock.check_and_mark_webhook_processing('new', 'x')

        assert await webhooks.lock.cleanup_old_events(days=30) == 1
        assert await webhooks.lock.get_event_status('old') is None
        assert (await webhooks.lock.get_event_status('new'))['status'] == 'processing'


class TestDeadLetter:
    """Tests for failed handlers."""

    @pytest.mark.asyncio
    async def test_failure_is_dead_lettered_and_replayed(
        self, webhooks, deliver, payloads, make_pending_user, store, monkeypatch
    ):
        user = await make_pending_user()
        monkeypatch.setattr(webhooks.reconciler, 'reconcile', AsyncMock(side_effect=RuntimeError('database gone')))

        with pytest.raises(WebhookProcessingError) as exc_info:
            await deliver('subscription.activated', payloads.subscription('sub_A', 'active'), event_id='evt_9')

        error = exc_info.value
        assert error.status_code == 500
        assert error.event_id == 'evt_9'
        assert error.dead_letter_id is not None
        assert await webhooks.dead_letter.count_pending() == 1
        assert webhooks.dead_letter.failure_count == 1

        pending = await webhooks.dead_letter.list_pending()
        assert pending[0]['eventType'] == 'subscription.activated'
        assert pending[0]['subscriptionId'] == 'sub_A'
        assert 'database gone' in pending[0]['error']

        monkeypatch.undo()
        assert await webhooks.replay_dead_letter(error.dead_letter_id) is True

        entry = await webhooks.dead_letter.get(error.dead_letter_id)
        assert entry['status'] == 'replayed'
        assert await webhooks.dead_letter.count_pending() == 0
        assert (await store.get(user.id)).subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_event_may_be_redelivered(self, webhooks, deliver, payloads, make_pending_user, store, monkeypatch):
        user = await make_pending_user()
        monkeypatch.setattr(webhooks.reconciler, 'reconcile', AsyncMock(side_effect=RuntimeError('boom')))
        with pytest.raises(WebhookProcessingError):
            await deliver('subscription.activated', payloads.subscription('sub_A', 'active'), event_id='evt_9')
        monkeypatch.undo()

        result = await deliver('subscription.activated', payloads.subscription('sub_A', 'active'), event_id='evt_9')

        assert result['success'] is True
        assert (await store.get(user.id)).subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_replay_abandons_after_max_retries(self, webhooks, deliver, payloads, make_pending_user, monkeypatch):
        await make_pending_user()
        monkeypatch.setattr(webhooks.reconciler, 'reconcile', AsyncMock(side_effect=RuntimeError('still broken')))
        with pytest.raises(WebhookProcessingError) as exc_info:
            await deliver('subscription.activated', payloads.subscription('sub_A', 'active'))
        entry_id = exc_info.value.dead_letter_id

        for _ in range(3):
            stats = await webhooks.replay_dead_letters()
            assert stats['failed'] == 1

        entry = await webhooks.dead_letter.get(entry_id)
        assert entry['status'] == 'abandoned'
        assert entry['retryCount'] == 3
        assert await webhooks.replay_dead_letters() == {'attempted': 0, 'replayed': 0, 'failed': 0}


class TestIdempotencyKeys:
    """Tests for dedupe key generation."""

    def test_key_uses_event_id_when_present(self, payloads):
        from backend.src.billing.external.razorpay import generate_webhook_key

        event = payloads.event('subscription.charged', payloads.subscription('sub_A', 'active'))

        assert generate_webhook_key(event, b'{}', 'evt_1') == 'sub_A:subscription.charged:evt_1'

    def test_key_falls_back_to_body_digest(self, payloads, t0):
        from backend.src.billing.external.razorpay import generate_webhook_key

        event = payloads.event('payment.failed', payment=payloads.payment('pay_1', 'sub_B', t0))

        key = generate_webhook_key(event, b'raw', None)

        assert key.startswith('sub_B:payment.failed:sha256=')
        assert key != generate_webhook_key(event, b'raw-2', None)



"""Shared fixtures for the subscription core tests.

Store-backed tests run against an in-memory SQLite database; Razorpay is an
AsyncMock speaking provider-shaped dicts. All clocks start at
2025-01-01T00:00:00Z.
"""

import hashlib
import hmac
import itertools
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.common.model import MappedBase
from backend.src.billing.domain.user import Identity, UserRecord
from backend.src.billing.shared.clock import FixedClock
from backend.src.billing.storage import models  # noqa: F401
from backend.src.billing.storage.user_store import UserStore
from backend.src.billing.subscriptions.trial_service import start_trial

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
WEBHOOK_SECRET = 'whsec_test_secret'
MONTHLY_PLAN_ID = 'plan_monthly_premium'


def unix(value: datetime) -> int:
    return int(value.timestamp())


class RazorpayPayloads:
    """Builders for Razorpay entities and webhook envelopes."""

    @staticmethod
    def subscription(
        sub_id: str,
        status: str,
        current_start: datetime = None,
        current_end: datetime = None,
        plan_id: str = MONTHLY_PLAN_ID,
        short_url: str = None,
    ) -> dict:
        return {
            'id': sub_id,
            'entity': 'subscription',
            'plan_id': plan_id,
            'status': status,
            'current_start': unix(current_start) if current_start else None,
            'current_end': unix(current_end) if current_end else None,
            'short_url': short_url or f'https://rzp.io/i/{sub_id}',
        }

    @staticmethod
    def payment(payment_id: str, sub_id: str, created_at: datetime, status: str = 'captured') -> dict:
        return {
            'id': payment_id,
            'entity': 'payment',
            'amount': 900,
            'currency': 'INR',
            'status': status,
            'subscription_id': sub_id,
            'created_at': unix(created_at),
            'error_description': 'Card declined' if status == 'failed' else None,
        }

    @staticmethod
    def event(event_type: str, subscription: dict = None, payment: dict = None) -> dict:
        payload = {}
        if subscription is not None:
            payload['subscription'] = {'entity': subscription}
        if payment is not None:
            payload['payment'] = {'entity': payment}
        return {'entity': 'event', 'event': event_type, 'payload': payload}

    @staticmethod
    def body(event: dict) -> bytes:
        return json.dumps(event, separators=(',', ':')).encode()

    @staticmethod
    def sign(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


@pytest.fixture
def payloads():
    return RazorpayPayloads


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        'sqlite+aiosqlite://',
        poolclass=StaticPool,
        connect_args={'check_same_thread': False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(MappedBase.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return UserStore(session_factory=session_factory)


@pytest.fixture
def provider():
    """Razorpay API double with the RazorpayAPIWrapper surface."""
    api = MagicMock()
    api.is_available = True
    api.create_subscription = AsyncMock(
        side_effect=lambda payload: RazorpayPayloads.subscription('sub_A', 'created', plan_id=payload['plan_id'])
    )
    api.cancel_subscription = AsyncMock(return_value={'id': 'sub_A', 'status': 'cancelled'})
    api.fetch_subscription = AsyncMock()
    api.fetch_pending_invoices = AsyncMock(return_value=[])
    api.charge_invoice = AsyncMock()
    api.get_circuit_status = MagicMock(return_value={'circuit_name': 'razorpay_api', 'state': 'closed'})
    api.verify_webhook_signature = MagicMock(
        side_effect=lambda body, signature: bool(signature) and hmac.compare_digest(
            RazorpayPayloads.sign(body), signature
        )
    )
    return api


@pytest.fixture
def subscriptions(store, provider, clock):
    from backend.src.billing.subscriptions.service import SubscriptionService

    return SubscriptionService(store=store, api=provider, clock=clock)


@pytest.fixture
def webhooks(store, provider, clock, session_factory):
    """WebhookService wired to the test database, provider double and clock."""
    from backend.src.billing.external.razorpay import (
        FailedWebhookQueue,
        WebhookLock,
        WebhookReconciler,
        WebhookService,
    )

    return WebhookService(
        api=provider,
        reconciler=WebhookReconciler(store=store, api=provider, clock=clock),
        lock=WebhookLock(session_factory=session_factory, stale_after_seconds=300, clock=clock),
        dead_letter=FailedWebhookQueue(session_factory=session_factory, max_retries=3, clock=clock),
        clock=clock,
    )


@pytest.fixture
def deliver(webhooks):
    """Sign and deliver one webhook event."""
    async def _deliver(event_type: str, subscription: dict = None, payment: dict = None, event_id: str = None):
        body = RazorpayPayloads.body(RazorpayPayloads.event(event_type, subscription, payment))
        return await webhooks.process_razorpay_webhook(body, RazorpayPayloads.sign(body), event_id)

    return _deliver


@pytest.fixture
def make_user(store, clock):
    """Persist a user, with a trial started at the clock's current time by default."""
    counter = itertools.count(1)

    async def _make(with_trial: bool = True, trial_started_at: datetime = None, **subscription) -> UserRecord:
        n = next(counter)
        record = UserRecord(
            id=f'user-{n}',
            identity=Identity(external_id=f'google-oauth2|{n}', email=f'user{n}@example.com', name=f'User {n}'),
        )
        if with_trial:
            start_trial(record, trial_started_at or clock.now())
        for name, value in subscription.items():
            setattr(record.subscription, name, value)
        return await store.create(record)

    return _make

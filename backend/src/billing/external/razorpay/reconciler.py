"""
Webhook Reconciler

Routes a verified Razorpay event to its handler and checks the record
afterwards. Deduplication and dead-lettering happen one level up, in
`WebhookService`.
"""

import logging
from typing import Any, Dict, Optional

from backend.src.billing.domain.user import SubscriptionStatus
from backend.src.billing.shared.clock import Clock
from backend.src.billing.storage.user_store import UserStore, user_store
from backend.src.billing.subscriptions.state_machine import HANDLED_EVENTS, SubscriptionEvent

from .handlers import PaymentHandler, SubscriptionHandler
from .idempotency import extract_subscription_id

logger = logging.getLogger(__name__)

# Events whose outcome is re-read and checked after processing
VERIFIED_EVENTS = frozenset({
    SubscriptionEvent.ACTIVATED.value,
    SubscriptionEvent.AUTHENTICATED.value,
    SubscriptionEvent.CHARGED.value,
})


class WebhookReconciler:
    """
    Applies verified webhook events to user records.

    Usage:
        reconciler = WebhookReconciler()
        result = await reconciler.reconcile(event)
    """

    def __init__(
        self,
        store: Optional[UserStore] = None,
        api=None,
        clock: Optional[Clock] = None
    ):
        self.store = store or user_store
        self.subscriptions = SubscriptionHandler(store=self.store, api=api, clock=clock)
        self.payments = PaymentHandler(store=self.store, api=self.subscriptions.api, clock=clock)

    async def reconcile(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply one event.

        Args:
            event: Razorpay envelope {event, payload: {subscription?, payment?}}

        Returns:
            Dict with the outcome; unknown users and unhandled types are
            acknowledged with success=False / an explanatory message
        """
        event_type = event.get('event')
        payload = event.get('payload') or {}
        subscription = (payload.get('subscription') or {}).get('entity')
        payment = (payload.get('payment') or {}).get('entity')

        logger.info(f"[WEBHOOK] Processing {event_type} for {extract_subscription_id(event) or 'unknown'}")

        if event_type == SubscriptionEvent.PAYMENT_FAILED.value:
            if not payment:
                return {'success': False, 'message': 'Missing payment entity'}
            result = await self.payments.handle_payment_failed(payment)

        elif event_type in HANDLED_EVENTS:
            if not subscription:
                return {'success': False, 'message': 'Missing subscription entity'}
            result = await self.subscriptions.handle_subscription_event(event_type, subscription, payment)

        else:
            logger.info(f"[WEBHOOK] Unhandled webhook event: {event_type}")
            return {'success': True, 'message': 'Event acknowledged but not processed'}

        if event_type in VERIFIED_EVENTS and result.get('success'):
            await self._verify_outcome(event_type, subscription.get('id'))

        return result

    async def _verify_outcome(self, event_type: str, subscription_id: str) -> None:
        """Re-read the record and warn if it does not look as expected."""
        try:
            record = await self.store.get_by_subscription_id(subscription_id)
        except Exception as e:
            logger.warning(f"[WEBHOOK] Could not verify post-webhook status for {subscription_id}: {e}")
            return
        if record is None:
            return

        status = record.subscription.status
        logger.info(f"[WEBHOOK] Post-webhook verification: user {record.id} is {status.value} after {event_type}")

        if event_type in (SubscriptionEvent.ACTIVATED.value, SubscriptionEvent.CHARGED.value):
            if status == SubscriptionStatus.ACTIVE:
                features = record.features
                if not (features.auto_scroll and features.analytics and features.custom_settings and features.priority_support):
                    logger.warning(f"[WEBHOOK] Active subscription for user {record.id} is missing features: {features.to_dict()}")
                if record.trial is not None and record.trial.active:
                    logger.warning(f"[WEBHOOK] Trial still active for subscribed user {record.id}")
            elif event_type == SubscriptionEvent.ACTIVATED.value:
                logger.warning(
                    f"[WEBHOOK] Expected 'active' status after activation, but found '{status.value}' for user {record.id}"
                )

        elif event_type == SubscriptionEvent.AUTHENTICATED.value:
            if status not in (SubscriptionStatus.AUTHENTICATED, SubscriptionStatus.ACTIVE):
                logger.warning(
                    f"[WEBHOOK] Expected 'authenticated' or 'active' after authentication, "
                    f"but found '{status.value}' for user {record.id}"
                )

"""
Subscription Webhook Handler

Handles subscription lifecycle webhook events:
- subscription.created
- subscription.authenticated
- subscription.activated
- subscription.charged
- subscription.cancelled
- subscription.completed
"""

import logging
from typing import Any, Dict, Optional

from backend.src.billing.subscriptions.state_machine import SubscriptionEvent

from .base import BaseWebhookHandler

logger = logging.getLogger(__name__)


class SubscriptionHandler(BaseWebhookHandler):
    """
    Handler for Razorpay subscription webhook events.

    Every event is a transition of the subscription state machine; the
    authenticated event additionally pushes pending invoices for payment
    once the transition is committed.
    """

    async def handle_subscription_event(
        self,
        event_type: str,
        subscription: Dict[str, Any],
        payment: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Apply a subscription.* event.

        Args:
            event_type: Razorpay event name
            subscription: payload.subscription.entity
            payment: payload.payment.entity (subscription.charged only)

        Returns:
            Dict with the outcome
        """
        subscription_id = subscription.get('id')
        if not subscription_id:
            logger.warning(f"[SUBSCRIPTION] {event_type} without a subscription id")
            return {'success': False, 'message': 'Missing subscription id'}

        record, result = await self._transition(event_type, subscription_id, subscription=subscription, payment=payment)
        outcome = self._outcome(record, result)

        if (
            record is not None
            and event_type == SubscriptionEvent.AUTHENTICATED.value
            and not result.preserved_status
            and result.applied
        ):
            outcome['invoicesCharged'] = await self.charge_pending_invoices(subscription_id)

        return outcome

    async def charge_pending_invoices(self, subscription_id: str) -> int:
        """
        Push every issued invoice of an authenticated subscription for payment.

        Failures are logged and never fail the webhook.

        Returns:
            Number of invoices pushed
        """
        charged = 0
        try:
            invoices = await self.api.fetch_pending_invoices(subscription_id)
            if invoices:
                logger.info(f"[SUBSCRIPTION] Processing {len(invoices)} pending invoices for subscription: {subscription_id}")

            for invoice in invoices:
                if invoice.get('status') == 'issued':
                    logger.info(f"[SUBSCRIPTION] Triggering payment for invoice: {invoice.get('id')}")
                    await self.api.charge_invoice(invoice['id'])
                    charged += 1
        except Exception as e:
            logger.warning(f"[SUBSCRIPTION] Could not process pending invoices for subscription {subscription_id}: {e}")
        return charged

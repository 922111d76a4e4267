"""
Payment Webhook Handler

Handles payment.failed: the subscription moves to past_due and the failed
payment joins the payment history.
"""

import logging
from typing import Any, Dict

from backend.src.billing.subscriptions.state_machine import SubscriptionEvent

from .base import BaseWebhookHandler

logger = logging.getLogger(__name__)


class PaymentHandler(BaseWebhookHandler):
    """Handler for Razorpay payment webhook events."""

    async def handle_payment_failed(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        subscription_id = payment.get('subscription_id')
        if not subscription_id:
            logger.info(f"[PAYMENT] Failed payment {payment.get('id')} is not tied to a subscription, ignoring")
            return {'success': True, 'message': 'Payment not linked to a subscription'}

        record, result = await self._transition(
            SubscriptionEvent.PAYMENT_FAILED.value,
            subscription_id,
            payment=payment,
        )
        if record is not None:
            logger.info(
                f"[PAYMENT] Payment failed for user {record.id}, "
                f"reason: {payment.get('error_description') or 'Payment failed'}"
            )
        return self._outcome(record, result)

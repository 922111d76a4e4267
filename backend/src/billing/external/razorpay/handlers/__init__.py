"""
Razorpay Webhook Handlers

Contains handlers for different Razorpay webhook event types:
- SubscriptionHandler: Subscription lifecycle events
- PaymentHandler: Payment failure events
"""

from .base import BaseWebhookHandler
from .payment import PaymentHandler
from .subscription import SubscriptionHandler

__all__ = [
    'BaseWebhookHandler',
    'SubscriptionHandler',
    'PaymentHandler',
]

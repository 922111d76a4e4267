"""
Razorpay Integration Module

Provides the Razorpay integration for subscriptions:
- Async REST client and a safe wrapper (retry + circuit breaker)
- Webhook signature verification, deduplication and reconciliation
- Dead letter for webhook events whose handler failed
"""

from .circuit_breaker import CircuitState, RazorpayCircuitBreaker
from .client import RazorpayAPIWrapper, RazorpayClient, razorpay_api
from .dead_letter import FailedWebhookQueue, failed_webhook_queue
from .handlers import PaymentHandler, SubscriptionHandler
from .idempotency import extract_subscription_id, generate_webhook_key
from .reconciler import WebhookReconciler
from .retry import call_with_retry
from .webhook_lock import WebhookLock
from .webhooks import WebhookService, webhook_service

__all__ = [
    # Circuit Breaker
    'CircuitState',
    'RazorpayCircuitBreaker',
    # API Client
    'RazorpayClient',
    'RazorpayAPIWrapper',
    'razorpay_api',
    'call_with_retry',
    # Webhooks
    'extract_subscription_id',
    'generate_webhook_key',
    'WebhookLock',
    'WebhookReconciler',
    'WebhookService',
    'webhook_service',
    'FailedWebhookQueue',
    'failed_webhook_queue',
    # Handlers
    'SubscriptionHandler',
    'PaymentHandler',
]

"""
Subscriptions Module

Subscription lifecycle management:
- state_machine: Pure transitions shared by webhooks, sync and user actions
- trial_service: Free trial
- service: Unified subscription service

Usage:
    from backend.src.billing.subscriptions import subscription_service

    result = await subscription_service.create_subscription(user_id, 'monthly')
"""

from .service import SubscriptionService, subscription_service
from .state_machine import SubscriptionEvent, TransitionResult, apply_event, apply_provider_status
from .trial_service import TrialService, start_trial, trial_service

__all__ = [
    'SubscriptionService',
    'subscription_service',
    'TrialService',
    'trial_service',
    'start_trial',
    'SubscriptionEvent',
    'TransitionResult',
    'apply_event',
    'apply_provider_status',
]

"""
Billing Module

Subscription lifecycle for AutoScroll: free trial, Razorpay subscriptions,
webhook reconciliation and feature access.

Submodules:
- shared: Configuration, exceptions, clock
- domain: The user record and its substructures
- storage: SQLAlchemy models and the user store
- access: Access evaluator (pure)
- external: Razorpay client, reliability layer and webhooks
- subscriptions: State machine, trial and subscription service
- endpoints: API routes

Usage:
    from backend.src.billing.subscriptions import subscription_service

    status = await subscription_service.get_status(user_id)
"""

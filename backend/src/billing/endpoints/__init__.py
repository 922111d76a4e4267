"""
Billing Endpoints Module

API routes for auth and subscription operations.

Routers:
- auth: Login, session verification and logout
- subscriptions: Subscription lifecycle, feature access and usage
- webhooks: Razorpay webhook processing and dead-letter operations

Usage:
    from backend.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix="/api/v1")
"""

from fastapi import APIRouter

from .auth import router as auth_router
from .subscriptions import router as subscriptions_router
from .webhooks import router as webhooks_router
from .dependencies import get_current_user_id, verify_operator

# Create main billing router
billing_router = APIRouter()

# Include all sub-routers
billing_router.include_router(auth_router)
billing_router.include_router(subscriptions_router)
billing_router.include_router(webhooks_router)

__all__ = [
    'billing_router',
    'auth_router',
    'subscriptions_router',
    'webhooks_router',
    'get_current_user_id',
    'verify_operator',
]

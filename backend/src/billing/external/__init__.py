"""
External Integrations Module

Integration with the payment provider (Razorpay).

Usage:
    from backend.src.billing.external.razorpay import (
        razorpay_api,
        webhook_service,
    )
"""

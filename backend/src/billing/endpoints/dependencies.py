"""
Endpoint Dependencies

Shared dependencies for billing API endpoints. Each service is handed out
through a dependency so tests can override it.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header

from backend.core.conf import settings
from backend.core.security.session import get_current_session, get_current_user_id
from backend.src.billing.shared.exceptions import AccessDeniedError

logger = logging.getLogger(__name__)


def get_subscription_service():
    from backend.src.billing.subscriptions import subscription_service
    return subscription_service


def get_webhook_service():
    from backend.src.billing.external.razorpay import webhook_service
    return webhook_service


def get_monitor():
    from backend.src.cron.subscription_monitor import get_monitor as _get_monitor
    return _get_monitor()


async def verify_operator(
    operator_key: Optional[str] = Header(None, alias="X-Operator-Key")
) -> bool:
    """
    Dependency guarding operator routes.

    Operator routes are closed unless OPERATOR_API_KEY is configured.
    """
    expected = settings.OPERATOR_API_KEY
    if not expected or not operator_key or not hmac.compare_digest(operator_key, expected):
        logger.warning("[AUTH] Rejected operator request")
        raise AccessDeniedError(message="Operator access required", reason="operator_only")
    return True


__all__ = [
    'get_current_session',
    'get_current_user_id',
    'get_subscription_service',
    'get_webhook_service',
    'get_monitor',
    'verify_operator',
]

"""
Razorpay Webhook Idempotency Keys

Builds the deterministic dedupe key a webhook delivery is recorded under in
`webhook_events`, so redeliveries of the same event are recognised.

Key = (subscription id, event type, provider event id). Razorpay sends the
event id in the X-Razorpay-Event-Id header; deliveries without it are keyed
on a SHA-256 of the raw body instead.
"""

import hashlib
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# webhook_events.id is a VARCHAR(255)
MAX_KEY_LENGTH = 255


def extract_subscription_id(event: Dict[str, Any]) -> Optional[str]:
    """
    Subscription id an event refers to.

    Subscription events carry it on `payload.subscription.entity.id`;
    payment events on `payload.payment.entity.subscription_id`.
    """
    payload = event.get('payload') or {}

    subscription = (payload.get('subscription') or {}).get('entity') or {}
    if subscription.get('id'):
        return subscription['id']

    payment = (payload.get('payment') or {}).get('entity') or {}
    return payment.get('subscription_id')


def body_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def generate_webhook_key(
    event: Dict[str, Any],
    raw_body: bytes,
    provider_event_id: Optional[str] = None
) -> str:
    """
    Generate the dedupe key for a verified webhook.

    Args:
        event: Parsed webhook envelope
        raw_body: Exact bytes the signature was computed over
        provider_event_id: X-Razorpay-Event-Id header, if sent

    Returns:
        Key of the form "<subscription>:<event type>:<event id or body digest>"
    """
    subscription_id = extract_subscription_id(event) or '-'
    event_type = event.get('event') or 'unknown'
    discriminator = provider_event_id or f"sha256={body_digest(raw_body)}"

    key = f"{subscription_id}:{event_type}:{discriminator}"
    if len(key) > MAX_KEY_LENGTH:
        key = hashlib.sha256(key.encode()).hexdigest()
        logger.debug(f"[WEBHOOK] Dedupe key too long, hashed to {key}")
    return key

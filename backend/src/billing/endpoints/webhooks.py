"""
Webhook Endpoints

Razorpay webhook endpoint and operator routes for the dead letter.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from backend.src.billing.shared.exceptions import NotFoundError
from .dependencies import get_monitor, get_webhook_service, verify_operator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["billing-webhooks"])


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    event_id: Optional[str] = Header(None, alias="X-Razorpay-Event-Id"),
    service=Depends(get_webhook_service),
) -> Dict:
    """
    Process Razorpay webhook events.

    Handles:
    - subscription.created
    - subscription.authenticated
    - subscription.activated
    - subscription.charged
    - subscription.cancelled
    - subscription.completed
    - payment.failed

    Other event types are acknowledged and ignored. The signature is
    checked against the raw body, so the body must not be re-serialized.
    """
    raw_body = await request.body()
    return await service.process_razorpay_webhook(raw_body, signature, event_id)


# ============================================================================
# Operator routes
# ============================================================================

@router.get("/dead-letters", dependencies=[Depends(verify_operator)])
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    service=Depends(get_webhook_service),
) -> Dict:
    items = await service.dead_letter.list_pending(limit=limit)
    return {'items': items, 'pending': await service.dead_letter.count_pending()}


@router.get("/dead-letters/{entry_id}", dependencies=[Depends(verify_operator)])
async def get_dead_letter(entry_id: int, service=Depends(get_webhook_service)) -> Dict:
    entry = await service.dead_letter.get(entry_id)
    if entry is None:
        raise NotFoundError(message="Dead-letter entry not found", code="DEAD_LETTER_NOT_FOUND")
    return entry


@router.post("/dead-letters/{entry_id}/replay", dependencies=[Depends(verify_operator)])
async def replay_dead_letter(entry_id: int, service=Depends(get_webhook_service)) -> Dict:
    replayed = await service.replay_dead_letter(entry_id)
    logger.info(f"[DEAD LETTER] Operator replay of entry {entry_id}: {'ok' if replayed else 'failed'}")
    return {'id': entry_id, 'replayed': replayed}


@router.post("/dead-letters/replay", dependencies=[Depends(verify_operator)])
async def replay_dead_letters(
    limit: int = Query(20, ge=1, le=200),
    service=Depends(get_webhook_service),
) -> Dict:
    return await service.replay_dead_letters(limit=limit)


@router.get("/stats", dependencies=[Depends(verify_operator)])
async def get_subscription_stats(monitor=Depends(get_monitor)) -> Dict:
    """Subscription counts, dead-letter backlog and circuit state."""
    return await monitor.get_subscription_stats()

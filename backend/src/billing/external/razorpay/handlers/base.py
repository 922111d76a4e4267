"""
Shared plumbing for Razorpay webhook handlers: resolve the user owning a
subscription, apply a transition inside the per-user transaction and stamp
the `lastWebhook` audit.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from backend.src.billing.domain.user import UserRecord, WebhookAudit
from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.exceptions import NotFoundError
from backend.src.billing.storage.user_store import UserStore, user_store
from backend.src.billing.subscriptions.state_machine import TransitionResult, apply_event

logger = logging.getLogger(__name__)


class BaseWebhookHandler:
    """Dependencies common to every handler."""

    def __init__(
        self,
        store: Optional[UserStore] = None,
        api=None,
        clock: Optional[Clock] = None
    ):
        self.store = store or user_store
        self.clock = clock or system_clock
        if api is None:
            from backend.src.billing.external.razorpay.client import razorpay_api
            api = razorpay_api
        self.api = api

    async def _transition(
        self,
        event_type: str,
        subscription_id: str,
        subscription: Optional[Dict[str, Any]] = None,
        payment: Optional[Dict[str, Any]] = None
    ) -> Tuple[Optional[UserRecord], Optional[TransitionResult]]:
        """
        Apply `event_type` to the user owning `subscription_id`.

        Returns:
            (record, result), or (None, None) when no user owns the subscription
        """
        now = self.clock.now()

        async def mutator(record: UserRecord) -> TransitionResult:
            result = apply_event(record, event_type, now, subscription=subscription, payment=payment)
            record.subscription.last_webhook = WebhookAudit(
                type=event_type,
                received_at=now,
                previous_status=result.previous_status,
                preserved_status=result.preserved_status,
                notes=result.notes,
            )
            return result

        try:
            record, result = await self.store.mutate(mutator, subscription_id=subscription_id)
        except NotFoundError:
            logger.warning(f"[WEBHOOK] User not found for subscription: {subscription_id}")
            return None, None

        if result.preserved_status:
            logger.info(
                f"[WEBHOOK] Preserving active status for user {record.id} "
                f"({event_type} received after activation)"
            )
        logger.info(
            f"[WEBHOOK] {event_type} for {subscription_id}: "
            f"{result.previous_status.value} -> {result.status.value} ({result.notes})"
        )
        return record, result

    @staticmethod
    def _outcome(record: Optional[UserRecord], result: Optional[TransitionResult]) -> Dict[str, Any]:
        if record is None:
            return {'success': False, 'message': 'User not found'}
        return {
            'success': True,
            'message': result.notes,
            'userId': record.id,
            'previousStatus': result.previous_status.value,
            'status': result.status.value,
            'preservedStatus': result.preserved_status,
        }

"""
Razorpay Webhook Service

Central entry point for Razorpay webhooks.
Handles signature verification, deduplication, reconciliation and the dead
letter for events whose handler failed.
"""

import json
import logging
from typing import Any, Dict, Optional

from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.exceptions import (
    InvalidInputError,
    WebhookProcessingError,
    WebhookVerificationError,
)

from .dead_letter import FailedWebhookQueue, failed_webhook_queue
from .idempotency import extract_subscription_id, generate_webhook_key
from .reconciler import WebhookReconciler
from .webhook_lock import WebhookLock

logger = logging.getLogger(__name__)


class WebhookService:
    """
    Central service for processing Razorpay webhooks.

    Responsibilities:
    - Verify webhook signatures against the raw body
    - Deduplicate deliveries through the webhook_events log
    - Hand verified events to the reconciler
    - Dead-letter events whose handler raised, so Razorpay redelivers and
      an operator can replay

    Usage:
        webhook_service = WebhookService()
        result = await webhook_service.process_razorpay_webhook(body, signature, event_id)
    """

    def __init__(
        self,
        api=None,
        reconciler: Optional[WebhookReconciler] = None,
        lock: Optional[WebhookLock] = None,
        dead_letter: Optional[FailedWebhookQueue] = None,
        clock: Optional[Clock] = None
    ):
        if api is None:
            from .client import razorpay_api
            api = razorpay_api
        self.api = api
        self.clock = clock or system_clock
        self.reconciler = reconciler or WebhookReconciler(api=api, clock=self.clock)
        if lock is None:
            from backend.core.conf import settings
            lock = WebhookLock(stale_after_seconds=settings.WEBHOOK_PROCESSING_STALE_SECONDS, clock=self.clock)
        self.lock = lock
        self.dead_letter = dead_letter or failed_webhook_queue

    async def process_razorpay_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        provider_event_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Process an incoming Razorpay webhook.

        Args:
            raw_body: Exact request body
            signature: X-Razorpay-Signature header
            provider_event_id: X-Razorpay-Event-Id header, if sent

        Returns:
            Dict with acknowledged=True and the processing outcome

        Raises:
            WebhookVerificationError: Missing or invalid signature (400)
            InvalidInputError: Body is not a JSON event envelope (400)
            WebhookProcessingError: Handler failed; the event was dead-lettered (500)
        """
        if not signature:
            logger.warning("[WEBHOOK] Missing X-Razorpay-Signature header")
            raise WebhookVerificationError(message="Missing X-Razorpay-Signature header")

        if not self.api.verify_webhook_signature(raw_body, signature):
            logger.warning("[WEBHOOK] Invalid signature")
            raise WebhookVerificationError()

        try:
            event = json.loads(raw_body)
        except ValueError as e:
            logger.warning(f"[WEBHOOK] Invalid payload: {e}")
            raise InvalidInputError(message="Invalid webhook payload", code="INVALID_WEBHOOK_PAYLOAD")
        if not isinstance(event, dict) or not event.get('event'):
            raise InvalidInputError(message="Webhook payload has no event type", code="INVALID_WEBHOOK_PAYLOAD")

        event_type = event['event']
        subscription_id = extract_subscription_id(event)
        dedupe_key = generate_webhook_key(event, raw_body, provider_event_id)
        received_at = self.clock.now()

        can_process, reason = await self.lock.check_and_mark_webhook_processing(
            dedupe_key,
            event_type,
            subscription_id=subscription_id,
            provider_event_id=provider_event_id,
        )
        if not can_process:
            logger.info(f"[WEBHOOK] Skipping event {dedupe_key}: {reason}")
            return {'acknowledged': True, 'duplicate': True, 'message': reason}

        logger.info(f"[WEBHOOK] Processing event type: {event_type} (key: {dedupe_key})")

        try:
            result = await self.reconciler.reconcile(event)
        except Exception as e:
            logger.error(f"[WEBHOOK] Error processing {event_type} for {subscription_id}: {e}", exc_info=True)
            error_message = f"{type(e).__name__}: {str(e)[:500]}"
            await self.lock.mark_webhook_failed(dedupe_key, error_message)

            dead_letter_id = None
            try:
                dead_letter_id = await self.dead_letter.enqueue(
                    event,
                    error_message,
                    dedupe_key=dedupe_key,
                    received_at=received_at,
                    subscription_id=subscription_id,
                    provider_event_id=provider_event_id,
                )
            except Exception as dl_error:
                logger.critical(f"[WEBHOOK] Could not dead-letter {dedupe_key}: {dl_error}")

            raise WebhookProcessingError(
                message=f"Webhook processing failed: {e}",
                event_id=provider_event_id or dedupe_key,
                event_type=event_type,
                dead_letter_id=dead_letter_id,
            ) from e

        await self.lock.mark_webhook_completed(dedupe_key)
        logger.info(f"[WEBHOOK] {event_type} processed for {subscription_id}: {result.get('message')}")
        return {'acknowledged': True, **result}

    async def replay_event(
        self,
        event: Dict[str, Any],
        dedupe_key: str,
        provider_event_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Reprocess a dead-lettered event (signature was checked on receipt).

        Raises:
            Whatever the reconciler raises; the dead letter records it
        """
        can_process, reason = await self.lock.check_and_mark_webhook_processing(
            dedupe_key,
            event.get('event') or 'unknown',
            subscription_id=extract_subscription_id(event),
            provider_event_id=provider_event_id,
        )
        if not can_process:
            logger.info(f"[WEBHOOK] Replay of {dedupe_key} skipped: {reason}")
            return {'success': True, 'message': reason}

        try:
            result = await self.reconciler.reconcile(event)
        except Exception as e:
            await self.lock.mark_webhook_failed(dedupe_key, f"{type(e).__name__}: {str(e)[:500]}")
            raise

        await self.lock.mark_webhook_completed(dedupe_key)
        return result

    async def replay_dead_letters(self, limit: int = 20) -> Dict[str, int]:
        """Replay pending dead-letter entries through `replay_event`."""
        return await self.dead_letter.replay_pending(self.replay_event, limit=limit)

    async def replay_dead_letter(self, entry_id: int) -> bool:
        return await self.dead_letter.replay(entry_id, self.replay_event)


# Global instance
webhook_service = WebhookService()

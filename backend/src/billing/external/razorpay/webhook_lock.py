"""
Webhook Lock and Deduplication

Tracks webhook deliveries in `webhook_events` so that a redelivered or
concurrently delivered event is handled once across all instances.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.storage.models import WebhookEvent

logger = logging.getLogger(__name__)


class WebhookLock:
    """
    Database-backed webhook dedupe log.

    Statuses:
    - processing: a handler is running (or crashed) for this key
    - completed: handled; further deliveries are skipped
    - failed: handler raised; the next delivery may retry
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        stale_after_seconds: int = 300,
        clock: Optional[Clock] = None
    ):
        self._session_factory = session_factory
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock or system_clock

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from backend.database.db import async_db_session
            self._session_factory = async_db_session
        return self._session_factory

    async def check_and_mark_webhook_processing(
        self,
        event_key: str,
        event_type: str,
        subscription_id: Optional[str] = None,
        provider_event_id: Optional[str] = None
    ) -> Tuple[bool, str]:
        """
        Check if a webhook can be processed and mark it as in-progress.

        Args:
            event_key: Dedupe key of the delivery
            event_type: Type of webhook event
            subscription_id: Subscription the event refers to
            provider_event_id: Razorpay event id, if sent

        Returns:
            Tuple of (can_process: bool, reason: str)
        """
        now = self._clock.now()

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    existing = (
                        await session.execute(
                            select(WebhookEvent).where(WebhookEvent.id == event_key).with_for_update()
                        )
                    ).scalar_one_or_none()

                    if existing is not None:
                        if existing.status == 'completed':
                            return False, "Event already processed"
                        if existing.status == 'processing':
                            age = (now - existing.created_at).total_seconds()
                            if age < self.stale_after_seconds:
                                return False, "Event currently being processed"
                            logger.warning(f"[WEBHOOK LOCK] Event {event_key} stuck in processing, allowing retry")
                        else:
                            logger.info(f"[WEBHOOK LOCK] Retrying failed event {event_key}")

                        existing.status = 'processing'
                        existing.created_at = now
                        existing.error_message = None
                        existing.completed_at = None
                        return True, "Processing"

                    session.add(WebhookEvent(
                        id=event_key,
                        event_type=event_type,
                        subscription_id=subscription_id,
                        provider_event_id=provider_event_id,
                        status='processing',
                        created_at=now,
                    ))
        except IntegrityError:
            # Another instance inserted the same key first
            return False, "Event currently being processed"

        return True, "Processing"

    async def mark_webhook_completed(self, event_key: str) -> None:
        await self._finish(event_key, 'completed')
        logger.debug(f"[WEBHOOK LOCK] Marked event {event_key} as completed")

    async def mark_webhook_failed(self, event_key: str, error_message: str) -> None:
        await self._finish(event_key, 'failed', error_message[:1000])
        logger.warning(f"[WEBHOOK LOCK] Marked event {event_key} as failed: {error_message[:100]}")

    async def _finish(self, event_key: str, status: str, error_message: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                event = await session.get(WebhookEvent, event_key)
                if event is None:
                    return
                event.status = status
                event.error_message = error_message
                event.completed_at = self._clock.now()

    async def get_event_status(self, event_key: str) -> Optional[Dict]:
        """
        Get the processing status of a webhook event.

        Returns:
            Dict with status info or None if not found
        """
        async with self.session_factory() as session:
            event = await session.get(WebhookEvent, event_key)
            if event is None:
                return None
            return {
                'id': event.id,
                'event_type': event.event_type,
                'status': event.status,
                'error_message': event.error_message,
                'created_at': event.created_at.isoformat() if event.created_at else None,
                'completed_at': event.completed_at.isoformat() if event.completed_at else None,
            }

    async def cleanup_old_events(self, days: int = 30) -> int:
        """
        Delete dedupe entries older than `days`.

        Returns:
            Number of events deleted
        """
        cutoff = self._clock.now() - timedelta(days=days)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(WebhookEvent).where(WebhookEvent.created_at < cutoff))
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.info(f"[WEBHOOK LOCK] Cleaned up {deleted} old webhook events")
        return deleted

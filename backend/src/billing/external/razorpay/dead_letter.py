"""
Failed Webhook Queue (dead letter)

Verified webhook events whose handler raised are persisted to
`failed_webhooks` with the full envelope, so they can be inspected and
replayed by an operator (or by the monitor when auto replay is enabled).
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.conf import settings
from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.exceptions import NotFoundError
from backend.src.billing.storage.models import FailedWebhook

logger = logging.getLogger(__name__)

# handler(event, dedupe_key, provider_event_id)
ReplayHandler = Callable[[Dict[str, Any], str, Optional[str]], Awaitable[Any]]


def _to_dict(entry: FailedWebhook) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'dedupeKey': entry.dedupe_key,
        'eventType': entry.event_type,
        'subscriptionId': entry.subscription_id,
        'providerEventId': entry.provider_event_id,
        'error': entry.error,
        'receivedAt': entry.received_at.isoformat() if entry.received_at else None,
        'retryCount': entry.retry_count,
        'status': entry.status,
        'lastRetryAt': entry.last_retry_at.isoformat() if entry.last_retry_at else None,
        'resolvedAt': entry.resolved_at.isoformat() if entry.resolved_at else None,
    }


class FailedWebhookQueue:
    """
    Durable dead letter for webhook events.

    `failure_count` counts enqueued failures since process start and is
    exposed on the monitor stats.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_retries: int = 5,
        clock: Optional[Clock] = None
    ):
        self._session_factory = session_factory
        self.max_retries = max_retries
        self._clock = clock or system_clock
        self.failure_count = 0

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from backend.database.db import async_db_session
            self._session_factory = async_db_session
        return self._session_factory

    async def enqueue(
        self,
        event: Dict[str, Any],
        error: str,
        dedupe_key: str,
        received_at: datetime,
        subscription_id: Optional[str] = None,
        provider_event_id: Optional[str] = None
    ) -> int:
        """
        Persist a failed event.

        Returns:
            Id of the dead-letter entry
        """
        entry = FailedWebhook(
            dedupe_key=dedupe_key,
            event_type=event.get('event') or 'unknown',
            event=event,
            error=error[:4000],
            received_at=received_at,
            subscription_id=subscription_id,
            provider_event_id=provider_event_id,
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(entry)
                await session.flush()
                entry_id = entry.id

        self.failure_count += 1
        logger.error(
            f"[DEAD LETTER] Stored failed {entry.event_type} for subscription {subscription_id} "
            f"as #{entry_id} (failures so far: {self.failure_count}): {error[:200]}"
        )
        return entry_id

    async def get(self, entry_id: int) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            entry = await session.get(FailedWebhook, entry_id)
            return _to_dict(entry) if entry else None

    async def list_pending(self, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(FailedWebhook)
                    .where(FailedWebhook.status == 'pending')
                    .order_by(FailedWebhook.received_at)
                    .limit(limit)
                )
            ).scalars().all()
            return [_to_dict(r) for r in rows]

    async def count_pending(self) -> int:
        async with self.session_factory() as session:
            return (
                await session.execute(
                    select(func.count()).select_from(FailedWebhook).where(FailedWebhook.status == 'pending')
                )
            ).scalar_one()

    async def replay(self, entry_id: int, handler: ReplayHandler) -> bool:
        """
        Run a stored event through `handler` again.

        On success the entry is marked replayed; on failure the retry count
        grows and the entry is abandoned once `max_retries` is reached.

        Returns:
            True if the handler succeeded

        Raises:
            NotFoundError: If the entry does not exist
        """
        async with self.session_factory() as session:
            entry = await session.get(FailedWebhook, entry_id)
            if entry is None:
                raise NotFoundError(
                    message=f"Dead-letter entry {entry_id} not found",
                    code="DEAD_LETTER_NOT_FOUND",
                )
            if entry.status != 'pending':
                logger.info(f"[DEAD LETTER] Entry #{entry_id} is {entry.status}, skipping replay")
                return entry.status == 'replayed'
            event, dedupe_key, provider_event_id = entry.event, entry.dedupe_key, entry.provider_event_id

        error: Optional[str] = None
        try:
            await handler(event, dedupe_key, provider_event_id)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"[DEAD LETTER] Replay of #{entry_id} failed: {error}")

        now = self._clock.now()
        async with self.session_factory() as session:
            async with session.begin():
                entry = await session.get(FailedWebhook, entry_id)
                entry.last_retry_at = now
                if error is None:
                    entry.status = 'replayed'
                    entry.resolved_at = now
                else:
                    entry.retry_count += 1
                    entry.error = error[:4000]
                    if entry.retry_count >= self.max_retries:
                        entry.status = 'abandoned'
                        entry.resolved_at = now
                        logger.error(f"[DEAD LETTER] Abandoning #{entry_id} after {entry.retry_count} retries")

        if error is None:
            logger.info(f"[DEAD LETTER] Replayed #{entry_id} successfully")
        return error is None

    async def replay_pending(self, handler: ReplayHandler, limit: int = 20) -> Dict[str, int]:
        """Replay the oldest pending entries, one at a time."""
        pending = await self.list_pending(limit=limit)
        stats = {'attempted': 0, 'replayed': 0, 'failed': 0}
        for entry in pending:
            stats['attempted'] += 1
            if await self.replay(entry['id'], handler):
                stats['replayed'] += 1
            else:
                stats['failed'] += 1
        if stats['attempted']:
            logger.info(f"[DEAD LETTER] Replay batch: {stats}")
        return stats


# Global queue instance
failed_webhook_queue = FailedWebhookQueue(max_retries=settings.DEAD_LETTER_MAX_RETRIES)

"""
Scheduled subscription maintenance.

Jobs:
- daily (09:00 UTC): expire stale trials, scan subscriptions ending soon,
  sync created/authenticated/active/past_due subscriptions with Razorpay
- hourly: sync active subscriptions
- weekly (Sunday 02:00 UTC): cleanup policy, usage bucket pruning, expired
  session pruning, webhook log pruning
- every 15 minutes (optional): replay pending dead-letter webhooks

Every job is idempotent; a run that overlaps another replica's run only
repeats work that converges to the same state.
"""

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_, or_

from backend.core.conf import settings
from backend.src.billing.domain.user import SubscriptionStatus, UserRecord
from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.exceptions import BillingError, UpstreamUnavailableError
from backend.src.billing.storage.models import BillingUser
from backend.src.billing.storage.user_store import UserStore, user_store
from backend.src.billing.subscriptions.state_machine import expire

logger = logging.getLogger(__name__)

DAILY_SYNC_STATUSES = (
    SubscriptionStatus.CREATED,
    SubscriptionStatus.AUTHENTICATED,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
)

CLEANUP_STATUSES = (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)


class SubscriptionMonitor:
    """
    Maintenance jobs over the user store.

    Usage:
        monitor = SubscriptionMonitor()
        await monitor.run_daily_checks()
    """

    def __init__(
        self,
        store: Optional[UserStore] = None,
        subscriptions=None,
        trials=None,
        sessions=None,
        webhooks=None,
        webhook_lock=None,
        clock: Optional[Clock] = None,
        batch_size: Optional[int] = None,
    ):
        if subscriptions is None:
            from backend.src.billing.subscriptions import subscription_service
            subscriptions = subscription_service
        if trials is None:
            from backend.src.billing.subscriptions import trial_service
            trials = trial_service
        if sessions is None:
            from backend.core.security.session import session_service
            sessions = session_service
        if webhooks is None:
            from backend.src.billing.external.razorpay import webhook_service
            webhooks = webhook_service
        if webhook_lock is None:
            webhook_lock = webhooks.lock

        self.store = store or user_store
        self.subscriptions = subscriptions
        self.trials = trials
        self.sessions = sessions
        self.webhooks = webhooks
        self.webhook_lock = webhook_lock
        self.clock = clock or system_clock
        self.batch_size = batch_size or settings.SUBSCRIPTION_SYNC_BATCH_SIZE

    # -------------------------------------------------------------------------
    # Provider sync
    # -------------------------------------------------------------------------

    async def _expire_missing(self, user_id: str, sub_id: str) -> None:
        async def mutator(record: UserRecord) -> bool:
            if record.subscription.external_id != sub_id:
                return False
            if record.subscription.status in CLEANUP_STATUSES:
                return False
            expire(record)
            return True

        _, changed = await self.store.mutate(mutator, user_id=user_id)
        if changed:
            logger.warning(f"[MONITOR] Subscription {sub_id} not found on Razorpay, marked user {user_id} expired")

    async def sync_subscriptions(self, statuses: Iterable[SubscriptionStatus]) -> Dict[str, int]:
        """
        Reconcile one batch of users in `statuses` with Razorpay.

        A subscription Razorpay no longer knows is marked expired. Other
        provider failures are counted and left for the next run.
        """
        values = [s.value for s in statuses]
        records = await self.store.list_records(
            BillingUser.status.in_(values),
            BillingUser.subscription_id.is_not(None),
            limit=self.batch_size,
            order_by=BillingUser.updated_time.asc(),
        )

        stats = {'checked': 0, 'changed': 0, 'expired': 0, 'errors': 0}
        for record in records:
            sub_id = record.subscription.external_id
            stats['checked'] += 1
            try:
                _, result, _ = await self.subscriptions.sync_from_provider(record.id, sub_id)
                if result is not None and result.changed:
                    stats['changed'] += 1
            except UpstreamUnavailableError as e:
                if e.upstream_status == 404:
                    await self._expire_missing(record.id, sub_id)
                    stats['expired'] += 1
                else:
                    stats['errors'] += 1
                    logger.warning(f"[MONITOR] Sync of {sub_id} failed: {e.message}")
                    if not self.subscriptions.api.is_available:
                        logger.warning("[MONITOR] Razorpay circuit open, stopping sync batch")
                        break
            except BillingError as e:
                stats['errors'] += 1
                logger.warning(f"[MONITOR] Sync of {sub_id} for user {record.id} failed: {e.message}")

        logger.info(
            f"[MONITOR] Synced {stats['checked']} subscriptions ({', '.join(values)}): "
            f"{stats['changed']} changed, {stats['expired']} expired, {stats['errors']} errors"
        )
        return stats

    async def find_expiring_soon(self, days: Optional[int] = None) -> List[Dict]:
        """Active subscriptions whose period ends within `days`."""
        days = days if days is not None else settings.SUBSCRIPTION_EXPIRY_WARNING_DAYS
        now = self.clock.now()
        records = await self.store.list_records(
            BillingUser.status == SubscriptionStatus.ACTIVE.value,
            BillingUser.current_period_end > now,
            BillingUser.current_period_end <= now + timedelta(days=days),
            limit=self.batch_size,
            order_by=BillingUser.current_period_end.asc(),
        )
        expiring = [
            {
                'userId': r.id,
                'subscriptionId': r.subscription.external_id,
                'currentPeriodEnd': r.subscription.current_period_end.isoformat(),
                'cancelAtCycleEnd': r.subscription.cancel_at_cycle_end,
            }
            for r in records
        ]
        if expiring:
            logger.info(f"[MONITOR] {len(expiring)} subscriptions end within {days} days")
        return expiring

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def apply_cleanup_policy(self) -> int:
        """
        Detach provider ids from subscriptions that ended long ago.

        The status stays as it is; only the subscription and plan ids are
        cleared so the Razorpay id can no longer route webhooks to the user.
        """
        if not settings.SUBSCRIPTION_CLEANUP_ENABLED:
            return 0

        cutoff = self.clock.now() - timedelta(days=settings.SUBSCRIPTION_CLEANUP_AFTER_DAYS)
        cleaned = await self.store.bulk_update(
            {'subscription_id': None, 'plan_id': None, 'payment_link': None},
            BillingUser.status.in_([s.value for s in CLEANUP_STATUSES]),
            BillingUser.subscription_id.is_not(None),
            or_(
                BillingUser.cancelled_at < cutoff,
                and_(BillingUser.cancelled_at.is_(None), BillingUser.current_period_end < cutoff),
            ),
        )
        if cleaned:
            logger.info(f"[MONITOR] Cleared subscription ids on {cleaned} ended subscriptions")
        return cleaned

    async def prune_usage(self) -> int:
        before = (self.clock.now() - timedelta(days=settings.USAGE_RETENTION_DAYS)).date()
        pruned = await self.store.prune_usage_buckets(before)
        if pruned:
            logger.info(f"[MONITOR] Pruned {pruned} usage buckets before {before.isoformat()}")
        return pruned

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def run_daily_checks(self) -> Dict:
        trials = await self.trials.expire_stale_trials()
        expiring = await self.find_expiring_soon()
        sync = await self.sync_subscriptions(DAILY_SYNC_STATUSES)
        return {'trials': trials, 'expiringSoon': len(expiring), 'sync': sync}

    async def run_hourly_sync(self) -> Dict[str, int]:
        return await self.sync_subscriptions((SubscriptionStatus.ACTIVE,))

    async def run_weekly_cleanup(self) -> Dict[str, int]:
        return {
            'subscriptionsCleaned': await self.apply_cleanup_policy(),
            'usageBucketsPruned': await self.prune_usage(),
            'sessionsPruned': await self.sessions.prune_expired_sessions(),
            'webhookEventsPruned': await self.webhook_lock.cleanup_old_events(
                days=settings.WEBHOOK_EVENT_RETENTION_DAYS
            ),
        }

    async def run_dead_letter_replay(self) -> Dict[str, int]:
        return await self.webhooks.replay_dead_letters()

    async def get_subscription_stats(self) -> Dict:
        """Counts by status plus trial, webhook and circuit health."""
        now = self.clock.now()
        by_status = await self.store.count_by_status()
        return {
            'total': sum(by_status.values()),
            'byStatus': by_status,
            'activeTrials': await self.store.count(
                BillingUser.trial_active.is_(True), BillingUser.trial_end_at > now
            ),
            'pendingDeadLetters': await self.webhooks.dead_letter.count_pending(),
            'webhookFailures': self.webhooks.dead_letter.failure_count,
            'circuit': self.subscriptions.api.get_circuit_status(),
            'generatedAt': now.isoformat(),
        }


# Initialize the scheduler
scheduler = AsyncIOScheduler(timezone='UTC')

_monitor: Optional[SubscriptionMonitor] = None


def get_monitor() -> SubscriptionMonitor:
    global _monitor
    if _monitor is None:
        _monitor = SubscriptionMonitor()
    return _monitor


def _job(name: str, method: str):
    async def run():
        try:
            result = await getattr(get_monitor(), method)()
            logger.info(f"[MONITOR] {name} finished: {result}")
        except Exception as e:
            logger.error(f"[MONITOR] {name} failed: {e}", exc_info=True)
            # Don't re-raise - we want the scheduler to continue running

    run.__name__ = method
    return run


def start_scheduler() -> None:
    """Register the maintenance jobs and start the scheduler."""
    jobs = [
        ('daily_subscription_checks', 'Daily trial expiry and subscription sync',
         CronTrigger(hour=9, minute=0, timezone='UTC'), 'run_daily_checks'),
        ('hourly_active_sync', 'Hourly active subscription sync',
         IntervalTrigger(hours=1), 'run_hourly_sync'),
        ('weekly_cleanup', 'Weekly cleanup and pruning',
         CronTrigger(day_of_week='sun', hour=2, minute=0, timezone='UTC'), 'run_weekly_cleanup'),
    ]
    if settings.DEAD_LETTER_AUTO_REPLAY:
        jobs.append(('dead_letter_replay', 'Replay pending dead-letter webhooks',
                     IntervalTrigger(minutes=15), 'run_dead_letter_replay'))

    try:
        for job_id, name, trigger, method in jobs:
            scheduler.add_job(
                _job(name, method),
                trigger=trigger,
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        scheduler.start()
        logger.info(f"[MONITOR] Scheduler started with {len(jobs)} jobs")
    except Exception as e:
        logger.error(f"[MONITOR] Error starting scheduler: {e}", exc_info=True)
        raise


def shutdown_scheduler() -> None:
    try:
        if scheduler.running:
            scheduler.shutdown(wait=True)
            logger.info("[MONITOR] Scheduler shutdown successfully")
    except Exception as e:
        logger.error(f"[MONITOR] Error shutting down scheduler: {e}", exc_info=True)

"""
Trial Service

Manages the free trial lifecycle:
- Trial initialization on first login
- Trial status for the UI
- Expiry of stale trials (scheduled)

Every user gets exactly one trial of TRIAL_DAYS, granting the base
features (autoScroll, analytics). The trial stays active while a
subscription is being set up and ends when the subscription activates.
"""

import logging
import math
from datetime import datetime
from typing import Dict, Optional

from backend.src.billing.access.evaluator import trial_valid
from backend.src.billing.domain.user import SubscriptionStatus, Trial, UserRecord
from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.config import TRIAL_DURATION
from backend.src.billing.shared.exceptions import NotFoundError
from backend.src.billing.storage.models import BillingUser
from backend.src.billing.storage.user_store import UserStore, user_store

logger = logging.getLogger(__name__)


def start_trial(record: UserRecord, now: datetime) -> bool:
    """
    Give `record` its trial if it never had one.

    Returns:
        False if a trial already exists (never restarted)
    """
    if record.trial is not None:
        return False

    record.trial = Trial(active=True, start_at=now, end_at=now + TRIAL_DURATION)
    if record.subscription.status == SubscriptionStatus.NONE:
        record.subscription.status = SubscriptionStatus.TRIAL
    record.features.auto_scroll = True
    record.features.analytics = True
    return True


class TrialService:
    """
    Trial management.

    Usage:
        trial_service = TrialService()
        await trial_service.initialize_trial(user_id)
    """

    def __init__(self, store: Optional[UserStore] = None, clock: Optional[Clock] = None):
        self.store = store or user_store
        self.clock = clock or system_clock

    async def initialize_trial(self, user_id: str) -> Dict:
        """
        Start the trial for a user who never had one.

        Returns:
            Dict with started flag and the trial window
        """
        now = self.clock.now()

        async def mutator(record: UserRecord) -> bool:
            return start_trial(record, now)

        record, started = await self.store.mutate(mutator, user_id=user_id)
        if started:
            logger.info(f"[TRIAL] Trial started for user {user_id}, ends {record.trial.end_at.isoformat()}")
        else:
            logger.debug(f"[TRIAL] User {user_id} already had a trial")

        return {
            'started': started,
            'trial': self.trial_summary(record, now),
        }

    async def expire_stale_trials(self) -> Dict[str, int]:
        """
        Flip `trial.active` off for trials past their end date.

        Users without a subscription also move to `expired`; users whose
        subscription is still being set up keep their status so the
        processing grace still applies.
        """
        now = self.clock.now()
        stale = (BillingUser.trial_active.is_(True), BillingUser.trial_end_at < now)

        expired = await self.store.bulk_update(
            {'trial_active': False, 'status': SubscriptionStatus.EXPIRED.value},
            *stale,
            BillingUser.status.in_([SubscriptionStatus.NONE.value, SubscriptionStatus.TRIAL.value]),
        )
        deactivated = await self.store.bulk_update(
            {'trial_active': False},
            *stale,
            BillingUser.status != SubscriptionStatus.ACTIVE.value,
        )

        if expired or deactivated:
            logger.info(f"[TRIAL] Expired {expired} trials, deactivated {deactivated} more with pending subscriptions")
        return {'expired': expired, 'deactivated': deactivated}

    @staticmethod
    def trial_summary(record: UserRecord, now: datetime) -> Dict:
        trial = record.trial
        if trial is None:
            return {'used': False, 'active': False, 'startAt': None, 'endAt': None, 'daysRemaining': 0}

        valid = trial_valid(record, now)
        remaining = math.ceil((trial.end_at - now).total_seconds() / 86400) if valid else 0
        return {
            'used': True,
            'active': valid,
            'startAt': trial.start_at.isoformat(),
            'endAt': trial.end_at.isoformat(),
            'daysRemaining': max(0, remaining),
        }


# Global instance
trial_service = TrialService()

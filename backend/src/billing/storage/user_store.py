"""
User Store

Durable persistence of user records. Reads return plain `UserRecord` values;
every write goes through `mutate()`, which loads the row with a row lock,
hands the record to a mutator and writes the result back in the same
transaction, guarded by the row's version column.

Usage:
    store = UserStore()

    async def activate(record):
        record.subscription.status = SubscriptionStatus.ACTIVE

    record, _ = await store.mutate(activate, user_id=user_id)
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from backend.src.billing.domain.user import (
    AuthSession,
    Features,
    Identity,
    PaymentRecord,
    PlanType,
    SubscriptionState,
    SubscriptionStatus,
    Trial,
    Usage,
    UsageBucket,
    UserRecord,
    WebhookAudit,
)
from backend.src.billing.shared.exceptions import ConflictError, NotFoundError

from .models import BillingUser, UsageDailyBucket

logger = logging.getLogger(__name__)

T = TypeVar('T')

Mutator = Callable[[UserRecord], Awaitable[T]]


@dataclass
class _Loaded:
    row: BillingUser
    buckets: Dict[date, UsageDailyBucket]


def _to_record(row: BillingUser, buckets: Iterable[UsageDailyBucket] = ()) -> UserRecord:
    trial = None
    if row.trial_start_at is not None and row.trial_end_at is not None:
        trial = Trial(active=row.trial_active, start_at=row.trial_start_at, end_at=row.trial_end_at)

    return UserRecord(
        id=row.id,
        identity=Identity(
            external_id=row.external_id,
            email=row.email,
            name=row.name,
            picture=row.picture,
            verified=row.verified,
        ),
        auth_session=AuthSession(
            token=row.session_token,
            expires_at=row.session_expires_at,
            last_active_at=row.session_last_active_at,
            login_count=row.login_count,
        ),
        trial=trial,
        subscription=SubscriptionState(
            external_id=row.subscription_id,
            plan_id=row.plan_id,
            plan_type=PlanType(row.plan_type) if row.plan_type else None,
            status=SubscriptionStatus(row.status),
            current_period_start=row.current_period_start,
            current_period_end=row.current_period_end,
            payment_link=row.payment_link,
            payment_link_created_at=row.payment_link_created_at,
            cancel_at_cycle_end=row.cancel_at_cycle_end,
            cancelled_at=row.cancelled_at,
            last_charge_attempt=row.last_charge_attempt,
            last_webhook=WebhookAudit.from_dict(row.last_webhook) if row.last_webhook else None,
            payment_history=[PaymentRecord.from_dict(p) for p in (row.payment_history or [])],
        ),
        features=Features(
            auto_scroll=row.feature_auto_scroll,
            analytics=row.feature_analytics,
            custom_settings=row.feature_custom_settings,
            priority_support=row.feature_priority_support,
        ),
        usage=Usage(
            total_uses=row.total_uses,
            last_used_at=row.last_used_at,
            daily_buckets=sorted(
                (UsageBucket(date=b.bucket_date, count=b.count) for b in buckets),
                key=lambda b: b.date,
            ),
        ),
        created_at=row.created_time,
    )


def _apply(record: UserRecord, row: BillingUser) -> None:
    """Copy record fields onto the row; the ORM only flushes changed columns."""
    row.external_id = record.identity.external_id
    row.email = record.identity.email.lower()
    row.name = record.identity.name
    row.picture = record.identity.picture
    row.verified = record.identity.verified

    row.session_token = record.auth_session.token
    row.session_expires_at = record.auth_session.expires_at
    row.session_last_active_at = record.auth_session.last_active_at
    row.login_count = record.auth_session.login_count

    if record.trial is not None:
        row.trial_active = record.trial.active
        row.trial_start_at = record.trial.start_at
        row.trial_end_at = record.trial.end_at

    sub = record.subscription
    row.subscription_id = sub.external_id
    row.plan_id = sub.plan_id
    row.plan_type = sub.plan_type.value if sub.plan_type else None
    row.status = sub.status.value
    row.current_period_start = sub.current_period_start
    row.current_period_end = sub.current_period_end
    row.payment_link = sub.payment_link
    row.payment_link_created_at = sub.payment_link_created_at
    row.cancel_at_cycle_end = sub.cancel_at_cycle_end
    row.cancelled_at = sub.cancelled_at
    row.last_charge_attempt = sub.last_charge_attempt
    row.last_webhook = sub.last_webhook.to_dict() if sub.last_webhook else None
    history = [p.to_dict() for p in sub.payment_history]
    if history != (row.payment_history or []):
        row.payment_history = history

    row.feature_auto_scroll = record.features.auto_scroll
    row.feature_analytics = record.features.analytics
    row.feature_custom_settings = record.features.custom_settings
    row.feature_priority_support = record.features.priority_support

    row.total_uses = record.usage.total_uses
    row.last_used_at = record.usage.last_used_at


class UserStore:
    """
    Persistence for `UserRecord`.

    Writes for one user are linearized: the row is selected FOR UPDATE and
    the version column rejects writes based on a stale read. A rejected write
    is retried from a fresh read up to `max_conflict_retries` times.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_conflict_retries: int = 3,
        bucket_window_days: int = 90,
    ):
        self._session_factory = session_factory
        self.max_conflict_retries = max_conflict_retries
        self.bucket_window_days = bucket_window_days

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from backend.database.db import async_db_session
            self._session_factory = async_db_session
        return self._session_factory

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, user_id: str) -> Optional[UserRecord]:
        return await self._get_one(BillingUser.id == user_id)

    async def get_by_subscription_id(self, subscription_id: str) -> Optional[UserRecord]:
        return await self._get_one(BillingUser.subscription_id == subscription_id)

    async def get_by_external_id(self, external_id: str) -> Optional[UserRecord]:
        return await self._get_one(BillingUser.external_id == external_id)

    async def get_by_email(self, email: str) -> Optional[UserRecord]:
        return await self._get_one(BillingUser.email == email.lower())

    async def get_by_session_token(self, token: str) -> Optional[UserRecord]:
        return await self._get_one(BillingUser.session_token == token)

    async def _get_one(self, clause) -> Optional[UserRecord]:
        async with self.session_factory() as session:
            row = (await session.execute(select(BillingUser).where(clause))).scalar_one_or_none()
            if row is None:
                return None
            buckets = await self._load_buckets(session, row.id)
            return _to_record(row, buckets.values())

    async def _load_buckets(self, session: AsyncSession, user_id: str) -> Dict[date, UsageDailyBucket]:
        stmt = (
            select(UsageDailyBucket)
            .where(UsageDailyBucket.user_id == user_id)
            .order_by(UsageDailyBucket.bucket_date.desc())
            .limit(self.bucket_window_days)
        )
        rows = (await session.execute(stmt)).scalars().all()
        return {b.bucket_date: b for b in rows}

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(self, record: UserRecord) -> UserRecord:
        """
        Insert a new user.

        Raises:
            ConflictError: If the email or identity subject is already taken
        """
        row = BillingUser(
            id=record.id,
            external_id=record.identity.external_id,
            email=record.identity.email.lower(),
        )
        _apply(record, row)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(row)
                    await session.flush()
                    self._sync_buckets(session, row.id, record, {})
        except IntegrityError as e:
            logger.warning(f"[USER STORE] Duplicate user {record.identity.email}: {e.orig}")
            raise ConflictError(
                message="A user with this email or identity already exists",
                code="USER_EXISTS",
            )
        logger.info(f"[USER STORE] Created user {record.id}")
        return _to_record(row, ())

    async def mutate(
        self,
        mutator: Mutator,
        *,
        user_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Tuple[UserRecord, Any]:
        """
        Apply `mutator` to one user atomically.

        The mutator receives the freshly loaded record, edits it in place and
        may return a value; raising aborts the transaction and nothing is
        written.

        Returns:
            Tuple of (record as committed, mutator result)

        Raises:
            NotFoundError: If no user matches
            ConflictError: If concurrent writers kept invalidating the read
        """
        if user_id is None and subscription_id is None:
            raise ValueError("mutate() needs user_id or subscription_id")

        clause = BillingUser.id == user_id if user_id is not None else BillingUser.subscription_id == subscription_id

        for attempt in range(1, self.max_conflict_retries + 1):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        loaded = await self._lock_row(session, clause)
                        if loaded is None:
                            raise NotFoundError(
                                message="User not found",
                                code="USER_NOT_FOUND",
                                details={'user_id': user_id, 'subscription_id': subscription_id},
                            )
                        record = _to_record(loaded.row, loaded.buckets.values())
                        result = await mutator(record)
                        _apply(record, loaded.row)
                        self._sync_buckets(session, loaded.row.id, record, loaded.buckets)
                    return record, result
            except StaleDataError:
                logger.warning(
                    f"[USER STORE] Concurrent update on user {user_id or subscription_id}, "
                    f"retrying ({attempt}/{self.max_conflict_retries})"
                )

        raise ConflictError(
            message="The record was modified concurrently, please retry",
            code="CONCURRENT_MODIFICATION",
        )

    async def _lock_row(self, session: AsyncSession, clause) -> Optional[_Loaded]:
        stmt = select(BillingUser).where(clause).with_for_update()
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _Loaded(row=row, buckets=await self._load_buckets(session, row.id))

    @staticmethod
    def _sync_buckets(
        session: AsyncSession,
        user_id: str,
        record: UserRecord,
        existing: Dict[date, UsageDailyBucket],
    ) -> None:
        for bucket in record.usage.daily_buckets:
            row = existing.get(bucket.date)
            if row is None:
                session.add(UsageDailyBucket(user_id=user_id, bucket_date=bucket.date, count=bucket.count))
            elif row.count != bucket.count:
                row.count = bucket.count

    # -------------------------------------------------------------------------
    # Maintenance queries
    # -------------------------------------------------------------------------

    async def list_records(self, *clauses, limit: int = 100, order_by=None) -> List[UserRecord]:
        async with self.session_factory() as session:
            stmt = select(BillingUser).where(*clauses).limit(limit)
            if order_by is not None:
                stmt = stmt.order_by(order_by)
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def bulk_update(self, values: Dict[str, Any], *clauses) -> int:
        """Set columns on every matching row, bumping the version of each."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(BillingUser)
                    .where(*clauses)
                    .values(version=BillingUser.version + 1, **values)
                    .execution_options(synchronize_session=False)
                )
            return result.rowcount or 0

    async def prune_usage_buckets(self, before: date) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(UsageDailyBucket).where(UsageDailyBucket.bucket_date < before)
                )
            return result.rowcount or 0

    async def count_by_status(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(BillingUser.status, func.count()).group_by(BillingUser.status)
                )
            ).all()
            return {status: count for status, count in rows}

    async def count(self, *clauses) -> int:
        async with self.session_factory() as session:
            return (
                await session.execute(select(func.count()).select_from(BillingUser).where(*clauses))
            ).scalar_one()


# Global store instance
user_store = UserStore()

"""Tests for atomic read-modify-write on the user store."""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from backend.src.billing.shared.exceptions import ConflictError, NotFoundError


class TestMutate:
    """Tests for UserStore.mutate."""

    @pytest.mark.asyncio
    async def test_stale_read_is_retried(self, store, make_user):
        user = await make_user()
        calls = []

        async def mutator(record):
            calls.append(record.subscription.plan_id)
            if len(calls) == 1:
                record.subscription.plan_id = 'plan_lost_write'
                raise StaleDataError('row version changed')
            record.subscription.plan_id = 'plan_monthly_premium'
            return 'done'

        record, result = await store.mutate(mutator, user_id=user.id)

        assert result == 'done'
        assert calls == [None, None]
        assert record.subscription.plan_id == 'plan_monthly_premium'
        assert (await store.get(user.id)).subscription.plan_id == 'plan_monthly_premium'

    @pytest.mark.asyncio
    async def test_gives_up_after_max_conflict_retries(self, store, make_user):
        user = await make_user()
        calls = []

        async def mutator(record):
            calls.append(1)
            raise StaleDataError('row version changed')

        with pytest.raises(ConflictError) as exc_info:
            await store.mutate(mutator, user_id=user.id)

        assert exc_info.value.code == 'CONCURRENT_MODIFICATION'
        assert len(calls) == store.max_conflict_retries == 3

    @pytest.mark.asyncio
    async def test_missing_user(self, store):
        async def mutator(record):
            raise AssertionError('mutator must not run')

        with pytest.raises(NotFoundError) as exc_info:
            await store.mutate(mutator, user_id='user-missing')

        assert exc_info.value.code == 'USER_NOT_FOUND'

    @pytest.mark.asyncio
    async def test_lookup_by_subscription_id(self, store, make_user):
        user = await make_user(external_id='sub_A')

        async def mutator(record):
            record.subscription.plan_id = 'plan_yearly_premium'
            return record.id

        _, result = await store.mutate(mutator, subscription_id='sub_A')

        assert result == user.id
        assert (await store.get(user.id)).subscription.plan_id == 'plan_yearly_premium'

"""Tests for bearer session login, verification and logout."""

from datetime import timedelta

import pytest

from backend.src.billing.domain.user import SubscriptionStatus
from backend.src.billing.shared.exceptions import InvalidInputError, SessionError

PROFILE = {
    'externalId': 'google-oauth2|42',
    'email': 'Ada@Example.com',
    'name': 'Ada',
    'picture': 'https://example.com/ada.png',
    'verified': True,
}


@pytest.fixture
def sessions(store, clock):
    from backend.core.security.session import SessionService

    return SessionService(store=store, clock=clock, ttl=timedelta(days=10), refresh_window=timedelta(days=2))


class TestLogin:
    """Tests for login and user upsert."""

    @pytest.mark.asyncio
    async def test_first_login_creates_user_with_trial(self, sessions, store, t0):
        result = await sessions.login(PROFILE)

        assert result['isNewUser'] is True
        assert result['token']
        assert result['expiresAt'] == (t0 + timedelta(days=10)).isoformat()

        record = await store.get(result['userId'])
        assert record.identity.email == 'ada@example.com'
        assert record.identity.verified is True
        assert record.trial.end_at == t0 + timedelta(days=10)
        assert record.subscription.status == SubscriptionStatus.TRIAL
        assert record.auth_session.login_count == 1

    @pytest.mark.asyncio
    async def test_returning_login_rotates_token_and_keeps_trial(self, sessions, store, clock, t0):
        first = await sessions.login(PROFILE)
        clock.advance(days=20)

        second = await sessions.login(dict(PROFILE, name='Ada L.'))

        assert second['isNewUser'] is False
        assert second['userId'] == first['userId']
        assert second['token'] != first['token']

        record = await store.get(first['userId'])
        assert record.identity.name == 'Ada L.'
        assert record.trial.start_at == t0
        assert record.auth_session.login_count == 2

        with pytest.raises(SessionError):
            await sessions.verify(first['token'])

    @pytest.mark.asyncio
    async def test_matches_existing_user_by_email(self, sessions, store):
        first = await sessions.login(PROFILE)

        second = await sessions.login(dict(PROFILE, externalId='github|7', email='ADA@example.com'))

        assert second['userId'] == first['userId']
        assert (await store.get(first['userId'])).identity.external_id == 'github|7'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('field, profile', [
        ('externalId', dict(PROFILE, externalId='')),
        ('email', dict(PROFILE, email='not-an-email')),
    ])
    async def test_invalid_profile(self, sessions, field, profile):
        with pytest.raises(InvalidInputError) as exc_info:
            await sessions.login(profile)

        assert exc_info.value.field == field


class TestVerify:
    """Tests for token verification and the sliding refresh."""

    @pytest.mark.asyncio
    async def test_outside_refresh_window_does_not_write(self, sessions, store, clock, t0):
        login = await sessions.login(PROFILE)
        before = await store.get(login['userId'])
        clock.advance(days=1)

        result = await sessions.verify(login['token'])

        assert result == {
            'valid': True,
            'userId': login['userId'],
            'expiresAt': (t0 + timedelta(days=10)).isoformat(),
            'refreshed': False,
        }
        assert await store.get(login['userId']) == before

    @pytest.mark.asyncio
    @pytest.mark.parametrize('elapsed', [timedelta(days=8), timedelta(days=9, hours=23, minutes=59)])
    async def test_inside_refresh_window_extends(self, sessions, store, clock, t0, elapsed):
        login = await sessions.login(PROFILE)
        now = clock.advance(seconds=elapsed.total_seconds())

        result = await sessions.verify(login['token'])

        assert result['refreshed'] is True
        assert result['expiresAt'] == (now + timedelta(days=10)).isoformat()
        record = await store.get(login['userId'])
        assert record.auth_session.expires_at == now + timedelta(days=10)
        assert record.auth_session.last_active_at == now

    @pytest.mark.asyncio
    async def test_expired_at_boundary(self, sessions, clock):
        login = await sessions.login(PROFILE)
        clock.advance(days=10)

        with pytest.raises(SessionError) as exc_info:
            await sessions.verify(login['token'])

        assert exc_info.value.code == 'SESSION_EXPIRED'
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_and_missing_tokens(self, sessions):
        with pytest.raises(SessionError) as unknown:
            await sessions.verify('no-such-token')
        with pytest.raises(SessionError) as missing:
            await sessions.verify(None)

        assert unknown.value.code == 'SESSION_INVALID'
        assert missing.value.code == 'SESSION_MISSING'


class TestLogout:
    """Tests for logout and pruning."""

    @pytest.mark.asyncio
    async def test_logout_expires_session(self, sessions):
        login = await sessions.login(PROFILE)

        assert await sessions.logout(login['token']) == {'loggedOut': True}

        with pytest.raises(SessionError) as exc_info:
            await sessions.verify(login['token'])
        assert exc_info.value.code == 'SESSION_EXPIRED'

    @pytest.mark.asyncio
    async def test_logout_unknown_token(self, sessions):
        assert await sessions.logout('no-such-token') == {'loggedOut': True}

    @pytest.mark.asyncio
    async def test_prune_expired_sessions(self, sessions, store, clock):
        stale = await sessions.login(PROFILE)
        clock.advance(days=5)
        fresh = await sessions.login(dict(PROFILE, externalId='google-oauth2|43', email='bob@example.com'))
        clock.advance(days=6)

        assert await sessions.prune_expired_sessions() == 1
        assert await store.get_by_session_token(stale['token']) is None
        assert (await store.get_by_session_token(fresh['token'])).id == fresh['userId']

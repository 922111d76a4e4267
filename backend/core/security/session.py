"""
Session Tokens

Opaque bearer tokens stored on the user record. A token is valid while
`now < expiresAt`; verifying a token inside the refresh window slides its
expiry forward by a full TTL.

Usage:
    from backend.core.security.session import session_service

    result = await session_service.verify(token)
    if result['refreshed']:
        ...
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.core.conf import settings
from backend.src.billing.domain.user import Identity, UserRecord
from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.exceptions import ConflictError, InvalidInputError, SessionError
from backend.src.billing.storage.models import BillingUser
from backend.src.billing.storage.user_store import UserStore, user_store
from backend.src.billing.subscriptions.trial_service import start_trial

logger = logging.getLogger(__name__)

SESSION_REFRESHED_HEADER = 'X-Session-Refreshed'


def _mask(token: str) -> str:
    return f"{token[:6]}..." if token else '<empty>'


class SessionService:
    """
    Login, verification and logout of bearer sessions.

    Usage:
        service = SessionService(store=store, clock=clock)
        session = await service.login({'externalId': 'g-1', 'email': 'a@b.c', 'name': 'A'})
    """

    def __init__(
        self,
        store: Optional[UserStore] = None,
        clock: Optional[Clock] = None,
        ttl: Optional[timedelta] = None,
        refresh_window: Optional[timedelta] = None,
    ):
        self.store = store or user_store
        self.clock = clock or system_clock
        self.ttl = ttl or timedelta(seconds=settings.SESSION_TTL_SECONDS)
        self.refresh_window = refresh_window or timedelta(seconds=settings.SESSION_REFRESH_WINDOW_SECONDS)

    @staticmethod
    def _identity_from_profile(profile: Dict[str, Any]) -> Identity:
        external_id = (profile.get('externalId') or '').strip()
        email = (profile.get('email') or '').strip().lower()
        if not external_id:
            raise InvalidInputError("Identity subject is required", field='externalId')
        if not email or '@' not in email:
            raise InvalidInputError("A valid email is required", field='email')
        return Identity(
            external_id=external_id,
            email=email,
            name=profile.get('name') or email.split('@')[0],
            picture=profile.get('picture'),
            verified=bool(profile.get('verified', False)),
        )

    def _issue(self, record: UserRecord, now: datetime) -> None:
        session = record.auth_session
        session.token = secrets.token_urlsafe(32)
        session.expires_at = now + self.ttl
        session.last_active_at = now
        session.login_count += 1

    async def login(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        """
        Upsert the user from an identity profile and issue a new session.

        New users get their trial started in the same write. Returning users
        are matched by identity subject first, then by email.

        Returns:
            Dict with token, userId, expiresAt and isNewUser
        """
        identity = self._identity_from_profile(profile)
        now = self.clock.now()

        existing = await self.store.get_by_external_id(identity.external_id)
        if existing is None:
            existing = await self.store.get_by_email(identity.email)

        is_new = existing is None
        if is_new:
            record = UserRecord(id=str(uuid.uuid4()), identity=identity)
            start_trial(record, now)
            self._issue(record, now)
            try:
                record = await self.store.create(record)
            except ConflictError:
                # Lost a race with a concurrent first login of the same user
                existing = await self.store.get_by_email(identity.email)
                if existing is None:
                    raise
                is_new = False

        if not is_new:
            async def mutator(rec: UserRecord) -> None:
                rec.identity.external_id = identity.external_id
                rec.identity.email = identity.email
                rec.identity.name = identity.name
                rec.identity.picture = identity.picture
                rec.identity.verified = identity.verified
                start_trial(rec, now)
                self._issue(rec, now)

            record, _ = await self.store.mutate(mutator, user_id=existing.id)

        logger.info(
            f"[SESSION] Login for user {record.id} "
            f"({'new' if is_new else 'returning'}, count={record.auth_session.login_count})"
        )
        return {
            'token': record.auth_session.token,
            'userId': record.id,
            'expiresAt': record.auth_session.expires_at.isoformat(),
            'isNewUser': is_new,
        }

    async def verify(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Check a bearer token, sliding its expiry when close to the end.

        Returns:
            Dict with valid, userId, expiresAt and refreshed

        Raises:
            SessionError: If the token is missing, unknown or expired
        """
        if not token:
            raise SessionError("Missing session token", code="SESSION_MISSING")

        now = self.clock.now()
        record = await self.store.get_by_session_token(token)
        if record is None or record.auth_session.token != token:
            logger.debug(f"[SESSION] Unknown token {_mask(token)}")
            raise SessionError()

        expires_at = record.auth_session.expires_at
        if expires_at is None or now >= expires_at:
            logger.debug(f"[SESSION] Expired token for user {record.id}")
            raise SessionError("Session expired", code="SESSION_EXPIRED")

        refreshed = expires_at - now <= self.refresh_window

        if refreshed:
            async def mutator(rec: UserRecord) -> bool:
                # Token may have been rotated or revoked since the read
                if rec.auth_session.token != token or rec.auth_session.expires_at is None:
                    return False
                if now >= rec.auth_session.expires_at:
                    return False
                rec.auth_session.expires_at = now + self.ttl
                rec.auth_session.last_active_at = now
                return True

            record, still_valid = await self.store.mutate(mutator, user_id=record.id)
            if not still_valid:
                raise SessionError()
            logger.info(f"[SESSION] Refreshed session for user {record.id}")

        return {
            'valid': True,
            'userId': record.id,
            'expiresAt': record.auth_session.expires_at.isoformat(),
            'refreshed': refreshed,
        }

    async def logout(self, token: str) -> Dict[str, bool]:
        """Expire the session now. Unknown tokens are a no-op."""
        record = await self.store.get_by_session_token(token) if token else None
        if record is None:
            return {'loggedOut': True}

        now = self.clock.now()

        async def mutator(rec: UserRecord) -> None:
            if rec.auth_session.token == token:
                rec.auth_session.expires_at = now

        await self.store.mutate(mutator, user_id=record.id)
        logger.info(f"[SESSION] Logged out user {record.id}")
        return {'loggedOut': True}

    async def prune_expired_sessions(self) -> int:
        """Drop tokens whose expiry has passed so they no longer match."""
        now = self.clock.now()
        pruned = await self.store.bulk_update(
            {'session_token': None},
            BillingUser.session_token.is_not(None),
            BillingUser.session_expires_at <= now,
        )
        if pruned:
            logger.info(f"[SESSION] Pruned {pruned} expired sessions")
        return pruned


# Global instance
session_service = SessionService()

bearer_scheme = HTTPBearer(auto_error=False)


def get_session_service() -> SessionService:
    """Dependency that can be overridden in tests."""
    return session_service


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None or not credentials.credentials:
        raise SessionError("Missing authorization header", code="SESSION_MISSING")
    return credentials.credentials


async def get_current_session(
    response: Response,
    token: str = Depends(get_bearer_token),
    service: SessionService = Depends(get_session_service),
) -> Dict[str, Any]:
    """Verify the bearer token and flag a refreshed session on the response."""
    result = await service.verify(token)
    if result['refreshed']:
        response.headers[SESSION_REFRESHED_HEADER] = 'true'
    return result


async def get_current_user_id(session: Dict[str, Any] = Depends(get_current_session)) -> str:
    return session['userId']

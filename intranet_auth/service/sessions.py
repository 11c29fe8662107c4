from __future__ import annotations

import hmac
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from intranet_auth.config import Settings
from intranet_auth.logging import get_logger
from intranet_auth.service.errors import AuthenticationError, SessionExpiredError
from intranet_auth.service.roles import Principal
from intranet_auth.storage.interfaces import IdentityStore, SessionStore
from intranet_auth.storage.models import Session, User

logger = get_logger(__name__)


class SessionManager:
    """Server-held sessions: create, validate, refresh, destroy.

    ``validate`` is the single entry point for authenticated requests. It
    enforces the idle timeout and reconciles the session snapshot with the
    user row so a demotion or deletion takes effect on the next request.
    """

    def __init__(
        self,
        sessions: SessionStore,
        identity: IdentityStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions = sessions
        self.identity = identity
        self.lifetime = timedelta(seconds=settings.session_lifetime_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    @property
    def _ttl_seconds(self) -> int:
        return int(self.lifetime.total_seconds())

    async def create(
        self,
        user: User,
        *,
        auth_method: str = "password",
        pending_mfa: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        previous_session_id: Optional[str] = None,
    ) -> Session:
        # Never carry a pre-auth id into the authenticated state
        if previous_session_id:
            await self.sessions.delete(previous_session_id)
        session = Session.new(
            user,
            auth_method=auth_method,
            pending_mfa=pending_mfa,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        now = self._now()
        session.created_at = now
        session.last_activity = now
        await self.sessions.save(session, self._ttl_seconds)
        logger.info(
            "session_created",
            session_id=session.id,
            user_id=user.id,
            state=session.state,
            auth_method=auth_method,
        )
        return session

    async def validate(
        self, session_id: Optional[str], *, allow_pending_mfa: bool = False
    ) -> Session:
        session, _ = await self._validate(session_id, allow_pending_mfa=allow_pending_mfa)
        return session

    async def resolve(
        self, session_id: Optional[str], *, allow_pending_mfa: bool = False
    ) -> tuple[Session, Principal]:
        """Validate ``session_id`` and return it with the caller's principal."""
        session, user = await self._validate(session_id, allow_pending_mfa=allow_pending_mfa)
        return session, Principal.of(user.id, user.role, user.is_alumni_validated)

    async def _validate(
        self, session_id: Optional[str], *, allow_pending_mfa: bool
    ) -> tuple[Session, User]:
        if not session_id:
            raise SessionExpiredError("session invalid")
        session = await self.sessions.get(session_id)
        if not session:
            raise SessionExpiredError("session invalid")

        now = self._now()
        if session.idle_for(now) > self.lifetime:
            await self.sessions.delete(session.id)
            logger.info(
                "session_timed_out",
                session_id=session.id,
                user_id=session.user_id,
                idle_seconds=int(session.idle_for(now).total_seconds()),
            )
            raise SessionExpiredError("session expired")

        if session.pending_mfa and not allow_pending_mfa:
            raise AuthenticationError("second factor required")

        session, user = await self._reconcile(session)
        session.last_activity = now
        await self.sessions.save(session, self._ttl_seconds)
        return session, user

    async def _reconcile(self, session: Session) -> tuple[Session, User]:
        user = self.identity.get_user(session.user_id)
        if not user:
            await self.sessions.delete(session.id)
            logger.warning(
                "session_user_missing", session_id=session.id, user_id=session.user_id
            )
            raise SessionExpiredError("session invalid")
        if user.role != session.role or user.email != session.email:
            logger.info(
                "session_snapshot_refreshed",
                session_id=session.id,
                user_id=user.id,
                old_role=session.role,
                new_role=user.role,
                email_changed=user.email != session.email,
            )
            session.role = user.role
            session.email = user.email
        session.display_name = user.display_name
        return session, user

    async def peek(self, session_id: Optional[str]) -> Optional[Session]:
        """Stored session for ``session_id`` without touching its activity."""
        if not session_id:
            return None
        return await self.sessions.get(session_id)

    async def refresh(self, session: Session) -> Session:
        session.last_activity = self._now()
        await self.sessions.save(session, self._ttl_seconds)
        return session

    async def mark_authenticated(self, session: Session) -> Session:
        """Promote a pending-MFA session under a fresh id."""
        user = self.identity.get_user(session.user_id)
        if not user:
            await self.sessions.delete(session.id)
            raise SessionExpiredError("session invalid")
        return await self.create(
            user,
            auth_method=session.auth_method,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            previous_session_id=session.id,
        )

    async def destroy(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        await self.sessions.delete(session_id)
        logger.info("session_destroyed", session_id=session_id)

    async def destroy_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        revoked = await self.sessions.delete_user_sessions(user_id, except_session_id)
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            revoked=revoked,
            kept_session=except_session_id,
        )
        return revoked

    @staticmethod
    def verify_csrf(session: Session, token: Optional[str]) -> bool:
        if not token or not session.csrf_token:
            return False
        return hmac.compare_digest(session.csrf_token.encode(), token.encode())


__all__ = ["SessionManager"]

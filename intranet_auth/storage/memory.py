from __future__ import annotations

import itertools
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from intranet_auth.logging import get_logger
from intranet_auth.storage.common import (
    SecretCipher,
    check_totp_invariant,
    require_known_role,
    truncate_user_agent,
)
from intranet_auth.storage.errors import ConstraintViolation
from intranet_auth.storage.models import (
    AuditEntry,
    Invitation,
    LoginAttempt,
    Session,
    User,
    normalize_email,
    utcnow,
)


class MemoryIdentityStore:
    """In-process identity database for tests and single-node development.

    All reads return copies so callers cannot mutate stored rows, and every
    operation holds ``_data_lock`` so multi-step updates are atomic.
    """

    def __init__(self, *, totp_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.invitations: Dict[int, Invitation] = {}
        self._attempt_seq = itertools.count(1)
        self._invitation_seq = itertools.count(1)
        # RLock so helpers can be called while already holding the lock
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(totp_encryption_key, allow_ephemeral=True)

    def _public_user(self, user: User) -> User:
        return replace(user, totp_secret=self._cipher.decrypt(user.totp_secret))

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str,
        firstname: str = "",
        lastname: str = "",
        password_hash: Optional[str] = None,
        is_alumni_validated: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        role_value = require_known_role(role)
        with self._data_lock:
            return self._public_user(
                self._insert_user(
                    normalized,
                    role=role_value,
                    firstname=firstname,
                    lastname=lastname,
                    password_hash=password_hash,
                    is_alumni_validated=is_alumni_validated,
                )
            )

    def _insert_user(self, email: str, **fields) -> User:
        if email in self._email_index:
            raise ConstraintViolation("email already exists", {"field": "email"})
        user = User(id=str(uuid.uuid4()), email=email, **fields)
        self.users[user.id] = user
        self._email_index[email] = user.id
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            if not user_id:
                return None
            return self._public_user(self.users[user_id])

    def update_user_role(
        self,
        user_id: str,
        role: str,
        *,
        is_alumni_validated: Optional[bool] = None,
        alumni_status_requested_at: Optional[datetime] = None,
    ) -> Optional[User]:
        role_value = require_known_role(role)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role_value
            if is_alumni_validated is not None:
                user.is_alumni_validated = is_alumni_validated
            if alumni_status_requested_at is not None:
                user.alumni_status_requested_at = alumni_status_requested_at
            user.updated_at = utcnow()
            return self._public_user(user)

    def set_alumni_validated(self, user_id: str, validated: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_alumni_validated = validated
            user.updated_at = utcnow()
            return self._public_user(user)

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = utcnow()
            return self._public_user(user)

    def set_totp(
        self,
        user_id: str,
        secret: Optional[str],
        *,
        enabled: bool,
        verified_at: Optional[datetime] = None,
    ) -> Optional[User]:
        check_totp_invariant(secret, enabled)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.totp_secret = self._cipher.encrypt(secret)
            user.totp_enabled = enabled
            if verified_at is not None or not enabled:
                user.totp_verified_at = verified_at
            user.updated_at = utcnow()
            return self._public_user(user)

    def list_users(
        self, *, role: Optional[str] = None, is_alumni_validated: Optional[bool] = None
    ) -> List[User]:
        with self._data_lock:
            users = list(self.users.values())
        if role is not None:
            users = [u for u in users if u.role == role]
        if is_alumni_validated is not None:
            users = [u for u in users if u.is_alumni_validated == is_alumni_validated]
        users.sort(key=lambda u: u.created_at)
        return [self._public_user(u) for u in users]

    # login attempt ledger
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            stored = replace(
                attempt,
                id=next(self._attempt_seq),
                email=normalize_email(attempt.email) if attempt.email else None,
                user_agent=truncate_user_agent(attempt.user_agent),
            )
            self.login_attempts.append(stored)
            return replace(stored)

    def count_failed_attempts(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
    ) -> int:
        if ip_address is None and email is None:
            return 0
        normalized = normalize_email(email) if email else None
        with self._data_lock:
            return sum(
                1
                for attempt in self.login_attempts
                if not attempt.success
                and attempt.attempt_time > since
                and (ip_address is None or attempt.ip_address == ip_address)
                and (normalized is None or attempt.email == normalized)
            )

    def delete_attempts_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.attempt_time >= cutoff]
            removed = len(self.login_attempts) - len(kept)
            self.login_attempts = kept
            return removed

    # invitation ledger
    def create_invitation(
        self,
        email: str,
        token: str,
        role: str,
        created_by: str,
        expires_at: datetime,
    ) -> Invitation:
        role_value = require_known_role(role)
        with self._data_lock:
            if any(inv.token == token for inv in self.invitations.values()):
                raise ConstraintViolation("invitation token collision", {"field": "token"})
            invitation = Invitation(
                id=next(self._invitation_seq),
                email=normalize_email(email),
                token=token,
                role=role_value,
                created_by=created_by,
                created_at=utcnow(),
                expires_at=expires_at,
            )
            self.invitations[invitation.id] = invitation
            return replace(invitation)

    def get_invitation(self, invitation_id: int) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            return replace(invitation) if invitation else None

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._data_lock:
            for invitation in self.invitations.values():
                if invitation.token == token:
                    return replace(invitation)
        return None

    def list_pending_invitations(self, now: datetime) -> List[Invitation]:
        with self._data_lock:
            pending = [
                replace(inv)
                for inv in self.invitations.values()
                if inv.accepted_at is None and inv.expires_at > now
            ]
        pending.sort(key=lambda inv: inv.created_at, reverse=True)
        return pending

    def delete_invitation(self, invitation_id: int) -> bool:
        with self._data_lock:
            return self.invitations.pop(invitation_id, None) is not None

    def delete_expired_invitations(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                inv_id
                for inv_id, inv in self.invitations.items()
                if inv.accepted_at is None and inv.expires_at <= now
            ]
            for inv_id in expired:
                del self.invitations[inv_id]
            return len(expired)

    def redeem_invitation(
        self,
        token: str,
        *,
        firstname: str,
        lastname: str,
        password_hash: str,
        now: datetime,
    ) -> Optional[User]:
        """Consume ``token`` and create its user in one critical section.

        Returns ``None`` when the token is missing, expired or already used.
        Raises ``ConstraintViolation`` (leaving the invitation untouched) if
        the invited email was registered in the meantime.
        """
        with self._data_lock:
            invitation = next(
                (inv for inv in self.invitations.values() if inv.token == token), None
            )
            if not invitation or invitation.accepted_at is not None or invitation.expires_at <= now:
                return None
            role = invitation.role
            user = self._insert_user(
                invitation.email,
                role=role,
                firstname=firstname,
                lastname=lastname,
                password_hash=password_hash,
                # Invited alumni were vouched for by the board member who invited them
                is_alumni_validated=role == "alumni",
            )
            invitation.accepted_at = now
            return self._public_user(user)


class MemoryContentStore:
    """In-process content database; only the audit log lives here."""

    def __init__(self) -> None:
        self.audit_entries: List[AuditEntry] = []
        self._seq = itertools.count(1)
        self._data_lock = threading.RLock()

    def append_audit_entry(
        self,
        user_id: str,
        action: str,
        target_type: str,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEntry:
        with self._data_lock:
            entry = AuditEntry(
                id=next(self._seq),
                user_id=user_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
                details=dict(details) if details else None,
                ip_address=ip_address,
            )
            self.audit_entries.append(entry)
            return replace(entry)

    def list_audit_entries(
        self,
        *,
        target_type: Optional[str] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEntry]:
        with self._data_lock:
            entries = list(self.audit_entries)
        if target_type:
            entries = [e for e in entries if e.target_type == target_type]
        if action:
            entries = [e for e in entries if e.action == action]
        if user_id:
            entries = [e for e in entries if e.user_id == user_id]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return [replace(e) for e in entries[offset : offset + limit]]


class MemorySessionStore:
    """Session store for tests and single-process deployments.

    Expiry is enforced by the session manager through ``last_activity``; the
    TTL is only used here to drop abandoned entries lazily.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, tuple[Session, datetime]] = {}
        self._lock = threading.Lock()

    async def save(self, session: Session, ttl_seconds: int) -> None:
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._sessions[session.id] = (replace(session), expires_at)

    async def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            entry = self._sessions.get(session_id)
            if not entry:
                return None
            session, expires_at = entry
            if expires_at <= utcnow():
                self._sessions.pop(session_id, None)
                return None
            return replace(session)

    async def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._lock:
            doomed = [
                sid
                for sid, (session, _) in self._sessions.items()
                if session.user_id == user_id and sid != except_session_id
            ]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)

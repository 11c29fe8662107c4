"""Repository interfaces for the two databases and the session store.

The identity and content databases are independent: no foreign keys cross
them, so anything joining users to content rows does it by id in the
service layer.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from intranet_auth.storage.models import AuditEntry, Invitation, LoginAttempt, Session, User


class IdentityStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(
        self,
        user_id: str,
        role: str,
        *,
        is_alumni_validated: Optional[bool] = None,
        alumni_status_requested_at: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def set_alumni_validated(self, user_id: str, validated: bool) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def set_totp(
        self,
        user_id: str,
        secret: Optional[str],
        *,
        enabled: bool,
        verified_at: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def list_users(
        self, *, role: Optional[str] = None, is_alumni_validated: Optional[bool] = None
    ) -> List[User]: ...

    # login attempt ledger
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt: ...

    def count_failed_attempts(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
    ) -> int: ...

    def delete_attempts_before(self, cutoff: datetime) -> int: ...

    # invitation ledger
    def create_invitation(
        self,
        email: str,
        token: str,
        role: str,
        created_by: str,
        expires_at: datetime,
    ) -> Invitation: ...

    def get_invitation(self, invitation_id: int) -> Optional[Invitation]: ...

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]: ...

    def list_pending_invitations(self, now: datetime) -> List[Invitation]: ...

    def delete_invitation(self, invitation_id: int) -> bool: ...

    def delete_expired_invitations(self, now: datetime) -> int: ...

    def redeem_invitation(
        self,
        token: str,
        *,
        firstname: str,
        lastname: str,
        password_hash: str,
        now: datetime,
    ) -> Optional[User]: ...


class ContentStore(Protocol):
    def append_audit_entry(
        self,
        user_id: str,
        action: str,
        target_type: str,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEntry: ...

    def list_audit_entries(
        self,
        *,
        target_type: Optional[str] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEntry]: ...


class SessionStore(Protocol):
    async def save(self, session: Session, ttl_seconds: int) -> None: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def delete(self, session_id: str) -> None: ...

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...


__all__ = ["IdentityStore", "ContentStore", "SessionStore"]

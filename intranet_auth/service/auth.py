from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from intranet_auth.config import Settings
from intranet_auth.logging import get_logger
from intranet_auth.service import credentials
from intranet_auth.service.audit import AuditLog
from intranet_auth.service.errors import (
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    PermissionDenied,
    RateLimited,
    ValidationError,
)
from intranet_auth.service.invitations import require_name, validate_new_password
from intranet_auth.service.rate_limit import RateLimiter
from intranet_auth.service.roles import BOARD_LEVEL, Principal, Role, check_role_assignment
from intranet_auth.service.sessions import SessionManager
from intranet_auth.storage.errors import ConstraintViolation
from intranet_auth.storage.interfaces import IdentityStore
from intranet_auth.storage.models import Session, User, normalize_email

logger = get_logger(__name__)

AUTH_METHOD_PASSWORD = "password"
AUTH_METHOD_TOTP = "password+totp"


@dataclass
class LoginResult:
    user: User
    session: Session
    requires_totp: bool = False


@dataclass
class TotpEnrollment:
    secret: str
    provisioning_uri: str


class AuthService:
    """Login, second factor, role changes and account lifecycle.

    Password and TOTP checks, the attempt ledger and session handling are
    delegated to their own components; this class sequences them and writes
    the audit trail for administrative actions.
    """

    def __init__(
        self,
        identity: IdentityStore,
        sessions: SessionManager,
        rate_limiter: RateLimiter,
        audit: AuditLog,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.identity = identity
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.totp_issuer = settings.totp_issuer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return self._clock()

    def _burn_password_check(self, password: Optional[str]) -> None:
        # Unknown accounts still pay for one hash verification
        if self._dummy_hash is None:
            self._dummy_hash = credentials.hash_password(secrets.token_hex(16))
        credentials.verify_password(password or "", self._dummy_hash)

    def _require_user(self, user_id: str) -> User:
        user = self.identity.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _record_failure(
        self, ip: Optional[str], email: Optional[str], user_agent: Optional[str], reason: str
    ) -> None:
        self.rate_limiter.record_attempt(ip, email, False, user_agent)
        logger.info("login_failed", ip=ip, email=email, reason=reason)

    async def _abandons_pending_totp(self, session_id: Optional[str], user_id: str) -> bool:
        previous = await self.sessions.peek(session_id)
        return bool(previous and previous.pending_mfa and previous.user_id == user_id)

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        totp_code: Optional[str] = None,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        previous_session_id: Optional[str] = None,
    ) -> LoginResult:
        normalized = normalize_email(email or "")
        if self.rate_limiter.is_rate_limited(ip, normalized or None):
            raise RateLimited()

        if not normalized or not password:
            self._record_failure(ip, normalized or None, user_agent, "missing_fields")
            raise InvalidCredentials()

        user = self.identity.get_user_by_email(normalized)
        if not user or not user.password_hash:
            self._burn_password_check(password)
            self._record_failure(ip, normalized, user_agent, "unknown_account")
            raise InvalidCredentials()
        if not credentials.verify_password(password, user.password_hash):
            self._record_failure(ip, normalized, user_agent, "bad_password")
            raise InvalidCredentials()

        auth_method = AUTH_METHOD_PASSWORD
        if user.totp_enabled:
            if not totp_code:
                # Only an unfinished earlier second step counts against the limits
                if await self._abandons_pending_totp(previous_session_id, user.id):
                    self._record_failure(ip, normalized, user_agent, "totp_abandoned")
                session = await self.sessions.create(
                    user,
                    pending_mfa=True,
                    ip_address=ip,
                    user_agent=user_agent,
                    previous_session_id=previous_session_id,
                )
                return LoginResult(user=user, session=session, requires_totp=True)
            if not credentials.verify_totp_code(user.totp_secret, totp_code):
                self._record_failure(ip, normalized, user_agent, "bad_totp")
                raise InvalidCredentials()
            auth_method = AUTH_METHOD_TOTP

        self.rate_limiter.record_attempt(ip, normalized, True, user_agent)
        if credentials.password_needs_rehash(user.password_hash):
            self.identity.set_password_hash(user.id, credentials.hash_password(password))
        session = await self.sessions.create(
            user,
            auth_method=auth_method,
            ip_address=ip,
            user_agent=user_agent,
            previous_session_id=previous_session_id,
        )
        logger.info("login_succeeded", user_id=user.id, auth_method=auth_method, ip=ip)
        return LoginResult(user=user, session=session)

    async def complete_totp(
        self,
        session_id: Optional[str],
        code: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Second login step for a session waiting on its TOTP code."""
        session = await self.sessions.validate(session_id, allow_pending_mfa=True)
        if not session.pending_mfa:
            raise ValidationError("no second factor pending")
        if self.rate_limiter.is_rate_limited(ip, session.email):
            raise RateLimited()
        user = self._require_user(session.user_id)
        if not user.totp_enabled or not credentials.verify_totp_code(user.totp_secret, code):
            self._record_failure(ip, session.email, user_agent, "bad_totp")
            raise InvalidCredentials()

        self.rate_limiter.record_attempt(ip, session.email, True, user_agent)
        session.auth_method = AUTH_METHOD_TOTP
        promoted = await self.sessions.mark_authenticated(session)
        logger.info("login_succeeded", user_id=user.id, auth_method=AUTH_METHOD_TOTP, ip=ip)
        return LoginResult(user=user, session=promoted)

    async def logout(self, session_id: Optional[str]) -> None:
        await self.sessions.destroy(session_id)

    async def update_user_role(
        self,
        actor: Principal,
        user_id: str,
        new_role: str,
        *,
        ip_address: Optional[str] = None,
    ) -> User:
        try:
            role = Role.parse(new_role)
        except ValueError as exc:
            raise ValidationError("unknown role", detail={"field": "role"}) from exc
        check_role_assignment(actor, role, target_user_id=user_id)
        if actor.user_id == user_id and not actor.is_super_admin:
            logger.warning("role_self_update_denied", user_id=actor.user_id, target_role=role.value)
            raise PermissionDenied()

        target = self._require_user(user_id)
        old_role = Role.parse(target.role)
        if not actor.is_super_admin and old_role.level >= actor.effective_role.level:
            logger.warning(
                "role_escalation_denied",
                user_id=actor.user_id,
                role=actor.role.value,
                target_user_id=user_id,
                target_current_role=old_role.value,
            )
            raise PermissionDenied()

        validated: Optional[bool] = None
        if role is Role.ALUMNI:
            validated = actor.check_permission(BOARD_LEVEL)
        updated = self.identity.update_user_role(
            user_id, role.value, is_alumni_validated=validated
        )
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})

        await self.sessions.destroy_user_sessions(user_id)
        self.audit.record(
            actor.user_id,
            "update_role",
            "user",
            user_id,
            {"old_role": old_role.value, "new_role": role.value},
            ip_address,
        )
        logger.info(
            "user_role_updated",
            user_id=user_id,
            old_role=old_role.value,
            new_role=role.value,
            updated_by=actor.user_id,
        )
        return updated

    # TOTP enrollment
    def begin_totp_enrollment(self, user_id: str) -> TotpEnrollment:
        user = self._require_user(user_id)
        if user.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = credentials.generate_totp_secret()
        self.identity.set_totp(user_id, secret, enabled=False)
        logger.info("totp_enrollment_started", user_id=user_id)
        return TotpEnrollment(
            secret=secret,
            provisioning_uri=credentials.totp_provisioning_uri(secret, user.email, self.totp_issuer),
        )

    async def enable_totp(
        self,
        user_id: str,
        code: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> User:
        user = self._require_user(user_id)
        if user.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not user.totp_secret:
            raise ValidationError("no two-factor enrollment in progress")
        if not credentials.verify_totp_code(user.totp_secret, code):
            logger.info("totp_enable_rejected", user_id=user_id)
            raise ValidationError("invalid verification code", detail={"field": "code"})

        updated = self.identity.set_totp(
            user_id, user.totp_secret, enabled=True, verified_at=self._now()
        )
        await self.sessions.destroy_user_sessions(user_id, current_session_id)
        self.audit.record(user_id, "enable_totp", "user", user_id, None, ip_address)
        logger.info("totp_enabled", user_id=user_id)
        return updated or user

    async def disable_totp(
        self,
        user_id: str,
        code: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> User:
        user = self._require_user(user_id)
        if not user.totp_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        if not credentials.verify_totp_code(user.totp_secret, code):
            logger.info("totp_disable_rejected", user_id=user_id)
            raise ValidationError("invalid verification code", detail={"field": "code"})

        updated = self.identity.set_totp(user_id, None, enabled=False)
        await self.sessions.destroy_user_sessions(user_id, current_session_id)
        self.audit.record(user_id, "disable_totp", "user", user_id, None, ip_address)
        logger.info("totp_disabled", user_id=user_id)
        return updated or user

    def is_totp_enabled(self, user_id: str) -> bool:
        return self._require_user(user_id).totp_enabled

    # alumni workflow
    def request_alumni_status(self, user_id: str, *, ip_address: Optional[str] = None) -> User:
        user = self._require_user(user_id)
        role = Role.parse(user.role)
        if role.is_super_admin:
            raise PermissionDenied("board members cannot request alumni status")
        if role is Role.ALUMNI:
            raise ConflictError("alumni status already requested")

        updated = self.identity.update_user_role(
            user_id,
            Role.ALUMNI.value,
            is_alumni_validated=False,
            alumni_status_requested_at=self._now(),
        )
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.audit.record(
            user_id, "request_alumni", "user", user_id, {"previous_role": role.value}, ip_address
        )
        logger.info("alumni_status_requested", user_id=user_id, previous_role=role.value)
        return updated

    def validate_alumni(
        self, actor: Principal, user_id: str, *, ip_address: Optional[str] = None
    ) -> User:
        actor.require(BOARD_LEVEL, action="alumni.validate")
        user = self._require_user(user_id)
        if user.role != Role.ALUMNI.value:
            raise ValidationError("user is not an alumni", detail={"user_id": user_id})
        updated = self.identity.set_alumni_validated(user_id, True)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.audit.record(actor.user_id, "validate_alumni", "user", user_id, None, ip_address)
        logger.info("alumni_validated", user_id=user_id, validated_by=actor.user_id)
        return updated

    def list_pending_alumni(self, actor: Principal) -> List[User]:
        actor.require(BOARD_LEVEL, action="alumni.list_pending")
        return self.identity.list_users(role=Role.ALUMNI.value, is_alumni_validated=False)

    def create_alumni_account(
        self,
        actor: Principal,
        email: str,
        firstname: str,
        lastname: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
    ) -> User:
        actor.require(BOARD_LEVEL, action="alumni.create")
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        firstname = require_name(firstname, "firstname")
        lastname = require_name(lastname, "lastname")
        validate_new_password(password)
        try:
            user = self.identity.create_user(
                normalized,
                role=Role.ALUMNI.value,
                firstname=firstname,
                lastname=lastname,
                password_hash=credentials.hash_password(password),
                is_alumni_validated=True,
            )
        except ConstraintViolation as exc:
            raise ConflictError("a user with this email already exists") from exc
        self.audit.record(
            actor.user_id, "create", "user", user.id, {"role": user.role, "via": "alumni"}, ip_address
        )
        logger.info("alumni_account_created", user_id=user.id, created_by=actor.user_id)
        return user

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        """Replace the password and revoke every other session; returns the revoked count."""
        user = self._require_user(user_id)
        if not credentials.verify_password(current_password, user.password_hash):
            logger.info("password_change_rejected", user_id=user_id)
            raise ValidationError(
                "current password is incorrect", detail={"field": "current_password"}
            )
        validate_new_password(new_password)
        self.identity.set_password_hash(user_id, credentials.hash_password(new_password))
        revoked = await self.sessions.destroy_user_sessions(user_id, current_session_id)
        self.audit.record(user_id, "change_password", "user", user_id, None, ip_address)
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked


__all__ = ["AUTH_METHOD_PASSWORD", "AUTH_METHOD_TOTP", "AuthService", "LoginResult", "TotpEnrollment"]

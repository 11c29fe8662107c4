from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from intranet_auth.config import Settings
from intranet_auth.logging import get_logger
from intranet_auth.service import credentials
from intranet_auth.service.audit import AuditLog
from intranet_auth.service.errors import (
    ConflictError,
    InvitationAlreadyUsed,
    InvitationExpired,
    InvitationNotFound,
    NotFoundError,
    ValidationError,
)
from intranet_auth.service.roles import BOARD_LEVEL, Principal, check_role_assignment
from intranet_auth.storage.errors import ConstraintViolation
from intranet_auth.storage.interfaces import IdentityStore
from intranet_auth.storage.models import Invitation, normalize_email

logger = get_logger(__name__)

TOKEN_BYTES = 32
MIN_PASSWORD_LENGTH = 8
MAX_NAME_LENGTH = 100


def validate_new_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )
    return password


def require_name(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required", detail={"field": field})
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"{field} is too long", detail={"field": field})
    return cleaned


class InvitationService:
    """Issues single-use registration tokens and redeems them."""

    def __init__(
        self,
        store: IdentityStore,
        audit: AuditLog,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.default_ttl_hours = settings.invitation_default_ttl_hours
        self.max_ttl_hours = settings.invitation_max_ttl_hours
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def create_invitation(
        self,
        actor: Principal,
        email: str,
        role: str,
        ttl_hours: Optional[int] = None,
        *,
        ip_address: Optional[str] = None,
    ) -> Invitation:
        actor.require(BOARD_LEVEL, action="invitation.create")
        try:
            target_role = check_role_assignment(actor, role)
        except ValueError as exc:
            raise ValidationError("unknown role", detail={"field": "role"}) from exc
        ttl = self.default_ttl_hours if ttl_hours is None else ttl_hours
        if not 1 <= ttl <= self.max_ttl_hours:
            raise ValidationError(
                f"invitation lifetime must be between 1 and {self.max_ttl_hours} hours",
                detail={"field": "ttl_hours"},
            )
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        if self.store.get_user_by_email(normalized):
            logger.info(
                "invitation_email_registered", invited_by=actor.user_id, email=normalized
            )
            raise ConflictError("an invitation cannot be sent to this address")

        expires_at = self._now() + timedelta(hours=ttl)
        invitation = self.store.create_invitation(
            normalized,
            secrets.token_hex(TOKEN_BYTES),
            target_role.value,
            actor.user_id,
            expires_at,
        )
        self.audit.record(
            actor.user_id,
            "create",
            "invitation",
            str(invitation.id),
            {"email": normalized, "role": target_role.value, "ttl_hours": ttl},
            ip_address,
        )
        logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            invited_by=actor.user_id,
            role=target_role.value,
            expires_at=expires_at.isoformat(),
        )
        return invitation

    def validate_token(self, token: Optional[str]) -> Invitation:
        """Return the invitation for ``token`` if it can still be redeemed."""
        invitation = self.store.get_invitation_by_token(token) if token else None
        if not invitation:
            raise InvitationNotFound()
        if invitation.is_accepted:
            raise InvitationAlreadyUsed()
        if invitation.is_expired(self._now()):
            raise InvitationExpired()
        return invitation

    def redeem_invitation(
        self,
        token: str,
        firstname: str,
        lastname: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
    ) -> str:
        firstname = require_name(firstname, "firstname")
        lastname = require_name(lastname, "lastname")
        validate_new_password(password)
        try:
            self.validate_token(token)
        except (InvitationNotFound, InvitationExpired, InvitationAlreadyUsed) as exc:
            logger.info("invitation_redeem_rejected", reason=type(exc).__name__, ip=ip_address)
            raise

        password_hash = credentials.hash_password(password)
        now = self._now()
        try:
            user = self.store.redeem_invitation(
                token,
                firstname=firstname,
                lastname=lastname,
                password_hash=password_hash,
                now=now,
            )
        except ConstraintViolation as exc:
            logger.warning("invitation_redeem_conflict", ip=ip_address, error=exc.message)
            raise ConflictError("registration could not be completed") from exc

        if not user:
            # Lost the race to a concurrent redemption, or the token lapsed meanwhile
            current = self.store.get_invitation_by_token(token)
            if current and current.is_accepted:
                logger.info("invitation_redeem_rejected", reason="InvitationAlreadyUsed", ip=ip_address)
                raise InvitationAlreadyUsed()
            if current and current.is_expired(now):
                raise InvitationExpired()
            raise InvitationNotFound()

        self.audit.record(
            user.id, "register", "user", user.id, {"role": user.role, "via": "invitation"}, ip_address
        )
        logger.info("invitation_redeemed", user_id=user.id, role=user.role)
        return user.id

    def list_pending(self, actor: Principal) -> List[Invitation]:
        actor.require(BOARD_LEVEL, action="invitation.list")
        return self.store.list_pending_invitations(self._now())

    def cancel_invitation(
        self, actor: Principal, invitation_id: int, *, ip_address: Optional[str] = None
    ) -> None:
        actor.require(BOARD_LEVEL, action="invitation.delete")
        if not self.store.delete_invitation(invitation_id):
            raise NotFoundError("invitation not found", detail={"invitation_id": invitation_id})
        self.audit.record(
            actor.user_id, "delete", "invitation", str(invitation_id), None, ip_address
        )
        logger.info("invitation_cancelled", invitation_id=invitation_id, by=actor.user_id)

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_invitations(self._now())
        if removed:
            logger.info("invitations_expired_purged", removed=removed)
        return removed


__all__ = ["InvitationService", "require_name", "validate_new_password"]

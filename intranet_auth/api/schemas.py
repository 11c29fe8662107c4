from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "invitation_expired",
    "server_error",
    "service_unavailable",
})

MAX_NAME_LENGTH = 100


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after stripping zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("must not be empty")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValueError(f"must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


# auth
class LoginRequest(BaseModel):
    # Not format-validated: malformed input must still count as a failed attempt
    email: str = Field(default="", max_length=254)
    password: str = Field(default="", max_length=128)
    totp_code: Optional[str] = Field(default=None, max_length=10)


class TotpLoginRequest(BaseModel):
    code: str = Field(..., max_length=10)


class LoginResponse(BaseModel):
    user_id: str
    role: str
    session_id: str
    csrf_token: str
    requires_totp: bool = False


class SessionResponse(BaseModel):
    user_id: str
    email: str
    display_name: str
    role: str
    effective_role: str
    is_super_admin: bool
    auth_method: str
    csrf_token: str
    last_activity: datetime


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TotpCodeRequest(BaseModel):
    code: str = Field(..., max_length=10)


class TotpSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TotpStatusResponse(BaseModel):
    enabled: bool


# invitations
class InvitationCreateRequest(BaseModel):
    email: str
    role: str = Field(..., max_length=32)
    ttl_hours: Optional[int] = None

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class InvitationResponse(BaseModel):
    id: int
    email: str
    role: str
    created_by: str
    created_at: datetime
    expires_at: datetime
    token: Optional[str] = None


class InvitationListResponse(BaseModel):
    items: List[InvitationResponse]


class InvitationLookupResponse(BaseModel):
    email: str
    role: str
    expires_at: datetime


class InvitationRedeemRequest(BaseModel):
    firstname: str
    lastname: str
    password: str
    password_confirm: str

    @field_validator("firstname", "lastname")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("passwords do not match")
        return self


class InvitationRedeemResponse(BaseModel):
    user_id: str


# users and alumni
class UpdateUserRoleRequest(BaseModel):
    role: str = Field(..., max_length=32)


class AlumniCreateRequest(BaseModel):
    email: str
    firstname: str
    lastname: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_alumni_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("firstname", "lastname")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    firstname: str
    lastname: str
    is_alumni_validated: bool
    totp_enabled: bool
    alumni_status_requested_at: Optional[datetime] = None
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


# audit
class AuditEntryResponse(BaseModel):
    id: int
    user_id: str
    user_email: Optional[str] = None
    user_display_name: Optional[str] = None
    action: str
    target_type: str
    target_id: Optional[str] = None
    details: Optional[dict] = None
    ip_address: Optional[str] = None
    created_at: datetime


class AuditListResponse(BaseModel):
    items: List[AuditEntryResponse]
    limit: int
    offset: int

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class User:
    id: str
    email: str
    role: str = "mitglied"
    firstname: str = ""
    lastname: str = ""
    password_hash: Optional[str] = None
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    totp_verified_at: Optional[datetime] = None
    is_alumni_validated: bool = False
    alumni_status_requested_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip() or self.email


@dataclass
class LoginAttempt:
    ip_address: str
    email: Optional[str]
    success: bool
    attempt_time: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Invitation:
    id: int
    email: str
    token: str
    role: str
    created_by: str
    created_at: datetime
    expires_at: datetime
    accepted_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @property
    def is_accepted(self) -> bool:
        return self.accepted_at is not None


@dataclass
class Session:
    id: str
    user_id: str
    role: str
    email: str
    display_name: str
    csrf_token: str
    created_at: datetime
    last_activity: datetime
    auth_method: str = "password"
    state: str = "authenticated"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    PENDING_MFA = "pending_mfa"
    AUTHENTICATED = "authenticated"

    @classmethod
    def new(
        cls,
        user: User,
        *,
        auth_method: str = "password",
        pending_mfa: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            role=user.role,
            email=user.email,
            display_name=user.display_name,
            csrf_token=secrets.token_hex(32),
            created_at=now,
            last_activity=now,
            auth_method=auth_method,
            state=cls.PENDING_MFA if pending_mfa else cls.AUTHENTICATED,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @property
    def pending_mfa(self) -> bool:
        return self.state == self.PENDING_MFA

    def idle_for(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.last_activity

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "email": self.email,
            "display_name": self.display_name,
            "csrf_token": self.csrf_token,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "auth_method": self.auth_method,
            "state": self.state,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            role=data["role"],
            email=data["email"],
            display_name=data.get("display_name") or data["email"],
            csrf_token=data["csrf_token"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            auth_method=data.get("auth_method", "password"),
            state=data.get("state", cls.AUTHENTICATED),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class AuditEntry:
    id: int
    user_id: str
    action: str
    target_type: str
    target_id: Optional[str] = None
    details: Dict | None = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

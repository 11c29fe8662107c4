"""Role hierarchy and capability checks.

Levels are persisted implicitly through the role names stored on users, so
the numeric order below must only change together with a data migration.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional

from intranet_auth.logging import get_logger
from intranet_auth.service.errors import PermissionDenied

logger = get_logger(__name__)

WILDCARD = "*"


class Role(str, Enum):
    NONE = "none"
    ALUMNI = "alumni"
    MITGLIED = "mitglied"
    RESSORTLEITER = "ressortleiter"
    ALUMNI_VORSTAND = "alumni-vorstand"
    V3 = "3v"
    V2 = "2v"
    V1 = "1v"
    VORSTAND = "vorstand"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Return the enum member for ``value`` or raise ``ValueError``."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValueError(f"unknown role: {value!r}")
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unknown role: {value!r}") from None

    @property
    def level(self) -> int:
        return ROLE_TABLE[self].level

    @property
    def capabilities(self) -> FrozenSet[str]:
        return ROLE_TABLE[self].capabilities

    @property
    def is_super_admin(self) -> bool:
        return self in SUPER_ADMIN_ROLES


@dataclass(frozen=True)
class RoleSpec:
    level: int
    capabilities: FrozenSet[str]


_ALL = frozenset({WILDCARD})

ROLE_TABLE: dict[Role, RoleSpec] = {
    Role.NONE: RoleSpec(0, frozenset()),
    Role.ALUMNI: RoleSpec(10, frozenset({"edit_own_profile", "edit_inventory"})),
    Role.MITGLIED: RoleSpec(20, frozenset({"edit_own_profile", "apply_projects"})),
    Role.RESSORTLEITER: RoleSpec(
        30,
        frozenset(
            {
                "edit_news",
                "edit_projects",
                "edit_events",
                "apply_projects",
                "edit_own_profile",
                "edit_inventory",
            }
        ),
    ),
    Role.ALUMNI_VORSTAND: RoleSpec(40, _ALL),
    Role.V3: RoleSpec(41, _ALL),
    Role.V2: RoleSpec(42, _ALL),
    Role.V1: RoleSpec(43, _ALL),
    Role.VORSTAND: RoleSpec(50, _ALL),
    Role.ADMIN: RoleSpec(60, _ALL),
}

# Reviewed with the board: every board position carries the wildcard.
SUPER_ADMIN_ROLES: FrozenSet[Role] = frozenset(
    {Role.ADMIN, Role.VORSTAND, Role.V1, Role.V2, Role.V3, Role.ALUMNI_VORSTAND}
)

# Lowest board position; invitations, alumni validation and the audit log require it.
BOARD_LEVEL = Role.ALUMNI_VORSTAND.level

# Granted to any signed-in role above NONE, independent of the table.
_AUTHENTICATED_CAPABILITIES = frozenset({"view_inventory"})


@dataclass(frozen=True)
class Principal:
    """The caller as seen by permission checks."""

    user_id: str
    role: Role
    is_alumni_validated: bool = False

    @classmethod
    def of(cls, user_id: str, role: "str | Role", is_alumni_validated: bool = False) -> "Principal":
        return cls(user_id=user_id, role=Role.parse(role), is_alumni_validated=is_alumni_validated)

    @property
    def effective_role(self) -> Role:
        # Unvalidated alumni are treated as having no role until the board confirms them.
        if self.role is Role.ALUMNI and not self.is_alumni_validated:
            return Role.NONE
        return self.role

    @property
    def is_super_admin(self) -> bool:
        return self.effective_role.is_super_admin

    def check_permission(self, required: "Role | str | int") -> bool:
        effective = self.effective_role
        if effective.is_super_admin:
            return True
        required_level = required if isinstance(required, int) else Role.parse(required).level
        return effective.level >= required_level

    def can(self, capability: str) -> bool:
        effective = self.effective_role
        if effective is Role.NONE:
            return False
        caps = effective.capabilities
        return WILDCARD in caps or capability in caps or capability in _AUTHENTICATED_CAPABILITIES

    def require(self, required: "Role | str | int", *, action: str) -> None:
        if not self.check_permission(required):
            logger.warning(
                "permission_denied",
                user_id=self.user_id,
                role=self.role.value,
                effective_role=self.effective_role.value,
                action=action,
            )
            raise PermissionDenied()

    def require_capability(self, capability: str) -> None:
        if not self.can(capability):
            logger.warning(
                "permission_denied",
                user_id=self.user_id,
                role=self.role.value,
                action=capability,
            )
            raise PermissionDenied()


def check_role_assignment(actor: Principal, target_role: "Role | str", *, target_user_id: Optional[str] = None) -> Role:
    """Validate that ``actor`` may hand out ``target_role``.

    Super-admins may assign any role; everyone else only roles strictly below
    their own effective level. Returns the parsed role.
    """
    role = Role.parse(target_role)
    if actor.is_super_admin:
        return role
    if role.level >= actor.effective_role.level:
        logger.warning(
            "role_escalation_denied",
            user_id=actor.user_id,
            role=actor.role.value,
            target_role=role.value,
            target_user_id=target_user_id,
        )
        raise PermissionDenied()
    return role


__all__ = [
    "BOARD_LEVEL",
    "Principal",
    "ROLE_TABLE",
    "Role",
    "RoleSpec",
    "SUPER_ADMIN_ROLES",
    "WILDCARD",
    "check_role_assignment",
]

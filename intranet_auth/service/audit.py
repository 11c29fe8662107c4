from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from intranet_auth.logging import get_logger
from intranet_auth.service.roles import BOARD_LEVEL, Principal
from intranet_auth.storage.errors import StorageUnavailable
from intranet_auth.storage.interfaces import ContentStore, IdentityStore
from intranet_auth.storage.models import AuditEntry, User

logger = get_logger(__name__)

MAX_PAGE_SIZE = 200


@dataclass
class AuditRecord:
    entry: AuditEntry
    user: Optional[User]


class AuditLog:
    """Administrative audit trail kept in the content database.

    Entries reference users by id only. Reading them back joins against the
    identity store here; entries of deleted users come back with ``user=None``.
    """

    def __init__(self, content: ContentStore, identity: IdentityStore) -> None:
        self.content = content
        self.identity = identity

    def record(
        self,
        user_id: str,
        action: str,
        target_type: str,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEntry:
        try:
            return self.content.append_audit_entry(
                user_id, action, target_type, target_id, details, ip_address
            )
        except StorageUnavailable:
            logger.error(
                "audit_write_failed",
                user_id=user_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
            )
            raise

    def list_entries(
        self,
        actor: Principal,
        *,
        target_type: Optional[str] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditRecord]:
        actor.require(BOARD_LEVEL, action="audit.list")
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        entries = self.content.list_audit_entries(
            target_type=target_type, action=action, user_id=user_id, limit=limit, offset=offset
        )
        users: dict[str, Optional[User]] = {}
        for entry in entries:
            if entry.user_id not in users:
                users[entry.user_id] = self.identity.get_user(entry.user_id)
        return [AuditRecord(entry=entry, user=users[entry.user_id]) for entry in entries]


__all__ = ["AuditLog", "AuditRecord"]

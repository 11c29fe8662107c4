from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from intranet_auth.logging import get_logger
from intranet_auth.storage.common import (
    SecretCipher,
    check_totp_invariant,
    require_known_role,
    truncate_user_agent,
)
from intranet_auth.storage.errors import ConstraintViolation, StorageUnavailable
from intranet_auth.storage.models import (
    AuditEntry,
    Invitation,
    LoginAttempt,
    User,
    normalize_email,
    utcnow,
)

_USER_COLUMNS = (
    "id, email, password, firstname, lastname, role, totp_secret, totp_enabled, "
    "totp_verified_at, is_alumni_validated, alumni_status_requested_at, created_at, updated_at"
)
_INVITATION_COLUMNS = "id, email, token, role, created_by, created_at, expires_at, accepted_at"


class _PostgresBase:
    """Connection pool handling shared by both databases."""

    backend_name = "database"
    required_tables: tuple[str, ...] = ()

    def __init__(self, dsn: str, *, verify_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "database_unavailable", backend=self.backend_name, error=str(exc)
            )
            raise StorageUnavailable(self.backend_name, "database unreachable") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure required tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables in the {} database: {}. Apply the files in sql/ first.".format(
                    self.backend_name, ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()


class PostgresIdentityStore(_PostgresBase):
    """Identity database: users, login attempt ledger and invitation ledger."""

    backend_name = "identity"
    required_tables = ("users", "login_attempts", "invitations")

    def __init__(
        self,
        dsn: str,
        *,
        totp_encryption_key: Optional[str] = None,
        verify_schema: bool = True,
    ) -> None:
        self._cipher = SecretCipher(totp_encryption_key)
        super().__init__(dsn, verify_schema=verify_schema)

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row["role"],
            firstname=row.get("firstname") or "",
            lastname=row.get("lastname") or "",
            password_hash=row.get("password"),
            totp_secret=self._cipher.decrypt(row.get("totp_secret")),
            totp_enabled=bool(row.get("totp_enabled")),
            totp_verified_at=row.get("totp_verified_at"),
            is_alumni_validated=bool(row.get("is_alumni_validated")),
            alumni_status_requested_at=row.get("alumni_status_requested_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_invitation(row: Dict[str, Any]) -> Invitation:
        return Invitation(
            id=int(row["id"]),
            email=row["email"],
            token=row["token"],
            role=row["role"],
            created_by=str(row["created_by"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            accepted_at=row.get("accepted_at"),
        )

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
        role_value = require_known_role(role)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, password, firstname, lastname, role, is_alumni_validated)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        normalize_email(email),
                        password_hash,
                        firstname,
                        lastname,
                        role_value,
                        is_alumni_validated,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def _update_user(self, user_id: str, assignments: Dict[str, Any]) -> Optional[User]:
        columns = ", ".join(f"{column} = %s" for column in assignments)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {columns}, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
                (*assignments.values(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(
        self,
        user_id: str,
        role: str,
        *,
        is_alumni_validated: Optional[bool] = None,
        alumni_status_requested_at: Optional[datetime] = None,
    ) -> Optional[User]:
        assignments: Dict[str, Any] = {"role": require_known_role(role)}
        if is_alumni_validated is not None:
            assignments["is_alumni_validated"] = is_alumni_validated
        if alumni_status_requested_at is not None:
            assignments["alumni_status_requested_at"] = alumni_status_requested_at
        return self._update_user(user_id, assignments)

    def set_alumni_validated(self, user_id: str, validated: bool) -> Optional[User]:
        return self._update_user(user_id, {"is_alumni_validated": validated})

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, {"password": password_hash})

    def set_totp(
        self,
        user_id: str,
        secret: Optional[str],
        *,
        enabled: bool,
        verified_at: Optional[datetime] = None,
    ) -> Optional[User]:
        check_totp_invariant(secret, enabled)
        assignments: Dict[str, Any] = {
            "totp_secret": self._cipher.encrypt(secret),
            "totp_enabled": enabled,
        }
        if verified_at is not None or not enabled:
            assignments["totp_verified_at"] = verified_at
        return self._update_user(user_id, assignments)

    def list_users(
        self, *, role: Optional[str] = None, is_alumni_validated: Optional[bool] = None
    ) -> List[User]:
        clauses = []
        params: List[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if is_alumni_validated is not None:
            clauses.append("is_alumni_validated = %s")
            params.append(is_alumni_validated)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users {where} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # login attempt ledger
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        email = normalize_email(attempt.email) if attempt.email else None
        user_agent = truncate_user_agent(attempt.user_agent)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO login_attempts (ip_address, email, attempt_time, success, user_agent)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id
                """,
                (attempt.ip_address, email, attempt.attempt_time, attempt.success, user_agent),
            ).fetchone()
        return LoginAttempt(
            id=int(row["id"]),
            ip_address=attempt.ip_address,
            email=email,
            success=attempt.success,
            attempt_time=attempt.attempt_time,
            user_agent=user_agent,
        )

    def count_failed_attempts(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
    ) -> int:
        if ip_address is None and email is None:
            return 0
        clauses = ["success = FALSE", "attempt_time > %s"]
        params: List[Any] = [since]
        if ip_address is not None:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        if email is not None:
            clauses.append("email = %s")
            params.append(normalize_email(email))
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS failures FROM login_attempts WHERE {' AND '.join(clauses)}",
                params,
            ).fetchone()
        return int(row["failures"]) if row else 0

    def delete_attempts_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM login_attempts WHERE attempt_time < %s", (cutoff,))
            return cur.rowcount or 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO invitations (email, token, role, created_by, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_INVITATION_COLUMNS}
                    """,
                    (normalize_email(email), token, role_value, created_by, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token collision", {"field": "token"})
        return self._row_to_invitation(row)

    def get_invitation(self, invitation_id: int) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE id = %s",
                (invitation_id,),
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE token = %s",
                (token,),
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def list_pending_invitations(self, now: datetime) -> List[Invitation]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_INVITATION_COLUMNS} FROM invitations
                WHERE accepted_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (now,),
            ).fetchall()
        return [self._row_to_invitation(row) for row in rows]

    def delete_invitation(self, invitation_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM invitations WHERE id = %s", (invitation_id,))
            return bool(cur.rowcount)

    def delete_expired_invitations(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM invitations WHERE accepted_at IS NULL AND expires_at <= %s",
                (now,),
            )
            return cur.rowcount or 0

    def redeem_invitation(
        self,
        token: str,
        *,
        firstname: str,
        lastname: str,
        password_hash: str,
        now: datetime,
    ) -> Optional[User]:
        """Mark the invitation accepted and create its user in one transaction.

        The conditional UPDATE is the only gate: of two concurrent callers
        exactly one sees a returned row. Returns ``None`` for the loser and
        for missing or expired tokens.
        """
        try:
            with self._connect() as conn, conn.transaction():
                claimed = conn.execute(
                    """
                    UPDATE invitations SET accepted_at = %s
                    WHERE token = %s AND accepted_at IS NULL AND expires_at > %s
                    RETURNING email, role
                    """,
                    (now, token, now),
                ).fetchone()
                if not claimed:
                    return None
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, password, firstname, lastname, role, is_alumni_validated)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        claimed["email"],
                        password_hash,
                        firstname,
                        lastname,
                        claimed["role"],
                        claimed["role"] == "alumni",
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)


class PostgresContentStore(_PostgresBase):
    """Content database. Only the audit log is used by the auth core."""

    backend_name = "content"
    required_tables = ("system_logs",)

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> AuditEntry:
        details = row.get("details")
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEntry(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            action=row["action"],
            target_type=row["target_type"],
            target_id=row.get("target_id"),
            details=details,
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
        )

    def append_audit_entry(
        self,
        user_id: str,
        action: str,
        target_type: str,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO system_logs (user_id, action, target_type, target_id, details, ip_address)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id, user_id, action, target_type, target_id, details, ip_address, created_at
                """,
                (
                    user_id,
                    action,
                    target_type,
                    target_id,
                    json.dumps(details) if details else None,
                    ip_address,
                ),
            ).fetchone()
        return self._row_to_entry(row)

    def list_audit_entries(
        self,
        *,
        target_type: Optional[str] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEntry]:
        clauses = []
        params: List[Any] = []
        for column, value in (("target_type", target_type), ("action", action), ("user_id", user_id)):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, user_id, action, target_type, target_id, details, ip_address, created_at
                FROM system_logs {where}
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

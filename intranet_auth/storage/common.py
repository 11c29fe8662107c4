"""Helpers shared by the memory and Postgres identity stores."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from intranet_auth.logging import get_logger
from intranet_auth.service.roles import Role
from intranet_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

USER_AGENT_MAX_LENGTH = 500
FERNET_TOKEN_PREFIX = "gAAAAA"


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest.

    Values without the Fernet token prefix are plain base32 rows written by
    older deployments and are returned unchanged until re-enrolled. Tokens
    that no longer decrypt read back as ``None``.
    """

    def __init__(self, key_material: Optional[str] = None, *, allow_ephemeral: bool = False) -> None:
        if key_material:
            self._fernet = Fernet(self._derive_key(key_material))
        elif allow_ephemeral:
            logger.warning(
                "totp_encryption_key_ephemeral",
                message="No TOTP_ENCRYPTION_KEY configured; secrets will not survive a restart",
            )
            self._fernet = Fernet(Fernet.generate_key())
        else:
            raise RuntimeError("TOTP_ENCRYPTION_KEY is required to store TOTP secrets")

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        if not secret.startswith(FERNET_TOKEN_PREFIX):
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.error("totp_secret_decrypt_failed")
            return None


def require_known_role(role: str) -> str:
    try:
        return Role.parse(role).value
    except ValueError as exc:
        raise ConstraintViolation("unknown role", {"field": "role", "value": role}) from exc


def check_totp_invariant(secret: Optional[str], enabled: bool) -> None:
    if enabled and not secret:
        raise ConstraintViolation(
            "totp cannot be enabled without a secret", {"field": "totp_secret"}
        )


def truncate_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if user_agent is None:
        return None
    return user_agent[:USER_AGENT_MAX_LENGTH]

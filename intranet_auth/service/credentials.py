"""Password hashing and TOTP verification.

Every verifier here returns ``False`` rather than raising, so callers cannot
tell a malformed input apart from a wrong one.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from typing import Optional
from urllib.parse import quote, urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from intranet_auth.logging import get_logger

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_SECRET_BYTES = 20
# Current step plus one step either side for clock drift
TOTP_DRIFT_STEPS = 1

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    try:
        return _pwd_hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_unreadable")
        return False


def password_needs_rehash(password_hash: str) -> bool:
    try:
        return _pwd_hasher.check_needs_rehash(password_hash)
    except InvalidHash:
        return True


def generate_totp_secret() -> str:
    return base64.b32encode(os.urandom(TOTP_SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return None


def generate_totp_code(secret: str, timestamp: Optional[float] = None) -> str:
    """Return the code for the time step containing ``timestamp``.

    Returns an empty string for a secret that is not valid base32.
    """
    key = _decode_secret(secret or "")
    if not key:
        logger.warning("totp_secret_invalid")
        return ""
    now = time.time() if timestamp is None else timestamp
    counter = int(now // TOTP_INTERVAL).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def verify_totp_code(secret: Optional[str], code: Optional[str], *, at: Optional[float] = None) -> bool:
    if not secret or not isinstance(code, str):
        return False
    code = code.strip()
    if len(code) != TOTP_DIGITS or not code.isascii() or not code.isdigit():
        return False
    now = time.time() if at is None else at
    matched = False
    for offset in range(-TOTP_DRIFT_STEPS, TOTP_DRIFT_STEPS + 1):
        generated = generate_totp_code(secret, now + offset * TOTP_INTERVAL)
        if not generated:
            return False
        # Check every step so timing does not reveal which window matched
        if hmac.compare_digest(generated, code):
            matched = True
    return matched


def totp_provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe="@:")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"


__all__ = [
    "TOTP_DIGITS",
    "TOTP_INTERVAL",
    "generate_totp_code",
    "generate_totp_secret",
    "hash_password",
    "password_needs_rehash",
    "totp_provisioning_uri",
    "verify_password",
    "verify_totp_code",
]

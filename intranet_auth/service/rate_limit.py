from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from ipaddress import ip_address
from typing import Callable, Mapping, Optional

from intranet_auth.config import Settings
from intranet_auth.logging import get_logger
from intranet_auth.storage.interfaces import IdentityStore
from intranet_auth.storage.models import LoginAttempt

logger = get_logger(__name__)

UNKNOWN_IP = "unknown"


def _valid_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.strip()
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def client_ip(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    *,
    trust_proxy_headers: bool = True,
) -> str:
    """Resolve the address used for IP-based limiting.

    Order: first entry of X-Forwarded-For, X-Real-IP, then the socket peer.
    Invalid values are skipped; with nothing usable the result is "unknown".
    """
    if trust_proxy_headers:
        forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
        if forwarded:
            first = _valid_ip(forwarded.split(",")[0])
            if first:
                return first
        real_ip = _valid_ip(headers.get("x-real-ip") or headers.get("X-Real-IP"))
        if real_ip:
            return real_ip
    return _valid_ip(remote_addr) or UNKNOWN_IP


class RateLimiter:
    """Failed-login limiter over the login attempt ledger.

    A client is blocked when either its IP or the targeted email has
    ``login_max_attempts`` failures inside the trailing window. Successful
    logins are recorded but never reset the count.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.max_attempts = settings.login_max_attempts
        self.window = timedelta(seconds=settings.login_window_seconds)
        self.retention = timedelta(days=settings.login_attempt_retention_days)
        self.cleanup_probability = settings.attempt_cleanup_probability
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = rng

    def _now(self) -> datetime:
        return self._clock()

    def is_rate_limited(self, ip: Optional[str], email: Optional[str]) -> bool:
        since = self._now() - self.window
        if ip:
            ip_failures = self.store.count_failed_attempts(since=since, ip_address=ip)
            if ip_failures >= self.max_attempts:
                logger.warning("login_rate_limited", scope="ip", ip=ip, failures=ip_failures)
                return True
        if email:
            email_failures = self.store.count_failed_attempts(since=since, email=email)
            if email_failures >= self.max_attempts:
                logger.warning(
                    "login_rate_limited", scope="email", email=email, failures=email_failures
                )
                return True
        return False

    def record_attempt(
        self,
        ip: Optional[str],
        email: Optional[str],
        success: bool,
        user_agent: Optional[str] = None,
    ) -> LoginAttempt:
        attempt = self.store.record_login_attempt(
            LoginAttempt(
                ip_address=ip or UNKNOWN_IP,
                email=email or None,
                success=success,
                attempt_time=self._now(),
                user_agent=user_agent,
            )
        )
        self.maybe_cleanup()
        return attempt

    def cleanup_old_attempts(self) -> int:
        cutoff = self._now() - self.retention
        removed = self.store.delete_attempts_before(cutoff)
        if removed:
            logger.info("login_attempts_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed

    def maybe_cleanup(self) -> int:
        if self._rng() >= self.cleanup_probability:
            return 0
        return self.cleanup_old_attempts()


__all__ = ["RateLimiter", "UNKNOWN_IP", "client_ip"]

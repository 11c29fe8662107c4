from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or integrity rule is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the identity, content or session store cannot be reached.

    ``backend`` names the store for server-side diagnostics; callers must
    treat it as a denial and never fall back to granting access.
    """

    def __init__(self, backend: str, message: str = "storage unavailable"):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


__all__ = ["ConstraintViolation", "StorageUnavailable"]

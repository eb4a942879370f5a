from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheError(Exception):
    """Base class for cache-store failures."""

    def __init__(self, message: str, *, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key


class CacheUnavailableError(CacheError):
    """Cache store unreachable or a command exceeded its deadline."""


class CacheDecodeError(CacheError):
    """Stored value could not be decoded. Distinct from a miss."""


__all__ = [
    "ConstraintViolation",
    "CacheError",
    "CacheUnavailableError",
    "CacheDecodeError",
]

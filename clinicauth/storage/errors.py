from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheDataError(Exception):
    """Raised when a cache entry cannot be decoded into its record type."""

    def __init__(self, key: str, message: str = "corrupted cache entry"):
        super().__init__(f"{message}: {key}")
        self.key = key
        self.message = message


__all__ = ["ConstraintViolation", "CacheDataError"]

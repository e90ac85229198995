from __future__ import annotations

from typing import Any, Dict, Optional


class StoreWriteFailed(Exception):
    """Raised when a persistence call against the backing store fails."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreWriteFailed):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


__all__ = ["ConstraintViolation", "StoreWriteFailed"]

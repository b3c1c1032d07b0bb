from __future__ import annotations

from typing import Any, Dict, Optional


class PersistenceError(Exception):
    """Raised when the backing store fails to read or write a record."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(PersistenceError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


__all__ = ["PersistenceError", "ConstraintViolation"]

from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for credential store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write (duplicate email, name, client id)."""


class StoreUnavailable(StorageError):
    """The backing database did not answer within the configured timeout."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]

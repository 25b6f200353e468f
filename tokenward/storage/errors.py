from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness, FK, or token lifecycle constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleTokenState(ConstraintViolation):
    """The token a rotation depended on stopped being ACTIVE before the write."""


class StorageUnavailable(Exception):
    """Backing database or cache could not be reached."""

    def __init__(self, message: str, *, backend: str):
        super().__init__(message)
        self.message = message
        self.backend = backend


__all__ = ["ConstraintViolation", "StaleTokenState", "StorageUnavailable"]

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A registry write would break a uniqueness or foreign-key rule.

    Raised for duplicate emails, sessions for unknown users, and a second
    active session slipping past the one-active-session index.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class SignalType(str, Enum):
    SESSION_CREATED = "SessionCreated"
    SESSION_INVALIDATED = "SessionInvalidated"
    LOGOUT = "Logout"


class InvalidationReason(str, Enum):
    EXPIRED = "expired"
    REVOKED_ELSEWHERE = "revoked-elsewhere"
    LOGGED_IN_ELSEWHERE = "logged-in-elsewhere"
    LOGGED_OUT_ELSEWHERE = "logged-out-elsewhere"


class CrossTabSignal(BaseModel):
    """Message exchanged between tabs of one browser profile.

    ``signal_id`` keeps two identical signals distinguishable, so the
    storage channel fires a change event for each of them.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", use_enum_values=True)

    type: SignalType
    tab_id: str
    user_id: Optional[str] = None
    timestamp: float = Field(default_factory=lambda: time.time() * 1000)
    signal_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["CrossTabSignal"]:
        """Parse a signal, or None for anything that is not one."""
        if not raw:
            return None
        try:
            return cls.model_validate_json(raw)
        except ValidationError:
            return None

    @classmethod
    def from_message(cls, message: Any) -> Optional["CrossTabSignal"]:
        if isinstance(message, cls):
            return message
        if not isinstance(message, dict):
            return None
        try:
            return cls.model_validate(message)
        except ValidationError:
            return None


@dataclass(frozen=True)
class SessionInvalidated:
    """Surfaced once per session when a tab loses it."""

    reason: str
    user_id: Optional[str]
    tab_id: str


__all__ = ["SignalType", "InvalidationReason", "CrossTabSignal", "SessionInvalidated"]

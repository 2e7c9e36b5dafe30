from __future__ import annotations

from typing import Optional


class ClientError(Exception):
    """Base class for errors raised by the per-tab session client."""


class NetworkUnavailableError(ClientError):
    """The request never reached the server; the local session is untouched."""


class NoSessionError(ClientError):
    """An authenticated call was attempted from a tab with no session."""


class SessionInvalidatedError(ClientError):
    """The tab's session ended; ``reason`` says why."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"session invalidated: {reason}")
        self.reason = reason


class ApiError(ClientError):
    """The server answered with an error envelope."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        details: Optional[object] = None,
    ) -> None:
        super().__init__(f"{status} {code}: {message}")
        self.status = status
        self.code = code
        self.message = message
        self.details = details


__all__ = [
    "ClientError",
    "NetworkUnavailableError",
    "NoSessionError",
    "SessionInvalidatedError",
    "ApiError",
]

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import httpx

from youandme_auth.client.errors import (
    ApiError,
    NetworkUnavailableError,
    NoSessionError,
    SessionInvalidatedError,
)
from youandme_auth.client.signals import InvalidationReason
from youandme_auth.client.store import ClientSessionStore
from youandme_auth.logging import get_logger
from youandme_auth.tokens import is_expired

logger = get_logger(__name__)


def error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    return error.get("code") if isinstance(error, dict) else None


def unwrap(response: httpx.Response) -> Dict[str, Any]:
    """Return the envelope's ``data`` or raise ``ApiError``."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise ApiError(response.status_code, "server_error", "unexpected response body")
    if response.status_code >= 400 or body.get("status") == "error":
        error = body.get("error") or {}
        raise ApiError(
            response.status_code,
            error.get("code") or "server_error",
            error.get("message") or "request failed",
            error.get("details"),
        )
    return body.get("data") or {}


def reason_for_401(response: httpx.Response) -> str:
    if error_code(response) == "token_expired":
        return InvalidationReason.EXPIRED.value
    return InvalidationReason.REVOKED_ELSEWHERE.value


class TokenLifecycleGuard:
    """Attaches the tab's bearer token and turns auth failures into logouts.

    There is no silent refresh: an expired token or any 401 ends the tab's
    session through ``on_invalidated``, which the owner makes idempotent.
    """

    def __init__(
        self,
        http: httpx.Client,
        store: ClientSessionStore,
        *,
        on_invalidated: Callable[[str], None],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.http = http
        self.store = store
        self.on_invalidated = on_invalidated
        self.clock = clock

    def send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = self.store.get_token()
        if not token:
            raise NoSessionError("no active session in this tab")
        if is_expired(token, now=self.clock()):
            logger.info("client_token_expired_preflight", tab_id=self.store.tab_id)
            self.on_invalidated(InvalidationReason.EXPIRED.value)
            raise SessionInvalidatedError(InvalidationReason.EXPIRED.value)

        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        try:
            response = self.http.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("client_network_unavailable", url=url, error=str(exc))
            raise NetworkUnavailableError(str(exc)) from exc

        if response.status_code == 401:
            reason = reason_for_401(response)
            logger.info(
                "client_session_rejected",
                tab_id=self.store.tab_id,
                url=url,
                error_code=error_code(response),
            )
            self.on_invalidated(reason)
            raise SessionInvalidatedError(reason)
        return response

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import httpx

from youandme_auth.client.channels import BrowserProfile, EventBus, Subscription, TabStorage
from youandme_auth.client.errors import (
    ApiError,
    NetworkUnavailableError,
    NoSessionError,
    SessionInvalidatedError,
)
from youandme_auth.client.guard import TokenLifecycleGuard, unwrap
from youandme_auth.client.notifier import Notifier, create_notifier
from youandme_auth.client.signals import (
    CrossTabSignal,
    InvalidationReason,
    SessionInvalidated,
    SignalType,
)
from youandme_auth.client.store import ClientSessionStore
from youandme_auth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TwoFactorChallenge:
    temp_token: str
    expires_at: Optional[str] = None


class SessionManager:
    """Session lifecycle of one browser tab.

    Holds the tab's store, its cross-tab notifier and the request guard.
    ``http_client`` must be configured with the API's base URL; paths are
    given relative to ``api_prefix``.

    A tab is either active (tokens stored) or idle. It leaves the active
    state on expiry, on a 401, on an explicit logout, or when a sibling tab
    reports that the same user logged in, was revoked, or logged out. Every
    exit surfaces exactly one ``SessionInvalidated`` event except explicit
    logout, which broadcasts ``Logout`` instead.
    """

    def __init__(
        self,
        profile: BrowserProfile,
        http_client: httpx.Client,
        *,
        tab_storage: Optional[TabStorage] = None,
        notifier: Optional[Notifier] = None,
        grace_seconds: float = 0.1,
        clock: Callable[[], float] = time.time,
        api_prefix: str = "/v1",
    ) -> None:
        self.profile = profile
        self.http = http_client
        self.api_prefix = api_prefix.rstrip("/")
        self.store = ClientSessionStore(
            tab_storage if tab_storage is not None else TabStorage(),
            grace_seconds=grace_seconds,
            clock=clock,
        )
        self.tab_id = self.store.tab_id
        self.notifier = notifier or create_notifier(profile, self.tab_id)
        self.store.attach_notifier(self.notifier)
        self.events: EventBus[SessionInvalidated] = EventBus()
        self.clock = clock
        self.guard = TokenLifecycleGuard(
            http_client, self.store, on_invalidated=self._invalidate, clock=clock
        )
        self._subscription = self.notifier.subscribe(self._handle_signal)
        self._closed = False
        # Signals emitted before this tab signed in describe an older state
        self._session_started_at = 0.0

    @property
    def is_active(self) -> bool:
        return self.store.has_session()

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}/{path.lstrip('/')}"

    def _post_public(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.http.post(self._url(path), json=payload)
        except httpx.TransportError as exc:
            raise NetworkUnavailableError(str(exc)) from exc
        return unwrap(response)

    # sign in

    def login(
        self, email: str, password: str, code: Optional[str] = None
    ) -> Union[Dict[str, Any], TwoFactorChallenge]:
        payload: Dict[str, Any] = {"email": email, "password": password}
        if code:
            payload["two_factor_code"] = code
        data = self._post_public("/auth/login", payload)
        if data.get("requires_two_factor"):
            return TwoFactorChallenge(temp_token=data["temp_token"], expires_at=data.get("expires_at"))
        return self._activate(data)

    def complete_two_factor(self, temp_token: str, code: str) -> Dict[str, Any]:
        data = self._post_public("/auth/login/2fa", {"temp_token": temp_token, "code": code})
        return self._activate(data)

    def _activate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user = data["user"]
        self.store.store_session(data["access_token"], data["refresh_token"], user)
        self._session_started_at = self.clock() * 1000
        self.notifier.publish(
            CrossTabSignal(
                type=SignalType.SESSION_CREATED,
                tab_id=self.tab_id,
                user_id=user["id"],
                timestamp=self._session_started_at,
            )
        )
        logger.info("client_session_started", tab_id=self.tab_id, user_id=user["id"])
        return user

    def refresh(self) -> Dict[str, Any]:
        """Trade the stored refresh token for a new pair."""
        refresh_token = self.store.get_refresh_token()
        if not refresh_token:
            raise NoSessionError("no refresh token in this tab")
        payload = {"refresh_token": refresh_token, "access_token": self.store.get_token()}
        try:
            data = self._post_public("/auth/refresh", payload)
        except ApiError as exc:
            if exc.status != 401:
                raise
            reason = (
                InvalidationReason.REVOKED_ELSEWHERE.value
                if exc.code == "session_revoked"
                else InvalidationReason.EXPIRED.value
            )
            self._invalidate(reason)
            raise SessionInvalidatedError(reason) from exc
        self.store.store_session(data["access_token"], data["refresh_token"], data["user"])
        return data["user"]

    # sign out

    def logout(self) -> bool:
        """End the session server side when reachable, then locally."""
        token = self.store.get_token()
        revoked = False
        if token:
            try:
                response = self.http.post(
                    self._url("/auth/logout"), headers={"Authorization": f"Bearer {token}"}
                )
                if response.status_code == 200:
                    revoked = bool(unwrap(response).get("revoked"))
                else:
                    logger.warning(
                        "client_logout_rejected",
                        tab_id=self.tab_id,
                        status_code=response.status_code,
                    )
            except (httpx.TransportError, ApiError) as exc:
                logger.warning("client_logout_request_failed", tab_id=self.tab_id, error=str(exc))
        self.store.clear_session(broadcast=True)
        return revoked

    def broadcast_session_invalidation(self, user_id: Optional[str] = None) -> None:
        """Tell sibling tabs that this user's sessions are gone server side."""
        target = user_id or self.store.current_user_id()
        if not target:
            return
        self.notifier.publish(
            CrossTabSignal(
                type=SignalType.SESSION_INVALIDATED,
                tab_id=self.tab_id,
                user_id=target,
                timestamp=self.clock() * 1000,
            )
        )

    # authenticated calls

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if not url.startswith(("http://", "https://", self.api_prefix + "/")):
            url = self._url(url)
        return self.guard.send(method, url, **kwargs)

    def current_user(self) -> Optional[Dict[str, Any]]:
        return self.store.get_current_user()

    def on_session_invalidated(self, callback: Callable[[SessionInvalidated], None]) -> Subscription:
        return self.events.subscribe(callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._subscription.close()
        self.notifier.close()
        self.events.clear()

    # cross-tab

    def _handle_signal(self, signal: CrossTabSignal) -> None:
        if signal.tab_id == self.tab_id:
            return
        if self.store.is_clearing or self.store.invalidated or not self.store.has_session():
            return
        if signal.timestamp < self._session_started_at:
            return
        current_user_id = self.store.current_user_id()
        if signal.type == SignalType.SESSION_CREATED:
            if signal.user_id and signal.user_id == current_user_id:
                self._invalidate(InvalidationReason.LOGGED_IN_ELSEWHERE.value)
        elif signal.type == SignalType.SESSION_INVALIDATED:
            if signal.user_id and signal.user_id == current_user_id:
                self._invalidate(InvalidationReason.REVOKED_ELSEWHERE.value)
        elif signal.type == SignalType.LOGOUT:
            self._invalidate(InvalidationReason.LOGGED_OUT_ELSEWHERE.value)

    def _invalidate(self, reason: str) -> None:
        if not self.store.mark_invalidated():
            return
        user_id = self.store.current_user_id()
        self.store.clear_session(broadcast=False)
        logger.info("client_session_invalidated", tab_id=self.tab_id, reason=reason)
        self.events.publish(SessionInvalidated(reason=reason, user_id=user_id, tab_id=self.tab_id))

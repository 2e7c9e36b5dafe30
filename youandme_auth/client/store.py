from __future__ import annotations

import json
import secrets
import string
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from youandme_auth.client.channels import TabStorage
from youandme_auth.client.signals import CrossTabSignal, SignalType
from youandme_auth.logging import get_logger

if TYPE_CHECKING:
    from youandme_auth.client.notifier import Notifier

logger = get_logger(__name__)

SESSION_TOKEN_KEY = "session_auth_token"
SESSION_REFRESH_KEY = "session_refresh_token"
SESSION_USER_KEY = "session_user"
TAB_ID_KEY = "session_tab_id"

_SESSION_KEYS = (SESSION_TOKEN_KEY, SESSION_REFRESH_KEY, SESSION_USER_KEY)
_BASE36 = string.digits + string.ascii_lowercase


def new_tab_id(clock: Callable[[], float] = time.time) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"tab_{int(clock() * 1000)}_{suffix}"


class ClientSessionStore:
    """Session state of a single tab, kept in tab-scoped storage.

    Each tab owns its own token pair; nothing here is shared with sibling
    tabs. ``clear_session`` raises a re-entrancy flag for ``grace_seconds``
    so that work triggered by the clear (listeners, incoming echoes) cannot
    start a second clear or a second broadcast.
    """

    def __init__(
        self,
        storage: Optional[TabStorage] = None,
        *,
        grace_seconds: float = 0.1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage if storage is not None else TabStorage()
        self.grace_seconds = grace_seconds
        self.clock = clock
        self._clearing_until = 0.0
        self._invalidated = False
        self._notifier: Optional["Notifier"] = None
        self.tab_id = self._ensure_tab_id()

    def _ensure_tab_id(self) -> str:
        tab_id = self.storage.get_item(TAB_ID_KEY)
        if not tab_id:
            tab_id = new_tab_id(self.clock)
            self.storage.set_item(TAB_ID_KEY, tab_id)
        return tab_id

    def attach_notifier(self, notifier: Optional["Notifier"]) -> None:
        self._notifier = notifier

    def store_session(self, access_token: str, refresh_token: str, user: Dict[str, Any]) -> None:
        self.storage.set_item(SESSION_TOKEN_KEY, access_token)
        self.storage.set_item(SESSION_REFRESH_KEY, refresh_token)
        self.storage.set_item(SESSION_USER_KEY, json.dumps(user))
        self._invalidated = False
        # The grace window belonged to the session that was cleared
        self._clearing_until = 0.0

    def get_token(self) -> Optional[str]:
        return self.storage.get_item(SESSION_TOKEN_KEY)

    def get_refresh_token(self) -> Optional[str]:
        return self.storage.get_item(SESSION_REFRESH_KEY)

    def get_current_user(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.get_item(SESSION_USER_KEY)
        if not raw:
            return None
        try:
            user = json.loads(raw)
        except ValueError:
            logger.warning("client_session_user_unreadable", tab_id=self.tab_id)
            return None
        return user if isinstance(user, dict) else None

    def current_user_id(self) -> Optional[str]:
        user = self.get_current_user()
        return user.get("id") if user else None

    def has_session(self) -> bool:
        return bool(self.get_token()) and self.get_current_user() is not None

    @property
    def is_clearing(self) -> bool:
        return self.clock() < self._clearing_until

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def mark_invalidated(self) -> bool:
        """Raise the invalidated flag; False if it was already raised."""
        if self._invalidated:
            return False
        self._invalidated = True
        return True

    def clear_session(self, broadcast: bool = True) -> bool:
        """Drop the tab's tokens; returns False when there was nothing to do."""
        if self.is_clearing:
            return False
        if not any(self.storage.get_item(key) for key in _SESSION_KEYS):
            return False
        user_id = self.current_user_id()
        self._clearing_until = self.clock() + self.grace_seconds
        for key in _SESSION_KEYS:
            self.storage.remove_item(key)
        logger.info("client_session_cleared", tab_id=self.tab_id, broadcast=broadcast)
        if broadcast and self._notifier is not None:
            self._notifier.publish(
                CrossTabSignal(
                    type=SignalType.LOGOUT,
                    tab_id=self.tab_id,
                    user_id=user_id,
                    timestamp=self.clock() * 1000,
                )
            )
        return True

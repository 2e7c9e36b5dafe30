from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Set

from youandme_auth.logging import get_logger
from youandme_auth.service.auth import AuthContext, AuthService, AuthStore
from youandme_auth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    SessionRevokedError,
    TokenExpiredError,
)
from youandme_auth.storage.models import as_utc, utcnow
from youandme_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RevocationEnforcer:
    """Checks every bearer token against the session registry.

    A correctly signed, unexpired token is only honoured while the session
    that minted it is still active and still bound to the token's ``jti``.
    Positive lookups are cached for ``session_validation_cache_seconds``;
    revocation evicts them, so a cached entry never outlives its session.
    """

    def __init__(
        self,
        auth: AuthService,
        store: AuthStore,
        cache: Optional[RedisCache] = None,
        *,
        cache_seconds: int = 60,
    ) -> None:
        self.auth = auth
        self.store = store
        self.cache = cache
        self.cache_seconds = cache_seconds
        self._pending_touches: Set[asyncio.Task] = set()

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> AuthContext:
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.auth.decode_access_token(token)
        token_id = claims["jti"]

        entry = await self._cached_entry(token_id)
        if entry is None:
            entry = await self._resolve_from_store(token_id)
        if entry["user_id"] != claims.get("sub") or entry["session_id"] != claims.get("sid"):
            logger.warning("token_session_mismatch", session_id=entry["session_id"])
            raise SessionRevokedError("session has been revoked")
        if required_role and not self._role_allows(entry["role"], required_role):
            raise ForbiddenError("insufficient role", detail={"required": required_role})

        self._schedule_touch(entry["session_id"])
        return AuthContext(
            user_id=entry["user_id"],
            role=entry["role"],
            session_id=entry["session_id"],
            token_id=token_id,
        )

    async def _resolve_from_store(self, token_id: str) -> Dict[str, Any]:
        session = self.store.get_session_by_token_id(token_id)
        if not session or not session.is_active:
            logger.info(
                "revoked_token_rejected",
                session_id=session.id if session else None,
                reason=session.revoked_reason if session else "unknown_token",
            )
            raise SessionRevokedError("session has been revoked")
        now = utcnow()
        if session.is_expired(now, leeway=self.auth.clock_skew_leeway):
            await self.auth.expire_session(session.id)
            raise TokenExpiredError("session has expired")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            raise SessionRevokedError("session has been revoked")

        entry = {
            "session_id": session.id,
            "user_id": user.id,
            "role": user.role,
            "expires_at": as_utc(session.expires_at).isoformat(),
        }
        await self._remember(token_id, entry, session.expires_at, now)
        return entry

    async def _cached_entry(self, token_id: str) -> Optional[Dict[str, Any]]:
        if not self.cache:
            return None
        try:
            return await self.cache.get_token_session(token_id)
        except Exception as exc:
            # The registry stays authoritative; fall through to it
            logger.warning("session_cache_read_failed", error=str(exc))
            return None

    async def _remember(
        self,
        token_id: str,
        entry: Dict[str, Any],
        expires_at: datetime,
        now: datetime,
    ) -> None:
        if not self.cache or self.cache_seconds <= 0:
            return
        remaining = int((as_utc(expires_at) - now).total_seconds())
        ttl = min(self.cache_seconds, remaining)
        if ttl <= 0:
            return
        try:
            await self.cache.cache_token_session(token_id, entry, ttl)
        except Exception as exc:
            logger.warning("session_cache_write_failed", error=str(exc))

    @staticmethod
    def _role_allows(role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin" and required in {"admin", "user"}

    # activity stamps

    def _schedule_touch(self, session_id: str) -> None:
        task = asyncio.create_task(self._touch(session_id, utcnow()))
        self._pending_touches.add(task)
        task.add_done_callback(self._pending_touches.discard)

    async def _touch(self, session_id: str, accessed_at: datetime) -> None:
        try:
            await asyncio.to_thread(self.store.touch_session, session_id, accessed_at)
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    async def drain_pending_touches(self) -> None:
        """Wait for in-flight activity stamps; used by shutdown and tests."""
        if self._pending_touches:
            await asyncio.gather(*list(self._pending_touches), return_exceptions=True)

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows, JSON state) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    display_name: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    email_confirmed: bool = False
    meta: Dict | None = None


@dataclass
class Session:
    """One successful login.

    ``token_id`` is the ``jti`` of the access token currently bound to the
    session and changes on every refresh. ``refresh_token_hash`` is an
    argon2id digest; the cleartext refresh token is never stored.
    """

    id: str
    user_id: str
    token_id: str
    refresh_token_hash: str
    issued_at: datetime
    expires_at: datetime
    last_accessed_at: Optional[datetime] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    client_metadata: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_id: str,
        refresh_token_hash: str,
        ttl_minutes: int = 7 * 24 * 60,
        client_metadata: Dict | None = None,
        *,
        session_id: Optional[str] = None,
        issued_at: Optional[datetime] = None,
    ) -> "Session":
        now = issued_at or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_id=token_id,
            refresh_token_hash=refresh_token_hash,
            issued_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_accessed_at=now,
            client_metadata=client_metadata,
        )

    def is_expired(
        self, now: Optional[datetime] = None, leeway: timedelta = timedelta(0)
    ) -> bool:
        now = now or utcnow()
        return as_utc(self.expires_at) <= now - leeway

    def revoke(self, reason: str, when: Optional[datetime] = None) -> None:
        self.is_active = False
        self.revoked_at = when or utcnow()
        self.revoked_reason = reason


@dataclass
class TwoFactorConfig:
    user_id: str
    secret: str
    enabled: bool = False
    backup_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

from __future__ import annotations

import json
import os
import threading
import uuid
from copy import copy
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from youandme_auth.logging import get_logger
from youandme_auth.storage.common import (
    InvalidToken,
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    normalize_email,
)
from youandme_auth.storage.errors import ConstraintViolation
from youandme_auth.storage.models import (
    Session,
    TwoFactorConfig,
    User,
    as_utc,
    utcnow,
)


class MemoryStore:
    """In-process session registry with a JSON state file for dev and tests.

    Every mutation happens under ``_data_lock`` so the "revoke the others,
    insert the new one" step of a login is a single critical section.
    Callers always receive copies; mutating a returned Session does not
    change the registry.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/youandme",
        *,
        encryption_key: str | None = None,
        revoked_retention: timedelta = timedelta(days=7),
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # token_id -> session id for every stored session
        self._sessions_by_token: Dict[str, str] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.revoked_retention = revoked_retention
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_secret_cipher(
            encryption_key
            or os.getenv("TWO_FACTOR_ENCRYPTION_KEY")
            or os.getenv("JWT_SECRET")
        )
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_registry.json"

    # users

    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        email_confirmed: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                display_name=display_name,
                role=role,
                email_confirmed=email_confirmed,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy(user) if user else None

    def mark_email_confirmed(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_confirmed = True
            self._persist_state()
            return copy(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return copy(user)

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return copy(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # two-factor

    def _encrypt_secret(self, secret: str) -> str:
        return encrypt_secret(self._cipher, secret)

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return decrypt_secret(self._cipher, secret)
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            raise

    def set_two_factor(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> TwoFactorConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": user_id}
                )
            record = TwoFactorConfig(
                user_id=user_id, secret=self._encrypt_secret(secret), enabled=enabled
            )
            self.two_factor[user_id] = record
            self._persist_state()
            return TwoFactorConfig(
                user_id=user_id,
                secret=secret,
                enabled=enabled,
                created_at=record.created_at,
            )

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return None
            return TwoFactorConfig(
                user_id=cfg.user_id,
                secret=self._decrypt_secret(cfg.secret),
                enabled=cfg.enabled,
                backup_code_hashes=list(cfg.backup_code_hashes),
                created_at=cfg.created_at,
            )

    def enable_two_factor(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return False
            cfg.enabled = True
            cfg.backup_code_hashes = list(backup_code_hashes)
            self._persist_state()
            return True

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg or code_hash not in cfg.backup_code_hashes:
                return False
            cfg.backup_code_hashes.remove(code_hash)
            self._persist_state()
            return True

    def delete_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            if self.two_factor.pop(user_id, None) is not None:
                self._persist_state()

    # sessions

    def create_exclusive_session(self, session: Session) -> List[Session]:
        """Insert ``session`` and revoke every other active session of its user.

        Returns copies of the sessions that were revoked.
        """
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation(
                    "session already exists", {"session_id": session.id}
                )
            now = utcnow()
            revoked: List[Session] = []
            for existing in self.sessions.values():
                if existing.user_id == session.user_id and existing.is_active:
                    existing.revoke("superseded", now)
                    revoked.append(copy(existing))
            self.sessions[session.id] = copy(session)
            self._sessions_by_token[session.token_id] = session.id
            self._persist_state()
            return revoked

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy(sess) if sess else None

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(self._sessions_by_token.get(token_id, ""))
            return copy(sess) if sess else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                copy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active
            ]

    def rotate_session_tokens(
        self,
        session_id: str,
        expected_token_id: str,
        token_id: str,
        refresh_token_hash: str,
    ) -> Optional[Session]:
        """Swap the token binding only if the session still holds ``expected_token_id``."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active or sess.token_id != expected_token_id:
                return None
            self._sessions_by_token.pop(sess.token_id, None)
            sess.token_id = token_id
            self._sessions_by_token[token_id] = sess.id
            sess.refresh_token_hash = refresh_token_hash
            sess.last_accessed_at = utcnow()
            self._persist_state()
            return copy(sess)

    def revoke_session(self, session_id: str, reason: str = "logout") -> Optional[Session]:
        """Revoke one session; returns it only when this call changed its state."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.revoke(reason)
            self._persist_state()
            return copy(sess)

    def revoke_user_sessions(
        self,
        user_id: str,
        exclude_session_id: Optional[str] = None,
        reason: str = "admin",
    ) -> List[Session]:
        with self._data_lock:
            now = utcnow()
            revoked: List[Session] = []
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.is_active
                    and sess.id != exclude_session_id
                ):
                    sess.revoke(reason, now)
                    revoked.append(copy(sess))
            if revoked:
                self._persist_state()
            return revoked

    def touch_session(self, session_id: str, accessed_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_accessed_at = accessed_at
            # Activity stamps are not worth a state file rewrite per request

    def deactivate_expired_sessions(
        self, now: Optional[datetime] = None
    ) -> List[Session]:
        """Revoke active sessions past ``expires_at``.

        Also drops rows that were revoked more than ``revoked_retention`` ago,
        so the registry and its state file only grow with live users.
        """
        now = now or utcnow()
        with self._data_lock:
            expired: List[Session] = []
            for sess in self.sessions.values():
                if sess.is_active and sess.is_expired(now):
                    sess.revoke("expired", now)
                    expired.append(copy(sess))
            pruned = self._prune_revoked(now)
            if expired or pruned:
                self._persist_state()
            return expired

    def _prune_revoked(self, now: datetime) -> int:
        cutoff = now - self.revoked_retention
        stale = [
            sess
            for sess in self.sessions.values()
            if not sess.is_active and sess.revoked_at and as_utc(sess.revoked_at) < cutoff
        ]
        for sess in stale:
            del self.sessions[sess.id]
            self._sessions_by_token.pop(sess.token_id, None)
        if stale:
            self.logger.info("revoked_sessions_pruned", count=len(stale))
        return len(stale)

    # persistence

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return as_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "email_confirmed": user.email_confirmed,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            display_name=data.get("display_name"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            is_active=data.get("is_active", True),
            email_confirmed=data.get("email_confirmed", False),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_id": session.token_id,
            "refresh_token_hash": session.refresh_token_hash,
            "issued_at": self._serialize_datetime(session.issued_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_accessed_at": self._serialize_datetime(session.last_accessed_at),
            "is_active": session.is_active,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoked_reason": session.revoked_reason,
            "client_metadata": session.client_metadata,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_id=data["token_id"],
            refresh_token_hash=data["refresh_token_hash"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_accessed_at=self._deserialize_datetime(data.get("last_accessed_at")),
            is_active=data.get("is_active", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            client_metadata=data.get("client_metadata"),
        )

    def _serialize_two_factor(self, cfg: TwoFactorConfig) -> dict:
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "enabled": cfg.enabled,
            "backup_code_hashes": cfg.backup_code_hashes,
            "created_at": self._serialize_datetime(cfg.created_at),
        }

    def _deserialize_two_factor(self, data: dict) -> TwoFactorConfig:
        return TwoFactorConfig(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=data.get("enabled", False),
            backup_code_hashes=list(data.get("backup_code_hashes", [])),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "two_factor": [
                self._serialize_two_factor(cfg) for cfg in self.two_factor.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._sessions_by_token = {s.token_id: s.id for s in self.sessions.values()}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.two_factor = {
            cfg["user_id"]: self._deserialize_two_factor(cfg)
            for cfg in data.get("two_factor", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

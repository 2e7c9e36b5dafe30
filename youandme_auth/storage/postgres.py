from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from youandme_auth.logging import get_logger
from youandme_auth.storage.common import (
    InvalidToken,
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    normalize_email,
    parse_json_field,
)
from youandme_auth.storage.errors import ConstraintViolation
from youandme_auth.storage.models import Session, TwoFactorConfig, User, utcnow

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_two_factor (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret_ciphertext TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        backup_code_hashes JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_id TEXT NOT NULL UNIQUE,
        refresh_token_hash TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_accessed_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        client_metadata JSONB
    )
    """,
    # At most one active session per user, even if a writer skips the row lock
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_session_one_active_per_user
        ON auth_session (user_id) WHERE is_active
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_session_active_expiry
        ON auth_session (expires_at) WHERE is_active
    """,
]

_SESSION_COLUMNS = (
    "id, user_id, token_id, refresh_token_hash, issued_at, expires_at, "
    "last_accessed_at, is_active, revoked_at, revoked_reason, client_metadata"
)


class PostgresStore:
    """Session registry persisted in Postgres.

    Concurrent logins for one user are serialized on that user's ``app_user``
    row (``SELECT ... FOR UPDATE``); the partial unique index on
    ``auth_session(user_id) WHERE is_active`` rejects anything that slips by.
    """

    def __init__(self, dsn: str, *, encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the registry tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name"),
            role=row.get("role") or "user",
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            email_confirmed=row.get("email_confirmed", False),
            meta=parse_json_field(row.get("meta"), {}),
        )

    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        email_confirmed: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            display_name=display_name,
            role=role,
            email_confirmed=email_confirmed,
            meta=dict(meta) if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, role, created_at, is_active, email_confirmed, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.display_name,
                        user.role,
                        user.created_at,
                        user.is_active,
                        user.email_confirmed,
                        json.dumps(user.meta) if user.meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_confirmed(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_confirmed = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # two-factor

    def set_two_factor(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> TwoFactorConfig:
        record = TwoFactorConfig(user_id=user_id, secret=secret, enabled=enabled)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_two_factor (user_id, secret_ciphertext, enabled, backup_code_hashes, created_at)
                    VALUES (%s, %s, %s, '[]'::jsonb, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret_ciphertext = EXCLUDED.secret_ciphertext,
                        enabled = EXCLUDED.enabled,
                        backup_code_hashes = '[]'::jsonb,
                        created_at = EXCLUDED.created_at
                    """,
                    (
                        user_id,
                        encrypt_secret(self._cipher, secret),
                        enabled,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for two-factor", {"user_id": user_id}
            )
        return record

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_two_factor WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        try:
            secret = decrypt_secret(self._cipher, row["secret_ciphertext"])
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed", user_id=user_id)
            raise
        return TwoFactorConfig(
            user_id=str(row["user_id"]),
            secret=secret,
            enabled=row.get("enabled", False),
            backup_code_hashes=list(parse_json_field(row.get("backup_code_hashes"), [])),
            created_at=row.get("created_at") or utcnow(),
        )

    def enable_two_factor(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_two_factor SET enabled = TRUE, backup_code_hashes = %s WHERE user_id = %s",
                (json.dumps(backup_code_hashes), user_id),
            )
            return cur.rowcount > 0

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        # jsonb "-" removes the element; the ? guard makes the update conditional
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_two_factor
                SET backup_code_hashes = backup_code_hashes - %s
                WHERE user_id = %s AND backup_code_hashes ? %s
                """,
                (code_hash, user_id, code_hash),
            )
            return cur.rowcount > 0

    def delete_two_factor(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_two_factor WHERE user_id = %s", (user_id,))

    # sessions

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_id=row["token_id"],
            refresh_token_hash=row["refresh_token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            last_accessed_at=row.get("last_accessed_at"),
            is_active=row.get("is_active", False),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            client_metadata=parse_json_field(row.get("client_metadata")),
        )

    def create_exclusive_session(self, session: Session) -> List[Session]:
        """Insert ``session`` and revoke every other active session of its user.

        Lock user row, revoke, insert: one transaction, so no reader ever
        observes two active rows for the user.
        """
        try:
            with self._connect() as conn, conn.transaction():
                owner = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE",
                    (session.user_id,),
                ).fetchone()
                if not owner:
                    raise ConstraintViolation(
                        "user does not exist", {"user_id": session.user_id}
                    )
                rows = conn.execute(
                    f"""
                    UPDATE auth_session
                    SET is_active = FALSE, revoked_at = %s, revoked_reason = 'superseded'
                    WHERE user_id = %s AND is_active
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (utcnow(), session.user_id),
                ).fetchall()
                conn.execute(
                    f"""
                    INSERT INTO auth_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_id,
                        session.refresh_token_hash,
                        session.issued_at,
                        session.expires_at,
                        session.last_accessed_at,
                        session.is_active,
                        session.revoked_at,
                        session.revoked_reason,
                        json.dumps(session.client_metadata)
                        if session.client_metadata
                        else None,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "concurrent session write rejected",
                {"user_id": session.user_id, "constraint": getattr(exc.diag, "constraint_name", None)},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return [self._session_from_row(row) for row in rows]

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE token_id = %s",
                (token_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s AND is_active",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def rotate_session_tokens(
        self,
        session_id: str,
        expected_token_id: str,
        token_id: str,
        refresh_token_hash: str,
    ) -> Optional[Session]:
        """Compare-and-swap the token binding of an active session."""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_session
                SET token_id = %s, refresh_token_hash = %s, last_accessed_at = %s
                WHERE id = %s AND token_id = %s AND is_active
                RETURNING {_SESSION_COLUMNS}
                """,
                (token_id, refresh_token_hash, utcnow(), session_id, expected_token_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str, reason: str = "logout") -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_session
                SET is_active = FALSE, revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND is_active
                RETURNING {_SESSION_COLUMNS}
                """,
                (utcnow(), reason, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_user_sessions(
        self,
        user_id: str,
        exclude_session_id: Optional[str] = None,
        reason: str = "admin",
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE auth_session
                SET is_active = FALSE, revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                RETURNING {_SESSION_COLUMNS}
                """,
                (utcnow(), reason, user_id, exclude_session_id),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str, accessed_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_accessed_at = %s WHERE id = %s",
                (accessed_at, session_id),
            )

    def deactivate_expired_sessions(
        self, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE auth_session
                SET is_active = FALSE, revoked_at = %s, revoked_reason = 'expired'
                WHERE is_active AND expires_at <= %s
                RETURNING {_SESSION_COLUMNS}
                """,
                (now, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

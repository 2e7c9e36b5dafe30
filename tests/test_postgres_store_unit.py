import uuid
from datetime import timedelta

import pytest

from youandme_auth.storage.common import build_secret_cipher
from youandme_auth.storage.errors import ConstraintViolation
from youandme_auth.storage.models import Session, utcnow
from youandme_auth.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements; answers each one from a queue of canned row lists."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        rows = self.responses.pop(0) if self.responses else []
        return FakeResult(rows)

    def transaction(self):
        conn = self

        class _Tx:
            def __enter__(self):
                conn.transactions += 1
                return self

            def __exit__(self, *exc):
                return False

        return _Tx()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(responses):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(responses)
    store.pool = FakePool(conn)
    store.dsn = "postgresql://test"
    store._cipher = build_secret_cipher("k" * 40)
    store.logger = None
    return store, conn


def _row(session: Session, **overrides):
    row = {
        "id": session.id,
        "user_id": session.user_id,
        "token_id": session.token_id,
        "refresh_token_hash": session.refresh_token_hash,
        "issued_at": session.issued_at,
        "expires_at": session.expires_at,
        "last_accessed_at": session.last_accessed_at,
        "is_active": session.is_active,
        "revoked_at": session.revoked_at,
        "revoked_reason": session.revoked_reason,
        "client_metadata": None,
    }
    row.update(overrides)
    return row


def test_exclusive_session_locks_user_then_revokes_then_inserts():
    user_id = str(uuid.uuid4())
    previous = Session.new(user_id, "old-jti", "old-hash")
    store, conn = _store(
        [
            [{"id": user_id}],
            [_row(previous, is_active=False, revoked_reason="superseded", revoked_at=utcnow())],
            [],
        ]
    )
    new = Session.new(user_id, "new-jti", "new-hash", client_metadata={"device": "web"})

    revoked = store.create_exclusive_session(new)

    assert conn.transactions == 1
    lock_sql, update_sql, insert_sql = (sql for sql, _ in conn.statements)
    assert lock_sql.startswith("SELECT id FROM app_user") and lock_sql.endswith("FOR UPDATE")
    assert "revoked_reason = 'superseded'" in update_sql
    assert "WHERE user_id = %s AND is_active" in update_sql
    assert insert_sql.startswith("INSERT INTO auth_session")
    assert conn.statements[2][1][0] == new.id
    assert conn.statements[2][1][-1] == '{"device": "web"}'
    assert [s.id for s in revoked] == [previous.id]
    assert revoked[0].revoked_reason == "superseded"


def test_exclusive_session_for_missing_user():
    store, conn = _store([[]])

    with pytest.raises(ConstraintViolation):
        store.create_exclusive_session(Session.new("ghost", "jti", "hash"))
    assert len(conn.statements) == 1


def test_rotate_is_guarded_by_expected_token_id():
    sess = Session.new("user-1", "jti-1", "hash-1")
    store, conn = _store([[]])

    assert store.rotate_session_tokens(sess.id, "jti-1", "jti-2", "hash-2") is None
    sql, params = conn.statements[0]
    assert "WHERE id = %s AND token_id = %s AND is_active" in sql
    assert params[-2:] == (sess.id, "jti-1")


def test_revoke_session_only_touches_active_rows():
    sess = Session.new("user-1", "jti-1", "hash-1")
    store, conn = _store([[_row(sess, is_active=False, revoked_reason="logout")]])

    revoked = store.revoke_session(sess.id, reason="logout")

    assert revoked.revoked_reason == "logout"
    assert "WHERE id = %s AND is_active" in conn.statements[0][0]


def test_revoke_user_sessions_excludes_current():
    store, conn = _store([[]])

    assert store.revoke_user_sessions("user-1", exclude_session_id="keep", reason="admin") == []
    sql, params = conn.statements[0]
    assert "id IS DISTINCT FROM %s" in sql
    assert params[1:] == ("admin", "user-1", "keep")


def test_deactivate_expired_sessions_uses_cutoff():
    stale = Session.new("user-1", "jti", "hash", ttl_minutes=1, issued_at=utcnow() - timedelta(hours=1))
    store, conn = _store([[_row(stale, is_active=False, revoked_reason="expired")]])
    cutoff = utcnow()

    expired = store.deactivate_expired_sessions(cutoff)

    assert [s.id for s in expired] == [stale.id]
    assert conn.statements[0][1] == (cutoff, cutoff)


def test_session_rows_parse_json_metadata():
    sess = Session.new("user-1", "jti", "hash")
    parsed = PostgresStore._session_from_row(_row(sess, client_metadata='{"device": "ios"}'))
    assert parsed.client_metadata == {"device": "ios"}

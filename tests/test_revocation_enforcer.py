"""Revocation enforcement on authenticated requests."""

from datetime import timedelta

import pytest

from youandme_auth.config import Settings
from youandme_auth.service.auth import AuthService
from youandme_auth.service.enforcer import RevocationEnforcer
from youandme_auth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    SessionRevokedError,
    TokenExpiredError,
    TokenSignatureInvalidError,
)
from youandme_auth.storage.memory import MemoryStore
from youandme_auth.storage.models import utcnow
from youandme_auth.storage.redis_cache import RedisCache

PASSWORD = "TestPassword123!"


class FakeRedis:
    """The handful of async Redis commands the cache issues, over a dict."""

    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.fail_reads = False

    async def get(self, key):
        if self.fail_reads:
            raise ConnectionError("redis down")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex
        return True

    async def getdel(self, key):
        self.expiries.pop(key, None)
        return self.data.pop(key, None)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiries.pop(key, None)
        return removed

    async def ttl(self, key):
        return -2


def _fake_cache():
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://fake"
    cache.client = FakeRedis()
    return cache


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        require_confirmed_email=False,
        session_validation_cache_seconds=60,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "enforcer"))


@pytest.fixture
def cache():
    return _fake_cache()


@pytest.fixture
def auth(store, cache, settings):
    return AuthService(store, cache, settings)


@pytest.fixture
def enforcer(auth, store, cache):
    return RevocationEnforcer(auth, store, cache, cache_seconds=60)


@pytest.fixture
def user(store, auth):
    created = store.create_user("enforce@example.com", email_confirmed=True)
    auth.save_password(created.id, PASSWORD)
    return created


def _bearer(result):
    return f"Bearer {result.access_token}"


class TestBearerParsing:
    def test_extract_bearer(self):
        assert RevocationEnforcer.extract_bearer("Bearer abc") == "abc"
        assert RevocationEnforcer.extract_bearer("bearer  abc ") == "abc"
        assert RevocationEnforcer.extract_bearer("Basic abc") is None
        assert RevocationEnforcer.extract_bearer("Bearer ") is None
        assert RevocationEnforcer.extract_bearer(None) is None

    async def test_missing_header(self, enforcer):
        with pytest.raises(AuthenticationError):
            await enforcer.authenticate(None)

    async def test_garbage_token(self, enforcer):
        with pytest.raises(TokenSignatureInvalidError):
            await enforcer.authenticate("Bearer not.a.token")


class TestActiveSessions:
    async def test_active_session_authenticates(self, enforcer, auth, store, user):
        login = await auth.login("enforce@example.com", PASSWORD)

        ctx = await enforcer.authenticate(_bearer(login))
        await enforcer.drain_pending_touches()

        assert ctx.user_id == user.id
        assert ctx.session_id == login.session.id
        assert ctx.token_id == login.session.token_id
        assert ctx.role == "user"
        assert store.get_session(login.session.id).last_accessed_at >= login.session.issued_at

    async def test_role_requirement(self, enforcer, auth, store, user):
        login = await auth.login("enforce@example.com", PASSWORD)
        with pytest.raises(ForbiddenError):
            await enforcer.authenticate(_bearer(login), required_role="admin")

        store.set_user_role(user.id, "admin")
        admin_login = await auth.login("enforce@example.com", PASSWORD)
        ctx = await enforcer.authenticate(_bearer(admin_login), required_role="admin")
        assert ctx.role == "admin"
        # Admins satisfy plain user routes too
        assert (await enforcer.authenticate(_bearer(admin_login), required_role="user")).role == "admin"


class TestRevokedSessions:
    async def test_superseded_token_rejected(self, enforcer, auth, user):
        first = await auth.login("enforce@example.com", PASSWORD)
        await enforcer.authenticate(_bearer(first))
        second = await auth.login("enforce@example.com", PASSWORD)

        with pytest.raises(SessionRevokedError):
            await enforcer.authenticate(_bearer(first))
        assert (await enforcer.authenticate(_bearer(second))).session_id == second.session.id

    async def test_logged_out_token_rejected_despite_cache(self, enforcer, auth, cache, user):
        login = await auth.login("enforce@example.com", PASSWORD)
        await enforcer.authenticate(_bearer(login))
        assert f"auth:token:{login.session.token_id}" in cache.client.data

        await auth.logout(login.session.id)

        assert f"auth:token:{login.session.token_id}" not in cache.client.data
        with pytest.raises(SessionRevokedError):
            await enforcer.authenticate(_bearer(login))

    async def test_admin_revocation(self, enforcer, auth, user):
        login = await auth.login("enforce@example.com", PASSWORD)
        await auth.revoke_all_user_sessions(user.id)

        with pytest.raises(SessionRevokedError):
            await enforcer.authenticate(_bearer(login))

    async def test_refresh_retires_previous_access_token(self, enforcer, auth, user):
        login = await auth.login("enforce@example.com", PASSWORD)
        refreshed = await auth.refresh(login.refresh_token)

        with pytest.raises(SessionRevokedError):
            await enforcer.authenticate(_bearer(login))
        assert (await enforcer.authenticate(_bearer(refreshed))).session_id == login.session.id

    async def test_deactivated_user_rejected(self, enforcer, auth, store, user):
        login = await auth.login("enforce@example.com", PASSWORD)
        store.set_user_active(user.id, False)

        with pytest.raises(SessionRevokedError):
            await enforcer.authenticate(_bearer(login))

    async def test_expired_session_is_deactivated(self, enforcer, auth, store, user):
        login = await auth.login("enforce@example.com", PASSWORD)
        store.sessions[login.session.id].expires_at = utcnow() - timedelta(minutes=10)

        with pytest.raises(TokenExpiredError):
            await enforcer.authenticate(_bearer(login))
        assert store.get_session(login.session.id).revoked_reason == "expired"


class TestValidationCache:
    async def test_cache_hit_skips_registry(self, enforcer, auth, store, user, monkeypatch):
        login = await auth.login("enforce@example.com", PASSWORD)
        await enforcer.authenticate(_bearer(login))

        def _fail(_token_id):
            raise AssertionError("registry should not be consulted")

        monkeypatch.setattr(store, "get_session_by_token_id", _fail)
        ctx = await enforcer.authenticate(_bearer(login))
        assert ctx.session_id == login.session.id

    async def test_cache_ttl_bounded_by_session_life(self, store, cache, settings, user):
        short = Settings(
            jwt_secret=settings.jwt_secret,
            require_confirmed_email=False,
            refresh_token_ttl_minutes=1,
        )
        auth = AuthService(store, cache, short)
        enforcer = RevocationEnforcer(auth, store, cache, cache_seconds=600)
        login = await auth.login("enforce@example.com", PASSWORD)

        await enforcer.authenticate(_bearer(login))
        assert cache.client.expiries[f"auth:token:{login.session.token_id}"] <= 60

    async def test_cache_outage_falls_back_to_registry(self, enforcer, auth, cache, user):
        login = await auth.login("enforce@example.com", PASSWORD)
        cache.client.fail_reads = True

        ctx = await enforcer.authenticate(_bearer(login))
        assert ctx.user_id == user.id

    async def test_without_cache(self, auth, store, user):
        enforcer = RevocationEnforcer(auth, store, None)
        login = await auth.login("enforce@example.com", PASSWORD)

        assert (await enforcer.authenticate(_bearer(login))).user_id == user.id
        await auth.logout(login.session.id)
        with pytest.raises(SessionRevokedError):
            await enforcer.authenticate(_bearer(login))

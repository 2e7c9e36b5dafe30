"""Per-tab session lifecycle against the real API, several tabs per profile."""

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from youandme_auth import app as app_module
from youandme_auth.client.channels import BrowserProfile, TabStorage
from youandme_auth.client.errors import (
    ApiError,
    NetworkUnavailableError,
    NoSessionError,
    SessionInvalidatedError,
)
from youandme_auth.client.manager import SessionManager, TwoFactorChallenge
from youandme_auth.client.signals import CrossTabSignal, SignalType
from youandme_auth.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def api():
    return TestClient(app_module.app)


@pytest.fixture
def profile():
    return BrowserProfile()


def _register(api, email):
    response = api.post("/v1/auth/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201
    token = response.json()["data"]["confirmation_token"]
    assert api.post("/v1/auth/confirm-email", json={"token": token}).status_code == 200
    return response.json()["data"]["user_id"]


class Tab:
    """A SessionManager plus the invalidation events it surfaced."""

    def __init__(self, profile, api, **kwargs):
        self.manager = SessionManager(profile, api, **kwargs)
        self.events = []
        self.manager.on_session_invalidated(self.events.append)

    @property
    def reasons(self):
        return [event.reason for event in self.events]


class TestLoginAcrossTabs:
    def test_same_user_elsewhere_invalidates_first_tab(self, api, profile):
        _register(api, "alice@example.com")
        tab_a, tab_b = Tab(profile, api), Tab(profile, api)

        tab_a.manager.login("alice@example.com", PASSWORD)
        stale_token = tab_a.manager.store.get_token()
        tab_b.manager.login("alice@example.com", PASSWORD)
        profile.run_pending()

        assert tab_a.reasons == ["logged-in-elsewhere"]
        assert not tab_a.manager.is_active
        assert tab_b.manager.is_active
        assert tab_b.events == []
        with pytest.raises(NoSessionError):
            tab_a.manager.request("GET", "/me")
        # The server agrees: the first session was superseded
        response = api.get("/v1/me", headers={"Authorization": f"Bearer {stale_token}"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_revoked"

    def test_different_users_coexist(self, api, profile):
        _register(api, "alice@example.com")
        _register(api, "bob@example.com")
        tab_a, tab_b = Tab(profile, api), Tab(profile, api)

        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_b.manager.login("bob@example.com", PASSWORD)
        profile.run_pending()

        assert tab_a.events == [] and tab_b.events == []
        assert tab_a.manager.request("GET", "/me").json()["data"]["email"] == "alice@example.com"
        assert tab_b.manager.request("GET", "/me").json()["data"]["email"] == "bob@example.com"

    def test_event_surfaces_once_despite_duplicate_channels(self, api, profile):
        _register(api, "alice@example.com")
        tab_a, tab_b = Tab(profile, api), Tab(profile, api)

        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_b.manager.login("alice@example.com", PASSWORD)
        # Broadcast and storage channels both deliver the signal
        assert profile.pending >= 2
        profile.run_pending()
        assert tab_a.reasons == ["logged-in-elsewhere"]

    def test_storage_only_profile(self, api):
        profile = BrowserProfile(supports_broadcast=False)
        _register(api, "alice@example.com")
        tab_a, tab_b = Tab(profile, api), Tab(profile, api)

        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_b.manager.login("alice@example.com", PASSWORD)
        profile.run_pending()
        assert tab_a.reasons == ["logged-in-elsewhere"]

    def test_own_tab_id_is_ignored(self, api, profile):
        _register(api, "alice@example.com")
        tab_a = Tab(profile, api)
        tab_a.manager.login("alice@example.com", PASSWORD)
        user_id = tab_a.manager.current_user()["id"]

        spoof = profile.broadcast_hub.open("auth_session_channel", owner="elsewhere")
        spoof.post(
            CrossTabSignal(
                type=SignalType.SESSION_CREATED, tab_id=tab_a.manager.tab_id, user_id=user_id
            ).model_dump(mode="json")
        )
        profile.run_pending()
        assert tab_a.manager.is_active
        assert tab_a.events == []


class TestLogout:
    def test_logout_clears_every_tab_in_profile(self, api, profile):
        _register(api, "alice@example.com")
        _register(api, "bob@example.com")
        tab_a, tab_b = Tab(profile, api), Tab(profile, api)
        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_b.manager.login("bob@example.com", PASSWORD)
        profile.run_pending()

        assert tab_a.manager.logout() is True
        profile.run_pending()

        assert not tab_a.manager.is_active
        assert tab_a.events == []
        assert tab_b.reasons == ["logged-out-elsewhere"]
        # The receiving tab does not echo a Logout of its own
        assert profile.pending == 0

    def test_logout_survives_network_failure(self, profile):
        def offline(request):
            raise httpx.ConnectError("offline", request=request)

        http = httpx.Client(transport=httpx.MockTransport(offline), base_url="http://api.test")
        manager = SessionManager(profile, http)
        manager.store.store_session("token", "refresh", {"id": "user-1"})

        assert manager.logout() is False
        assert not manager.is_active

    def test_listener_logout_does_not_rebroadcast(self, api, profile):
        _register(api, "alice@example.com")
        tab_a, tab_b = Tab(profile, api), Tab(profile, api)
        tab_a.manager.on_session_invalidated(lambda event: tab_a.manager.logout())

        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_b.manager.login("alice@example.com", PASSWORD)
        profile.run_pending()

        assert tab_a.reasons == ["logged-in-elsewhere"]
        assert tab_b.manager.is_active
        assert tab_b.events == []


class TestReloginDuringGraceWindow:
    @pytest.fixture
    def clock(self):
        started = time.time()
        offset = {"seconds": 0.0}

        def now():
            return started + offset["seconds"]

        def advance(seconds):
            offset["seconds"] += seconds

        now.advance = advance
        return now

    def test_logout_after_quick_relogin(self, api, profile, clock):
        _register(api, "alice@example.com")
        tab_a, tab_b = Tab(profile, api, clock=clock), Tab(profile, api, clock=clock)

        tab_a.manager.login("alice@example.com", PASSWORD)
        clock.advance(0.01)
        tab_b.manager.login("alice@example.com", PASSWORD)
        profile.run_pending()
        assert tab_a.reasons == ["logged-in-elsewhere"]

        clock.advance(0.05)
        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_a.manager.logout()

        assert not tab_a.manager.is_active
        assert tab_a.manager.store.get_token() is None

    def test_relogin_still_hears_same_user_login(self, api, profile, clock):
        _register(api, "alice@example.com")
        tab_a, tab_b = Tab(profile, api, clock=clock), Tab(profile, api, clock=clock)

        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_a.manager.logout()
        clock.advance(0.05)
        tab_a.manager.login("alice@example.com", PASSWORD)
        clock.advance(0.01)
        tab_b.manager.login("alice@example.com", PASSWORD)
        profile.run_pending()

        assert tab_a.reasons == ["logged-in-elsewhere"]
        assert not tab_a.manager.is_active
        assert tab_b.manager.is_active
        assert tab_b.events == []


class TestServerSideRevocation:
    def test_admin_revocation_surfaces_once(self, api, profile):
        user_id = _register(api, "alice@example.com")
        runtime = get_runtime()
        admin = runtime.store.create_user("admin@example.com", role="admin", email_confirmed=True)
        runtime.auth.save_password(admin.id, PASSWORD)
        tab_user, tab_admin = Tab(profile, api), Tab(profile, api)
        tab_user.manager.login("alice@example.com", PASSWORD)
        tab_admin.manager.login("admin@example.com", PASSWORD)

        response = tab_admin.manager.request("POST", f"/admin/users/{user_id}/sessions/revoke")
        assert response.json()["data"]["revoked"] == 1

        with pytest.raises(SessionInvalidatedError) as excinfo:
            tab_user.manager.request("GET", "/me")
        assert excinfo.value.reason == "revoked-elsewhere"
        with pytest.raises(NoSessionError):
            tab_user.manager.request("GET", "/me")
        assert tab_user.reasons == ["revoked-elsewhere"]

    def test_sibling_broadcast_of_revocation(self, api, profile):
        _register(api, "alice@example.com")
        tab_a = Tab(profile, api)
        tab_b = Tab(profile, api)
        tab_a.manager.login("alice@example.com", PASSWORD)
        profile.run_pending()
        user_id = tab_a.manager.current_user()["id"]
        tab_b.manager.store.store_session("stale", "stale", {"id": user_id})

        tab_a.manager.broadcast_session_invalidation()
        profile.run_pending()

        assert tab_b.reasons == ["revoked-elsewhere"]
        assert tab_a.manager.is_active


class TestExpiry:
    def test_expired_token_never_leaves_the_tab(self, api, profile):
        _register(api, "alice@example.com")
        clock_offset = {"seconds": 0}
        tab = Tab(profile, api, clock=lambda: time.time() + clock_offset["seconds"])
        tab.manager.login("alice@example.com", PASSWORD)

        clock_offset["seconds"] = 2 * 60 * 60
        with pytest.raises(SessionInvalidatedError) as excinfo:
            tab.manager.request("GET", "/me")
        assert excinfo.value.reason == "expired"
        assert tab.reasons == ["expired"]
        assert not tab.manager.is_active


class TestRefresh:
    def test_refresh_rotates_tokens(self, api, profile):
        _register(api, "alice@example.com")
        tab = Tab(profile, api)
        tab.manager.login("alice@example.com", PASSWORD)
        old_refresh = tab.manager.store.get_refresh_token()

        tab.manager.refresh()

        assert tab.manager.store.get_refresh_token() != old_refresh
        assert tab.manager.request("GET", "/me").status_code == 200
        replay = api.post("/v1/auth/refresh", json={"refresh_token": old_refresh})
        assert replay.status_code == 401

    def test_refresh_of_superseded_session(self, api, profile):
        _register(api, "alice@example.com")
        other_profile = BrowserProfile()
        tab = Tab(profile, api)
        elsewhere = Tab(other_profile, api)
        tab.manager.login("alice@example.com", PASSWORD)
        elsewhere.manager.login("alice@example.com", PASSWORD)

        with pytest.raises(SessionInvalidatedError) as excinfo:
            tab.manager.refresh()
        assert excinfo.value.reason == "revoked-elsewhere"
        assert tab.reasons == ["revoked-elsewhere"]

    def test_refresh_without_session(self, api, profile):
        with pytest.raises(NoSessionError):
            SessionManager(profile, api).refresh()


class TestTwoFactorLogin:
    def test_challenge_then_completion(self, api, profile):
        _register(api, "alice@example.com")
        tab = Tab(profile, api)
        tab.manager.login("alice@example.com", PASSWORD)
        setup = tab.manager.request("POST", "/auth/2fa/setup").json()["data"]
        auth = get_runtime().auth
        code = auth._generate_totp(setup["secret"], time.time())
        assert tab.manager.request("POST", "/auth/2fa/enable", json={"code": code}).status_code == 200
        tab.manager.logout()

        challenge = tab.manager.login("alice@example.com", PASSWORD)
        assert isinstance(challenge, TwoFactorChallenge)
        assert not tab.manager.is_active

        with pytest.raises(ApiError) as excinfo:
            tab.manager.complete_two_factor(challenge.temp_token, "BADCODE1")
        assert excinfo.value.code == "two_factor_invalid_code"

        user = tab.manager.complete_two_factor(
            challenge.temp_token, auth._generate_totp(setup["secret"], time.time())
        )
        assert user["email"] == "alice@example.com"
        assert tab.manager.is_active


class TestTabLifecycle:
    def test_reload_keeps_tab_identity(self, api, profile):
        storage = TabStorage()
        first = SessionManager(profile, api, tab_storage=storage)
        first.close()
        reloaded = SessionManager(profile, api, tab_storage=storage)
        assert reloaded.tab_id == first.tab_id

    def test_closed_tab_hears_nothing(self, api, profile):
        _register(api, "alice@example.com")
        tab_a, tab_b = Tab(profile, api), Tab(profile, api)
        tab_a.manager.login("alice@example.com", PASSWORD)
        tab_a.manager.close()

        tab_b.manager.login("alice@example.com", PASSWORD)
        profile.run_pending()
        assert tab_a.events == []

    def test_bad_credentials_surface_api_error(self, api, profile):
        _register(api, "alice@example.com")
        with pytest.raises(ApiError) as excinfo:
            SessionManager(profile, api).login("alice@example.com", "WrongPassword1!")
        assert excinfo.value.status == 401
        assert excinfo.value.code == "invalid_credentials"

    def test_unreachable_api(self, profile):
        def offline(request):
            raise httpx.ConnectError("offline", request=request)

        http = httpx.Client(transport=httpx.MockTransport(offline), base_url="http://api.test")
        with pytest.raises(NetworkUnavailableError):
            SessionManager(profile, http).login("alice@example.com", PASSWORD)

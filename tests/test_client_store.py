import re

import pytest

from youandme_auth.client.channels import TabStorage
from youandme_auth.client.signals import SignalType
from youandme_auth.client.store import (
    SESSION_REFRESH_KEY,
    SESSION_TOKEN_KEY,
    SESSION_USER_KEY,
    TAB_ID_KEY,
    ClientSessionStore,
    new_tab_id,
)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.published = []

    def publish(self, signal):
        self.published.append(signal)

    def subscribe(self, callback):
        raise NotImplementedError

    def close(self):
        pass


USER = {"id": "user-1", "email": "u@example.com"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return ClientSessionStore(TabStorage(), grace_seconds=0.1, clock=clock)


class TestTabIdentity:
    def test_tab_id_format(self, clock):
        tab_id = new_tab_id(clock)
        assert re.fullmatch(r"tab_1700000000000_[0-9a-z]{9}", tab_id)

    def test_tab_id_created_once_per_tab(self, clock):
        storage = TabStorage()
        first = ClientSessionStore(storage, clock=clock)
        reloaded = ClientSessionStore(storage, clock=clock)

        assert first.tab_id == reloaded.tab_id
        assert storage.get_item(TAB_ID_KEY) == first.tab_id

    def test_separate_tabs_get_separate_ids(self, clock):
        assert ClientSessionStore(TabStorage(), clock=clock).tab_id != ClientSessionStore(
            TabStorage(), clock=clock
        ).tab_id


class TestStoredSession:
    def test_store_and_read(self, store):
        assert not store.has_session()
        store.store_session("access", "refresh", USER)

        assert store.has_session()
        assert store.get_token() == "access"
        assert store.get_refresh_token() == "refresh"
        assert store.get_current_user() == USER
        assert store.current_user_id() == "user-1"

    def test_unreadable_user_is_no_session(self, store):
        store.store_session("access", "refresh", USER)
        store.storage.set_item(SESSION_USER_KEY, "{not json")

        assert store.get_current_user() is None
        assert not store.has_session()

    def test_store_session_resets_invalidated_flag(self, store):
        assert store.mark_invalidated() is True
        assert store.mark_invalidated() is False

        store.store_session("access", "refresh", USER)
        assert not store.invalidated


class TestClearSession:
    def test_clear_keeps_tab_id(self, store):
        store.store_session("access", "refresh", USER)
        assert store.clear_session(broadcast=False)

        for key in (SESSION_TOKEN_KEY, SESSION_REFRESH_KEY, SESSION_USER_KEY):
            assert store.storage.get_item(key) is None
        assert store.storage.get_item(TAB_ID_KEY) == store.tab_id

    def test_clear_broadcasts_logout(self, store):
        notifier = RecordingNotifier()
        store.attach_notifier(notifier)
        store.store_session("access", "refresh", USER)

        store.clear_session(broadcast=True)

        [signal] = notifier.published
        assert signal.type == SignalType.LOGOUT
        assert signal.tab_id == store.tab_id
        assert signal.user_id == "user-1"

    def test_clear_without_broadcast_is_silent(self, store):
        notifier = RecordingNotifier()
        store.attach_notifier(notifier)
        store.store_session("access", "refresh", USER)

        store.clear_session(broadcast=False)
        assert notifier.published == []

    def test_clearing_empty_tab_is_noop(self, store):
        notifier = RecordingNotifier()
        store.attach_notifier(notifier)

        assert store.clear_session() is False
        assert notifier.published == []

    def test_reentrant_clear_within_grace_window(self, store, clock):
        notifier = RecordingNotifier()
        store.attach_notifier(notifier)
        store.store_session("access", "refresh", USER)
        assert store.clear_session()

        assert store.is_clearing
        assert store.clear_session() is False
        assert len(notifier.published) == 1

        clock.advance(0.2)
        assert not store.is_clearing

    def test_new_session_ends_grace_window(self, store, clock):
        notifier = RecordingNotifier()
        store.attach_notifier(notifier)
        store.store_session("access", "refresh", USER)
        assert store.clear_session()

        clock.advance(0.05)
        store.store_session("access-2", "refresh-2", USER)
        assert not store.is_clearing
        assert store.clear_session()
        assert store.get_token() is None
        assert len(notifier.published) == 2

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, List

from youandme_auth.client.channels import (
    BroadcastHub,
    BrowserProfile,
    CompositeSubscription,
    SharedStorage,
    StorageEvent,
    Subscription,
)
from youandme_auth.client.signals import CrossTabSignal
from youandme_auth.logging import get_logger

logger = get_logger(__name__)

CHANNEL_NAME = "auth_session_channel"
SIGNAL_STORAGE_KEY = "cross_tab_signal"

SignalCallback = Callable[[CrossTabSignal], None]


class Notifier(ABC):
    """Publishes session signals to sibling tabs and delivers theirs."""

    @abstractmethod
    def publish(self, signal: CrossTabSignal) -> None:
        ...

    @abstractmethod
    def subscribe(self, callback: SignalCallback) -> Subscription:
        ...

    def close(self) -> None:
        return None


class BroadcastChannelNotifier(Notifier):
    def __init__(self, hub: BroadcastHub, tab_id: str, *, channel_name: str = CHANNEL_NAME) -> None:
        self.tab_id = tab_id
        self.port = hub.open(channel_name, owner=tab_id)

    def publish(self, signal: CrossTabSignal) -> None:
        self.port.post(signal.model_dump(mode="json"))

    def subscribe(self, callback: SignalCallback) -> Subscription:
        def on_message(message) -> None:
            signal = CrossTabSignal.from_message(message)
            if signal is None:
                logger.warning("cross_tab_message_ignored", channel="broadcast", tab_id=self.tab_id)
                return
            callback(signal)

        return self.port.subscribe(on_message)

    def close(self) -> None:
        self.port.close()


class StorageEventNotifier(Notifier):
    """Signals through the shared storage key; other tabs see change events."""

    def __init__(self, storage: SharedStorage, tab_id: str, *, key: str = SIGNAL_STORAGE_KEY) -> None:
        self.storage = storage
        self.tab_id = tab_id
        self.key = key
        self._subscriptions: List[Subscription] = []

    def publish(self, signal: CrossTabSignal) -> None:
        self.storage.set_item(self.key, signal.to_json(), source=self.tab_id)

    def subscribe(self, callback: SignalCallback) -> Subscription:
        def on_change(event: StorageEvent) -> None:
            if event.key != self.key or event.new_value is None:
                return
            signal = CrossTabSignal.from_json(event.new_value)
            if signal is None:
                logger.warning("cross_tab_message_ignored", channel="storage", tab_id=self.tab_id)
                return
            callback(signal)

        sub = self.storage.subscribe(on_change, owner=self.tab_id)
        self._subscriptions.append(sub)
        return sub

    def close(self) -> None:
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions.clear()


class FanOutNotifier(Notifier):
    def __init__(self, notifiers: List[Notifier]) -> None:
        self.notifiers = notifiers

    def publish(self, signal: CrossTabSignal) -> None:
        for notifier in self.notifiers:
            notifier.publish(signal)

    def subscribe(self, callback: SignalCallback) -> Subscription:
        return CompositeSubscription([n.subscribe(callback) for n in self.notifiers])

    def close(self) -> None:
        for notifier in self.notifiers:
            notifier.close()


def create_notifier(profile: BrowserProfile, tab_id: str) -> Notifier:
    """Both channels when the profile can broadcast, storage events otherwise."""
    storage_notifier = StorageEventNotifier(profile.shared_storage, tab_id)
    if profile.supports_broadcast and profile.broadcast_hub is not None:
        return FanOutNotifier(
            [BroadcastChannelNotifier(profile.broadcast_hub, tab_id), storage_notifier]
        )
    logger.info("broadcast_unavailable_using_storage_events", tab_id=tab_id)
    return storage_notifier

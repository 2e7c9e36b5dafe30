"""In-process model of one browser profile's cross-tab plumbing.

A ``BrowserProfile`` stands for every same-origin tab of one browser user:
a broadcast hub (named pub/sub channels that never echo to the sender),
shared persistent storage whose writes fire change events in the *other*
tabs, and a FIFO of pending deliveries. Nothing is delivered synchronously;
``run_pending()`` plays the role of the event loop and hands each message
to its listener in emission order.
"""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from youandme_auth.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by every ``subscribe``; ``close()`` stops delivery."""

    def __init__(self, unsubscribe: Optional[Callable[[], None]] = None) -> None:
        self._unsubscribe = unsubscribe
        self.closed = False

    @property
    def active(self) -> bool:
        return not self.closed

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._unsubscribe:
            self._unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class CompositeSubscription(Subscription):
    def __init__(self, parts: List[Subscription]) -> None:
        super().__init__()
        self.parts = parts

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for part in self.parts:
            part.close()


class EventBus(Generic[T]):
    """Synchronous typed pub/sub used for application-level events."""

    def __init__(self) -> None:
        self._subscribers: List[tuple[Subscription, Callable[[T], None]]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        sub = Subscription()
        entry = (sub, callback)
        self._subscribers.append(entry)
        sub._unsubscribe = lambda: self._remove(entry)
        return sub

    def _remove(self, entry) -> None:
        if entry in self._subscribers:
            self._subscribers.remove(entry)

    def publish(self, event: T) -> int:
        delivered = 0
        for sub, callback in list(self._subscribers):
            if not sub.active:
                continue
            try:
                callback(event)
            except Exception as exc:
                # One broken listener must not starve the rest
                logger.error(
                    "event_listener_failed",
                    event_type=type(event).__name__,
                    error=str(exc),
                )
            delivered += 1
        return delivered

    def clear(self) -> None:
        for sub, _ in list(self._subscribers):
            sub.close()
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)


class TabStorage:
    """Tab-scoped string storage; gone when the tab closes."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def keys(self) -> List[str]:
        return list(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    source: str


class SharedStorage:
    """Profile-wide persistent storage that notifies the other tabs of writes."""

    def __init__(self, schedule: Callable[[Callable[[], None]], None]) -> None:
        self._items: Dict[str, str] = {}
        self._schedule = schedule
        self._listeners: List[tuple[Subscription, str, Callable[[StorageEvent], None]]] = []

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str, *, source: str) -> None:
        old = self._items.get(key)
        self._items[key] = str(value)
        if old != value:
            self._notify(StorageEvent(key, old, str(value), source))

    def remove_item(self, key: str, *, source: str) -> None:
        old = self._items.pop(key, None)
        if old is not None:
            self._notify(StorageEvent(key, old, None, source))

    def subscribe(
        self, callback: Callable[[StorageEvent], None], *, owner: str
    ) -> Subscription:
        sub = Subscription()
        entry = (sub, owner, callback)
        self._listeners.append(entry)
        sub._unsubscribe = lambda: self._listeners.remove(entry) if entry in self._listeners else None
        return sub

    def _notify(self, event: StorageEvent) -> None:
        # The writing tab does not see its own change event
        for sub, owner, callback in list(self._listeners):
            if owner == event.source:
                continue
            self._schedule(_deferred(sub, callback, event))


class BroadcastPort:
    """One tab's handle on a named broadcast channel."""

    def __init__(self, hub: "BroadcastHub", name: str, owner: str) -> None:
        self.hub = hub
        self.name = name
        self.owner = owner
        self._listeners: List[tuple[Subscription, Callable[[Any], None]]] = []
        self.closed = False

    def post(self, message: Any) -> None:
        if self.closed:
            raise RuntimeError(f"broadcast port '{self.name}' is closed")
        self.hub._deliver(self, message)

    def subscribe(self, callback: Callable[[Any], None]) -> Subscription:
        sub = Subscription()
        entry = (sub, callback)
        self._listeners.append(entry)
        sub._unsubscribe = lambda: self._listeners.remove(entry) if entry in self._listeners else None
        return sub

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for sub, _ in list(self._listeners):
            sub.close()
        self.hub._detach(self)


class BroadcastHub:
    def __init__(self, schedule: Callable[[Callable[[], None]], None]) -> None:
        self._schedule = schedule
        self._ports: Dict[str, List[BroadcastPort]] = {}

    def open(self, name: str, *, owner: str) -> BroadcastPort:
        port = BroadcastPort(self, name, owner)
        self._ports.setdefault(name, []).append(port)
        return port

    def _detach(self, port: BroadcastPort) -> None:
        ports = self._ports.get(port.name, [])
        if port in ports:
            ports.remove(port)

    def _deliver(self, sender: BroadcastPort, message: Any) -> None:
        for port in list(self._ports.get(sender.name, [])):
            if port is sender:
                continue
            for sub, callback in list(port._listeners):
                # Receivers get their own copy, like a structured clone
                self._schedule(_deferred(sub, callback, copy.deepcopy(message)))


def _deferred(sub: Subscription, callback: Callable[[Any], None], payload: Any):
    def deliver() -> None:
        if sub.active:
            callback(payload)

    return deliver


class BrowserProfile:
    def __init__(self, *, supports_broadcast: bool = True) -> None:
        self._pending: Deque[Callable[[], None]] = deque()
        self.supports_broadcast = supports_broadcast
        self.broadcast_hub: Optional[BroadcastHub] = (
            BroadcastHub(self._schedule) if supports_broadcast else None
        )
        self.shared_storage = SharedStorage(self._schedule)

    def _schedule(self, delivery: Callable[[], None]) -> None:
        self._pending.append(delivery)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def run_pending(self, max_deliveries: int = 10_000) -> int:
        """Deliver queued messages, including ones queued while draining.

        ``max_deliveries`` bounds a runaway echo loop; hitting it raises.
        """
        delivered = 0
        while self._pending:
            if delivered >= max_deliveries:
                raise RuntimeError(
                    f"more than {max_deliveries} cross-tab deliveries in one drain"
                )
            delivery = self._pending.popleft()
            try:
                delivery()
            except Exception as exc:
                logger.error("cross_tab_delivery_failed", error=str(exc))
            delivered += 1
        return delivered

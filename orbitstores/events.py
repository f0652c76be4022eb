"""Store events and a typed in-process event bus."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

DEFAULT_BUFFER_SIZE = 16


@dataclass
class EventReplicate:
    """A head has been queued for replication."""

    address: Any
    hash: str


@dataclass
class EventReplicateProgress:
    """Current replication progress."""

    max: int
    progress: int
    address: Any
    hash: str
    entry: Any
    replication_status: Any = None


@dataclass
class EventReplicated:
    """Data has been replicated into the store."""

    address: Any
    log_length: int
    entries: list[Any] = field(default_factory=list)


@dataclass
class EventLoad:
    """The store started loading."""

    address: Any
    heads: list[Any] | None = None


@dataclass
class EventLoadProgress:
    """An entry has been loaded."""

    address: Any
    hash: str
    entry: Any
    progress: int
    max: int


@dataclass
class EventReady:
    """The store is ready."""

    address: Any
    heads: list[Any] = field(default_factory=list)


@dataclass
class EventWrite:
    """Something has been written to the store."""

    address: Any
    entry: Any
    heads: list[Any] = field(default_factory=list)


@dataclass
class EventNewPeer:
    """A new peer was seen on the store's pubsub topic."""

    peer: str


STORE_EVENTS = (
    EventWrite,
    EventReady,
    EventReplicateProgress,
    EventLoad,
    EventReplicated,
    EventReplicate,
)


def new_event_replicate_progress(address: Any, hash: str, entry: Any, status: Any) -> EventReplicateProgress:
    """Build a progress event from the current replication status."""
    return EventReplicateProgress(
        max=status.max,
        progress=status.progress,
        address=address,
        hash=hash,
        entry=entry,
    )


class SubscriptionClosed(Exception):
    """Raised when reading from a closed and drained subscription."""


class Subscription:
    """A bounded queue of events of the subscribed types."""

    def __init__(self, bus: EventBus, event_types: frozenset[type], buffer_size: int) -> None:
        self._bus = bus
        self.event_types = event_types
        self._capacity = buffer_size
        self._items: deque[Any] = deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: Any) -> None:
        with self._cond:
            while len(self._items) >= self._capacity and not self._closed:
                self._cond.wait()
            if self._closed:
                return
            self._items.append(event)
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> Any:
        """Return the next event, waiting up to ``timeout`` seconds."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise TimeoutError("timeout while waiting for event")
            if self._items:
                event = self._items.popleft()
                self._cond.notify_all()
                return event
            raise SubscriptionClosed("subscription is closed")

    def close(self) -> None:
        """Stop receiving events; already queued events stay readable."""
        self._bus._remove(self)
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Dispatches events to the subscriptions registered for their exact type."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self, event_types: type | Iterable[type], buffer_size: int = DEFAULT_BUFFER_SIZE) -> Subscription:
        """Subscribe to one event type or to several."""
        if buffer_size < 1:
            raise ValueError("buffer size must be at least 1")
        types = (event_types,) if isinstance(event_types, type) else tuple(event_types)
        if not types:
            raise ValueError("at least one event type is required")
        subscription = Subscription(self, frozenset(types), buffer_size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def emit(self, event: Any) -> None:
        """Deliver an event, blocking while a subscriber's buffer is full."""
        with self._lock:
            targets = [sub for sub in self._subscriptions if type(event) in sub.event_types]
        for subscription in targets:
            subscription._deliver(event)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
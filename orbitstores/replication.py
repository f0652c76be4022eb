"""Replication state, queue and events."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any


@dataclass
class EventLoadAdded:
    """Entries have been added to the replication queue."""

    hash: str
    entry: Any = None


@dataclass
class EventLoadProgress:
    """An entry has been fetched by the replicator."""

    entry: Any


@dataclass
class EventLoadEnd:
    """The replicator has finished loading the given logs."""

    logs: list[Any] = field(default_factory=list)


REPLICATOR_EVENTS = (EventLoadEnd, EventLoadAdded, EventLoadProgress)


class ReplicationInfo:
    """Thread-safe replication progress counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._progress = 0
        self._max = 0

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    @progress.setter
    def progress(self, value: int) -> None:
        with self._lock:
            self._progress = value

    @property
    def max(self) -> int:
        with self._lock:
            return self._max

    @max.setter
    def max(self, value: int) -> None:
        with self._lock:
            self._max = value

    def reset(self) -> None:
        """Set progress and max back to zero."""
        with self._lock:
            self._progress = 0
            self._max = 0


def _item_hash(item: Any) -> str:
    return item if isinstance(item, str) else item.hash


class ProcessQueue:
    """FIFO queue of hashes or entries awaiting fetch; not thread safe."""

    def __init__(self) -> None:
        self._items: deque[Any] = deque()

    def add(self, item: Any) -> None:
        """Queue a hash or an entry carrying a ``hash``."""
        self._items.append(item)

    def next(self) -> Any:
        """Remove and return the oldest item."""
        if not self._items:
            raise IndexError("process queue is empty")
        return self._items.popleft()

    def hashes(self) -> list[str]:
        """Hashes of the queued items, oldest first."""
        return [_item_hash(item) for item in self._items]

    def __len__(self) -> int:
        return len(self._items)
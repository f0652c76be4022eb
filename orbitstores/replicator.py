"""Fetches missing log entries from heads announced by peers."""

from __future__ import annotations

import enum
import logging
import threading
from typing import Any

from orbitstores.events import EventBus
from orbitstores.replication import (
    EventLoadAdded,
    EventLoadEnd,
    EventLoadProgress,
    ProcessQueue,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 1
DEFAULT_CONCURRENCY = 32
_SLOT_POLL_INTERVAL = 0.05


class _TaskState(enum.Enum):
    ADDED = enum.auto()
    FETCHING = enum.auto()
    FETCHED = enum.auto()


class _WaitGroup:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._count = 0

    def add(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count == 0)


def _item_hash(item: Any) -> str:
    return item if isinstance(item, str) else item.hash


class Replicator:
    """Walks the entry graph from given heads and fetches what is missing.

    The store must provide ``oplog.get(hash)`` returning an entry or ``None``,
    and ``fetch_log(hash, *, length, should_exclude, on_progress)`` returning
    a log whose ``values()`` are entries carrying ``hash``, ``next`` and ``refs``.
    """

    def __init__(self, store: Any, concurrency: int = 0, event_bus: EventBus | None = None) -> None:
        if concurrency < 0:
            raise ValueError("concurrency must not be negative")
        self.store = store
        self.concurrency = concurrency or DEFAULT_CONCURRENCY
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self._slots = threading.Semaphore(self.concurrency)
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._tasks: dict[str, _TaskState] = {}
        self._queue = ProcessQueue()
        self._in_progress = 0
        self._buffer: list[Any] = []
        self._buffer_lock = threading.Lock()

    def stop(self) -> None:
        """Cancel pending and future work."""
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def get_queue(self) -> list[str]:
        """Hashes that are queued or being fetched."""
        with self._lock:
            return [h for h, state in self._tasks.items() if state is not _TaskState.FETCHED]

    def load(self, entries: Any) -> None:
        """Queue the given heads and wait until their history has been fetched."""
        entries = list(entries)
        wait_group = _WaitGroup()
        added = []
        with self._lock:
            for entry in entries:
                if self._enqueue(entry.hash, entry):
                    continue
                wait_group.add()
                added.append(entry)

        for entry in added:
            self._emit(EventLoadAdded(hash=entry.hash, entry=entry))
            self._spawn(wait_group)

        wait_group.wait()

    def _emit(self, event: Any) -> None:
        if self.stopped:
            return
        try:
            self.event_bus.emit(event)
        except Exception:
            logger.warning("unable to emit %s", type(event).__name__, exc_info=True)

    def _enqueue(self, hash: str, item: Any) -> bool:
        """Queue an item unless known; caller holds the lock. Returns True if known."""
        if hash in self._tasks or self.store.oplog.get(hash) is not None:
            return True
        self._queue.add(item)
        self._tasks[hash] = _TaskState.ADDED
        return False

    def _spawn(self, wait_group: _WaitGroup) -> None:
        thread = threading.Thread(target=self._run_worker, args=(wait_group,), daemon=True)
        thread.start()

    def _run_worker(self, wait_group: _WaitGroup) -> None:
        try:
            self._process_one(wait_group)
        except Exception:
            logger.warning("unable to process entry", exc_info=True)
        finally:
            wait_group.done()

    def _wait_for_slot(self) -> Any:
        while not self._slots.acquire(timeout=_SLOT_POLL_INTERVAL):
            if self.stopped:
                return None
        if self.stopped:
            self._slots.release()
            return None
        with self._lock:
            self._in_progress += 1
            item = self._queue.next()
            self._tasks[_item_hash(item)] = _TaskState.FETCHING
        return item

    def _process_one(self, wait_group: _WaitGroup) -> None:
        item = self._wait_for_slot()
        if item is None:
            logger.debug("failed to acquire process slot: replicator stopped")
            return
        try:
            self._process_item(wait_group, item)
        except Exception:
            logger.warning("process item ended", exc_info=True)
        self._process_entry_done(item)

    def _process_item(self, wait_group: _WaitGroup, item: Any) -> None:
        next_hashes = self._fetch(item)
        with self._lock:
            for hash in next_hashes:
                if self._enqueue(hash, hash):
                    continue
                wait_group.add()
                self._spawn(wait_group)

    def _fetch(self, item: Any) -> list[str]:
        log = self.store.fetch_log(
            _item_hash(item),
            length=BATCH_SIZE,
            should_exclude=self._should_exclude,
            on_progress=self._on_progress,
        )
        with self._buffer_lock:
            self._buffer.append(log)
        return [h for entry in log.values() for h in (*entry.next, *entry.refs)]

    def _on_progress(self, entry: Any) -> None:
        if entry is not None:
            self._emit(EventLoadProgress(entry=entry))

    def _process_entry_done(self, item: Any) -> None:
        logs = None
        with self._lock:
            self._in_progress -= 1
            self._tasks[_item_hash(item)] = _TaskState.FETCHED
            if self._is_idle():
                with self._buffer_lock:
                    if self._buffer:
                        logs, self._buffer = self._buffer, []
            self._slots.release()
        if logs:
            self._emit(EventLoadEnd(logs=logs))

    def _is_idle(self) -> bool:
        if self._in_progress > 0 and len(self._queue) > 0:
            return False
        return all(state is _TaskState.FETCHED for state in self._tasks.values())

    def _should_exclude(self, hash: str) -> bool:
        with self._lock:
            if self.store.oplog.get(hash) is not None:
                return True
            return self._tasks.get(hash) is _TaskState.FETCHED
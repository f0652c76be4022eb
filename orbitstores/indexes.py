"""Indexes that turn an operation log into a queryable view."""

from __future__ import annotations

import threading
from typing import Any

from orbitstores.operation import OperationError, parse_operation


class BaseIndex:
    """Keeps the full list of log values."""

    def __init__(self, public_key: bytes | None = None) -> None:
        self.id = public_key
        self._lock = threading.Lock()
        self._index: list[Any] = []

    def get(self, key: str) -> list[Any]:
        """Return every entry of the log, whatever the key."""
        with self._lock:
            return self._index

    def update_index(self, oplog: Any, entries: Any = None) -> None:
        """Replace the indexed values with the log's current values."""
        values = list(oplog.values())
        with self._lock:
            self._index = values


class NoopIndex:
    """An index that stores nothing."""

    def __init__(self, public_key: bytes | None = None) -> None:
        self.id = public_key

    def get(self, key: str) -> None:
        """Always return ``None``."""
        return None

    def update_index(self, oplog: Any, entries: Any = None) -> None:
        """Ignore the log."""


def _newest_first(oplog: Any, kind: str):
    for entry in reversed(list(oplog.values())):
        try:
            yield parse_operation(entry)
        except OperationError as exc:
            raise OperationError(f"unable to parse log {kind} operation: {exc}") from exc


class KeyValueIndex:
    """Latest value for every key, built from PUT and DEL operations."""

    def __init__(self, public_key: bytes | None = None) -> None:
        self.id = public_key
        self._lock = threading.Lock()
        self._index: dict[str, bytes | None] = {}

    def get(self, key: str) -> bytes | None:
        """Return the value stored under ``key``, or ``None``."""
        with self._lock:
            return self._index.get(key)

    def all(self) -> dict[str, bytes | None]:
        """Return a copy of every key and value."""
        with self._lock:
            return dict(self._index)

    def update_index(self, oplog: Any, entries: Any = None) -> None:
        """Apply the log's operations, the newest winning for each key."""
        handled: set[str] = set()
        with self._lock:
            for item in _newest_first(oplog, "kv"):
                if item.key is None or item.key in handled:
                    continue
                handled.add(item.key)
                if item.op == "PUT":
                    self._index[item.key] = item.value
                elif item.op == "DEL":
                    self._index.pop(item.key, None)


class DocumentIndex:
    """Serialized documents by key, built from PUT, PUTALL and DEL operations."""

    def __init__(self, options: Any = None) -> None:
        self.options = options
        self._lock = threading.Lock()
        self._index: dict[str, bytes | None] = {}

    def keys(self) -> list[str]:
        """Return the indexed keys."""
        with self._lock:
            return list(self._index)

    def get(self, key: str) -> bytes | None:
        """Return the serialized document stored under ``key``, or ``None``."""
        with self._lock:
            return self._index.get(key)

    def update_index(self, oplog: Any, entries: Any = None) -> None:
        """Apply the log's operations, the newest winning for each key."""
        handled: set[str | None] = set()
        with self._lock:
            for item in _newest_first(oplog, "documentstore"):
                if item.op == "PUTALL":
                    for doc in item.docs:
                        if doc.key in handled:
                            continue
                        handled.add(item.key)
                        self._index[doc.key] = doc.value
                    continue

                if not item.key or item.key in handled:
                    continue
                handled.add(item.key)
                if item.op == "PUT":
                    self._index[item.key] = item.value
                elif item.op == "DEL":
                    self._index.pop(item.key, None)


class EventIndex:
    """Keeps a reference to the log and exposes its values."""

    def __init__(self, public_key: bytes | None = None) -> None:
        self.id = public_key
        self._lock = threading.Lock()
        self._log: Any = None

    def get(self, key: str) -> list[Any] | None:
        """Return the log's values, or ``None`` before the first update."""
        with self._lock:
            if self._log is None:
                return None
            return list(self._log.values())

    def update_index(self, oplog: Any, entries: Any = None) -> None:
        """Remember the log."""
        with self._lock:
            self._log = oplog
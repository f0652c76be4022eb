"""A key-value store."""

from __future__ import annotations

import dataclasses
from typing import Any

from orbitstores.indexes import KeyValueIndex
from orbitstores.operation import Operation, parse_operation
from orbitstores.store import BaseStore, StoreOptions


class KeyValueStore(BaseStore):
    """Stores the latest value written under each key."""

    def __init__(self, ipfs: Any, identity: Any, address: Any, options: StoreOptions | None = None) -> None:
        options = dataclasses.replace(options or StoreOptions(), index=KeyValueIndex)
        super().__init__(ipfs, identity, address, options)

    @property
    def type(self) -> str:
        return "keyvalue"

    def all(self) -> dict[str, bytes | None]:
        """Return a copy of every key and value."""
        index = self.index
        if not isinstance(index, KeyValueIndex):
            return {}
        return index.all()

    def put(self, key: str, value: bytes) -> Operation:
        """Store ``value`` under ``key``."""
        entry = self.add_operation(Operation(key=key, op="PUT", value=value))
        return parse_operation(entry)

    def delete(self, key: str) -> Operation:
        """Remove ``key``."""
        entry = self.add_operation(Operation(key=key, op="DEL"))
        return parse_operation(entry)

    def get(self, key: str) -> bytes | None:
        """Return the value under ``key``, or ``None``."""
        return self.index.get(key)
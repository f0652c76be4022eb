"""An append-only event log store."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from orbitstores.indexes import EventIndex
from orbitstores.operation import Operation, parse_operation
from orbitstores.store import BaseStore, StoreOptions


@dataclass
class StreamOptions:
    """Selects a range of events; ``amount`` of -1 means all."""

    gt: str | None = None
    gte: str | None = None
    lt: str | None = None
    lte: str | None = None
    amount: int | None = None


def _read(entries: list[Any], hash: str | None, amount: int, inclusive: bool) -> list[Any]:
    start = next((i for i, entry in enumerate(entries) if str(entry.hash) == str(hash)), 0)
    if not inclusive:
        start += 1
    return entries[start : start + amount]


class EventLogStore(BaseStore):
    """Keeps every added value in log order."""

    def __init__(self, ipfs: Any, identity: Any, address: Any, options: StoreOptions | None = None) -> None:
        options = dataclasses.replace(options or StoreOptions(), index=EventIndex)
        super().__init__(ipfs, identity, address, options)

    @property
    def type(self) -> str:
        return "eventlog"

    def add(self, value: bytes) -> Operation:
        """Append a value."""
        entry = self.add_operation(Operation(key=None, op="ADD", value=value))
        return parse_operation(entry)

    def list(self, options: StreamOptions | None = None) -> list[Operation]:
        """Return the selected operations."""
        return list(self.stream(options))

    def get(self, hash: str) -> Operation:
        """Return the operation at ``hash``."""
        for operation in self.stream(StreamOptions(gte=hash, amount=1)):
            return operation
        raise LookupError("channel read failed")

    def stream(self, options: StreamOptions | None = None) -> Iterator[Operation]:
        """Yield the selected operations in log order."""
        for entry in self._query(options or StreamOptions()):
            yield parse_operation(entry)

    def _query(self, options: StreamOptions) -> list[Any]:
        events = self.index.get("")
        if events is None:
            return []
        events = list(events)

        amount = 1
        if options.amount is not None:
            if options.amount == 0:
                amount = 1
            elif options.amount > -1:
                amount = options.amount
            else:
                amount = len(events)

        if options.gt is not None or options.gte is not None:
            start = options.gt if options.gt is not None else options.gte
            return _read(events, start, amount, options.gte is not None)

        bound = options.lt if options.lt is not None else options.lte
        inclusive = options.lte is not None or options.lt is None
        result = _read(events[::-1], bound, amount, inclusive)
        return result[::-1]
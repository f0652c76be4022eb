import threading
from dataclasses import dataclass, field

import pytest

from orbitstores.events import EventBus
from orbitstores.replication import EventLoadAdded, EventLoadEnd, EventLoadProgress
from orbitstores.replicator import Replicator


@dataclass
class FakeEntry:
    hash: str
    next: list = field(default_factory=list)
    refs: list = field(default_factory=list)


class FakeLog:
    def __init__(self, entries):
        self._entries = list(entries)

    def values(self):
        return list(self._entries)

    def get(self, hash):
        return next((e for e in self._entries if e.hash == hash), None)


class FakeStore:
    def __init__(self, dag, local=()):
        self.dag = {e.hash: e for e in dag}
        self.oplog = FakeLog(local)
        self.fetched = []
        self._lock = threading.Lock()

    def fetch_log(self, hash, *, length, should_exclude, on_progress):
        with self._lock:
            self.fetched.append(hash)
        if hash not in self.dag:
            raise LookupError(hash)
        entry = self.dag[hash]
        on_progress(entry)
        return FakeLog([entry])


def chain():
    c = FakeEntry("c")
    b = FakeEntry("b", next=["c"])
    a = FakeEntry("a", next=["b"])
    return a, b, c


def test_default_concurrency():
    assert Replicator(FakeStore([])).concurrency == 32


def test_negative_concurrency_rejected():
    with pytest.raises(ValueError):
        Replicator(FakeStore([]), concurrency=-1)


def test_load_fetches_whole_chain():
    a, b, c = chain()
    store = FakeStore([a, b, c])
    bus = EventBus()
    sub = bus.subscribe([EventLoadEnd], buffer_size=16)
    replicator = Replicator(store, event_bus=bus)

    replicator.load([a])

    assert sorted(store.fetched) == ["a", "b", "c"]
    end = sub.get(timeout=1)
    fetched = sorted(e.hash for log in end.logs for e in log.values())
    assert fetched == ["a", "b", "c"]
    with pytest.raises(TimeoutError):
        sub.get(timeout=0.1)
    assert replicator.get_queue() == []


def test_load_emits_added_and_progress_events():
    a, b, c = chain()
    bus = EventBus()
    added = bus.subscribe([EventLoadAdded], buffer_size=16)
    progress = bus.subscribe([EventLoadProgress], buffer_size=16)
    replicator = Replicator(FakeStore([a, b, c]), event_bus=bus)

    replicator.load([a])

    first = added.get(timeout=1)
    assert first.hash == "a"
    assert first.entry is a
    with pytest.raises(TimeoutError):
        added.get(timeout=0.1)
    hashes = sorted(progress.get(timeout=1).entry.hash for _ in range(3))
    assert hashes == ["a", "b", "c"]


def test_shared_ancestor_fetched_once():
    d = FakeEntry("d")
    b = FakeEntry("b", next=["d"])
    c = FakeEntry("c", next=["d"])
    a = FakeEntry("a", next=["b", "c"])
    store = FakeStore([a, b, c, d])
    Replicator(store, concurrency=2).load([a])
    assert sorted(store.fetched) == ["a", "b", "c", "d"]


def test_entries_already_in_log_are_skipped():
    a, b, c = chain()
    store = FakeStore([a, b, c], local=[b])
    Replicator(store).load([a])
    assert store.fetched == ["a"]


def test_second_load_does_not_refetch():
    a, b, c = chain()
    store = FakeStore([a, b, c])
    replicator = Replicator(store)
    replicator.load([a])
    replicator.load([a])
    assert sorted(store.fetched) == ["a", "b", "c"]


def test_failed_fetch_still_completes():
    a = FakeEntry("a", next=["missing"])
    store = FakeStore([a])
    bus = EventBus()
    sub = bus.subscribe([EventLoadEnd], buffer_size=16)
    replicator = Replicator(store, event_bus=bus)

    replicator.load([a])

    assert sorted(store.fetched) == ["a", "missing"]
    assert replicator.get_queue() == []
    end = sub.get(timeout=1)
    assert [e.hash for log in end.logs for e in log.values()] == ["a"]


def test_stopped_replicator_fetches_nothing():
    a, _, _ = chain()
    store = FakeStore([a])
    replicator = Replicator(store)
    replicator.stop()
    replicator.load([a])
    assert store.fetched == []
    assert replicator.get_queue() == ["a"]
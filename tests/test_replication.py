from types import SimpleNamespace

import pytest

from orbitstores.replication import (
    EventLoadAdded,
    EventLoadEnd,
    ProcessQueue,
    ReplicationInfo,
)


def test_replication_info_starts_at_zero_and_resets():
    info = ReplicationInfo()
    assert (info.progress, info.max) == (0, 0)
    info.progress = 3
    info.max = 9
    assert (info.progress, info.max) == (3, 9)
    info.reset()
    assert (info.progress, info.max) == (0, 0)


def test_queue_is_fifo_for_hashes_and_entries():
    queue = ProcessQueue()
    entry = SimpleNamespace(hash="hash-b")
    queue.add("hash-a")
    queue.add(entry)
    assert queue.hashes() == ["hash-a", "hash-b"]
    assert len(queue) == 2
    assert queue.next() == "hash-a"
    assert queue.next() is entry
    assert len(queue) == 0


def test_next_on_empty_queue_raises():
    with pytest.raises(IndexError):
        ProcessQueue().next()


def test_hashes_do_not_consume_queue():
    queue = ProcessQueue()
    queue.add("h1")
    queue.hashes()
    assert len(queue) == 1


def test_event_fields():
    added = EventLoadAdded(hash="h", entry="e")
    assert (added.hash, added.entry) == ("h", "e")
    assert EventLoadEnd().logs == []
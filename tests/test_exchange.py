import hashlib
import json
import queue
import time as _time
from dataclasses import dataclass, field
from types import SimpleNamespace

import pytest

from orbitstores.events import EventNewPeer, EventReplicated, EventWrite
from orbitstores.exchange import ExchangeError, JSONMessageMarshaler, PeerJoined
from orbitstores.store import BaseStore, StoreOptions


@dataclass
class FakeEntry:
    hash: str
    payload: bytes
    next: list = field(default_factory=list)
    refs: list = field(default_factory=list)
    clock: SimpleNamespace = field(default_factory=lambda: SimpleNamespace(time=0))
    identity: object = None

    def to_json(self):
        return {"hash": self.hash, "payload": self.payload.decode(), "next": self.next}


class FakeLog:
    def __init__(self, ipfs, identity, log_id, ac, entries=()):
        self.ipfs, self.identity, self.id, self.ac = ipfs, identity, log_id, ac
        self._entries = {e.hash: e for e in entries}

    def values(self):
        return sorted(self._entries.values(), key=lambda e: (e.clock.time, e.hash))

    entries = values

    def heads(self):
        referenced = {n for e in self._entries.values() for n in e.next}
        return [e for e in self.values() if e.hash not in referenced]

    def get(self, h):
        return self._entries.get(h)

    def __len__(self):
        return len(self._entries)

    def append(self, payload, *, pointer_count):
        time = max((e.clock.time for e in self._entries.values()), default=0) + 1
        digest = hashlib.sha256(f"{time}|".encode() + payload).hexdigest()
        entry = FakeEntry(digest, payload, [h.hash for h in self.heads()], [], SimpleNamespace(time=time), self.identity)
        self._entries[digest] = entry
        self.ipfs.blocks[digest] = entry
        return entry

    def join(self, other, size):
        for e in other.values():
            self._entries.setdefault(e.hash, e)


class FakeIPFS:
    def __init__(self):
        self.blocks = {}

    def new_log(self, identity, *, log_id, access_controller, sort_fn):
        return FakeLog(self, identity, log_id, access_controller)

    def write_entry(self, entry):
        return entry.hash

    def decode_entry(self, raw):
        return self.blocks.get(raw["hash"]) or FakeEntry(raw["hash"], b"", list(raw.get("next", [])))

    def log_from_entry_hash(self, identity, hash, *, log_id, access_controller, sort_fn, length,
                            exclude=None, should_exclude=None, on_progress=None):
        stack, seen, found = [hash], set(), []
        while stack and (length <= 0 or len(found) < length):
            h = stack.pop()
            if h in seen or (should_exclude and should_exclude(h)):
                continue
            seen.add(h)
            entry = self.blocks[h]
            found.append(entry)
            if on_progress:
                on_progress(entry)
            stack.extend(entry.next)
        return FakeLog(self, identity, log_id, access_controller, found)


class FakeTopic:
    def __init__(self):
        self.peer_list = []
        self.published = []
        self.peer_events = queue.Queue()
        self.messages = queue.Queue()

    def peers(self):
        return self.peer_list

    def publish(self, payload):
        self.published.append(payload)

    def _drain(self, q):
        while (item := q.get()) is not None:
            yield item

    def watch_peers(self):
        return self._drain(self.peer_events)

    def watch_messages(self):
        return self._drain(self.messages)


class FakePubSub:
    def __init__(self):
        self.topics = {}

    def topic_subscribe(self, name):
        return self.topics.setdefault(name, FakeTopic())


class FakeChannel:
    def __init__(self):
        self.connected = []
        self.sent = []

    def connect(self, peer):
        self.connected.append(peer)

    def send(self, peer, payload):
        self.sent.append((peer, payload))


IDENTITY = SimpleNamespace(id="id-a", public_key=b"pk", provider=object())
ADDRESS = "/orbitdb/addr/exchange"


@pytest.fixture
def env():
    ipfs, pubsub, channel = FakeIPFS(), FakePubSub(), FakeChannel()
    store = BaseStore(ipfs, IDENTITY, ADDRESS,
                      StoreOptions(pubsub=pubsub, direct_channel=channel))
    topic = pubsub.topics[ADDRESS]
    yield SimpleNamespace(ipfs=ipfs, store=store, topic=topic, channel=channel)
    topic.peer_events.put(None)
    topic.messages.put(None)
    store.close()


def entry(name):
    return FakeEntry(name, b"{}", [], [], SimpleNamespace(time=1), IDENTITY)


def test_write_without_heads_raises(env):
    with pytest.raises(ExchangeError):
        env.store.exchange.handle_event_write(EventWrite(address=ADDRESS, entry=None, heads=[]))


def test_write_without_peers_publishes_nothing(env):
    head = entry("h1")
    assert env.store.exchange.handle_event_write(EventWrite(address=ADDRESS, entry=head, heads=[head])) is False
    assert env.topic.published == []


def test_write_with_peers_publishes_heads(env):
    env.topic.peer_list.append("peer-b")
    head = entry("h1")
    assert env.store.exchange.handle_event_write(EventWrite(address=ADDRESS, entry=head, heads=[head])) is True
    message = JSONMessageMarshaler().unmarshal(env.topic.published[-1])
    assert message["address"] == ADDRESS
    assert [h["hash"] for h in message["heads"]] == ["h1"]


def test_exchange_heads_sends_cached_heads(env):
    written = env.store.add_operation(SimpleNamespace(marshal=lambda: b'{"op":"ADD"}'))
    env.store.exchange.exchange_heads("peer-b")
    assert env.channel.connected == ["peer-b"]
    peer, payload = env.channel.sent[-1]
    assert peer == "peer-b"
    message = json.loads(payload)
    assert message["address"] == ADDRESS
    assert [h["hash"] for h in message["heads"]] == [written.hash]


def test_bad_message_raises(env):
    with pytest.raises(ExchangeError):
        env.store.exchange.handle_message(b"not json")


def test_empty_message_syncs_nothing(env):
    payload = JSONMessageMarshaler().marshal({"address": ADDRESS, "heads": []})
    assert env.store.exchange.handle_message(payload) == 0


def test_message_heads_are_replicated(env):
    other = BaseStore(env.ipfs, IDENTITY, ADDRESS, StoreOptions(replicate=False))
    try:
        other.add_operation(SimpleNamespace(marshal=lambda: b'{"op":"ADD"}'))
        payload = JSONMessageMarshaler().marshal(
            {"address": ADDRESS, "heads": [h.to_json() for h in other.oplog.heads()]}
        )
        sub = env.store.event_bus.subscribe(EventReplicated)
        assert env.store.exchange.handle_message(payload) == 1
        assert sub.get(timeout=5).log_length == 1
        assert len(env.store.oplog) == 1
    finally:
        other.close()


def test_peer_join_emits_event_and_exchanges(env):
    sub = env.store.event_bus.subscribe(EventNewPeer)
    env.topic.peer_events.put(PeerJoined("peer-c"))
    assert sub.get(timeout=5).peer == "peer-c"
    deadline = _time.time() + 5
    while not env.channel.sent and _time.time() < deadline:
        _time.sleep(0.01)
    assert env.channel.sent[0][0] == "peer-c"
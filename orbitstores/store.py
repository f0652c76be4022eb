"""The store base shared by every store type.

A store is built on an ``ipfs`` node object that provides:

* ``new_log(identity, *, log_id, access_controller, sort_fn)``
* ``log_from_entry_hash(identity, hash, *, log_id, access_controller, sort_fn,
  length, exclude=None, should_exclude=None, on_progress=None)``
* ``log_from_json(identity, *, heads, log_id, entries, access_controller, sort_fn)``
* ``write_entry(entry)`` returning the hash of the written entry
* ``decode_entry(raw)`` building an entry from its JSON form
* ``add(data)`` returning a content identifier, and ``cat(cid)`` returning bytes

Logs provide ``id``, ``values()``, ``entries()``, ``heads()``, ``get(hash)``,
``len()``, ``append(payload, *, pointer_count)`` and ``join(other, size)``.
Entries provide ``hash``, ``next``, ``refs``, ``clock.time``, ``identity`` and
``to_json()``. Access controllers provide ``can_append(entry, provider,
context)``, which raises when the entry is refused.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable, MutableMapping
from dataclasses import dataclass
from typing import Any

from orbitstores.events import (
    EventBus,
    EventLoad,
    EventLoadProgress as StoreEventLoadProgress,
    EventReady,
    EventReplicate,
    EventReplicated,
    EventWrite,
    new_event_replicate_progress,
)
from orbitstores.indexes import BaseIndex
from orbitstores.replication import (
    REPLICATOR_EVENTS,
    EventLoadAdded,
    EventLoadEnd,
    EventLoadProgress,
    ReplicationInfo,
)
from orbitstores.replicator import Replicator
from orbitstores.snapshot import SnapshotHeader, decode_snapshot, encode_snapshot

logger = logging.getLogger(__name__)

LOCAL_HEADS_KEY = "_localHeads"
REMOTE_HEADS_KEY = "_remoteHeads"
SNAPSHOT_KEY = "snapshot"
QUEUE_KEY = "queue"
DEFAULT_REFERENCE_COUNT = 64
DEFAULT_DIRECTORY = "./orbitdb"


class StoreError(Exception):
    """Raised when a store operation fails."""


class SnapshotNotFound(StoreError, LookupError):
    """Raised when no snapshot has been saved for the store."""


@dataclass
class StoreOptions:
    """Options for creating a store."""

    event_bus: EventBus | None = None
    cache: MutableMapping[str, bytes] | None = None
    cache_destroy: Callable[[], None] | None = None
    index: Callable[[Any], Any] | None = None
    access_controller: Any = None
    reference_count: int = DEFAULT_REFERENCE_COUNT
    replication_concurrency: int = 0
    max_history: int | None = None
    directory: str = DEFAULT_DIRECTORY
    replicate: bool = True
    sort_fn: Any = None
    close_func: Callable[[], None] | None = None
    peer_id: str | None = None
    pubsub: Any = None
    direct_channel: Any = None
    message_marshaler: Any = None
    logger: logging.Logger | None = None


class _SimpleAccessController:
    """Allows writes from the listed identities, or anyone with ``*``."""

    def __init__(self, write: Iterable[str]) -> None:
        self.write = list(write)

    def can_append(self, entry: Any, identity_provider: Any, context: Any) -> None:
        if "*" in self.write or entry.identity.id in self.write:
            return
        raise PermissionError("not allowed to write entry")


class CanAppendContext:
    """Gives an access controller a view of the log's entries."""

    def __init__(self, log: Any) -> None:
        self.log = log

    def get_log_entries(self) -> list[Any]:
        """Return every entry of the log."""
        return list(self.log.entries())


class BaseStore:
    """Holds an operation log, its index, a cache and replication state."""

    def __init__(self, ipfs: Any, identity: Any, address: Any, options: StoreOptions | None = None) -> None:
        if identity is None:
            raise StoreError("identity required")
        options = options if options is not None else StoreOptions()
        if options.replicate and options.direct_channel is None:
            raise StoreError("replication needs DirectChannel")

        self.options = options
        self.event_bus = options.event_bus if options.event_bus is not None else EventBus()
        self.logger = options.logger or logger
        self.peer_id = options.peer_id or getattr(ipfs, "peer_id", None)
        self.identity = identity
        self.address = address
        self.id = str(address)
        self.db_name = getattr(address, "path", None) or self.id.rsplit("/", 1)[-1]
        self.ipfs = ipfs
        self.access_controller = (
            options.access_controller
            if options.access_controller is not None
            else _SimpleAccessController([identity.id])
        )
        self.replication_status = ReplicationInfo()
        self.sort_fn = options.sort_fn
        self.reference_count = options.reference_count
        self.directory = options.directory or DEFAULT_DIRECTORY
        self._cache: MutableMapping[str, bytes] = options.cache if options.cache is not None else {}
        self._cache_destroy = options.cache_destroy or (lambda: None)
        self._close_func = options.close_func or (lambda: None)
        self._index_factory = options.index or BaseIndex

        self._index_lock = threading.RLock()
        self._cache_lock = threading.RLock()
        self._joining = threading.RLock()
        self._closed = threading.Event()

        with self._index_lock:
            self._oplog = self._new_log()
            self._index = self._index_factory(identity.public_key)

        self.replicator = Replicator(self, options.replication_concurrency, self.event_bus)
        self._subscription = self.event_bus.subscribe(REPLICATOR_EVENTS, 128)
        self._main_loop = threading.Thread(target=self._run_main_loop, daemon=True)
        self._main_loop.start()

        if options.replicate:
            from orbitstores.exchange import HeadsExchange

            try:
                self.exchange = HeadsExchange(self)
                self.exchange.start()
            except Exception as exc:
                raise StoreError(f"unable to start store replication: {exc}") from exc

    # ----------------------------------------------------------------- state

    @property
    def oplog(self) -> Any:
        with self._index_lock:
            return self._oplog

    @property
    def index(self) -> Any:
        with self._index_lock:
            return self._index

    @property
    def cache(self) -> MutableMapping[str, bytes]:
        with self._cache_lock:
            return self._cache

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def type(self) -> str:
        return "store"

    def _new_log(self, log_id: str | None = None) -> Any:
        return self.ipfs.new_log(
            self.identity,
            log_id=log_id or self.id,
            access_controller=self.access_controller,
            sort_fn=self.sort_fn,
        )

    def fetch_log(self, hash: str, *, length: int, should_exclude: Any = None, on_progress: Any = None) -> Any:
        """Fetch the log reachable from ``hash``; used by the replicator."""
        return self.ipfs.log_from_entry_hash(
            self.identity,
            hash,
            log_id=self.oplog.id,
            access_controller=self.access_controller,
            sort_fn=self.sort_fn,
            length=length,
            should_exclude=should_exclude,
            on_progress=on_progress,
        )

    def _emit(self, event: Any) -> None:
        if self.closed:
            return
        try:
            self.event_bus.emit(event)
        except Exception:
            self.logger.warning("unable to emit %s", type(event).__name__, exc_info=True)

    # ------------------------------------------------------------- lifecycle

    def close(self) -> None:
        """Stop replication and close the cache; calling again does nothing."""
        if self.closed:
            return
        self._closed.set()
        self._close_func()
        self.replicator.stop()
        self._subscription.close()
        self.replication_status.reset()
        close = getattr(self.cache, "close", None)
        if close is not None:
            try:
                close()
            except Exception as exc:
                raise StoreError(f"unable to close cache: {exc}") from exc

    def drop(self) -> None:
        """Close the store, destroy its cache and reset the log and index."""
        try:
            self.close()
        except StoreError as exc:
            raise StoreError(f"unable to close store: {exc}") from exc
        try:
            self._cache_destroy()
        except Exception as exc:
            raise StoreError(f"unable to destroy cache: {exc}") from exc
        with self._index_lock:
            self._index = self._index_factory(self.identity.public_key)
            try:
                self._oplog = self._new_log()
            except Exception as exc:
                raise StoreError(f"unable to create log: {exc}") from exc
        with self._cache_lock:
            self._cache = self.options.cache if self.options.cache is not None else {}

    # ------------------------------------------------------------- heads I/O

    def _encode_heads(self, heads: Iterable[Any]) -> bytes:
        return json.dumps([head.to_json() for head in heads]).encode("utf-8")

    def _decode_heads(self, raw: bytes) -> list[Any]:
        decoded = json.loads(raw)
        if not isinstance(decoded, list):
            raise ValueError("cached heads are not a list")
        return [self.ipfs.decode_entry(item) for item in decoded]

    # ----------------------------------------------------------------- load

    def load(self, amount: int = -1) -> None:
        """Load the cached heads and their history into the log."""
        if amount <= 0 and self.options.max_history is not None:
            amount = self.options.max_history

        local_heads: list[Any] = []
        raw_local = self.cache.get(LOCAL_HEADS_KEY)
        if raw_local is not None:
            try:
                local_heads = self._decode_heads(raw_local)
            except (ValueError, TypeError, KeyError):
                self.logger.warning("unable to unmarshal cached local heads", exc_info=True)

        remote_heads: list[Any] = []
        raw_remote = self.cache.get(REMOTE_HEADS_KEY)
        if raw_remote is not None:
            try:
                remote_heads = self._decode_heads(raw_remote)
            except (ValueError, TypeError, KeyError) as exc:
                raise StoreError(f"unable to unmarshal cached remote heads: {exc}") from exc

        heads = local_heads + remote_heads
        if heads:
            self._emit(EventLoad(address=self.address, heads=list(heads)))

        error: StoreError | None = None
        for head in heads:
            with self._joining:
                oplog = self.oplog
                try:
                    log = self.ipfs.log_from_entry_hash(
                        self.identity,
                        head.hash,
                        log_id=oplog.id,
                        access_controller=self.access_controller,
                        sort_fn=self.sort_fn,
                        length=amount,
                        exclude=list(oplog.entries()),
                        on_progress=self._on_load_progress,
                    )
                except Exception as exc:
                    error = StoreError(f"unable to create log from entry hash: {exc}")
                    continue
                self._recalculate_replication_status(head.clock.time)
                try:
                    oplog.join(log, amount)
                except Exception:
                    self.logger.debug("unable to join log", exc_info=True)

        if error is not None:
            raise error

        if heads:
            self._update_index()

        self._emit(EventReady(address=self.address, heads=list(self.oplog.heads())))

    def _on_load_progress(self, entry: Any) -> None:
        if entry is None:
            return
        self._recalculate_replication_status(entry.clock.time)
        self._emit(
            StoreEventLoadProgress(
                address=self.address,
                hash=entry.hash,
                entry=entry,
                progress=self.replication_status.progress,
                max=self.replication_status.max,
            )
        )

    # ----------------------------------------------------------------- sync

    def sync(self, heads: Iterable[Any]) -> None:
        """Verify heads received from a peer and start replicating them."""
        heads = list(heads)
        if not heads:
            return

        for head in heads:
            if head is None:
                self.logger.debug("warning: Given input entry was 'null'.")
                continue
            if head.next is None:
                head.next = []
            if head.refs is None:
                head.refs = []

            provider = self.identity.provider
            if provider is None:
                raise StoreError("identity-provider is required, cannot verify entry")

            try:
                self.access_controller.can_append(head, provider, CanAppendContext(self.oplog))
            except Exception:
                self.logger.debug(
                    "warning: Given input entry is not allowed in this log and was discarded (no write access)",
                    exc_info=True,
                )
                continue

            try:
                written = self.ipfs.write_entry(head)
            except Exception as exc:
                raise StoreError(f"unable to write entry on dag: {exc}") from exc
            if str(written) != str(head.hash):
                raise StoreError("WARNING! Head hash didn't match the contents")

        to_load = [head for head in heads if head is not None]
        threading.Thread(target=self.replicator.load, args=(to_load,), daemon=True).start()

    def load_more_from(self, amount: int, entries: Iterable[Any]) -> None:
        """Replicate the given entries."""
        self.replicator.load(list(entries))

    # ------------------------------------------------------------- snapshot

    def save_snapshot(self) -> str:
        """Write the log as a snapshot, remember it in the cache and return its id."""
        unfinished = self.replicator.get_queue()
        oplog = self.oplog
        header = SnapshotHeader(
            id=oplog.id,
            heads=[head.to_json() for head in oplog.heads()],
            size=len(oplog),
            type=self.type,
        )
        data = encode_snapshot(header, (entry.to_json() for entry in oplog.entries()))
        try:
            snapshot_id = str(self.ipfs.add(data))
        except Exception as exc:
            raise StoreError(f"unable to save log data on store: {exc}") from exc
        self.cache[SNAPSHOT_KEY] = snapshot_id.encode("utf-8")
        self.cache[QUEUE_KEY] = json.dumps(unfinished).encode("utf-8")
        return snapshot_id

    def load_from_snapshot(self) -> None:
        """Load the log from the snapshot recorded in the cache."""
        with self._joining:
            self._emit(EventLoad(address=self.address, heads=None))

            queue_raw = self.cache.get(QUEUE_KEY)
            if queue_raw is not None:
                try:
                    queue = json.loads(queue_raw)
                except ValueError as exc:
                    raise StoreError(f"unable to deserialize queued CIDs: {exc}") from exc
                entries = [self.ipfs.decode_entry({"hash": h}) for h in queue]
                try:
                    self.sync(entries)
                except StoreError as exc:
                    raise StoreError(f"unable to sync queued CIDs: {exc}") from exc

            snapshot_id = self.cache.get(SNAPSHOT_KEY)
            if snapshot_id is None:
                raise SnapshotNotFound("not found: no snapshot in cache")

            self.logger.debug("loading snapshot from path %s", snapshot_id)
            try:
                data = self.ipfs.cat(snapshot_id.decode("utf-8"))
            except Exception as exc:
                raise StoreError(f"unable to get snapshot from ipfs: {exc}") from exc

            try:
                header, raw_entries = decode_snapshot(data)
            except ValueError as exc:
                raise StoreError(str(exc)) from exc

            entries = [self.ipfs.decode_entry(raw) for raw in raw_entries]
            max_clock = max((entry.clock.time for entry in entries), default=0)
            self._recalculate_replication_max(max_clock)

            heads = [self.ipfs.decode_entry(raw).hash for raw in header.heads]
            try:
                log = self.ipfs.log_from_json(
                    self.identity,
                    heads=heads,
                    log_id=header.id,
                    entries=entries,
                    access_controller=self.access_controller,
                    sort_fn=self.sort_fn,
                )
            except Exception as exc:
                raise StoreError(f"unable to load log: {exc}") from exc

            try:
                self.oplog.join(log, -1)
            except Exception as exc:
                raise StoreError(f"unable to join log: {exc}") from exc

            self._update_index()

    # ------------------------------------------------------------ operations

    def add_operation(self, op: Any, on_progress: Callable[[Any], None] | None = None) -> Any:
        """Append an operation to the log and return the new entry."""
        data = op.marshal()
        oplog = self.oplog
        try:
            entry = oplog.append(data, pointer_count=self.reference_count)
        except Exception as exc:
            raise StoreError(f"unable to append data on log: {exc}") from exc

        self._recalculate_replication_status(entry.clock.time)
        self.cache[LOCAL_HEADS_KEY] = self._encode_heads([entry])
        self._update_index()
        self._emit(EventWrite(address=self.address, entry=entry, heads=list(oplog.heads())))

        if on_progress is not None:
            on_progress(entry)
        return entry

    def _update_index(self) -> None:
        try:
            self.index.update_index(self.oplog, [])
        except Exception as exc:
            raise StoreError(f"unable to update index: {exc}") from exc

    # ----------------------------------------------------------- replication

    def _recalculate_replication_progress(self) -> None:
        status = self.replication_status
        value = min(status.max, status.progress + 1)
        value = max(value, len(self.oplog))
        status.progress = value

    def _recalculate_replication_max(self, maximum: int) -> None:
        status = self.replication_status
        log_len = len(self.oplog)
        if log_len > maximum:
            maximum = log_len
        elif status.max > maximum:
            maximum = status.max
        status.max = maximum

    def _recalculate_replication_status(self, max_total: int) -> None:
        self._recalculate_replication_max(max_total)
        self._recalculate_replication_progress()

    def _run_main_loop(self) -> None:
        for event in self._subscription:
            try:
                self._handle_replicator_event(event)
            except Exception:
                self.logger.warning("unable to handle replicator event", exc_info=True)

    def _handle_replicator_event(self, event: Any) -> None:
        if isinstance(event, EventLoadAdded):
            max_total = event.entry.clock.time if event.entry is not None else 0
            self._recalculate_replication_max(max_total)
            self._emit(EventReplicate(address=self.address, hash=event.hash))
        elif isinstance(event, EventLoadEnd):
            self._replication_load_complete(event.logs)
        elif isinstance(event, EventLoadProgress):
            if event.entry is None:
                return
            self._recalculate_replication_status(event.entry.clock.time)
            self._emit(
                new_event_replicate_progress(self.address, event.entry.hash, event.entry, self.replication_status)
            )

    def _replication_load_complete(self, logs: list[Any]) -> None:
        with self._joining:
            oplog = self.oplog
            entries: list[Any] = []
            for log in logs:
                try:
                    oplog.join(log, -1)
                except Exception:
                    self.logger.error("unable to join logs", exc_info=True)
                    return
                entries.extend(log.entries())

            try:
                self._update_index()
            except StoreError:
                self.logger.error("unable to update index", exc_info=True)
                return

            heads = list(oplog.heads())
            try:
                self.cache[REMOTE_HEADS_KEY] = self._encode_heads(heads)
            except Exception:
                self.logger.error("unable to update heads cache", exc_info=True)
                return

            if len(oplog) > self.replication_status.progress:
                self._recalculate_replication_status(len(oplog))

            self.logger.debug("Saved heads %d", len(heads))
            self._emit(EventReplicated(address=self.address, log_length=len(logs), entries=entries))
# orbitstores

Replicated databases on top of an append-only operation log. Every change
to a store is an `Operation` that is appended to the log. An index reads
the log back to build the current state, and the newest operation for a
key wins. Stores exchange log heads with peers so that their replicas
converge.

## Stores

All stores take `(ipfs, identity, address, options)`, where `options` is
a `StoreOptions` from `orbitstores.store`.

- `KeyValueStore` (`orbitstores.kvstore`) has `put(key, value)`,
  `get(key)`, `delete(key)` and `all()`. Values are bytes.
- `DocumentStore` (`orbitstores.documentstore`) stores documents under a
  key that is taken from each document. It has `put`, `put_batch`
  (one operation per document, returns the last one), `put_all` (a
  single `PUTALL` operation) and `delete`. `delete` raises
  `DocumentNotFound` for an unknown key. `get(key, case_insensitive,
  partial_matches)` looks documents up by key, and `query(predicate)`
  filters them. Serialization is set by `DocumentStoreOptions`.
  `default_store_options_for_map(key_field)` gives JSON dictionaries
  keyed by `key_field`, and that is the default with `"_id"`.
  `map_key_extractor(key_field)` returns the key function alone.
- `EventLogStore` (`orbitstores.eventlogstore`) is an append-only log.
  It has `add(value)` and `get(hash)`. `list(options)` and
  `stream(options)` read it with `StreamOptions`: `gt`, `gte`, `lt`,
  `lte` and `amount`. When no `amount` is given, one item is returned,
  and `-1` returns all of them.

All three build on `BaseStore` (`orbitstores.store`), which provides:

- `add_operation(op, on_progress)`: appends to the log, records the new
  head in the cache, updates the index and emits `EventWrite`.
- `load(amount)`: loads the heads cached under `_localHeads` and
  `_remoteHeads` with their history, then emits `EventReady`.
- `sync(heads)`: checks each incoming head with the access controller
  and drops the heads it refuses. It checks that writing each head gives
  back the same hash, then replicates the heads in the background.
- `load_more_from(amount, entries)`: replicates the given entries.
- `save_snapshot()` and `load_from_snapshot()`: write the log as a
  snapshot and read it back. `load_from_snapshot()` raises
  `SnapshotNotFound` when no snapshot has been saved.
- `close()` and `drop()`.

Errors are raised as `StoreError`.

Unless an `access_controller` is given, only the store's own identity may
write. By default `StoreOptions.replicate` is true, and then a
`direct_channel` is required.

## Building blocks

- `orbitstores.operation`: `Operation`, `OpDoc`, `parse_operation(entry)`
  and `new_operation_with_documents(key, op, docs)`. Operations are
  serialized as JSON, with byte fields in base64.
- `orbitstores.indexes`: `BaseIndex`, `NoopIndex`, `KeyValueIndex`,
  `DocumentIndex` and `EventIndex`. Each index is rebuilt from the log
  with `update_index(oplog, entries)`.
- `orbitstores.events`: the store events (`EventWrite`, `EventReady`,
  `EventLoad`, `EventLoadProgress`, `EventReplicate`,
  `EventReplicateProgress`, `EventReplicated`, `EventNewPeer`) and an
  in-process `EventBus`. `subscribe(event_types, buffer_size)` returns a
  `Subscription`, and `get(timeout)` reads events from it.
- `orbitstores.replication`: `ReplicationInfo` holds the progress
  counters, `ProcessQueue` is the fetch queue, and the events are
  `EventLoadAdded`, `EventLoadProgress` and `EventLoadEnd`.
- `orbitstores.replicator`: `Replicator` walks the entry graph from the
  given heads. It fetches missing entries with bounded concurrency, 32 by
  default.
- `orbitstores.exchange`: `HeadsExchange` publishes heads on the store's
  pubsub topic after writes. It sends the cached heads to peers that
  join, and it syncs the heads that peers announce.
- `orbitstores.snapshot`: `SnapshotHeader`, `encode_snapshot(header,
  entries)` and `decode_snapshot(data)`. A snapshot is a 2-byte
  big-endian length-prefixed JSON header, followed by length-prefixed
  JSON entries.
- `orbitstores.manifest`: `Manifest` (CBOR through `to_cbor` and
  `from_cbor`) and `create_db_manifest(write, name, db_type,
  access_controller_address)`. The last one passes the encoded manifest
  to `write` and returns what `write` returns.

```python
from orbitstores.snapshot import SnapshotHeader, decode_snapshot, encode_snapshot

data = encode_snapshot(SnapshotHeader(id="log", size=1, type="eventlog"), [{"hash": "h1"}])
header, entries = decode_snapshot(data)
assert header.id == "log" and entries == [{"hash": "h1"}]
```

## What the package does not do

The package provides no content-addressed storage, no log or entry
implementation, no network transport and no command-line tool. A store is
given an `ipfs` object that does this work. That object creates, fetches,
joins and writes logs and entries, and adds and reads blobs. The
docstring of `orbitstores.store` lists the methods it must have. Peer
messaging likewise needs a pubsub object and a direct channel supplied
through `StoreOptions`.

The cache is an ordinary in-memory dictionary unless you pass a mapping
in `StoreOptions.cache`, so nothing is kept on disk by default.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```
"""Binary snapshot format: length-prefixed JSON header and entries."""

from __future__ import annotations

import io
import json
import struct
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

_LENGTH = struct.Struct(">H")
_MAX_CHUNK = 0xFFFF


class SnapshotError(ValueError):
    """Raised when snapshot data cannot be encoded or decoded."""


def _dumps(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass
class SnapshotHeader:
    """Describes the log held in a snapshot."""

    id: str = ""
    heads: list[Any] = field(default_factory=list)
    size: int = 0
    type: str = ""

    def _to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.id:
            data["id"] = self.id
        if self.heads:
            data["heads"] = list(self.heads)
        if self.size:
            data["size"] = self.size
        if self.type:
            data["type"] = self.type
        return data

    @classmethod
    def _from_json(cls, raw: Any) -> SnapshotHeader:
        if not isinstance(raw, dict):
            raise SnapshotError("unable to decode header from ipfs data: not an object")
        log_id = raw.get("id") or ""
        heads = raw.get("heads") or []
        size = raw.get("size") or 0
        store_type = raw.get("type") or ""
        if not isinstance(log_id, str) or not isinstance(store_type, str):
            raise SnapshotError("unable to decode header from ipfs data: invalid string field")
        if not isinstance(heads, list):
            raise SnapshotError("unable to decode header from ipfs data: heads is not a list")
        if isinstance(size, bool) or not isinstance(size, int):
            raise SnapshotError("unable to decode header from ipfs data: size is not an integer")
        return cls(id=log_id, heads=heads, size=size, type=store_type)


def _chunk(payload: bytes, what: str) -> bytes:
    if len(payload) > _MAX_CHUNK:
        raise SnapshotError(f"{what} is too large for a snapshot: {len(payload)} bytes")
    return _LENGTH.pack(len(payload)) + payload


def encode_snapshot(header: SnapshotHeader, entries: Iterable[Any]) -> bytes:
    """Encode a header and JSON-serializable entries as snapshot bytes."""
    parts = [_chunk(_dumps(header._to_json()), "header")]
    parts.extend(_chunk(_dumps(entry), "entry") for entry in entries)
    parts.append(b"\x00")
    return b"".join(parts)


def _read(stream: io.BytesIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise SnapshotError("unable to read from stream: unexpected end of data")
    return data


def _read_chunk(stream: io.BytesIO) -> bytes:
    (length,) = _LENGTH.unpack(_read(stream, _LENGTH.size))
    return _read(stream, length)


def decode_snapshot(data: bytes) -> tuple[SnapshotHeader, list[Any]]:
    """Decode snapshot bytes into the header and the decoded entries."""
    stream = io.BytesIO(data)
    try:
        raw_header = json.loads(_read_chunk(stream))
    except ValueError as exc:
        if isinstance(exc, SnapshotError):
            raise
        raise SnapshotError(f"unable to decode header from ipfs data: {exc}") from exc
    header = SnapshotHeader._from_json(raw_header)

    entries = []
    for _ in range(header.size):
        raw_entry = _read_chunk(stream)
        try:
            entries.append(json.loads(raw_entry))
        except ValueError as exc:
            raise SnapshotError(f"unable to unmarshal entry from ipfs data: {exc}") from exc
    return header, entries
"""Serializable CRDT operations appended to the operation log."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


class OperationError(ValueError):
    """Raised when an operation cannot be read from a log entry."""


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode_bytes(raw: Any, name: str) -> bytes | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise OperationError(f"unable to parse operation json: field {name!r} is not a string")
    try:
        return base64.b64decode(raw, validate=True)
    except binascii.Error as exc:
        raise OperationError(f"unable to parse operation json: field {name!r}: {exc}") from exc


@dataclass(frozen=True)
class OpDoc:
    """A single document carried by a batched operation."""

    key: str = ""
    value: bytes | None = None

    def _to_json(self) -> dict[str, str]:
        data: dict[str, str] = {}
        if self.key:
            data["key"] = self.key
        if self.value:
            data["value"] = _encode_bytes(self.value)
        return data

    @classmethod
    def _from_json(cls, raw: Any) -> OpDoc:
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise OperationError("unable to parse operation json: document is not an object")
        key = raw.get("key")
        if key is None:
            key = ""
        elif not isinstance(key, str):
            raise OperationError("unable to parse operation json: document key is not a string")
        return cls(key=key, value=_decode_bytes(raw.get("value"), "value"))


@dataclass
class Operation:
    """A CRDT operation: a name, an optional key, a payload and documents."""

    key: str | None
    op: str
    value: bytes | None = None
    docs: list[OpDoc] = field(default_factory=list)
    entry: Any = field(default=None, compare=False, repr=False)

    def marshal(self) -> bytes:
        """Serialize the operation as JSON; empty fields are left out."""
        data: dict[str, Any] = {}
        if self.key is not None:
            data["key"] = self.key
        if self.op:
            data["op"] = self.op
        if self.value:
            data["value"] = _encode_bytes(self.value)
        if self.docs:
            data["docs"] = [doc._to_json() for doc in self.docs]
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def parse_operation(entry: Any) -> Operation:
    """Read the operation held in the payload of a log entry."""
    if entry is None:
        raise OperationError("an entry must be provided")

    try:
        raw = json.loads(entry.payload)
    except (ValueError, TypeError) as exc:
        raise OperationError(f"unable to parse operation json: {exc}") from exc

    if not isinstance(raw, dict):
        raise OperationError("unable to parse operation json: payload is not an object")

    key = raw.get("key")
    if key is not None and not isinstance(key, str):
        raise OperationError("unable to parse operation json: key is not a string")

    op = raw.get("op")
    if op is None:
        op = ""
    elif not isinstance(op, str):
        raise OperationError("unable to parse operation json: op is not a string")

    raw_docs = raw.get("docs")
    if raw_docs is None:
        raw_docs = []
    elif not isinstance(raw_docs, list):
        raise OperationError("unable to parse operation json: docs is not a list")

    return Operation(
        key=key,
        op=op,
        value=_decode_bytes(raw.get("value"), "value"),
        docs=[OpDoc._from_json(doc) for doc in raw_docs],
        entry=entry,
    )


def new_operation_with_documents(key: str | None, op: str, docs: Mapping[str, bytes]) -> Operation:
    """Build an operation carrying a batch of documents."""
    return Operation(
        key=key,
        op=op,
        docs=[OpDoc(key=doc_key, value=doc_value) for doc_key, doc_value in docs.items()],
    )
"""A document store: JSON-like documents indexed by a key field."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from orbitstores.indexes import DocumentIndex
from orbitstores.operation import Operation, new_operation_with_documents, parse_operation
from orbitstores.store import BaseStore, StoreError, StoreOptions


class DocumentNotFound(StoreError, LookupError):
    """Raised when deleting a key that is not in the store."""


def _json_marshal(document: Any) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _json_unmarshal(data: bytes, item: Any) -> Any:
    decoded = json.loads(data)
    if isinstance(item, dict) and isinstance(decoded, dict):
        item.update(decoded)
        return item
    return decoded


@dataclass
class DocumentStoreOptions:
    """How documents are serialized and keyed.

    ``unmarshal(data, item)`` decodes ``data`` into a fresh ``item`` made by
    ``item_factory()`` and returns the decoded document.
    """

    marshal: Callable[[Any], bytes] | None = None
    unmarshal: Callable[[bytes, Any], Any] | None = None
    key_extractor: Callable[[Any], str] | None = None
    item_factory: Callable[[], Any] | None = None


def map_key_extractor(key_field: str) -> Callable[[Any], str]:
    """Return a function reading the string key stored under ``key_field``."""

    def extract(document: Any) -> str:
        if not isinstance(document, Mapping):
            raise TypeError("can't extract key from something else than a mapping entry")
        if key_field not in document:
            raise KeyError(f"missing value for field `{key_field}` in entry")
        key = document[key_field]
        if not isinstance(key, str):
            raise TypeError(f"value for field `{key_field}` is not a string")
        return key

    return extract


def default_store_options_for_map(key_field: str) -> DocumentStoreOptions:
    """Options for JSON objects keyed by ``key_field``."""
    return DocumentStoreOptions(
        marshal=_json_marshal,
        unmarshal=_json_unmarshal,
        key_extractor=map_key_extractor(key_field),
        item_factory=dict,
    )


def _validate(document_options: Any) -> DocumentStoreOptions:
    if not isinstance(document_options, DocumentStoreOptions):
        raise StoreError("invalid type supplied for document store options")
    for name, label in (
        ("marshal", "Marshal"),
        ("unmarshal", "Unmarshal"),
        ("item_factory", "ItemFactory"),
        ("key_extractor", "ExtractKey"),
    ):
        if getattr(document_options, name) is None:
            raise StoreError(f"missing value for option document options {label}")
    return document_options


class DocumentStore(BaseStore):
    """Stores documents under the key extracted from each of them."""

    def __init__(
        self,
        ipfs: Any,
        identity: Any,
        address: Any,
        options: StoreOptions | None = None,
        document_options: DocumentStoreOptions | None = None,
    ) -> None:
        if document_options is None:
            document_options = default_store_options_for_map("_id")
        self.document_options = _validate(document_options)
        doc_opts = self.document_options
        options = dataclasses.replace(options or StoreOptions(), index=lambda _key: DocumentIndex(doc_opts))
        try:
            super().__init__(ipfs, identity, address, options)
        except StoreError as exc:
            raise StoreError(f"unable to initialize document store: {exc}") from exc

    @property
    def type(self) -> str:
        return "docstore"

    def _document_index(self) -> DocumentIndex:
        index = self.index
        if not isinstance(index, DocumentIndex):
            raise StoreError("unable to cast index to documentIndex")
        return index

    def _decode(self, data: bytes, what: str) -> Any:
        opts = self.document_options
        try:
            return opts.unmarshal(data, opts.item_factory())
        except Exception as exc:
            raise StoreError(f"unable to unmarshal {what}: {exc}") from exc

    def get(self, key: str, case_insensitive: bool = False, partial_matches: bool = False) -> list[Any]:
        """Return the documents whose key equals, or contains, ``key``."""
        has_multiple_terms = " " in key
        if has_multiple_terms:
            key = key.replace(".", " ")
        if case_insensitive:
            key = key.lower()

        index = self._document_index()
        documents = []
        for index_key in index.keys():
            candidate = index_key
            if case_insensitive:
                candidate = candidate.lower()
                if has_multiple_terms:
                    candidate = candidate.replace(".", " ")

            matches = key in candidate if partial_matches else candidate == key
            if not matches:
                continue

            value = index.get(index_key)
            if value is None:
                raise StoreError(f"value not found for key {index_key}")
            if not isinstance(value, (bytes, bytearray)):
                raise StoreError(f"invalid type for key {index_key}")
            documents.append(self._decode(bytes(value), f"value for key {index_key}"))
        return documents

    def _extract_and_marshal(self, document: Any) -> tuple[str, bytes]:
        opts = self.document_options
        try:
            key = opts.key_extractor(document)
        except Exception as exc:
            raise StoreError(f"unable to extract key from value: {exc}") from exc
        try:
            data = opts.marshal(document)
        except Exception as exc:
            raise StoreError(f"unable to marshal value: {exc}") from exc
        return key, data

    def _commit(self, op: Operation) -> Operation:
        try:
            entry = self.add_operation(op)
        except StoreError as exc:
            raise StoreError(f"error while adding operation: {exc}") from exc
        try:
            return parse_operation(entry)
        except ValueError as exc:
            raise StoreError(f"unable to parse newly created entry: {exc}") from exc

    def put(self, document: Any) -> Operation:
        """Store a document under its extracted key."""
        key, data = self._extract_and_marshal(document)
        return self._commit(Operation(key=key, op="PUT", value=data))

    def delete(self, key: str) -> Operation:
        """Remove the document stored under ``key``."""
        if self.index.get(key) is None:
            raise DocumentNotFound(f"no entry with key '{key}' in database")
        return self._commit(Operation(key=key, op="DEL"))

    def put_batch(self, values: Iterable[Any]) -> Operation:
        """Store each document as its own operation and return the last one."""
        values = list(values)
        if not values:
            raise StoreError("nothing to add to the store")
        op = None
        for value in values:
            try:
                op = self.put(value)
            except StoreError as exc:
                raise StoreError(f"unable to add data to the store: {exc}") from exc
        return op

    def put_all(self, values: Iterable[Any]) -> Operation:
        """Store every document in a single operation and return it."""
        opts = self.document_options
        to_add: dict[str, bytes] = {}
        for value in values:
            try:
                key = opts.key_extractor(value)
            except Exception as exc:
                raise StoreError("one of the provided documents has no index key") from exc
            try:
                to_add[key] = opts.marshal(value)
            except Exception as exc:
                raise StoreError("unable to marshal one of the provided documents") from exc
        return self._commit(new_operation_with_documents("", "PUTALL", to_add))

    def query(self, predicate: Callable[[Any], bool]) -> list[Any]:
        """Return the documents for which ``predicate`` is true."""
        index = self._document_index()
        documents = []
        for index_key in index.keys():
            raw = index.get(index_key)
            if raw is None:
                continue
            document = self._decode(raw, "document")
            try:
                selected = predicate(document)
            except Exception as exc:
                raise StoreError(f"error while filtering value: {exc}") from exc
            if selected:
                documents.append(document)
        return documents
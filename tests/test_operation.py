import base64
import json
from types import SimpleNamespace

import pytest

from orbitstores.operation import (
    OpDoc,
    Operation,
    OperationError,
    new_operation_with_documents,
    parse_operation,
)


def _entry(payload):
    return SimpleNamespace(payload=payload)


def test_marshal_encodes_value_as_base64():
    op = Operation(key="k", op="PUT", value=b"v")
    data = json.loads(op.marshal())
    assert data == {"key": "k", "op": "PUT", "value": base64.b64encode(b"v").decode()}


def test_marshal_omits_missing_key_and_empty_value():
    data = json.loads(Operation(key=None, op="ADD").marshal())
    assert data == {"op": "ADD"}


def test_marshal_keeps_empty_string_key():
    data = json.loads(Operation(key="", op="PUTALL").marshal())
    assert data["key"] == ""


def test_round_trip_through_entry():
    op = Operation(key="name", op="PUT", value=b"\x00\x01hello")
    entry = _entry(op.marshal())
    parsed = parse_operation(entry)
    assert parsed == op
    assert parsed.entry is entry


def test_parse_without_key_gives_none():
    parsed = parse_operation(_entry(Operation(key=None, op="ADD", value=b"x").marshal()))
    assert parsed.key is None
    assert parsed.value == b"x"
    assert parsed.docs == []


def test_parse_none_entry_raises():
    with pytest.raises(OperationError):
        parse_operation(None)


def test_parse_invalid_json_raises():
    with pytest.raises(OperationError):
        parse_operation(_entry(b"{not json"))


def test_parse_non_object_raises():
    with pytest.raises(OperationError):
        parse_operation(_entry(b"[1, 2]"))


def test_parse_bad_base64_raises():
    with pytest.raises(OperationError):
        parse_operation(_entry(b'{"op":"PUT","value":"!!!"}'))


def test_operation_with_documents_round_trip():
    docs = {"a": b"first", "b": b"second"}
    op = new_operation_with_documents("", "PUTALL", docs)
    assert op.value is None
    assert {doc.key: doc.value for doc in op.docs} == docs

    parsed = parse_operation(_entry(op.marshal()))
    assert parsed.op == "PUTALL"
    assert parsed.key == ""
    assert {doc.key: doc.value for doc in parsed.docs} == docs


def test_empty_docs_are_omitted():
    op = new_operation_with_documents(None, "PUTALL", {})
    assert "docs" not in json.loads(op.marshal())


def test_doc_without_value_parses_to_none():
    parsed = parse_operation(_entry(b'{"op":"PUTALL","docs":[{"key":"a"}]}'))
    assert parsed.docs == [OpDoc(key="a", value=None)]
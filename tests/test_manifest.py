import cbor2
import pytest

from orbitstores.manifest import Manifest, ManifestError, create_db_manifest


def test_round_trip():
    manifest = Manifest(name="replication-tests", type="eventlog", access_controller="/ipfs/abc")
    assert Manifest.from_cbor(manifest.to_cbor()) == manifest


def test_serial_names():
    manifest = Manifest(name="db", type="keyvalue", access_controller="/ipfs/x")
    assert cbor2.loads(manifest.to_cbor()) == {
        "name": "db",
        "type": "keyvalue",
        "access_controller": "/ipfs/x",
    }


def test_canonical_key_order_starts_with_name():
    data = Manifest(name="db", type="docstore", access_controller="/ipfs/x").to_cbor()
    assert data[0] == 0xA3
    assert data[1:6] == b"\x64name"


def test_create_db_manifest_writes_and_returns_identifier():
    written = []

    def write(data):
        written.append(data)
        return "manifest-cid"

    result = create_db_manifest(write, "sync-test", "eventlog", "acaddr")
    assert result == "manifest-cid"
    manifest = Manifest.from_cbor(written[0])
    assert manifest == Manifest(name="sync-test", type="eventlog", access_controller="/ipfs/acaddr")


def test_access_controller_path_is_cleaned():
    written = []
    create_db_manifest(lambda data: written.append(data) or "c", "n", "t", "/acaddr/")
    assert Manifest.from_cbor(written[0]).access_controller == "/ipfs/acaddr"


def test_non_map_raises():
    with pytest.raises(ManifestError):
        Manifest.from_cbor(cbor2.dumps([1, 2, 3]))


def test_non_string_field_raises():
    with pytest.raises(ManifestError):
        Manifest.from_cbor(cbor2.dumps({"name": 1, "type": "t", "access_controller": "a"}))
"""Database manifests describing a store's type and access controller."""

from __future__ import annotations

import posixpath
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import cbor2


class ManifestError(ValueError):
    """Raised when a manifest cannot be decoded."""


def _field(raw: dict[Any, Any], name: str) -> str:
    value = raw.get(name, "")
    if not isinstance(value, str):
        raise ManifestError(f"manifest field {name!r} is not a string")
    return value


@dataclass(frozen=True)
class Manifest:
    """A database manifest."""

    name: str
    type: str
    access_controller: str

    def to_cbor(self) -> bytes:
        """Encode as canonical CBOR."""
        return cbor2.dumps(
            {"name": self.name, "type": self.type, "access_controller": self.access_controller},
            canonical=True,
        )

    @classmethod
    def from_cbor(cls, data: bytes) -> Manifest:
        """Decode a manifest from CBOR."""
        try:
            raw = cbor2.loads(data)
        except (cbor2.CBORDecodeError, ValueError, EOFError) as exc:
            raise ManifestError(f"unable to decode manifest: {exc}") from exc
        if not isinstance(raw, dict):
            raise ManifestError("manifest is not a map")
        return cls(
            name=_field(raw, "name"),
            type=_field(raw, "type"),
            access_controller=_field(raw, "access_controller"),
        )


def create_db_manifest(
    write: Callable[[bytes], str],
    name: str,
    db_type: str,
    access_controller_address: str,
) -> str:
    """Build a manifest, store it with ``write`` and return its identifier."""
    manifest = Manifest(
        name=name,
        type=db_type,
        access_controller=posixpath.normpath("/ipfs/" + access_controller_address),
    )
    return write(manifest.to_cbor())
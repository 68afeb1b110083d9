from __future__ import annotations

import base64
import binascii
from pathlib import Path
from urllib.parse import urlparse

from lastmile.core.config import settings
from lastmile.core.errors import ValidationError


_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpg"),
    (b"GIF8", "gif"),
    (b"RIFF", "webp"),
)


class LocalObjectStore:
    def __init__(self, base_dir: str):
        self.base = Path(base_dir)
        self.base.mkdir(parents=True, exist_ok=True)

    def put_bytes(self, *, key: str, data: bytes) -> str:
        path = self.base / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return f"file://{path.resolve().as_posix()}"

    def resolve_path(self, uri: str) -> Path:
        """
        Resolve a storage URI to a local filesystem path.

        Supports:
          - file:///absolute/path
          - absolute filesystem paths
          - relative keys (resolved under self.base)
        """
        parsed = urlparse(uri)

        if parsed.scheme == "file":
            return Path(parsed.path)

        if parsed.scheme == "":
            p = Path(uri)
            if p.is_absolute():
                return p
            return self.base / p

        raise ValueError(f"Unsupported storage scheme: {parsed.scheme}")


def proof_store() -> LocalObjectStore:
    return LocalObjectStore(settings.proof_storage_dir)


def decode_proof(field: str, encoded: str) -> bytes:
    # accepts bare base64 or a data: URL
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError.for_field(field, "must be base64 encoded")
    if not data:
        raise ValidationError.for_field(field, "must not be empty")
    return data


def _extension(data: bytes) -> str:
    for magic, ext in _SIGNATURES:
        if data.startswith(magic):
            return ext
    return "bin"


def put_proof(store: LocalObjectStore, *, destination_id: str, kind: str, data: bytes) -> str:
    """Write a decoded signature/photo under <destination_id>/. Returns the storage ref."""
    return store.put_bytes(key=f"{destination_id}/{kind}.{_extension(data)}", data=data)

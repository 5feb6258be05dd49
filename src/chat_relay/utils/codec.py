"""Compression codec for snapshots and backups."""

import base64
import binascii
import gzip
import json
import zlib
from typing import Any

from chat_relay.errors import PersistenceError


class Codec:
    """gzip ``compress(bytes) -> bytes`` / ``decompress(bytes) -> bytes``.

    Any general-purpose compressor satisfies the contract; subclasses can
    swap the algorithm without touching the callers.
    """

    def __init__(self, level: int = 6):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return gzip.compress(data, compresslevel=self.level)

    def decompress(self, data: bytes) -> bytes:
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise PersistenceError(f"Failed to decompress payload: {e}")

    def encode_json(self, value: Any) -> str:
        """Serialize, compress and base64 encode a JSON-compatible value."""
        raw = json.dumps(value, separators=(",", ":")).encode("utf-8")
        return base64.b64encode(self.compress(raw)).decode("ascii")

    def decode_json(self, data: str) -> Any:
        try:
            raw = base64.b64decode(data.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
            raise PersistenceError(f"Payload is not valid base64: {e}")
        try:
            return json.loads(self.decompress(raw).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Payload is not valid JSON: {e}")

"""
Compression codec shared by the Archiver and Snapshotter.

Payloads are JSON documents encoded as compact UTF-8 and compressed with
gzip. The "none" algorithm stores the encoded bytes unchanged, which is
useful for debugging archive contents.

Invariants:
    - decompress(compress(x)) == x for any bytes, including b""
    - decode_payload(encode_payload(obj)) == obj for JSON-serializable obj
    - Unreadable input raises DecompressionError, never a raw zlib error

How to change safely:
    - New algorithms need a new name; never change what "gzip" produces
    - Archive and snapshot rows record the algorithm they were written with
"""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import zlib
from dataclasses import dataclass
from typing import Any

from .errors import DecompressionError

SUPPORTED_ALGORITHMS = ("gzip", "none")


@dataclass(frozen=True)
class EncodedPayload:
    """Result of compressing a JSON payload.

    Attributes:
        data: Compressed bytes
        original_size: Size of the serialized JSON before compression
        algorithm: Algorithm used
    """

    data: bytes
    original_size: int
    algorithm: str

    @property
    def compressed_size(self) -> int:
        return len(self.data)

    @property
    def ratio(self) -> float:
        """Compressed size over original size (0.0 for empty input)."""
        if self.original_size == 0:
            return 0.0
        return self.compressed_size / self.original_size


class CompressionCodec:
    """Compress and decompress bytes and JSON payloads.

    Example:
        >>> codec = CompressionCodec()
        >>> payload = codec.compress_payload({"changes": [1, 2, 3]})
        >>> codec.decompress_payload(payload.data)
        {'changes': [1, 2, 3]}
    """

    def __init__(self, algorithm: str = "gzip", level: int = 9) -> None:
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"Unsupported compression '{algorithm}'. Must be one of: "
                + ", ".join(SUPPORTED_ALGORITHMS)
            )
        self.algorithm = algorithm
        self.level = level

    def compress(self, data: bytes) -> bytes:
        if self.algorithm == "none":
            return data

        buf = io.BytesIO()
        # mtime=0 keeps output deterministic for identical input
        with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=self.level, mtime=0) as gz:
            gz.write(data)
        return buf.getvalue()

    def decompress(self, data: bytes) -> bytes:
        if self.algorithm == "none":
            return data

        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise DecompressionError(f"Invalid gzip payload: {e}") from e

    def compress_payload(self, obj: Any) -> EncodedPayload:
        """Serialize obj as JSON and compress it."""
        raw = encode_payload(obj)
        return EncodedPayload(
            data=self.compress(raw),
            original_size=len(raw),
            algorithm=self.algorithm,
        )

    def decompress_payload(self, data: bytes) -> Any:
        """Decompress and parse a JSON payload."""
        raw = self.decompress(data)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecompressionError(f"Payload is not valid JSON: {e}") from e


def encode_payload(obj: Any) -> bytes:
    """Canonical JSON encoding (sorted keys, compact separators)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def compute_checksum(data: bytes) -> str:
    """Compute SHA-256 checksum of data."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def get_codec(algorithm: str) -> CompressionCodec:
    return CompressionCodec(algorithm=algorithm)

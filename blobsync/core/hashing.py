"""Content hashing.

Blob identity is a BLAKE3 digest rendered as uppercase hex. A separate xxHash
digest is used for short in-memory identifiers only and must never be used to
verify content.
"""

import re
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO, Union

import blake3
import xxhash

from blobsync.core.errors import IoFailureError

# BLAKE3 produces 32 bytes, 64 hex characters
HASH_LENGTH = 64
CHUNK_SIZE = 81920

_HASH_PATTERN = re.compile(r"^[A-F0-9]{64}$")

HashSource = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes]]


class StreamingHasher:
    """Incremental BLAKE3 hasher that also counts the bytes it has seen."""

    def __init__(self) -> None:
        self._hasher = blake3.blake3()
        self.bytes_seen = 0

    def update(self, chunk: bytes) -> None:
        self._hasher.update(chunk)
        self.bytes_seen += len(chunk)

    def hexdigest(self) -> str:
        return self._hasher.hexdigest().upper()


def iter_chunks(source: HashSource, chunk_size: int = CHUNK_SIZE) -> Iterable[bytes]:
    """Yield the bytes of ``source`` in bounded chunks.

    Args:
        source: Raw bytes, a binary file object, or an iterable of byte chunks

    Yields:
        Byte chunks no larger than ``chunk_size`` for bytes and file sources
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset : offset + chunk_size])
        return

    read = getattr(source, "read", None)
    if read is not None:
        while True:
            chunk = read(chunk_size)
            if not chunk:
                return
            yield chunk

    for chunk in source:  # type: ignore[union-attr]
        if chunk:
            yield bytes(chunk)


def hash_bytes(data: bytes) -> str:
    """Return the uppercase BLAKE3 hex digest of ``data``."""
    return blake3.blake3(data).hexdigest().upper()


def hash_stream(source: HashSource) -> str:
    """Hash a stream without holding it in memory.

    Args:
        source: Raw bytes, a binary file object, or an iterable of byte chunks

    Returns:
        Uppercase hex BLAKE3 digest

    Raises:
        IoFailureError: If reading the source fails
    """
    hasher = StreamingHasher()
    try:
        for chunk in iter_chunks(source):
            hasher.update(chunk)
    except OSError as e:
        raise IoFailureError(f"Failed to read stream for hashing: {e}") from e
    return hasher.hexdigest()


def hash_file(path: Path) -> str:
    """Hash the file at ``path``.

    Raises:
        IoFailureError: If the file cannot be opened or read
    """
    try:
        with open(path, "rb") as handle:
            return hash_stream(handle)
    except OSError as e:
        raise IoFailureError(f"Failed to hash {path}: {e}", path=path) from e


def fast_digest(text: str, key: str = "") -> str:
    """Derive a deterministic identifier from arbitrary text.

    Args:
        text: Text to digest
        key: Optional key mixed in as the xxHash seed

    Returns:
        Uppercase hex xxh3-128 digest (32 characters)
    """
    seed = xxhash.xxh64_intdigest(key.encode("utf-8")) if key else 0
    return xxhash.xxh3_128_hexdigest(text.encode("utf-8"), seed=seed).upper()


def normalize_hash(value: str) -> str:
    """Normalize a content hash to its canonical uppercase form.

    Raises:
        ValueError: If the value is not a 64 character hex string
    """
    normalized = (value or "").strip().upper()
    if not _HASH_PATTERN.match(normalized):
        raise ValueError(
            f"Invalid hash format: expected {HASH_LENGTH} hex characters, got: {value!r}"
        )
    return normalized


def is_valid_hash(value: str) -> bool:
    return bool(_HASH_PATTERN.match((value or "").strip().upper()))

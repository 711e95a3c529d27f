"""Content fingerprints using BLAKE3.

Two fingerprints exist:
- full: digest of every byte of the file (authoritative identity)
- quick: digest of size + mtime + the first bytes of the file (cheap,
  approximate identity for re-scans)

Both are 64 hex characters and are computed in fixed-size chunks, so memory
use does not depend on file size.
"""

from __future__ import annotations

import string
import struct
from pathlib import Path
from typing import BinaryIO

from blake3 import blake3

from backup_sentinel.core.models import ScanMode

HASH_HEX_LENGTH = 64
DEFAULT_CHUNK_BYTES = 1024 * 1024
DEFAULT_SAMPLE_BYTES = 64 * 1024

# Keeps quick digests from ever colliding with full digests of the same bytes
_QUICK_TAG = b"backup-sentinel/quick/v1\x00"


def hash_stream(stream: BinaryIO, *, chunk_bytes: int = DEFAULT_CHUNK_BYTES, limit: int | None = None) -> str:
    """Hash a binary stream chunk by chunk.

    Args:
        stream: Readable binary file object.
        chunk_bytes: Read size per iteration.
        limit: Stop after this many bytes (None reads to EOF).

    Returns:
        Hex digest.
    """
    hasher = blake3()
    _feed(hasher, stream, chunk_bytes=chunk_bytes, limit=limit)
    return hasher.hexdigest()


def hash_full(path: Path, *, chunk_bytes: int = DEFAULT_CHUNK_BYTES) -> str:
    """Fingerprint the whole content of a file.

    Raises:
        OSError: If the file cannot be read.
    """
    with open(path, "rb") as f:
        return hash_stream(f, chunk_bytes=chunk_bytes)


def hash_quick(
    path: Path,
    size: int,
    mtime_ns: int,
    *,
    sample_bytes: int = DEFAULT_SAMPLE_BYTES,
    chunk_bytes: int = DEFAULT_CHUNK_BYTES,
) -> str:
    """Fingerprint size, modification time and a leading sample of a file.

    Raises:
        OSError: If the file cannot be read.
    """
    hasher = blake3()
    hasher.update(_QUICK_TAG)
    hasher.update(struct.pack("<Qq", size, mtime_ns))
    with open(path, "rb") as f:
        _feed(hasher, f, chunk_bytes=chunk_bytes, limit=sample_bytes)
    return hasher.hexdigest()


def hash_file(
    path: Path,
    mode: ScanMode,
    *,
    size: int | None = None,
    mtime_ns: int | None = None,
    sample_bytes: int = DEFAULT_SAMPLE_BYTES,
    chunk_bytes: int = DEFAULT_CHUNK_BYTES,
) -> str:
    """Fingerprint a file according to the scan mode.

    Size and mtime are read from the file when not supplied.
    """
    if mode is ScanMode.FULL:
        return hash_full(path, chunk_bytes=chunk_bytes)

    if size is None or mtime_ns is None:
        st = path.stat()
        size = st.st_size
        mtime_ns = st.st_mtime_ns
    return hash_quick(path, size, mtime_ns, sample_bytes=sample_bytes, chunk_bytes=chunk_bytes)


def is_fingerprint(value: str) -> bool:
    """Check that a string looks like a fingerprint produced here."""
    return len(value) == HASH_HEX_LENGTH and all(c in string.hexdigits for c in value)


def _feed(hasher: blake3, stream: BinaryIO, *, chunk_bytes: int, limit: int | None) -> None:
    remaining = limit
    while remaining is None or remaining > 0:
        want = chunk_bytes if remaining is None else min(chunk_bytes, remaining)
        chunk = stream.read(want)
        if not chunk:
            break
        hasher.update(chunk)
        if remaining is not None:
            remaining -= len(chunk)

"""Content hasher – MD5 digest plus byte count, computed by streaming the file once."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from album_sync.errors import FileReadError

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ContentFingerprint:
    """Identifies byte-identical files: 128-bit MD5 digest and size in bytes."""

    digest: bytes
    size: int

    @property
    def hexdigest(self) -> str:
        return self.digest.hex()

    @classmethod
    def from_hex(cls, hexdigest: str, size: int) -> "ContentFingerprint":
        """Build a fingerprint from the hex form reported by the remote listing."""
        try:
            digest = bytes.fromhex(hexdigest)
        except ValueError as exc:
            raise ValueError(f"Not a hex digest: {hexdigest!r}") from exc
        if len(digest) != 16:
            raise ValueError(f"MD5 digest must be 16 bytes, got {len(digest)}")
        return cls(digest=digest, size=int(size))

    def __str__(self) -> str:
        return f"{self.hexdigest} ({self.size} bytes)"


def fingerprint_stream(stream: BinaryIO, name: str = "<stream>", chunk_size: int = CHUNK_SIZE) -> ContentFingerprint:
    """Consume *stream* to EOF and return its fingerprint. Never holds more than one chunk."""
    h = hashlib.md5()
    size = 0
    try:
        for block in iter(lambda: stream.read(chunk_size), b""):
            h.update(block)
            size += len(block)
    except OSError as exc:
        raise FileReadError(name, str(exc)) from exc
    return ContentFingerprint(digest=h.digest(), size=size)


def fingerprint_file(path: str | Path, chunk_size: int = CHUNK_SIZE) -> ContentFingerprint:
    """Fingerprint the file at *path*."""
    try:
        with open(path, "rb") as f:
            return fingerprint_stream(f, name=str(path), chunk_size=chunk_size)
    except FileReadError:
        raise
    except OSError as exc:
        raise FileReadError(str(path), exc.strerror or str(exc)) from exc

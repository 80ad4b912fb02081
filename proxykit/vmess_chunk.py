"""Length-prefixed chunk streams with SHAKE128-masked size fields."""

from __future__ import annotations

import hashlib
from typing import Protocol

CHUNK_SIZE = 16 << 10


class _Writer(Protocol):
    def write(self, data: bytes) -> object: ...


class _Reader(Protocol):
    def read(self, n: int) -> bytes: ...


def _read_exact(reader: _Reader, n: int) -> bytes:
    parts = []
    remaining = n
    while remaining:
        part = reader.read(remaining)
        if not part:
            raise EOFError("unexpected end of stream")
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


class ShakeSizeParser:
    """Masks chunk sizes with a SHAKE128 keystream seeded by a nonce."""

    size_bytes = 2

    def __init__(self, nonce: bytes) -> None:
        self._shake = hashlib.shake_128(bytes(nonce))
        self._stream = b""
        self._offset = 0

    def _next(self) -> int:
        if self._offset + 2 > len(self._stream):
            self._stream = self._shake.digest(max(256, 2 * len(self._stream)))
        mask = int.from_bytes(self._stream[self._offset:self._offset + 2], "big")
        self._offset += 2
        return mask

    def encode(self, size: int) -> bytes:
        """Return the two masked bytes for a chunk size."""
        return (self._next() ^ (size & 0xFFFF)).to_bytes(2, "big")

    def decode(self, b: bytes) -> int:
        """Recover a chunk size from its two masked bytes."""
        if len(b) < 2:
            raise ValueError("size field needs 2 bytes")
        return self._next() ^ int.from_bytes(b[:2], "big")


class ChunkedWriter:
    """Writes data as chunks, each preceded by its masked size."""

    def __init__(self, writer: _Writer, encoder: ShakeSizeParser) -> None:
        self._writer = writer
        self._encoder = encoder

    def write(self, data: bytes) -> int:
        view = memoryview(data)
        written = 0
        while written < len(view):
            part = view[written:written + CHUNK_SIZE]
            self._writer.write(self._encoder.encode(len(part)) + bytes(part))
            written += len(part)
        return written


class ChunkedReader:
    """Reads a stream produced by ChunkedWriter.

    Returns b"" when a zero-size chunk marks the end of the stream and
    raises EOFError if the underlying stream ends unexpectedly.
    """

    def __init__(self, reader: _Reader, decoder: ShakeSizeParser) -> None:
        self._reader = reader
        self._decoder = decoder
        self._left = 0

    def read(self, n: int = CHUNK_SIZE) -> bytes:
        if self._left == 0:
            header = _read_exact(self._reader, self._decoder.size_bytes)
            self._left = self._decoder.decode(header)
            if self._left == 0:
                return b""

        want = min(n, self._left)
        if want <= 0:
            return b""
        data = self._reader.read(want)
        if not data:
            raise EOFError("unexpected end of stream")
        self._left -= len(data)
        return data
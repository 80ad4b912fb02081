"""AEAD-sealed chunk streams for vmess data transfer."""

from __future__ import annotations

from typing import Protocol

from proxykit.vmess_chunk import CHUNK_SIZE, ShakeSizeParser

NONCE_SIZE = 12
OVERHEAD = 16


class _Aead(Protocol):
    def encrypt(self, nonce: bytes, data: bytes, associated_data: bytes | None) -> bytes: ...

    def decrypt(self, nonce: bytes, data: bytes, associated_data: bytes | None) -> bytes: ...


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


class _NonceCounter:
    """Nonce = 2-byte big-endian counter followed by the IV's tail."""

    def __init__(self, iv: bytes, nonce_size: int) -> None:
        self._tail = bytes(iv[2:nonce_size])
        self._count = 0

    def next(self) -> bytes:
        nonce = self._count.to_bytes(2, "big") + self._tail
        self._count = (self._count + 1) & 0xFFFF
        return nonce


class AEADWriter:
    """Seals data into chunks of at most CHUNK_SIZE bytes of ciphertext."""

    def __init__(
        self,
        writer: _Writer,
        aead: _Aead,
        iv: bytes,
        encoder: ShakeSizeParser,
        nonce_size: int = NONCE_SIZE,
        overhead: int = OVERHEAD,
    ) -> None:
        self._writer = writer
        self._aead = aead
        self._encoder = encoder
        self._nonces = _NonceCounter(iv, nonce_size)
        self._overhead = overhead

    def write(self, data: bytes) -> int:
        view = memoryview(data)
        written = 0
        while written < len(view):
            write_len = min(len(view) - written + self._overhead, CHUNK_SIZE)
            data_len = write_len - self._overhead
            header = self._encoder.encode(write_len)
            plain = bytes(view[written:written + data_len])
            sealed = self._aead.encrypt(self._nonces.next(), plain, None)
            self._writer.write(header + sealed)
            written += data_len
        return written


class AEADReader:
    """Opens chunks written by AEADWriter.

    Returns b"" at the end of the stream (an empty or oversized chunk) and
    lets the cipher's authentication error propagate on tampered data.
    """

    def __init__(
        self,
        reader: _Reader,
        aead: _Aead,
        iv: bytes,
        decoder: ShakeSizeParser,
        nonce_size: int = NONCE_SIZE,
        overhead: int = OVERHEAD,
    ) -> None:
        self._reader = reader
        self._aead = aead
        self._decoder = decoder
        self._nonces = _NonceCounter(iv, nonce_size)
        self._overhead = overhead
        self._buffer = b""
        self._offset = 0

    def _read_chunk(self, limit: int) -> bytes:
        header = _read_exact(self._reader, self._decoder.size_bytes)
        size = self._decoder.decode(header)
        if size <= self._overhead or size > limit:
            return b""
        sealed = _read_exact(self._reader, size)
        nonce = self._nonces.next()
        return self._aead.decrypt(nonce, sealed, None)

    def read(self, n: int = CHUNK_SIZE) -> bytes:
        if self._offset >= len(self._buffer):
            plain = self._read_chunk(max(n, CHUNK_SIZE))
            if not plain:
                return b""
            self._buffer, self._offset = plain, 0

        out = self._buffer[self._offset:self._offset + n]
        self._offset += len(out)
        if self._offset >= len(self._buffer):
            self._buffer, self._offset = b"", 0
        return out
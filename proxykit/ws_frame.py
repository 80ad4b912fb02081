"""Binary websocket frames: writer and reader for a byte stream."""

from __future__ import annotations

import random
import struct
from typing import Protocol

FINAL_BIT = 0x80
OPCODE_BINARY = 0x02
MASK_BIT = 0x80


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


def _apply_mask(data: bytes, mask: bytes, offset: int = 0) -> bytes:
    n = len(data)
    if n == 0:
        return b""
    stream = (mask * (n // 4 + 2))[offset:offset + n]
    value = int.from_bytes(data, "big") ^ int.from_bytes(stream, "big")
    return value.to_bytes(n, "big")


class FrameWriter:
    """Writes each call's data as one final binary frame.

    Client writers mask the payload with a fixed random key; server writers
    send it unmasked.
    """

    def __init__(self, writer: _Writer, server: bool, mask_key: bytes | None = None) -> None:
        self._writer = writer
        self._server = server
        if mask_key is None:
            mask_key = random.getrandbits(32).to_bytes(4, "little")
        if len(mask_key) != 4:
            raise ValueError("mask key must be 4 bytes")
        self._mask_key = bytes(mask_key)

    def write(self, data: bytes) -> int:
        n = len(data)
        second = 0 if self._server else MASK_BIT
        if n <= 125:
            header = bytes([OPCODE_BINARY | FINAL_BIT, second | n])
        elif n < 65536:
            header = bytes([OPCODE_BINARY | FINAL_BIT, second | 126]) + struct.pack(">H", n)
        else:
            header = bytes([OPCODE_BINARY | FINAL_BIT, second | 127]) + struct.pack(">Q", n)

        if self._server:
            self._writer.write(header + bytes(data))
        else:
            self._writer.write(header + self._mask_key + _apply_mask(bytes(data), self._mask_key))
        return n


class FrameReader:
    """Reads payload bytes out of consecutive frames.

    Server readers expect a masking key after each header and unmask the
    payload. Returns b"" at a clean end of stream.
    """

    def __init__(self, reader: _Reader, server: bool) -> None:
        self._reader = reader
        self._server = server
        self._left = 0
        self._mask_key = b"\0\0\0\0"
        self._mask_offset = 0

    def _read_header(self) -> bool:
        first = self._reader.read(2)
        if not first:
            return False
        if len(first) < 2:
            first += _read_exact(self._reader, 2 - len(first))

        length = first[1] & 0x7F
        if length == 126:
            (length,) = struct.unpack(">H", _read_exact(self._reader, 2))
        elif length == 127:
            (length,) = struct.unpack(">Q", _read_exact(self._reader, 8))
        self._left = length

        if self._server:
            self._mask_key = _read_exact(self._reader, 4)
            self._mask_offset = 0
        return True

    def read(self, n: int = 65536) -> bytes:
        if self._left == 0 and not self._read_header():
            return b""

        want = min(n, self._left)
        if want <= 0:
            return b""
        data = _read_exact(self._reader, want)
        if self._server:
            data = _apply_mask(data, self._mask_key, self._mask_offset)
            self._mask_offset = (self._mask_offset + len(data)) % 4
        self._left -= len(data)
        return data
"""Vmess client connections: request header, response header and data streams."""

from __future__ import annotations

import hashlib
import hmac
import os
import platform
import random
import struct
import time
from datetime import datetime, timezone
from enum import IntEnum
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from proxykit.vmess_addr import parse_addr
from proxykit.vmess_aead import AEADReader, AEADWriter
from proxykit.vmess_auth import open_aead_header, seal_aead_header
from proxykit.vmess_chunk import CHUNK_SIZE, ChunkedReader, ChunkedWriter, ShakeSizeParser
from proxykit.vmess_user import User, str_to_uuid, timestamp_hash

OPT_BASIC_FORMAT = 0
OPT_CHUNK_STREAM = 1
OPT_CHUNK_MASKING = 4

_AES_FRIENDLY_MACHINES = frozenset({"x86_64", "amd64", "s390x", "arm64", "aarch64"})


class Security(IntEnum):
    """Body encryption of a vmess connection."""

    AES128GCM = 3
    CHACHA20_POLY1305 = 4
    NONE = 5


class CmdType(IntEnum):
    """Vmess request command."""

    TCP = 1
    UDP = 2


class _Stream(Protocol):
    def read(self, n: int) -> bytes: ...

    def write(self, data: bytes) -> object: ...


def _read_exact(reader: _Stream, n: int) -> bytes:
    parts = []
    remaining = n
    while remaining:
        part = reader.read(remaining)
        if not part:
            raise EOFError("unexpected end of stream")
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


def _fnv1a32(data: bytes) -> int:
    h = 0x811C9DC5
    for b in data:
        h = ((h ^ b) * 0x01000193) & 0xFFFFFFFF
    return h


def _chacha_key(key: bytes) -> bytes:
    first = hashlib.md5(key).digest()
    return first + hashlib.md5(first).digest()


def _unix_now() -> int:
    return int(time.time()) & 0xFFFFFFFFFFFFFFFF


class _Raw:
    """Passes data straight through to the underlying stream."""

    def __init__(self, stream: _Stream) -> None:
        self._stream = stream

    def write(self, data: bytes) -> int:
        self._stream.write(data)
        return len(data)

    def read(self, n: int = CHUNK_SIZE) -> bytes:
        return self._stream.read(n)


class Conn:
    """A connection to a vmess server over an underlying byte stream."""

    def __init__(
        self,
        rc: _Stream,
        user: User,
        opt: int,
        aead: bool,
        security: Security,
        target: str,
    ) -> None:
        self.rc = rc
        self.user = user
        self.opt = opt
        self.aead = aead
        self.security = security
        self.atyp, self.addr, self.port = parse_addr(target)

        rand = os.urandom(32)
        self.req_body_iv = rand[:16]
        self.req_body_key = rand[16:]
        self.req_resp_v = random.randrange(256)

        if aead:
            self.resp_body_iv = hashlib.sha256(self.req_body_iv).digest()[:16]
            self.resp_body_key = hashlib.sha256(self.req_body_key).digest()[:16]
        else:
            self.resp_body_iv = hashlib.md5(self.req_body_iv).digest()
            self.resp_body_key = hashlib.md5(self.req_body_key).digest()

        self._write_sizes = ShakeSizeParser(self.req_body_iv)
        self._read_sizes = ShakeSizeParser(self.resp_body_iv)
        self._writer = None
        self._reader = None

    def auth(self) -> None:
        """Send HMAC-MD5(uuid, current unix time)."""
        ts = struct.pack(">Q", _unix_now())
        self.rc.write(hmac.new(self.user.uuid, ts, hashlib.md5).digest())

    def request(self, cmd: CmdType) -> None:
        """Send the request header for the target."""
        padding_len = random.randrange(16)
        header = bytearray([1])
        header += self.req_body_iv
        header += self.req_body_key
        header += bytes([self.req_resp_v, self.opt, (padding_len << 4) | int(self.security), 0, int(cmd)])
        header += struct.pack(">H", self.port)
        header += bytes([int(self.atyp)])
        header += self.addr
        header += os.urandom(padding_len)
        header += struct.pack(">I", _fnv1a32(header))

        if self.aead:
            self.rc.write(seal_aead_header(self.user.cmd_key, bytes(header)))
            return

        iv = timestamp_hash(datetime.fromtimestamp(_unix_now(), timezone.utc))
        encryptor = Cipher(algorithms.AES(self.user.cmd_key), modes.CFB(iv)).encryptor()
        self.rc.write(encryptor.update(bytes(header)) + encryptor.finalize())

    def decode_resp_header(self) -> None:
        """Read and verify the server's response header."""
        if self.aead:
            buf = open_aead_header(self.resp_body_key, self.resp_body_iv, self.rc)
            if len(buf) < 4:
                raise ValueError("unexpected buffer length")
        else:
            decryptor = Cipher(
                algorithms.AES(self.resp_body_key), modes.CFB(self.resp_body_iv)
            ).decryptor()
            buf = decryptor.update(_read_exact(self.rc, 4)) + decryptor.finalize()

        if buf[0] != self.req_resp_v:
            raise ValueError("unexpected response header")
        if buf[2] != 0:
            raise ValueError("dynamic port is not supported now")

    def _make_writer(self):
        if not self.opt & OPT_CHUNK_STREAM:
            return _Raw(self.rc)
        if self.security == Security.NONE:
            return ChunkedWriter(self.rc, self._write_sizes)
        if self.security == Security.AES128GCM:
            aead = AESGCM(self.req_body_key)
        else:
            aead = ChaCha20Poly1305(_chacha_key(self.req_body_key))
        return AEADWriter(self.rc, aead, self.req_body_iv, self._write_sizes)

    def _make_reader(self):
        if not self.opt & OPT_CHUNK_STREAM:
            return _Raw(self.rc)
        if self.security == Security.NONE:
            return ChunkedReader(self.rc, self._read_sizes)
        if self.security == Security.AES128GCM:
            aead = AESGCM(self.resp_body_key)
        else:
            aead = ChaCha20Poly1305(_chacha_key(self.resp_body_key))
        return AEADReader(self.rc, aead, self.resp_body_iv, self._read_sizes)

    def write(self, data: bytes) -> int:
        """Send body data; returns the number of bytes of data written."""
        if self._writer is None:
            self._writer = self._make_writer()
        return self._writer.write(data)

    def read(self, n: int = CHUNK_SIZE) -> bytes:
        """Read up to n bytes of body data, checking the response header first."""
        if self._reader is None:
            try:
                self.decode_resp_header()
            except (ValueError, EOFError, InvalidTag) as exc:
                raise ConnectionError(f"[vmess] error in decode_resp_header: {exc}") from exc
            self._reader = self._make_reader()
        return self._reader.read(n)


class Client:
    """A vmess client for one user id and its alter ids."""

    def __init__(
        self, uuid_str: str, security: str = "", alter_id: int = 0, aead: bool = True
    ) -> None:
        user = User.from_uuid(str_to_uuid(uuid_str))
        self.users = [user, *user.gen_alter_id_users(alter_id)]
        self.opt = OPT_CHUNK_STREAM | OPT_CHUNK_MASKING
        self.aead = aead

        name = security.lower()
        if name == "aes-128-gcm":
            self.security = Security.AES128GCM
        elif name == "chacha20-poly1305":
            self.security = Security.CHACHA20_POLY1305
        elif name == "none":
            self.security = Security.NONE
        elif name == "zero":
            self.security = Security.NONE
            self.opt = OPT_BASIC_FORMAT
        elif name == "":
            if platform.machine().lower() in _AES_FRIENDLY_MACHINES:
                self.security = Security.AES128GCM
            else:
                self.security = Security.CHACHA20_POLY1305
        else:
            raise ValueError("unknown security type: " + name)

    def new_conn(self, rc: _Stream, target: str, cmd: CmdType = CmdType.TCP) -> Conn:
        """Open a vmess connection to target over rc and send the request."""
        conn = Conn(rc, random.choice(self.users), self.opt, self.aead, self.security, target)
        if not self.aead:
            conn.auth()
        conn.request(cmd)
        return conn


class PktConn:
    """Packet view of a vmess connection bound to a single target."""

    def __init__(self, conn: Conn, target: object) -> None:
        self.conn = conn
        self.target = target

    def read_from(self, n: int = CHUNK_SIZE) -> tuple[bytes, object]:
        return self.conn.read(n), self.target

    def write_to(self, data: bytes, addr: object = None) -> int:
        return self.conn.write(data)
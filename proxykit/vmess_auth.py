"""AEAD header sealing and key derivation for vmess."""

from __future__ import annotations

import functools
import hashlib
import os
import struct
import time
import zlib
from typing import Callable, Protocol

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KDF_SALT_AUTH_ID_ENCRYPTION_KEY = "AES Auth ID Encryption"
KDF_SALT_AEAD_RESP_HEADER_LEN_KEY = "AEAD Resp Header Len Key"
KDF_SALT_AEAD_RESP_HEADER_LEN_IV = "AEAD Resp Header Len IV"
KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_KEY = "AEAD Resp Header Key"
KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_IV = "AEAD Resp Header IV"
KDF_SALT_VMESS_AEAD_KDF = "VMess AEAD KDF"
KDF_SALT_HEADER_PAYLOAD_AEAD_KEY = "VMess Header AEAD Key"
KDF_SALT_HEADER_PAYLOAD_AEAD_IV = "VMess Header AEAD Nonce"
KDF_SALT_HEADER_PAYLOAD_LENGTH_AEAD_KEY = "VMess Header AEAD Key_Length"
KDF_SALT_HEADER_PAYLOAD_LENGTH_AEAD_IV = "VMess Header AEAD Nonce_Length"


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


class _Hmac:
    """HMAC over an arbitrary hash factory, so HMACs can be nested."""

    block_size = 64

    def __init__(self, key: bytes, hash_factory: Callable, data: bytes = b"") -> None:
        if len(key) > self.block_size:
            key = hash_factory(key).digest()
        key = key.ljust(self.block_size, b"\0")
        self._inner = hash_factory(bytes(b ^ 0x36 for b in key))
        self._outer = hash_factory(bytes(b ^ 0x5C for b in key))
        self.digest_size = self._inner.digest_size
        if data:
            self._inner.update(data)

    def update(self, data: bytes) -> None:
        self._inner.update(data)

    def copy(self) -> _Hmac:
        clone = object.__new__(_Hmac)
        clone._inner = self._inner.copy()
        clone._outer = self._outer.copy()
        clone.digest_size = self.digest_size
        return clone

    def digest(self) -> bytes:
        outer = self._outer.copy()
        outer.update(self._inner.digest())
        return outer.digest()


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def kdf(key: bytes, *args: str | bytes) -> bytes:
    """Derive 32 bytes from key through HMACs nested along the given path."""
    factory: Callable = hashlib.sha256
    for value in (KDF_SALT_VMESS_AEAD_KDF, *args):
        factory = functools.partial(_Hmac, _as_bytes(value), factory)
    mac = factory()
    mac.update(bytes(key))
    return mac.digest()


def _aes_gcm(key: bytes) -> AESGCM:
    return AESGCM(key)


def create_auth_id(cmd_key: bytes, timestamp: int) -> bytes:
    """Encrypt (time, random, crc32) into a 16-byte authentication id."""
    plain = struct.pack(">q", timestamp) + os.urandom(4)
    plain += struct.pack(">I", zlib.crc32(plain))
    key = kdf(cmd_key, KDF_SALT_AUTH_ID_ENCRYPTION_KEY)[:16]
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    return encryptor.update(plain) + encryptor.finalize()


def seal_aead_header(key: bytes, data: bytes) -> bytes:
    """Seal a request header: auth id, sealed length, nonce, sealed payload."""
    auth_id = create_auth_id(key, int(time.time()))
    connection_nonce = os.urandom(8)

    length_key = kdf(key, KDF_SALT_HEADER_PAYLOAD_LENGTH_AEAD_KEY, auth_id, connection_nonce)[:16]
    length_iv = kdf(key, KDF_SALT_HEADER_PAYLOAD_LENGTH_AEAD_IV, auth_id, connection_nonce)[:12]
    sealed_length = _aes_gcm(length_key).encrypt(
        length_iv, struct.pack(">H", len(data) & 0xFFFF), auth_id
    )

    payload_key = kdf(key, KDF_SALT_HEADER_PAYLOAD_AEAD_KEY, auth_id, connection_nonce)[:16]
    payload_iv = kdf(key, KDF_SALT_HEADER_PAYLOAD_AEAD_IV, auth_id, connection_nonce)[:12]
    sealed_payload = _aes_gcm(payload_key).encrypt(payload_iv, bytes(data), auth_id)

    return auth_id + sealed_length + connection_nonce + sealed_payload


def open_aead_header(key: bytes, iv: bytes, reader: _Reader) -> bytes:
    """Read and open a response header sealed with the response key and iv."""
    length_key = kdf(key, KDF_SALT_AEAD_RESP_HEADER_LEN_KEY)[:16]
    length_iv = kdf(iv, KDF_SALT_AEAD_RESP_HEADER_LEN_IV)[:12]
    sealed_length = _read_exact(reader, 18)
    (length,) = struct.unpack(">H", _aes_gcm(length_key).decrypt(length_iv, sealed_length, None))

    payload_key = kdf(key, KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_KEY)[:16]
    payload_iv = kdf(iv, KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_IV)[:12]
    sealed_payload = _read_exact(reader, length + 16)
    return _aes_gcm(payload_key).decrypt(payload_iv, sealed_payload, None)
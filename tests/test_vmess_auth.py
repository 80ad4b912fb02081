import hashlib
import hmac
import io
import struct
import time
import zlib

import pytest
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from proxykit.vmess_auth import (
    create_auth_id,
    kdf,
    open_aead_header,
    seal_aead_header,
)

KEY = bytes(range(16))
IV = bytes(range(16, 32))


def _decrypt_auth_id(auth_id):
    aes_key = kdf(KEY, "AES Auth ID Encryption")[:16]
    decryptor = Cipher(algorithms.AES(aes_key), modes.ECB()).decryptor()
    return decryptor.update(auth_id) + decryptor.finalize()


def test_kdf_without_path_is_plain_hmac():
    expected = hmac.new(b"VMess AEAD KDF", KEY, hashlib.sha256).digest()
    assert kdf(KEY) == expected


def test_kdf_path_properties():
    assert len(kdf(KEY, "a", "b")) == 32
    assert kdf(KEY, "a", "b") == kdf(KEY, b"a", b"b")
    assert kdf(KEY, "a", "b") != kdf(KEY, "b", "a")
    assert kdf(KEY, "a") != kdf(KEY)
    assert kdf(KEY, "x" * 100) != kdf(KEY, "x" * 101)


def test_auth_id_decrypts_to_timestamp_and_crc():
    timestamp = 1_700_000_000
    auth_id = create_auth_id(KEY, timestamp)
    assert len(auth_id) == 16
    plain = _decrypt_auth_id(auth_id)
    assert struct.unpack(">q", plain[:8])[0] == timestamp
    assert struct.unpack(">I", plain[12:])[0] == zlib.crc32(plain[:12])


def test_auth_id_is_randomised():
    ids = [create_auth_id(KEY, 1) for _ in range(8)]
    assert len(set(ids)) == len(ids)
    plains = [_decrypt_auth_id(auth_id) for auth_id in ids]
    assert {struct.unpack(">q", plain[:8])[0] for plain in plains} == {1}
    assert len({plain[8:12] for plain in plains}) == len(plains)


def test_seal_header_layout_and_contents():
    data = b"request header bytes"
    sealed = seal_aead_header(KEY, data)
    assert len(sealed) == 16 + 18 + 8 + len(data) + 16

    auth_id, sealed_len = sealed[:16], sealed[16:34]
    nonce, sealed_payload = sealed[34:42], sealed[42:]

    len_key = kdf(KEY, "VMess Header AEAD Key_Length", auth_id, nonce)[:16]
    len_iv = kdf(KEY, "VMess Header AEAD Nonce_Length", auth_id, nonce)[:12]
    length = AESGCM(len_key).decrypt(len_iv, sealed_len, auth_id)
    assert struct.unpack(">H", length)[0] == len(data)

    pay_key = kdf(KEY, "VMess Header AEAD Key", auth_id, nonce)[:16]
    pay_iv = kdf(KEY, "VMess Header AEAD Nonce", auth_id, nonce)[:12]
    assert AESGCM(pay_key).decrypt(pay_iv, sealed_payload, auth_id) == data


def test_seal_header_auth_id_carries_current_time():
    sealed = seal_aead_header(KEY, b"x")
    plain = _decrypt_auth_id(sealed[:16])
    assert abs(struct.unpack(">q", plain[:8])[0] - time.time()) < 60


def _response(payload):
    len_key = kdf(KEY, "AEAD Resp Header Len Key")[:16]
    len_iv = kdf(IV, "AEAD Resp Header Len IV")[:12]
    pay_key = kdf(KEY, "AEAD Resp Header Key")[:16]
    pay_iv = kdf(IV, "AEAD Resp Header IV")[:12]
    return (
        AESGCM(len_key).encrypt(len_iv, struct.pack(">H", len(payload)), None)
        + AESGCM(pay_key).encrypt(pay_iv, payload, None)
    )


def test_open_response_header():
    payload = bytes([7, 0, 0, 0])
    assert open_aead_header(KEY, IV, io.BytesIO(_response(payload))) == payload


def test_open_response_header_wrong_key():
    with pytest.raises(InvalidTag):
        open_aead_header(bytes(16), IV, io.BytesIO(_response(b"abcd")))


def test_open_response_header_truncated():
    with pytest.raises(EOFError):
        open_aead_header(KEY, IV, io.BytesIO(_response(b"abcd")[:-3]))
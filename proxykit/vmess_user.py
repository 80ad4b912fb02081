"""Vmess user identities and the keys derived from them."""

from __future__ import annotations

import binascii
import hashlib
import math
from dataclasses import dataclass
from datetime import datetime

_ALTER_ID_SEED = b"16167dc8-16b6-4e6d-b8bb-65dd68113a81"
_ALTER_ID_RETRY = b"533eff8a-4113-4b10-b5ce-0f5d76b98cd2"
_CMD_KEY_SALT = b"c48619fe-8f02-49e0-b9e9-edf763e17e21"


def _next_id(old_id: bytes) -> bytes:
    md5 = hashlib.md5()
    md5.update(old_id)
    md5.update(_ALTER_ID_SEED)
    while True:
        new_id = md5.digest()
        if new_id != old_id:
            return new_id
        md5.update(_ALTER_ID_RETRY)


def get_key(uuid: bytes) -> bytes:
    """Return the command key: MD5(uuid + fixed salt)."""
    return hashlib.md5(bytes(uuid) + _CMD_KEY_SALT).digest()


@dataclass(frozen=True)
class User:
    """A vmess user: its 16-byte id and command key."""

    uuid: bytes
    cmd_key: bytes

    @staticmethod
    def from_uuid(uuid: bytes) -> User:
        return User(uuid=bytes(uuid), cmd_key=get_key(uuid))

    def gen_alter_id_users(self, alter_id: int) -> list[User]:
        """Derive alter-id users: new ids, same command key."""
        users = []
        previous = self.uuid
        for _ in range(alter_id):
            previous = _next_id(previous)
            users.append(User(uuid=previous, cmd_key=self.cmd_key))
        return users


def str_to_uuid(s: str) -> bytes:
    """Convert a uuid string, or a short free-form id, into 16 bytes.

    Strings of 1 to 30 bytes are hashed into a name-based (version 5) uuid;
    anything else must be 32 hex digits, optionally with dashes.
    """
    raw = s.encode()
    if 1 <= len(raw) <= 30:
        digest = bytearray(hashlib.sha1(bytes(16) + raw).digest()[:16])
        digest[6] = (digest[6] & 0x0F) | (5 << 4)
        digest[8] = (digest[8] & 0x3F) | (0x02 << 6)
        return bytes(digest)

    hex_digits = raw.replace(b"-", b"")
    if len(hex_digits) != 32:
        raise ValueError("invalid UUID: " + s)
    try:
        return binascii.unhexlify(hex_digits)
    except binascii.Error as exc:
        raise ValueError("invalid UUID: " + s) from exc


def timestamp_hash(t: datetime) -> bytes:
    """Return MD5 of the 8-byte big-endian unix time repeated four times."""
    seconds = math.floor(t.timestamp()) & 0xFFFFFFFFFFFFFFFF
    ts = seconds.to_bytes(8, "big")
    return hashlib.md5(ts * 4).digest()
import hashlib
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from proxykit.vmess_user import User, get_key, str_to_uuid, timestamp_hash

CANONICAL = "b831381d-6324-4d53-ad4f-8cda48b30811"


def test_canonical_uuid_string():
    assert str_to_uuid(CANONICAL) == uuid.UUID(CANONICAL).bytes


def test_uuid_without_dashes():
    assert str_to_uuid(CANONICAL.replace("-", "")) == uuid.UUID(CANONICAL).bytes


def test_short_id_is_name_based_uuid():
    result = str_to_uuid("alias")
    assert result == uuid.uuid5(uuid.UUID(int=0), "alias").bytes
    assert result[6] >> 4 == 5
    assert result[8] >> 6 == 2


@pytest.mark.parametrize("bad", ["", "x" * 31, "zz" * 16, CANONICAL + "00"])
def test_invalid_uuid_strings(bad):
    with pytest.raises(ValueError):
        str_to_uuid(bad)


def test_get_key_is_stable_and_sized():
    uid = str_to_uuid(CANONICAL)
    assert get_key(uid) == get_key(uid)
    assert len(get_key(uid)) == 16
    assert get_key(uid) != get_key(bytes(16))


def test_user_from_uuid():
    uid = str_to_uuid(CANONICAL)
    user = User.from_uuid(uid)
    assert user.uuid == uid
    assert user.cmd_key == get_key(uid)


def test_alter_id_users():
    user = User.from_uuid(str_to_uuid(CANONICAL))
    users = user.gen_alter_id_users(4)
    assert len(users) == 4
    assert all(u.cmd_key == user.cmd_key for u in users)
    ids = {u.uuid for u in users} | {user.uuid}
    assert len(ids) == 5
    seed = b"16167dc8-16b6-4e6d-b8bb-65dd68113a81"
    assert users[0].uuid == hashlib.md5(user.uuid + seed).digest()


def test_alter_id_chain_is_deterministic():
    user = User.from_uuid(str_to_uuid(CANONICAL))
    assert user.gen_alter_id_users(3) == user.gen_alter_id_users(5)[:3]
    assert user.gen_alter_id_users(0) == []


def test_timestamp_hash_epoch():
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert timestamp_hash(epoch) == hashlib.md5(bytes(32)).digest()


def test_timestamp_hash_uses_whole_seconds():
    base = datetime(2023, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert timestamp_hash(base) == timestamp_hash(base + timedelta(milliseconds=900))
    assert timestamp_hash(base) != timestamp_hash(base + timedelta(seconds=1))
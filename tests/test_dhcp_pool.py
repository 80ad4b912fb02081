import ipaddress
from datetime import timedelta

import pytest

from proxykit.dhcp_pool import Pool

MAC_A = b"\x02\x00\x00\x00\x00\x01"
MAC_B = b"\x02\x00\x00\x00\x00\x02"
MAC_C = b"\x02\x00\x00\x00\x00\x03"
MAC_D = b"\x02\x00\x00\x00\x00\x04"

START = ipaddress.IPv4Address("192.168.1.10")
END = ipaddress.IPv4Address("192.168.1.12")


def make_pool(now=1000.0):
    return Pool(timedelta(minutes=10), START, END, reap_interval=None, clock=lambda: now)


def test_lease_is_in_range_and_stable():
    pool = make_pool()
    ip = pool.lease_ip(MAC_A)
    assert START <= ip <= END
    assert pool.lease_ip(MAC_A) == ip


def test_distinct_macs_get_distinct_ips_until_exhausted():
    pool = make_pool()
    ips = {pool.lease_ip(mac) for mac in (MAC_A, MAC_B, MAC_C)}
    assert ips == {START, START + 1, END}
    with pytest.raises(LookupError):
        pool.lease_ip(MAC_D)


def test_release_frees_address():
    pool = make_pool()
    for mac in (MAC_A, MAC_B, MAC_C):
        pool.lease_ip(mac)
    freed = pool.lease_ip(MAC_B)
    pool.release_ip(MAC_B)
    assert pool.lease_ip(MAC_D) == freed


def test_static_lease_is_returned_and_not_released():
    pool = make_pool()
    pool.lease_static_ip(MAC_A, "192.168.1.11")
    assert pool.lease_ip(MAC_A) == ipaddress.IPv4Address("192.168.1.11")
    pool.release_ip(MAC_A)
    pool.expire(10**9)
    assert pool.lease_ip(MAC_A) == ipaddress.IPv4Address("192.168.1.11")


def test_expire_frees_only_after_lease():
    pool = make_pool(now=1000.0)
    for mac in (MAC_A, MAC_B, MAC_C):
        pool.lease_ip(mac)
    pool.expire(1000.0 + 600)
    with pytest.raises(LookupError):
        pool.lease_ip(MAC_D)
    pool.expire(1000.0 + 601)
    assert START <= pool.lease_ip(MAC_D) <= END


def test_start_after_end_rejected():
    with pytest.raises(ValueError, match="larger"):
        Pool(60, END, START, reap_interval=None)


@pytest.mark.parametrize("start,end", [("0.0.0.0", "192.168.1.5"), ("::1", "::5")])
def test_bad_addresses_rejected(start, end):
    with pytest.raises(ValueError):
        Pool(60, start, end, reap_interval=None)
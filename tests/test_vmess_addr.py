import ipaddress

import pytest

from proxykit.vmess_addr import MAX_HOST_LEN, Atyp, parse_addr


def test_ipv4_address():
    assert parse_addr("192.0.2.1:8080") == (Atyp.IP4, bytes([192, 0, 2, 1]), 8080)


def test_ipv6_address():
    atyp, addr, port = parse_addr("[2001:db8::1]:443")
    assert atyp is Atyp.IP6
    assert addr == ipaddress.ip_address("2001:db8::1").packed
    assert port == 443


def test_ipv4_mapped_ipv6_stays_ipv6():
    atyp, addr, port = parse_addr("[::ffff:192.0.2.1]:53")
    assert atyp is Atyp.IP6
    assert len(addr) == 16
    assert port == 53


def test_domain_address_is_length_prefixed():
    atyp, addr, port = parse_addr("example.com:80")
    assert atyp is Atyp.DOMAIN
    assert addr[0] == len("example.com")
    assert addr[1:] == b"example.com"
    assert port == 80


@pytest.mark.parametrize(
    "target, wire_value",
    [("192.0.2.1:1", 1), ("example.com:1", 2), ("[2001:db8::1]:1", 3)],
)
def test_atyp_wire_values(target, wire_value):
    assert int(parse_addr(target)[0]) == wire_value


def test_port_with_leading_zeros():
    assert parse_addr("example.com:0080")[2] == 80


def test_longest_domain_accepted():
    host = "a" * MAX_HOST_LEN
    atyp, addr, _ = parse_addr(f"{host}:1")
    assert atyp is Atyp.DOMAIN
    assert len(addr) == MAX_HOST_LEN + 1


def test_domain_too_long():
    with pytest.raises(ValueError):
        parse_addr("a" * (MAX_HOST_LEN + 1) + ":1")


@pytest.mark.parametrize(
    "bad",
    [
        "",
        "example.com",
        "a:b:80",
        "example.com:http",
        "example.com:65536",
        "example.com:",
        "example.com:+1",
        "[::1",
        "[::1]",
        "[::1]x:80",
    ],
)
def test_invalid_addresses(bad):
    with pytest.raises(ValueError):
        parse_addr(bad)
import io

import pytest

from proxykit.vless_addr import Atyp, addr_string, parse_addr, read_addr, read_addr_string


def _wire(s):
    atyp, addr, port = parse_addr(s)
    return port.to_bytes(2, "big") + bytes([atyp]) + addr


def test_read_addr_ipv4():
    atyp, host, port = read_addr(io.BytesIO(b"\x01\xbb\x01\x7f\x00\x00\x01"))
    assert atyp is Atyp.IP4
    assert host == bytes([127, 0, 0, 1])
    assert port == 443


def test_read_addr_domain_strips_length():
    atyp, host, port = read_addr(io.BytesIO(_wire("example.com:8080")))
    assert atyp is Atyp.DOMAIN
    assert host == b"example.com"
    assert port == 8080


def test_parse_addr_domain_has_length_prefix():
    atyp, addr, port = parse_addr("example.com:80")
    assert atyp is Atyp.DOMAIN
    assert addr == bytes([len("example.com")]) + b"example.com"
    assert port == 80


@pytest.mark.parametrize("s", ["127.0.0.1:80", "[::1]:53", "example.com:8080", "[2001:db8::1]:443"])
def test_round_trip_through_wire(s):
    assert read_addr_string(io.BytesIO(_wire(s))) == s


def test_ipv6_is_bracketed():
    atyp, addr, port = parse_addr("[::1]:53")
    assert atyp is Atyp.IP6
    assert addr_string(atyp, addr, port) == "[::1]:53"


def test_ipv4_mapped_prints_as_ipv4():
    addr = bytes(10) + b"\xff\xff" + bytes([10, 0, 0, 1])
    assert addr_string(Atyp.IP6, addr, 80) == "10.0.0.1:80"


def test_unknown_atyp_gives_empty_host():
    atyp, host, port = read_addr(io.BytesIO(b"\x00\x50\x09"))
    assert (atyp, host, port) == (9, b"", 80)
    assert addr_string(atyp, host, port) == ":80"


def test_truncated_input_raises():
    with pytest.raises(EOFError):
        read_addr(io.BytesIO(b"\x00\x50\x01\x7f"))


@pytest.mark.parametrize("s", ["example.com", "example.com:abc", "example.com:70000"])
def test_parse_addr_rejects_bad_input(s):
    with pytest.raises(ValueError):
        parse_addr(s)
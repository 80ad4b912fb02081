"""Target address encoding used in vmess request headers."""

from __future__ import annotations

import ipaddress
from enum import IntEnum

MAX_HOST_LEN = 255

_DIGITS = frozenset("0123456789")


class Atyp(IntEnum):
    """Address type of a vmess target."""

    ERR = 0
    IP4 = 1
    DOMAIN = 2
    IP6 = 3


def _split_host_port(hostport: str) -> tuple[str, str]:
    """Split "host:port" or "[host]:port" into host and port."""
    i = hostport.rfind(":")
    if i < 0:
        raise ValueError(f"address {hostport!r}: missing port in address")

    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport!r}: missing ']' in address")
        if end + 1 == len(hostport):
            raise ValueError(f"address {hostport!r}: missing port in address")
        if end + 1 != i:
            if hostport[end + 1] == ":":
                raise ValueError(f"address {hostport!r}: too many colons in address")
            raise ValueError(f"address {hostport!r}: missing port in address")
        host = hostport[1:end]
        j, k = 1, end + 1
    else:
        host = hostport[:i]
        if ":" in host:
            raise ValueError(f"address {hostport!r}: too many colons in address")
        j, k = 0, 0

    if "[" in hostport[j:]:
        raise ValueError(f"address {hostport!r}: unexpected '[' in address")
    if "]" in hostport[k:]:
        raise ValueError(f"address {hostport!r}: unexpected ']' in address")
    return host, hostport[i + 1:]


def _parse_port(port: str) -> int:
    if not port or not set(port) <= _DIGITS:
        raise ValueError(f"invalid port {port!r}")
    value = int(port)
    if value > 0xFFFF:
        raise ValueError(f"port {port!r} out of range")
    return value


def parse_addr(s: str) -> tuple[Atyp, bytes, int]:
    """Parse "host:port" into (address type, encoded address, port).

    IP addresses are encoded as their 4 or 16 raw bytes; domain names are
    prefixed with a single length byte.
    """
    host, port = _split_host_port(s)

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        host_bytes = host.encode()
        if len(host_bytes) > MAX_HOST_LEN:
            raise ValueError(f"host name too long: {len(host_bytes)} bytes") from None
        atyp = Atyp.DOMAIN
        addr = bytes([len(host_bytes)]) + host_bytes
    else:
        atyp = Atyp.IP6 if ip.version == 6 else Atyp.IP4
        addr = ip.packed

    return atyp, addr, _parse_port(port)
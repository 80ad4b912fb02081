"""Target address encoding used in vless request headers."""

from __future__ import annotations

import ipaddress
from enum import IntEnum
from typing import Protocol

__all__ = ["MAX_HOST_LEN", "Atyp", "parse_addr", "read_addr", "read_addr_string", "addr_string"]

MAX_HOST_LEN = 255


class Atyp(IntEnum):
    """Vless address type."""

    ERR = 0
    IP4 = 1
    DOMAIN = 2
    IP6 = 3


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


def _split_host_port(s: str) -> tuple[str, str]:
    """Split "host:port" or "[host]:port"; raise ValueError on malformed input."""
    if s.startswith("["):
        end = s.find("]")
        if end < 0:
            raise ValueError(f"address {s}: missing ']' in address")
        if end + 1 == len(s):
            raise ValueError(f"address {s}: missing port in address")
        if s[end + 1] != ":":
            raise ValueError(f"address {s}: unexpected character after ']'")
        host, port = s[1:end], s[end + 2 :]
        if "[" in host or "]" in host:
            raise ValueError(f"address {s}: unexpected '[' or ']' in address")
    else:
        colon = s.rfind(":")
        if colon < 0:
            raise ValueError(f"address {s}: missing port in address")
        host, port = s[:colon], s[colon + 1 :]
        if ":" in host:
            raise ValueError(f"address {s}: too many colons in address")
        if "[" in host or "]" in host:
            raise ValueError(f"address {s}: unexpected '[' or ']' in address")
    if "]" in port:
        raise ValueError(f"address {s}: unexpected ']' in address")
    return host, port


def _parse_port(port: str) -> int:
    if not port or not port.isascii() or not port.isdigit():
        raise ValueError(f"invalid port: {port!r}")
    value = int(port)
    if value > 0xFFFF:
        raise ValueError(f"port out of range: {port!r}")
    return value


def parse_addr(s: str) -> tuple[Atyp, bytes, int]:
    """Parse "host:port" into (address type, encoded address, port)."""
    host, port = _split_host_port(s)
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        encoded = host.encode("utf-8")
        if len(encoded) > MAX_HOST_LEN:
            raise ValueError(f"host too long: {len(encoded)} bytes") from None
        atyp = Atyp.DOMAIN
        addr = bytes([len(encoded)]) + encoded
    else:
        atyp = Atyp.IP6 if ip.version == 6 else Atyp.IP4
        addr = ip.packed
    return atyp, addr, _parse_port(port)


def _atyp(code: int) -> Atyp | int:
    try:
        return Atyp(code)
    except ValueError:
        return code


def read_addr(reader: _Reader) -> tuple[Atyp | int, bytes, int]:
    """Read port, address type and address from reader.

    An unknown address type is returned as a plain int with an empty host.
    """
    port = int.from_bytes(_read_exact(reader, 2), "big")
    code = _read_exact(reader, 1)[0]
    if code == Atyp.IP4:
        host = _read_exact(reader, 4)
    elif code == Atyp.IP6:
        host = _read_exact(reader, 16)
    elif code == Atyp.DOMAIN:
        length = _read_exact(reader, 1)[0]
        host = _read_exact(reader, length)
    else:
        return _atyp(code), b"", port
    return Atyp(code), host, port


def read_addr_string(reader: _Reader) -> str:
    """Read an address from reader and return it as "host:port"."""
    return addr_string(*read_addr(reader))


def _ip_string(addr: bytes) -> str:
    if len(addr) == 4:
        return str(ipaddress.IPv4Address(addr))
    if len(addr) == 16:
        ip = ipaddress.IPv6Address(addr)
        return str(ip.ipv4_mapped) if ip.ipv4_mapped is not None else str(ip)
    if not addr:
        return "<nil>"
    return "?" + addr.hex()


def addr_string(atyp: Atyp | int, addr: bytes, port: int) -> str:
    """Return "host:port", bracketing hosts that contain a colon."""
    if atyp in (Atyp.IP4, Atyp.IP6):
        host = _ip_string(bytes(addr))
    elif atyp == Atyp.DOMAIN:
        host = bytes(addr).decode("utf-8", errors="replace")
    else:
        host = ""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
"""The vless protocol: client and server connections and a proxy endpoint."""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import re
import socket
import struct
import threading
from enum import IntEnum
from typing import Any, Protocol
from urllib.parse import parse_qs, unquote, urlsplit

from proxykit.vless_addr import _read_exact, _split_host_port, parse_addr, read_addr_string

__all__ = ["VERSION", "CmdType", "str_to_uuid", "VLess", "ClientConn", "ServerConn", "PktConn"]

log = logging.getLogger(__name__)

VERSION = 0
UDP_BUF_SIZE = 65535
_RELAY_BUF = 32 * 1024
_UDP_TIMEOUT = 120.0
_HEX32 = re.compile(r"[0-9a-fA-F]{32}")


class CmdType(IntEnum):
    """Vless request command."""

    ERR = 0
    TCP = 1
    UDP = 2


def str_to_uuid(s: str) -> bytes:
    """Convert a UUID string, or a short id of 1 to 30 bytes, to 16 UUID bytes."""
    raw = s.encode("utf-8")
    if 1 <= len(raw) <= 30:
        digest = bytearray(hashlib.sha1(bytes(16) + raw).digest()[:16])
        digest[6] = (digest[6] & 0x0F) | (5 << 4)
        digest[8] = (digest[8] & 0x3F) | (0x02 << 6)
        return bytes(digest)
    compact = s.replace("-", "")
    if len(compact.encode("utf-8")) != 32:
        raise ValueError("invalid UUID: " + s)
    if not _HEX32.fullmatch(compact):
        raise ValueError("invalid UUID: " + s)
    return bytes.fromhex(compact)


class _Stream(Protocol):
    def read(self, n: int) -> bytes: ...

    def write(self, data: bytes) -> object: ...


def _close(obj: Any) -> None:
    close = getattr(obj, "close", None)
    if close is not None:
        try:
            close()
        except OSError:
            pass


def _resolve_udp_addr(addr: str) -> tuple[str, int]:
    host, port = _split_host_port(addr)
    infos = socket.getaddrinfo(host or None, int(port), type=socket.SOCK_DGRAM)
    sockaddr = infos[0][4]
    return sockaddr[0], sockaddr[1]


class ClientConn:
    """Client side of a vless connection; sends the request on creation."""

    def __init__(self, rc: _Stream, uuid: bytes, network: str, target: str) -> None:
        atyp, addr, port = parse_addr(target)
        cmd = CmdType.UDP if network == "udp" else CmdType.TCP
        header = bytes([VERSION]) + bytes(uuid) + bytes([0, cmd])
        header += struct.pack(">H", port) + bytes([atyp]) + addr
        self.rc = rc
        self._received = False
        rc.write(header)

    def write(self, data: bytes) -> int:
        self.rc.write(data)
        return len(data)

    def read(self, n: int = _RELAY_BUF) -> bytes:
        """Read data, consuming the server's response header first."""
        if not self._received:
            version, addon_len = _read_exact(self.rc, 2)
            if version != VERSION:
                raise ValueError("version not supported")
            if addon_len:
                _read_exact(self.rc, addon_len)
            self._received = True
        return self.rc.read(n)

    def close(self) -> None:
        _close(self.rc)


class ServerConn:
    """Server side of a vless connection; prefixes the first write with a response header."""

    def __init__(self, c: _Stream) -> None:
        self.c = c
        self._sent = False

    def write(self, data: bytes) -> int:
        if not self._sent:
            self._sent = True
            self.c.write(bytes([VERSION, 0]) + bytes(data))
        else:
            self.c.write(data)
        return len(data)

    def read(self, n: int = _RELAY_BUF) -> bytes:
        return self.c.read(n)

    def close(self) -> None:
        _close(self.c)


class PktConn:
    """Length-prefixed UDP packets carried over a vless stream."""

    def __init__(self, conn: _Stream, target: object) -> None:
        self.conn = conn
        self.target = target

    def read_from(self, n: int = UDP_BUF_SIZE) -> tuple[bytes, object]:
        if n < 2:
            raise ValueError("buf size is not enough")
        (length,) = struct.unpack(">H", _read_exact(self.conn, 2))
        if n < length:
            raise ValueError("buf size is not enough")
        return _read_exact(self.conn, length), self.target

    def write_to(self, data: bytes, addr: object = None) -> int:
        self.conn.write(struct.pack(">H", len(data) & 0xFFFF) + bytes(data))
        return len(data)

    def close(self) -> None:
        _close(self.conn)


class _RecordingReader:
    """Reader that keeps a copy of everything read through it."""

    def __init__(self, stream: _Stream) -> None:
        self._stream = stream
        self.data = bytearray()

    def read(self, n: int) -> bytes:
        part = self._stream.read(n)
        self.data += part
        return part


class _SocketStream:
    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.remote = sock.getpeername()

    def read(self, n: int) -> bytes:
        return self.sock.recv(n)

    def write(self, data: bytes) -> int:
        self.sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self.sock.close()


def _relay(left: _Stream, right: _Stream) -> Exception | None:
    errors: list[Exception] = []

    def pump(src: _Stream, dst: _Stream) -> None:
        try:
            while data := src.read(_RELAY_BUF):
                dst.write(data)
        except (OSError, ValueError, EOFError) as exc:
            errors.append(exc)
        finally:
            _close(dst)

    thread = threading.Thread(target=pump, args=(right, left), daemon=True)
    thread.start()
    pump(left, right)
    thread.join()
    return errors[0] if errors else None


class VLess:
    """A vless endpoint built from "vless://uuid@host:port[?fallback=host:port]"."""

    def __init__(self, s: str, dialer: Any = None, proxy: Any = None) -> None:
        parts = urlsplit(s)
        userinfo, _, hostport = parts.netloc.rpartition("@")
        self._addr = hostport
        self.uuid = str_to_uuid(unquote(userinfo.split(":", 1)[0]))
        self.fallback = parse_qs(parts.query).get("fallback", [""])[0]
        self.dialer = dialer
        self.proxy = proxy

    @property
    def addr(self) -> str:
        return self._addr or self.dialer.addr

    def _dial(self, network: str, addr: str) -> ClientConn:
        try:
            rc = self.dialer.dial("tcp", self._addr)
        except OSError as exc:
            log.warning("[vless]: dial to %s error: %s", self._addr, exc)
            raise
        return ClientConn(rc, self.uuid, network, addr)

    def dial(self, network: str, addr: str) -> ClientConn:
        """Connect to addr through the vless server."""
        return self._dial(network, addr)

    def dial_udp(self, network: str, addr: str) -> PktConn:
        """Open a UDP-over-stream association to addr through the vless server."""
        conn = self._dial("udp", addr)
        return PktConn(conn, _resolve_udp_addr(addr))

    def read_header(self, reader: _Stream) -> tuple[CmdType | int, str]:
        """Read and verify a client request header; return (command, target)."""
        try:
            head = _read_exact(reader, 18)
        except EOFError as exc:
            raise ValueError(f"read header error: {exc}") from exc
        if head[0] != VERSION:
            raise ValueError(f"version {head[0]} not supported")
        if head[1:17] != self.uuid:
            raise ValueError(f"auth failed, client id: {head[:16].hex()}")
        try:
            if head[17]:
                _read_exact(reader, head[17])
            cmd_code = _read_exact(reader, 1)[0]
        except EOFError as exc:
            raise ValueError(f"get cmd error: {exc}") from exc
        try:
            target = read_addr_string(reader)
        except EOFError as exc:
            raise ValueError(f"read target error: {exc}") from exc
        try:
            cmd: CmdType | int = CmdType(cmd_code)
        except ValueError:
            cmd = cmd_code
        return cmd, target

    def listen_and_serve(self) -> None:
        """Accept TCP connections on the server address and serve each in a thread."""
        host, port = _split_host_port(self._addr)
        with socket.create_server((host, int(port))) as listener:
            log.info("[vless] listening TCP on %s", self._addr)
            while True:
                try:
                    sock, _ = listener.accept()
                except OSError as exc:
                    log.warning("[vless] failed to accept: %s", exc)
                    continue
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
                threading.Thread(target=self.serve, args=(_SocketStream(sock),), daemon=True).start()

    def serve(self, c: _Stream) -> None:
        """Serve one client stream: verify it, then relay to its target."""
        remote = getattr(c, "remote", "")
        recorder = _RecordingReader(c)
        try:
            try:
                cmd, target = self.read_header(recorder)
            except ValueError:
                if self.fallback:
                    self._serve_fallback(c, bytes(recorder.data))
                return

            conn = ServerConn(c)
            dialer = self.proxy.next_dialer(target)
            network = "tcp"
            if cmd == CmdType.UDP:
                if dialer.addr == "DIRECT":
                    self._serve_uot(conn, target)
                    return
                network = "udp"

            try:
                rc = dialer.dial(network, target)
            except OSError as exc:
                log.warning("[vless] %s <-> %s via %s, error in dial: %s", remote, target, dialer.addr, exc)
                return
            try:
                log.info("[vless] %s <-> %s via %s", remote, target, dialer.addr)
                err = _relay(conn, rc)
                if err is not None:
                    log.warning("[vless] %s <-> %s via %s, relay error: %s", remote, target, dialer.addr, err)
                    if self._addr not in str(err):
                        self.proxy.record(dialer, False)
            finally:
                _close(rc)
        finally:
            _close(c)

    def _serve_fallback(self, c: _Stream, head: bytes) -> None:
        remote = getattr(c, "remote", "")
        dialer = self.proxy.next_dialer(self.fallback)
        try:
            rc = dialer.dial("tcp", self.fallback)
        except OSError as exc:
            log.warning("[vless-fallback] %s <-> %s via %s, error in dial: %s", remote, self.fallback, dialer.addr, exc)
            return
        try:
            try:
                rc.write(head)
            except OSError as exc:
                log.warning("[vless-fallback] write to rc error: %s", exc)
                return
            log.info("[vless-fallback] %s <-> %s via %s", remote, self.fallback, dialer.addr)
            err = _relay(c, rc)
            if err is not None:
                log.warning("[vless-fallback] %s <-> %s via %s, relay error: %s", remote, self.fallback, dialer.addr, err)
        finally:
            _close(rc)

    def _serve_uot(self, conn: ServerConn, target: str) -> None:
        try:
            target_addr = _resolve_udp_addr(target)
        except (OSError, ValueError) as exc:
            log.warning("[vless] error in resolving udp addr: %s", exc)
            return
        family = socket.AF_INET6 if ipaddress.ip_address(target_addr[0]).version == 6 else socket.AF_INET
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.settimeout(_UDP_TIMEOUT)
            pc = PktConn(conn, target_addr)
            log.info("[vless] UoT <-> %s", target)

            def upstream() -> None:
                try:
                    while True:
                        data, _ = pc.read_from()
                        sock.sendto(data, target_addr)
                except (OSError, ValueError, EOFError):
                    _close(sock)

            thread = threading.Thread(target=upstream, daemon=True)
            thread.start()
            try:
                while True:
                    data, _ = sock.recvfrom(UDP_BUF_SIZE)
                    pc.write_to(data)
            except (OSError, ValueError):
                pass
            finally:
                _close(conn)
            thread.join()
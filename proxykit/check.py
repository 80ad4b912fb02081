"""Health checks run against forwarders."""

from __future__ import annotations

import os
import re
import socket
import ssl
import subprocess
import time
from typing import Any, Protocol

from proxykit.vmess_addr import _split_host_port


class CheckError(Exception):
    """A forwarder answered, but not as expected."""


class Checker(Protocol):
    def check(self, fwdr: Any) -> float: ...


def _with_default_port(addr: str, port: str) -> str:
    try:
        _, current = _split_host_port(addr)
    except ValueError:
        current = ""
    if current:
        return addr
    return f"[{addr}]:{port}" if ":" in addr else f"{addr}:{port}"


class _SocketStream:
    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock

    def read(self, n: int) -> bytes:
        return self.sock.recv(n)

    def write(self, data: bytes) -> int:
        self.sock.sendall(data)
        return len(data)

    def settimeout(self, timeout: float | None) -> None:
        self.sock.settimeout(timeout)

    def close(self) -> None:
        self.sock.close()


class _TlsStream:
    """TLS client over any stream with read/write."""

    _CHUNK = 16384

    def __init__(self, stream: Any, context: ssl.SSLContext, server_name: str) -> None:
        self._stream = stream
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        self._tls = context.wrap_bio(self._incoming, self._outgoing, server_hostname=server_name)
        while True:
            try:
                self._tls.do_handshake()
                break
            except ssl.SSLWantReadError:
                self._flush()
                if not self._fill():
                    raise EOFError("connection closed during TLS handshake") from None
        self._flush()

    def _flush(self) -> None:
        data = self._outgoing.read()
        if data:
            self._stream.write(data)

    def _fill(self) -> bool:
        data = self._stream.read(self._CHUNK)
        if not data:
            return False
        self._incoming.write(data)
        return True

    def write(self, data: bytes) -> int:
        self._tls.write(data)
        self._flush()
        return len(data)

    def read(self, n: int) -> bytes:
        while True:
            try:
                return self._tls.read(n)
            except ssl.SSLWantReadError:
                self._flush()
                if not self._fill():
                    return b""

    def close(self) -> None:
        self._stream.close()


def _as_stream(conn: Any) -> Any:
    return _SocketStream(conn) if isinstance(conn, socket.socket) else conn


def _close(conn: Any) -> None:
    close = getattr(conn, "close", None)
    if close is not None:
        try:
            close()
        except OSError:
            pass


def _read_line(conn: Any) -> str:
    buf = bytearray()
    while b"\n" not in buf:
        data = conn.read(1024)
        if not data:
            raise EOFError("unexpected end of stream")
        buf += data
    return buf[: buf.index(b"\n") + 1].decode("latin-1")


class TcpChecker:
    """Healthy when a TCP connection to addr can be made through the forwarder."""

    def __init__(self, addr: str, timeout: float = 0) -> None:
        self.addr = _with_default_port(addr, "80")
        self.timeout = timeout

    def check(self, fwdr: Any) -> float:
        start = time.monotonic()
        _close(fwdr.dial("tcp", self.addr))
        return time.monotonic() - start


class HttpChecker:
    """Healthy when the first response line to a GET matches the expect pattern."""

    def __init__(self, addr: str, uri: str, expect: str, timeout: float, with_tls: bool) -> None:
        self.addr = _with_default_port(addr, "443" if with_tls else "80")
        self.uri = uri
        self.expect = expect
        self.timeout = timeout
        self.regex = re.compile(expect)
        self.server_name = self.addr[: self.addr.rfind(":")]
        self.tls_context = ssl.create_default_context() if with_tls else None

    def check(self, fwdr: Any) -> float:
        start = time.monotonic()
        raw = _as_stream(fwdr.dial("tcp", self.addr))
        conn = raw
        try:
            if self.timeout > 0 and hasattr(raw, "settimeout"):
                raw.settimeout(self.timeout)
            if self.tls_context is not None:
                conn = _TlsStream(raw, self.tls_context, self.server_name)
            request = f"GET {self.uri} HTTP/1.1\r\nHost:{self.server_name}\r\n\r\n"
            conn.write(request.encode("latin-1"))
            line = _read_line(conn)
        finally:
            _close(conn)

        if not self.regex.search(line):
            raise CheckError(f"expect: {self.expect}, got: {line}")

        elapsed = time.monotonic() - start
        if elapsed > self.timeout:
            raise TimeoutError("timeout")
        return elapsed


class FileChecker:
    """Runs a script; healthy when it exits with status 0."""

    def __init__(self, path: str) -> None:
        self.path = path

    def check(self, fwdr: Any) -> float:
        env = dict(os.environ)
        env["FORWARDER_ADDR"] = fwdr.addr
        env["FORWARDER_URL"] = fwdr.url
        subprocess.run([self.path], env=env, check=True)
        return 0.0
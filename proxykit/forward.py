"""Forwarders: a dialer or chain of dialers with health status and priority."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from typing import Any, Callable
from urllib.parse import parse_qs

from proxykit.vmess_addr import _parse_port, _split_host_port

log = logging.getLogger(__name__)

StatusHandler = Callable[["Forwarder"], None]
DialerFromUrl = Callable[[str, Any], Any]

_UINT32_MAX = 0xFFFFFFFF


class DirectDialer:
    """Connects straight to the destination, optionally from a given address or interface."""

    addr = "DIRECT"

    def __init__(self, intface: str = "", dial_timeout: float = 0, relay_timeout: float = 0) -> None:
        self.intface = intface
        self.dial_timeout = dial_timeout
        self.relay_timeout = relay_timeout
        self._source_ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None
        self._device = ""
        if intface:
            try:
                self._source_ip = ipaddress.ip_address(intface)
            except ValueError:
                try:
                    socket.if_nametoindex(intface)
                except OSError as exc:
                    raise ValueError(f"invalid local address or interface: {intface}") from exc
                if not hasattr(socket, "SO_BINDTODEVICE"):
                    raise ValueError(f"binding to interface {intface} is not supported here")
                self._device = intface

    def _resolve(self, addr: str, socktype: int) -> list[tuple]:
        host, port = _split_host_port(addr)
        family = socket.AF_UNSPEC
        if self._source_ip is not None:
            family = socket.AF_INET6 if self._source_ip.version == 6 else socket.AF_INET
        return socket.getaddrinfo(host or None, _parse_port(port), family, socktype)

    def _socket(self, family: int, socktype: int) -> socket.socket:
        sock = socket.socket(family, socktype)
        try:
            if self._device:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, self._device.encode())
            if self._source_ip is not None:
                sock.bind((str(self._source_ip), 0))
        except OSError:
            sock.close()
            raise
        return sock

    def dial(self, network: str, addr: str) -> socket.socket:
        """Open a TCP connection to addr."""
        if not network.startswith("tcp"):
            raise ValueError(f"unsupported network: {network}")
        error: OSError | None = None
        for family, socktype, _, _, sockaddr in self._resolve(addr, socket.SOCK_STREAM):
            sock = self._socket(family, socktype)
            try:
                sock.settimeout(self.dial_timeout or None)
                sock.connect(sockaddr)
            except OSError as exc:
                sock.close()
                error = exc
                continue
            sock.settimeout(self.relay_timeout or None)
            return sock
        raise error or OSError(f"no address found for {addr}")

    def dial_udp(self, network: str, addr: str) -> socket.socket:
        """Open an unconnected UDP socket suitable for sending to addr."""
        family = self._resolve(addr, socket.SOCK_DGRAM)[0][0]
        sock = self._socket(family, socket.SOCK_DGRAM)
        if self._source_ip is None:
            try:
                sock.bind(("", 0))
            except OSError:
                sock.close()
                raise
        return sock


class Forwarder:
    """A dialer with priority, failure counting and an enabled/disabled status."""

    def __init__(self, dialer: Any, url: str = "", addr: str | None = None) -> None:
        self.dialer = dialer
        self.url = url
        if addr is None:
            addr = dialer.addr if dialer is not None else ""
        self.addr = addr
        self.priority = 0
        self.max_failures = 0
        self.failures = 0
        self.latency = 0.0
        self.intface = ""
        self._disabled = False
        self._handlers: list[StatusHandler] = []
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "enabled" if self.enabled else "disabled"
        return f"Forwarder({self.addr!r}, priority={self.priority}, {state})"

    def parse_option(self, option: str) -> None:
        """Apply "priority=N&interface=NAME" options; raise on a bad priority."""
        query = parse_qs(option, keep_blank_values=True)
        value = query.get("priority", [""])[0]
        priority, error = 0, None
        if value:
            if value.isdigit() and int(value) <= _UINT32_MAX:
                priority = int(value)
            else:
                error = ValueError(f"invalid priority: {value!r}")
        self.priority = priority
        self.intface = query.get("interface", [""])[0]
        if error is not None:
            raise error

    @property
    def enabled(self) -> bool:
        return not self._disabled

    def dial(self, network: str, addr: str) -> Any:
        """Dial through the dialer, counting a failure if it raises."""
        try:
            return self.dialer.dial(network, addr)
        except Exception:
            self.inc_failures()
            raise

    def dial_udp(self, network: str, addr: str) -> Any:
        return self.dialer.dial_udp(network, addr)

    def inc_failures(self) -> None:
        """Count one failure; disable the forwarder on reaching max_failures."""
        with self._lock:
            self.failures += 1
            failures = self.failures
        if self.max_failures == 0:
            return
        if failures == self.max_failures and self.enabled:
            log.info("[forwarder] %s(%d) reaches maxfailures: %d", self.addr, self.priority, self.max_failures)
            self.disable()

    def add_handler(self, handler: StatusHandler) -> None:
        """Call handler with this forwarder whenever its status changes."""
        self._handlers.append(handler)

    def _set_disabled(self, disabled: bool) -> bool:
        with self._lock:
            if self._disabled == disabled:
                return False
            self._disabled = disabled
            return True

    def enable(self) -> None:
        if self._set_disabled(False):
            for handler in list(self._handlers):
                handler(self)
        with self._lock:
            self.failures = 0

    def disable(self) -> None:
        if self._set_disabled(True):
            for handler in list(self._handlers):
                handler(self)


def forwarder_from_url(
    s: str,
    intface: str,
    dial_timeout: float,
    relay_timeout: float,
    dialer_from_url: DialerFromUrl,
) -> Forwarder:
    """Build a disabled forwarder from "URL[,URL...][#priority=N&interface=X]".

    Each URL wraps the previous dialer, starting from a direct one; the
    forwarder's addr lists the chain's distinct addresses. Raises the error of
    the last URL if that one could not be built.
    """
    forwarder = Forwarder(None, url=s)
    chain, *options = s.split("#")
    if options:
        try:
            forwarder.parse_option(options[0])
        except ValueError as exc:
            log.warning("[forwarder] %s: %s", s, exc)

    iface = intface
    if forwarder.intface and forwarder.intface != intface:
        iface = forwarder.intface

    dialer: Any = DirectDialer(iface, dial_timeout, relay_timeout)
    addrs: list[str] = []
    error: Exception | None = None
    for url in chain.split(","):
        try:
            dialer = dialer_from_url(url, dialer)
        except Exception as exc:
            error = exc
            continue
        error = None
        if not addrs or dialer.addr != addrs[-1]:
            addrs.append(dialer.addr)

    forwarder.dialer = dialer
    forwarder.addr = ",".join(addrs) if addrs else dialer.addr
    forwarder.disable()
    if error is not None:
        raise error
    return forwarder


def direct_forwarder(intface: str, dial_timeout: float, relay_timeout: float) -> Forwarder:
    """Return an enabled forwarder that connects directly."""
    dialer = DirectDialer(intface, dial_timeout, relay_timeout)
    return Forwarder(dialer, addr=dialer.addr)
"""A DHCP address pool handing out IPv4 leases to hardware addresses."""

from __future__ import annotations

import ipaddress
import random
import threading
import time
import weakref
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable


@dataclass
class _Item:
    ip: ipaddress.IPv4Address
    mac: bytes | None = None
    expire: float | None = None


def _ipv4(value: str | ipaddress.IPv4Address | ipaddress.IPv6Address) -> ipaddress.IPv4Address:
    ip = ipaddress.ip_address(str(value))
    if ip.is_unspecified or ip.version == 6:
        raise ValueError(
            "start ip or end ip is wrong/nil, please check your config, note only ipv4 is supported"
        )
    return ip


def _reap(pool_ref: weakref.ref, interval: float) -> None:
    while True:
        time.sleep(interval)
        pool = pool_ref()
        if pool is None:
            return
        pool.expire()
        del pool


class Pool:
    """The addresses from start to end inclusive, leased for a fixed duration.

    Static leases never expire. With a reap interval, a background thread
    frees expired leases periodically; otherwise call expire() yourself.
    """

    def __init__(
        self,
        lease: float | timedelta,
        start: str | ipaddress.IPv4Address,
        end: str | ipaddress.IPv4Address,
        *,
        reap_interval: float | None = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        first, last = int(_ipv4(start)), int(_ipv4(end))
        if last < first:
            raise ValueError("start ip larger than end ip")
        self.lease = lease.total_seconds() if isinstance(lease, timedelta) else float(lease)
        self._items = [_Item(ipaddress.IPv4Address(n)) for n in range(first, last + 1)]
        self._lock = threading.Lock()
        self._clock = clock
        if reap_interval:
            threading.Thread(
                target=_reap, args=(weakref.ref(self), reap_interval), daemon=True
            ).start()

    def lease_ip(self, mac: bytes) -> ipaddress.IPv4Address:
        """Return the address held by mac, or lease a free one to it."""
        mac = bytes(mac)
        with self._lock:
            for item in self._items:
                if item.mac == mac:
                    return item.ip

            idx = random.randrange(len(self._items))
            for item in (*self._items[idx:], *self._items):
                if item.mac is None:
                    item.mac = mac
                    item.expire = self._clock() + self.lease
                    return item.ip

        raise LookupError("no more ip can be leased")

    def lease_static_ip(self, mac: bytes, ip: str | ipaddress.IPv4Address) -> None:
        """Bind ip to mac permanently, if ip belongs to the pool."""
        ip = ipaddress.ip_address(str(ip))
        with self._lock:
            for item in self._items:
                if item.ip == ip:
                    item.mac = bytes(mac)
                    item.expire = None

    def release_ip(self, mac: bytes) -> None:
        """Free the dynamic leases held by mac; static leases stay."""
        mac = bytes(mac)
        with self._lock:
            for item in self._items:
                if item.expire is not None and item.mac == mac:
                    item.mac = None
                    item.expire = None

    def expire(self, now: float | None = None) -> None:
        """Free every dynamic lease that expired before now."""
        if now is None:
            now = self._clock()
        with self._lock:
            for item in self._items:
                if item.expire is not None and now > item.expire:
                    item.mac = None
                    item.expire = None
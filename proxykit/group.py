"""Groups of forwarders: scheduling strategies and health checking."""

from __future__ import annotations

import itertools
import logging
import os
import queue
import threading
import time
from datetime import timedelta
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

from proxykit.check import Checker, FileChecker, HttpChecker, TcpChecker
from proxykit.config import Strategy
from proxykit.forward import DialerFromUrl, Forwarder, direct_forwarder, forwarder_from_url
from proxykit.vmess_client import _fnv1a32

log = logging.getLogger(__name__)

CHECK_WAIT_TIMEOUT = 30.0
_MAX_WAIT = 640
_WAIT_STEP = 30


class _RateLimiter:
    """Lets at most `rate` callers through per second, spacing them evenly."""

    def __init__(self, rate: float) -> None:
        self._interval = 1.0 / rate
        self._next = 0.0
        self._lock = threading.Lock()

    def take(self) -> None:
        with self._lock:
            now = time.monotonic()
            delay = max(0.0, self._next - now)
            self._next = max(now, self._next) + self._interval
        if delay:
            time.sleep(delay)


class FwdrGroup:
    """Forwarders ordered by priority; picks one per connection by strategy."""

    def __init__(self, name: str, fwdrs: list[Forwarder], config: Strategy) -> None:
        self.name = name
        self.config = config
        self.fwdrs = sorted(fwdrs, key=lambda f: f.priority, reverse=True)
        self.avail: list[Forwarder] = []
        self.priority = 0
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._limiter = _RateLimiter(1)

        self._init()

        schedulers: dict[str, tuple[Callable[[str], Forwarder], str]] = {
            "rr": (self._schedule_rr, "round robin mode"),
            "ha": (self._schedule_ha, "high availability mode"),
            "lha": (self._schedule_lha, "latency based high availability mode"),
            "dh": (self._schedule_dh, "destination hashing mode"),
        }
        self._next: Callable[[str], Forwarder] = self._schedule_rr

        count = len(self.fwdrs)
        if count > 1:
            if config.strategy in schedulers:
                self._next, mode = schedulers[config.strategy]
                log.info("[strategy] %s: %d forwarders forward in %s.", name, count, mode)
            else:
                log.info(
                    "[strategy] %s: not supported forward mode '%s', use round robin mode for %d forwarders.",
                    name, config.strategy, count,
                )

        for fwdr in self.fwdrs:
            fwdr.add_handler(self.on_status_changed)

    def __repr__(self) -> str:
        return f"FwdrGroup({self.name!r}, {len(self.avail)} of {len(self.fwdrs)} available)"

    def dial(self, network: str, addr: str) -> tuple[Any, Forwarder]:
        """Connect to addr via the next forwarder; return (connection, forwarder)."""
        dialer = self.next_dialer(addr)
        return dialer.dial(network, addr), dialer

    def dial_udp(self, network: str, addr: str) -> tuple[Any, Forwarder]:
        """Open a packet connection to addr; return (connection, forwarder)."""
        dialer = self.next_dialer(addr)
        return dialer.dial_udp(network, addr), dialer

    def next_dialer(self, dst_addr: str) -> Forwarder:
        """Pick a forwarder for dst_addr; round robin over all if none is available."""
        with self._lock:
            if not self.avail:
                return self.fwdrs[next(self._counter) % len(self.fwdrs)]
            return self._next(dst_addr)

    def _init(self) -> None:
        for fwdr in self.fwdrs:
            if fwdr.enabled:
                self.priority = fwdr.priority
                break

        self.avail = [f for f in self.fwdrs if f.enabled and f.priority >= self.priority]
        if not self.avail:
            # check all forwarders when none is available
            self.priority = 0

    def on_status_changed(self, fwdr: Forwarder) -> None:
        """Update the available forwarders after fwdr was enabled or disabled."""
        with self._lock:
            if fwdr.enabled:
                if fwdr.priority == self.priority:
                    self.avail.append(fwdr)
                elif fwdr.priority > self.priority:
                    self._init()
                log.info(
                    "[group] %s: %s(%d) changed status from DISABLED to ENABLED (%d of %d currently enabled)",
                    self.name, fwdr.addr, fwdr.priority, len(self.avail), len(self.fwdrs),
                )
            else:
                for i, f in enumerate(self.avail):
                    if f is fwdr:
                        self.avail[i] = self.avail[-1]
                        self.avail.pop()
                        break
                log.info(
                    "[group] %s: %s(%d) changed status from ENABLED to DISABLED (%d of %d currently enabled)",
                    self.name, fwdr.addr, fwdr.priority, len(self.avail), len(self.fwdrs),
                )

            if not self.avail:
                self._init()

    def make_checker(self) -> Checker | None:
        """Build the checker described by the check setting, or None if checking is off."""
        check = self.config.check
        if "://" not in check:
            check += "://"
            self.config.check = check

        try:
            u = urlsplit(check)
        except ValueError as exc:
            log.warning("[group] %s: parse check config error: %s, disable health checking", self.name, exc)
            return None

        host = u.netloc.rpartition("@")[2]
        timeout = float(self.config.check_timeout)

        if u.scheme == "tcp":
            return TcpChecker(host, timeout)
        if u.scheme in ("http", "https"):
            expect = parse_qs(u.fragment).get("expect", [""])[0] or "HTTP"
            uri = u.path or "/"
            if u.query:
                uri += "?" + u.query
            return HttpChecker(host, uri, expect, timeout, u.scheme == "https")
        if u.scheme == "file":
            return FileChecker(host + u.path)

        log.warning(
            "[group] %s: unknown scheme in check config `%s`, disable health checking", self.name, check
        )
        return None

    def check(self) -> list[threading.Thread]:
        """Start a health-check thread per forwarder; return the threads started."""
        if len(self.fwdrs) == 1:
            log.info("[group] %s: only 1 forwarder found, disable health checking", self.name)
            return []

        checker = self.make_checker()
        if checker is None:
            return []

        log.info("[group] %s: using check config: %s", self.name, self.config.check)

        threads = []
        for fwdr in self.fwdrs:
            thread = threading.Thread(target=self._check_loop, args=(fwdr, checker), daemon=True)
            thread.start()
            threads.append(thread)
        return threads

    def _check_loop(self, fwdr: Forwarder, checker: Checker) -> None:
        wait = 0
        interval = float(self.config.check_interval)

        while True:
            time.sleep(interval * wait)

            # every forwarder is checked at least once
            if wait > 0 and fwdr.priority < self.priority:
                continue
            if fwdr.enabled and self.config.check_disabled_only:
                continue

            self._limiter.take()

            try:
                elapsed = check_forwarder(fwdr, checker, CHECK_WAIT_TIMEOUT)
            except NotImplementedError as exc:
                fwdr.max_failures = 0
                log.info("[check] %s: %s(%d), %s, stop checking", self.name, fwdr.addr, fwdr.priority, exc)
                fwdr.enable()
                log.info("[enabled] %s", fwdr.url)
                return
            except Exception as exc:
                wait += _WAIT_STEP
                if wait > _MAX_WAIT:
                    return
                log.info("[check] %s: %s(%d), FAILED. error: %s", self.name, fwdr.addr, fwdr.priority, exc)
                fwdr.disable()
                log.info("[disabled] %s ==> %s", fwdr.url, exc)
                continue

            wait = 1
            self.set_latency(fwdr, elapsed)
            log.info(
                "[check] %s: %s(%d), SUCCESS. Elapsed: %dms, Latency: %dms.",
                self.name, fwdr.addr, fwdr.priority, elapsed * 1000, fwdr.latency * 1000,
            )
            fwdr.enable()
            log.info("[enabled] %s", fwdr.url)

    def set_latency(self, fwdr: Forwarder, elapsed: float) -> None:
        """Record elapsed seconds, averaged over the configured number of samples."""
        latency = elapsed
        samples = self.config.check_latency_samples
        if samples > 1 and fwdr.latency > 0:
            latency = (fwdr.latency * (samples - 1) + elapsed) / samples
        fwdr.latency = latency

    def _schedule_rr(self, dst_addr: str) -> Forwarder:
        return self.avail[next(self._counter) % len(self.avail)]

    def _schedule_ha(self, dst_addr: str) -> Forwarder:
        return self.avail[0]

    def _schedule_lha(self, dst_addr: str) -> Forwarder:
        old = new = self.avail[0]
        lowest = old.latency
        for fwdr in self.avail:
            if fwdr.latency < lowest:
                lowest = fwdr.latency
                new = fwdr
        tolerance = self.config.check_tolerance / 1000.0
        if new.latency < old.latency - tolerance:
            return new
        return old

    def _schedule_dh(self, dst_addr: str) -> Forwarder:
        return self.avail[_fnv1a32(dst_addr.encode()) % len(self.avail)]


def new_fwdr_group(
    rule_path: str,
    forwards: list[str],
    strategy: Strategy,
    dialer_from_url: DialerFromUrl,
) -> FwdrGroup:
    """Build a group named after rule_path from forward URLs; direct if there are none."""
    fwdrs = []
    for chain in forwards:
        fwdr = forwarder_from_url(
            chain, strategy.intface, strategy.dial_timeout, strategy.relay_timeout, dialer_from_url
        )
        fwdr.max_failures = strategy.max_failures
        fwdrs.append(fwdr)

    if not fwdrs:
        fwdrs.append(direct_forwarder(strategy.intface, strategy.dial_timeout, strategy.relay_timeout))
        strategy.strategy = "rr"

    name = os.path.splitext(os.path.basename(rule_path))[0]
    return FwdrGroup(name, fwdrs, strategy)


def check_forwarder(fwdr: Forwarder, checker: Checker, timeout: float = CHECK_WAIT_TIMEOUT) -> float:
    """Run checker against fwdr, giving up after timeout seconds."""
    results: queue.Queue = queue.Queue(maxsize=1)

    def run() -> None:
        try:
            results.put((checker.check(fwdr), None))
        except Exception as exc:
            results.put((None, exc))

    threading.Thread(target=run, daemon=True).start()
    try:
        elapsed, error = results.get(timeout=timeout)
    except queue.Empty:
        raise TimeoutError("timed out when waiting for the forwarder") from None
    if error is not None:
        raise error
    return elapsed


def get_time_duration(seconds: Any) -> timedelta:
    """Convert a number of seconds to a timedelta; negatives and non-numbers give zero.

    Floats keep millisecond precision; integers are whole seconds.
    """
    if isinstance(seconds, bool):
        return timedelta(0)
    if isinstance(seconds, float):
        return timedelta(milliseconds=int(max(seconds * 1000, 0)))
    if isinstance(seconds, int):
        return timedelta(seconds=max(seconds, 0))
    return timedelta(0)
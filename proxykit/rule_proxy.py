"""A proxy that picks a forwarder group by destination domain, IP or network."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Any, Iterator

from proxykit.config import Config, Strategy
from proxykit.forward import DialerFromUrl, Forwarder
from proxykit.group import FwdrGroup, new_fwdr_group
from proxykit.vmess_addr import _split_host_port

log = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def _domain_suffixes(host: str) -> Iterator[str]:
    """Yield the top-level label first, then ever longer suffixes, ending with host."""
    i = len(host)
    while i != -1:
        i = host.rfind(".", 0, i)
        yield host[i + 1:]


class RuleProxy:
    """Routes each destination to the forwarder group of the first matching rule."""

    def __init__(
        self,
        main_forwarders: list[str],
        main_strategy: Strategy,
        rules: list[Config],
        dialer_from_url: DialerFromUrl,
    ) -> None:
        self.main = new_fwdr_group("main", main_forwarders, main_strategy, dialer_from_url)
        self.groups: list[FwdrGroup] = []
        self._domains: dict[str, FwdrGroup] = {}
        self._ips: dict[IPAddress, FwdrGroup] = {}
        self._cidrs: dict[IPNetwork, FwdrGroup] = {}
        self._lock = threading.Lock()

        for rule in rules:
            group = new_fwdr_group(rule.rule_path, rule.forward, rule.strategy, dialer_from_url)
            self.groups.append(group)

            for domain in rule.domain:
                self._domains[domain.lower()] = group

            for s in rule.ip:
                try:
                    self._ips[ipaddress.ip_address(s)] = group
                except ValueError as exc:
                    log.warning("[rule] parse ip error: %s", exc)

            for s in rule.cidr:
                try:
                    self._cidrs[ipaddress.ip_network(s, strict=False)] = group
                except ValueError as exc:
                    log.warning("[rule] parse cidr error: %s", exc)

        direct = new_fwdr_group("", [], main_strategy, dialer_from_url)
        self._domains["direct"] = direct

        # forwarders of the main group must themselves be reached directly
        if main_forwarders:
            for fwdr in self.main.fwdrs:
                first = fwdr.addr.split(",")[0]
                try:
                    host, _ = _split_host_port(first)
                except ValueError:
                    host = ""
                try:
                    ipaddress.ip_address(host)
                except ValueError:
                    self._domains[host.lower()] = direct

    def find_dialer(self, dst_addr: str) -> FwdrGroup:
        """Return the group whose rule matches dst_addr, or the main group."""
        try:
            host, _ = _split_host_port(dst_addr)
        except ValueError:
            return self.main

        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None

        with self._lock:
            if ip is not None:
                group = self._ips.get(ip)
                if group is not None:
                    return group
                for network, group in self._cidrs.items():
                    if ip in network:
                        return group

            for suffix in _domain_suffixes(host.lower()):
                group = self._domains.get(suffix)
                if group is not None:
                    return group

        return self.main

    def dial(self, network: str, addr: str) -> tuple[Any, Forwarder]:
        """Connect to addr through the matching group; return (connection, forwarder)."""
        return self.find_dialer(addr).dial(network, addr)

    def dial_udp(self, network: str, addr: str) -> tuple[Any, Forwarder]:
        """Open a packet connection to addr through the matching group."""
        return self.find_dialer(addr).dial_udp(network, addr)

    def next_dialer(self, dst_addr: str) -> Forwarder:
        """Return the forwarder the matching group would use for dst_addr."""
        return self.find_dialer(dst_addr).next_dialer(dst_addr)

    def record(self, dialer: Any, success: bool) -> None:
        """Count a failure against a forwarder, or re-enable it on success."""
        if isinstance(dialer, Forwarder):
            if not success:
                dialer.inc_failures()
                return
            dialer.enable()

    def add_domain_ip(self, domain: str, ip: str | IPAddress) -> None:
        """Route ip like the domain rule that matches domain, if any."""
        address = ipaddress.ip_address(str(ip))
        with self._lock:
            for suffix in _domain_suffixes(domain.lower()):
                group = self._domains.get(suffix)
                if group is not None:
                    self._ips[address] = group

    def check(self) -> list[threading.Thread]:
        """Start health checks in the main group and every rule group."""
        threads = self.main.check()
        for group in self.groups:
            threads.extend(group.check())
        return threads
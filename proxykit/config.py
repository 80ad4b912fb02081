"""Rule files: forwarders, strategy settings and the destinations they serve."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

DEFAULT_CHECK = "http://www.msftconnecttest.com/connecttest.txt#expect=200"

_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})


@dataclass
class Strategy:
    """How a group of forwarders is scheduled and health-checked."""

    strategy: str = "rr"
    check: str = DEFAULT_CHECK
    check_interval: int = 30
    check_timeout: int = 10
    check_tolerance: int = 0
    check_latency_samples: int = 10
    check_disabled_only: bool = False
    max_failures: int = 3
    dial_timeout: int = 3
    relay_timeout: int = 0
    intface: str = ""


# key -> (belongs to the strategy, attribute name, kind)
_OPTIONS: dict[str, tuple[bool, str, str]] = {
    "forward": (False, "forward", "uniq"),
    "strategy": (True, "strategy", "str"),
    "check": (True, "check", "str"),
    "checkinterval": (True, "check_interval", "int"),
    "checktimeout": (True, "check_timeout", "int"),
    "checklatencysamples": (True, "check_latency_samples", "int"),
    "checktolerance": (True, "check_tolerance", "int"),
    "checkdisabledonly": (True, "check_disabled_only", "bool"),
    "maxfailures": (True, "max_failures", "int"),
    "dialtimeout": (True, "dial_timeout", "int"),
    "relaytimeout": (True, "relay_timeout", "int"),
    "interface": (True, "intface", "str"),
    "dnsserver": (False, "dns_servers", "uniq"),
    "ipset": (False, "ipset", "str"),
    "domain": (False, "domain", "list"),
    "ip": (False, "ip", "list"),
    "cidr": (False, "cidr", "list"),
}


def _parse_bool(key: str, value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"invalid boolean value {value!r} for {key}")


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise ValueError(f"invalid value {value!r} for {key}") from None


@dataclass
class Config:
    """One rule file: its forwarders, their strategy and the matched destinations."""

    rule_path: str = ""
    forward: list[str] = field(default_factory=list)
    strategy: Strategy = field(default_factory=Strategy)
    dns_servers: list[str] = field(default_factory=list)
    ipset: str = ""
    domain: list[str] = field(default_factory=list)
    ip: list[str] = field(default_factory=list)
    cidr: list[str] = field(default_factory=list)

    @staticmethod
    def from_file(path: str | os.PathLike) -> Config:
        """Read a rule file of "key=value" lines; "#" starts a comment line."""
        config = Config(rule_path=os.fspath(path))
        with open(path, encoding="utf-8") as fh:
            for raw in fh:
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                key, sep, value = line.partition("=")
                key, value = key.strip(), value.strip()
                config._apply(key, value if sep else None)
        return config

    def _apply(self, key: str, value: str | None) -> None:
        try:
            on_strategy, attr, kind = _OPTIONS[key]
        except KeyError:
            raise ValueError(f"flag provided but not defined: -{key}") from None
        target: Any = self.strategy if on_strategy else self

        if value is None:
            if kind != "bool":
                raise ValueError(f"flag needs an argument: -{key}")
            setattr(target, attr, True)
            return

        if kind == "str":
            setattr(target, attr, value)
        elif kind == "int":
            setattr(target, attr, _parse_int(key, value))
        elif kind == "bool":
            setattr(target, attr, _parse_bool(key, value))
        else:
            items: list[str] = getattr(target, attr)
            if kind == "list" or value not in items:
                items.append(value)


def list_dir(dir_path: str, suffix: str) -> list[str]:
    """Return the files in dir_path whose names end with suffix, ignoring case."""
    suffix = suffix.lower()
    with os.scandir(dir_path) as entries:
        names = sorted(
            entry.name
            for entry in entries
            if not entry.is_dir() and entry.name.lower().endswith(suffix)
        )
    return [f"{dir_path}{os.sep}{name}" for name in names]
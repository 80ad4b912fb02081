"""Registry of named services started from "name,arg1,arg2,..." strings."""

from __future__ import annotations

from typing import Callable, Protocol


class Service(Protocol):
    def run(self) -> None: ...


Creator = Callable[..., Service]

_creators: dict[str, Creator] = {}


def register(name: str, creator: Creator) -> None:
    """Register a service creator under a case-insensitive name."""
    _creators[name.lower()] = creator


def new_service(s: str) -> Service:
    """Create the service named by the first comma-separated field of s.

    The remaining fields are passed to its creator as positional arguments.
    """
    name, *args = s.split(",")
    creator = _creators.get(name.lower())
    if creator is None:
        raise ValueError(f"unknown service name: '{name}'")
    return creator(*args)
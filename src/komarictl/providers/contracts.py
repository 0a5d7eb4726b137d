"""Capability contracts the lifecycle depends on.

The lifecycle never shells out itself; it talks to these interfaces so tests
can substitute in-memory fakes for the host's init system, package manager
and log source.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol


class ServiceSupervisor(Protocol):
    """Controls the managed service through the host init system."""

    def available(self) -> bool:
        """Return ``True`` when the init system can be driven on this host."""
        ...

    def install_unit(self, context: Mapping[str, object]) -> bool:
        """Write the service unit; return ``True`` when it changed."""
        ...

    def remove_unit(self) -> None:
        """Delete the service unit if present."""
        ...

    def reload(self) -> None:
        """Ask the init system to re-read unit files."""
        ...

    def enable(self) -> object: ...

    def disable(self) -> object: ...

    def start(self) -> object: ...

    def stop(self) -> object: ...

    def restart(self) -> object: ...

    def is_active(self) -> bool:
        """Return ``True`` when the service is running."""
        ...

    def status(self) -> str:
        """Return human-readable status output."""
        ...


class LogReader(Protocol):
    """Reads recent service log output."""

    def read(self, *, since: str | None = None) -> str:
        """Return log text written since *since*."""
        ...

    def tail(self, *, lines: int | None = None, follow: bool = False) -> str:
        """Return (or, when following, stream) the newest log lines."""
        ...


class PackageInstaller(Protocol):
    """Installs host packages providing required commands."""

    def ensure(self, command: str, package: str | None = None) -> bool:
        """Install *package* if *command* is missing; return ``True`` if installed now."""
        ...


__all__ = ["LogReader", "PackageInstaller", "ServiceSupervisor"]

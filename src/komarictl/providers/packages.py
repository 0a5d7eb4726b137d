"""Host package manager integration (apt, yum, apk)."""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from ..errors import HostEnvironmentError

LOGGER = logging.getLogger(__name__)

_INSTALL_COMMANDS: dict[str, tuple[tuple[str, ...], ...]] = {
    "apt": (("apt", "update"), ("apt", "install", "-y", "{package}")),
    "yum": (("yum", "install", "-y", "{package}"),),
    "apk": (("apk", "add", "{package}"),),
}


class PackageInstallError(HostEnvironmentError):
    """Raised when a package cannot be installed."""


@dataclass(slots=True)
class PackageManagerProvider:
    """Install missing host commands with the first supported package manager."""

    managers: Sequence[str] = ("apt", "yum", "apk")
    which: Callable[[str], str | None] = field(default=shutil.which, repr=False)

    def detect(self) -> str | None:
        """Return the first available package manager, if any."""
        for manager in self.managers:
            if manager in _INSTALL_COMMANDS and self.which(manager) is not None:
                return manager
        return None

    def ensure(self, command: str, package: str | None = None) -> bool:
        """Install *package* when *command* is not on ``PATH``."""
        if self.which(command) is not None:
            return False
        self.install(package or command)
        if self.which(command) is None:
            raise PackageInstallError(
                f"Installed package '{package or command}' but '{command}' is still missing."
            )
        return True

    def install(self, package: str) -> str:
        """Install *package* and return the package manager used."""
        manager = self.detect()
        if manager is None:
            supported = "/".join(self.managers)
            raise HostEnvironmentError(f"No supported package manager found ({supported}).")
        LOGGER.info("Installing %s with %s", package, manager)
        for template in _INSTALL_COMMANDS[manager]:
            args = [part.format(package=package) for part in template]
            result = self._run(args)
            if result.returncode != 0:
                message = (result.stderr or result.stdout or "no output").strip()
                raise PackageInstallError(
                    f"{' '.join(args)} failed (exit {result.returncode}): {message}"
                )
        return manager

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute a package manager command (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            list(args),
            capture_output=True,
            text=True,
            check=False,
        )


__all__ = ["PackageInstallError", "PackageManagerProvider"]

"""Provider interfaces for komarictl."""
from __future__ import annotations

from .contracts import LogReader, PackageInstaller, ServiceSupervisor
from .packages import PackageInstallError, PackageManagerProvider
from .systemd import SystemdError, SystemdLogReader, SystemdProvider

__all__ = [
    "LogReader",
    "PackageInstallError",
    "PackageInstaller",
    "PackageManagerProvider",
    "ServiceSupervisor",
    "SystemdError",
    "SystemdLogReader",
    "SystemdProvider",
]

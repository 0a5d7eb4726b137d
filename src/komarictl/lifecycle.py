"""Install, upgrade and uninstall the managed service binary.

:class:`LifecycleManager` is the only component that writes the binary and
its version record. Everything host-specific (init system, package manager,
journal) is reached through the capability contracts in
:mod:`komarictl.providers.contracts`.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import NoReturn

from .arch import detect_arch
from .backups import BackupError, BackupsRegistry, BinaryBackup
from .credentials import CredentialHarvester
from .download import ArtifactDownloader, commit_binary
from .errors import (
    KomariCtlError,
    NetworkError,
    StateError,
    SupervisorError,
    UpgradeFailedError,
)
from .logging import OperationScope
from .providers.contracts import LogReader, PackageInstaller, ServiceSupervisor
from .release import ReleaseDescriptor, ReleaseResolver
from .versions import VersionStore, normalize_tag, same_version

LOGGER = logging.getLogger(__name__)


class LifecycleStatus(Enum):
    """Outcome of a lifecycle operation."""

    INSTALLED = "installed"
    INSTALLED_MANUAL = "installed_manual"
    ALREADY_INSTALLED = "already_installed"
    UP_TO_DATE = "up_to_date"
    UPGRADED = "upgraded"
    UNINSTALLED = "uninstalled"
    NOT_INSTALLED = "not_installed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ServiceSettings:
    """How the managed service is launched."""

    name: str = "komari"
    description: str = "Komari Monitor Service"
    user: str = "root"
    listen_host: str = "0.0.0.0"  # noqa: S104
    default_port: int = 25774


@dataclass(frozen=True, slots=True)
class InstallLayout:
    """Filesystem locations owned by the lifecycle."""

    install_dir: Path
    data_dir: Path
    binary: Path


@dataclass(slots=True)
class LifecycleResult:
    """What an operation did, for reporting."""

    action: str
    status: LifecycleStatus
    version: str = ""
    previous_version: str = ""
    download_url: str = ""
    port: int | None = None
    credential: str | None = None
    manual_command: str | None = None
    backup: Path | None = None
    pruned: list[Path] = field(default_factory=list)
    install_dir_removed: bool = False
    changed: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary (the credential is never included)."""
        return {
            "action": self.action,
            "status": self.status.value,
            "version": self.version,
            "previous_version": self.previous_version,
            "download_url": self.download_url,
            "port": self.port,
            "manual_command": self.manual_command,
            "backup": str(self.backup) if self.backup else None,
            "pruned": [str(path) for path in self.pruned],
            "install_dir_removed": self.install_dir_removed,
            "changed": self.changed,
        }


def _step(op: OperationScope | None, name: str, *, status: str = "success", detail: str = "") -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


class LifecycleManager:
    """Drive the binary through install, upgrade and uninstall."""

    def __init__(
        self,
        *,
        layout: InstallLayout,
        service: ServiceSettings,
        versions: VersionStore,
        resolver: ReleaseResolver,
        downloader: ArtifactDownloader,
        supervisor: ServiceSupervisor,
        packages: PackageInstaller,
        backups: BackupsRegistry,
        harvester: CredentialHarvester | None = None,
        log_reader: LogReader | None = None,
        requirements: Sequence[tuple[str, str]] = (),
        backup_keep: int = 3,
        arch_detector: Callable[[], str] = detect_arch,
    ) -> None:
        """Wire the lifecycle to its collaborators."""
        self.layout = layout
        self.service = service
        self.versions = versions
        self.resolver = resolver
        self.downloader = downloader
        self.supervisor = supervisor
        self.packages = packages
        self.backups = backups
        self.harvester = harvester
        self.log_reader = log_reader
        self.requirements = list(requirements)
        self.backup_keep = backup_keep
        self.arch_detector = arch_detector

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def is_installed(self) -> bool:
        """Return ``True`` when a binary occupies the install path."""
        return self.layout.binary.exists()

    def exec_start(self, port: int) -> str:
        """Return the command line that runs the service on *port*."""
        return f"{self.layout.binary} server -l {self.service.listen_host}:{port}"

    def unit_context(self, port: int) -> dict[str, object]:
        """Return the template context for the service unit."""
        return {
            "service_name": self.service.name,
            "description": self.service.description,
            "exec_start": self.exec_start(port),
            "working_directory": str(self.layout.data_dir),
            "service_user": self.service.user,
        }

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------
    def install(
        self,
        *,
        choose_port: Callable[[], int] | None = None,
        descriptor: ReleaseDescriptor | None = None,
        op: OperationScope | None = None,
    ) -> LifecycleResult:
        """Download, register and start the service binary.

        Returns without touching anything when the binary already exists.
        """
        if self.is_installed():
            _step(op, "install.check", status="skipped", detail=f"{self.layout.binary} exists")
            return LifecycleResult(action="install", status=LifecycleStatus.ALREADY_INSTALLED)

        port = choose_port() if choose_port is not None else self.service.default_port
        _step(op, "install.port", detail=str(port))

        self.ensure_requirements(op)
        arch = self.arch_detector()
        _step(op, "install.arch", detail=arch)

        for directory in (self.layout.install_dir, self.layout.data_dir):
            directory.mkdir(parents=True, exist_ok=True)
        _step(op, "install.directories", detail=f"{self.layout.install_dir}, {self.layout.data_dir}")

        if descriptor is None:
            try:
                descriptor = self.resolver.resolve(arch)
            except NetworkError as exc:
                LOGGER.warning("Release resolution failed, using the latest/download URL: %s", exc)
                _step(op, "release.resolve", status="warning", detail=str(exc))
                descriptor = ReleaseDescriptor(
                    tag="",
                    download_url=self.resolver.feed.latest_download_url(arch),
                    source="latest-redirect",
                )
        if not descriptor.download_url:
            raise NetworkError("Download URL is empty; install cancelled.")
        _step(op, "release.resolve", detail=f"{descriptor.source} {descriptor.download_url}")

        staged = self.downloader.stage(
            descriptor.download_url,
            self.layout.install_dir,
            self.layout.binary.name,
        )
        _step(op, "binary.download", detail=descriptor.download_url)
        self._commit(staged)
        _step(op, "binary.commit", detail=str(self.layout.binary))

        version = ""
        if descriptor.tag:
            version = self.versions.set_local(descriptor.tag)
            _step(op, "version.record", detail=version)

        result = LifecycleResult(
            action="install",
            status=LifecycleStatus.INSTALLED,
            version=version,
            download_url=descriptor.download_url,
            port=port,
            changed=2 if version else 1,
        )

        if not self.supervisor.available():
            _step(op, "supervisor.detect", status="warning", detail="no supervisor")
            result.status = LifecycleStatus.INSTALLED_MANUAL
            result.manual_command = self.exec_start(port)
            return result

        self.supervisor.install_unit(self.unit_context(port))
        self.supervisor.reload()
        self.supervisor.enable()
        self.supervisor.start()
        _step(op, "supervisor.start", detail=self.service.name)
        result.changed += 1
        if not self.supervisor.is_active():
            raise SupervisorError(f"Service '{self.service.name}' failed to start.")

        if self.harvester is not None:
            result.credential = self.harvester.harvest()
            if result.credential is None:
                LOGGER.warning("Initial credential not found in service logs.")
                _step(op, "credential.harvest", status="warning", detail="not found")
            else:
                _step(op, "credential.harvest", detail="found")
        return result

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------
    def upgrade(
        self,
        *,
        descriptor: ReleaseDescriptor | None = None,
        op: OperationScope | None = None,
    ) -> LifecycleResult:
        """Replace the binary with the latest release, rolling back on download failure."""
        self.require_managed("upgrade")
        if descriptor is None:
            descriptor = self.resolver.resolve(self.arch_detector())
        _step(op, "release.resolve", detail=f"{descriptor.tag or '?'} {descriptor.download_url}")

        local = self.versions.get_local()
        if same_version(local, descriptor.tag):
            _step(op, "version.compare", status="skipped", detail=f"already at {local}")
            return LifecycleResult(
                action="upgrade",
                status=LifecycleStatus.UP_TO_DATE,
                version=normalize_tag(local),
                previous_version=normalize_tag(local),
            )
        if not descriptor.download_url:
            raise NetworkError("Download URL is empty; upgrade cancelled.")

        self.supervisor.stop()
        _step(op, "supervisor.stop", detail=self.service.name)

        backup: BinaryBackup | None = None
        try:
            backup = self.backups.create(self.layout.binary, version=local or None)
            _step(op, "backup.create", detail=str(backup.path))
        except BackupError as exc:
            LOGGER.warning("Continuing upgrade without a backup: %s", exc)
            _step(op, "backup.create", status="warning", detail=str(exc))

        try:
            staged = self.downloader.stage(
                descriptor.download_url,
                self.layout.install_dir,
                self.layout.binary.name,
            )
        except (KomariCtlError, OSError) as exc:
            _step(op, "binary.download", status="error", detail=str(exc))
            self._recover_from_failed_upgrade("download", exc, backup, op)

        try:
            self._commit(staged)
        except KomariCtlError as exc:
            _step(op, "binary.commit", status="error", detail=str(exc))
            self._recover_from_failed_upgrade("commit", exc, backup, op)
        _step(op, "binary.commit", detail=str(self.layout.binary))

        version = ""
        if descriptor.tag:
            version = self.versions.set_local(descriptor.tag)
            _step(op, "version.record", detail=version)
        elif self.versions.clear_local():
            # the old record no longer describes the binary
            _step(
                op,
                "version.record",
                status="warning",
                detail="release tag unknown; record removed",
            )

        self.supervisor.start()
        _step(op, "supervisor.start", detail=self.service.name)
        pruned = self._prune_backups(op)

        if not self.supervisor.is_active():
            raise SupervisorError(
                f"Service '{self.service.name}' is not active after upgrading to "
                f"{version or 'the latest release'}."
            )
        return LifecycleResult(
            action="upgrade",
            status=LifecycleStatus.UPGRADED,
            version=version,
            previous_version=normalize_tag(local),
            download_url=descriptor.download_url,
            backup=backup.path if backup else None,
            pruned=pruned,
            changed=3 if backup else 2,
        )

    def auto_upgrade_check(self, *, op: OperationScope | None = None) -> LifecycleResult:
        """Install when absent, upgrade when the remote tag differs, otherwise do nothing."""
        self.ensure_requirements(op)
        descriptor = self.resolver.resolve(self.arch_detector())
        if not self.is_installed():
            _step(op, "check.installed", status="info", detail="not installed")
            return self.install(descriptor=descriptor, op=op)

        local = self.versions.get_local()
        if same_version(local, descriptor.tag):
            _step(op, "version.compare", status="skipped", detail=f"already at {local}")
            return LifecycleResult(
                action="check",
                status=LifecycleStatus.UP_TO_DATE,
                version=normalize_tag(local),
                previous_version=normalize_tag(local),
            )
        _step(
            op,
            "version.compare",
            detail=f"{normalize_tag(local) or 'unknown'} -> {descriptor.tag or 'unknown'}",
        )
        return self.upgrade(descriptor=descriptor, op=op)

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------
    def uninstall(
        self,
        *,
        confirm: Callable[[], bool] | None = None,
        op: OperationScope | None = None,
    ) -> LifecycleResult:
        """Remove the service unit and binary, leaving data files in place."""
        if not self.is_installed():
            return LifecycleResult(action="uninstall", status=LifecycleStatus.NOT_INSTALLED)
        if confirm is not None and not confirm():
            _step(op, "uninstall.confirm", status="skipped", detail="declined")
            return LifecycleResult(action="uninstall", status=LifecycleStatus.CANCELLED)

        changed = 0
        if self.supervisor.available():
            for name, action in (
                ("supervisor.stop", self.supervisor.stop),
                ("supervisor.disable", self.supervisor.disable),
            ):
                try:
                    action()
                    _step(op, name, detail=self.service.name)
                except SupervisorError as exc:
                    _step(op, name, status="warning", detail=str(exc))
            self.supervisor.remove_unit()
            try:
                self.supervisor.reload()
            except SupervisorError as exc:
                _step(op, "supervisor.reload", status="warning", detail=str(exc))
            changed += 1

        self.layout.binary.unlink(missing_ok=True)
        changed += 1
        _step(op, "binary.remove", detail=str(self.layout.binary))

        removed = False
        try:
            self.layout.install_dir.rmdir()
            removed = True
        except OSError:
            LOGGER.info("Install directory %s is not empty; leaving it.", self.layout.install_dir)
        _step(op, "install_dir.remove", status="success" if removed else "skipped")
        return LifecycleResult(
            action="uninstall",
            status=LifecycleStatus.UNINSTALLED,
            install_dir_removed=removed,
            changed=changed,
        )

    # ------------------------------------------------------------------
    # Service helpers
    # ------------------------------------------------------------------
    def status(self) -> str:
        """Return the supervisor's status report."""
        self.require_managed("status")
        return self.supervisor.status()

    def restart(self) -> None:
        """Restart the service and verify it came back."""
        self.require_managed("restart")
        self.supervisor.restart()
        if not self.supervisor.is_active():
            raise SupervisorError(f"Service '{self.service.name}' failed to restart.")

    def stop(self) -> None:
        """Stop the service."""
        self.require_managed("stop")
        self.supervisor.stop()

    def logs(self, *, lines: int | None = 50, follow: bool = False) -> str:
        """Return recent service log lines (following streams to the terminal)."""
        self.require_managed("show logs")
        if self.log_reader is None:
            raise StateError("Cannot show logs: no log source configured.")
        return self.log_reader.tail(lines=lines, follow=follow)

    def require_managed(self, action: str) -> None:
        """Fail with :class:`StateError` unless installed and supervised."""
        if not self.is_installed():
            raise StateError(f"Cannot {action}: {self.layout.binary} is not installed.")
        if not self.supervisor.available():
            raise StateError(f"Cannot {action}: no service supervisor detected.")

    def ensure_requirements(self, op: OperationScope | None = None) -> None:
        """Install missing host commands."""
        for command, package in self.requirements:
            if self.packages.ensure(command, package):
                _step(op, "dependencies.install", detail=package)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _commit(self, staged: Path) -> None:
        try:
            commit_binary(staged, self.layout.binary)
        except OSError as exc:
            staged.unlink(missing_ok=True)
            raise KomariCtlError(f"Failed to move new binary into place: {exc}") from exc

    def _recover_from_failed_upgrade(
        self,
        stage: str,
        error: Exception,
        backup: BinaryBackup | None,
        op: OperationScope | None,
    ) -> NoReturn:
        """Put back the backup taken by this upgrade, restart and raise.

        Older backups are never used: the live binary is only replaced by an
        atomic rename, so without this run's backup it is left as it is.
        """
        restored = False
        if backup is None:
            LOGGER.error("No backup was taken; the previous binary cannot be restored.")
            _step(op, "backup.restore", status="error", detail="no backup available")
        else:
            try:
                self.backups.restore(backup, self.layout.binary)
                restored = True
                _step(op, "backup.restore", detail=str(backup.path))
            except BackupError as exc:
                LOGGER.error("Restoring %s failed: %s", backup.path, exc)
                _step(op, "backup.restore", status="error", detail=str(exc))

        try:
            self.supervisor.start()
            _step(op, "supervisor.start", detail=self.service.name)
        except SupervisorError as exc:
            _step(op, "supervisor.start", status="error", detail=str(exc))

        if restored:
            message = f"Upgrade {stage} failed; restored previous binary: {error}"
        else:
            message = f"Upgrade {stage} failed and no backup was restored: {error}"
        raise UpgradeFailedError(
            message,
            restored=restored,
            backup=str(backup.path) if backup else None,
        ) from error

    def _prune_backups(self, op: OperationScope | None) -> list[Path]:
        try:
            removed = self.backups.prune(self.backup_keep)
        except BackupError as exc:
            _step(op, "backup.prune", status="warning", detail=str(exc))
            return []
        if removed:
            _step(op, "backup.prune", detail=", ".join(str(item.path) for item in removed))
        return [item.path for item in removed]


__all__ = [
    "InstallLayout",
    "LifecycleManager",
    "LifecycleResult",
    "LifecycleStatus",
    "ServiceSettings",
]

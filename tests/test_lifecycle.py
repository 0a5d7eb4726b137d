"""Lifecycle state machine tests against in-memory host capabilities."""
from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from fakes import FakeDownloader, FakeResolver, FakeSupervisor, Harness
from komarictl.backups import BackupError
from komarictl.errors import NetworkError, StateError, SupervisorError, UpgradeFailedError
from komarictl.lifecycle import LifecycleStatus
from komarictl.logging import OperationScope
from komarictl.release import ReleaseDescriptor


def _tree(harness: Harness) -> dict[str, bytes]:
    """Snapshot every file under the install directory."""
    if not harness.install_dir.exists():
        return {}
    return {
        str(path.relative_to(harness.install_dir)): path.read_bytes()
        for path in sorted(harness.install_dir.rglob("*"))
        if path.is_file()
    }


# ----------------------------------------------------------------------
# install
# ----------------------------------------------------------------------
def test_install_fresh_host_downloads_registers_and_harvests(harness: Harness) -> None:
    """A fresh install commits the binary, records the tag and starts the unit."""
    manager = harness.manager()
    op = OperationScope("install")

    result = manager.install(choose_port=lambda: 26000, op=op)

    assert result.status is LifecycleStatus.INSTALLED
    assert result.version == "1.2.0"
    assert result.port == 26000
    assert result.credential == "Username: admin , Password: s3cret"
    assert harness.binary.read_bytes() == b"new-binary"
    assert os.access(harness.binary, os.X_OK)
    assert harness.record.read_text(encoding="utf-8") == "1.2.0\n"
    assert harness.data_dir.is_dir()
    assert harness.supervisor.calls == ["install_unit", "reload", "enable", "start", "is_active"]
    context = harness.supervisor.unit_context
    assert context is not None
    assert context["exec_start"] == f"{harness.binary} server -l 0.0.0.0:26000"
    assert context["working_directory"] == str(harness.data_dir)
    assert harness.packages.ensured == [("curl", "curl")]
    assert not list(harness.install_dir.glob(".komari.download-*"))
    assert any(step["name"] == "binary.commit" for step in op.steps)


def test_install_when_already_installed_is_a_no_op(harness: Harness) -> None:
    """Installing over an existing binary changes nothing and asks for nothing."""
    harness.seed_install()
    before = _tree(harness)
    manager = harness.manager()

    def chooser() -> int:
        raise AssertionError("port must not be requested")

    result = manager.install(choose_port=chooser)

    assert result.status is LifecycleStatus.ALREADY_INSTALLED
    assert _tree(harness) == before
    assert harness.supervisor.calls == []
    assert harness.resolver.calls == []
    assert harness.downloader.urls == []
    assert harness.packages.ensured == []


def test_install_uses_default_port_without_chooser(harness: Harness) -> None:
    """Non-interactive installs use the configured default port."""
    result = harness.manager().install()

    assert result.port == 25774
    assert harness.supervisor.unit_context is not None
    assert str(harness.supervisor.unit_context["exec_start"]).endswith(":25774")


def test_install_without_supervisor_reports_manual_command(harness: Harness) -> None:
    """Hosts without systemd get the binary plus instructions to run it."""
    harness.supervisor = FakeSupervisor(available=False)
    result = harness.manager().install()

    assert result.status is LifecycleStatus.INSTALLED_MANUAL
    assert result.manual_command == f"{harness.binary} server -l 0.0.0.0:25774"
    assert harness.binary.exists()
    assert harness.supervisor.calls == []


def test_install_falls_back_to_latest_redirect_when_feed_fails(harness: Harness) -> None:
    """A failed resolution degrades to the latest/download URL with no tag."""
    harness.resolver = FakeResolver(error=NetworkError("feed down"))
    result = harness.manager().install()

    expected = (
        "https://github.com/komari-monitor/komari/releases/latest/download/komari-linux-amd64"
    )
    assert harness.downloader.urls == [expected]
    assert result.version == ""
    assert harness.binary.exists()
    assert not harness.record.exists()


def test_install_rejects_empty_download_url(harness: Harness) -> None:
    """An empty download URL aborts before anything is downloaded."""
    harness.resolver = FakeResolver(ReleaseDescriptor(tag="1.2.0", download_url=""))

    with pytest.raises(NetworkError):
        harness.manager().install()

    assert harness.downloader.urls == []
    assert not harness.binary.exists()


def test_install_download_failure_leaves_no_binary(harness: Harness) -> None:
    """A failed download aborts without writing the binary or version."""
    harness.downloader = FakeDownloader(fail=True)

    with pytest.raises(NetworkError):
        harness.manager().install()

    assert not harness.binary.exists()
    assert not harness.record.exists()
    assert harness.supervisor.calls == []


def test_install_reports_supervisor_error_when_service_inactive(harness: Harness) -> None:
    """A unit that never becomes active is a SupervisorError and skips harvesting."""
    harness.supervisor = FakeSupervisor(active=False)

    with pytest.raises(SupervisorError):
        harness.manager().install()

    assert harness.binary.exists()
    assert harness.logs.reads == 0


def test_install_without_credential_in_logs_is_not_fatal(harness: Harness) -> None:
    """A missing credential is reported as None."""
    clock = iter([0.0, 0.5, 2.0])
    harness.logs.snapshots = ["starting up"]
    harness.harvester.clock = lambda: next(clock)

    result = harness.manager().install()

    assert result.status is LifecycleStatus.INSTALLED
    assert result.credential is None


# ----------------------------------------------------------------------
# upgrade
# ----------------------------------------------------------------------
def test_upgrade_same_version_performs_no_mutation(harness: Harness) -> None:
    """Equal local and remote tags short-circuit without touching anything."""
    harness.seed_install(version="1.2.0")
    harness.resolver = FakeResolver(
        ReleaseDescriptor(tag="1.2.0", download_url="https://example.invalid/k")
    )
    before = _tree(harness)

    result = harness.manager().upgrade()

    assert result.status is LifecycleStatus.UP_TO_DATE
    assert _tree(harness) == before
    assert harness.supervisor.mutations() == []
    assert harness.downloader.urls == []
    assert harness.backups.backups() == []


def test_upgrade_replaces_binary_and_records_version(harness: Harness) -> None:
    """A successful upgrade swaps the binary, records the tag and keeps a backup."""
    harness.seed_install(content=b"old-binary", version="1.1.0")

    result = harness.manager().upgrade()

    assert result.status is LifecycleStatus.UPGRADED
    assert result.previous_version == "1.1.0"
    assert result.version == "1.2.0"
    assert harness.binary.read_bytes() == b"new-binary"
    assert harness.record.read_text(encoding="utf-8") == "1.2.0\n"
    assert harness.supervisor.calls == ["stop", "start", "is_active"]
    backups = harness.backups.backups()
    assert len(backups) == 1
    assert backups[0].path.read_bytes() == b"old-binary"
    assert backups[0].version == "1.1.0"
    assert result.backup == backups[0].path


def test_upgrade_download_failure_restores_backup_and_restarts(harness: Harness) -> None:
    """With a backup available the previous binary comes back byte-for-byte."""
    harness.seed_install(content=b"\x7fELF-previous-build", version="1.1.0")
    harness.downloader = FakeDownloader(fail=True)

    with pytest.raises(UpgradeFailedError) as excinfo:
        harness.manager().upgrade()

    assert excinfo.value.restored is True
    assert excinfo.value.severity == "error"
    assert harness.binary.read_bytes() == b"\x7fELF-previous-build"
    assert harness.supervisor.calls[0] == "stop"
    assert harness.supervisor.calls[-1] == "start"
    assert harness.record.read_text(encoding="utf-8") == "1.1.0\n"
    assert harness.backups.backups() == []


def test_upgrade_download_failure_without_backup_is_critical(
    harness: Harness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Without a backup nothing is restored and the failure is critical."""
    harness.seed_install(version="1.1.0")
    harness.downloader = FakeDownloader(fail=True)

    def refuse(*args: object, **kwargs: object) -> None:
        raise BackupError("disk full")

    monkeypatch.setattr(type(harness.backups), "create", refuse)
    restores: list[object] = []
    monkeypatch.setattr(
        type(harness.backups),
        "restore",
        lambda self, backup, destination: restores.append(backup),
    )

    with pytest.raises(UpgradeFailedError) as excinfo:
        harness.manager().upgrade()

    assert excinfo.value.restored is False
    assert excinfo.value.backup is None
    assert excinfo.value.severity == "critical"
    assert restores == []


def test_upgrade_failure_never_restores_an_older_backup(
    harness: Harness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Backups left over from earlier upgrades are not put back in place."""
    harness.seed_install(content=b"ancient-1.0", version="1.0.0")
    older = harness.backups.create(harness.binary, version="1.0.0")
    harness.seed_install(content=b"current-1.1", version="1.1.0")
    harness.downloader = FakeDownloader(fail=True)

    def refuse(*args: object, **kwargs: object) -> None:
        raise BackupError("disk full")

    monkeypatch.setattr(type(harness.backups), "create", refuse)

    with pytest.raises(UpgradeFailedError) as excinfo:
        harness.manager().upgrade()

    assert excinfo.value.restored is False
    assert harness.binary.read_bytes() == b"current-1.1"
    assert older.path.read_bytes() == b"ancient-1.0"
    assert harness.supervisor.calls[-1] == "start"


class _DiskFullDownloader(FakeDownloader):
    def stage(self, url: str, directory: Path, name: str) -> Path:
        self.urls.append(url)
        raise OSError(28, "No space left on device")


def test_upgrade_staging_os_error_restores_and_restarts(harness: Harness) -> None:
    """A local write failure while staging is rolled back like a network one."""
    harness.seed_install(content=b"\x7fELF-previous-build", version="1.1.0")
    harness.downloader = _DiskFullDownloader()

    with pytest.raises(UpgradeFailedError) as excinfo:
        harness.manager().upgrade()

    assert excinfo.value.restored is True
    assert "No space left on device" in str(excinfo.value)
    assert harness.binary.read_bytes() == b"\x7fELF-previous-build"
    assert harness.supervisor.calls == ["stop", "start"]
    assert harness.record.read_text(encoding="utf-8") == "1.1.0\n"


def test_upgrade_commit_failure_restores_and_restarts(
    harness: Harness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed rename onto the live path restarts the service with the old binary."""
    harness.seed_install(content=b"\x7fELF-previous-build", version="1.1.0")

    def deny(staged: Path, destination: Path, *, mode: int = 0o755) -> None:
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr("komarictl.lifecycle.commit_binary", deny)

    with pytest.raises(UpgradeFailedError) as excinfo:
        harness.manager().upgrade()

    assert excinfo.value.restored is True
    assert "commit" in str(excinfo.value)
    assert harness.binary.read_bytes() == b"\x7fELF-previous-build"
    assert harness.supervisor.calls == ["stop", "start"]
    assert not list(harness.install_dir.glob(".komari.download-*"))


def test_upgrade_without_tag_drops_stale_record(harness: Harness) -> None:
    """An untagged release replaces the binary and removes the old record."""
    harness.seed_install(content=b"old-binary", version="1.1.0")
    harness.resolver = FakeResolver(
        ReleaseDescriptor(tag="", download_url="https://example.invalid/latest/komari-linux-amd64")
    )

    result = harness.manager().upgrade()

    assert result.status is LifecycleStatus.UPGRADED
    assert result.version == ""
    assert harness.binary.read_bytes() == b"new-binary"
    assert not harness.record.exists()


def test_upgrade_requires_installed_binary(harness: Harness) -> None:
    """Upgrading a host without the binary is a state error."""
    with pytest.raises(StateError):
        harness.manager().upgrade()
    assert harness.resolver.calls == []


def test_upgrade_requires_supervisor(harness: Harness) -> None:
    """Upgrading without a supervisor is a state error."""
    harness.seed_install()
    harness.supervisor = FakeSupervisor(available=False)

    with pytest.raises(StateError):
        harness.manager().upgrade()


def test_upgrade_aborts_when_resolution_fails(harness: Harness) -> None:
    """A feed failure aborts the upgrade before the service is stopped."""
    harness.seed_install()
    harness.resolver = FakeResolver(error=NetworkError("feed down"))

    with pytest.raises(NetworkError):
        harness.manager().upgrade()
    assert harness.supervisor.calls == []


def test_upgrade_reports_inactive_service_without_rollback(harness: Harness) -> None:
    """A post-upgrade health failure is reported but the new binary stays."""
    harness.seed_install(version="1.1.0")
    harness.supervisor = FakeSupervisor(active=False)

    with pytest.raises(SupervisorError):
        harness.manager().upgrade()

    assert harness.binary.read_bytes() == b"new-binary"
    assert harness.record.read_text(encoding="utf-8") == "1.2.0\n"


def test_upgrade_prunes_backups_beyond_retention(harness: Harness) -> None:
    """Only the newest backups survive a successful upgrade."""
    harness.seed_install(version="1.1.0")
    start = datetime(2026, 1, 1, tzinfo=UTC)
    for offset in range(3):
        harness.backups.create(harness.binary, now=start + timedelta(days=offset))
    oldest = harness.backups.backups()[0].path

    result = harness.manager(backup_keep=3).upgrade()

    remaining = harness.backups.backups()
    assert len(remaining) == 3
    assert oldest not in [backup.path for backup in remaining]
    assert result.pruned == [oldest]
    assert not oldest.exists()


# ----------------------------------------------------------------------
# auto upgrade check
# ----------------------------------------------------------------------
def test_auto_upgrade_check_installs_when_missing(harness: Harness) -> None:
    """The unattended check installs with defaults, resolving only once."""
    result = harness.manager().auto_upgrade_check()

    assert result.action == "install"
    assert result.status is LifecycleStatus.INSTALLED
    assert result.port == 25774
    assert harness.resolver.calls == ["amd64"]


def test_auto_upgrade_check_is_silent_when_current(harness: Harness) -> None:
    """Matching versions leave the installation untouched."""
    harness.seed_install(version="v1.2.0")

    result = harness.manager().auto_upgrade_check()

    assert result.status is LifecycleStatus.UP_TO_DATE
    assert harness.supervisor.mutations() == []


def test_auto_upgrade_check_upgrades_on_mismatch(harness: Harness) -> None:
    """A different remote tag triggers an upgrade using the same descriptor."""
    harness.seed_install(version="1.1.0")

    result = harness.manager().auto_upgrade_check()

    assert result.status is LifecycleStatus.UPGRADED
    assert harness.resolver.calls == ["amd64"]


# ----------------------------------------------------------------------
# uninstall
# ----------------------------------------------------------------------
def test_uninstall_removes_unit_and_binary_but_keeps_record(harness: Harness) -> None:
    """The version record keeps the install directory in place."""
    harness.seed_install(version="1.2.0")

    result = harness.manager().uninstall()

    assert result.status is LifecycleStatus.UNINSTALLED
    assert not harness.binary.exists()
    assert harness.install_dir.is_dir()
    assert result.install_dir_removed is False
    assert harness.supervisor.calls == ["stop", "disable", "remove_unit", "reload"]


def test_uninstall_removes_empty_install_dir(harness: Harness) -> None:
    """Without other files the install directory is removed too."""
    harness.seed_install(version=None)

    result = harness.manager().uninstall()

    assert result.install_dir_removed is True
    assert not harness.install_dir.exists()


def test_uninstall_tolerates_stop_failure(harness: Harness) -> None:
    """A unit that fails to stop is still disabled and removed."""
    harness.seed_install()
    harness.supervisor.fail_on = {"stop"}

    harness.manager().uninstall()

    assert "remove_unit" in harness.supervisor.calls
    assert not harness.binary.exists()


def test_uninstall_not_installed_and_declined(harness: Harness) -> None:
    """Missing binaries and declined confirmations change nothing."""
    manager = harness.manager()
    assert manager.uninstall().status is LifecycleStatus.NOT_INSTALLED

    harness.seed_install()
    result = manager.uninstall(confirm=lambda: False)

    assert result.status is LifecycleStatus.CANCELLED
    assert harness.binary.exists()
    assert harness.supervisor.calls == []


# ----------------------------------------------------------------------
# service helpers
# ----------------------------------------------------------------------
def test_service_helpers_require_install(harness: Harness) -> None:
    """Status, restart, stop and logs refuse to run before install."""
    manager = harness.manager()
    for action in (manager.status, manager.restart, manager.stop, manager.logs):
        with pytest.raises(StateError):
            action()


def test_restart_verifies_active_state(harness: Harness) -> None:
    """Restart raises when the unit does not come back."""
    harness.seed_install()
    harness.supervisor.active = False

    with pytest.raises(SupervisorError):
        harness.manager().restart()
    assert harness.supervisor.calls == ["restart", "is_active"]


def test_logs_passes_through_to_log_reader(harness: Harness) -> None:
    """Log tailing is delegated to the configured reader."""
    harness.seed_install()

    output = harness.manager().logs(lines=20, follow=False)

    assert output == "line one\nline two"
    assert harness.logs.tail_calls == [(20, False)]

"""Tests for the systemd provider."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from komarictl.providers import systemd as systemd_module
from komarictl.providers.systemd import SystemdError, SystemdLogReader, SystemdProvider
from komarictl.templates import TemplateEngine


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class Recorder:
    """Capture subprocess invocations and replay canned results."""

    def __init__(self, result: DummyResult | None = None) -> None:
        self.calls: list[tuple[list[str], dict[str, Any]]] = []
        self.result = result or DummyResult()

    def __call__(self, args: Sequence[str], **kwargs: Any) -> DummyResult:
        self.calls.append((list(args), kwargs))
        return self.result


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider writing units under the temporary path."""
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        service_name="komari",
        systemd_dir=tmp_path / "systemd",
    )


def _context() -> dict[str, object]:
    return {
        "service_name": "komari",
        "description": "Komari Monitor Service",
        "exec_start": "/opt/komari/komari server -l 0.0.0.0:25774",
        "working_directory": "/opt/komari",
        "service_user": "root",
    }


def test_install_unit_renders_service_file(provider: SystemdProvider) -> None:
    """The unit carries the start command, working directory and restart policy."""
    assert provider.install_unit(_context()) is True

    text = provider.unit_path.read_text(encoding="utf-8")
    assert provider.unit_path.name == "komari.service"
    assert "ExecStart=/opt/komari/komari server -l 0.0.0.0:25774" in text
    assert "WorkingDirectory=/opt/komari" in text
    assert "Restart=always" in text
    assert "User=root" in text
    assert "WantedBy=multi-user.target" in text
    # Rendering the same context again is a no-op.
    assert provider.install_unit(_context()) is False


def test_remove_unit_is_idempotent(provider: SystemdProvider) -> None:
    """Removing a missing unit does not raise."""
    provider.install_unit(_context())
    provider.remove_unit()
    provider.remove_unit()
    assert not provider.unit_path.exists()


def test_lifecycle_commands_target_unit(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Start/stop/enable/disable/restart pass the unit name to systemctl."""
    recorder = Recorder()
    monkeypatch.setattr(systemd_module.subprocess, "run", recorder)

    provider.reload()
    provider.enable()
    provider.start()
    provider.restart()
    provider.stop()
    provider.disable()

    assert [call[0] for call in recorder.calls] == [
        ["systemctl", "daemon-reload"],
        ["systemctl", "enable", "komari.service"],
        ["systemctl", "start", "komari.service"],
        ["systemctl", "restart", "komari.service"],
        ["systemctl", "stop", "komari.service"],
        ["systemctl", "disable", "komari.service"],
    ]


def test_is_active_uses_quiet_check(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """``is-active --quiet`` exit status decides activity without raising."""
    recorder = Recorder(DummyResult(returncode=3))
    monkeypatch.setattr(systemd_module.subprocess, "run", recorder)

    assert provider.is_active() is False
    assert recorder.calls[0][0] == ["systemctl", "is-active", "--quiet", "komari.service"]


def test_failed_command_raises_systemd_error(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Non-zero exits on checked commands surface stderr."""
    recorder = Recorder(DummyResult(returncode=1, stderr="Unit komari.service not found."))
    monkeypatch.setattr(systemd_module.subprocess, "run", recorder)

    with pytest.raises(SystemdError, match="not found"):
        provider.start()


def test_missing_binary_raises_systemd_error(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """A missing systemctl executable is a SystemdError."""

    def missing(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(systemd_module.subprocess, "run", missing)

    with pytest.raises(SystemdError):
        provider.stop()


def test_status_returns_output(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Status output is returned even for inactive units."""
    recorder = Recorder(DummyResult(returncode=3, stdout="Active: inactive (dead)\n"))
    monkeypatch.setattr(systemd_module.subprocess, "run", recorder)

    assert provider.status() == "Active: inactive (dead)"
    assert recorder.calls[0][0] == [
        "systemctl",
        "status",
        "komari.service",
        "--no-pager",
        "-l",
    ]


def test_log_reader_queries_journal(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """The log reader passes ``--since`` and ``--lines`` to journalctl."""
    recorder = Recorder(DummyResult(stdout="admin account created. Username: admin\n"))
    monkeypatch.setattr(systemd_module.subprocess, "run", recorder)
    reader = SystemdLogReader(provider)

    assert "admin account created." in reader.read(since="1 minute ago")
    reader.tail(lines=20)

    assert recorder.calls[0][0] == [
        "journalctl",
        "--unit",
        "komari",
        "--no-pager",
        "--since",
        "1 minute ago",
    ]
    assert recorder.calls[1][0][-2:] == ["--lines", "20"]
    assert recorder.calls[1][1]["capture_output"] is True


def test_follow_streams_to_terminal(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Following logs does not capture output."""
    recorder = Recorder(DummyResult(stdout=None))  # type: ignore[arg-type]
    monkeypatch.setattr(systemd_module.subprocess, "run", recorder)

    assert SystemdLogReader(provider).tail(lines=50, follow=True) == ""
    args, kwargs = recorder.calls[0]
    assert args[-1] == "--follow"
    assert kwargs["capture_output"] is False

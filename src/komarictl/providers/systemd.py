"""Systemd provider for managing the service unit."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import SupervisorError
from ..templates import TemplateEngine


class SystemdError(SupervisorError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage the systemd service unit for the managed binary."""

    templates: TemplateEngine
    service_name: str = "komari"
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    @property
    def unit_name(self) -> str:
        """Return the systemd unit name."""
        return f"{self.service_name}.service"

    @property
    def unit_path(self) -> Path:
        """Return the full path for the unit file."""
        return self.systemd_dir / self.unit_name

    def available(self) -> bool:
        """Return ``True`` when ``systemctl`` can be found."""
        return shutil.which(self.systemctl_bin) is not None

    def install_unit(self, context: Mapping[str, object]) -> bool:
        """Render the unit file using *context*."""
        return self.templates.render_to_path(
            "systemd/service.j2",
            self.unit_path,
            context,
            mode=0o644,
        )

    def remove_unit(self) -> None:
        """Remove the unit file."""
        self.unit_path.unlink(missing_ok=True)

    def reload(self) -> None:
        """Run ``systemctl daemon-reload``."""
        self._systemctl("daemon-reload")

    def enable(self) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit_name)

    def disable(self) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", self.unit_name)

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit_name)

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit_name)

    def restart(self) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", self.unit_name)

    def is_active(self) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the unit running."""
        result = self._systemctl("is-active", self.unit_name, check=False, quiet=True)
        return result.returncode == 0

    def status(self) -> str:
        """Return the status output for the unit."""
        result = self._systemctl("status", self.unit_name, check=False, extra=("--no-pager", "-l"))
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        return (stdout or stderr).rstrip()

    def logs(
        self,
        *,
        lines: int | None = None,
        since: str | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for the unit (streams to the terminal when following)."""
        args: list[str] = ["--unit", self.service_name, "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if since is not None:
            args.extend(["--since", since])
        if follow:
            args.append("--follow")
        return self._journalctl(args, capture_output=not follow)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        quiet: bool = False,
        extra: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if quiet:
            args.append("--quiet")
        if unit is not None:
            args.append(unit)
        args.extend(extra)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            capture_output=True,
        )

    def _journalctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.journalctl_bin, *args]
        joined = " ".join(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.journalctl_bin} {joined}".rstrip(),
            capture_output=capture_output,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


@dataclass(slots=True)
class SystemdLogReader:
    """Read recent journal lines for the managed unit."""

    provider: SystemdProvider

    def read(self, *, since: str | None = None) -> str:
        """Return journal text for the unit written since *since*."""
        result = self.provider.logs(since=since)
        return getattr(result, "stdout", "") or ""

    def tail(self, *, lines: int | None = None, follow: bool = False) -> str:
        """Return the last *lines* journal lines; following streams straight to the terminal."""
        result = self.provider.logs(lines=lines, follow=follow)
        return getattr(result, "stdout", "") or ""


__all__ = ["SystemdError", "SystemdLogReader", "SystemdProvider"]

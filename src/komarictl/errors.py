"""Error hierarchy shared by the lifecycle components and the CLI."""
from __future__ import annotations

from .exit_codes import ExitCode


class KomariCtlError(RuntimeError):
    """Base class for failures reported to the operator."""

    exit_code: ExitCode = ExitCode.FAILURE
    severity: str = "error"


class HostEnvironmentError(KomariCtlError):
    """Raised when the host cannot run the requested operation.

    Covers missing privileges, unsupported machine architectures and hosts
    without a supported package manager.
    """

    exit_code = ExitCode.ENVIRONMENT


class NetworkError(KomariCtlError):
    """Raised when the release feed or an artifact download fails."""

    exit_code = ExitCode.NETWORK


class StateError(KomariCtlError):
    """Raised when an operation is invalid for the current install state."""

    exit_code = ExitCode.VALIDATION


class SupervisorError(KomariCtlError):
    """Raised when the service supervisor fails or the unit is not active."""

    exit_code = ExitCode.PROVIDER


class InputError(KomariCtlError):
    """Raised for malformed interactive input."""

    exit_code = ExitCode.VALIDATION


class UpgradeFailedError(NetworkError):
    """Raised when an upgrade download fails.

    ``restored`` tells whether the previous binary was moved back into place
    from a backup. Without a restoration the binary state is unknown, which is
    reported with the highest severity.
    """

    def __init__(self, message: str, *, restored: bool, backup: str | None = None) -> None:
        """Initialise the error with rollback details."""
        super().__init__(message)
        self.restored = restored
        self.backup = backup

    @property
    def severity(self) -> str:  # type: ignore[override]
        """Return ``critical`` when the previous binary was not restored."""
        return "error" if self.restored else "critical"


__all__ = [
    "HostEnvironmentError",
    "InputError",
    "KomariCtlError",
    "NetworkError",
    "StateError",
    "SupervisorError",
    "UpgradeFailedError",
]

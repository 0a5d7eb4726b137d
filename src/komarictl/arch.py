"""Host architecture detection for release asset selection."""
from __future__ import annotations

import platform

from .errors import HostEnvironmentError

# Machine identifiers (``uname -m``) mapped to the release feed's naming tokens.
ARCH_TOKENS: dict[str, str] = {
    "x86_64": "amd64",
    "aarch64": "arm64",
    "i386": "386",
    "i686": "386",
    "riscv64": "riscv64",
}


def detect_arch(machine: str | None = None) -> str:
    """Return the release token for *machine* (defaults to the running host)."""
    raw = platform.machine() if machine is None else machine
    token = ARCH_TOKENS.get(raw.strip())
    if token is None:
        raise HostEnvironmentError(f"Unsupported architecture: {raw!r}")
    return token


__all__ = ["ARCH_TOKENS", "detect_arch"]

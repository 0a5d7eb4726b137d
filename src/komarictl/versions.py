"""Local version bookkeeping for the installed binary."""
from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_MARKER = re.compile(r"^v(?=\d)")


def normalize_tag(tag: str | None) -> str:
    """Return *tag* without surrounding whitespace or a single leading ``v`` marker.

    The marker is only dropped in front of a digit, which keeps normalisation
    idempotent: ``normalize_tag(normalize_tag(x)) == normalize_tag(x)``.
    """
    if not tag:
        return ""
    return _MARKER.sub("", tag.strip(), count=1)


def same_version(local: str | None, remote: str | None) -> bool:
    """Return ``True`` when both tags are known and normalise to the same string.

    No ordering is applied: an older remote tag is simply "different".
    """
    left = normalize_tag(local)
    return bool(left) and left == normalize_tag(remote)


@dataclass(slots=True)
class VersionStore:
    """Read and persist the version of the binary at ``binary_path``.

    The installed binary is asked first; the one-line record file under the
    install root is only consulted when the binary is missing, not executable
    or its output cannot be parsed.
    """

    binary_path: Path
    record_path: Path
    probe_args: Sequence[str] = ("-h",)
    pattern: str = r"Komari Monitor (\d+(?:\.\d+)*)"
    probe_timeout: float = 10.0
    _regex: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Compile the version pattern."""
        self._regex = re.compile(self.pattern)

    def get_local(self) -> str:
        """Return the installed version or ``""`` when it cannot be determined."""
        version = self.query_binary()
        if version:
            return version
        return self.read_record() or ""

    def set_local(self, tag: str) -> str:
        """Persist the normalised *tag* and return it.

        Only call this after the binary at ``binary_path`` has been replaced
        successfully.
        """
        normalized = normalize_tag(tag)
        if not normalized:
            raise ValueError("Cannot record an empty version tag.")
        self.record_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.record_path.parent),
            prefix=f".{self.record_path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{normalized}\n")
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.record_path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return normalized

    def clear_local(self) -> bool:
        """Remove the version record; return ``True`` if one existed."""
        try:
            self.record_path.unlink()
        except FileNotFoundError:
            return False
        return True

    def query_binary(self) -> str | None:
        """Ask the installed binary for its version."""
        if not self.binary_path.is_file() or not os.access(self.binary_path, os.X_OK):
            return None
        try:
            result = self._run_probe()
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.debug("Version probe of %s failed: %s", self.binary_path, exc)
            return None
        output = result.stdout or ""
        first_line = output.splitlines()[0] if output.strip() else ""
        match = self._regex.search(first_line)
        if match is None:
            LOGGER.debug("No version found in probe output: %r", first_line)
            return None
        return normalize_tag(match.group(1) if match.groups() else match.group(0))

    def read_record(self) -> str | None:
        """Return the persisted version record, if any."""
        try:
            text = self.record_path.read_text(encoding="utf-8")
        except OSError:
            return None
        lines = text.splitlines()
        normalized = normalize_tag(lines[0] if lines else "")
        return normalized or None

    def _run_probe(self) -> subprocess.CompletedProcess[str]:
        """Execute the binary with the probe arguments (isolated for testing)."""
        # Some builds log the banner to stderr, so both streams are merged.
        return subprocess.run(  # noqa: S603
            [str(self.binary_path), *self.probe_args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
            timeout=self.probe_timeout,
        )


__all__ = ["VersionStore", "normalize_tag", "same_version"]

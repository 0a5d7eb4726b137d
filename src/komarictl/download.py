"""Stream release artifacts to a staging file beside the live binary."""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .errors import NetworkError

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


@dataclass(slots=True)
class ArtifactDownloader:
    """Download artifacts without touching the destination until committed."""

    timeout: float | None = 30.0
    client: httpx.Client | None = field(default=None, repr=False)

    def stage(self, url: str, directory: Path, name: str) -> Path:
        """Download *url* into a hidden temporary file under *directory*.

        The caller owns the returned path and is expected to rename it into
        place (or delete it). On failure nothing is left behind.
        """
        if not url:
            raise NetworkError("Download URL is empty.")
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{name}.download-")
        staged = Path(tmp_name)
        keep = False
        try:
            written = 0
            with os.fdopen(fd, "wb") as handle, self._session() as client:
                try:
                    with client.stream("GET", url, follow_redirects=True) as response:
                        if response.status_code >= 400:
                            raise NetworkError(
                                f"Download of {url} failed with HTTP {response.status_code}."
                            )
                        for chunk in response.iter_bytes(CHUNK_SIZE):
                            handle.write(chunk)
                            written += len(chunk)
                except httpx.HTTPError as exc:
                    raise NetworkError(f"Download of {url} failed: {exc}") from exc
            if written == 0:
                raise NetworkError(f"Download of {url} returned an empty file.")
            LOGGER.info("Downloaded %s (%d bytes) to %s", url, written, staged)
            keep = True
            return staged
        finally:
            if not keep:
                staged.unlink(missing_ok=True)

    @contextmanager
    def _session(self) -> Iterator[httpx.Client]:
        if self.client is not None:
            yield self.client
            return
        with httpx.Client(timeout=self.timeout) as client:
            yield client


def commit_binary(staged: Path, destination: Path, *, mode: int = 0o755) -> None:
    """Mark *staged* executable and atomically move it over *destination*."""
    os.chmod(staged, mode)
    os.replace(staged, destination)


__all__ = ["ArtifactDownloader", "commit_binary"]

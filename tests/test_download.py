"""Artifact staging and commit tests."""
from __future__ import annotations

import os
import stat
from pathlib import Path

import httpx
import pytest

from komarictl.download import ArtifactDownloader, commit_binary
from komarictl.errors import NetworkError

URL = "https://github.com/komari-monitor/komari/releases/download/v1.2.0/komari-linux-amd64"


def _downloader(handler: httpx.MockTransport | None = None, **response: object) -> ArtifactDownloader:
    transport = handler or httpx.MockTransport(lambda request: httpx.Response(**response))
    return ArtifactDownloader(client=httpx.Client(transport=transport))


def test_stage_writes_hidden_file_next_to_binary(tmp_path: Path) -> None:
    """The artifact lands in a hidden temporary file inside the directory."""
    downloader = _downloader(status_code=200, content=b"\x7fELF" + b"0" * 2048)

    staged = downloader.stage(URL, tmp_path / "opt", "komari")

    assert staged.parent == tmp_path / "opt"
    assert staged.name.startswith(".komari.download-")
    assert staged.read_bytes().startswith(b"\x7fELF")
    assert not (tmp_path / "opt" / "komari").exists()


def test_stage_follows_redirects(tmp_path: Path) -> None:
    """Release downloads usually redirect to a CDN."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == URL:
            return httpx.Response(302, headers={"Location": "https://cdn.example/blob"})
        return httpx.Response(200, content=b"payload")

    staged = _downloader(httpx.MockTransport(handler)).stage(URL, tmp_path, "komari")

    assert staged.read_bytes() == b"payload"


@pytest.mark.parametrize(
    ("status", "content"),
    [(404, b"Not Found"), (500, b"boom"), (200, b"")],
)
def test_stage_failures_leave_nothing_behind(tmp_path: Path, status: int, content: bytes) -> None:
    """HTTP errors and empty bodies raise and remove the partial file."""
    downloader = _downloader(status_code=status, content=content)

    with pytest.raises(NetworkError):
        downloader.stage(URL, tmp_path, "komari")

    assert list(tmp_path.iterdir()) == []


def test_stage_transport_error(tmp_path: Path) -> None:
    """Connection failures surface as NetworkError."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(NetworkError):
        _downloader(httpx.MockTransport(handler)).stage(URL, tmp_path, "komari")
    assert list(tmp_path.iterdir()) == []


def test_stage_rejects_empty_url(tmp_path: Path) -> None:
    """An empty URL never reaches the network."""
    with pytest.raises(NetworkError):
        _downloader(status_code=200, content=b"x").stage("", tmp_path, "komari")


def test_commit_binary_is_executable_and_replaces_target(tmp_path: Path) -> None:
    """Committing swaps the staged file over the live path with mode 0755."""
    live = tmp_path / "komari"
    live.write_bytes(b"old")
    staged = tmp_path / ".komari.download-abc"
    staged.write_bytes(b"new")

    commit_binary(staged, live)

    assert live.read_bytes() == b"new"
    assert not staged.exists()
    assert stat.S_IMODE(live.stat().st_mode) == 0o755
    assert os.access(live, os.X_OK)

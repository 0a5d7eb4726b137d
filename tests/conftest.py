"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from fakes import Harness
from komarictl.versions import VersionStore


@pytest.fixture(autouse=True)
def _no_binary_probe(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fake binaries written by tests are never executed."""

    def refuse(self: VersionStore) -> subprocess.CompletedProcess[str]:
        raise OSError("exec format error")

    monkeypatch.setattr(VersionStore, "_run_probe", refuse)


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    """Return a fresh lifecycle harness."""
    return Harness(tmp_path)

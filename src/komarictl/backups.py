"""Backups of the managed binary taken before upgrades."""
from __future__ import annotations

import json
import os
import secrets
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


@dataclass(frozen=True, slots=True)
class BinaryBackup:
    """A copy of the binary together with when it was taken."""

    id: str
    path: Path
    created_at: datetime
    source: Path
    version: str | None = None
    size_bytes: int = 0

    def to_entry(self) -> dict[str, object]:
        """Return the JSON-serialisable index entry."""
        entry: dict[str, object] = {
            "id": self.id,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "source": str(self.source),
            "size_bytes": self.size_bytes,
        }
        if self.version:
            entry["version"] = self.version
        return entry

    @classmethod
    def from_entry(cls, entry: Mapping[str, object]) -> BinaryBackup | None:
        """Parse an index entry, returning ``None`` for malformed records."""
        backup_id = str(entry.get("id", "")).strip()
        path_value = entry.get("path")
        created_value = entry.get("created_at")
        if not backup_id or not isinstance(path_value, str) or not isinstance(created_value, str):
            return None
        try:
            created_at = datetime.fromisoformat(created_value)
        except ValueError:
            return None
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        version = entry.get("version")
        size = entry.get("size_bytes")
        return cls(
            id=backup_id,
            path=Path(path_value),
            created_at=created_at,
            source=Path(str(entry.get("source", ""))),
            version=version if isinstance(version, str) and version else None,
            size_bytes=size if isinstance(size, int) else 0,
        )


@dataclass(slots=True)
class BackupsRegistry:
    """Manage binary backups and their JSON index.

    Backup files are written next to the binary as
    ``<binary>.backup.<YYYYmmdd_HHMMSS_ffffff>``; ordering always comes from
    the recorded ``created_at`` timestamp, never from file names.
    """

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    # Index helpers -------------------------------------------------
    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            text = self.index.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        try:
            self.index.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupRegistryError(
                f"Failed to prepare backup index directory {self.index.parent}: {exc}"
            ) from exc
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def list_entries(self) -> list[dict[str, object]]:
        """Return the raw backup entries."""
        data = self.read()
        backups = data.get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def _replace_entries(self, entries: list[dict[str, object]]) -> None:
        self.write({"backups": entries})

    # Backup lifecycle ----------------------------------------------
    def create(
        self,
        binary: Path,
        *,
        version: str | None = None,
        now: datetime | None = None,
    ) -> BinaryBackup:
        """Copy *binary* into the backup root and record it."""
        if not binary.is_file():
            raise BackupError(f"Cannot back up missing binary {binary}.")
        created_at = now or datetime.now(tz=UTC)
        suffix = created_at.strftime("%Y%m%d_%H%M%S_%f")
        destination = self.root / f"{binary.name}.backup.{suffix}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copy2(binary, destination)
        except OSError as exc:
            raise BackupError(f"Failed to back up {binary}: {exc}") from exc

        backup = BinaryBackup(
            id=self.generate_identifier(created_at),
            path=destination,
            created_at=created_at,
            source=binary,
            version=version or None,
            size_bytes=destination.stat().st_size,
        )
        entries = self.list_entries()
        entries.append(backup.to_entry())
        try:
            self._replace_entries(entries)
        except BackupRegistryError:
            destination.unlink(missing_ok=True)
            raise
        return backup

    def backups(self) -> list[BinaryBackup]:
        """Return recorded backups whose files still exist, oldest first."""
        parsed = [BinaryBackup.from_entry(entry) for entry in self.list_entries()]
        present = [backup for backup in parsed if backup is not None and backup.path.is_file()]
        return sorted(present, key=lambda backup: backup.created_at)

    def latest(self) -> BinaryBackup | None:
        """Return the most recently created backup, if any."""
        backups = self.backups()
        return backups[-1] if backups else None

    def restore(self, backup: BinaryBackup, destination: Path) -> None:
        """Move *backup* back over *destination* and drop it from the index."""
        try:
            shutil.move(str(backup.path), str(destination))
        except OSError as exc:
            raise BackupError(f"Failed to restore {backup.path} to {destination}: {exc}") from exc
        self._forget([backup.id])

    def prune(self, keep: int) -> list[BinaryBackup]:
        """Delete all but the newest *keep* backups and return what was removed."""
        if keep < 1:
            raise BackupError("Retention must keep at least one backup.")
        backups = self.backups()
        doomed = backups[:-keep] if len(backups) > keep else []
        for backup in doomed:
            backup.path.unlink(missing_ok=True)
        recorded = {str(entry.get("id", "")) for entry in self.list_entries()}
        present = {backup.id for backup in backups}
        stale = recorded - present
        removed_ids = [backup.id for backup in doomed] + sorted(stale)
        if removed_ids:
            self._forget(removed_ids)
        return doomed

    def _forget(self, backup_ids: list[str]) -> None:
        wanted = set(backup_ids)
        entries = [
            entry for entry in self.list_entries() if str(entry.get("id", "")) not in wanted
        ]
        self._replace_entries(entries)

    # Utility helpers -----------------------------------------------
    def generate_identifier(self, created_at: datetime | None = None) -> str:
        """Return a unique backup identifier."""
        timestamp = (created_at or datetime.now(tz=UTC)).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        return f"{timestamp}-{token}"


__all__ = ["BackupError", "BackupRegistryError", "BackupsRegistry", "BinaryBackup"]

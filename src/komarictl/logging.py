"""Structured operation logging for komarictl.

Every CLI operation is recorded as a single JSON document appended to
``operations.jsonl`` under the configured logs directory. Each record holds
the command, its arguments, the steps taken and the final result so operators
can reconstruct what happened on a host after the fact.

The logger never raises: when the directory cannot be created or a write
fails it disables itself and the CLI keeps working.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger("komarictl")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the outcome of a single operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%SZ}-{secrets.token_hex(3)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now_iso()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: str = "") -> None:
        """Record a step performed as part of the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)
        level = logging.WARNING if status in {"warning", "error"} else logging.DEBUG
        LOGGER.log(level, "%s: %s [%s] %s", self.command, name, status, detail)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._finish(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        rc: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
        }
        if rc is not None:
            result["rc"] = rc
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if backups:
            result["backups"] = list(backups)
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unavailable."""
        self._logs_dir = logs_dir.expanduser()
        self._operations_log_path = self._logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled (%s): %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def operations_log(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                rc = getattr(exc, "exit_code", 1)
                scope.error(
                    f"{command} aborted: {exc or type(exc).__name__}",
                    rc=int(rc) if isinstance(rc, int) else 1,
                )
            raise
        finally:
            if scope.result is None:
                scope.success(f"{command} completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]

"""Structured operations log for nfsdsctl commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The yielded
:class:`OperationScope` collects steps and a final result which are appended
as a single JSON line to ``<logs_dir>/operations.jsonl``. The logger never
raises: if the directory is unavailable or a write fails it disables itself.
"""
from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

OPERATIONS_LOG_NAME = "operations.jsonl"


def sanitize_payload(value: object) -> object:
    """Return *value* reduced to JSON-safe primitives, lists and dicts."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [sanitize_payload(item) for item in value]
    return str(value)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class OperationScope:
    """Mutable record of a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope for *command*."""
        self._logger = logger
        self.command = command
        self.op_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.context: dict[str, object] = {}
        self.started_at = _now()
        self._start = time.perf_counter()

    @property
    def finished(self) -> bool:
        """Return ``True`` once a result has been recorded."""
        return self.result is not None

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Append a named step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int = 1,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._finish(
            "error",
            message,
            rc=rc,
            errors=list(errors) if errors else [message],
            warnings=warnings,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        rc: int | None = None,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if rc is not None:
            result["rc"] = rc
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if context:
            result["context"] = sanitize_payload(context)
        self.result = result

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-safe log record for this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": sanitize_payload(self.args),
            "target": sanitize_payload(self.target),
            "started_at": self.started_at,
            "finished_at": _now(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": list(self.steps),
            "result": self.result,
            "context": sanitize_payload(self.context),
        }


class StructuredLogger:
    """Append-only JSONL writer for operation records."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it cannot be created."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
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
        scope = OperationScope(self, command, args, target)
        try:
            yield scope
        except Exception as exc:
            if not scope.finished:
                scope.error(f"Unhandled error: {exc}", context={"exception": repr(exc)})
            raise
        finally:
            if not scope.finished:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=True)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "sanitize_payload"]

"""Structured operation logging for synoctl.

Every actuator run and CLI command is wrapped in an *operation*. When the
operation finishes one JSON record is appended to ``operations.jsonl`` and a
single summary line to ``synoctl.log``::

    with logger.operation("reconcile", args={...}, target={...}) as op:
        op.add_step("session.login", status="success")
        op.success("Reconciled.", changed=1)

Logging never breaks the operation it records: if the log directory cannot
be created or a write fails, the logger disables itself and carries on.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "synoctl.log"

LOGGER = logging.getLogger("synoctl")


def _timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitise(value: object) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for one operation."""

    def __init__(
        self,
        command: str,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, Any]] = []
        self.result: dict[str, Any] | None = None
        self.started_at = _timestamp()

    def add_step(self, name: str, *, status: str = "success", detail: object | None = None) -> None:
        """Record a named step and its outcome."""
        step: dict[str, Any] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        changed: int | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, Any] = {
            "status": status,
            "message": message,
            "warnings": warnings or [],
            "errors": errors or [],
        }
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(context)
        self.result = result

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-serialisable record for this operation."""
        return {
            "timestamp": self.started_at,
            "finished_at": _timestamp(),
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": self.steps,
            "result": self.result,
            "context": {"synoctl_version": __version__},
        }


class StructuredLogger:
    """Append operation records under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory; disable logging if it is unusable."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG
        self._human_log_path = logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", logs_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and write its record on exit."""
        scope = OperationScope(command, args, target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None or scope.result.get("status") != "error":
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success(f"{command} completed.")
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record["result"] or {}
        summary = (
            f"{record['timestamp']} {result.get('status', 'unknown').upper()} "
            f"{scope.command}: {result.get('message', '')}"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(summary + "\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]

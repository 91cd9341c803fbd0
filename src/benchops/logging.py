"""Structured operation logging for benchops.

Every CLI invocation is wrapped in an :class:`OperationScope` which appends a
single JSON record to ``<logs_dir>/operations.jsonl`` once the command
completes. Records carry the operation name, sanitised arguments, the target,
the invoking actor, the step trail, and the final result. Logging is best
effort: when the directory cannot be prepared or a write fails the logger
disables itself instead of interrupting the operation.
"""
from __future__ import annotations

import getpass
import json
import os
import secrets
import time
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


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


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on host passwd database
        user = None
    return {"user": user, "uid": os.geteuid(), "pid": os.getpid()}


class StructuredLogger:
    """Append structured operation records to a JSONL file."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it cannot be created."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope that records the outcome of operation *name*."""
        return OperationScope(self, name, args=args, target=target)

    def write(self, record: Mapping[str, object]) -> None:
        """Append *record* to the operations log."""
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(_sanitize(record), sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


class OperationScope:
    """Context manager collecting steps and the result of one operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for operation *name*."""
        self._logger = logger
        self.name = name
        self.operation_id = f"op-{secrets.token_hex(4)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor = _current_actor()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._started = time.monotonic()

    def __enter__(self) -> OperationScope:
        """Return the scope itself."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Finalise the record; unhandled exceptions are logged then propagated."""
        if self.result is None:
            if exc is not None:
                self.error(
                    f"Unhandled {exc_type.__name__ if exc_type else 'error'}: {exc}",
                    errors=[str(exc)],
                )
            else:
                self.success("Operation completed.")
        duration_ms = int((time.monotonic() - self._started) * 1000)
        self._logger.write(
            {
                "id": self.operation_id,
                "ts": self._started_at,
                "operation": self.name,
                "args": self.args,
                "target": self.target,
                "actor": self.actor,
                "steps": self.steps,
                "result": self.result,
                "duration_ms": duration_ms,
            }
        )

    # Recording helpers ---------------------------------------------
    def add_step(
        self,
        name: str,
        *,
        status: str = "info",
        detail: object | None = None,
    ) -> None:
        """Record an intermediate step of the operation."""
        entry: dict[str, object] = {"ts": _now_iso(), "name": name, "status": status}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self.steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=(),
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=(),
            errors=list(errors) if errors else [message],
            backups=None,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str],
        errors: Iterable[str],
        backups: Iterable[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "rc": rc,
        }
        if backups is not None:
            result["backups"] = list(backups)
        if context:
            result["context"] = _sanitize(context)
        self.result = result


__all__ = ["OperationScope", "StructuredLogger"]

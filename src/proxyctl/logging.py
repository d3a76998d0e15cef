"""Structured operation logging for proxyctl.

Every CLI command and engine operation runs inside an :class:`OperationScope`.
When the scope closes, one JSON record is appended to ``operations.jsonl`` and
a one-line summary goes to the human-readable ``proxyctl.log``. Logging must
never break an operation: if the log directory cannot be prepared or a write
fails, the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "proxyctl.log"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[str]:
    if values is None:
        return []
    return [str(item) for item in values]


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the final result for a single operation."""

    logger: StructuredLogger
    op_id: str
    command: str
    args: dict[str, object]
    target: dict[str, object]
    started_at: str
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    _started: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record a named step with its *status* and optional *detail*."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)
        self.logger.emit_line(logging.INFO, f"{self.command}: {name} [{status}]")

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[object] | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        changed: int | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        rc: int | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        error_list = _as_list(errors) or [message]
        self._set_result(
            "error",
            message,
            errors=error_list,
            warnings=warnings,
            backups=backups,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
        }
        if changed is not None:
            result["changed"] = changed
        if backups is not None:
            result["backups"] = _as_list(backups)
        if context:
            result["context"] = _sanitize(context)
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": duration_ms,
            "context": {"proxyctl_version": __version__},
            "steps": list(self.steps),
            "result": self.result or {"status": "unknown", "message": ""},
        }


class StructuredLogger:
    """Write operation records to JSONL plus a human-readable log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it cannot be created."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG
        self._human_log_path = logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        self._human = logging.getLogger(f"proxyctl.operations.{id(self):x}")
        self._human.setLevel(logging.INFO)
        self._human.propagate = False
        if self._enabled:
            try:
                handler = logging.FileHandler(self._human_log_path, encoding="utf-8")
            except OSError:
                self._enabled = False
            else:
                handler.setFormatter(
                    logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s")
                )
                self._human.addHandler(handler)

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @property
    def human_log_path(self) -> Path:
        """Return the path of the human-readable log."""
        return self._human_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and persist its record on exit."""
        scope = OperationScope(
            logger=self,
            op_id=f"{datetime.now(tz=UTC).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3)}",
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
            started_at=_now_iso(),
        )
        self.emit_line(logging.INFO, f"{command}: started")
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None or scope.result.get("status") != "error":
                scope.error(f"{command} aborted: {exc or type(exc).__name__}")
            raise
        finally:
            if scope.result is None:
                scope.warning(f"{command} finished without recording a result.")
            self._write(scope)

    def emit_line(self, level: int, message: str) -> None:
        """Write *message* to the human log when logging is enabled."""
        if not self._enabled:
            return
        self._human.log(level, message)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False
            return
        result = record["result"]
        status = result.get("status", "unknown") if isinstance(result, dict) else "unknown"
        message = result.get("message", "") if isinstance(result, dict) else ""
        level = {"error": logging.ERROR, "warning": logging.WARNING}.get(str(status), logging.INFO)
        self.emit_line(level, f"{scope.command}: {status}: {message}")

    def read_records(self) -> list[dict[str, object]]:
        """Return all parseable records from the operations log."""
        if not self._operations_log_path.exists():
            return []
        records: list[dict[str, object]] = []
        for line in self._operations_log_path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                records.append(parsed)
        return records


__all__ = ["OperationScope", "StructuredLogger"]

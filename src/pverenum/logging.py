"""Structured operation logging for pverenum.

Every CLI invocation is wrapped in an :class:`OperationScope`. The scope
collects named steps and a final result, and on exit writes one JSON record
to ``operations.jsonl`` plus a one-line summary to the human readable
``pverenum.log`` (rotated by :mod:`logging.handlers`).

Logging is best effort: when the logs directory cannot be created, or a write
fails, the logger disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import secrets
import time
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "pverenum.log"
HUMAN_LOG_MAX_BYTES = 5 * 1024 * 1024
HUMAN_LOG_BACKUPS = 5

_HUMAN_LOGGERS: dict[Path, logging.Logger] = {}


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


def _human_logger(path: Path) -> logging.Logger:
    existing = _HUMAN_LOGGERS.get(path)
    if existing is not None:
        return existing
    logger = logging.getLogger(f"pverenum.operations.{len(_HUMAN_LOGGERS)}")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=HUMAN_LOG_MAX_BYTES,
        backupCount=HUMAN_LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)
    _HUMAN_LOGGERS[path] = logger
    return logger


class StructuredLogger:
    """Write JSONL operation records and a rotating human log under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory; disable logging when it is unusable."""
        self.log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.log_dir / HUMAN_LOG_NAME
        self._enabled = True
        self._human: logging.Logger | None = None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        try:
            self._human = _human_logger(self._human_log_path)
        except OSError:
            self._human = None

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are still being written."""
        return self._enabled

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope recording the operation named *command*."""
        return OperationScope(self, command, args=args, target=target)

    # ------------------------------------------------------------------
    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False
            return
        if self._human is None:
            return
        result = record.get("result")
        status = "unknown"
        message = ""
        if isinstance(result, Mapping):
            status = str(result.get("status", "unknown"))
            message = str(result.get("message", ""))
        level = logging.ERROR if status == "error" else logging.INFO
        if status == "warning":
            level = logging.WARNING
        self._human.log(
            level,
            "%s op=%s status=%s: %s",
            record.get("command"),
            record.get("op_id"),
            status,
            message,
        )


class OperationScope:
    """Collect steps and the outcome of a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope; timing starts immediately."""
        self._logger = logger
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3)}"
        self._args = _sanitize(dict(args or {}))
        self._target = _sanitize(dict(target or {}))
        self._started_at = _now_iso()
        self._start = time.monotonic()
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._written = False

    def __enter__(self) -> OperationScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._result is None:
            if exc is None:
                self.success("Operation completed.")
            else:
                self.error(f"Unhandled {type(exc).__name__}: {exc}")
        self._flush()

    @property
    def steps(self) -> list[dict[str, object]]:
        """Return a copy of the recorded steps."""
        return [dict(step) for step in self._steps]

    @property
    def result(self) -> dict[str, object] | None:
        """Return the recorded result block, if any."""
        return None if self._result is None else dict(self._result)

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: object | None = None,
    ) -> None:
        """Record a named step with its *status* and optional *detail*."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self._steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            changed=changed,
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
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors or [message]),
            changed=changed,
            backups=backups,
            context=context,
            rc=rc,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
        }
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _sanitize(context)
        self._result = result

    def _flush(self) -> None:
        if self._written:
            return
        self._written = True
        duration_ms = int((time.monotonic() - self._start) * 1000)
        record: dict[str, object] = {
            "op_id": self.op_id,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": duration_ms,
            "command": self.command,
            "args": self._args,
            "target": self._target,
            "context": {
                "pverenum_version": __version__,
                "pid": os.getpid(),
                "uid": os.getuid(),
            },
            "steps": self._steps,
            "result": self._result or {},
        }
        self._logger._write(record)


__all__ = ["OperationScope", "StructuredLogger"]

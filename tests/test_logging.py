"""Tests for the structured operation logger."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from pverenum.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_record_captures_steps_and_result(tmp_path: Path) -> None:
    """A completed scope writes one JSON line with steps, target and context."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "renumber",
        args={"old_id": "218", "new_id": "9218"},
        target={"kind": "unit", "old_id": "218"},
    ) as op:
        op.add_step("preflight", detail="kind=lxc")
        op.add_step("guest.stop", status="skipped", detail="already stopped")
        op.success("Renumbered 218 to 9218.", changed=2, backups=[tmp_path / "bk"])

    (record,) = _records(logger)
    assert record["command"] == "renumber"
    assert record["args"] == {"old_id": "218", "new_id": "9218"}
    assert record["target"] == {"kind": "unit", "old_id": "218"}
    assert [step["name"] for step in record["steps"]] == ["preflight", "guest.stop"]
    assert record["steps"][1]["status"] == "skipped"
    assert record["result"]["status"] == "success"
    assert record["result"]["rc"] == 0
    assert record["result"]["changed"] == 2
    assert record["result"]["backups"] == [str(tmp_path / "bk")]
    assert "pverenum_version" in record["context"]
    assert isinstance(record["duration_ms"], int)


def test_scope_without_result_records_success(tmp_path: Path) -> None:
    """Leaving a scope cleanly without a verdict records a success."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"


def test_scope_records_unhandled_exception(tmp_path: Path) -> None:
    """Exceptions escaping the scope are recorded as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("demo"):
            raise ValueError("bad input")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert "bad input" in record["result"]["message"]


def test_explicit_error_is_not_overwritten_on_exit(tmp_path: Path) -> None:
    """An error set before an exit exception keeps its return code."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(SystemExit):
        with logger.operation("demo") as op:
            op.error("Config for new ID 9218 already exists.", rc=2)
            raise SystemExit(2)

    (record,) = _records(logger)
    assert record["result"]["rc"] == 2
    assert record["result"]["errors"] == ["Config for new ID 9218 already exists."]


def test_human_log_receives_summary_line(tmp_path: Path) -> None:
    """Each record is mirrored to the rotating human-readable log."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("renumber") as op:
        op.warning("Renumbered; restart failed.")

    text = (tmp_path / "logs" / "pverenum.log").read_text(encoding="utf-8")
    assert "renumber" in text
    assert "status=warning" in text
    assert "restart failed" in text


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("renumber", args={"old_id": "218"}) as op:
        op.success("done")

    assert not log_dir.exists()


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so later operations still run."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_operations_log(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_operations_log)

    with logger.operation("demo") as op:
        op.success("done")

    assert logger.enabled is False

    with logger.operation("demo-2") as op:
        op.success("done")


def test_error_context_is_sanitised(tmp_path: Path) -> None:
    """Errors default their list to the message and stringify odd values."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.error("boom", rc=4, context={"path": Path("/etc/pve"), "ids": {218}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["errors"] == ["boom"]
    assert result["rc"] == 4
    assert result["context"] == {"path": "/etc/pve", "ids": "{218}"}

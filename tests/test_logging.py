"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from nodehealth.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


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
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("check", args={"level": 1}) as op:
        op.success("done")

    assert not logger.operations_log_path.exists()


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("check") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("plan") as op:
        op.success("done")


def test_operation_record_shape(tmp_path: Path) -> None:
    """Records carry command, args, target, steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "check",
        args={"level": 2, "flags": {"queues": True}},
        target={"kind": "node", "identifier": "mx01"},
    ) as op:
        op.add_step("resolve", status="success", detail="mx01.corp.example")
        op.success("Health check completed.")

    (record,) = _records(logger)
    assert record["command"] == "check"
    assert record["args"] == {"level": 2, "flags": {"queues": True}}
    assert record["target"] == {"kind": "node", "identifier": "mx01"}
    assert record["steps"] == [
        {"name": "resolve", "status": "success", "detail": "mx01.corp.example"}
    ]
    assert record["result"] == {"status": "success", "message": "Health check completed.", "rc": 0}
    assert isinstance(record["op_id"], str)
    assert isinstance(record["duration_ms"], int)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("check", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("health-store",),
            errors=("queues-depth",),
            context={"path": Path("/var/lib"), "obj": Custom(), "ids": ("a", "b")},
        )

    (record,) = _records(logger)
    assert record["args"] == {"path": "foo"}
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["health-store"]
    assert result["errors"] == ["queues-depth"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>", "ids": ["a", "b"]}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("check") as op:
        op.error("boom", rc=3, errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert result["rc"] == 3
    assert result["errors"] == ["boom"]
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="agent exploded"):
        with logger.operation("check"):
            raise RuntimeError("agent exploded")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["errors"] == ["RuntimeError('agent exploded')"]  # type: ignore[index]


def test_operation_without_result_is_recorded_as_warning(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("nodes"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "warning"  # type: ignore[index]


def test_records_are_appended(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    for command in ("check", "plan"):
        with logger.operation(command) as op:
            op.success("ok")

    assert [record["command"] for record in _records(logger)] == ["check", "plan"]

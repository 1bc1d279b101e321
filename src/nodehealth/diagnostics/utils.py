"""Utility helpers for serialising diagnostics reports."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path

from .gate import GatePlan
from .models import HealthReport, ProbeOutcome


def sanitize_payload(value: object) -> object:
    """Convert nested values into JSON-safe primitives."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [sanitize_payload(item) for item in value]
    return str(value)


def serialize_report(report: HealthReport) -> dict[str, object]:
    """Convert a health report into a JSON-serialisable mapping."""
    totals = {
        outcome.value: int(report.summary.totals.get(outcome, 0))
        for outcome in ProbeOutcome
    }
    summary_payload = {
        "outcome": report.summary.outcome.value,
        "exit_code": report.summary.exit_code,
        "totals": totals,
        "duration_ms": report.duration_ms,
    }
    results_payload: list[dict[str, object]] = []
    for result in report.results:
        result_payload: dict[str, object] = {
            "id": result.id,
            "kind": result.kind.value,
            "outcome": result.outcome.value,
            "message": result.message,
        }
        if result.measurements:
            result_payload["measurements"] = sanitize_payload(result.measurements)
        if result.data:
            result_payload["data"] = sanitize_payload(result.data)
        if result.warnings:
            result_payload["warnings"] = list(result.warnings)
        if result.timestamp is not None:
            result_payload["timestamp"] = result.timestamp.isoformat()
        if result.duration_ms is not None:
            result_payload["duration_ms"] = result.duration_ms
        results_payload.append(result_payload)

    metadata_payload = sanitize_payload(report.metadata) if report.metadata else {}
    return {
        "node": sanitize_payload(report.node.to_dict()),
        "summary": summary_payload,
        "results": results_payload,
        "metadata": metadata_payload,
    }


def serialize_plan(plan: GatePlan) -> dict[str, object]:
    """Convert a gate plan into a JSON-serialisable mapping."""
    return {
        "role": plan.role.value,
        "level": plan.level,
        "flags": plan.flags.to_dict(),
        "probes": [
            {
                "id": entry.spec.id,
                "kind": entry.spec.kind.value,
                "selected": entry.selected,
                "skip_reason": entry.skip_reason.value if entry.skip_reason else None,
                "description": entry.spec.description,
            }
            for entry in plan.entries
        ],
    }

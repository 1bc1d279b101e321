"""Node diagnostics infrastructure."""

from __future__ import annotations

from .engine import DiagnosticsEngine, run_phase, run_probes
from .gate import PROBE_CATALOG, GateEntry, GatePlan, applicable
from .models import (
    RUN_BUDGET_SECONDS,
    AmbiguousNodeError,
    DeepCategory,
    DeepCheckFlags,
    HealthReport,
    Node,
    NodeNotFoundError,
    NodeResolutionError,
    NodeRole,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeKind,
    ProbeOutcome,
    ProbeResult,
    ProbeSpec,
    ReportSummary,
    ResolutionStatus,
    RunConfig,
    SkipReason,
    UnsupportedRoleError,
    aggregate_results,
    build_report,
)
from .probes import collect_probes

__all__ = [
    "AmbiguousNodeError",
    "DeepCategory",
    "DeepCheckFlags",
    "DiagnosticsEngine",
    "GateEntry",
    "GatePlan",
    "HealthReport",
    "Node",
    "NodeNotFoundError",
    "NodeResolutionError",
    "NodeRole",
    "PROBE_CATALOG",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeExecutorOptions",
    "ProbeKind",
    "ProbeOutcome",
    "ProbeResult",
    "ProbeSpec",
    "RUN_BUDGET_SECONDS",
    "ReportSummary",
    "ResolutionStatus",
    "RunConfig",
    "SkipReason",
    "UnsupportedRoleError",
    "aggregate_results",
    "applicable",
    "build_report",
    "collect_probes",
    "run_phase",
    "run_probes",
]

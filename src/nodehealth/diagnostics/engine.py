"""Probe execution harness for node diagnostics."""

from __future__ import annotations

import concurrent.futures
import logging
import time
import traceback
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

from ..providers.agent import AgentError
from ..providers.failures import FailureStoreError
from .gate import GateEntry, GatePlan, applicable
from .models import (
    PHASE_ORDER,
    RUN_BUDGET_SECONDS,
    HealthReport,
    Node,
    NodeRole,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeKind,
    ProbeOutcome,
    ProbeResult,
    RunConfig,
    UnsupportedRoleError,
    build_report,
    utc_now,
)
from .probes import collect_probes, skipped_result

if TYPE_CHECKING:
    from ..config import ServicesConfig, ThresholdsConfig
    from ..providers.agent import NodeAgentClient
    from ..providers.failures import FailureHistoryStore, FailureRecord
    from ..providers.inventory import InventoryResolver

LOGGER = logging.getLogger(__name__)

AgentFactory = Callable[[Node], "NodeAgentClient"]


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _coerce_result(
    probe: ProbeDefinition,
    result: ProbeResult,
    duration_ms: int,
    timestamp: datetime,
) -> ProbeResult:
    coerced = result
    if result.id != probe.id:
        coerced = replace(coerced, id=probe.id)
    if result.kind != probe.kind:
        coerced = replace(coerced, kind=probe.kind)
    if result.duration_ms is None:
        coerced = replace(coerced, duration_ms=duration_ms)
    if result.timestamp is None:
        coerced = replace(coerced, timestamp=timestamp)
    return coerced


def _unexpected_failure(
    probe: ProbeDefinition,
    exc: Exception,
    duration_ms: int,
    timestamp: datetime,
) -> ProbeResult:
    message = f"Probe '{probe.id}' raised an unexpected error: {exc}"
    data = {
        "exception": repr(exc),
        "traceback": traceback.format_exc(),
    }
    return ProbeResult(
        id=probe.id,
        kind=probe.kind,
        outcome=ProbeOutcome.FAIL,
        message=message,
        data=data,
        warnings=("unhandled-exception",),
        timestamp=timestamp,
        duration_ms=duration_ms,
    )


def _run_single_probe(
    probe: ProbeDefinition,
    context: ProbeContext,
) -> ProbeResult:
    timestamp = utc_now()
    start = time.perf_counter()
    try:
        result = probe.run(context)
    except Exception as exc:  # one probe must never abort the run
        return _unexpected_failure(probe, exc, _duration_ms(start), timestamp)
    return _coerce_result(probe, result, _duration_ms(start), timestamp)


def run_probes(
    context: ProbeContext,
    probes: Sequence[ProbeDefinition],
    *,
    max_concurrency: int = 1,
) -> list[ProbeResult]:
    """Execute probes with bounded concurrency, preserving input order."""
    if not probes:
        return []

    max_workers = max(1, min(max_concurrency, len(probes)))
    if max_workers == 1:
        return [_run_single_probe(probe, context) for probe in probes]

    results: list[ProbeResult | None] = [None] * len(probes)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index: dict[concurrent.futures.Future[ProbeResult], int] = {}
        for index, probe in enumerate(probes):
            future = executor.submit(_run_single_probe, probe, context)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            results[index] = future.result()

    return [result for result in results if result is not None]


def _skipped(entry: GateEntry) -> ProbeResult:
    result = skipped_result(entry.spec, entry.skip_message())
    return replace(
        result,
        data={"reason": entry.skip_reason.value if entry.skip_reason else None},
        timestamp=utc_now(),
        duration_ms=0,
    )


def _agent_unavailable(entry: GateEntry, exc: AgentError) -> ProbeResult:
    return ProbeResult(
        id=entry.spec.id,
        kind=entry.spec.kind,
        outcome=ProbeOutcome.FAIL,
        message=f"Data source unavailable: {exc}",
        timestamp=utc_now(),
        duration_ms=0,
    )


def run_phase(
    context: ProbeContext,
    entries: Sequence[GateEntry],
    definitions: Mapping[str, ProbeDefinition],
    *,
    max_concurrency: int = 1,
) -> list[ProbeResult]:
    """Run one phase: selected entries execute, the rest become skipped markers."""
    selected = [definitions[entry.spec.id] for entry in entries if entry.selected]
    executed = iter(run_probes(context, selected, max_concurrency=max_concurrency))
    return [next(executed) if entry.selected else _skipped(entry) for entry in entries]


def _uptimes(results: Sequence[ProbeResult]) -> dict[str, float | None]:
    uptimes: dict[str, float | None] = {}
    for result in results:
        if result.kind is not ProbeKind.UPTIME:
            continue
        logical = result.id.removeprefix("uptime-")
        value = result.measurements.get("uptime_seconds")
        uptimes[logical] = float(value) if value is not None else None
    return uptimes


@dataclass(slots=True, frozen=True)
class PreparedRun:
    """Resolved node plus gate plan, ready to execute."""

    node: Node
    plan: GatePlan
    started: float
    started_at: datetime


class DiagnosticsEngine:
    """Coordinator that resolves a node, runs its probes and builds the report."""

    def __init__(
        self,
        *,
        resolver: InventoryResolver,
        failures: FailureHistoryStore,
        agent_factory: AgentFactory,
        services: ServicesConfig,
        thresholds: ThresholdsConfig,
        options: ProbeExecutorOptions | None = None,
        probes: Sequence[ProbeDefinition] | None = None,
    ) -> None:
        """Store collaborators used by every run."""
        self._resolver = resolver
        self._failures = failures
        self._agent_factory = agent_factory
        self._services = services
        self._thresholds = thresholds
        self._options = options or ProbeExecutorOptions()
        definitions = probes if probes is not None else collect_probes()
        self._definitions = {definition.id: definition for definition in definitions}

    @property
    def options(self) -> ProbeExecutorOptions:
        """Return the execution options associated with this engine."""
        return self._options

    def prepare(self, run_config: RunConfig) -> PreparedRun:
        """Resolve the target and compute the gate plan.

        Resolution errors propagate as :class:`NodeResolutionError`; nothing is
        executed for a node that cannot be resolved or has an unsupported role.
        """
        started = time.perf_counter()
        started_at = utc_now()
        node = self._resolver.resolve(run_config.target)
        if node.role is NodeRole.UNSUPPORTED:
            raise UnsupportedRoleError(run_config.target, node.role_label)
        plan = applicable(node.role, run_config.flags, run_config.level)
        return PreparedRun(node=node, plan=plan, started=started, started_at=started_at)

    def run(self, run_config: RunConfig, *, strict: bool = False) -> HealthReport:
        """Run every applicable probe for the target and build the report."""
        prepared = self.prepare(run_config)
        node, plan = prepared.node, prepared.plan
        notes: list[str] = []
        results: list[ProbeResult] = []

        try:
            agent = self._agent_factory(node)
        except AgentError as exc:
            LOGGER.warning("Status agent for %s unavailable: %s", node.name, exc)
            notes.append(f"Status agent unavailable: {exc}")
            for kind in PHASE_ORDER:
                results.extend(
                    _agent_unavailable(entry, exc) if entry.selected else _skipped(entry)
                    for entry in plan.for_kind(kind)
                )
        else:
            with agent:
                context = ProbeContext(
                    node=node,
                    level=run_config.level,
                    agent=agent,
                    services=self._services,
                    thresholds=self._thresholds,
                    options=self._options,
                    started_at=prepared.started_at,
                )
                results.extend(self._run_phases(context, plan, node, notes))

        total_ms = _duration_ms(prepared.started)
        metadata: dict[str, object] = {
            "level": run_config.level,
            "flags": run_config.flags.to_dict(),
            "flags_defaulted": not run_config.flags.any_set,
            "probe_count": len(results),
            "executed": len(plan.selected),
            "skipped": len(plan.skipped),
            "concurrency": self._options.max_concurrency,
            "budget_seconds": RUN_BUDGET_SECONDS,
            "budget_exceeded": total_ms > RUN_BUDGET_SECONDS * 1000,
            "started_at": prepared.started_at.isoformat(),
        }
        if notes:
            metadata["notes"] = notes
        return build_report(
            node,
            results,
            duration_ms=total_ms,
            metadata=metadata,
            strict=strict,
        )

    def _run_phases(
        self,
        context: ProbeContext,
        plan: GatePlan,
        node: Node,
        notes: list[str],
    ) -> list[ProbeResult]:
        results: list[ProbeResult] = []
        for kind in PHASE_ORDER:
            entries = plan.for_kind(kind)
            if kind is ProbeKind.ROLE_SPECIFIC and any(entry.selected for entry in entries):
                context = replace(context, known_failures=self._known_failures(node, notes))
            concurrency = self._options.max_concurrency if kind is ProbeKind.SUBSYSTEM else 1
            phase_results = run_phase(
                context,
                entries,
                self._definitions,
                max_concurrency=concurrency,
            )
            results.extend(phase_results)
            if kind is ProbeKind.UPTIME:
                context = replace(context, uptimes=_uptimes(phase_results))
        return results

    def _known_failures(self, node: Node, notes: list[str]) -> tuple[FailureRecord, ...]:
        try:
            return self._failures.lookup(node)
        except FailureStoreError as exc:
            notes.append(f"Failure history unavailable: {exc}")
            return ()

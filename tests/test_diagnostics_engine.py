"""Tests for the diagnostics engine and probe harness."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from nodehealth.config import ServicesConfig, ThresholdsConfig
from nodehealth.diagnostics import engine as engine_module
from nodehealth.diagnostics.engine import DiagnosticsEngine, run_probes
from nodehealth.diagnostics.gate import PROBE_CATALOG
from nodehealth.diagnostics.models import (
    DeepCheckFlags,
    Node,
    NodeNotFoundError,
    NodeRole,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeKind,
    ProbeOutcome,
    ProbeResult,
    ProbeSpec,
    ResolutionStatus,
    RunConfig,
    UnsupportedRoleError,
    utc_now,
)
from nodehealth.diagnostics.probes import collect_probes
from nodehealth.diagnostics.utils import serialize_report
from nodehealth.exit_codes import ExitCode
from nodehealth.providers.agent import AgentError, ComponentHealth, ProcessStatus, QueueInfo
from nodehealth.providers.failures import (
    FailureHistoryStore,
    FailureRecord,
    FailureStoreError,
)
from nodehealth.providers.inventory import InventoryResolver

from conftest import FakeAgent


def _node(name: str = "mx01", role: NodeRole = NodeRole.PRIMARY) -> Node:
    status = (
        ResolutionStatus.RESOLVED
        if role is not NodeRole.UNSUPPORTED
        else ResolutionStatus.UNSUPPORTED_ROLE
    )
    return Node(
        identifier=name,
        name=name,
        role=role,
        status=status,
        fqdn=f"{name}.corp.example",
        role_label=role.value,
    )


@dataclass
class StubResolver:
    node: Node | None
    calls: list[str] = field(default_factory=list)

    def resolve(self, identifier: str) -> Node:
        self.calls.append(identifier)
        if self.node is None:
            raise NodeNotFoundError(identifier)
        return self.node


@dataclass
class StubFailures:
    records: tuple[FailureRecord, ...] = ()
    error: Exception | None = None
    calls: int = 0

    def lookup(self, node: Node) -> tuple[FailureRecord, ...]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.records


def _engine(
    agent: FakeAgent,
    *,
    node: Node | None = None,
    failures: StubFailures | None = None,
    probes: list[ProbeDefinition] | None = None,
    max_concurrency: int = 3,
) -> tuple[DiagnosticsEngine, StubResolver, StubFailures]:
    resolver = StubResolver(node if node is not None else _node())
    store = failures or StubFailures()
    engine = DiagnosticsEngine(
        resolver=resolver,  # type: ignore[arg-type]
        failures=store,  # type: ignore[arg-type]
        agent_factory=lambda _node: agent,  # type: ignore[arg-type, return-value]
        services=ServicesConfig(),
        thresholds=ThresholdsConfig(),
        options=ProbeExecutorOptions(max_concurrency=max_concurrency),
        probes=probes,
    )
    return engine, resolver, store


def _outcomes(results: list[ProbeResult] | tuple[ProbeResult, ...]) -> dict[str, ProbeOutcome]:
    return {result.id: result.outcome for result in results}


def test_healthy_primary_run(make_agent: Callable[..., FakeAgent]) -> None:
    agent = make_agent()
    engine, resolver, _ = _engine(agent)

    report = engine.run(RunConfig(target="mx01", level=2))

    assert resolver.calls == ["mx01"]
    assert [result.id for result in report.results] == [spec.id for spec in PROBE_CATALOG]
    assert set(_outcomes(report.results).values()) == {ProbeOutcome.PASS}
    assert report.summary.outcome is ProbeOutcome.PASS
    assert report.summary.exit_code == ExitCode.OK
    assert report.duration_ms >= 0
    assert agent.closed is True
    assert report.metadata is not None
    assert report.metadata["executed"] == 13
    assert report.metadata["flags_defaulted"] is True
    assert report.metadata["budget_exceeded"] is False


def test_results_follow_phase_order(make_agent: Callable[..., FakeAgent]) -> None:
    engine, _, _ = _engine(make_agent())

    report = engine.run(RunConfig(target="mx01"))

    kinds = [result.kind for result in report.results]
    assert kinds == sorted(kinds, key=list(ProbeKind).index)


def test_gateway_run_skips_primary_only_probes(make_agent: Callable[..., FakeAgent]) -> None:
    agent = make_agent()
    engine, _, _ = _engine(agent, node=_node("edge01", NodeRole.GATEWAY))

    report = engine.run(RunConfig(target="edge01", level=2))
    outcomes = _outcomes(report.results)

    assert len(report.results) == len(PROBE_CATALOG)
    for probe_id in ("uptime-submission", "uptime-delivery", "replication-copies"):
        assert outcomes[probe_id] is ProbeOutcome.SKIPPED
    assert "process:submission" not in agent.calls
    assert "copies" not in agent.calls
    skipped = next(result for result in report.results if result.id == "uptime-submission")
    assert skipped.data == {"reason": "role"}
    assert skipped.duration_ms == 0


def test_skipped_markers_for_unrequested_categories(
    make_agent: Callable[..., FakeAgent],
) -> None:
    agent = make_agent()
    engine, _, _ = _engine(agent)

    report = engine.run(RunConfig(target="mx01", flags=DeepCheckFlags(queues=True)))
    outcomes = _outcomes(report.results)

    assert outcomes["queues-depth"] is ProbeOutcome.PASS
    assert outcomes["mailflow-recent"] is ProbeOutcome.SKIPPED
    assert outcomes["replication-copies"] is ProbeOutcome.SKIPPED
    assert outcomes["queues-poison"] is ProbeOutcome.SKIPPED
    assert "last_message" not in agent.calls
    assert report.metadata is not None
    assert report.metadata["flags_defaulted"] is False


def test_unreachable_subsystem_is_contained(make_agent: Callable[..., FakeAgent]) -> None:
    agent = make_agent(errors={"health:store": AgentError("timed out after 1.5s")})
    engine, _, _ = _engine(agent)

    report = engine.run(RunConfig(target="mx01"))
    outcomes = _outcomes(report.results)

    assert outcomes["health-store"] is ProbeOutcome.FAIL
    assert outcomes["health-transport"] is ProbeOutcome.PASS
    assert outcomes["health-directory"] is ProbeOutcome.PASS
    assert outcomes["queues-depth"] is ProbeOutcome.PASS
    assert report.summary.outcome is ProbeOutcome.FAIL
    assert report.summary.totals[ProbeOutcome.FAIL] == 1
    assert report.summary.exit_code == ExitCode.OK


def test_strict_run_sets_failure_exit_code(make_agent: Callable[..., FakeAgent]) -> None:
    agent = make_agent(
        health={"store": ComponentHealth(name="store", healthy=False, detail="dismounted")}
    )
    engine, _, _ = _engine(agent)

    report = engine.run(RunConfig(target="mx01"), strict=True)

    assert report.summary.exit_code == ExitCode.PROBE_FAILURE


def test_degraded_results_do_not_fail_strict_run(make_agent: Callable[..., FakeAgent]) -> None:
    engine, _, _ = _engine(make_agent(copies=[]))

    report = engine.run(RunConfig(target="mx01"), strict=True)

    assert report.summary.outcome is ProbeOutcome.DEGRADED
    assert report.summary.exit_code == ExitCode.OK


def test_unexpected_probe_exception_is_contained(make_agent: Callable[..., FakeAgent]) -> None:
    def _explode(context: ProbeContext) -> ProbeResult:
        raise KeyError("boom")

    probes = [
        ProbeDefinition(spec=definition.spec, run=_explode)
        if definition.id == "activity-throughput"
        else definition
        for definition in collect_probes()
    ]
    engine, _, _ = _engine(make_agent(), probes=probes)

    report = engine.run(RunConfig(target="mx01"))
    activity = next(result for result in report.results if result.id == "activity-throughput")

    assert activity.outcome is ProbeOutcome.FAIL
    assert activity.warnings == ("unhandled-exception",)
    assert activity.data is not None
    assert "KeyError" in activity.data["traceback"]
    assert _outcomes(report.results)["health-transport"] is ProbeOutcome.PASS


def test_resolution_failure_runs_nothing(make_agent: Callable[..., FakeAgent]) -> None:
    agent = make_agent()
    resolver = StubResolver(None)
    engine = DiagnosticsEngine(
        resolver=resolver,  # type: ignore[arg-type]
        failures=StubFailures(),  # type: ignore[arg-type]
        agent_factory=lambda _node: agent,  # type: ignore[arg-type, return-value]
        services=ServicesConfig(),
        thresholds=ThresholdsConfig(),
    )

    with pytest.raises(NodeNotFoundError, match="Node 'ghost': not found"):
        engine.run(RunConfig(target="ghost"))

    assert agent.calls == []


def test_unsupported_role_is_rejected(make_agent: Callable[..., FakeAgent]) -> None:
    agent = make_agent()
    engine, _, _ = _engine(agent, node=_node("cas01", NodeRole.UNSUPPORTED))

    with pytest.raises(UnsupportedRoleError) as excinfo:
        engine.run(RunConfig(target="cas01"))

    assert excinfo.value.identifier == "cas01"
    assert agent.calls == []


def test_uptime_feeds_later_probes(make_agent: Callable[..., FakeAgent]) -> None:
    restarted = utc_now()
    processes = {
        "transport": ProcessStatus(name="transport", running=True, started_at=restarted),
        "submission": ProcessStatus(name="submission", running=True, started_at=restarted),
        "delivery": ProcessStatus(name="delivery", running=True, started_at=restarted),
    }
    queues = [QueueInfo(identity="mx01\\submission", kind="submission", message_count=2000)]
    engine, _, _ = _engine(make_agent(processes=processes, queues=queues))

    report = engine.run(RunConfig(target="mx01", flags=DeepCheckFlags(queues=True)))
    depth = next(result for result in report.results if result.id == "queues-depth")

    assert depth.outcome is ProbeOutcome.DEGRADED
    assert depth.warnings == ("queues:suppressed-recent-restart",)


def test_known_failures_are_attached_to_deep_results(
    make_agent: Callable[..., FakeAgent],
) -> None:
    record = FailureRecord(
        node="mx01",
        summary="Queue backlog after certificate expiry.",
        raw={"node": "mx01", "summary": "Queue backlog after certificate expiry."},
    )
    store = StubFailures(records=(record,))
    engine, _, _ = _engine(make_agent(), failures=store)

    report = engine.run(RunConfig(target="mx01"))

    assert store.calls == 1
    deep = [result for result in report.results if result.kind is ProbeKind.ROLE_SPECIFIC]
    executed = [result for result in deep if result.outcome is not ProbeOutcome.SKIPPED]
    assert executed
    for result in executed:
        assert result.data is not None
        assert result.data["known_failures"][0]["summary"].startswith("Queue backlog")
    assert all(result.outcome is not ProbeOutcome.FAIL for result in report.results)


def test_failure_history_error_is_noted(make_agent: Callable[..., FakeAgent]) -> None:
    store = StubFailures(error=FailureStoreError("Failed to parse failure history"))
    engine, _, _ = _engine(make_agent(), failures=store)

    report = engine.run(RunConfig(target="mx01"))

    assert report.metadata is not None
    assert report.metadata["notes"] == [
        "Failure history unavailable: Failed to parse failure history"
    ]
    assert report.summary.outcome is ProbeOutcome.PASS


def test_failure_history_not_read_without_deep_checks(
    make_agent: Callable[..., FakeAgent],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = StubFailures()
    engine, _, _ = _engine(make_agent(), failures=store)
    monkeypatch.setattr(
        engine_module,
        "applicable",
        lambda role, flags, level: engine_module.GatePlan(
            role=role,
            flags=flags,
            level=level,
            entries=tuple(
                engine_module.GateEntry(spec=spec)
                for spec in PROBE_CATALOG
                if spec.kind is not ProbeKind.ROLE_SPECIFIC
            ),
        ),
    )

    engine.run(RunConfig(target="mx01"))

    assert store.calls == 0


def test_budget_overrun_is_reported(
    make_agent: Callable[..., FakeAgent],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(engine_module, "RUN_BUDGET_SECONDS", 0.0)
    slow = make_agent()
    original = slow.component_health

    def _slow_health(component: str, *, timeout: float | None = None) -> ComponentHealth:
        time.sleep(0.01)
        return original(component, timeout=timeout)

    slow.component_health = _slow_health  # type: ignore[method-assign]
    engine, _, _ = _engine(slow)

    report = engine.run(RunConfig(target="mx01"))

    assert report.metadata is not None
    assert report.metadata["budget_exceeded"] is True


def test_agent_build_failure_fails_selected_checks() -> None:
    def _factory(node: Node) -> FakeAgent:
        raise AgentError("Invalid agent URL 'http://edge01:notaport': Invalid port: 'notaport'")

    engine = DiagnosticsEngine(
        resolver=StubResolver(_node("edge01", NodeRole.GATEWAY)),  # type: ignore[arg-type]
        failures=StubFailures(),  # type: ignore[arg-type]
        agent_factory=_factory,  # type: ignore[arg-type]
        services=ServicesConfig(),
        thresholds=ThresholdsConfig(),
    )

    report = engine.run(RunConfig(target="edge01"))
    outcomes = _outcomes(report.results)

    assert [result.id for result in report.results] == [spec.id for spec in PROBE_CATALOG]
    assert outcomes["uptime-transport"] is ProbeOutcome.FAIL
    assert outcomes["queues-depth"] is ProbeOutcome.FAIL
    assert outcomes["uptime-submission"] is ProbeOutcome.SKIPPED
    assert outcomes["mailflow-roundtrip"] is ProbeOutcome.SKIPPED
    failed = next(result for result in report.results if result.id == "health-store")
    assert "notaport" in failed.message
    assert report.summary.outcome is ProbeOutcome.FAIL
    assert report.summary.exit_code == ExitCode.OK
    assert report.metadata is not None
    (note,) = report.metadata["notes"]
    assert note.startswith("Status agent unavailable")


def test_duration_includes_resolution(make_agent: Callable[..., FakeAgent]) -> None:
    class SlowResolver(StubResolver):
        def resolve(self, identifier: str) -> Node:
            time.sleep(0.02)
            return super().resolve(identifier)

    engine = DiagnosticsEngine(
        resolver=SlowResolver(_node()),  # type: ignore[arg-type]
        failures=StubFailures(),  # type: ignore[arg-type]
        agent_factory=lambda _node: make_agent(),  # type: ignore[arg-type, return-value]
        services=ServicesConfig(),
        thresholds=ThresholdsConfig(),
    )

    report = engine.run(RunConfig(target="mx01"))

    assert report.duration_ms >= 20


def test_with_real_providers(
    make_agent: Callable[..., FakeAgent],
    inventory_file: Path,
    tmp_path: Path,
) -> None:
    failures = tmp_path / "failures.yml"
    failures.write_text(
        "failures:\n  - node: mx01.corp.example\n    summary: Disk full\n",
        encoding="utf-8",
    )
    agent = make_agent()
    seen: list[Node] = []

    def _factory(node: Node) -> FakeAgent:
        seen.append(node)
        return agent

    engine = DiagnosticsEngine(
        resolver=InventoryResolver(inventory_file),
        failures=FailureHistoryStore(failures),
        agent_factory=_factory,  # type: ignore[arg-type]
        services=ServicesConfig(),
        thresholds=ThresholdsConfig(),
    )

    report = engine.run(RunConfig(target="MAIL1"))

    assert seen[0].name == "mx01"
    assert report.node.identifier == "MAIL1"
    assert serialize_report(report)["node"]["metadata"] == {"site": "hq"}
    depth = next(result for result in report.results if result.id == "queues-depth")
    assert depth.data is not None
    assert depth.data["known_failures"] == [{"node": "mx01.corp.example", "summary": "Disk full"}]


# ---------------------------------------------------------------------------
# run_probes harness
# ---------------------------------------------------------------------------


def _context(agent: FakeAgent) -> ProbeContext:
    return ProbeContext(
        node=_node(),
        level=1,
        agent=agent,  # type: ignore[arg-type]
        services=ServicesConfig(),
        thresholds=ThresholdsConfig(),
        options=ProbeExecutorOptions(),
        started_at=utc_now(),
    )


def _spec(probe_id: str) -> ProbeSpec:
    return ProbeSpec(
        id=probe_id,
        kind=ProbeKind.SUBSYSTEM,
        roles=frozenset({NodeRole.PRIMARY}),
        description=probe_id,
    )


@pytest.mark.mutation_timeout
def test_run_probes_preserves_order_under_concurrency(
    make_agent: Callable[..., FakeAgent],
) -> None:
    delays = {"first": 0.05, "second": 0.0, "third": 0.02}
    active = 0
    peak = 0
    lock = threading.Lock()

    def _make(probe_id: str) -> ProbeDefinition:
        def _run(context: ProbeContext) -> ProbeResult:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(delays[probe_id])
            with lock:
                active -= 1
            return ProbeResult(
                id=probe_id,
                kind=ProbeKind.SUBSYSTEM,
                outcome=ProbeOutcome.PASS,
                message="ok",
            )

        return ProbeDefinition(spec=_spec(probe_id), run=_run)

    probes = [_make(probe_id) for probe_id in delays]

    results = run_probes(_context(make_agent()), probes, max_concurrency=2)

    assert [result.id for result in results] == ["first", "second", "third"]
    assert peak <= 2
    assert all(result.duration_ms is not None for result in results)
    assert all(result.timestamp is not None for result in results)


def test_run_probes_coerces_mismatched_ids(make_agent: Callable[..., FakeAgent]) -> None:
    def _run(context: ProbeContext) -> ProbeResult:
        return ProbeResult(
            id="wrong",
            kind=ProbeKind.UPTIME,
            outcome=ProbeOutcome.DEGRADED,
            message="odd",
        )

    results = run_probes(
        _context(make_agent()),
        [ProbeDefinition(spec=_spec("health-store"), run=_run)],
    )

    assert results[0].id == "health-store"
    assert results[0].kind is ProbeKind.SUBSYSTEM


def test_run_probes_empty() -> None:
    assert run_probes(_context(FakeAgent()), []) == []

"""Probe registration entry point for node diagnostics."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

from ..providers.agent import AgentError
from .gate import PROBE_CATALOG
from .models import (
    NodeRole,
    ProbeContext,
    ProbeDefinition,
    ProbeKind,
    ProbeOutcome,
    ProbeResult,
    ProbeSpec,
)

SUBSYSTEM_COMPONENTS: tuple[str, ...] = ("transport", "store", "directory")

ACTIVITY_CATEGORIES: Mapping[NodeRole, tuple[str, ...]] = {
    NodeRole.PRIMARY: ("submitted", "received", "sent", "delivered"),
    NodeRole.GATEWAY: ("received", "sent"),
}

_HEALTHY_COPY_STATES = {"healthy", "mounted"}

ProbeHandler = Callable[[ProbeContext], ProbeResult]


def collect_probes() -> Sequence[ProbeDefinition]:
    """Return a runnable definition for every catalog entry, in order."""
    handlers = _handlers()
    return tuple(ProbeDefinition(spec=spec, run=handlers[spec.id]) for spec in PROBE_CATALOG)


def _handlers() -> Mapping[str, ProbeHandler]:
    handlers: dict[str, ProbeHandler] = {
        "uptime-transport": _probe_uptime("transport"),
        "uptime-submission": _probe_uptime("submission"),
        "uptime-delivery": _probe_uptime("delivery"),
        "activity-throughput": _probe_activity,
        "queues-depth": _probe_queues_depth,
        "queues-poison": _probe_queues_poison,
        "mailflow-recent": _probe_mailflow_recent,
        "mailflow-roundtrip": _probe_mailflow_roundtrip,
        "replication-copies": _probe_replication_copies,
        "replication-content-index": _probe_replication_content_index,
    }
    for component in SUBSYSTEM_COMPONENTS:
        handlers[f"health-{component}"] = _probe_subsystem(component)
    return handlers


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _result(
    probe_id: str,
    kind: ProbeKind,
    outcome: ProbeOutcome,
    message: str,
    *,
    measurements: Mapping[str, float] | None = None,
    data: Mapping[str, Any] | None = None,
    warnings: Sequence[str] = (),
) -> ProbeResult:
    return ProbeResult(
        id=probe_id,
        kind=kind,
        outcome=outcome,
        message=message,
        measurements=dict(measurements or {}),
        data=data,
        warnings=tuple(warnings),
    )


def skipped_result(spec: ProbeSpec, message: str) -> ProbeResult:
    """Return the explicit marker recorded for a gated-out probe."""
    return _result(spec.id, spec.kind, ProbeOutcome.SKIPPED, message)


def _service_name(context: ProbeContext, logical: str) -> str:
    return str(getattr(context.services, logical))


def _uptime_for(context: ProbeContext, logical: str) -> float | None:
    return context.uptimes.get(logical)


def _minutes(seconds: float) -> float:
    return round(seconds / 60.0, 1)


def _deep_data(context: ProbeContext, data: Mapping[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = dict(data or {})
    if context.known_failures:
        payload["known_failures"] = [record.to_dict() for record in context.known_failures]
    return payload


def _recently_restarted(context: ProbeContext) -> bool:
    uptime = _uptime_for(context, "transport")
    if uptime is None:
        return False
    return uptime < context.thresholds.warmup_minutes * 60


# ---------------------------------------------------------------------------
# Uptime probes
# ---------------------------------------------------------------------------


def _probe_uptime(logical: str) -> ProbeHandler:
    probe_id = f"uptime-{logical}"

    def _run(context: ProbeContext) -> ProbeResult:
        service = _service_name(context, logical)
        try:
            status = context.agent.process_status(service)
        except AgentError as exc:
            return _result(
                probe_id,
                ProbeKind.UPTIME,
                ProbeOutcome.FAIL,
                f"Process status for '{service}' unavailable: {exc}",
                data={"service": service},
            )
        if status is None or not status.running:
            return _result(
                probe_id,
                ProbeKind.UPTIME,
                ProbeOutcome.FAIL,
                f"Process '{service}' is not running.",
                data={"service": service},
            )
        uptime = status.uptime_seconds(context.started_at)
        if uptime is None:
            return _result(
                probe_id,
                ProbeKind.UPTIME,
                ProbeOutcome.DEGRADED,
                f"Process '{service}' is running but reported no start time.",
                data={"service": service},
                warnings=("uptime:unknown",),
            )

        measurements = {"uptime_seconds": uptime}
        data = {"service": service, "started_at": status.started_at}
        minimum = context.thresholds.min_uptime_minutes
        if uptime < minimum * 60:
            return _result(
                probe_id,
                ProbeKind.UPTIME,
                ProbeOutcome.DEGRADED,
                (
                    f"Process '{service}' restarted {_minutes(uptime)} min ago "
                    f"(below {minimum:g} min)."
                ),
                measurements=measurements,
                data=data,
                warnings=("uptime:recent-restart",),
            )
        return _result(
            probe_id,
            ProbeKind.UPTIME,
            ProbeOutcome.PASS,
            f"Process '{service}' up for {_minutes(uptime)} min.",
            measurements=measurements,
            data=data,
        )

    return _run


# ---------------------------------------------------------------------------
# Activity probe
# ---------------------------------------------------------------------------

# Event category -> process whose uptime makes a zero count suspicious.
_CATEGORY_PROCESS: Mapping[str, str] = {
    "submitted": "submission",
    "received": "transport",
    "sent": "transport",
    "delivered": "delivery",
}


def _probe_activity(context: ProbeContext) -> ProbeResult:
    categories = ACTIVITY_CATEGORIES[context.node.role]
    window = context.thresholds.activity_window_minutes
    warmup_seconds = context.thresholds.warmup_minutes * 60

    counts: dict[str, int] = {}
    for category in categories:
        try:
            counts[category] = context.agent.event_count(category, window)
        except AgentError as exc:
            return _result(
                "activity-throughput",
                ProbeKind.ACTIVITY,
                ProbeOutcome.FAIL,
                f"Event counts unavailable for '{category}': {exc}",
                measurements={f"{name}_count": value for name, value in counts.items()},
                data={"window_minutes": window},
            )

    anomalous: list[str] = []
    unjudged: list[str] = []
    for category, count in counts.items():
        if count > 0:
            continue
        uptime = _uptime_for(context, _CATEGORY_PROCESS[category])
        if uptime is None:
            unjudged.append(category)
        elif uptime > warmup_seconds:
            anomalous.append(category)

    measurements = {f"{name}_count": float(value) for name, value in counts.items()}
    data: dict[str, Any] = {"window_minutes": window, "counts": counts}
    warnings: list[str] = []
    if unjudged:
        data["unjudged"] = unjudged
        warnings.append("activity:uptime-unknown")

    if anomalous and len(anomalous) == len(counts):
        return _result(
            "activity-throughput",
            ProbeKind.ACTIVITY,
            ProbeOutcome.FAIL,
            f"No activity in the last {window} min in any category.",
            measurements=measurements,
            data={**data, "anomalous": anomalous},
            warnings=warnings,
        )
    if anomalous:
        joined = ", ".join(anomalous)
        return _result(
            "activity-throughput",
            ProbeKind.ACTIVITY,
            ProbeOutcome.DEGRADED,
            f"No {joined} activity in the last {window} min.",
            measurements=measurements,
            data={**data, "anomalous": anomalous},
            warnings=warnings,
        )
    summary = ", ".join(f"{name}={value}" for name, value in counts.items())
    return _result(
        "activity-throughput",
        ProbeKind.ACTIVITY,
        ProbeOutcome.PASS,
        f"Activity over {window} min: {summary}.",
        measurements=measurements,
        data=data,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Subsystem health probes
# ---------------------------------------------------------------------------


def _probe_subsystem(component: str) -> ProbeHandler:
    probe_id = f"health-{component}"

    def _run(context: ProbeContext) -> ProbeResult:
        timeout = context.options.component_timeout
        try:
            health = context.agent.component_health(component, timeout=timeout)
        except AgentError as exc:
            return _result(
                probe_id,
                ProbeKind.SUBSYSTEM,
                ProbeOutcome.FAIL,
                f"Component '{component}' unreachable: {exc}",
                data={"timeout_seconds": timeout},
            )
        if not health.healthy:
            detail = health.detail or "no detail"
            return _result(
                probe_id,
                ProbeKind.SUBSYSTEM,
                ProbeOutcome.FAIL,
                f"Component '{component}' reports unhealthy: {detail}",
            )
        return _result(
            probe_id,
            ProbeKind.SUBSYSTEM,
            ProbeOutcome.PASS,
            f"Component '{component}' healthy.",
            data={"detail": health.detail} if health.detail else None,
        )

    return _run


# ---------------------------------------------------------------------------
# Role-specific probes
# ---------------------------------------------------------------------------


def _agent_failure(context: ProbeContext, probe_id: str, exc: AgentError) -> ProbeResult:
    return _result(
        probe_id,
        ProbeKind.ROLE_SPECIFIC,
        ProbeOutcome.FAIL,
        f"Data source unavailable: {exc}",
        data=_deep_data(context) or None,
    )


def _probe_queues_depth(context: ProbeContext) -> ProbeResult:
    probe_id = "queues-depth"
    try:
        queues = context.agent.queues()
    except AgentError as exc:
        return _agent_failure(context, probe_id, exc)

    counted = [queue for queue in queues if queue.kind != "poison"]
    total = sum(queue.message_count for queue in counted)
    thresholds = context.thresholds
    measurements = {"total_messages": float(total), "queue_count": float(len(counted))}
    largest = sorted(counted, key=lambda queue: queue.message_count, reverse=True)[:3]
    data = _deep_data(
        context,
        {"largest": {queue.identity: queue.message_count for queue in largest}},
    )

    if total > thresholds.queue_fail:
        if _recently_restarted(context):
            return _result(
                probe_id,
                ProbeKind.ROLE_SPECIFIC,
                ProbeOutcome.DEGRADED,
                (
                    f"{total} queued messages exceeds {thresholds.queue_fail}, "
                    "but transport restarted recently; backlog may be draining."
                ),
                measurements=measurements,
                data=data,
                warnings=("queues:suppressed-recent-restart",),
            )
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.FAIL,
            f"{total} queued messages exceeds {thresholds.queue_fail}.",
            measurements=measurements,
            data=data,
        )
    if total > thresholds.queue_warn:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.DEGRADED,
            f"{total} queued messages exceeds {thresholds.queue_warn}.",
            measurements=measurements,
            data=data,
            warnings=("queues:backlog",),
        )
    return _result(
        probe_id,
        ProbeKind.ROLE_SPECIFIC,
        ProbeOutcome.PASS,
        f"{total} message(s) across {len(counted)} queue(s).",
        measurements=measurements,
        data=data,
    )


def _probe_queues_poison(context: ProbeContext) -> ProbeResult:
    probe_id = "queues-poison"
    try:
        queues = context.agent.queues()
    except AgentError as exc:
        return _agent_failure(context, probe_id, exc)

    poison = sum(queue.message_count for queue in queues if queue.kind == "poison")
    retrying = {
        queue.identity: queue.last_error
        for queue in queues
        if queue.status == "retry" and queue.last_error
    }
    measurements = {"poison_messages": float(poison), "retrying_queues": float(len(retrying))}
    data = _deep_data(context, {"retrying": retrying} if retrying else None)

    problems: list[str] = []
    if poison:
        problems.append(f"{poison} poison message(s)")
    if retrying:
        problems.append(f"{len(retrying)} queue(s) retrying with errors")
    if problems:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.DEGRADED,
            "; ".join(problems) + ".",
            measurements=measurements,
            data=data,
            warnings=("queues:poison",) if poison else ("queues:retry",),
        )
    return _result(
        probe_id,
        ProbeKind.ROLE_SPECIFIC,
        ProbeOutcome.PASS,
        "No poison messages or retrying queues.",
        measurements=measurements,
        data=data or None,
    )


def _probe_mailflow_recent(context: ProbeContext) -> ProbeResult:
    probe_id = "mailflow-recent"
    try:
        handled_at = context.agent.last_message_at()
    except AgentError as exc:
        return _agent_failure(context, probe_id, exc)

    idle_limit = context.thresholds.mailflow_idle_minutes
    idle_seconds = (
        None
        if handled_at is None
        else max((context.started_at - handled_at).total_seconds(), 0.0)
    )
    measurements = {"idle_seconds": idle_seconds} if idle_seconds is not None else {}
    data = _deep_data(context, {"handled_at": handled_at})

    if idle_seconds is not None and idle_seconds <= idle_limit * 60:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.PASS,
            f"Last message handled {_minutes(idle_seconds)} min ago.",
            measurements=measurements,
            data=data,
        )

    transport_uptime = _uptime_for(context, "transport")
    idle_text = (
        "No message handled since records began"
        if idle_seconds is None
        else f"No message handled for {_minutes(idle_seconds)} min"
    )
    if transport_uptime is not None and transport_uptime < idle_limit * 60:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.PASS,
            f"{idle_text}; expected, transport up only {_minutes(transport_uptime)} min.",
            measurements=measurements,
            data=data,
            warnings=("mailflow:suppressed-recent-restart",),
        )
    return _result(
        probe_id,
        ProbeKind.ROLE_SPECIFIC,
        ProbeOutcome.FAIL,
        f"{idle_text} (limit {idle_limit:g} min).",
        measurements=measurements,
        data=data,
    )


def _probe_mailflow_roundtrip(context: ProbeContext) -> ProbeResult:
    probe_id = "mailflow-roundtrip"
    try:
        outcome = context.agent.mailflow_test()
    except AgentError as exc:
        return _agent_failure(context, probe_id, exc)

    measurements = (
        {"latency_ms": float(outcome.latency_ms)} if outcome.latency_ms is not None else {}
    )
    data = _deep_data(context, {"detail": outcome.detail} if outcome.detail else None)
    if not outcome.success:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.FAIL,
            f"Synthetic round trip failed: {outcome.detail or 'no detail'}",
            measurements=measurements,
            data=data,
        )
    limit = context.thresholds.roundtrip_warn_ms
    if outcome.latency_ms is not None and outcome.latency_ms > limit:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.DEGRADED,
            f"Round trip took {outcome.latency_ms} ms (above {limit} ms).",
            measurements=measurements,
            data=data,
            warnings=("mailflow:slow",),
        )
    latency_text = f" in {outcome.latency_ms} ms" if outcome.latency_ms is not None else ""
    return _result(
        probe_id,
        ProbeKind.ROLE_SPECIFIC,
        ProbeOutcome.PASS,
        f"Synthetic round trip succeeded{latency_text}.",
        measurements=measurements,
        data=data or None,
    )


def _probe_replication_copies(context: ProbeContext) -> ProbeResult:
    probe_id = "replication-copies"
    try:
        copies = context.agent.database_copies()
    except AgentError as exc:
        return _agent_failure(context, probe_id, exc)

    if not copies:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.DEGRADED,
            "No database copies reported.",
            data=_deep_data(context) or None,
            warnings=("replication:no-copies",),
        )

    limit = context.thresholds.replication_queue_warn
    unhealthy = {
        copy.database: copy.status
        for copy in copies
        if copy.status.lower() not in _HEALTHY_COPY_STATES
    }
    lagging = {
        copy.database: max(copy.copy_queue_length, copy.replay_queue_length)
        for copy in copies
        if max(copy.copy_queue_length, copy.replay_queue_length) > limit
    }
    measurements = {
        "copies": float(len(copies)),
        "max_copy_queue": float(max(copy.copy_queue_length for copy in copies)),
        "max_replay_queue": float(max(copy.replay_queue_length for copy in copies)),
    }
    data = _deep_data(context, {"statuses": {copy.database: copy.status for copy in copies}})

    if unhealthy:
        joined = ", ".join(f"{name}={state}" for name, state in sorted(unhealthy.items()))
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.FAIL,
            f"Database copies not healthy: {joined}.",
            measurements=measurements,
            data=data,
        )
    if lagging:
        joined = ", ".join(f"{name}={length}" for name, length in sorted(lagging.items()))
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.DEGRADED,
            f"Replication queues above {limit}: {joined}.",
            measurements=measurements,
            data=data,
            warnings=("replication:lag",),
        )
    return _result(
        probe_id,
        ProbeKind.ROLE_SPECIFIC,
        ProbeOutcome.PASS,
        f"{len(copies)} database copy(ies) healthy.",
        measurements=measurements,
        data=data,
    )


def _probe_replication_content_index(context: ProbeContext) -> ProbeResult:
    probe_id = "replication-content-index"
    try:
        copies = context.agent.database_copies()
    except AgentError as exc:
        return _agent_failure(context, probe_id, exc)

    if not copies:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.DEGRADED,
            "No database copies reported.",
            data=_deep_data(context) or None,
            warnings=("replication:no-copies",),
        )

    states = {copy.database: copy.content_index_state.lower() for copy in copies}
    failed = sorted(name for name, state in states.items() if state == "failed")
    other = sorted(name for name, state in states.items() if state not in {"healthy", "failed"})
    data = _deep_data(context, {"states": states})

    if failed:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.FAIL,
            f"Content index failed for: {', '.join(failed)}.",
            data=data,
        )
    if other:
        return _result(
            probe_id,
            ProbeKind.ROLE_SPECIFIC,
            ProbeOutcome.DEGRADED,
            f"Content index not healthy for: {', '.join(other)}.",
            data=data,
            warnings=("replication:content-index",),
        )
    return _result(
        probe_id,
        ProbeKind.ROLE_SPECIFIC,
        ProbeOutcome.PASS,
        f"Content index healthy for {len(states)} database(s).",
        data=data,
    )


__all__ = [
    "ACTIVITY_CATEGORIES",
    "SUBSYSTEM_COMPONENTS",
    "collect_probes",
    "skipped_result",
]

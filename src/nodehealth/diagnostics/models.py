"""Data models and helpers for node diagnostics."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..exit_codes import ExitCode

if TYPE_CHECKING:
    from ..config import ServicesConfig, ThresholdsConfig
    from ..providers.agent import NodeAgentClient
    from ..providers.failures import FailureRecord

# Advisory ceiling for a whole run; exceeding it is reported, never enforced.
RUN_BUDGET_SECONDS = 15.0

MIN_LEVEL = 1
MAX_LEVEL = 2


class NodeRole(str, Enum):
    """Role a node plays; only two roles are supported by the probes."""

    PRIMARY = "primary"
    GATEWAY = "gateway"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_label(cls, label: str | None) -> NodeRole:
        """Map an inventory role label onto a :class:`NodeRole`."""
        if label is None:
            return cls.UNSUPPORTED
        return _ROLE_LABELS.get(label.strip().lower(), cls.UNSUPPORTED)


_ROLE_LABELS: Mapping[str, NodeRole] = {
    "primary": NodeRole.PRIMARY,
    "mailbox": NodeRole.PRIMARY,
    "gateway": NodeRole.GATEWAY,
    "edge": NodeRole.GATEWAY,
}

SUPPORTED_ROLES: frozenset[NodeRole] = frozenset({NodeRole.PRIMARY, NodeRole.GATEWAY})


class ResolutionStatus(str, Enum):
    """How the directory lookup concluded for a node."""

    RESOLVED = "resolved"
    UNSUPPORTED_ROLE = "unsupported-role"


class ProbeOutcome(str, Enum):
    """Outcome recorded for a single probe."""

    PASS = "pass"
    DEGRADED = "degraded"
    FAIL = "fail"
    SKIPPED = "skipped"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the outcome represents a failure."""
        return self is ProbeOutcome.FAIL

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the outcome represents a degraded measurement."""
        return self is ProbeOutcome.DEGRADED


class ProbeKind(str, Enum):
    """Probe variant; declaration order is the execution order."""

    UPTIME = "uptime"
    ACTIVITY = "activity"
    SUBSYSTEM = "subsystem"
    ROLE_SPECIFIC = "role-specific"


PHASE_ORDER: tuple[ProbeKind, ...] = tuple(ProbeKind)


class DeepCategory(str, Enum):
    """Deep-check categories a caller may request explicitly."""

    QUEUES = "queues"
    MAILFLOW = "mailflow"
    REPLICATION = "replication"


class SkipReason(str, Enum):
    """Why the role gate left a probe out of a run."""

    ROLE = "role"
    FLAG = "flag"
    LEVEL = "level"


class NodeResolutionError(RuntimeError):
    """Raised when the target node cannot be used for a run."""

    def __init__(self, identifier: str, reason: str) -> None:
        """Record the requested identifier and the failure reason."""
        super().__init__(f"Node '{identifier}': {reason}")
        self.identifier = identifier
        self.reason = reason


class NodeNotFoundError(NodeResolutionError):
    """Raised when the directory has no entry for the identifier."""

    def __init__(self, identifier: str) -> None:
        """Build the not-found message for *identifier*."""
        super().__init__(identifier, "not found in inventory")


class AmbiguousNodeError(NodeResolutionError):
    """Raised when an identifier matches more than one directory entry."""

    def __init__(self, identifier: str, candidates: Sequence[str]) -> None:
        """Build the ambiguity message listing *candidates*."""
        joined = ", ".join(sorted(candidates))
        super().__init__(identifier, f"ambiguous; matches {joined}")
        self.candidates = tuple(candidates)


class UnsupportedRoleError(NodeResolutionError):
    """Raised when a node resolves to a role the probes do not cover."""

    def __init__(self, identifier: str, role_label: str | None) -> None:
        """Build the unsupported-role message."""
        label = role_label or "<none>"
        super().__init__(
            identifier,
            f"role '{label}' is unsupported (supported: primary, gateway)",
        )
        self.role_label = role_label


@dataclass(slots=True, frozen=True)
class Node:
    """Resolved identity of the node under test."""

    identifier: str
    name: str
    role: NodeRole
    status: ResolutionStatus
    fqdn: str | None = None
    role_label: str | None = None
    agent_url: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        """Return the best network address for the node."""
        return self.fqdn or self.name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "identifier": self.identifier,
            "name": self.name,
            "fqdn": self.fqdn,
            "role": self.role.value,
            "role_label": self.role_label,
            "status": self.status.value,
            "agent_url": self.agent_url,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True, frozen=True)
class DeepCheckFlags:
    """Explicitly requested deep-check categories."""

    queues: bool = False
    mailflow: bool = False
    replication: bool = False

    @classmethod
    def all(cls) -> DeepCheckFlags:
        """Return flags with every category requested."""
        return cls(queues=True, mailflow=True, replication=True)

    @property
    def any_set(self) -> bool:
        """Return ``True`` when at least one category was requested."""
        return self.queues or self.mailflow or self.replication

    def selected_categories(self) -> frozenset[DeepCategory]:
        """Return requested categories; none requested means all of them."""
        if not self.any_set:
            return frozenset(DeepCategory)
        chosen = {
            DeepCategory.QUEUES: self.queues,
            DeepCategory.MAILFLOW: self.mailflow,
            DeepCategory.REPLICATION: self.replication,
        }
        return frozenset(category for category, enabled in chosen.items() if enabled)

    def to_dict(self) -> dict[str, bool]:
        """Return a serialisable representation."""
        return {
            "queues": self.queues,
            "mailflow": self.mailflow,
            "replication": self.replication,
        }


@dataclass(slots=True, frozen=True)
class RunConfig:
    """Immutable request for a single diagnostics run."""

    target: str
    flags: DeepCheckFlags = DeepCheckFlags()
    level: int = MIN_LEVEL

    def __post_init__(self) -> None:
        """Reject blank targets and out-of-range escalation levels."""
        if not self.target.strip():
            raise ValueError("Target node identifier must be a non-empty string.")
        if not MIN_LEVEL <= self.level <= MAX_LEVEL:
            raise ValueError(
                f"Escalation level must be between {MIN_LEVEL} and {MAX_LEVEL}; "
                f"got {self.level}."
            )


@dataclass(slots=True, frozen=True)
class ProbeExecutorOptions:
    """Runtime tunables for executing probes."""

    max_concurrency: int = 3
    component_timeout: float = 1.5


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Execution context provided to probes.

    ``uptimes`` and ``known_failures`` are filled in by the engine between
    phases; probes only ever read them.
    """

    node: Node
    level: int
    agent: NodeAgentClient
    services: ServicesConfig
    thresholds: ThresholdsConfig
    options: ProbeExecutorOptions
    started_at: datetime
    uptimes: Mapping[str, float | None] = field(default_factory=dict)
    known_failures: Sequence[FailureRecord] = ()


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running (or skipping) a probe."""

    id: str
    kind: ProbeKind
    outcome: ProbeOutcome
    message: str
    measurements: Mapping[str, float] = field(default_factory=dict)
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)
    timestamp: datetime | None = None
    duration_ms: int | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.outcome.is_failure

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the probe result represents a warning."""
        return self.outcome.is_warning


@dataclass(slots=True, frozen=True)
class ProbeSpec:
    """Static description of a probe used by the role gate."""

    id: str
    kind: ProbeKind
    roles: frozenset[NodeRole]
    description: str
    deep_category: DeepCategory | None = None
    min_level: int = MIN_LEVEL


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Gate metadata + callable for a probe."""

    spec: ProbeSpec
    run: Callable[[ProbeContext], ProbeResult]

    @property
    def id(self) -> str:
        """Return the probe identifier."""
        return self.spec.id

    @property
    def kind(self) -> ProbeKind:
        """Return the probe variant."""
        return self.spec.kind


@dataclass(slots=True, frozen=True)
class ReportSummary:
    """Aggregated summary derived from probe results."""

    outcome: ProbeOutcome
    totals: Mapping[ProbeOutcome, int]
    exit_code: int


@dataclass(slots=True, frozen=True)
class HealthReport:
    """Complete report for a diagnostics run."""

    node: Node
    results: Sequence[ProbeResult]
    summary: ReportSummary
    duration_ms: int
    metadata: Mapping[str, Any] | None = None


OUTCOME_ORDER: Mapping[ProbeOutcome, int] = {
    ProbeOutcome.SKIPPED: 0,
    ProbeOutcome.PASS: 1,
    ProbeOutcome.DEGRADED: 2,
    ProbeOutcome.FAIL: 3,
}


def aggregate_results(
    results: Iterable[ProbeResult],
    *,
    strict: bool = False,
) -> ReportSummary:
    """Compute the worst outcome, per-outcome totals and the exit code.

    Skipped results are counted but never influence the overall outcome. The
    exit code stays ``OK`` unless *strict* is set and a probe failed.
    """
    totals: dict[ProbeOutcome, int] = {outcome: 0 for outcome in ProbeOutcome}
    worst = ProbeOutcome.PASS
    for result in results:
        totals[result.outcome] += 1
        if OUTCOME_ORDER[result.outcome] > OUTCOME_ORDER[worst]:
            worst = result.outcome

    exit_code = ExitCode.OK
    if strict and worst is ProbeOutcome.FAIL:
        exit_code = ExitCode.PROBE_FAILURE
    return ReportSummary(outcome=worst, totals=totals, exit_code=int(exit_code))


def build_report(
    node: Node,
    results: Sequence[ProbeResult],
    *,
    duration_ms: int,
    metadata: Mapping[str, Any] | None = None,
    strict: bool = False,
) -> HealthReport:
    """Create a full HealthReport from probe results."""
    summary = aggregate_results(results, strict=strict)
    return HealthReport(
        node=node,
        results=tuple(results),
        summary=summary,
        duration_ms=duration_ms,
        metadata=metadata,
    )


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(UTC)

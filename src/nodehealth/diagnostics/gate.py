"""Role gate: decides which catalog probes apply to a run."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .models import (
    MAX_LEVEL,
    MIN_LEVEL,
    DeepCategory,
    DeepCheckFlags,
    NodeRole,
    ProbeKind,
    ProbeSpec,
    SkipReason,
)

_BOTH = frozenset({NodeRole.PRIMARY, NodeRole.GATEWAY})
_PRIMARY_ONLY = frozenset({NodeRole.PRIMARY})

# Fixed priority order; every run reports one result per entry.
PROBE_CATALOG: tuple[ProbeSpec, ...] = (
    ProbeSpec(
        id="uptime-transport",
        kind=ProbeKind.UPTIME,
        roles=_BOTH,
        description="Transport process uptime.",
    ),
    ProbeSpec(
        id="uptime-submission",
        kind=ProbeKind.UPTIME,
        roles=_PRIMARY_ONLY,
        description="Submission process uptime.",
    ),
    ProbeSpec(
        id="uptime-delivery",
        kind=ProbeKind.UPTIME,
        roles=_PRIMARY_ONLY,
        description="Delivery process uptime.",
    ),
    ProbeSpec(
        id="activity-throughput",
        kind=ProbeKind.ACTIVITY,
        roles=_BOTH,
        description="Recent message throughput per category.",
    ),
    ProbeSpec(
        id="health-transport",
        kind=ProbeKind.SUBSYSTEM,
        roles=_BOTH,
        description="Transport component health endpoint.",
    ),
    ProbeSpec(
        id="health-store",
        kind=ProbeKind.SUBSYSTEM,
        roles=_BOTH,
        description="Store component health endpoint.",
    ),
    ProbeSpec(
        id="health-directory",
        kind=ProbeKind.SUBSYSTEM,
        roles=_BOTH,
        description="Directory access component health endpoint.",
    ),
    ProbeSpec(
        id="queues-depth",
        kind=ProbeKind.ROLE_SPECIFIC,
        roles=_BOTH,
        deep_category=DeepCategory.QUEUES,
        description="Total queued messages against thresholds.",
    ),
    ProbeSpec(
        id="queues-poison",
        kind=ProbeKind.ROLE_SPECIFIC,
        roles=_BOTH,
        deep_category=DeepCategory.QUEUES,
        min_level=2,
        description="Poison and retrying queues.",
    ),
    ProbeSpec(
        id="mailflow-recent",
        kind=ProbeKind.ROLE_SPECIFIC,
        roles=_BOTH,
        deep_category=DeepCategory.MAILFLOW,
        description="Time since the last handled message.",
    ),
    ProbeSpec(
        id="mailflow-roundtrip",
        kind=ProbeKind.ROLE_SPECIFIC,
        roles=_BOTH,
        deep_category=DeepCategory.MAILFLOW,
        min_level=2,
        description="Synthetic message round trip.",
    ),
    ProbeSpec(
        id="replication-copies",
        kind=ProbeKind.ROLE_SPECIFIC,
        roles=_PRIMARY_ONLY,
        deep_category=DeepCategory.REPLICATION,
        description="Database copy status and queue lengths.",
    ),
    ProbeSpec(
        id="replication-content-index",
        kind=ProbeKind.ROLE_SPECIFIC,
        roles=_PRIMARY_ONLY,
        deep_category=DeepCategory.REPLICATION,
        min_level=2,
        description="Content index state of each database copy.",
    ),
)


@dataclass(slots=True, frozen=True)
class GateEntry:
    """Gate decision for a single catalog probe."""

    spec: ProbeSpec
    skip_reason: SkipReason | None = None

    @property
    def selected(self) -> bool:
        """Return ``True`` when the probe should run."""
        return self.skip_reason is None

    def skip_message(self) -> str:
        """Return the operator-facing reason a probe was skipped."""
        if self.skip_reason is SkipReason.ROLE:
            roles = ", ".join(sorted(role.value for role in self.spec.roles))
            return f"Not applicable to this role (applies to: {roles})."
        if self.skip_reason is SkipReason.FLAG:
            category = self.spec.deep_category.value if self.spec.deep_category else "-"
            return f"Deep-check category '{category}' was not requested."
        if self.skip_reason is SkipReason.LEVEL:
            return f"Requires escalation level {self.spec.min_level}."
        return ""


@dataclass(slots=True, frozen=True)
class GatePlan:
    """Ordered gate decisions for every catalog probe."""

    role: NodeRole
    flags: DeepCheckFlags
    level: int
    entries: tuple[GateEntry, ...]

    @property
    def selected(self) -> tuple[ProbeSpec, ...]:
        """Return the probes that will run, in execution order."""
        return tuple(entry.spec for entry in self.entries if entry.selected)

    @property
    def skipped(self) -> tuple[GateEntry, ...]:
        """Return the entries that were gated out."""
        return tuple(entry for entry in self.entries if not entry.selected)

    def selected_ids(self) -> tuple[str, ...]:
        """Return identifiers of the probes that will run."""
        return tuple(spec.id for spec in self.selected)

    def for_kind(self, kind: ProbeKind) -> tuple[GateEntry, ...]:
        """Return the entries belonging to one execution phase."""
        return tuple(entry for entry in self.entries if entry.spec.kind is kind)


def _decide(
    spec: ProbeSpec,
    role: NodeRole,
    categories: frozenset[DeepCategory],
    level: int,
) -> SkipReason | None:
    if role not in spec.roles:
        return SkipReason.ROLE
    if spec.deep_category is not None and spec.deep_category not in categories:
        return SkipReason.FLAG
    if spec.min_level > level:
        return SkipReason.LEVEL
    return None


def applicable(
    role: NodeRole,
    flags: DeepCheckFlags,
    level: int,
    *,
    catalog: Sequence[ProbeSpec] = PROBE_CATALOG,
) -> GatePlan:
    """Return the gate plan for *role*, *flags* and escalation *level*.

    The result is a pure function of its inputs. Requesting no deep-check
    category is equivalent to requesting all of them.
    """
    if role is NodeRole.UNSUPPORTED:
        raise ValueError("Cannot gate probes for an unsupported role.")
    if not MIN_LEVEL <= level <= MAX_LEVEL:
        raise ValueError(
            f"Escalation level must be between {MIN_LEVEL} and {MAX_LEVEL}; got {level}."
        )
    categories = flags.selected_categories()
    entries = tuple(
        GateEntry(spec=spec, skip_reason=_decide(spec, role, categories, level))
        for spec in catalog
    )
    return GatePlan(role=role, flags=flags, level=level, entries=entries)


__all__ = ["GateEntry", "GatePlan", "PROBE_CATALOG", "applicable"]

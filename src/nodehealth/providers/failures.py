"""Known-failure history store.

Operators keep a YAML file of past incidents per node::

    failures:
      - node: mx01
        recorded_at: 2026-03-02T08:15:00Z
        summary: Store service crashed after patching.
        reference: INC-4411

Records are surfaced verbatim in deep-check results and never influence an
outcome.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from ..diagnostics.models import Node


class FailureStoreError(RuntimeError):
    """Raised when the failure history cannot be read."""


@dataclass(slots=True, frozen=True)
class FailureRecord:
    """One recorded failure for a node, kept as written."""

    node: str
    summary: str
    recorded_at: str | None = None
    reference: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return the record exactly as stored."""
        return {str(key): value for key, value in self.raw.items()}


@dataclass(frozen=True)
class FailureHistoryStore:
    """Read-only access to the failure history file."""

    path: Path

    def lookup(self, node: Node) -> tuple[FailureRecord, ...]:
        """Return the records whose ``node`` matches *node*'s name or FQDN."""
        if not self.path.exists():
            return ()
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise FailureStoreError(f"Failed to parse failure history {self.path}: {exc}") from exc
        except OSError as exc:
            raise FailureStoreError(f"Failed to read failure history {self.path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise FailureStoreError(f"Failure history {self.path} must contain a mapping.")
        raw_entries = data.get("failures", [])
        if not isinstance(raw_entries, list):
            raise FailureStoreError(f"Failure history {self.path}: 'failures' must be a list.")

        wanted = {node.name.lower()}
        if node.fqdn:
            wanted.add(node.fqdn.lower())
        records: list[FailureRecord] = []
        for entry in raw_entries:
            if not isinstance(entry, Mapping):
                continue
            entry_node = entry.get("node")
            if not isinstance(entry_node, str) or entry_node.strip().lower() not in wanted:
                continue
            recorded_at = entry.get("recorded_at")
            reference = entry.get("reference")
            records.append(
                FailureRecord(
                    node=entry_node.strip(),
                    summary=str(entry.get("summary", "")),
                    # PyYAML parses bare ISO timestamps into datetimes.
                    recorded_at=str(recorded_at) if recorded_at is not None else None,
                    reference=str(reference) if reference is not None else None,
                    raw=dict(entry),
                )
            )
        return tuple(records)


__all__ = ["FailureHistoryStore", "FailureRecord", "FailureStoreError"]

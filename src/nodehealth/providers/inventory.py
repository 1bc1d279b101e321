"""YAML-backed directory resolver.

The inventory file lists the nodes an operator may check::

    nodes:
      - name: mx01
        fqdn: mx01.corp.example
        role: primary
        aliases: [mail1]
        agent_url: https://mx01.corp.example:8450
        site: hq

Identifiers match case-insensitively against ``name``, ``fqdn``, ``aliases``
and the short host label of ``fqdn``. Extra keys are kept as node metadata.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..diagnostics.models import (
    AmbiguousNodeError,
    Node,
    NodeNotFoundError,
    NodeRole,
    ResolutionStatus,
)

_RESERVED_KEYS = {"name", "fqdn", "role", "aliases", "agent_url"}


class InventoryError(RuntimeError):
    """Raised when the inventory file cannot be read or is malformed."""


@dataclass(slots=True, frozen=True)
class InventoryEntry:
    """Normalised inventory record."""

    name: str
    role_label: str | None
    fqdn: str | None = None
    aliases: tuple[str, ...] = ()
    agent_url: str | None = None
    metadata: Mapping[str, Any] | None = None

    def match_keys(self) -> set[str]:
        """Return every lower-cased identifier that selects this entry."""
        keys = {self.name.lower(), *(alias.lower() for alias in self.aliases)}
        if self.fqdn:
            fqdn = self.fqdn.lower()
            keys.add(fqdn)
            keys.add(fqdn.split(".", 1)[0])
        return keys

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "fqdn": self.fqdn,
            "role": self.role_label,
            "aliases": list(self.aliases),
            "agent_url": self.agent_url,
            "metadata": dict(self.metadata or {}),
        }


@dataclass(frozen=True)
class InventoryResolver:
    """Resolve node identifiers against a YAML inventory file."""

    path: Path

    def entries(self) -> list[InventoryEntry]:
        """Return all inventory entries in file order."""
        if not self.path.exists():
            raise InventoryError(f"Inventory file {self.path} does not exist.")
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise InventoryError(f"Failed to parse inventory file {self.path}: {exc}") from exc
        except OSError as exc:
            raise InventoryError(f"Failed to read inventory file {self.path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise InventoryError(f"Inventory file {self.path} must contain a mapping.")
        raw_nodes = data.get("nodes", [])
        if not isinstance(raw_nodes, list):
            raise InventoryError(f"Inventory file {self.path}: 'nodes' must be a list.")
        return [_parse_entry(raw, index) for index, raw in enumerate(raw_nodes)]

    def resolve(self, identifier: str) -> Node:
        """Return the :class:`Node` for *identifier*.

        Raises :class:`NodeNotFoundError` or :class:`AmbiguousNodeError`. A
        node whose role is not supported still resolves, with status
        ``unsupported-role``; rejecting it is the caller's decision.
        """
        needle = identifier.strip().lower()
        matches = _matching(self.entries(), needle)
        if not matches:
            raise NodeNotFoundError(identifier)
        if len(matches) > 1:
            raise AmbiguousNodeError(identifier, [entry.name for entry in matches])
        entry = matches[0]
        role = NodeRole.from_label(entry.role_label)
        status = (
            ResolutionStatus.RESOLVED
            if role is not NodeRole.UNSUPPORTED
            else ResolutionStatus.UNSUPPORTED_ROLE
        )
        return Node(
            identifier=identifier,
            name=entry.name,
            fqdn=entry.fqdn,
            role=role,
            role_label=entry.role_label,
            status=status,
            agent_url=entry.agent_url,
            metadata=dict(entry.metadata or {}),
        )


def _matching(entries: Iterable[InventoryEntry], needle: str) -> list[InventoryEntry]:
    # Exact name/fqdn/alias hits win over short-label hits.
    exact: list[InventoryEntry] = []
    loose: list[InventoryEntry] = []
    for entry in entries:
        explicit = {entry.name.lower(), *(alias.lower() for alias in entry.aliases)}
        if entry.fqdn:
            explicit.add(entry.fqdn.lower())
        if needle in explicit:
            exact.append(entry)
        elif needle in entry.match_keys():
            loose.append(entry)
    return exact or loose


def _parse_entry(raw: object, index: int) -> InventoryEntry:
    label = f"nodes[{index}]"
    if not isinstance(raw, Mapping):
        raise InventoryError(f"Inventory entry {label} must be a mapping.")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InventoryError(f"Inventory entry {label} requires a non-empty 'name'.")
    fqdn = raw.get("fqdn")
    if fqdn is not None and not isinstance(fqdn, str):
        raise InventoryError(f"Inventory entry {label}: 'fqdn' must be a string.")
    role = raw.get("role")
    if role is not None and not isinstance(role, str):
        raise InventoryError(f"Inventory entry {label}: 'role' must be a string.")
    aliases_raw = raw.get("aliases") or []
    if not isinstance(aliases_raw, list) or not all(isinstance(a, str) for a in aliases_raw):
        raise InventoryError(f"Inventory entry {label}: 'aliases' must be a list of strings.")
    agent_url = raw.get("agent_url")
    if agent_url is not None and not isinstance(agent_url, str):
        raise InventoryError(f"Inventory entry {label}: 'agent_url' must be a string.")
    metadata = {str(key): value for key, value in raw.items() if key not in _RESERVED_KEYS}
    return InventoryEntry(
        name=name.strip(),
        role_label=role.strip() if isinstance(role, str) else None,
        fqdn=fqdn.strip() if isinstance(fqdn, str) and fqdn.strip() else None,
        aliases=tuple(alias.strip() for alias in aliases_raw if alias.strip()),
        agent_url=agent_url.strip() if isinstance(agent_url, str) else None,
        metadata=metadata,
    )


__all__ = ["InventoryEntry", "InventoryError", "InventoryResolver"]

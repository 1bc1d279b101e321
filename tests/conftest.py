"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any

import pytest
import yaml

from nodehealth.providers.agent import (
    ComponentHealth,
    DatabaseCopy,
    MailflowTestResult,
    ProcessStatus,
    QueueInfo,
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def hours_ago(hours: float) -> datetime:
    """Return an aware timestamp *hours* in the past."""
    return datetime.now(UTC) - timedelta(hours=hours)


class FakeAgent:
    """In-memory stand-in for :class:`NodeAgentClient`.

    ``errors`` maps a query name (``process:<service>``, ``events:<category>``,
    ``health:<component>``, ``queues``, ``last_message``, ``mailflow`` or
    ``copies``) to the exception raised when it is queried.
    """

    def __init__(
        self,
        *,
        processes: Mapping[str, ProcessStatus | None] | None = None,
        events: Mapping[str, int] | None = None,
        health: Mapping[str, ComponentHealth] | None = None,
        queues: Sequence[QueueInfo] = (),
        last_message: datetime | None = None,
        mailflow: MailflowTestResult | None = None,
        copies: Sequence[DatabaseCopy] = (),
        errors: Mapping[str, Exception] | None = None,
    ) -> None:
        """Store canned answers."""
        self.processes = dict(processes or {})
        self.events = dict(events or {})
        self.health = dict(health or {})
        self._queues = list(queues)
        self.last_message = last_message
        self.mailflow = mailflow or MailflowTestResult(success=True, latency_ms=800)
        self.copies = list(copies)
        self.errors = dict(errors or {})
        self.calls: list[str] = []
        self.closed = False

    def __enter__(self) -> FakeAgent:
        """Return self."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Mark the agent closed."""
        self.closed = True

    def _record(self, key: str) -> None:
        self.calls.append(key)
        if key in self.errors:
            raise self.errors[key]

    def process_status(self, service: str) -> ProcessStatus | None:
        """Return the canned process entry."""
        self._record(f"process:{service}")
        return self.processes.get(service)

    def event_count(self, category: str, window_minutes: int) -> int:
        """Return the canned event count."""
        self._record(f"events:{category}")
        return self.events.get(category, 0)

    def component_health(self, component: str, *, timeout: float | None = None) -> ComponentHealth:
        """Return the canned component health."""
        self._record(f"health:{component}")
        return self.health.get(component, ComponentHealth(name=component, healthy=True))

    def queues(self) -> list[QueueInfo]:
        """Return the canned queues."""
        self._record("queues")
        return list(self._queues)

    def last_message_at(self) -> datetime | None:
        """Return the canned last-message timestamp."""
        self._record("last_message")
        return self.last_message

    def mailflow_test(self, *, timeout: float | None = None) -> MailflowTestResult:
        """Return the canned round trip result."""
        self._record("mailflow")
        return self.mailflow

    def database_copies(self) -> list[DatabaseCopy]:
        """Return the canned database copies."""
        self._record("copies")
        return list(self.copies)


def healthy_agent_kwargs() -> dict[str, Any]:
    """Return FakeAgent arguments describing a long-running healthy node."""
    started = hours_ago(6)
    return {
        "processes": {
            name: ProcessStatus(name=name, running=True, started_at=started)
            for name in ("transport", "submission", "delivery")
        },
        "events": {"submitted": 40, "received": 120, "sent": 95, "delivered": 38},
        "queues": [
            QueueInfo(identity="mx01\\submission", kind="submission", message_count=3),
            QueueInfo(identity="mx01\\corp.example", kind="delivery", message_count=5),
        ],
        "last_message": datetime.now(UTC) - timedelta(minutes=2),
        "copies": [
            DatabaseCopy(database="DB01", status="Mounted", content_index_state="Healthy"),
            DatabaseCopy(database="DB02", status="Healthy", content_index_state="Healthy"),
        ],
    }


@pytest.fixture
def make_agent() -> Callable[..., FakeAgent]:
    """Return a factory building healthy fake agents with overrides applied."""

    def _make(**overrides: Any) -> FakeAgent:
        kwargs = healthy_agent_kwargs()
        kwargs.update(overrides)
        return FakeAgent(**kwargs)

    return _make


INVENTORY: dict[str, object] = {
    "nodes": [
        {
            "name": "mx01",
            "fqdn": "mx01.corp.example",
            "role": "primary",
            "aliases": ["mail1"],
            "site": "hq",
        },
        {
            "name": "edge01",
            "fqdn": "edge01.dmz.example",
            "role": "gateway",
            "agent_url": "http://edge01.dmz.example:9000",
        },
        {"name": "cas01", "fqdn": "cas01.corp.example", "role": "client-access"},
        {"name": "mx02", "fqdn": "mx02.corp.example", "role": "mailbox"},
        {"name": "mx02-dr", "fqdn": "mx02.dr.example", "role": "mailbox"},
    ]
}


@pytest.fixture
def inventory_file(tmp_path: Path) -> Path:
    """Write the shared inventory fixture and return its path."""
    path = tmp_path / "inventory.yml"
    path.write_text(yaml.safe_dump(INVENTORY, sort_keys=False), encoding="utf-8")
    return path

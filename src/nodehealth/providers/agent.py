"""HTTP client for the per-node status agent.

Every probe data source (process status, event counts, component health and
the deep-check endpoints) is served by a small agent running on each node.
All calls are short, bounded by the configured timeouts, and report failures
as :class:`AgentError` so probes can turn them into results.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from types import TracebackType
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from ..config import AgentConfig
    from ..diagnostics.models import Node

LOGGER = logging.getLogger(__name__)


class AgentError(RuntimeError):
    """Raised when the status agent cannot answer a query."""


@dataclass(slots=True, frozen=True)
class ProcessStatus:
    """Process table entry reported by the agent."""

    name: str
    running: bool
    started_at: datetime | None = None

    def uptime_seconds(self, now: datetime) -> float | None:
        """Return seconds since the process started, or ``None`` if unknown."""
        if not self.running or self.started_at is None:
            return None
        return max((now - self.started_at).total_seconds(), 0.0)


@dataclass(slots=True, frozen=True)
class ComponentHealth:
    """Health endpoint answer for one component."""

    name: str
    healthy: bool
    detail: str = ""


@dataclass(slots=True, frozen=True)
class QueueInfo:
    """Single message queue snapshot."""

    identity: str
    kind: str
    message_count: int
    status: str = "active"
    last_error: str | None = None


@dataclass(slots=True, frozen=True)
class DatabaseCopy:
    """Replication state of a database copy hosted on the node."""

    database: str
    status: str
    copy_queue_length: int = 0
    replay_queue_length: int = 0
    content_index_state: str = "unknown"


@dataclass(slots=True, frozen=True)
class MailflowTestResult:
    """Result of a synthetic mail flow round trip."""

    success: bool
    latency_ms: int | None = None
    detail: str = ""


def _parse_timestamp(value: object, label: str) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise AgentError(f"Agent returned a non-string timestamp for {label}: {value!r}")
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise AgentError(f"Agent returned an invalid timestamp for {label}: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _expect_int(value: object, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise AgentError(f"Agent returned a non-integer value for {label}: {value!r}")
    return value


def _expect_list(payload: Mapping[str, Any], key: str) -> Sequence[Mapping[str, Any]]:
    entries = payload.get(key, [])
    if not isinstance(entries, list):
        raise AgentError(f"Agent payload field '{key}' must be a list.")
    return [entry for entry in entries if isinstance(entry, Mapping)]


class NodeAgentClient:
    """Thin JSON client for a node's status agent."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 2.0,
        connect_timeout: float = 1.0,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Create the underlying :class:`httpx.Client`."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        try:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self._timeout(timeout),
                verify=verify,
                transport=transport,
                headers={"Accept": "application/json"},
            )
        except (httpx.InvalidURL, ValueError) as exc:
            raise AgentError(f"Invalid agent URL {self.base_url!r}: {exc}") from exc

    @classmethod
    def for_node(
        cls,
        node: Node,
        config: AgentConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> NodeAgentClient:
        """Build a client for *node*, honouring an inventory ``agent_url``."""
        base_url = node.agent_url or f"{config.scheme}://{node.address}:{config.port}"
        return cls(
            base_url,
            timeout=config.timeout,
            connect_timeout=config.connect_timeout,
            verify=config.verify_tls,
            transport=transport,
        )

    def close(self) -> None:
        """Close pooled connections."""
        self._client.close()

    def __enter__(self) -> NodeAgentClient:
        """Return the client for use as a context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the client on context exit."""
        self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def process_status(self, service: str) -> ProcessStatus | None:
        """Return the process entry for *service*, or ``None`` when absent."""
        payload = self._get_json(f"/processes/{service}")
        if payload is None:
            return None
        return ProcessStatus(
            name=str(payload.get("name", service)),
            running=bool(payload.get("running", False)),
            started_at=_parse_timestamp(payload.get("started_at"), f"{service}.started_at"),
        )

    def event_count(self, category: str, window_minutes: int) -> int:
        """Return the number of *category* events in the trailing window."""
        payload = self._require(
            self._get_json(
                "/events",
                params={"category": category, "window_minutes": window_minutes},
            ),
            "/events",
        )
        return _expect_int(payload.get("count"), f"events.{category}")

    def component_health(self, component: str, *, timeout: float | None = None) -> ComponentHealth:
        """Return the health endpoint answer for *component*."""
        path = f"/health/{component}"
        payload = self._require(self._get_json(path, timeout=timeout), path)
        return ComponentHealth(
            name=component,
            healthy=bool(payload.get("healthy", False)),
            detail=str(payload.get("detail") or ""),
        )

    def queues(self) -> list[QueueInfo]:
        """Return the node's message queues."""
        payload = self._require(self._get_json("/queues"), "/queues")
        queues: list[QueueInfo] = []
        for entry in _expect_list(payload, "queues"):
            identity = str(entry.get("identity", "unknown"))
            last_error = entry.get("last_error")
            queues.append(
                QueueInfo(
                    identity=identity,
                    kind=str(entry.get("kind", "delivery")).lower(),
                    message_count=_expect_int(
                        entry.get("message_count", 0),
                        f"queues.{identity}.message_count",
                    ),
                    status=str(entry.get("status", "active")).lower(),
                    last_error=str(last_error) if last_error else None,
                )
            )
        return queues

    def last_message_at(self) -> datetime | None:
        """Return when the node last handled a message, if ever."""
        payload = self._require(
            self._get_json("/mailflow/last-message"),
            "/mailflow/last-message",
        )
        return _parse_timestamp(payload.get("handled_at"), "mailflow.handled_at")

    def mailflow_test(self, *, timeout: float | None = None) -> MailflowTestResult:
        """Trigger a synthetic round trip and return its outcome."""
        payload = self._require(
            self._request_json("POST", "/mailflow/test", timeout=timeout),
            "/mailflow/test",
        )
        latency = payload.get("latency_ms")
        return MailflowTestResult(
            success=bool(payload.get("success", False)),
            latency_ms=_expect_int(latency, "mailflow.latency_ms") if latency is not None else None,
            detail=str(payload.get("detail") or ""),
        )

    def database_copies(self) -> list[DatabaseCopy]:
        """Return replication state for the databases hosted on the node."""
        payload = self._require(
            self._get_json("/replication/copies"),
            "/replication/copies",
        )
        copies: list[DatabaseCopy] = []
        for entry in _expect_list(payload, "copies"):
            database = str(entry.get("database", "unknown"))
            copies.append(
                DatabaseCopy(
                    database=database,
                    status=str(entry.get("status", "unknown")),
                    copy_queue_length=_expect_int(
                        entry.get("copy_queue_length", 0),
                        f"copies.{database}.copy_queue_length",
                    ),
                    replay_queue_length=_expect_int(
                        entry.get("replay_queue_length", 0),
                        f"copies.{database}.replay_queue_length",
                    ),
                    content_index_state=str(entry.get("content_index_state", "unknown")),
                )
            )
        return copies

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _timeout(self, seconds: float) -> httpx.Timeout:
        return httpx.Timeout(seconds, connect=min(self.connect_timeout, seconds))

    def _require(self, payload: Mapping[str, Any] | None, path: str) -> Mapping[str, Any]:
        if payload is None:
            raise AgentError(f"Agent endpoint {path} not found on {self.base_url}.")
        return payload

    def _get_json(
        self,
        path: str,
        *,
        params: Mapping[str, object] | None = None,
        timeout: float | None = None,
    ) -> Mapping[str, Any] | None:
        return self._request_json("GET", path, params=params, timeout=timeout)

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, object] | None = None,
        timeout: float | None = None,
    ) -> Mapping[str, Any] | None:
        request_timeout = self._timeout(self.timeout if timeout is None else timeout)
        LOGGER.debug("agent %s %s%s params=%s", method, self.base_url, path, params)
        try:
            response = self._client.request(
                method,
                path,
                params=dict(params) if params else None,
                timeout=request_timeout,
            )
        except httpx.TimeoutException as exc:
            raise AgentError(f"{method} {path} timed out after {request_timeout.read}s.") from exc
        except httpx.HTTPError as exc:
            raise AgentError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.is_error:
            raise AgentError(f"{method} {path} returned HTTP {response.status_code}.")
        try:
            payload = response.json()
        except ValueError as exc:
            raise AgentError(f"{method} {path} returned invalid JSON.") from exc
        if not isinstance(payload, Mapping):
            raise AgentError(f"{method} {path} returned a non-object payload.")
        return payload


__all__ = [
    "AgentError",
    "ComponentHealth",
    "DatabaseCopy",
    "MailflowTestResult",
    "NodeAgentClient",
    "ProcessStatus",
    "QueueInfo",
]

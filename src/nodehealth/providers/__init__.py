"""Data-source providers for nodehealth."""
from __future__ import annotations

from .agent import (
    AgentError,
    ComponentHealth,
    DatabaseCopy,
    MailflowTestResult,
    NodeAgentClient,
    ProcessStatus,
    QueueInfo,
)
from .failures import FailureHistoryStore, FailureRecord, FailureStoreError
from .inventory import InventoryEntry, InventoryError, InventoryResolver

__all__ = [
    "AgentError",
    "ComponentHealth",
    "DatabaseCopy",
    "FailureHistoryStore",
    "FailureRecord",
    "FailureStoreError",
    "InventoryEntry",
    "InventoryError",
    "InventoryResolver",
    "MailflowTestResult",
    "NodeAgentClient",
    "ProcessStatus",
    "QueueInfo",
]

"""Execution trace models and stores."""

from .store import (
    ExecutionTrace,
    TaskResult,
    BranchDecision,
    TraceStore,
    InMemoryTraceStore,
    validate_trace,
    DEFAULT_PRIORITY,
)

__all__ = [
    "ExecutionTrace",
    "TaskResult",
    "BranchDecision",
    "TraceStore",
    "InMemoryTraceStore",
    "validate_trace",
    "DEFAULT_PRIORITY",
]

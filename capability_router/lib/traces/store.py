#!/usr/bin/env python3
# capability_router/lib/traces/store.py
"""Execution trace models and the trace store interface."""

import abc
import os
import json
import time
import uuid
import logging
import threading
from typing import Dict, List, Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from ..errors import MalformedTraceError

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 0.5


class TaskResult(BaseModel):
    """Result of one executed step."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    task_id: str
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    success: StrictBool
    duration_ms: float = Field(0.0, ge=0.0)


class BranchDecision(BaseModel):
    """Branch taken at a decision node during execution."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    node_id: str
    outcome: str
    condition: Optional[str] = None


class ExecutionTrace(BaseModel):
    """Record of one execution attempt.

    Traces are immutable; :meth:`with_priority` returns a copy with a new
    replay priority, the only value that changes after creation.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    candidate_id: Optional[str] = None
    parent_trace_id: Optional[str] = None
    intent_text: str
    intent_embedding: Optional[List[float]] = None
    initial_context: Dict[str, Any] = Field(default_factory=dict)
    executed_path: List[str] = Field(default_factory=list)
    task_results: List[TaskResult] = Field(default_factory=list)
    decisions: List[BranchDecision] = Field(default_factory=list)
    success: StrictBool
    duration_ms: float = Field(0.0, ge=0.0)
    priority: float = Field(DEFAULT_PRIORITY, ge=0.0, le=1.0)
    executed_at: float = Field(default_factory=time.time)

    @field_validator("intent_text")
    @classmethod
    def _intent_present(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("intent_text must not be empty")
        return value

    @field_validator("executed_path")
    @classmethod
    def _path_ids_present(cls, value: List[str]) -> List[str]:
        if any(not node_id or not node_id.strip() for node_id in value):
            raise ValueError("executed_path must not contain empty identifiers")
        return value

    @field_validator("candidate_id", "parent_trace_id")
    @classmethod
    def _optional_id_present(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("identifiers must be non-empty when given")
        return value

    def with_priority(self, priority: float) -> "ExecutionTrace":
        return self.model_copy(update={"priority": min(max(priority, 0.0), 1.0)})


def validate_trace(data: Union[ExecutionTrace, Dict[str, Any]]) -> ExecutionTrace:
    """Validate raw trace data.

    Raises:
        MalformedTraceError: If required fields are missing or invalid
    """
    if isinstance(data, ExecutionTrace):
        return data
    try:
        return ExecutionTrace.model_validate(data)
    except ValidationError as e:
        trace_id = data.get("id") if isinstance(data, dict) else None
        raise MalformedTraceError(f"Invalid execution trace: {e}", trace_id) from e


class TraceStore(abc.ABC):
    """Persistence interface for execution traces."""

    @abc.abstractmethod
    async def save_trace(self, trace: Union[ExecutionTrace, Dict[str, Any]]) -> str:
        """Validate and store a trace, returning its id."""

    @abc.abstractmethod
    async def get_trace(self, trace_id: str) -> Optional[ExecutionTrace]:
        """Get a trace by id."""

    @abc.abstractmethod
    async def get_traces(self, candidate_id: Optional[str] = None, limit: int = 50) -> List[ExecutionTrace]:
        """Most recent traces, optionally for one candidate."""

    @abc.abstractmethod
    async def get_high_priority_traces(self, limit: int = 100) -> List[ExecutionTrace]:
        """Traces ordered by priority, highest first."""

    @abc.abstractmethod
    async def update_priority(self, trace_id: str, priority: float) -> bool:
        """Set a trace's priority; returns False when the trace does not exist."""

    @abc.abstractmethod
    async def sample_by_priority(self, limit: int, min_priority: float = 0.1) -> List[ExecutionTrace]:
        """Traces at or above ``min_priority``, highest first."""

    @abc.abstractmethod
    async def get_child_traces(self, parent_trace_id: str) -> List[ExecutionTrace]:
        """Traces recorded by a parent execution, in execution order."""

    @abc.abstractmethod
    async def count_traces(self, candidate_id: Optional[str] = None) -> int:
        """Number of stored traces."""


class InMemoryTraceStore(TraceStore):
    """Process-local trace store with optional JSON file persistence."""

    def __init__(self, data_file: Optional[str] = None):
        """Initialize the store.

        Args:
            data_file: Optional JSON file used by :meth:`save` and :meth:`load`
        """
        self._traces: Dict[str, ExecutionTrace] = {}
        self._lock = threading.RLock()
        self.data_file = os.path.expanduser(data_file) if data_file else None

    async def save_trace(self, trace: Union[ExecutionTrace, Dict[str, Any]]) -> str:
        trace = validate_trace(trace)
        with self._lock:
            if trace.id in self._traces:
                raise MalformedTraceError("Duplicate trace id", trace.id)
            if trace.parent_trace_id is not None and trace.parent_trace_id not in self._traces:
                raise MalformedTraceError(f"Unknown parent trace {trace.parent_trace_id}", trace.id)
            self._traces[trace.id] = trace
        logger.debug(f"Saved trace {trace.id} for {trace.candidate_id or 'ad hoc execution'}")
        return trace.id

    async def get_trace(self, trace_id: str) -> Optional[ExecutionTrace]:
        return self._traces.get(trace_id)

    async def get_traces(self, candidate_id: Optional[str] = None, limit: int = 50) -> List[ExecutionTrace]:
        with self._lock:
            traces = [
                trace for trace in self._traces.values()
                if candidate_id is None or trace.candidate_id == candidate_id
            ]
        traces.sort(key=lambda trace: trace.executed_at, reverse=True)
        return traces[:limit]

    async def get_high_priority_traces(self, limit: int = 100) -> List[ExecutionTrace]:
        with self._lock:
            traces = list(self._traces.values())
        traces.sort(key=lambda trace: (-trace.priority, -trace.executed_at))
        return traces[:limit]

    async def update_priority(self, trace_id: str, priority: float) -> bool:
        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                logger.warning(f"Cannot update priority of unknown trace {trace_id}")
                return False
            self._traces[trace_id] = trace.with_priority(priority)
        return True

    async def sample_by_priority(self, limit: int, min_priority: float = 0.1) -> List[ExecutionTrace]:
        traces = await self.get_high_priority_traces(len(self._traces))
        return [trace for trace in traces if trace.priority >= min_priority][:limit]

    async def get_child_traces(self, parent_trace_id: str) -> List[ExecutionTrace]:
        with self._lock:
            children = [trace for trace in self._traces.values() if trace.parent_trace_id == parent_trace_id]
        children.sort(key=lambda trace: trace.executed_at)
        return children

    async def count_traces(self, candidate_id: Optional[str] = None) -> int:
        if candidate_id is None:
            return len(self._traces)
        return sum(1 for trace in self._traces.values() if trace.candidate_id == candidate_id)

    async def get_stats(self) -> Dict[str, Any]:
        """Aggregate statistics over all traces."""
        with self._lock:
            traces = list(self._traces.values())
        if not traces:
            return {"total": 0, "success_rate": 0.0, "avg_priority": 0.0, "avg_duration_ms": 0.0}
        return {
            "total": len(traces),
            "success_rate": sum(1 for trace in traces if trace.success) / len(traces),
            "avg_priority": sum(trace.priority for trace in traces) / len(traces),
            "avg_duration_ms": sum(trace.duration_ms for trace in traces) / len(traces),
        }

    async def prune_older_than(self, max_age_seconds: float) -> int:
        """Delete traces older than ``max_age_seconds``. Returns the number removed."""
        cutoff = time.time() - max_age_seconds
        with self._lock:
            stale = [trace_id for trace_id, trace in self._traces.items() if trace.executed_at < cutoff]
            for trace_id in stale:
                del self._traces[trace_id]
        if stale:
            logger.info(f"Pruned {len(stale)} traces older than {max_age_seconds:.0f}s")
        return len(stale)

    def save(self, path: Optional[str] = None) -> None:
        """Write all traces to a JSON file."""
        path = path or self.data_file
        if not path:
            raise ValueError("No data file configured for the trace store")
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with self._lock:
            data = {"traces": [trace.model_dump(mode="json") for trace in self._traces.values()]}
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.debug(f"Saved {len(data['traces'])} traces to {path}")

    def load(self, path: Optional[str] = None) -> int:
        """Load traces from a JSON file, replacing current contents.

        Returns:
            Number of traces loaded

        Raises:
            MalformedTraceError: If any stored trace is invalid
        """
        path = path or self.data_file
        if not path or not os.path.exists(path):
            logger.debug(f"Trace file not found: {path}")
            return 0
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        traces = [validate_trace(raw) for raw in data.get("traces", [])]
        with self._lock:
            self._traces = {trace.id: trace for trace in traces}
        logger.debug(f"Loaded {len(traces)} traces from {path}")
        return len(traces)

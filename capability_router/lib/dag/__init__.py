"""Task DAG types and layered execution."""

from .types import Task, DAGStructure, DependencyPath
from .executor import LayeredExecutor, LayeredExecutionResult, TaskOutcome

__all__ = [
    "Task",
    "DAGStructure",
    "DependencyPath",
    "LayeredExecutor",
    "LayeredExecutionResult",
    "TaskOutcome",
]

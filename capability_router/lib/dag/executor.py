#!/usr/bin/env python3
# capability_router/lib/dag/executor.py
"""Layered task execution."""

import time
import logging
import concurrent.futures
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Callable

from .types import Task, DAGStructure

logger = logging.getLogger(__name__)

# Called with the task and the results of completed tasks keyed by task id
TaskExecutor = Callable[[Task, Dict[str, Any]], Any]
# Returns True when a layer may run
LayerGate = Callable[[int, List[Task]], bool]


@dataclass
class TaskOutcome:
    """Result of executing one task."""
    task_id: str
    candidate_id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class LayeredExecutionResult:
    """Results of a layered run.

    ``pending_layer`` is the index of the first layer that was not run, or
    None when every layer completed.
    """
    completed_layers: List[int] = field(default_factory=list)
    outcomes: Dict[str, TaskOutcome] = field(default_factory=dict)
    pending_layer: Optional[int] = None
    failed: bool = False

    @property
    def results(self) -> Dict[str, Any]:
        return {task_id: outcome.result for task_id, outcome in self.outcomes.items() if outcome.success}


class LayeredExecutor:
    """Runs DAG layers in order, the tasks of one layer in parallel."""

    def __init__(self, task_executor: TaskExecutor, max_workers: int = 10):
        """Initialize the executor.

        Args:
            task_executor: Callable performing one task
            max_workers: Maximum concurrent tasks per layer
        """
        self.task_executor = task_executor
        self.max_workers = max_workers
        self.progress_callback: Optional[Callable[[str, float], None]] = None

    def set_progress_callback(self, callback: Callable[[str, float], None]) -> None:
        """Set a callback receiving a task id and overall progress (0-1)."""
        self.progress_callback = callback

    def execute_task(self, task: Task, results: Dict[str, Any]) -> TaskOutcome:
        """Execute a single task, converting exceptions into a failed outcome."""
        start_time = time.time()
        try:
            result = self.task_executor(task, results)
            return TaskOutcome(
                task_id=task.id,
                candidate_id=task.candidate_id,
                success=True,
                result=result,
                duration_ms=(time.time() - start_time) * 1000,
            )
        except Exception as e:
            logger.exception(f"Error executing task {task.id} ({task.candidate_id}): {e}")
            return TaskOutcome(
                task_id=task.id,
                candidate_id=task.candidate_id,
                success=False,
                error=str(e),
                duration_ms=(time.time() - start_time) * 1000,
            )

    def execute_layer(self, layer: List[Task], results: Dict[str, Any]) -> List[TaskOutcome]:
        """Execute all tasks of one layer in parallel.

        Returns:
            Outcomes in the layer's task order
        """
        if not layer:
            return []

        outcomes: Dict[str, TaskOutcome] = {}
        futures: Dict[Future, Task] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(layer))) as executor:
            for task in layer:
                futures[executor.submit(self.execute_task, task, dict(results))] = task

            for future in concurrent.futures.as_completed(futures):
                task = futures[future]
                outcomes[task.id] = future.result()

        return [outcomes[task.id] for task in layer]

    def execute(
        self,
        dag: DAGStructure,
        gate: Optional[LayerGate] = None,
        start_layer: int = 0,
        previous_results: Optional[Dict[str, Any]] = None,
    ) -> LayeredExecutionResult:
        """Execute a DAG layer by layer.

        Stops before the first layer the gate rejects and after any layer
        with a failed task. Completed outcomes are kept in the result.

        Args:
            dag: Task DAG to execute
            gate: Predicate deciding whether a layer may run; all layers run when None
            start_layer: Index of the first layer to run, to resume a paused run
            previous_results: Results of tasks completed by an earlier run

        Returns:
            LayeredExecutionResult
        """
        layers = dag.layers()
        run = LayeredExecutionResult()
        results: Dict[str, Any] = dict(previous_results or {})
        total_tasks = sum(len(layer) for layer in layers[start_layer:]) or 1
        finished = 0

        for index in range(start_layer, len(layers)):
            layer = layers[index]
            if gate is not None and not gate(index, layer):
                logger.debug(f"Layer {index} held for approval")
                run.pending_layer = index
                return run

            for outcome in self.execute_layer(layer, results):
                run.outcomes[outcome.task_id] = outcome
                if outcome.success:
                    results[outcome.task_id] = outcome.result
                finished += 1
                if self.progress_callback:
                    self.progress_callback(outcome.task_id, finished / total_tasks)

            run.completed_layers.append(index)
            if any(not run.outcomes[task.id].success for task in layer):
                logger.warning(f"Layer {index} had failing tasks, stopping execution")
                run.failed = True
                if index + 1 < len(layers):
                    run.pending_layer = index + 1
                return run

        return run

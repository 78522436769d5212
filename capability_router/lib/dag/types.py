#!/usr/bin/env python3
# capability_router/lib/dag/types.py
"""Task DAG structures."""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Any, Optional

import networkx as nx


@dataclass
class Task:
    """A single candidate invocation in a task DAG."""
    id: str
    candidate_id: str
    depends_on: List[str] = field(default_factory=list)
    arguments: Dict[str, Any] = field(default_factory=dict)
    kind: str = "tool"


@dataclass
class DependencyPath:
    """Explained dependency between two candidates."""
    source: str
    target: str
    path: List[str]
    hops: int
    explanation: str
    confidence: float


@dataclass
class DAGStructure:
    """Dependency-ordered set of tasks."""
    tasks: List[Task] = field(default_factory=list)

    def get_task(self, task_id: str) -> Optional[Task]:
        return next((task for task in self.tasks if task.id == task_id), None)

    def candidate_ids(self) -> List[str]:
        return [task.candidate_id for task in self.tasks]

    def layers(self) -> List[List[Task]]:
        """Group tasks into layers that can run concurrently.

        Each layer only depends on earlier layers. Tasks keep their
        declaration order inside a layer.

        Raises:
            ValueError: If the dependencies contain a cycle
        """
        order = {task.id: i for i, task in enumerate(self.tasks)}
        graph = nx.DiGraph()
        graph.add_nodes_from(order)
        for task in self.tasks:
            for dependency in task.depends_on:
                if dependency in order:
                    graph.add_edge(dependency, task.id)

        try:
            generations = list(nx.topological_generations(graph))
        except nx.NetworkXUnfeasible as e:
            raise ValueError(f"Task dependencies contain a cycle: {e}") from e

        return [
            [self.tasks[order[task_id]] for task_id in sorted(generation, key=order.get)]
            for generation in generations
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {"tasks": [asdict(task) for task in self.tasks]}

"""Tests for task DAGs and layered execution."""

import pytest

from capability_router.lib.dag import DAGStructure, Task, LayeredExecutor


def diamond():
    return DAGStructure(tasks=[
        Task(id="task_0", candidate_id="fs:read"),
        Task(id="task_1", candidate_id="json:parse", depends_on=["task_0"]),
        Task(id="task_2", candidate_id="yaml:parse", depends_on=["task_0"]),
        Task(id="task_3", candidate_id="http:post", depends_on=["task_1", "task_2"]),
    ])


def echo(task, results):
    return {"candidate": task.candidate_id, "inputs": sorted(results)}


class TestDAGStructure:
    def test_layers(self):
        layers = diamond().layers()
        assert [[task.id for task in layer] for layer in layers] == [["task_0"], ["task_1", "task_2"], ["task_3"]]

    def test_unknown_dependencies_ignored(self):
        dag = DAGStructure(tasks=[Task(id="task_0", candidate_id="a", depends_on=["ghost"])])
        assert len(dag.layers()) == 1

    def test_cycle_raises(self):
        dag = DAGStructure(tasks=[
            Task(id="task_0", candidate_id="a", depends_on=["task_1"]),
            Task(id="task_1", candidate_id="b", depends_on=["task_0"]),
        ])
        with pytest.raises(ValueError):
            dag.layers()

    def test_empty_dag(self):
        assert DAGStructure().layers() == []

    def test_to_dict(self):
        data = diamond().to_dict()
        assert data["tasks"][3]["depends_on"] == ["task_1", "task_2"]
        assert diamond().candidate_ids()[0] == "fs:read"


class TestLayeredExecutor:
    def test_runs_all_layers(self):
        run = LayeredExecutor(echo).execute(diamond())
        assert run.completed_layers == [0, 1, 2]
        assert run.pending_layer is None
        assert not run.failed
        assert run.results["task_3"]["inputs"] == ["task_0", "task_1", "task_2"]

    def test_gate_holds_layer(self):
        run = LayeredExecutor(echo).execute(diamond(), gate=lambda index, layer: index < 2)
        assert run.completed_layers == [0, 1]
        assert run.pending_layer == 2
        assert "task_3" not in run.outcomes

    def test_resume_from_pending_layer(self):
        executor = LayeredExecutor(echo)
        first = executor.execute(diamond(), gate=lambda index, layer: index < 1)
        second = executor.execute(diamond(), start_layer=first.pending_layer, previous_results=first.results)
        assert second.completed_layers == [1, 2]
        assert second.results["task_1"]["inputs"] == ["task_0"]

    def test_failure_stops_after_layer(self):
        def flaky(task, results):
            if task.candidate_id == "yaml:parse":
                raise RuntimeError("bad yaml")
            return task.candidate_id

        run = LayeredExecutor(flaky).execute(diamond())
        assert run.failed
        assert run.completed_layers == [0, 1]
        assert run.pending_layer == 2
        assert run.outcomes["task_1"].success
        assert run.outcomes["task_2"].error == "bad yaml"
        assert "task_2" not in run.results

    def test_failure_in_last_layer_has_no_pending(self):
        def fail_last(task, results):
            if task.id == "task_3":
                raise RuntimeError("boom")

        run = LayeredExecutor(fail_last).execute(diamond())
        assert run.failed
        assert run.pending_layer is None

    def test_progress_callback(self):
        progress = []
        executor = LayeredExecutor(echo, max_workers=2)
        executor.set_progress_callback(lambda task_id, fraction: progress.append(fraction))
        executor.execute(diamond())
        assert len(progress) == 4
        assert progress[-1] == pytest.approx(1.0)

    def test_layer_outcomes_in_task_order(self):
        layer = diamond().layers()[1]
        outcomes = LayeredExecutor(echo).execute_layer(layer, {"task_0": None})
        assert [outcome.task_id for outcome in outcomes] == ["task_1", "task_2"]
        assert LayeredExecutor(echo).execute_layer([], {}) == []

"""Tests for execution traces and the in-memory trace store."""

import time

import pytest

from capability_router.lib.errors import MalformedTraceError
from capability_router.lib.traces.store import ExecutionTrace, InMemoryTraceStore, validate_trace


def make_trace(**overrides):
    data = {
        "intent_text": "read the config file",
        "candidate_id": "cap:load_config",
        "executed_path": ["fs:read", "json:parse"],
        "success": True,
    }
    data.update(overrides)
    return data


class TestValidation:
    def test_valid_trace(self):
        trace = validate_trace(make_trace())
        assert trace.priority == 0.5
        assert trace.id

    @pytest.mark.parametrize("overrides", [
        {"intent_text": "  "},
        {"executed_path": ["fs:read", ""]},
        {"success": "yes"},
        {"candidate_id": " "},
        {"priority": 1.5},
        {"unexpected": True},
    ])
    def test_malformed_trace_rejected(self, overrides):
        with pytest.raises(MalformedTraceError):
            validate_trace(make_trace(**overrides))

    def test_missing_success_rejected(self):
        data = make_trace()
        del data["success"]
        with pytest.raises(MalformedTraceError):
            validate_trace(data)

    def test_error_carries_trace_id(self):
        with pytest.raises(MalformedTraceError) as exc_info:
            validate_trace(make_trace(id="t-1", intent_text=""))
        assert exc_info.value.trace_id == "t-1"

    def test_traces_are_immutable(self):
        trace = validate_trace(make_trace())
        with pytest.raises(Exception):
            trace.success = False
        assert trace.with_priority(2.0).priority == 1.0
        assert trace.priority == 0.5


class TestInMemoryTraceStore:
    @pytest.mark.asyncio
    async def test_save_and_get(self, trace_store):
        trace_id = await trace_store.save_trace(make_trace())
        trace = await trace_store.get_trace(trace_id)
        assert isinstance(trace, ExecutionTrace)
        assert trace.executed_path == ["fs:read", "json:parse"]
        assert await trace_store.get_trace("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, trace_store):
        await trace_store.save_trace(make_trace(id="t-1"))
        with pytest.raises(MalformedTraceError):
            await trace_store.save_trace(make_trace(id="t-1"))

    @pytest.mark.asyncio
    async def test_unknown_parent_rejected(self, trace_store):
        with pytest.raises(MalformedTraceError):
            await trace_store.save_trace(make_trace(parent_trace_id="missing"))

    @pytest.mark.asyncio
    async def test_filter_by_candidate_most_recent_first(self, trace_store):
        await trace_store.save_trace(make_trace(id="old", executed_at=100.0))
        await trace_store.save_trace(make_trace(id="new", executed_at=200.0))
        await trace_store.save_trace(make_trace(id="other", candidate_id="http:get"))
        traces = await trace_store.get_traces("cap:load_config")
        assert [trace.id for trace in traces] == ["new", "old"]
        assert await trace_store.count_traces("cap:load_config") == 2
        assert await trace_store.count_traces() == 3

    @pytest.mark.asyncio
    async def test_priority_updates_clamped(self, trace_store):
        trace_id = await trace_store.save_trace(make_trace())
        assert await trace_store.update_priority(trace_id, 3.0)
        assert (await trace_store.get_trace(trace_id)).priority == 1.0
        assert await trace_store.update_priority(trace_id, -1.0)
        assert (await trace_store.get_trace(trace_id)).priority == 0.0
        assert not await trace_store.update_priority("missing", 0.5)

    @pytest.mark.asyncio
    async def test_priority_ordering_and_sampling(self, trace_store):
        await trace_store.save_trace(make_trace(id="low", priority=0.05))
        await trace_store.save_trace(make_trace(id="mid", priority=0.5))
        await trace_store.save_trace(make_trace(id="high", priority=0.9))
        ranked = await trace_store.get_high_priority_traces()
        assert [trace.id for trace in ranked] == ["high", "mid", "low"]
        sampled = await trace_store.sample_by_priority(10, min_priority=0.1)
        assert [trace.id for trace in sampled] == ["high", "mid"]

    @pytest.mark.asyncio
    async def test_child_traces_in_execution_order(self, trace_store):
        parent = await trace_store.save_trace(make_trace(id="meta"))
        await trace_store.save_trace(make_trace(id="second", parent_trace_id=parent, executed_at=20.0))
        await trace_store.save_trace(make_trace(id="first", parent_trace_id=parent, executed_at=10.0))
        children = await trace_store.get_child_traces(parent)
        assert [child.id for child in children] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_stats(self, trace_store):
        assert (await trace_store.get_stats())["total"] == 0
        await trace_store.save_trace(make_trace(success=True, duration_ms=10.0))
        await trace_store.save_trace(make_trace(success=False, duration_ms=30.0))
        stats = await trace_store.get_stats()
        assert stats["total"] == 2
        assert stats["success_rate"] == 0.5
        assert stats["avg_duration_ms"] == 20.0

    @pytest.mark.asyncio
    async def test_prune_older_than(self, trace_store):
        await trace_store.save_trace(make_trace(id="stale", executed_at=time.time() - 3600))
        await trace_store.save_trace(make_trace(id="fresh"))
        assert await trace_store.prune_older_than(60) == 1
        assert await trace_store.get_trace("stale") is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, trace_store, tmp_path):
        await trace_store.save_trace(make_trace(id="t-1", task_results=[
            {"task_id": "task_0", "tool": "fs:read", "success": True, "result": {"size": 12}},
        ]))
        path = tmp_path / "traces.json"
        trace_store.save(str(path))

        restored = InMemoryTraceStore(str(path))
        assert restored.load() == 1
        trace = await restored.get_trace("t-1")
        assert trace.task_results[0].result == {"size": 12}

    def test_load_missing_file(self, tmp_path):
        assert InMemoryTraceStore().load(str(tmp_path / "absent.json")) == 0

    def test_save_without_path_raises(self):
        with pytest.raises(ValueError):
            InMemoryTraceStore().save()

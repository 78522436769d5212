"""Tests for candidate ranking, gating and next-step prediction."""

import math

import pytest

from capability_router.lib.config import RouterConfig, SuggesterConfig
from capability_router.lib.events import EventChannel
from capability_router.lib.rl.thompson import ExplorationManager, ThresholdMode
from capability_router.lib.tools.base import CapabilityNode
from capability_router.lib.suggestion import (
    Decision,
    Suggester,
    WorkflowState,
    capability_relevance,
    confidence_weights,
)


@pytest.fixture
def make_suggester(graph, scorer, permissions, registry, permissive_config):
    def factory(config=None, suggester_config=None, task_executor=None, events=None):
        config = config or permissive_config
        exploration = ExplorationManager(config.thompson, permissions, registry)
        return Suggester(
            graph, scorer, exploration,
            config=suggester_config or config.suggester,
            events=events,
            task_executor=task_executor,
        )
    return factory


def link(graph, source, target, confidence=0.9):
    with graph.mutation_batch():
        graph.upsert_edge(source, target, confidence)


class TestScoringHelpers:
    def test_zero_overlap_is_never_relevant(self):
        assert capability_relevance(0.0, 5.0) == 0.0
        assert capability_relevance(0.5, 0.4) == pytest.approx(0.7)
        assert capability_relevance(0.8, 1.0) == 1.0

    def test_confidence_weights_follow_alpha(self):
        assert confidence_weights(1.0) == pytest.approx((0.85, 0.05, 0.10))
        assert confidence_weights(0.5) == pytest.approx((0.55, 0.30, 0.15))
        assert sum(confidence_weights(0.7)) == pytest.approx(1.0)

    def test_most_restrictive(self):
        assert Decision.most_restrictive([Decision.EXECUTE, Decision.SUGGEST]) == Decision.SUGGEST
        assert Decision.most_restrictive([Decision.REQUIRE_APPROVAL, Decision.EXECUTE]) == Decision.REQUIRE_APPROVAL
        assert Decision.most_restrictive([]) == Decision.SUGGEST


class TestCandidateDecision:
    def test_permissive_threshold_executes(self, make_suggester):
        decision, threshold, tier, _ = make_suggester().candidate_decision(
            "json:parse", 0.1, ThresholdMode.PASSIVE_SUGGESTION, 0.75
        )
        assert decision == Decision.EXECUTE
        assert threshold == 0.0
        assert tier == "safe"

    def test_low_score_suggests_with_default_thresholds(self, make_suggester):
        suggester = make_suggester(config=RouterConfig())
        decision, _, _, reason = suggester.candidate_decision("json:parse", 0.1, ThresholdMode.PASSIVE_SUGGESTION, 0.75)
        assert decision == Decision.SUGGEST
        assert "threshold" in reason

    def test_unknown_candidate_requires_approval(self, make_suggester):
        decision, threshold, tier, _ = make_suggester().candidate_decision(
            "mystery:tool", 1.0, ThresholdMode.ACTIVE_SEARCH, 0.75
        )
        assert decision == Decision.REQUIRE_APPROVAL
        assert threshold == 1.0
        assert tier == "unknown"

    def test_deny_pattern_overrides_scores(self, make_suggester):
        decision, _, _, reason = make_suggester().candidate_decision(
            "fs:delete_file", 1.0, ThresholdMode.ACTIVE_SEARCH, 0.75
        )
        assert decision == Decision.REQUIRE_APPROVAL
        assert "delete" in reason

    def test_deny_pattern_through_capability_tools(self, make_suggester, registry):
        registry.register_capability(CapabilityNode(id="cap:cleanup", tools_used=("fs:read", "fs:remove_dir")))
        suggester = make_suggester()
        assert suggester.deny_pattern("cap:cleanup") == "remove"
        assert suggester.is_dangerous("cap:cleanup")
        assert not suggester.is_dangerous("cap:load_config")

    def test_deny_patterns_match_whole_words(self, make_suggester):
        suggester = make_suggester()
        assert not suggester.is_dangerous("cloud:dropbox_sync")
        assert not suggester.is_dangerous("sports:badminton_scores")
        assert suggester.deny_pattern("db:dropTable") == "drop"
        assert suggester.deny_pattern("git:force_push") == "force_push"
        assert suggester.deny_pattern("fs:deleteFile") == "delete"

    def test_always_confirm(self, make_suggester):
        suggester = make_suggester(suggester_config=SuggesterConfig(always_confirm=["json:parse"]))
        decision, _, _, _ = suggester.candidate_decision("json:parse", 1.0, ThresholdMode.PASSIVE_SUGGESTION, 0.75)
        assert decision == Decision.REQUIRE_APPROVAL


class TestSuggest:
    def test_no_candidates(self, make_suggester):
        events = EventChannel()
        result = make_suggester(events=events).suggest([1.0, 0.0, 0.0])
        assert result.decision == Decision.SUGGEST
        assert result.reason == "no candidates available for this intent"
        assert result.ranked_candidates == []
        assert events.history("decision")[0].decision == "suggest"

    def test_layer_takes_most_restrictive_decision(self, make_suggester, scorer):
        scorer.register_tool("json:parse", [1.0, 0.0])
        scorer.register_tool("mystery:tool", [0.9, 0.1])
        result = make_suggester().suggest([1.0, 0.0])

        assert len(result.layer_decisions) == 1
        layer = result.layer_decisions[0]
        assert layer.decision == Decision.REQUIRE_APPROVAL
        assert set(layer.candidate_ids) == {"json:parse", "mystery:tool"}
        decisions = {candidate.id: candidate.decision for candidate in result.ranked_candidates}
        assert decisions == {"json:parse": Decision.EXECUTE, "mystery:tool": Decision.REQUIRE_APPROVAL}
        assert result.decision == Decision.REQUIRE_APPROVAL
        assert result.pending_layer == 0
        assert result.executed_layers == []

    def test_clear_layers_without_executor(self, make_suggester, scorer, graph):
        link(graph, "fs:read", "json:parse")
        scorer.register_tool("fs:read", [1.0, 0.0])
        scorer.register_tool("json:parse", [0.8, 0.2])
        result = make_suggester().suggest([1.0, 0.0])

        assert result.decision == Decision.EXECUTE
        assert result.pending_layer is None
        assert [[task.candidate_id for task in layer] for layer in result.dag.layers()] == [["fs:read"], ["json:parse"]]
        assert 0.0 <= result.confidence <= 1.0
        assert result.to_dict()["dag"]["tasks"][0]["kind"] == "tool"

    def test_executor_runs_approved_layers(self, make_suggester, scorer, graph):
        link(graph, "fs:read", "json:parse")
        scorer.register_tool("fs:read", [1.0, 0.0])
        scorer.register_tool("json:parse", [0.8, 0.2])
        calls = []

        def run_task(task, results):
            calls.append(task.candidate_id)
            return {"ok": True}

        result = make_suggester(task_executor=run_task).suggest([1.0, 0.0])
        assert calls == ["fs:read", "json:parse"]
        assert result.executed_layers == [0, 1]
        assert result.decision == Decision.EXECUTE
        assert result.reason == "executed 2 layers"

    def test_executor_failure_returns_suggest(self, make_suggester, scorer, graph):
        link(graph, "fs:read", "json:parse")
        scorer.register_tool("fs:read", [1.0, 0.0])
        scorer.register_tool("json:parse", [0.8, 0.2])

        def broken(task, results):
            raise IOError("disk unavailable")

        result = make_suggester(task_executor=broken).suggest([1.0, 0.0])
        assert result.failed
        assert result.decision == Decision.SUGGEST
        assert result.executed_layers == [0]
        assert result.pending_layer == 1

    def test_capabilities_ranked_from_context(self, make_suggester):
        result = make_suggester().suggest([1.0, 0.0, 0.0], context=["fs:read", "json:parse"])
        assert [candidate.id for candidate in result.ranked_candidates] == ["cap:load_config"]
        assert result.ranked_candidates[0].score == 1.0
        assert result.dag.tasks[0].kind == "capability"
        assert result.decision == Decision.EXECUTE

    def test_capability_below_overlap_ignored(self, make_suggester):
        assert make_suggester().rank_capabilities(["http:get"]) == []
        assert make_suggester().rank_capabilities([]) == []

    def test_learned_score_scales_capability_relevance(self, make_suggester, scorer):
        scorer.register_capability("cap:load_config", [-1.0, 0.0, 0.0])
        ranked = make_suggester().rank_capabilities(["fs:read", "json:parse"], [1.0, 0.0, 0.0])
        # heads (-1, -1, 0, 0) under softmax attention
        expected = 1.0 / (1.0 + math.exp(1.0 / (math.e + 1.0)))
        assert ranked[0].scorer_score == pytest.approx(expected)
        assert ranked[0].score == pytest.approx(expected / 0.5)

    def test_active_search_offers_capabilities_without_context(self, make_suggester, scorer):
        features = dict(success_rate=0.95, pagerank=1.0, community=0, adamic_adar=1.0,
                        cooccurrence=1.0, recency=1.0, heat=1.0)
        scorer.register_capability("cap:load_config", [1.0, 0.0, 0.0], features)
        suggester = make_suggester()

        ranked = suggester.rank_capabilities([], [1.0, 0.0, 0.0], ThresholdMode.ACTIVE_SEARCH)
        assert [candidate.id for candidate in ranked] == ["cap:load_config"]
        assert ranked[0].score == pytest.approx(1.0 / (1.0 + math.exp(-1.2)))
        assert ranked[0].graph_score == 0.0

        assert suggester.rank_capabilities([], [1.0, 0.0, 0.0], ThresholdMode.PASSIVE_SUGGESTION) == []
        result = suggester.suggest([1.0, 0.0, 0.0], mode=ThresholdMode.ACTIVE_SEARCH)
        assert "cap:load_config" in [candidate.id for candidate in result.ranked_candidates]

    def test_active_search_skips_unreliable_capabilities(self, make_suggester, scorer):
        scorer.register_capability("cap:load_config", [1.0, 0.0, 0.0], {"success_rate": 0.2})
        ranked = make_suggester().rank_capabilities([], [1.0, 0.0, 0.0], ThresholdMode.ACTIVE_SEARCH)
        assert ranked == []

    def test_confidence(self, make_suggester):
        suggester = make_suggester()
        assert suggester.calculate_confidence([], [], 1.0) == 0.0


class TestPredictions:
    def test_predict_next(self, make_suggester, graph):
        for _ in range(3):
            graph.record_cooccurrence("fs:read", "json:parse")
        graph.upsert_edge("fs:read", "fs:delete_file", 0.9)
        graph.refresh()

        predictions = make_suggester().predict_next_candidates(WorkflowState(executed_ids=["fs:read"]))
        ids = [prediction.id for prediction in predictions]
        assert "json:parse" in ids
        assert "cap:load_config" in ids
        assert "fs:read" not in ids
        assert "fs:delete_file" not in ids
        confidences = [prediction.confidence for prediction in predictions]
        assert confidences == sorted(confidences, reverse=True)
        assert all(0.0 < confidence <= 0.95 for confidence in confidences)

    def test_context_ids_excluded(self, make_suggester):
        state = WorkflowState(executed_ids=["fs:read"], context_ids=["cap:load_config"])
        ids = [prediction.id for prediction in make_suggester().predict_next_candidates(state)]
        assert "cap:load_config" not in ids

    def test_empty_state(self, make_suggester):
        assert make_suggester().predict_next_candidates(WorkflowState()) == []

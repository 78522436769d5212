"""Tests for the dependency graph store."""

import pytest

from capability_router.lib.config import GraphConfig
from capability_router.lib.graph.store import GraphStore, path_confidence
from capability_router.lib.tools.base import ToolNode, CapabilityNode


def chain(graph, *ids, confidence=0.9):
    with graph.mutation_batch():
        for source, target in zip(ids, ids[1:]):
            graph.upsert_edge(source, target, confidence)


class TestMutation:
    def test_upsert_edge_creates_missing_nodes(self, graph):
        chain(graph, "a", "b")
        assert graph.has_node("a") and graph.has_node("b")
        assert graph.edge_data("a", "b")["weight"] == pytest.approx(0.9)

    def test_self_loops_ignored(self, graph):
        with graph.mutation_batch():
            graph.upsert_edge("a", "a", 1.0)
        assert graph.edge_data("a", "a") is None

    def test_cooccurrence_reinforcement(self, graph):
        assert graph.record_cooccurrence("a", "b") == pytest.approx(0.5)
        assert graph.record_cooccurrence("a", "b") == pytest.approx(0.55)
        for _ in range(20):
            weight = graph.record_cooccurrence("a", "b")
        assert weight == pytest.approx(1.0)
        graph.refresh()
        assert graph.edge_data("a", "b")["count"] == 22

    def test_observe_edge_promotes_inferred_to_observed(self, graph):
        first = graph.observe_edge("a", "b", "dependency", "inferred")
        assert first == pytest.approx(0.7)
        graph.observe_edge("a", "b", "dependency", "inferred")
        graph.observe_edge("a", "b", "dependency", "inferred")
        graph.refresh()
        edge = graph.edge_data("a", "b")
        assert edge["edge_source"] == "observed"
        assert edge["weight"] == pytest.approx(1.0)

    def test_update_from_hierarchy(self, graph):
        with graph.mutation_batch():
            graph.upsert_node(CapabilityNode(id="cap:x", tools_used=("t:1", "t:2")))
            graph.update_from_hierarchy("cap:x", ["t:1", "t:2"])
        assert graph.edge_data("cap:x", "t:1")["edge_type"] == "contains"
        assert graph.edge_data("t:1", "t:2")["edge_type"] == "sequence"
        assert graph.snapshot.kind("cap:x") == "capability"

    def test_snapshot_not_updated_until_batch_exits(self, graph):
        with graph.mutation_batch():
            graph.upsert_edge("a", "b", 0.9)
            assert not graph.has_node("a")
        assert graph.has_node("a")

    def test_weak_edges_excluded_from_analytics(self, graph):
        with graph.mutation_batch():
            graph.upsert_edge("a", "b", 0.2)
        assert graph.edge_data("a", "b") is None
        assert graph.has_node("a")

    def test_prune_weak_edges(self, graph):
        graph.upsert_edge("a", "b", 0.2)
        graph.upsert_edge("b", "c", 0.8)
        assert graph.prune_weak_edges() == 1


class TestAnalytics:
    def test_empty_graph(self, graph):
        graph.refresh()
        assert graph.centrality() == {}
        assert graph.communities() == {}
        assert graph.adaptive_alpha() == 1.0

    def test_edgeless_graph_uniform_pagerank(self, graph):
        with graph.mutation_batch():
            for node_id in ("a", "b", "c", "d"):
                graph.upsert_node(ToolNode(id=node_id))
        assert graph.centrality() == {node: pytest.approx(0.25) for node in "abcd"}
        assert len(set(graph.communities().values())) == 4

    def test_pagerank_favours_targets(self, graph):
        chain(graph, "a", "hub")
        chain(graph, "b", "hub")
        chain(graph, "c", "hub")
        ranks = graph.centrality()
        assert ranks["hub"] == max(ranks.values())
        assert sum(ranks.values()) == pytest.approx(1.0)

    def test_louvain_deterministic(self):
        def build():
            graph = GraphStore()
            chain(graph, "a", "b", "c")
            chain(graph, "c", "a")
            chain(graph, "x", "y", "z")
            chain(graph, "z", "x")
            graph.upsert_edge("c", "x", 0.31)
            graph.refresh()
            return graph.communities()

        first, second = build(), build()
        assert first == second
        assert first["a"] == first["b"] == first["c"]
        assert first["x"] == first["y"] == first["z"]
        assert first["a"] != first["x"]
        assert first["a"] == 0

    def test_adaptive_alpha_decreases_with_density(self, graph):
        chain(graph, "a", "b")
        assert graph.adaptive_alpha() == pytest.approx(0.5)
        sparse = GraphStore()
        chain(sparse, "a", "b", "c", "d", "e", "f")
        assert sparse.adaptive_alpha() == pytest.approx(1.0 - 2.0 * sparse.density())

    def test_community_members_sorted_by_pagerank(self, graph):
        chain(graph, "a", "b", "c")
        chain(graph, "a", "c")
        members = graph.community_members("a")
        assert "a" not in members
        assert set(members) <= {"b", "c"}


class TestPaths:
    def test_shortest_path(self, graph):
        chain(graph, "a", "b", "c")
        assert graph.shortest_path("a", "c") == ["a", "b", "c"]
        assert graph.shortest_path("a", "a") == ["a"]

    def test_unreachable_and_unknown(self, graph):
        chain(graph, "a", "b")
        assert graph.shortest_path("b", "a") is None
        assert graph.shortest_path("a", "missing") is None

    def test_hop_cap(self):
        graph = GraphStore(GraphConfig(max_hops=3))
        chain(graph, "a", "b", "c", "d", "e")
        assert graph.shortest_path("a", "d") == ["a", "b", "c", "d"]
        assert graph.shortest_path("a", "e") is None

    def test_strong_edges_preferred(self, graph):
        with graph.mutation_batch():
            graph.upsert_edge("a", "c", 0.31)
            graph.upsert_edge("a", "b", 1.0)
            graph.upsert_edge("b", "c", 1.0)
        assert graph.shortest_path("a", "c") == ["a", "b", "c"]

    def test_path_confidence(self):
        assert path_confidence(1) == 0.95
        assert path_confidence(2) == 0.80
        assert path_confidence(3) == 0.65
        assert path_confidence(5) == 0.50

    def test_adamic_adar_and_relatedness(self, graph):
        chain(graph, "a", "shared")
        chain(graph, "b", "shared")
        chain(graph, "c", "d")
        assert graph.adamic_adar_between("a", "b") > 0
        assert graph.adamic_adar("a")[0][0] == "b"
        assert graph.graph_relatedness("shared", ["a"]) == 1.0
        assert 0.0 < graph.graph_relatedness("b", ["a"]) <= 1.0
        assert graph.graph_relatedness("c", ["a"]) == 0.0
        assert graph.graph_relatedness("a", []) == 0.0

    def test_node_features(self, graph):
        with graph.mutation_batch():
            graph.update_from_path(["a", "b"], timestamp=1000.0)
        features = graph.node_features("a", now=1000.0)
        assert features["recency"] == pytest.approx(1.0)
        assert 0.0 <= features["pagerank"] <= 1.0
        assert graph.node_features("missing")["community"] == -1.0


class TestDag:
    def test_chain_produces_layers(self, graph):
        chain(graph, "a", "b", "c", "d")
        dag = graph.build_dag(["d", "b", "a", "c"])
        layers = [[task.candidate_id for task in layer] for layer in dag.layers()]
        assert layers == [["a"], ["b"], ["c"], ["d"]]

    def test_independent_candidates_share_a_layer(self, graph):
        chain(graph, "a", "b")
        graph.upsert_node(ToolNode(id="x"))
        graph.refresh()
        dag = graph.build_dag(["a", "b", "x"])
        layers = [[task.candidate_id for task in layer] for layer in dag.layers()]
        assert layers == [["a", "x"], ["b"]]

    def test_mutual_dependency_keeps_stronger_direction(self, graph):
        with graph.mutation_batch():
            graph.upsert_edge("a", "b", 0.9)
            graph.upsert_edge("b", "a", 0.4)
        dag = graph.build_dag(["a", "b"])
        assert dag.get_task("task_1").depends_on == ["task_0"]
        assert dag.get_task("task_0").depends_on == []

    def test_longer_cycles_are_broken(self, graph):
        chain(graph, "a", "b", "c")
        chain(graph, "c", "a", confidence=0.35)
        dag = graph.build_dag(["a", "b", "c"])
        assert len(dag.layers()) >= 2

    def test_dependency_paths_explained(self, graph):
        chain(graph, "a", "b", "c")
        dag = graph.build_dag(["a", "c"])
        paths = graph.dependency_paths(dag)
        assert len(paths) == 1
        assert paths[0].path == ["a", "b", "c"]
        assert paths[0].hops == 2
        assert paths[0].confidence == 0.80
        assert "Transitive" in paths[0].explanation

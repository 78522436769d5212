"""Tests for spectral clustering and hypergraph PageRank."""

import numpy as np
import pytest

from capability_router.lib.config import SpectralConfig
from capability_router.lib.graph.spectral import (
    CapabilityEdge,
    ClusterAssignment,
    SpectralClusteringManager,
    build_bipartite_matrix,
    detect_k_by_eigengap,
    kmeans,
    normalized_laplacian,
)


TOOLS = ["fs:read", "fs:write", "json:parse", "http:get", "http:post", "db:query"]
CAPABILITIES = {
    "cap:files": ["fs:read", "fs:write", "json:parse"],
    "cap:web": ["http:get", "http:post", "db:query"],
}


class TestMatrix:
    def test_incidence_is_symmetric(self):
        matrix, tool_index, capability_index = build_bipartite_matrix(TOOLS, CAPABILITIES)
        assert matrix.shape == (8, 8)
        assert np.allclose(matrix, matrix.T)
        assert matrix[tool_index["fs:read"], capability_index["cap:files"]] == 1.0
        assert matrix[tool_index["fs:read"], capability_index["cap:web"]] == 0.0

    def test_capability_edges_below_floor_skipped(self):
        edges = [
            CapabilityEdge("cap:files", "cap:web", 0.25),
            CapabilityEdge("cap:web", "cap:files", 0.8, "contains"),
        ]
        matrix, _, capability_index = build_bipartite_matrix(
            TOOLS, CAPABILITIES, edges, edge_type_weights={"contains": 0.8}
        )
        i, j = capability_index["cap:web"], capability_index["cap:files"]
        assert matrix[i, j] == pytest.approx(0.64)
        assert matrix[j, i] == pytest.approx(0.64)

    def test_laplacian_spectrum_in_range(self):
        matrix, _, _ = build_bipartite_matrix(TOOLS, CAPABILITIES)
        eigenvalues = np.linalg.eigvalsh(normalized_laplacian(matrix))
        assert eigenvalues.min() >= -1e-9
        assert eigenvalues.max() <= 2.0 + 1e-9
        assert eigenvalues[0] == pytest.approx(0.0, abs=1e-9)

    def test_isolated_node_keeps_unit_diagonal(self):
        laplacian = normalized_laplacian(np.zeros((2, 2)))
        assert np.allclose(laplacian, np.eye(2))


class TestClustering:
    def test_eigengap_clamped_to_range(self):
        assert detect_k_by_eigengap([0.0, 0.0, 0.0, 1.0, 1.0]) == 3
        assert detect_k_by_eigengap([0.0, 1.0, 1.0]) == 2
        assert detect_k_by_eigengap([0.0] * 8 + [1.0], max_k=5) == 5

    def test_kmeans_separates_blobs(self):
        data = np.array([[0.0, 0.0], [0.1, 0.0], [5.0, 5.0], [5.1, 5.0]])
        labels = kmeans(data, 2, seed=0)
        assert labels[0] == labels[1]
        assert labels[2] == labels[3]
        assert labels[0] != labels[2]

    def test_disconnected_capabilities_split(self):
        manager = SpectralClusteringManager()
        assignment = manager.compute_clusters(TOOLS, CAPABILITIES, k=2)
        assert assignment.cluster_count == 2
        assert assignment.cluster_of("fs:read") == assignment.cluster_of("cap:files")
        assert assignment.cluster_of("http:get") == assignment.cluster_of("cap:web")
        assert assignment.cluster_of("cap:files") != assignment.cluster_of("cap:web")
        assert assignment.cluster_of("missing") == -1

    def test_auto_k_within_bounds(self):
        assignment = SpectralClusteringManager().compute_clusters(TOOLS, CAPABILITIES)
        assert 2 <= assignment.cluster_count <= 5

    def test_tiny_graph_single_cluster(self):
        assignment = SpectralClusteringManager().compute_clusters(["t:1"], {"cap:x": ["t:1"]})
        assert assignment.cluster_count == 1
        assert assignment.cluster_of("t:1") == assignment.cluster_of("cap:x") == 0

    def test_empty_graph(self):
        assignment = SpectralClusteringManager().compute_clusters([], {})
        assert assignment == ClusterAssignment(computed_at=assignment.computed_at)


class TestCache:
    def test_cache_hits_and_misses(self):
        manager = SpectralClusteringManager()
        first = manager.compute_clusters(TOOLS, CAPABILITIES)
        second = manager.compute_clusters(TOOLS, CAPABILITIES)
        assert second is first
        assert manager.cache_misses == 1
        assert manager.cache_hits == 1

    def test_expired_entries_recomputed(self):
        manager = SpectralClusteringManager(SpectralConfig(cache_ttl_seconds=0.0))
        first = manager.compute_clusters(TOOLS, CAPABILITIES)
        manager._cache[next(iter(manager._cache))] = (-1.0, first)
        manager.compute_clusters(TOOLS, CAPABILITIES)
        assert manager.cache_misses == 2

    def test_invalidate(self):
        manager = SpectralClusteringManager()
        manager.hypergraph_pagerank(TOOLS, CAPABILITIES)
        manager.invalidate_cache()
        manager.hypergraph_pagerank(TOOLS, CAPABILITIES)
        assert manager.cache_hits == 0

    def test_fingerprint_ignores_ordering(self):
        reordered = {cap: list(reversed(members)) for cap, members in reversed(list(CAPABILITIES.items()))}
        assert SpectralClusteringManager.incidence_fingerprint(TOOLS, CAPABILITIES) == \
            SpectralClusteringManager.incidence_fingerprint(list(reversed(TOOLS)), reordered)
        edge = CapabilityEdge("cap:files", "cap:web", 0.8, "dependency")
        assert SpectralClusteringManager.incidence_fingerprint(TOOLS, CAPABILITIES, [edge]) != \
            SpectralClusteringManager.incidence_fingerprint(TOOLS, CAPABILITIES)

    def test_cache_cleared_only_when_incidence_changes(self):
        manager = SpectralClusteringManager()
        fingerprint = manager.incidence_fingerprint(TOOLS, CAPABILITIES)
        assert not manager.observe_incidence(fingerprint)
        first = manager.compute_clusters(TOOLS, CAPABILITIES)

        assert not manager.observe_incidence(fingerprint)
        assert manager.compute_clusters(TOOLS, CAPABILITIES) is first

        grown = dict(CAPABILITIES, **{"cap:report": ["json:parse", "http:post"]})
        assert manager.observe_incidence(manager.incidence_fingerprint(TOOLS, grown))
        assert manager._cache == {}


class TestPageRankAndBoosts:
    def test_symmetric_capabilities_score_equally(self):
        ranks = SpectralClusteringManager().hypergraph_pagerank(TOOLS, CAPABILITIES)
        assert set(ranks) == {"cap:files", "cap:web"}
        assert ranks["cap:files"] == pytest.approx(ranks["cap:web"])

    def test_dependency_edge_raises_target(self):
        edges = [CapabilityEdge("cap:web", "cap:files", 0.9)]
        ranks = SpectralClusteringManager().hypergraph_pagerank(TOOLS, CAPABILITIES, edges)
        assert ranks["cap:files"] > ranks["cap:web"]

    def test_active_cluster_majority(self):
        assignment = ClusterAssignment(tool_clusters={"a": 0, "b": 1, "c": 1})
        assert SpectralClusteringManager.identify_active_cluster(["a", "b", "c"], assignment) == 1
        assert SpectralClusteringManager.identify_active_cluster(["z"], assignment) == -1

    def test_boosts_favour_active_cluster(self):
        manager = SpectralClusteringManager()
        boosts = manager.capability_boosts(["fs:read", "json:parse"], TOOLS, CAPABILITIES)
        assert boosts["cap:files"] > boosts.get("cap:web", 0.0)
        assert boosts["cap:files"] >= manager.config.same_cluster_boost

    def test_boosts_need_enough_context(self):
        manager = SpectralClusteringManager()
        assert manager.capability_boosts(["fs:read"], TOOLS, CAPABILITIES) == {}
        assert manager.capability_boosts(["fs:read", "json:parse"], TOOLS, {"cap:files": ["fs:read"]}) == {}

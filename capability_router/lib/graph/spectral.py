#!/usr/bin/env python3
# capability_router/lib/graph/spectral.py
"""
Spectral clustering and hypergraph PageRank over the tool/capability incidence.

Capabilities are hyperedges over the tools they use. The bipartite adjacency
matrix places tools first and capabilities after them; capability to
capability relations (nesting, dependencies) are added as weighted
capability rows/columns.
"""

import time
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Tuple, Sequence, NamedTuple

import numpy as np
from sklearn.cluster import KMeans

from ..config import SpectralConfig

logger = logging.getLogger(__name__)


class CapabilityEdge(NamedTuple):
    """Directed relation between two capabilities."""
    source: str
    target: str
    confidence: float
    edge_type: str = "dependency"


@dataclass(frozen=True)
class ClusterAssignment:
    """Cluster labels for tools and capabilities."""
    tool_clusters: Dict[str, int] = field(default_factory=dict)
    capability_clusters: Dict[str, int] = field(default_factory=dict)
    cluster_count: int = 0
    eigenvalues: Tuple[float, ...] = ()
    computed_at: float = field(default_factory=time.time)

    def cluster_of(self, node_id: str) -> int:
        """Cluster id of a tool or capability, -1 when unassigned."""
        if node_id in self.tool_clusters:
            return self.tool_clusters[node_id]
        return self.capability_clusters.get(node_id, -1)


def build_bipartite_matrix(
    tool_ids: Sequence[str],
    capabilities: Dict[str, Sequence[str]],
    capability_edges: Optional[Sequence[CapabilityEdge]] = None,
    edge_floor: float = 0.3,
    edge_type_weights: Optional[Dict[str, float]] = None,
) -> Tuple[np.ndarray, Dict[str, int], Dict[str, int]]:
    """Build the symmetric tool/capability adjacency matrix.

    Args:
        tool_ids: Tool ids, placed in rows ``0..len(tool_ids)``
        capabilities: Capability id to the ids of the tools it uses directly
        capability_edges: Optional capability relations added symmetrically
        edge_floor: Capability edges at or below this confidence are skipped
        edge_type_weights: Multiplier per edge type

    Returns:
        Tuple of (matrix, tool index, capability index)
    """
    edge_type_weights = edge_type_weights or {}
    tool_index = {tool_id: i for i, tool_id in enumerate(tool_ids)}
    capability_index = {cap_id: len(tool_ids) + j for j, cap_id in enumerate(capabilities)}
    n = len(tool_index) + len(capability_index)
    matrix = np.zeros((n, n), dtype=np.float64)

    for cap_id, members in capabilities.items():
        ci = capability_index[cap_id]
        for tool_id in members:
            ti = tool_index.get(tool_id)
            if ti is not None:
                matrix[ti, ci] = 1.0
                matrix[ci, ti] = 1.0

    for edge in capability_edges or []:
        if edge.confidence <= edge_floor:
            continue
        i = capability_index.get(edge.source)
        j = capability_index.get(edge.target)
        if i is None or j is None or i == j:
            continue
        weight = edge_type_weights.get(edge.edge_type, 0.5) * edge.confidence
        matrix[i, j] = weight
        matrix[j, i] = weight

    return matrix, tool_index, capability_index


def normalized_laplacian(adjacency: np.ndarray) -> np.ndarray:
    """Compute ``L = I - D^-1/2 A D^-1/2``; isolated nodes keep a unit diagonal."""
    degrees = adjacency.sum(axis=1)
    inv_sqrt = np.zeros_like(degrees)
    nonzero = degrees > 0
    inv_sqrt[nonzero] = 1.0 / np.sqrt(degrees[nonzero])
    return np.eye(adjacency.shape[0]) - inv_sqrt[:, None] * adjacency * inv_sqrt[None, :]


def detect_k_by_eigengap(eigenvalues: Sequence[float], min_k: int = 2, max_k: int = 5, scan: int = 10) -> int:
    """Pick the number of clusters at the largest gap between sorted eigenvalues."""
    ordered = np.sort(np.asarray(eigenvalues, dtype=np.float64))
    optimal_k = min_k
    max_gap = -1.0
    for i in range(1, min(len(ordered) - 1, scan)):
        gap = ordered[i + 1] - ordered[i]
        if gap > max_gap:
            max_gap = gap
            optimal_k = i + 1
    return max(min_k, min(optimal_k, max_k))


def kmeans(data: np.ndarray, k: int, max_iter: int = 100, seed: Optional[int] = None) -> np.ndarray:
    """Label points with scikit-learn k-means.

    Args:
        data: ``(n, d)`` points
        k: Number of clusters, capped at the number of points
        max_iter: Maximum refinement iterations
        seed: Random state for centroid initialisation

    Returns:
        Integer label per point
    """
    n = data.shape[0]
    if n == 0 or k <= 0:
        return np.zeros(n, dtype=int)
    model = KMeans(n_clusters=min(k, n), max_iter=max_iter, random_state=seed, n_init="auto")
    return model.fit_predict(data).astype(int)


class SpectralClusteringManager:
    """Computes and caches spectral clusters and hypergraph PageRank."""

    def __init__(self, config: Optional[SpectralConfig] = None, edge_type_weights: Optional[Dict[str, float]] = None):
        """Initialize the manager.

        Args:
            config: Spectral settings
            edge_type_weights: Multiplier per capability edge type
        """
        self.config = config or SpectralConfig()
        self.edge_type_weights = edge_type_weights or {}
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._cache_lock = threading.Lock()
        self._fingerprint: Optional[str] = None
        self.cache_hits = 0
        self.cache_misses = 0

    @staticmethod
    def incidence_fingerprint(
        tool_ids: Sequence[str],
        capabilities: Dict[str, Sequence[str]],
        capability_edges: Optional[Sequence[CapabilityEdge]] = None,
    ) -> str:
        """Digest of the incidence structure; equal structures give equal digests."""
        parts = [",".join(sorted(tool_ids))]
        for cap_id in sorted(capabilities):
            parts.append(f"{cap_id}>{','.join(sorted(capabilities[cap_id]))}")
        for edge in sorted(capability_edges or [], key=lambda e: (e.source, e.target, e.edge_type)):
            parts.append(f"{edge.source}>{edge.target}:{edge.edge_type}:{edge.confidence:.3f}")
        return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()

    def cache_key(
        self,
        tool_ids: Sequence[str],
        capabilities: Dict[str, Sequence[str]],
        capability_edges: Optional[Sequence[CapabilityEdge]] = None,
        suffix: str = "",
    ) -> str:
        return f"{self.incidence_fingerprint(tool_ids, capabilities, capability_edges)}:{suffix}"

    def invalidate_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def observe_incidence(self, fingerprint: str) -> bool:
        """Drop cached results when the incidence changed since the last call.

        Returns:
            True when the cache was invalidated
        """
        with self._cache_lock:
            if fingerprint == self._fingerprint:
                return False
            changed = self._fingerprint is not None
            self._fingerprint = fingerprint
            if changed:
                self._cache.clear()
        if changed:
            logger.debug("Capability incidence changed, spectral cache cleared")
        return changed

    def _cached(self, key: str) -> Optional[Any]:
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                self.cache_misses += 1
                return None
            created_at, value = entry
            if time.monotonic() - created_at > self.config.cache_ttl_seconds:
                del self._cache[key]
                self.cache_misses += 1
                return None
            self.cache_hits += 1
            return value

    def _store(self, key: str, value: Any) -> None:
        with self._cache_lock:
            self._cache[key] = (time.monotonic(), value)

    def compute_clusters(
        self,
        tool_ids: Sequence[str],
        capabilities: Dict[str, Sequence[str]],
        capability_edges: Optional[Sequence[CapabilityEdge]] = None,
        k: Optional[int] = None,
    ) -> ClusterAssignment:
        """Cluster tools and capabilities by the spectrum of the normalized Laplacian.

        Args:
            tool_ids: Tools in the incidence structure
            capabilities: Capability id to directly used tool ids
            capability_edges: Optional capability relations
            k: Number of clusters, auto-selected by eigengap when None

        Returns:
            ClusterAssignment
        """
        key = self.cache_key(tool_ids, capabilities, capability_edges, f"clusters:{k}")
        cached = self._cached(key)
        if cached is not None:
            return cached

        start_time = time.time()
        matrix, tool_index, capability_index = build_bipartite_matrix(
            tool_ids, capabilities, capability_edges,
            self.config.capability_edge_floor, self.edge_type_weights,
        )
        n = matrix.shape[0]

        if n == 0:
            assignment = ClusterAssignment()
        elif n <= 2:
            assignment = ClusterAssignment(
                tool_clusters={tool_id: 0 for tool_id in tool_index},
                capability_clusters={cap_id: 0 for cap_id in capability_index},
                cluster_count=1,
            )
        else:
            eigenvalues, eigenvectors = np.linalg.eigh(normalized_laplacian(matrix))
            num_clusters = k if k is not None else detect_k_by_eigengap(
                eigenvalues, self.config.min_clusters, self.config.max_clusters, self.config.eigengap_scan
            )
            k_effective = max(1, min(num_clusters, n - 1))
            embedding = eigenvectors[:, :k_effective]
            labels = kmeans(embedding, k_effective, self.config.kmeans_iterations, self.config.seed)
            assignment = ClusterAssignment(
                tool_clusters={tool_id: int(labels[i]) for tool_id, i in tool_index.items()},
                capability_clusters={cap_id: int(labels[i]) for cap_id, i in capability_index.items()},
                cluster_count=k_effective,
                eigenvalues=tuple(float(v) for v in eigenvalues),
            )

        logger.info(
            f"Spectral clustering computed: {n} nodes, {assignment.cluster_count} clusters "
            f"in {(time.time() - start_time) * 1000:.1f}ms"
        )
        self._store(key, assignment)
        return assignment

    def hypergraph_pagerank(
        self,
        tool_ids: Sequence[str],
        capabilities: Dict[str, Sequence[str]],
        capability_edges: Optional[Sequence[CapabilityEdge]] = None,
    ) -> Dict[str, float]:
        """Importance score per capability by power iteration on the bipartite matrix.

        Dependency and containment edges between capabilities are added as
        directed links on top of the symmetric incidence.

        Returns:
            Mapping of capability id to PageRank score
        """
        key = self.cache_key(tool_ids, capabilities, capability_edges, "pagerank")
        cached = self._cached(key)
        if cached is not None:
            return cached

        matrix, _, capability_index = build_bipartite_matrix(
            tool_ids, capabilities, capability_edges,
            self.config.capability_edge_floor, self.edge_type_weights,
        )
        n = matrix.shape[0]
        if n == 0:
            return {}

        for edge in capability_edges or []:
            if edge.edge_type not in ("dependency", "contains"):
                continue
            i = capability_index.get(edge.source)
            j = capability_index.get(edge.target)
            if i is not None and j is not None and i != j:
                matrix[i, j] += edge.confidence

        damping = self.config.pagerank_damping
        out_degree = matrix.sum(axis=1)
        dangling = out_degree == 0
        transition = np.zeros_like(matrix)
        transition[~dangling] = matrix[~dangling] / out_degree[~dangling, None]

        scores = np.full(n, 1.0 / n)
        for _ in range(self.config.pagerank_iterations):
            new_scores = (
                (1.0 - damping) / n
                + damping * (scores @ transition)
                + damping * scores[dangling].sum() / n
            )
            converged = np.abs(new_scores - scores).sum() < self.config.pagerank_tolerance
            scores = new_scores
            if converged:
                break

        result = {cap_id: float(scores[i]) for cap_id, i in capability_index.items()}
        self._store(key, result)
        return result

    @staticmethod
    def identify_active_cluster(context_tools: Sequence[str], assignment: ClusterAssignment) -> int:
        """Cluster holding most context tools, -1 when none are clustered."""
        counts: Dict[int, int] = {}
        for tool_id in context_tools:
            cluster = assignment.tool_clusters.get(tool_id)
            if cluster is not None:
                counts[cluster] = counts.get(cluster, 0) + 1
        if not counts:
            return -1
        return min(counts, key=lambda cluster: (-counts[cluster], cluster))

    def cluster_boost(
        self,
        capability_id: str,
        tools_used: Sequence[str],
        active_cluster: int,
        assignment: ClusterAssignment,
    ) -> float:
        """Boost for a capability relative to the active cluster."""
        if active_cluster < 0:
            return 0.0
        if assignment.capability_clusters.get(capability_id) == active_cluster:
            return self.config.same_cluster_boost
        if not tools_used:
            return 0.0
        in_cluster = sum(1 for tool_id in tools_used if assignment.tool_clusters.get(tool_id) == active_cluster)
        return self.config.partial_cluster_boost * in_cluster / len(tools_used)

    def capability_boosts(
        self,
        context_tools: Sequence[str],
        tool_ids: Sequence[str],
        capabilities: Dict[str, Sequence[str]],
        capability_edges: Optional[Sequence[CapabilityEdge]] = None,
    ) -> Dict[str, float]:
        """Cluster boost plus weighted hypergraph PageRank for each capability.

        Needs at least two capabilities and two context tools; returns an
        empty mapping otherwise.
        """
        if len(capabilities) < 2 or len(context_tools) < 2:
            return {}

        assignment = self.compute_clusters(tool_ids, capabilities, capability_edges)
        pageranks = self.hypergraph_pagerank(tool_ids, capabilities, capability_edges)
        active_cluster = self.identify_active_cluster(context_tools, assignment)

        boosts: Dict[str, float] = {}
        for cap_id, members in capabilities.items():
            boost = self.cluster_boost(cap_id, members, active_cluster, assignment)
            boost += pageranks.get(cap_id, 0.0) * self.config.pagerank_boost_weight
            if boost > 0:
                boosts[cap_id] = boost
        return boosts

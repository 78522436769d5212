#!/usr/bin/env python3
# capability_router/lib/graph/store.py
"""
In-memory dependency graph over tools and capabilities.

Writes go to a live ``networkx.DiGraph``. Analytics (PageRank, Louvain
communities, density) are recomputed explicitly by :meth:`GraphStore.refresh`
into an immutable :class:`GraphSnapshot`, and every query used on the
decision path reads the current snapshot. Decisions therefore never observe a
graph in the middle of a mutation batch.
"""

import math
import time
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Tuple, Sequence, Set, Union, Iterator, Callable

import networkx as nx

from ..config import GraphConfig, SpectralConfig
from ..dag.types import DAGStructure, DependencyPath, Task
from ..tools.base import ToolNode, CapabilityNode
from .spectral import SpectralClusteringManager, ClusterAssignment, CapabilityEdge

logger = logging.getLogger(__name__)

MIN_PATH_EDGE_WEIGHT = 0.1


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable analytics view of the graph at one point in time."""
    graph: nx.DiGraph
    pagerank: Dict[str, float] = field(default_factory=dict)
    communities: Dict[str, int] = field(default_factory=dict)
    density: float = 0.0
    version: int = 0
    computed_at: float = field(default_factory=time.time)

    @classmethod
    def empty(cls) -> "GraphSnapshot":
        return cls(graph=nx.freeze(nx.DiGraph()))

    def has_node(self, node_id: str) -> bool:
        return self.graph.has_node(node_id)

    def kind(self, node_id: str) -> Optional[str]:
        if not self.graph.has_node(node_id):
            return None
        return self.graph.nodes[node_id].get("kind", "tool")


def path_confidence(hops: int) -> float:
    """Confidence of a dependency inferred from a path of ``hops`` edges."""
    if hops <= 1:
        return 0.95
    if hops == 2:
        return 0.80
    if hops == 3:
        return 0.65
    return 0.50


class GraphStore:
    """Weighted directed graph of tools and capabilities with analytics."""

    def __init__(self, config: Optional[GraphConfig] = None, spectral_config: Optional[SpectralConfig] = None):
        """Initialize the graph store.

        Args:
            config: Graph settings
            spectral_config: Spectral clustering settings
        """
        self.config = config or GraphConfig()
        self._graph = nx.DiGraph()
        self._lock = threading.RLock()
        self._batch_depth = 0
        self._snapshot = GraphSnapshot.empty()
        self.spectral = SpectralClusteringManager(spectral_config, self.config.edge_type_weights)
        self._listeners: List[Callable[[GraphSnapshot], None]] = []

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def upsert_node(self, node: Union[ToolNode, CapabilityNode, str]) -> None:
        """Add a node or update its attributes.

        Args:
            node: Tool node, capability node, or a bare tool id
        """
        if isinstance(node, str):
            node = ToolNode(id=node)

        attrs: Dict[str, Any] = {"name": node.name}
        if isinstance(node, CapabilityNode):
            attrs["kind"] = "capability"
            attrs["members"] = tuple(node.tools_used)
        else:
            attrs["kind"] = "tool"

        with self._lock:
            if self._graph.has_node(node.id):
                self._graph.nodes[node.id].update(attrs)
            else:
                self._graph.add_node(node.id, last_seen=None, **attrs)
                if isinstance(node, CapabilityNode):
                    for member in node.tools_used:
                        self._ensure_node(member)

    def _ensure_node(self, node_id: str) -> None:
        if not self._graph.has_node(node_id):
            self._graph.add_node(node_id, kind="tool", name="", last_seen=None)

    def upsert_edge(
        self,
        source: str,
        target: str,
        confidence: float,
        count: int = 1,
        edge_type: str = "sequence",
        edge_source: str = "inferred",
    ) -> None:
        """Create or overwrite a directed edge; missing endpoints are created.

        Self loops are ignored.
        """
        if source == target:
            logger.debug(f"Ignoring self loop on {source}")
            return
        confidence = min(max(confidence, 0.0), 1.0)
        with self._lock:
            self._ensure_node(source)
            self._ensure_node(target)
            self._graph.add_edge(
                source, target,
                weight=confidence, count=max(count, 1),
                edge_type=edge_type, edge_source=edge_source,
            )

    def record_cooccurrence(self, source: str, target: str) -> float:
        """Reinforce (or create) the edge for an observed ``source -> target`` sequence.

        Returns:
            The edge confidence after the update
        """
        if source == target:
            return 0.0
        with self._lock:
            if self._graph.has_edge(source, target):
                edge = self._graph.edges[source, target]
                edge["count"] += 1
                edge["weight"] = min(edge["weight"] * self.config.reinforcement_factor, 1.0)
                return edge["weight"]
            self.upsert_edge(source, target, self.config.new_edge_confidence)
            return self.config.new_edge_confidence

    def edge_weight(self, edge_type: str, edge_source: str) -> float:
        """Combined weight of an edge type and its provenance."""
        type_weight = self.config.edge_type_weights.get(edge_type, 0.5)
        source_modifier = self.config.edge_source_modifiers.get(edge_source, 0.7)
        return type_weight * source_modifier

    def observe_edge(self, source: str, target: str, edge_type: str = "sequence",
                     edge_source: str = "inferred") -> float:
        """Record a typed edge observation.

        Inferred edges become observed after ``observed_threshold``
        observations. An existing edge keeps the stronger of the two types.

        Returns:
            The edge confidence after the update
        """
        if source == target:
            return 0.0
        with self._lock:
            if not self._graph.has_edge(source, target):
                weight = self.edge_weight(edge_type, edge_source)
                self.upsert_edge(source, target, weight, 1, edge_type, edge_source)
                return weight

            edge = self._graph.edges[source, target]
            edge["count"] += 1
            types = self.config.edge_type_weights
            if types.get(edge_type, 0.0) > types.get(edge.get("edge_type", "sequence"), 0.0):
                edge["edge_type"] = edge_type
            if edge.get("edge_source") == "inferred" and edge["count"] >= self.config.observed_threshold:
                edge["edge_source"] = "observed"
                logger.debug(f"Edge {source} -> {target} promoted to observed")
            edge["weight"] = max(edge["weight"], self.edge_weight(edge["edge_type"], edge["edge_source"]))
            return edge["weight"]

    def update_from_path(self, path: Sequence[str], timestamp: Optional[float] = None) -> None:
        """Learn sequence edges from an executed path."""
        timestamp = timestamp or time.time()
        with self._lock:
            for node_id in path:
                self._ensure_node(node_id)
                self._graph.nodes[node_id]["last_seen"] = timestamp
            for source, target in zip(path, path[1:]):
                if source != target:
                    self.record_cooccurrence(source, target)

    def update_from_hierarchy(self, parent_id: str, child_ids: Sequence[str]) -> None:
        """Learn containment edges from a capability to the candidates it invoked."""
        with self._lock:
            for child_id in child_ids:
                self.observe_edge(parent_id, child_id, "contains", "observed")
            for source, target in zip(child_ids, child_ids[1:]):
                self.observe_edge(source, target, "sequence", "inferred")

    def prune_weak_edges(self) -> int:
        """Remove edges below the confidence floor. Returns the number removed."""
        with self._lock:
            weak = [
                (u, v) for u, v, w in self._graph.edges(data="weight")
                if w < self.config.min_edge_confidence
            ]
            self._graph.remove_edges_from(weak)
        if weak:
            logger.debug(f"Pruned {len(weak)} edges below {self.config.min_edge_confidence}")
        return len(weak)

    def add_refresh_listener(self, listener: Callable[[GraphSnapshot], None]) -> None:
        """Call ``listener`` with every snapshot published by :meth:`refresh`."""
        self._listeners.append(listener)

    @contextmanager
    def mutation_batch(self) -> Iterator["GraphStore"]:
        """Group writes; analytics are refreshed once when the outermost batch exits."""
        with self._lock:
            self._batch_depth += 1
            try:
                yield self
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0:
                    self.refresh()

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def refresh(self) -> GraphSnapshot:
        """Recompute analytics and atomically publish a new snapshot."""
        start_time = time.time()
        with self._lock:
            analytics = nx.DiGraph()
            analytics.add_nodes_from(self._graph.nodes(data=True))
            analytics.add_edges_from(
                (u, v, dict(data)) for u, v, data in self._graph.edges(data=True)
                if data.get("weight", 0.0) >= self.config.min_edge_confidence
            )
            version = self._snapshot.version + 1

        snapshot = GraphSnapshot(
            graph=nx.freeze(analytics),
            pagerank=self._compute_pagerank(analytics),
            communities=self._compute_communities(analytics),
            density=nx.density(analytics) if analytics.number_of_nodes() > 1 else 0.0,
            version=version,
        )
        self._snapshot = snapshot
        self.spectral.observe_incidence(self.spectral.incidence_fingerprint(*self.incidence()))
        logger.info(
            f"Graph analytics refreshed: {analytics.number_of_nodes()} nodes, "
            f"{analytics.number_of_edges()} edges in {(time.time() - start_time) * 1000:.1f}ms"
        )
        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot

    @property
    def snapshot(self) -> GraphSnapshot:
        return self._snapshot

    def _compute_pagerank(self, graph: nx.DiGraph) -> Dict[str, float]:
        n = graph.number_of_nodes()
        if n == 0:
            return {}
        if graph.number_of_edges() == 0:
            return {node: 1.0 / n for node in graph.nodes}
        try:
            return nx.pagerank(
                graph,
                alpha=self.config.pagerank_damping,
                weight="weight",
                tol=self.config.pagerank_tolerance,
                max_iter=self.config.pagerank_max_iter,
            )
        except nx.PowerIterationFailedConvergence:
            logger.warning("PageRank did not converge, using uniform centrality")
            return {node: 1.0 / n for node in graph.nodes}

    def _compute_communities(self, graph: nx.DiGraph) -> Dict[str, int]:
        if graph.number_of_nodes() == 0:
            return {}
        if graph.number_of_edges() == 0:
            groups = [{node} for node in graph.nodes]
        else:
            groups = nx.community.louvain_communities(
                graph.to_undirected(),
                weight="weight",
                resolution=self.config.louvain_resolution,
                seed=self.config.louvain_seed,
            )
        ordered = sorted((sorted(group) for group in groups), key=lambda members: members[0])
        return {node: community_id for community_id, members in enumerate(ordered) for node in members}

    def centrality(self) -> Dict[str, float]:
        """PageRank per node from the current snapshot."""
        return dict(self._snapshot.pagerank)

    def communities(self) -> Dict[str, int]:
        """Louvain community id per node from the current snapshot."""
        return dict(self._snapshot.communities)

    def density(self) -> float:
        return self._snapshot.density

    def adaptive_alpha(self) -> float:
        """Weight of semantic versus graph evidence; denser graphs trust the graph more."""
        if self._snapshot.graph.number_of_nodes() <= 1:
            return 1.0
        return max(0.5, 1.0 - 2.0 * self._snapshot.density)

    # ------------------------------------------------------------------
    # Queries (snapshot reads)
    # ------------------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return self._snapshot.has_node(node_id)

    def node_ids(self, kind: Optional[str] = None) -> List[str]:
        graph = self._snapshot.graph
        return sorted(
            node for node, node_kind in graph.nodes(data="kind")
            if kind is None or node_kind == kind
        )

    def neighbors(self, node_id: str, direction: str = "both") -> List[str]:
        """Neighbour ids; ``direction`` is ``out``, ``in`` or ``both``."""
        graph = self._snapshot.graph
        if not graph.has_node(node_id):
            return []
        result: Set[str] = set()
        if direction in ("out", "both"):
            result.update(graph.successors(node_id))
        if direction in ("in", "both"):
            result.update(graph.predecessors(node_id))
        return sorted(result)

    def edge_data(self, source: str, target: str) -> Optional[Dict[str, Any]]:
        graph = self._snapshot.graph
        if not graph.has_edge(source, target):
            return None
        return dict(graph.edges[source, target])

    def shortest_path(self, source: str, target: str) -> Optional[List[str]]:
        """Strongest path by bidirectional Dijkstra on ``1 / weight`` costs.

        Returns:
            Node ids from source to target, or None when unreachable, unknown,
            or longer than ``max_hops``
        """
        graph = self._snapshot.graph
        if not graph.has_node(source) or not graph.has_node(target):
            return None
        if source == target:
            return [source]
        try:
            _, path = nx.bidirectional_dijkstra(
                graph, source, target,
                weight=lambda u, v, data: 1.0 / max(data.get("weight", 0.0), MIN_PATH_EDGE_WEIGHT),
            )
        except nx.NetworkXNoPath:
            return None
        if len(path) - 1 > self.config.max_hops:
            return None
        return path

    def _undirected_neighbors(self, graph: nx.DiGraph, node_id: str) -> Set[str]:
        return set(graph.successors(node_id)) | set(graph.predecessors(node_id))

    def _undirected_weight(self, graph: nx.DiGraph, u: str, v: str) -> float:
        if graph.has_edge(u, v):
            return graph.edges[u, v].get("weight", 0.5)
        if graph.has_edge(v, u):
            return graph.edges[v, u].get("weight", 0.5)
        return 0.5

    def adamic_adar(self, node_id: str, limit: int = 10) -> List[Tuple[str, float]]:
        """Edge-weighted Adamic-Adar scores of two-hop neighbours, strongest first."""
        graph = self._snapshot.graph
        if not graph.has_node(node_id):
            return []

        scores: Dict[str, float] = {}
        for neighbor in self._undirected_neighbors(graph, node_id):
            degree = graph.degree(neighbor)
            if degree <= 1:
                continue
            contribution = self._undirected_weight(graph, node_id, neighbor) / math.log(degree)
            for two_hop in self._undirected_neighbors(graph, neighbor):
                if two_hop != node_id:
                    scores[two_hop] = scores.get(two_hop, 0.0) + contribution

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]

    def adamic_adar_between(self, first: str, second: str) -> float:
        """Adamic-Adar index of two nodes over shared neighbours."""
        graph = self._snapshot.graph
        if not graph.has_node(first) or not graph.has_node(second):
            return 0.0
        score = 0.0
        common = self._undirected_neighbors(graph, first) & self._undirected_neighbors(graph, second)
        for neighbor in common:
            degree = graph.degree(neighbor)
            if degree > 1:
                score += 1.0 / math.log(degree)
        return score

    def graph_relatedness(self, node_id: str, context: Sequence[str]) -> float:
        """Relatedness of a node to the context: 1.0 for a direct edge, else scaled Adamic-Adar."""
        graph = self._snapshot.graph
        if not context or not graph.has_node(node_id):
            return 0.0
        best = 0.0
        for context_id in context:
            if not graph.has_node(context_id):
                continue
            if graph.has_edge(context_id, node_id) or graph.has_edge(node_id, context_id):
                return 1.0
            best = max(best, self.adamic_adar_between(node_id, context_id))
        return min(best / 2.0, 1.0)

    def community_members(self, node_id: str) -> List[str]:
        """Other members of the node's community, by PageRank descending."""
        communities = self._snapshot.communities
        community = communities.get(node_id)
        if community is None:
            return []
        pagerank = self._snapshot.pagerank
        members = [node for node, cid in communities.items() if cid == community and node != node_id]
        return sorted(members, key=lambda node: (-pagerank.get(node, 0.0), node))

    def node_features(self, node_id: str, now: Optional[float] = None) -> Dict[str, float]:
        """Structural and temporal features of a node for the scorer.

        Unknown nodes get all-zero features and community -1.
        """
        snapshot = self._snapshot
        graph = snapshot.graph
        if not graph.has_node(node_id):
            return {"pagerank": 0.0, "community": -1.0, "adamic_adar": 0.0, "cooccurrence": 0.0, "recency": 0.0}

        max_pagerank = max(snapshot.pagerank.values(), default=0.0)
        pagerank = snapshot.pagerank.get(node_id, 0.0) / max_pagerank if max_pagerank > 0 else 0.0

        top = self.adamic_adar(node_id, limit=1)
        adamic = min(top[0][1] / 2.0, 1.0) if top else 0.0

        incident = sum(count for _, _, count in graph.in_edges(node_id, data="count", default=0))
        incident += sum(count for _, _, count in graph.out_edges(node_id, data="count", default=0))
        max_count = max((count for _, _, count in graph.edges(data="count", default=0)), default=0)
        cooccurrence = min(incident / (2.0 * max_count), 1.0) if max_count > 0 else 0.0

        last_seen = graph.nodes[node_id].get("last_seen")
        if last_seen is None:
            recency = 0.0
        else:
            age = max((now or time.time()) - last_seen, 0.0)
            recency = math.exp(-age * math.log(2) / self.config.recency_half_life_seconds)

        return {
            "pagerank": pagerank,
            "community": float(snapshot.communities.get(node_id, -1)),
            "adamic_adar": adamic,
            "cooccurrence": cooccurrence,
            "recency": recency,
        }

    def adjacency(self) -> Dict[str, Set[str]]:
        """Out-neighbour sets of every node in the snapshot."""
        graph = self._snapshot.graph
        return {node: set(graph.successors(node)) for node in graph.nodes}

    # ------------------------------------------------------------------
    # Hypergraph analytics
    # ------------------------------------------------------------------

    def incidence(self) -> Tuple[List[str], Dict[str, List[str]], List[CapabilityEdge]]:
        """Tool/capability incidence of the snapshot.

        Capability members that are tools become incidence entries; members
        that are capabilities become ``contains`` edges, as do graph edges
        between two capabilities.
        """
        graph = self._snapshot.graph
        tool_ids = self.node_ids("tool")
        capability_ids = self.node_ids("capability")
        capability_set = set(capability_ids)

        capabilities: Dict[str, List[str]] = {}
        edges: List[CapabilityEdge] = []
        for cap_id in capability_ids:
            members = graph.nodes[cap_id].get("members", ())
            capabilities[cap_id] = [member for member in members if member not in capability_set]
            for member in members:
                if member in capability_set:
                    edges.append(CapabilityEdge(cap_id, member, 1.0, "contains"))

        for u, v, data in graph.edges(data=True):
            if u in capability_set and v in capability_set:
                edges.append(CapabilityEdge(u, v, data.get("weight", 0.0), data.get("edge_type", "sequence")))

        return tool_ids, capabilities, edges

    def spectral_clusters(self, k: Optional[int] = None) -> ClusterAssignment:
        """Spectral clusters of the tool/capability incidence (TTL cached)."""
        tool_ids, capabilities, edges = self.incidence()
        return self.spectral.compute_clusters(tool_ids, capabilities, edges, k)

    def hypergraph_pagerank(self) -> Dict[str, float]:
        """Capability importance over the incidence (TTL cached)."""
        tool_ids, capabilities, edges = self.incidence()
        return self.spectral.hypergraph_pagerank(tool_ids, capabilities, edges)

    def capability_boosts(self, context: Sequence[str]) -> Dict[str, float]:
        """Spectral boost per capability relative to the context tools."""
        tool_ids, capabilities, edges = self.incidence()
        return self.spectral.capability_boosts(context, tool_ids, capabilities, edges)

    # ------------------------------------------------------------------
    # DAG construction
    # ------------------------------------------------------------------

    def _path_quality(self, path: List[str]) -> float:
        graph = self._snapshot.graph
        weights = [
            graph.edges[u, v].get("weight", 0.5)
            for u, v in zip(path, path[1:]) if graph.has_edge(u, v)
        ]
        average = sum(weights) / len(weights) if weights else 0.5
        return average / len(path)

    def build_dag(self, candidate_ids: Sequence[str]) -> DAGStructure:
        """Build a task DAG over candidates from shortest-path relationships.

        ``task_i`` depends on ``task_j`` when a path from candidate ``j`` to
        candidate ``i`` exists within the hop cap. Mutual dependencies keep the
        higher-quality direction; any longer cycle loses its weakest edge.
        """
        n = len(candidate_ids)
        quality: Dict[Tuple[int, int], float] = {}
        for i in range(n):
            for j in range(n):
                if i == j:
                    continue
                path = self.shortest_path(candidate_ids[j], candidate_ids[i])
                if path and len(path) > 1:
                    quality[(i, j)] = self._path_quality(path)

        for i in range(n):
            for j in range(i + 1, n):
                if (i, j) in quality and (j, i) in quality:
                    if quality[(i, j)] >= quality[(j, i)]:
                        del quality[(j, i)]
                    else:
                        del quality[(i, j)]

        dependency_graph = nx.DiGraph()
        dependency_graph.add_nodes_from(range(n))
        dependency_graph.add_edges_from((j, i) for (i, j) in quality)
        while True:
            try:
                cycle = nx.find_cycle(dependency_graph)
            except nx.NetworkXNoCycle:
                break
            weakest = min(cycle, key=lambda edge: quality[(edge[1], edge[0])])
            dependency_graph.remove_edge(weakest[0], weakest[1])
            del quality[(weakest[1], weakest[0])]
            logger.debug(f"Broke dependency cycle at {candidate_ids[weakest[0]]} -> {candidate_ids[weakest[1]]}")

        tasks = []
        for i, candidate_id in enumerate(candidate_ids):
            depends_on = [f"task_{j}" for j in sorted(dependency_graph.predecessors(i))]
            kind = self._snapshot.kind(candidate_id) or "tool"
            tasks.append(Task(id=f"task_{i}", candidate_id=candidate_id, depends_on=depends_on, kind=kind))
        return DAGStructure(tasks=tasks)

    def dependency_paths(self, dag: DAGStructure) -> List[DependencyPath]:
        """Explain each dependency of a DAG with its supporting graph path."""
        paths: List[DependencyPath] = []
        for task in dag.tasks:
            for dependency_id in task.depends_on:
                dependency = dag.get_task(dependency_id)
                if dependency is None:
                    continue
                path = self.shortest_path(dependency.candidate_id, task.candidate_id)
                if not path:
                    continue
                hops = len(path) - 1
                if hops == 1:
                    explanation = f"Direct dependency: {path[0]} -> {path[-1]}"
                else:
                    explanation = f"Transitive dependency: {' -> '.join(path)} ({hops} hops)"
                paths.append(DependencyPath(
                    source=dependency.candidate_id,
                    target=task.candidate_id,
                    path=path,
                    hops=hops,
                    explanation=explanation,
                    confidence=path_confidence(hops),
                ))
        return paths

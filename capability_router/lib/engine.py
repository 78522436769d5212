#!/usr/bin/env python3
# capability_router/lib/engine.py
"""Decision engine tying the graph, scorer, exploration, replay and suggester together."""

import time
import asyncio
import logging
from typing import Dict, List, Any, Optional, Sequence, Union

from .config import RouterConfig
from .embeddings import EmbeddingProvider
from .errors import ConfigurationError
from .events import EventChannel, OutcomeRecordedEvent, AnalyticsRefreshedEvent
from .graph.store import GraphStore, GraphSnapshot
from .monitoring.decision_metrics import DecisionMetrics
from .rl.replay import ReplayTrainer, TrainingResult, td_priority
from .rl.scorer import CandidateScorer
from .rl.thompson import ExplorationManager, ThresholdMode, ThresholdResult
from .suggestion.suggester import Suggester, SuggestionResult, PredictedCandidate, WorkflowState
from .dag.executor import TaskExecutor
from .tools.base import CandidateRegistry, ToolNode, CapabilityNode
from .tools.permissions import PermissionDescriptor
from .traces.store import ExecutionTrace, TraceStore, InMemoryTraceStore, validate_trace

logger = logging.getLogger(__name__)


class DecisionEngine:
    """Entry point for callers: suggestions, thresholds and outcome feedback."""

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        registry: Optional[CandidateRegistry] = None,
        permissions: Optional[PermissionDescriptor] = None,
        trace_store: Optional[TraceStore] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        events: Optional[EventChannel] = None,
        task_executor: Optional[TaskExecutor] = None,
        metrics: Optional[DecisionMetrics] = None,
    ):
        """Initialize the engine.

        Args:
            config: Router configuration
            registry: Tool and capability definitions
            permissions: Permission descriptor used for risk classification
            trace_store: Trace persistence; an in-memory store when None
            embedding_provider: Provider for intent embeddings
            events: Channel for notifications; a new one when None
            task_executor: Callable running one task during suggestion
            metrics: Metrics tracker subscribed to the event channel
        """
        self.config = config or RouterConfig()
        self.events = events if events is not None else EventChannel()
        self.registry = registry if registry is not None else CandidateRegistry()
        self.permissions = permissions if permissions is not None else PermissionDescriptor()
        self.trace_store = trace_store if trace_store is not None else InMemoryTraceStore(self.config.traces_path)
        self.embedding_provider = embedding_provider

        self.graph = GraphStore(self.config.graph, self.config.spectral)
        self.scorer = CandidateScorer(self.config.scorer)
        self.graph.add_refresh_listener(self._on_graph_refresh)
        self.exploration = ExplorationManager(self.config.thompson, self.permissions, self.registry)
        self.trainer = ReplayTrainer(self.scorer, self.trace_store, self.config.replay, embedding_provider, self.events)
        self.suggester = Suggester(
            self.graph, self.scorer, self.exploration, self.registry,
            self.config.suggester, self.events, task_executor,
        )

        self.metrics = metrics
        if metrics is not None:
            metrics.attach(self.events)
        self._training_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: RouterConfig, **kwargs) -> "DecisionEngine":
        """Build an engine, loading the permission descriptor named in the configuration."""
        if "permissions" not in kwargs and config.permissions_path:
            kwargs["permissions"] = PermissionDescriptor.from_file(config.permissions_path)
        return cls(config, **kwargs)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_tool(self, tool: ToolNode, embedding: Optional[Sequence[float]] = None) -> None:
        """Register a tool with the registry, the graph and, given an embedding, the scorer."""
        self.registry.register_tool(tool)
        with self.graph.mutation_batch():
            self.graph.upsert_node(tool)
        embedding = embedding if embedding is not None else tool.embedding
        if embedding is not None:
            self.scorer.register_tool(tool.id, embedding)
        self.registry.recompute_risk(self.permissions)

    def register_capability(self, capability: CapabilityNode, embedding: Optional[Sequence[float]] = None) -> None:
        capability = self.registry.register_capability(capability)
        with self.graph.mutation_batch():
            self.graph.upsert_node(capability)
        embedding = embedding if embedding is not None else capability.embedding
        if embedding is not None:
            self.scorer.register_capability(capability.id, embedding, {"success_rate": capability.success_rate})
        self.registry.recompute_risk(self.permissions)

    def sync_scorer_features(self) -> int:
        """Push the latest graph analytics into the scorer.

        Tools take their features from the graph snapshot; capabilities use
        hypergraph PageRank, their spectral cluster, the recency of their
        tools as heat and their recorded success rate.

        Returns:
            Number of scorer nodes updated
        """
        now = time.time()
        hypergraph = self.graph.hypergraph_pagerank()
        max_rank = max(hypergraph.values(), default=0.0)
        clusters = self.graph.spectral_clusters() if self.registry.capabilities else None

        updated = 0
        for node_id in self.graph.node_ids():
            if not self.scorer.has_node(node_id):
                continue
            features = self.graph.node_features(node_id, now)
            capability = self.registry.get_capability(node_id)
            if capability is not None:
                features["pagerank"] = hypergraph.get(node_id, 0.0) / max_rank if max_rank > 0 else 0.0
                cluster = clusters.cluster_of(node_id) if clusters is not None else None
                features["community"] = float(cluster) if cluster is not None else -1.0
                members = self.registry.transitive_tools(node_id)
                if members:
                    features["heat"] = sum(self.graph.node_features(m, now)["recency"] for m in members) / len(members)
                features["success_rate"] = capability.success_rate
            if self.scorer.update_features(node_id, **features):
                updated += 1

        logger.debug(f"Synced graph features into {updated} scorer nodes")
        return updated

    def _on_graph_refresh(self, snapshot: GraphSnapshot) -> None:
        self.scorer.set_adjacency(self.graph.adjacency())
        self.registry.sync_graph_features(snapshot.pagerank, snapshot.communities)

    def _learn_paths(self, traces: Sequence[ExecutionTrace]) -> None:
        with self.graph.mutation_batch():
            for trace in traces:
                self.graph.update_from_path(trace.executed_path, trace.executed_at)
                capability = self.registry.get_capability(trace.candidate_id) if trace.candidate_id else None
                if capability is not None and trace.executed_path:
                    self.graph.update_from_hierarchy(capability.id, trace.executed_path)
        self.sync_scorer_features()

    async def learn_from_stored_traces(self) -> int:
        """Rebuild graph edges and scorer features from every trace in the store.

        Returns:
            Number of traces replayed into the graph
        """
        traces = await self.trace_store.get_traces(limit=await self.trace_store.count_traces())
        if traces:
            await asyncio.to_thread(self._learn_paths, traces)
        logger.info(f"Learned graph structure from {len(traces)} stored traces")
        return len(traces)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def suggest(
        self,
        intent_embedding: Sequence[float],
        context: Sequence[str] = (),
        mode: Optional[ThresholdMode] = None,
    ) -> SuggestionResult:
        """Rank, gate and (with a task executor) run candidates for an intent."""
        start_time = time.time()
        result = self.suggester.suggest(intent_embedding, context, mode)
        if self.metrics is not None:
            self.metrics.log_latency((time.time() - start_time) * 1000)
        return result

    async def suggest_for_intent(
        self,
        intent_text: str,
        context: Sequence[str] = (),
        mode: Optional[ThresholdMode] = None,
    ) -> SuggestionResult:
        """Embed an intent with the embedding provider, then suggest.

        Raises:
            ConfigurationError: If no embedding provider is configured
        """
        if self.embedding_provider is None:
            raise ConfigurationError("No embedding provider configured")
        embedding = await self.embedding_provider.get_embedding(intent_text)
        return self.suggest(embedding, context, mode)

    def predict_next_candidates(self, workflow_state: Union[WorkflowState, Sequence[str]]) -> List[PredictedCandidate]:
        if not isinstance(workflow_state, WorkflowState):
            workflow_state = WorkflowState(executed_ids=list(workflow_state))
        return self.suggester.predict_next_candidates(workflow_state)

    def get_threshold_for_candidate(
        self,
        candidate_id: str,
        mode: ThresholdMode = ThresholdMode.PASSIVE_SUGGESTION,
    ) -> ThresholdResult:
        return self.exploration.get_threshold_for_candidate(candidate_id, mode, self.graph.adaptive_alpha())

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def _initial_priority(self, trace: ExecutionTrace) -> float:
        intent = trace.intent_embedding
        if intent is None and self.embedding_provider is not None:
            intent = await self.embedding_provider.get_embedding(trace.intent_text)
        path = ([trace.candidate_id] if trace.candidate_id else []) + [
            node_id for node_id in trace.executed_path if node_id != trace.candidate_id
        ]
        if intent is None or not path:
            return self.config.replay.cold_start_priority
        predicted = self.scorer.predict_path_success(intent, path)
        actual = 1.0 if trace.success else 0.0
        return td_priority(actual, predicted, self.config.replay.min_priority, self.config.replay.max_priority)

    async def record_execution_outcome(self, trace: Union[ExecutionTrace, Dict[str, Any]]) -> ExecutionTrace:
        """Store an execution outcome and learn from it.

        The trace is validated and saved with its TD-error priority, the Beta
        posteriors of the candidate and each executed tool are updated, the
        graph learns the executed sequence, and replay training is scheduled
        in the background every ``training_interval`` outcomes.

        Raises:
            MalformedTraceError: If the trace is invalid
        """
        trace = validate_trace(trace)
        trace = trace.with_priority(await self._initial_priority(trace))
        await self.trace_store.save_trace(trace)

        if trace.candidate_id:
            self.exploration.record_outcome(trace.candidate_id, trace.success)
        for task_result in trace.task_results:
            if task_result.tool != trace.candidate_id:
                self.exploration.record_outcome(task_result.tool, task_result.success)

        capability = self.registry.get_capability(trace.candidate_id) if trace.candidate_id else None
        if capability is not None:
            capability.record_usage(trace.success)
        # Graph analytics and spectral features are CPU bound
        await asyncio.to_thread(self._learn_paths, [trace])
        snapshot = self.graph.snapshot
        self.events.publish(AnalyticsRefreshedEvent(
            version=snapshot.version,
            nodes=snapshot.graph.number_of_nodes(),
            edges=snapshot.graph.number_of_edges(),
        ))

        self.events.publish(OutcomeRecordedEvent(
            trace_id=trace.id,
            candidate_id=trace.candidate_id,
            success=trace.success,
            priority=trace.priority,
        ))
        logger.debug(f"Recorded outcome of {trace.candidate_id or 'ad hoc execution'}: success={trace.success}")

        if self.trainer.record_execution():
            self._schedule_training()
        return trace

    def _schedule_training(self) -> None:
        if self._training_task is not None and not self._training_task.done():
            logger.info("Replay training already scheduled, not starting another run")
            return
        self._training_task = asyncio.create_task(self.trainer.run())
        self._training_task.add_done_callback(self._training_finished)

    def _training_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Replay training was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Replay training failed: {error}")

    async def train_now(
        self,
        candidate_id: Optional[str] = None,
        min_traces: Optional[int] = None,
        max_traces: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> TrainingResult:
        """Run replay training in the foreground."""
        return await self.trainer.run(candidate_id, min_traces, max_traces, batch_size)

    async def shutdown(self) -> None:
        """Stop training, waiting for the active run to flush its priorities."""
        self.trainer.request_stop()
        if self._training_task is not None and not self._training_task.done():
            await asyncio.wait([self._training_task])
        if isinstance(self.trace_store, InMemoryTraceStore) and self.trace_store.data_file:
            self.trace_store.save()
        logger.info("Decision engine shut down")

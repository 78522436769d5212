#!/usr/bin/env python3
# capability_router/lib/rl/replay.py
"""
Prioritized experience replay over execution traces.

Traces are sampled with probability proportional to ``priority ** alpha``,
flattened into their leaf execution path, expanded into one training example
per step and used to train the candidate scorer. Each trained trace then gets
a new priority equal to its absolute temporal-difference error.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Any, Optional, Sequence, Set, Deque

import numpy as np

from ..config import ReplayConfig
from ..events import EventChannel, PriorityUpdatedEvent, TrainingCompletedEvent, TrainingSkippedEvent
from ..traces.store import ExecutionTrace, TraceStore
from .scorer import CandidateScorer, TrainingExample

logger = logging.getLogger(__name__)


class TrainingSkipReason(str, Enum):
    """Why a replay run did not train."""
    ALREADY_RUNNING = "already_running"
    INSUFFICIENT_TRACES = "insufficient_traces"
    NO_TRACES_SAMPLED = "no_traces_sampled"
    NO_EXAMPLES = "no_examples"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class TrainingResult:
    """Outcome of a replay run, trained or skipped."""
    trained: bool
    skip_reason: Optional[TrainingSkipReason] = None
    detail: str = ""
    traces_used: int = 0
    examples_used: int = 0
    loss: float = 0.0
    accuracy: float = 0.0
    priorities_updated: int = 0
    stopped_early: bool = False
    weights_version: int = 0


def td_priority(actual: float, predicted: float, min_priority: float = 0.01, max_priority: float = 1.0) -> float:
    """Replay priority from a temporal-difference error."""
    return min(max(abs(actual - predicted), min_priority), max_priority)


def importance_weights(priorities: Sequence[float], alpha: float = 0.6, beta: float = 0.4) -> np.ndarray:
    """Importance-sampling corrections for prioritized sampling, normalised to max 1."""
    values = np.asarray(priorities, dtype=np.float64)
    if values.size == 0:
        return values
    scaled = np.power(np.maximum(values, 1e-12), alpha)
    probabilities = scaled / scaled.sum()
    weights = np.power(values.size * probabilities, -beta)
    return weights / weights.max()


class ReplayTrainer:
    """Trains a CandidateScorer from prioritized execution traces.

    Only one run is active at a time; a second trigger while a run is in
    flight returns a skipped result instead of queueing.
    """

    def __init__(
        self,
        scorer: CandidateScorer,
        trace_store: TraceStore,
        config: Optional[ReplayConfig] = None,
        embedding_provider: Optional[Any] = None,
        events: Optional[EventChannel] = None,
    ):
        """Initialize the replay trainer.

        Args:
            scorer: Scorer whose weights are trained
            trace_store: Source of traces and sink for priorities
            config: Replay settings
            embedding_provider: Fallback for traces without a stored intent embedding
            events: Channel for training notifications
        """
        self.scorer = scorer
        self.trace_store = trace_store
        self.config = config or ReplayConfig()
        self.embedding_provider = embedding_provider
        self.events = events
        self._lock = asyncio.Lock()
        self._stop_requested = False
        self._executions_since_training = 0
        self._rng = np.random.default_rng(self.config.seed)

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def request_stop(self) -> None:
        """Ask an active run to stop after its current batch."""
        self._stop_requested = True

    def record_execution(self) -> bool:
        """Count one completed execution; True when a training run is due."""
        self._executions_since_training += 1
        if self._executions_since_training >= self.config.training_interval:
            self._executions_since_training = 0
            return True
        return False

    # ------------------------------------------------------------------
    # Sampling and example construction
    # ------------------------------------------------------------------

    def sample(self, traces: Sequence[ExecutionTrace], n: int, alpha: Optional[float] = None) -> List[ExecutionTrace]:
        """Sample ``n`` traces without replacement, ``P ∝ priority ** alpha``.

        Remaining probabilities are renormalised after each draw. When all
        priorities are indistinguishable the draw is uniform.
        """
        if n <= 0 or not traces:
            return []
        alpha = self.config.alpha if alpha is None else alpha
        n = min(n, len(traces))
        priorities = np.array([max(trace.priority, self.config.min_priority) for trace in traces])

        if np.ptp(priorities) <= self.config.indistinguishable_epsilon:
            indices = self._rng.choice(len(traces), size=n, replace=False)
            return [traces[i] for i in indices]

        weights = np.power(priorities, alpha)
        remaining = list(range(len(traces)))
        selected: List[int] = []
        for _ in range(n):
            remaining_weights = weights[remaining]
            pick = int(self._rng.choice(len(remaining), p=remaining_weights / remaining_weights.sum()))
            selected.append(remaining.pop(pick))
        return [traces[i] for i in selected]

    async def flatten_path(self, trace: ExecutionTrace, _depth: int = 0,
                           _visited: Optional[Set[str]] = None) -> List[str]:
        """Expand a hierarchical trace into one ordered list of ids.

        The trace's own candidate comes first, followed by its executed path
        where every step that was itself recorded as a child trace is
        replaced by that child's flattened path.
        """
        visited = (_visited or set()) | {trace.id}
        path = list(trace.executed_path)
        flat: List[str] = []
        if trace.candidate_id:
            flat.append(trace.candidate_id)
            if path and path[0] == trace.candidate_id:
                path = path[1:]

        if _depth >= self.config.max_flatten_depth:
            logger.warning(f"Trace {trace.id} nested deeper than {self.config.max_flatten_depth}, not expanding")
            return flat + path

        children: Dict[str, Deque[ExecutionTrace]] = defaultdict(deque)
        for child in await self.trace_store.get_child_traces(trace.id):
            if child.candidate_id and child.id not in visited:
                children[child.candidate_id].append(child)

        for node_id in path:
            queue = children.get(node_id)
            if queue:
                flat.extend(await self.flatten_path(queue.popleft(), _depth + 1, visited))
            else:
                flat.append(node_id)
        return flat

    def to_training_examples(self, trace: ExecutionTrace, flat_path: Sequence[str],
                             intent_embedding: Sequence[float]) -> List[TrainingExample]:
        """One example per step: prefix as context, step as target, trace outcome as label."""
        outcome = 1.0 if trace.success else 0.0
        intent = np.asarray(intent_embedding, dtype=np.float64)
        return [
            TrainingExample(
                intent_embedding=intent,
                context=tuple(flat_path[:i]),
                target_id=target_id,
                outcome=outcome,
                trace_id=trace.id,
            )
            for i, target_id in enumerate(flat_path)
        ]

    async def _intent_embedding(self, trace: ExecutionTrace) -> Optional[np.ndarray]:
        if trace.intent_embedding:
            return np.asarray(trace.intent_embedding, dtype=np.float64)
        if self.embedding_provider is None:
            return None
        embedding = await self.embedding_provider.get_embedding(trace.intent_text)
        return np.asarray(embedding, dtype=np.float64)

    # ------------------------------------------------------------------
    # Training run
    # ------------------------------------------------------------------

    def _skip(self, reason: TrainingSkipReason, detail: str) -> TrainingResult:
        logger.info(f"Replay training skipped: {detail}")
        if self.events is not None:
            self.events.publish(TrainingSkippedEvent(reason=reason.value, detail=detail))
        return TrainingResult(trained=False, skip_reason=reason, detail=detail,
                              weights_version=self.scorer.weights.version)

    async def run(
        self,
        candidate_id: Optional[str] = None,
        min_traces: Optional[int] = None,
        max_traces: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> TrainingResult:
        """Sample traces, train the scorer and write back TD-error priorities.

        Args:
            candidate_id: Restrict training to traces of one candidate
            min_traces: Minimum stored traces required to train
            max_traces: Maximum traces sampled for this run
            batch_size: Examples per training batch

        Returns:
            TrainingResult; skipped runs carry a reason code
        """
        if self._lock.locked():
            return self._skip(TrainingSkipReason.ALREADY_RUNNING, "a training run is already in progress")

        async with self._lock:
            if self._stop_requested:
                return self._skip(TrainingSkipReason.SHUTTING_DOWN, "shutdown requested")
            return await self._run_locked(
                candidate_id,
                min_traces or self.config.min_traces,
                max_traces or self.config.max_traces,
                batch_size or self.config.batch_size,
            )

    async def _run_locked(self, candidate_id: Optional[str], min_traces: int,
                          max_traces: int, batch_size: int) -> TrainingResult:
        count = await self.trace_store.count_traces(candidate_id)
        if count < min_traces:
            return self._skip(TrainingSkipReason.INSUFFICIENT_TRACES, f"insufficient traces ({count} < {min_traces})")

        pool = await self.trace_store.get_traces(candidate_id, limit=count)
        sampled = self.sample(pool, max_traces)
        if not sampled:
            return self._skip(TrainingSkipReason.NO_TRACES_SAMPLED, "no traces sampled")

        pool_weights = importance_weights(
            [max(trace.priority, self.config.min_priority) for trace in pool],
            self.config.alpha, self.config.beta,
        )
        weight_by_id = {trace.id: float(w) for trace, w in zip(pool, pool_weights)}

        # Trace-aligned batches so priorities can be written as soon as a batch trains
        batches: List[List[Any]] = []
        current: List[Any] = []
        current_examples = 0
        for trace in sampled:
            intent = await self._intent_embedding(trace)
            if intent is None:
                logger.warning(f"Trace {trace.id} has no intent embedding and no provider is configured")
                continue
            flat_path = await self.flatten_path(trace)
            examples = self.to_training_examples(trace, flat_path, intent)
            if not examples:
                continue
            current.append((trace, flat_path, intent, examples))
            current_examples += len(examples)
            if current_examples >= batch_size:
                batches.append(current)
                current, current_examples = [], 0
        if current:
            batches.append(current)

        if not batches:
            return self._skip(TrainingSkipReason.NO_EXAMPLES, "no training examples could be built")

        result = TrainingResult(trained=True)
        losses: List[float] = []
        accuracies: List[float] = []
        for batch in batches:
            if self._stop_requested:
                result.stopped_early = True
                logger.info("Replay training stopping early on request")
                break

            examples = [example for _, _, _, trace_examples in batch for example in trace_examples]
            sample_weights = [weight_by_id.get(example.trace_id, 1.0) for example in examples]
            stats = await asyncio.to_thread(self.scorer.train_batch, examples, sample_weights)
            losses.append(stats.loss)
            accuracies.append(stats.accuracy)
            result.examples_used += stats.examples_used
            result.traces_used += len(batch)
            result.priorities_updated += await self._update_priorities(batch)
            await asyncio.sleep(0)

        result.loss = float(np.mean(losses)) if losses else 0.0
        result.accuracy = float(np.mean(accuracies)) if accuracies else 0.0
        result.weights_version = self.scorer.weights.version

        logger.info(
            f"Replay training finished: {result.traces_used} traces, {result.examples_used} examples, "
            f"loss {result.loss:.4f}, accuracy {result.accuracy:.2f}"
        )
        if self.events is not None:
            self.events.publish(TrainingCompletedEvent(
                traces_used=result.traces_used,
                examples_used=result.examples_used,
                loss=result.loss,
                accuracy=result.accuracy,
                weights_version=result.weights_version,
                stopped_early=result.stopped_early,
            ))
        return result

    async def _update_priorities(self, batch: List[Any]) -> int:
        updated = 0
        for trace, flat_path, intent, _ in batch:
            predicted = self.scorer.predict_path_success(intent, flat_path)
            actual = 1.0 if trace.success else 0.0
            priority = td_priority(actual, predicted, self.config.min_priority, self.config.max_priority)
            if await self.trace_store.update_priority(trace.id, priority):
                updated += 1
                if self.events is not None:
                    self.events.publish(PriorityUpdatedEvent(
                        trace_id=trace.id,
                        old_priority=trace.priority,
                        new_priority=priority,
                        td_error=actual - predicted,
                    ))
        return updated

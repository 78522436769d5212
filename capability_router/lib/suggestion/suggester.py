#!/usr/bin/env python3
# capability_router/lib/suggestion/suggester.py
"""Ranking, gating and layered execution of candidates for an intent."""

import re
import math
import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Any, Optional, Sequence, Set, Tuple

from ..config import SuggesterConfig
from ..dag.executor import LayeredExecutor, TaskExecutor, TaskOutcome
from ..dag.types import DAGStructure, DependencyPath, Task
from ..events import EventChannel, DecisionEvent
from ..graph.store import GraphStore
from ..rl.scorer import CandidateScorer
from ..rl.thompson import ExplorationManager, ThresholdMode
from ..tools.base import CandidateRegistry

logger = logging.getLogger(__name__)

DEFAULT_PATH_STRENGTH = 0.5
MAX_SEARCH_SCORE = 0.95


class Decision(str, Enum):
    """Terminal decision for a candidate, layer or suggestion."""
    EXECUTE = "execute"
    SUGGEST = "suggest"
    REQUIRE_APPROVAL = "require_approval"

    @property
    def restrictiveness(self) -> int:
        return _RESTRICTIVENESS[self]

    @classmethod
    def most_restrictive(cls, decisions: Sequence["Decision"]) -> "Decision":
        return max(decisions, key=lambda decision: decision.restrictiveness, default=cls.SUGGEST)


_RESTRICTIVENESS = {Decision.EXECUTE: 0, Decision.SUGGEST: 1, Decision.REQUIRE_APPROVAL: 2}


@dataclass
class RankedCandidate:
    """A candidate ranked for an intent."""
    id: str
    kind: str
    score: float
    scorer_score: float = 0.0
    graph_score: float = 0.0
    pagerank: float = 0.0
    decision: Optional[Decision] = None
    threshold: Optional[float] = None
    risk_tier: Optional[str] = None
    reason: str = ""


@dataclass
class LayerDecision:
    """Gate outcome for one DAG layer."""
    index: int
    decision: Decision
    task_ids: List[str]
    candidate_ids: List[str]
    reasons: List[str] = field(default_factory=list)


@dataclass
class PredictedCandidate:
    """Likely next candidate for a running workflow."""
    id: str
    confidence: float
    source: str
    reason: str = ""


@dataclass
class WorkflowState:
    """Candidates executed so far, most recent last, plus extra context ids."""
    executed_ids: List[str] = field(default_factory=list)
    context_ids: List[str] = field(default_factory=list)

    def context(self) -> Set[str]:
        return set(self.executed_ids) | set(self.context_ids)


@dataclass
class SuggestionResult:
    """Response of :meth:`Suggester.suggest`."""
    decision: Decision
    ranked_candidates: List[RankedCandidate] = field(default_factory=list)
    dag: Optional[DAGStructure] = None
    confidence: float = 0.0
    layer_decisions: List[LayerDecision] = field(default_factory=list)
    executed_layers: List[int] = field(default_factory=list)
    pending_layer: Optional[int] = None
    outcomes: Dict[str, TaskOutcome] = field(default_factory=dict)
    dependency_paths: List[DependencyPath] = field(default_factory=list)
    alternatives: List[str] = field(default_factory=list)
    failed: bool = False
    reason: str = ""
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["dag"] = self.dag.to_dict() if self.dag else None
        return data


def capability_relevance(overlap: float, cluster_boost: float) -> float:
    """Relevance of a capability: context overlap scaled by its spectral boost.

    Zero overlap always gives zero, whatever the boost.
    """
    if overlap <= 0.0:
        return 0.0
    return min(overlap * (1.0 + cluster_boost), 1.0)


def confidence_weights(alpha: float) -> Tuple[float, float, float]:
    """Weights of hybrid score, PageRank and path strength for a graph alpha.

    Alpha 1.0 (sparse graph) leans on the hybrid score, alpha 0.5 gives the
    graph signals more say.
    """
    factor = (min(max(alpha, 0.5), 1.0) - 0.5) * 2.0
    return 0.55 + 0.30 * factor, 0.30 - 0.25 * factor, 0.15 - 0.05 * factor


def id_tokens(text: str) -> List[str]:
    """Lowercase word tokens of an id; camelCase and ``server:action_name`` both split into words."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", text)
    return [token for token in re.split(r"[^a-z0-9]+", spaced.lower()) if token]


def matches_deny_pattern(candidate_id: str, pattern: str) -> bool:
    """Whether the pattern's words appear as consecutive words of the id."""
    wanted = id_tokens(pattern)
    if not wanted:
        return False
    tokens = id_tokens(candidate_id)
    width = len(wanted)
    return any(tokens[i:i + width] == wanted for i in range(len(tokens) - width + 1))


class Suggester:
    """Ranks candidates for an intent and decides what may run."""

    def __init__(
        self,
        graph: GraphStore,
        scorer: CandidateScorer,
        exploration: ExplorationManager,
        registry: Optional[CandidateRegistry] = None,
        config: Optional[SuggesterConfig] = None,
        events: Optional[EventChannel] = None,
        task_executor: Optional[TaskExecutor] = None,
    ):
        """Initialize the suggester.

        Args:
            graph: Dependency graph store
            scorer: Candidate scorer
            exploration: Thompson Sampling thresholds
            registry: Candidate registry with capability definitions
            config: Suggester settings
            events: Channel receiving decision events
            task_executor: Callable running one task; without it nothing is executed
        """
        self.graph = graph
        self.scorer = scorer
        self.exploration = exploration
        if registry is None:
            registry = exploration.registry if exploration.registry is not None else CandidateRegistry()
        self.registry = registry
        self.config = config or SuggesterConfig()
        self.events = events
        self.executor = LayeredExecutor(task_executor, self.config.max_workers) if task_executor else None

    # ------------------------------------------------------------------
    # Safety checks
    # ------------------------------------------------------------------

    def deny_pattern(self, candidate_id: str) -> Optional[str]:
        """The deny pattern matching a candidate or one of its tools, if any."""
        ids = [candidate_id]
        if self.registry.is_capability(candidate_id):
            ids.extend(self.registry.transitive_tools(candidate_id))
        for node_id in ids:
            for pattern in self.config.deny_patterns:
                if matches_deny_pattern(node_id, pattern):
                    return pattern
        return None

    def is_dangerous(self, candidate_id: str) -> bool:
        return self.deny_pattern(candidate_id) is not None

    def candidate_decision(
        self,
        candidate_id: str,
        score: float,
        mode: ThresholdMode,
        local_alpha: float,
    ) -> Tuple[Decision, Optional[float], Optional[str], str]:
        """Decide one candidate.

        Returns:
            Tuple of decision, threshold, risk tier and reason
        """
        pattern = self.deny_pattern(candidate_id)
        if pattern is not None:
            return Decision.REQUIRE_APPROVAL, None, None, f"{candidate_id} matches deny pattern '{pattern}'"
        if candidate_id in self.config.always_confirm:
            return Decision.REQUIRE_APPROVAL, None, None, f"{candidate_id} is configured to always confirm"

        decision = self.exploration.make_decision(candidate_id, score, mode, local_alpha)
        if decision.requires_approval:
            outcome = Decision.REQUIRE_APPROVAL
        elif decision.should_execute:
            outcome = Decision.EXECUTE
        else:
            outcome = Decision.SUGGEST
        return outcome, decision.threshold, decision.risk_tier.value, decision.reason

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def rank_tools(self, intent_embedding: Sequence[float], context: Sequence[str], alpha: float) -> List[RankedCandidate]:
        """Top tools by ``hybrid_weight * hybrid + pagerank_weight * PageRank``."""
        pagerank = self.graph.centrality()
        ranked = []
        for scored in self.scorer.score_all_tools(intent_embedding, context):
            relatedness = self.graph.graph_relatedness(scored.id, context)
            hybrid = alpha * scored.score + (1.0 - alpha) * relatedness
            node_pagerank = pagerank.get(scored.id, 0.0)
            ranked.append(RankedCandidate(
                id=scored.id,
                kind="tool",
                score=self.config.hybrid_weight * hybrid + self.config.pagerank_weight * node_pagerank,
                scorer_score=scored.score,
                graph_score=relatedness,
                pagerank=node_pagerank,
            ))
        ranked.sort(key=lambda candidate: (-candidate.score, candidate.id))
        return ranked[:self.config.top_k]

    def rank_capabilities(
        self,
        context: Sequence[str],
        intent_embedding: Optional[Sequence[float]] = None,
        mode: Optional[ThresholdMode] = None,
    ) -> List[RankedCandidate]:
        """Capabilities relevant to the context, weighted by their learned score.

        Context relevance is scaled by ``scorer score / neutral score``, so an
        unscored capability keeps its plain relevance. In active search,
        capabilities the scorer rates at least ``min_capability_search_score``
        are offered even without any context overlap; their score already
        carries the reliability factor and is capped at 0.95.
        """
        if not self.registry.capabilities:
            return []
        active = mode is not None and ThresholdMode(mode) == ThresholdMode.ACTIVE_SEARCH
        if not context and not (active and intent_embedding is not None):
            return []

        learned: Dict[str, float] = {}
        if intent_embedding is not None:
            learned = {
                scored.id: scored.score
                for scored in self.scorer.score_all_capabilities(intent_embedding, context)
            }
        neutral = self.scorer.config.neutral_score
        context_set = set(context)
        boosts = self.graph.capability_boosts(context) if context else {}
        ranked = []
        for capability_id in sorted(self.registry.capabilities):
            tools = set(self.registry.transitive_tools(capability_id))
            if not tools:
                continue
            scorer_score = learned.get(capability_id, neutral)
            overlap = len(tools & context_set) / len(tools)
            score = 0.0
            if overlap >= self.config.min_capability_overlap:
                relevance = capability_relevance(overlap, boosts.get(capability_id, 0.0))
                score = min(relevance * scorer_score / neutral, 1.0) if neutral > 0.0 else relevance
            if active and capability_id in learned:
                searched = min(scorer_score, MAX_SEARCH_SCORE)
                if searched >= self.config.min_capability_search_score:
                    score = max(score, searched)
            if score <= 0.0:
                continue
            ranked.append(RankedCandidate(
                id=capability_id,
                kind="capability",
                score=score,
                scorer_score=scorer_score,
                graph_score=overlap,
            ))
        ranked.sort(key=lambda candidate: (-candidate.score, candidate.id))
        return ranked

    def calculate_confidence(
        self,
        ranked: Sequence[RankedCandidate],
        paths: Sequence[DependencyPath],
        alpha: float,
    ) -> float:
        """Blend the top hybrid score, top-3 PageRank and dependency path strength."""
        if not ranked:
            return 0.0
        top = ranked[:3]
        pagerank = sum(candidate.pagerank for candidate in top) / len(top)
        path_strength = sum(path.confidence for path in paths) / len(paths) if paths else DEFAULT_PATH_STRENGTH
        hybrid_weight, pagerank_weight, path_weight = confidence_weights(alpha)
        confidence = ranked[0].score * hybrid_weight + pagerank * pagerank_weight + path_strength * path_weight
        return min(max(confidence, 0.0), 1.0)

    def alternatives_for(self, candidate_id: str, exclude: Set[str]) -> List[str]:
        members = [member for member in self.graph.community_members(candidate_id) if member not in exclude]
        return members[:self.config.max_alternatives]

    # ------------------------------------------------------------------
    # Suggestion
    # ------------------------------------------------------------------

    def _layer_decisions(
        self,
        dag: DAGStructure,
        candidates: Dict[str, RankedCandidate],
        mode: ThresholdMode,
        alpha: float,
    ) -> List[LayerDecision]:
        layer_decisions = []
        for index, layer in enumerate(dag.layers()):
            decisions = []
            reasons = []
            for task in layer:
                candidate = candidates[task.candidate_id]
                decision, threshold, risk_tier, reason = self.candidate_decision(
                    candidate.id, candidate.score, mode, alpha
                )
                candidate.decision = decision
                candidate.threshold = threshold
                candidate.risk_tier = risk_tier
                candidate.reason = reason
                decisions.append(decision)
                reasons.append(reason)
            layer_decisions.append(LayerDecision(
                index=index,
                decision=Decision.most_restrictive(decisions),
                task_ids=[task.id for task in layer],
                candidate_ids=[task.candidate_id for task in layer],
                reasons=reasons,
            ))
        return layer_decisions

    def suggest(
        self,
        intent_embedding: Sequence[float],
        context: Sequence[str] = (),
        mode: Optional[ThresholdMode] = None,
    ) -> SuggestionResult:
        """Rank candidates for an intent, gate the DAG layer by layer and run approved layers.

        Execution stops at the first layer that is not approved for
        execution; results of completed layers are returned with the
        decision of the pending layer.

        Args:
            intent_embedding: Intent vector
            context: Ids of candidates already in use
            mode: Decision mode, defaults to the configured one

        Returns:
            SuggestionResult; a decision is always present
        """
        mode = ThresholdMode(mode or self.config.default_mode)
        context = list(context)
        alpha = self.graph.adaptive_alpha()

        tools = self.rank_tools(intent_embedding, context, alpha)
        capabilities = self.rank_capabilities(context, intent_embedding, mode)
        ranked = sorted(tools + capabilities, key=lambda candidate: (-candidate.score, candidate.id))

        if not ranked:
            result = SuggestionResult(decision=Decision.SUGGEST, reason="no candidates available for this intent")
            self._publish(result)
            return result

        candidates = {candidate.id: candidate for candidate in ranked}
        dag = self.graph.build_dag([candidate.id for candidate in ranked])
        for task in dag.tasks:
            task.kind = candidates[task.candidate_id].kind
        paths = self.graph.dependency_paths(dag)
        layer_decisions = self._layer_decisions(dag, candidates, mode, alpha)

        confidence = self.calculate_confidence(ranked, paths, alpha)
        result = SuggestionResult(
            decision=Decision.EXECUTE,
            ranked_candidates=ranked,
            dag=dag,
            confidence=confidence,
            layer_decisions=layer_decisions,
            dependency_paths=paths,
            alternatives=self.alternatives_for(ranked[0].id, set(candidates)),
        )
        if confidence < self.config.low_confidence_threshold:
            result.warning = f"Low confidence ({confidence:.2f}); review the suggested candidates before running them"

        blocked = next((layer for layer in layer_decisions if layer.decision != Decision.EXECUTE), None)

        if self.executor is not None:
            run = self.executor.execute(dag, gate=lambda index, _: layer_decisions[index].decision == Decision.EXECUTE)
            result.executed_layers = run.completed_layers
            result.outcomes = run.outcomes
            result.pending_layer = run.pending_layer
            result.failed = run.failed
            if run.failed:
                failed_ids = sorted(task_id for task_id, outcome in run.outcomes.items() if not outcome.success)
                result.decision = Decision.SUGGEST
                result.reason = f"execution stopped after failing tasks: {', '.join(failed_ids)}"
            elif run.pending_layer is not None:
                pending = layer_decisions[run.pending_layer]
                result.decision = pending.decision
                result.reason = f"layer {pending.index}: " + "; ".join(pending.reasons)
            else:
                result.reason = f"executed {len(run.completed_layers)} layers"
        elif blocked is not None:
            result.decision = blocked.decision
            result.pending_layer = blocked.index
            result.reason = f"layer {blocked.index}: " + "; ".join(blocked.reasons)
        else:
            result.reason = "all layers clear their thresholds"

        logger.debug(
            f"Suggestion {result.decision.value} for {len(ranked)} candidates "
            f"(confidence {confidence:.2f}, pending layer {result.pending_layer})"
        )
        self._publish(result)
        return result

    def _publish(self, result: SuggestionResult) -> None:
        if self.events is None:
            return
        self.events.publish(DecisionEvent(
            decision=result.decision.value,
            candidate_ids=[candidate.id for candidate in result.ranked_candidates],
            confidence=result.confidence,
            pending_layer=result.pending_layer,
            reason=result.reason,
        ))

    # ------------------------------------------------------------------
    # Next-step prediction
    # ------------------------------------------------------------------

    def predict_next_candidates(self, workflow_state: WorkflowState) -> List[PredictedCandidate]:
        """Predict the candidates likely to follow the current workflow state.

        Sources are the last candidate's community, its observed successors
        and capabilities already partly covered by the context.
        """
        context = workflow_state.context()
        predictions: Dict[str, PredictedCandidate] = {}

        def offer(prediction: PredictedCandidate) -> None:
            current = predictions.get(prediction.id)
            if current is None or prediction.confidence > current.confidence:
                predictions[prediction.id] = prediction

        last = workflow_state.executed_ids[-1] if workflow_state.executed_ids else None
        if last is not None and self.graph.has_node(last):
            pagerank = self.graph.centrality()
            for member in self.graph.community_members(last):
                edge = self.graph.edge_data(last, member) or {}
                confidence = (
                    0.40
                    + min(2.0 * pagerank.get(member, 0.0), 0.2)
                    + min(0.25 * edge.get("weight", 0.0), 0.25)
                    + min(0.1 * self.graph.adamic_adar_between(last, member), 0.1)
                )
                offer(PredictedCandidate(member, min(confidence, 0.95), "community",
                                         f"same community as {last}"))

            for successor in self.graph.neighbors(last, "out"):
                edge = self.graph.edge_data(last, successor) or {}
                count = edge.get("count", 0)
                confidence = min(edge.get("weight", 0.0), 0.6) + min(0.05 * math.log2(count + 1), 0.2)
                offer(PredictedCandidate(successor, min(confidence, 0.95), "cooccurrence",
                                         f"followed {last} {count} times"))

        for capability_id in sorted(self.registry.capabilities):
            tools = set(self.registry.transitive_tools(capability_id))
            if not tools:
                continue
            discovery = len(tools & context) / len(tools)
            if discovery > 0.0:
                offer(PredictedCandidate(capability_id, min(0.85, 0.4 + 0.3 * discovery), "capability",
                                         f"{discovery:.0%} of its tools already used"))

        ranked = [
            prediction for prediction in predictions.values()
            if prediction.id not in context and not self.is_dangerous(prediction.id)
        ]
        ranked.sort(key=lambda prediction: (-prediction.confidence, prediction.id))
        return ranked[:self.config.max_predictions]

#!/usr/bin/env python3
# capability_router/lib/rl/scorer.py
"""
Multi-head attention scorer for tools and capabilities.

Four heads score every candidate against an intent embedding:

* two semantic heads (cosine similarity after a learned per-head reweighting
  of the intent),
* a structure head (PageRank, community, Adamic-Adar),
* a temporal head (co-occurrence, recency, heat).

Attention over the heads is the softmax of learned head logits plus the head
scores themselves. Scoring runs in numpy on an immutable
:class:`ScorerWeights` snapshot; :meth:`CandidateScorer.train_batch` builds a
torch module from that snapshot, optimises it and publishes a new snapshot by
reference swap, so concurrent scoring calls always see one consistent set of
weights.
"""

import os
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Any, Optional, Tuple, Sequence, Set, Mapping

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from ..config import ScorerConfig

logger = logging.getLogger(__name__)

NUM_HEADS = 4
NUM_SEMANTIC_HEADS = 2
HEAD_NAMES = ("semantic", "semantic_alt", "structure", "temporal")
COSINE_EPS = 1e-8


def _frozen(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class ScorerWeights:
    """Immutable snapshot of learned scorer parameters."""
    head_logits: np.ndarray
    head_scales: np.ndarray
    projections: Optional[np.ndarray]
    context_weight: float
    bias: float
    version: int = 0

    @classmethod
    def initial(cls, config: ScorerConfig, dim: Optional[int] = None) -> "ScorerWeights":
        return cls(
            head_logits=_frozen(np.zeros(NUM_HEADS)),
            head_scales=_frozen(np.ones(NUM_HEADS)),
            projections=_frozen(np.ones((NUM_SEMANTIC_HEADS, dim))) if dim else None,
            context_weight=float(config.initial_context_weight),
            bias=0.0,
        )

    def with_dim(self, dim: int) -> "ScorerWeights":
        """Same weights with semantic projections sized for ``dim``."""
        if self.projections is not None and self.projections.shape[1] == dim:
            return self
        return replace(self, projections=_frozen(np.ones((NUM_SEMANTIC_HEADS, dim))))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "head_logits": self.head_logits.tolist(),
            "head_scales": self.head_scales.tolist(),
            "projections": None if self.projections is None else self.projections.tolist(),
            "context_weight": self.context_weight,
            "bias": self.bias,
            "version": self.version,
        }


@dataclass(frozen=True)
class NodeRecord:
    """Registered candidate with its embedding and graph features."""
    id: str
    kind: str
    embedding: np.ndarray
    pagerank: float = 0.0
    community: float = -1.0
    adamic_adar: float = 0.0
    cooccurrence: float = 0.0
    recency: float = 0.0
    heat: float = 0.0
    success_rate: float = 0.5


@dataclass(frozen=True)
class _NodeTable:
    ids: Tuple[str, ...]
    index: Dict[str, int]
    kinds: np.ndarray
    embeddings: np.ndarray
    structure: np.ndarray
    temporal: np.ndarray
    reliability: np.ndarray


@dataclass(frozen=True)
class CandidateScore:
    """Score of one candidate."""
    id: str
    score: float
    kind: str
    heads: Tuple[float, ...] = ()


@dataclass
class TrainingExample:
    """One (intent, context, target, outcome) example."""
    intent_embedding: np.ndarray
    context: Tuple[str, ...]
    target_id: str
    outcome: float
    trace_id: Optional[str] = None


@dataclass
class TrainingStats:
    """Result of one training batch."""
    loss: float = 0.0
    accuracy: float = 0.0
    td_errors: List[float] = field(default_factory=list)
    examples_used: int = 0
    weights_version: int = 0


def reliability_multiplier(success_rate: float) -> float:
    """Penalise unreliable capabilities and reward very reliable ones."""
    if success_rate < 0.5:
        return 0.5
    if success_rate > 0.9:
        return 1.2
    return 1.0


def _structure_score(record: NodeRecord) -> float:
    community_term = 1.0 / (1.0 + record.community) if record.community >= 0 else 0.0
    return 0.4 * record.pagerank + 0.3 * community_term + 0.3 * record.adamic_adar


def _temporal_score(record: NodeRecord) -> float:
    if record.kind == "capability":
        return 0.4 * record.cooccurrence + 0.4 * record.recency + 0.2 * record.heat
    return 0.4 * record.cooccurrence + 0.6 * record.recency


class _ScorerModule(nn.Module):
    """Torch twin of the numpy scoring function, used only for training."""

    def __init__(self, weights: ScorerWeights):
        super().__init__()
        self.head_logits = nn.Parameter(torch.tensor(weights.head_logits.copy(), dtype=torch.float32))
        self.head_scales = nn.Parameter(torch.tensor(weights.head_scales.copy(), dtype=torch.float32))
        self.projections = nn.Parameter(torch.tensor(weights.projections.copy(), dtype=torch.float32))
        self.context_weight = nn.Parameter(torch.tensor(weights.context_weight, dtype=torch.float32))
        self.bias = nn.Parameter(torch.tensor(weights.bias, dtype=torch.float32))

    def forward(self, intents, embeddings, structure, temporal, reliability, context):
        queries = intents.unsqueeze(1) * self.projections.unsqueeze(0)
        semantic = F.cosine_similarity(queries, embeddings.unsqueeze(1), dim=-1, eps=COSINE_EPS)
        heads = torch.cat([semantic, structure.unsqueeze(1), temporal.unsqueeze(1)], dim=1) * self.head_scales
        attention = torch.softmax(self.head_logits + heads, dim=1)
        base = (attention * heads).sum(dim=1) * reliability
        return torch.sigmoid(base + self.context_weight * context + self.bias)

    def to_weights(self, version: int) -> ScorerWeights:
        with torch.no_grad():
            return ScorerWeights(
                head_logits=_frozen(self.head_logits.detach().cpu().numpy()),
                head_scales=_frozen(self.head_scales.detach().cpu().numpy()),
                projections=_frozen(self.projections.detach().cpu().numpy()),
                context_weight=float(self.context_weight.item()),
                bias=float(self.bias.item()),
                version=version,
            )


class CandidateScorer:
    """Scores candidates against an intent and predicts path success."""

    def __init__(self, config: Optional[ScorerConfig] = None, embedding_dim: Optional[int] = None):
        """Initialize the scorer.

        Args:
            config: Scorer settings
            embedding_dim: Embedding dimension, inferred from the first node when None
        """
        self.config = config or ScorerConfig()
        self.embedding_dim = embedding_dim
        self._weights = ScorerWeights.initial(self.config, embedding_dim)
        self._nodes: Dict[str, NodeRecord] = {}
        self._table: Optional[_NodeTable] = None
        self._adjacency: Dict[str, Set[str]] = {}
        self._write_lock = threading.Lock()
        self._train_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @property
    def weights(self) -> ScorerWeights:
        return self._weights

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def _register(self, node_id: str, kind: str, embedding: Sequence[float], features: Optional[Mapping[str, float]]) -> None:
        vector = np.array(embedding, dtype=np.float64).reshape(-1)
        with self._write_lock:
            if self.embedding_dim is None:
                self.embedding_dim = vector.shape[0]
            if vector.shape[0] != self.embedding_dim:
                raise ValueError(
                    f"Embedding for {node_id} has dimension {vector.shape[0]}, expected {self.embedding_dim}"
                )
            vector.setflags(write=False)
            existing = self._nodes.get(node_id)
            record = NodeRecord(id=node_id, kind=kind, embedding=vector)
            if existing is not None:
                record = replace(existing, kind=kind, embedding=vector)
            if features:
                record = replace(record, **{key: float(value) for key, value in features.items()})
            self._nodes[node_id] = record
            self._weights = self._weights.with_dim(self.embedding_dim)
            self._table = None

    def _publish_weights(self, weights: ScorerWeights) -> ScorerWeights:
        """Swap in a weight snapshot, resized to the current embedding dimension."""
        with self._write_lock:
            if self.embedding_dim is not None:
                weights = weights.with_dim(self.embedding_dim)
            self._weights = weights
        return weights

    def register_tool(self, tool_id: str, embedding: Sequence[float], features: Optional[Mapping[str, float]] = None) -> None:
        """Register or update a tool."""
        self._register(tool_id, "tool", embedding, features)

    def register_capability(self, capability_id: str, embedding: Sequence[float],
                            features: Optional[Mapping[str, float]] = None) -> None:
        """Register or update a capability; ``success_rate`` may be passed in features."""
        self._register(capability_id, "capability", embedding, features)

    def update_features(self, node_id: str, **features: float) -> bool:
        """Update graph features of a registered node. Returns False for unknown ids."""
        with self._write_lock:
            record = self._nodes.get(node_id)
            if record is None:
                return False
            self._nodes[node_id] = replace(record, **{key: float(value) for key, value in features.items()})
            self._table = None
        return True

    def set_adjacency(self, adjacency: Mapping[str, Set[str]]) -> None:
        """Replace the out-neighbour map used for the context-connection feature."""
        self._adjacency = {node: frozenset(neighbors) for node, neighbors in adjacency.items()}

    def _get_table(self) -> Optional[_NodeTable]:
        table = self._table
        if table is not None:
            return table
        with self._write_lock:
            records = [self._nodes[node_id] for node_id in sorted(self._nodes)]
            if not records:
                return None
            embeddings = np.stack([record.embedding for record in records])
            table = _NodeTable(
                ids=tuple(record.id for record in records),
                index={record.id: i for i, record in enumerate(records)},
                kinds=np.array([record.kind for record in records]),
                embeddings=embeddings,
                structure=np.array([_structure_score(record) for record in records]),
                temporal=np.array([_temporal_score(record) for record in records]),
                reliability=np.array([
                    reliability_multiplier(record.success_rate) if record.kind == "capability" else 1.0
                    for record in records
                ]),
            )
            self._table = table
        return table

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def context_connection(self, target_id: str, context: Sequence[str]) -> float:
        """1.0 when a context node links directly to the target, 0.5 at two hops, else 0."""
        if not context:
            return 0.0
        adjacency = self._adjacency
        two_hop = False
        for context_id in context:
            neighbors = adjacency.get(context_id, ())
            if target_id in neighbors:
                return 1.0
            if not two_hop:
                two_hop = any(target_id in adjacency.get(middle, ()) for middle in neighbors)
        return 0.5 if two_hop else 0.0

    def _fit_intent(self, intent: Sequence[float], dim: int) -> np.ndarray:
        vector = np.asarray(intent, dtype=np.float64).reshape(-1)
        if vector.shape[0] == dim:
            return vector
        fitted = np.zeros(dim)
        length = min(dim, vector.shape[0])
        fitted[:length] = vector[:length]
        return fitted

    def _score_rows(
        self,
        table: _NodeTable,
        rows: np.ndarray,
        intent: np.ndarray,
        context: Sequence[str],
        weights: ScorerWeights,
    ) -> Tuple[np.ndarray, np.ndarray]:
        embeddings = table.embeddings[rows]
        queries = intent[None, :] * weights.projections
        dots = embeddings @ queries.T
        norms = np.linalg.norm(embeddings, axis=1)[:, None] * np.linalg.norm(queries, axis=1)[None, :]
        semantic = dots / np.maximum(norms, COSINE_EPS)

        heads = np.column_stack([semantic, table.structure[rows], table.temporal[rows]]) * weights.head_scales
        logits = weights.head_logits[None, :] + heads
        logits -= logits.max(axis=1, keepdims=True)
        attention = np.exp(logits)
        attention /= attention.sum(axis=1, keepdims=True)
        base = (attention * heads).sum(axis=1) * table.reliability[rows]

        connection = np.array([self.context_connection(table.ids[row], context) for row in rows])
        scores = 1.0 / (1.0 + np.exp(-(base + weights.context_weight * connection + weights.bias)))
        return np.clip(scores, 0.0, 1.0), heads

    def _score_kind(self, intent: Sequence[float], kind: Optional[str], context: Sequence[str]) -> List[CandidateScore]:
        table = self._get_table()
        weights = self._weights
        if table is None:
            return []
        rows = np.arange(len(table.ids)) if kind is None else np.flatnonzero(table.kinds == kind)
        if rows.size == 0:
            return []
        scores, heads = self._score_rows(table, rows, self._fit_intent(intent, table.embeddings.shape[1]), context, weights)
        results = [
            CandidateScore(
                id=table.ids[row],
                score=float(scores[i]),
                kind=str(table.kinds[row]),
                heads=tuple(float(h) for h in heads[i]),
            )
            for i, row in enumerate(rows)
        ]
        results.sort(key=lambda result: (-result.score, result.id))
        return results

    def score_all_tools(self, intent: Sequence[float], context: Sequence[str] = ()) -> List[CandidateScore]:
        """Rank all tools, highest score first, ties by id."""
        return self._score_kind(intent, "tool", context)

    def score_all_capabilities(self, intent: Sequence[float], context: Sequence[str] = ()) -> List[CandidateScore]:
        """Rank all capabilities, highest score first, ties by id."""
        return self._score_kind(intent, "capability", context)

    def score_all(self, intent: Sequence[float], context: Sequence[str] = ()) -> List[CandidateScore]:
        return self._score_kind(intent, None, context)

    def score(self, intent: Sequence[float], candidate_id: str, context: Sequence[str] = ()) -> float:
        """Score one candidate; unknown ids get the neutral score."""
        table = self._get_table()
        if table is None or candidate_id not in table.index:
            return self.config.neutral_score
        rows = np.array([table.index[candidate_id]])
        scores, _ = self._score_rows(
            table, rows, self._fit_intent(intent, table.embeddings.shape[1]), context, self._weights
        )
        return float(scores[0])

    def predict_path_success(self, intent: Sequence[float], path: Sequence[str]) -> float:
        """Probability that executing ``path`` in order succeeds.

        Later steps weigh more (``1 + step * index``). Cold start, an empty path
        and unknown ids resolve to the neutral score.
        """
        neutral = self.config.neutral_score
        table = self._get_table()
        if table is None or not path:
            return neutral

        weights = self._weights
        fitted = self._fit_intent(intent, table.embeddings.shape[1])
        known = [i for i, node_id in enumerate(path) if node_id in table.index]
        node_scores = np.full(len(path), neutral)
        if known:
            rows = np.array([table.index[path[i]] for i in known])
            scores = np.empty(len(known))
            for j, i in enumerate(known):
                row_scores, _ = self._score_rows(table, rows[j:j + 1], fitted, tuple(path[:i]), weights)
                scores[j] = row_scores[0]
            node_scores[known] = scores

        position_weights = 1.0 + self.config.path_weight_step * np.arange(len(path))
        prediction = float(np.dot(node_scores, position_weights) / position_weights.sum())
        return min(max(prediction, 0.0), 1.0)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train_batch(self, examples: Sequence[TrainingExample], sample_weights: Optional[Sequence[float]] = None) -> TrainingStats:
        """Adjust weights toward lower prediction error on a batch.

        Args:
            examples: Training examples; unknown targets are skipped
            sample_weights: Optional per-example importance weights

        Returns:
            TrainingStats with pre-update TD errors (``outcome - prediction``)
        """
        table = self._get_table()
        if table is None or not examples:
            return TrainingStats(weights_version=self._weights.version)

        keep = [i for i, example in enumerate(examples) if example.target_id in table.index]
        if not keep:
            logger.warning("No training examples reference registered candidates")
            return TrainingStats(weights_version=self._weights.version)
        if len(keep) < len(examples):
            logger.debug(f"Skipping {len(examples) - len(keep)} examples with unknown targets")

        with self._train_lock:
            weights = self._weights.with_dim(table.embeddings.shape[1])
            dim = table.embeddings.shape[1]
            rows = np.array([table.index[examples[i].target_id] for i in keep])

            intents = torch.tensor(
                np.stack([self._fit_intent(examples[i].intent_embedding, dim) for i in keep]), dtype=torch.float32
            )
            embeddings = torch.tensor(table.embeddings[rows], dtype=torch.float32)
            structure = torch.tensor(table.structure[rows], dtype=torch.float32)
            temporal = torch.tensor(table.temporal[rows], dtype=torch.float32)
            reliability = torch.tensor(table.reliability[rows], dtype=torch.float32)
            context = torch.tensor(
                [self.context_connection(examples[i].target_id, examples[i].context) for i in keep],
                dtype=torch.float32,
            )
            labels = torch.tensor([float(examples[i].outcome) for i in keep], dtype=torch.float32)

            if sample_weights is not None:
                batch_weights = torch.tensor([float(sample_weights[i]) for i in keep], dtype=torch.float32)
                batch_weights = batch_weights / batch_weights.mean().clamp_min(1e-8)
            else:
                batch_weights = torch.ones(len(keep))

            module = _ScorerModule(weights)
            optimizer = torch.optim.Adam(
                module.parameters(), lr=self.config.learning_rate, weight_decay=self.config.weight_decay
            )
            inputs = (intents, embeddings, structure, temporal, reliability, context)

            with torch.no_grad():
                initial = module(*inputs)
            td_errors = (labels - initial).tolist()

            loss_value = 0.0
            for _ in range(self.config.epochs_per_batch):
                optimizer.zero_grad()
                predictions = module(*inputs).clamp(1e-6, 1.0 - 1e-6)
                loss = F.binary_cross_entropy(predictions, labels, weight=batch_weights)
                loss.backward()
                optimizer.step()
                loss_value = float(loss.item())

            with torch.no_grad():
                final = module(*inputs)
            accuracy = float(((final >= 0.5).float() == labels).float().mean().item())

            new_weights = self._publish_weights(module.to_weights(weights.version + 1))

        logger.debug(
            f"Trained scorer on {len(keep)} examples: loss {loss_value:.4f}, "
            f"accuracy {accuracy:.2f}, weights v{new_weights.version}"
        )
        return TrainingStats(
            loss=loss_value,
            accuracy=accuracy,
            td_errors=td_errors,
            examples_used=len(keep),
            weights_version=new_weights.version,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str) -> None:
        """Save the current weight snapshot with ``torch.save``."""
        weights = self._weights
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        state = {
            "head_logits": torch.tensor(weights.head_logits.copy()),
            "head_scales": torch.tensor(weights.head_scales.copy()),
            "context_weight": torch.tensor(weights.context_weight),
            "bias": torch.tensor(weights.bias),
            "version": torch.tensor(weights.version),
        }
        if weights.projections is not None:
            state["projections"] = torch.tensor(weights.projections.copy())
        torch.save(state, path)
        logger.info(f"Saved scorer weights v{weights.version} to {path}")

    def load(self, path: str) -> ScorerWeights:
        """Load a weight snapshot written by :meth:`save` and swap it in."""
        state = torch.load(path, weights_only=True)
        projections = state.get("projections")
        weights = ScorerWeights(
            head_logits=_frozen(state["head_logits"].numpy()),
            head_scales=_frozen(state["head_scales"].numpy()),
            projections=_frozen(projections.numpy()) if projections is not None else None,
            context_weight=float(state["context_weight"].item()),
            bias=float(state["bias"].item()),
            version=int(state["version"].item()),
        )
        weights = self._publish_weights(weights)
        logger.info(f"Loaded scorer weights v{weights.version} from {path}")
        return weights

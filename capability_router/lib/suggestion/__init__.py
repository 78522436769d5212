"""Candidate suggestion and next-step prediction."""

from .suggester import (
    Suggester,
    SuggestionResult,
    RankedCandidate,
    LayerDecision,
    PredictedCandidate,
    WorkflowState,
    Decision,
    capability_relevance,
    confidence_weights,
)

__all__ = [
    "Suggester",
    "SuggestionResult",
    "RankedCandidate",
    "LayerDecision",
    "PredictedCandidate",
    "WorkflowState",
    "Decision",
    "capability_relevance",
    "confidence_weights",
]

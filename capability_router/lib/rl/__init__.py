"""
Learning components of the decision core.
This package contains the multi-head candidate scorer, Thompson Sampling
exploration and prioritized experience replay.
"""

from .scorer import CandidateScorer, CandidateScore, ScorerWeights, TrainingExample, TrainingStats
from .thompson import (
    ExplorationManager,
    ThresholdMode,
    ThresholdResult,
    ThompsonDecision,
    BetaState,
)
from .replay import ReplayTrainer, TrainingResult, TrainingSkipReason, importance_weights, td_priority

__all__ = [
    "CandidateScorer",
    "CandidateScore",
    "ScorerWeights",
    "TrainingExample",
    "TrainingStats",
    "ExplorationManager",
    "ThresholdMode",
    "ThresholdResult",
    "ThompsonDecision",
    "BetaState",
    "ReplayTrainer",
    "TrainingResult",
    "TrainingSkipReason",
    "importance_weights",
    "td_priority",
]

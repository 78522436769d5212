#!/usr/bin/env python3
# capability_router/lib/rl/thompson.py
"""
Thompson Sampling acceptance thresholds.

Each candidate carries a Beta(alpha, beta) posterior over its success
probability. A threshold is built from the candidate's risk tier, adjusted by
a posterior draw (or its mean), the decision mode, a local graph signal and,
in active search, an upper-confidence exploration bonus.
"""

import math
import time
import logging
import threading
from enum import Enum
from dataclasses import dataclass, replace
from typing import Dict, List, Any, Optional, Tuple, Iterable, Union, Mapping

import numpy as np
from scipy import stats

from ..config import ThompsonConfig
from ..errors import UnknownCandidateError
from ..tools.base import RiskTier, CandidateRegistry
from ..tools.permissions import PermissionDescriptor

logger = logging.getLogger(__name__)

NEUTRAL_LOCAL_ALPHA = 0.75


class ThresholdMode(str, Enum):
    """Decision modes that shape the acceptance threshold."""
    ACTIVE_SEARCH = "active_search"
    PASSIVE_SUGGESTION = "passive_suggestion"
    SPECULATION = "speculation"


@dataclass(frozen=True)
class BetaState:
    """Posterior pseudo-counts for one candidate."""
    candidate_id: str
    alpha: float
    beta: float
    total_observations: int = 0
    last_updated: float = 0.0

    @property
    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def variance(self) -> float:
        total = self.alpha + self.beta
        return (self.alpha * self.beta) / (total * total * (total + 1.0))


@dataclass(frozen=True)
class ThresholdBreakdown:
    """Additive components of a threshold before clamping."""
    base: float
    thompson_adjustment: float
    mode_adjustment: float
    local_alpha_adjustment: float
    ucb_adjustment: float


@dataclass(frozen=True)
class ThresholdResult:
    """Acceptance threshold for one candidate and mode."""
    threshold: float
    ucb_bonus: float
    sampled_rate: float
    risk_tier: RiskTier
    requires_approval: bool = False
    breakdown: Optional[ThresholdBreakdown] = None


@dataclass(frozen=True)
class ThompsonDecision:
    """Outcome of comparing a score against a sampled threshold."""
    candidate_id: str
    should_execute: bool
    score: float
    threshold: float
    risk_tier: RiskTier
    requires_approval: bool
    reason: str


class ExplorationManager:
    """Per-candidate Beta posteriors and risk-aware thresholds."""

    def __init__(
        self,
        config: Optional[ThompsonConfig] = None,
        permissions: Optional[PermissionDescriptor] = None,
        registry: Optional[CandidateRegistry] = None,
    ):
        """Initialize the exploration manager.

        Args:
            config: Thompson Sampling settings
            permissions: Descriptor used to classify candidates
            registry: Candidate registry used to resolve capability members
        """
        self.config = config or ThompsonConfig()
        self.permissions = permissions if permissions is not None else PermissionDescriptor()
        self.registry = registry
        self._states: Dict[str, BetaState] = {}
        self._lock = threading.Lock()
        self._rng = np.random.default_rng(self.config.seed)

    @classmethod
    def from_history(
        cls,
        history: Union[Iterable[Tuple[str, bool]], Mapping[str, Tuple[int, int]]],
        config: Optional[ThompsonConfig] = None,
        permissions: Optional[PermissionDescriptor] = None,
        registry: Optional[CandidateRegistry] = None,
    ) -> "ExplorationManager":
        """Build a manager from past outcomes.

        Args:
            history: ``(candidate_id, success)`` pairs, or a mapping of
                candidate id to ``(successes, failures)``
        """
        manager = cls(config, permissions, registry)
        if isinstance(history, Mapping):
            for candidate_id, (successes, failures) in history.items():
                for _ in range(int(successes)):
                    manager.record_outcome(candidate_id, True)
                for _ in range(int(failures)):
                    manager.record_outcome(candidate_id, False)
        else:
            for candidate_id, success in history:
                manager.record_outcome(candidate_id, success)
        return manager

    # ------------------------------------------------------------------
    # Posterior state
    # ------------------------------------------------------------------

    def _prior(self, candidate_id: str) -> BetaState:
        return BetaState(candidate_id, self.config.prior_alpha, self.config.prior_beta)

    def get_state(self, candidate_id: str) -> BetaState:
        """Posterior for a candidate; the prior when never observed."""
        return self._states.get(candidate_id) or self._prior(candidate_id)

    def get_all_states(self) -> List[BetaState]:
        with self._lock:
            return sorted(self._states.values(), key=lambda state: state.candidate_id)

    def record_outcome(self, candidate_id: str, success: bool) -> BetaState:
        """Apply one Bernoulli observation to the candidate's posterior.

        With ``decay_factor < 1`` the existing evidence is shrunk toward the
        prior before the update.
        """
        with self._lock:
            state = self.get_state(candidate_id)
            alpha, beta = state.alpha, state.beta
            decay = self.config.decay_factor
            if decay < 1.0:
                alpha = self.config.prior_alpha + (alpha - self.config.prior_alpha) * decay
                beta = self.config.prior_beta + (beta - self.config.prior_beta) * decay
            if success:
                alpha += 1.0
            else:
                beta += 1.0
            state = BetaState(candidate_id, alpha, beta, state.total_observations + 1, time.time())
            self._states[candidate_id] = state

        logger.debug(f"Outcome for {candidate_id}: success={success}, posterior mean {state.mean:.3f}")
        return state

    def mean(self, candidate_id: str) -> float:
        return self.get_state(candidate_id).mean

    def variance(self, candidate_id: str) -> float:
        return self.get_state(candidate_id).variance

    def credible_interval(self, candidate_id: str, level: float = 0.95) -> Tuple[float, float]:
        """Equal-tailed credible interval of the posterior."""
        state = self.get_state(candidate_id)
        tail = (1.0 - level) / 2.0
        lower, upper = stats.beta.ppf([tail, 1.0 - tail], state.alpha, state.beta)
        return float(max(lower, 0.0)), float(min(upper, 1.0))

    def ucb_bonus(self, candidate_id: str) -> float:
        """Exploration bonus, 1.0 for unobserved candidates and shrinking with samples."""
        state = self._states.get(candidate_id)
        if state is None or state.total_observations == 0:
            return 1.0
        with self._lock:
            total = sum(s.total_observations for s in self._states.values())
        bonus = math.sqrt(self.config.ucb_coefficient * math.log(total + 1) / state.total_observations)
        return min(1.0, bonus)

    def sample_beta(self, alpha: float, beta: float) -> float:
        """Draw from Beta(alpha, beta).

        Joehnk's method is used when both parameters are at most 1, two
        Gamma draws otherwise.
        """
        if alpha <= 1.0 and beta <= 1.0:
            for _ in range(1000):
                x = self._rng.random() ** (1.0 / alpha)
                y = self._rng.random() ** (1.0 / beta)
                if 0.0 < x + y <= 1.0:
                    return x / (x + y)
            return alpha / (alpha + beta)

        x = self._rng.gamma(alpha)
        y = self._rng.gamma(beta)
        if x + y <= 0.0:
            return alpha / (alpha + beta)
        return float(x / (x + y))

    def reset(self, candidate_id: str) -> None:
        """Administrative reset of one candidate's posterior.

        Raises:
            UnknownCandidateError: If the candidate has no recorded outcomes
        """
        with self._lock:
            if candidate_id not in self._states:
                raise UnknownCandidateError(candidate_id)
            del self._states[candidate_id]
        logger.info(f"Reset exploration state for {candidate_id}")

    def reset_all(self) -> None:
        with self._lock:
            count = len(self._states)
            self._states.clear()
        logger.info(f"Reset exploration state for {count} candidates")

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Serializable copy of all posteriors."""
        with self._lock:
            return {
                candidate_id: {
                    "alpha": state.alpha,
                    "beta": state.beta,
                    "total_observations": state.total_observations,
                    "last_updated": state.last_updated,
                }
                for candidate_id, state in self._states.items()
            }

    def restore(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        with self._lock:
            self._states = {
                candidate_id: BetaState(
                    candidate_id,
                    float(values["alpha"]),
                    float(values["beta"]),
                    int(values.get("total_observations", 0)),
                    float(values.get("last_updated", 0.0)),
                )
                for candidate_id, values in data.items()
            }

    # ------------------------------------------------------------------
    # Risk classification
    # ------------------------------------------------------------------

    def classify(self, candidate_id: str) -> RiskTier:
        """Risk tier from the permission descriptor.

        Capabilities take the most restrictive tier of their leaf tools.
        """
        if self.registry is not None and self.registry.is_capability(candidate_id):
            return self.registry.capability_risk(candidate_id, self.permissions)
        return self.permissions.risk_tier(candidate_id)

    def requires_approval(self, candidate_id: str) -> bool:
        if self.registry is not None and self.registry.is_capability(candidate_id):
            if self.registry.is_truncated(candidate_id):
                return True
            return self.permissions.capability_requires_approval(self.registry.transitive_tools(candidate_id))
        return self.permissions.requires_approval(candidate_id)

    # ------------------------------------------------------------------
    # Thresholds and decisions
    # ------------------------------------------------------------------

    def get_threshold(
        self,
        candidate_id: str,
        risk_tier: RiskTier,
        mode: ThresholdMode = ThresholdMode.PASSIVE_SUGGESTION,
        local_alpha: float = NEUTRAL_LOCAL_ALPHA,
    ) -> ThresholdResult:
        """Compute the acceptance threshold for a candidate.

        Args:
            candidate_id: Candidate id
            risk_tier: Tier setting the baseline bar
            mode: Decision mode
            local_alpha: Local semantic/graph balance signal

        Returns:
            ThresholdResult; unknown tiers get threshold 1.0 and require approval
        """
        mode = ThresholdMode(mode)
        state = self._states.get(candidate_id)

        if risk_tier == RiskTier.UNKNOWN:
            return ThresholdResult(
                threshold=1.0,
                ucb_bonus=0.0,
                sampled_rate=self.get_state(candidate_id).mean,
                risk_tier=risk_tier,
                requires_approval=True,
            )

        if state is None or state.total_observations == 0:
            sampled = self._prior(candidate_id).mean
        elif mode == ThresholdMode.SPECULATION:
            sampled = state.mean
        else:
            sampled = self.sample_beta(state.alpha, state.beta)

        ucb_bonus = self.ucb_bonus(candidate_id) if mode == ThresholdMode.ACTIVE_SEARCH else 0.0
        breakdown = ThresholdBreakdown(
            base=getattr(self.config.risk_thresholds, risk_tier.value),
            thompson_adjustment=(self.config.expected_success_rate - sampled) * self.config.thompson_weight,
            mode_adjustment=self.config.mode_adjustments[mode.value],
            local_alpha_adjustment=(local_alpha - NEUTRAL_LOCAL_ALPHA) * self.config.local_alpha_weight,
            ucb_adjustment=-ucb_bonus * self.config.ucb_threshold_weight,
        )
        raw = (
            breakdown.base
            + breakdown.thompson_adjustment
            + breakdown.mode_adjustment
            + breakdown.local_alpha_adjustment
            + breakdown.ucb_adjustment
        )
        threshold = min(max(raw, self.config.threshold_min), self.config.threshold_max)

        return ThresholdResult(
            threshold=threshold,
            ucb_bonus=ucb_bonus,
            sampled_rate=sampled,
            risk_tier=risk_tier,
            breakdown=breakdown,
        )

    def get_threshold_for_candidate(
        self,
        candidate_id: str,
        mode: ThresholdMode = ThresholdMode.PASSIVE_SUGGESTION,
        local_alpha: float = NEUTRAL_LOCAL_ALPHA,
    ) -> ThresholdResult:
        """Classify a candidate and compute its threshold.

        Candidates declared with human approval keep their tier but are
        flagged ``requires_approval``.
        """
        result = self.get_threshold(candidate_id, self.classify(candidate_id), mode, local_alpha)
        if not result.requires_approval and self.requires_approval(candidate_id):
            result = replace(result, requires_approval=True)
        return result

    def make_decision(
        self,
        candidate_id: str,
        score: float,
        mode: ThresholdMode = ThresholdMode.PASSIVE_SUGGESTION,
        local_alpha: float = NEUTRAL_LOCAL_ALPHA,
    ) -> ThompsonDecision:
        """Decide whether a scored candidate clears its threshold."""
        result = self.get_threshold_for_candidate(candidate_id, mode, local_alpha)
        if result.requires_approval:
            reason = f"{candidate_id} requires approval (risk tier {result.risk_tier.value})"
            should_execute = False
        else:
            should_execute = score >= result.threshold
            relation = ">=" if should_execute else "<"
            reason = f"score {score:.2f} {relation} threshold {result.threshold:.2f} ({result.risk_tier.value})"
        return ThompsonDecision(
            candidate_id=candidate_id,
            should_execute=should_execute,
            score=score,
            threshold=result.threshold,
            risk_tier=result.risk_tier,
            requires_approval=result.requires_approval,
            reason=reason,
        )

    def make_batch_decision(
        self,
        candidates: Iterable[Tuple[str, float]],
        mode: ThresholdMode = ThresholdMode.PASSIVE_SUGGESTION,
        local_alpha: float = NEUTRAL_LOCAL_ALPHA,
    ) -> List[ThompsonDecision]:
        return [self.make_decision(candidate_id, score, mode, local_alpha) for candidate_id, score in candidates]

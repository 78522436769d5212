#!/usr/bin/env python3
# capability_router/lib/config.py
"""Configuration models and loading for the decision core."""

import os
import json
import logging
from typing import Dict, List, Any, Optional, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/capability_router/config.json")
CONFIG_ENV_VAR = "CAPABILITY_ROUTER_CONFIG"
PERMISSIONS_ENV_VAR = "CAPABILITY_ROUTER_PERMISSIONS"

DEFAULT_DENY_PATTERNS = [
    "delete", "remove", "drop", "truncate", "destroy", "wipe",
    "force_push", "reset_hard", "deploy", "payment", "send_email",
    "execute_shell", "transfer", "admin",
]


class _Section(BaseModel):
    """Common pydantic settings for configuration sections."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class GraphConfig(_Section):
    """Dependency graph settings."""

    min_edge_confidence: float = Field(0.3, ge=0.0, le=1.0)
    max_hops: int = Field(3, ge=1)
    new_edge_confidence: float = Field(0.5, ge=0.0, le=1.0)
    reinforcement_factor: float = Field(1.1, ge=1.0)
    observed_threshold: int = Field(3, ge=1)
    edge_type_weights: Dict[str, float] = Field(default_factory=lambda: {
        "dependency": 1.0,
        "contains": 0.8,
        "provides": 0.7,
        "alternative": 0.6,
        "sequence": 0.5,
    })
    edge_source_modifiers: Dict[str, float] = Field(default_factory=lambda: {
        "observed": 1.0,
        "inferred": 0.7,
        "template": 0.5,
    })
    louvain_seed: int = 42
    louvain_resolution: float = Field(1.0, gt=0.0)
    pagerank_damping: float = Field(0.85, gt=0.0, lt=1.0)
    pagerank_tolerance: float = Field(1e-4, gt=0.0)
    pagerank_max_iter: int = Field(100, ge=1)
    recency_half_life_seconds: float = Field(86400.0, gt=0.0)

    @field_validator("edge_type_weights", "edge_source_modifiers")
    @classmethod
    def _weights_in_range(cls, value: Dict[str, float]) -> Dict[str, float]:
        for key, weight in value.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"weight for '{key}' must be within [0, 1], got {weight}")
        return value


class SpectralConfig(_Section):
    """Spectral clustering and hypergraph PageRank settings."""

    cache_ttl_seconds: float = Field(300.0, ge=0.0)
    min_clusters: int = Field(2, ge=1)
    max_clusters: int = Field(5, ge=1)
    eigengap_scan: int = Field(10, ge=1)
    kmeans_iterations: int = Field(100, ge=1)
    pagerank_damping: float = Field(0.85, gt=0.0, lt=1.0)
    pagerank_iterations: int = Field(100, ge=1)
    pagerank_tolerance: float = Field(1e-6, gt=0.0)
    capability_edge_floor: float = Field(0.3, ge=0.0, le=1.0)
    same_cluster_boost: float = Field(0.5, ge=0.0)
    partial_cluster_boost: float = Field(0.25, ge=0.0)
    pagerank_boost_weight: float = Field(0.3, ge=0.0)
    seed: int = 42

    @model_validator(mode="after")
    def _cluster_range(self) -> "SpectralConfig":
        if self.min_clusters > self.max_clusters:
            raise ValueError("min_clusters must not exceed max_clusters")
        return self


class ScorerConfig(_Section):
    """Multi-head candidate scorer settings."""

    learning_rate: float = Field(0.05, gt=0.0)
    epochs_per_batch: int = Field(3, ge=1)
    neutral_score: float = Field(0.5, ge=0.0, le=1.0)
    initial_context_weight: float = 0.5
    path_weight_step: float = Field(0.5, ge=0.0)
    weight_decay: float = Field(0.0, ge=0.0)


class RiskThresholds(_Section):
    """Baseline acceptance bars per risk tier."""

    safe: float = Field(0.55, ge=0.0, le=1.0)
    moderate: float = Field(0.70, ge=0.0, le=1.0)
    dangerous: float = Field(0.85, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _monotonic(self) -> "RiskThresholds":
        if not self.safe <= self.moderate <= self.dangerous:
            raise ValueError("risk thresholds must satisfy safe <= moderate <= dangerous")
        return self


class ThompsonConfig(_Section):
    """Thompson Sampling exploration settings."""

    prior_alpha: float = Field(1.0, gt=0.0)
    prior_beta: float = Field(1.0, gt=0.0)
    decay_factor: float = Field(1.0, gt=0.0, le=1.0)
    ucb_coefficient: float = Field(2.0, ge=0.0)
    risk_thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    threshold_min: float = Field(0.40, ge=0.0, le=1.0)
    threshold_max: float = Field(0.95, ge=0.0, le=1.0)
    mode_adjustments: Dict[str, float] = Field(default_factory=lambda: {
        "active_search": -0.10,
        "passive_suggestion": 0.0,
        "speculation": 0.05,
    })
    expected_success_rate: float = Field(0.75, ge=0.0, le=1.0)
    thompson_weight: float = Field(0.15, ge=0.0)
    local_alpha_weight: float = Field(0.10, ge=0.0)
    ucb_threshold_weight: float = Field(0.05, ge=0.0)
    seed: Optional[int] = None

    @model_validator(mode="after")
    def _bounds(self) -> "ThompsonConfig":
        if self.threshold_min >= self.threshold_max:
            raise ValueError("threshold_min must be lower than threshold_max")
        missing = {"active_search", "passive_suggestion", "speculation"} - set(self.mode_adjustments)
        if missing:
            raise ValueError(f"mode_adjustments missing modes: {sorted(missing)}")
        return self


class ReplayConfig(_Section):
    """Prioritized experience replay settings."""

    alpha: float = Field(0.6, ge=0.0)
    beta: float = Field(0.4, ge=0.0, le=1.0)
    min_priority: float = Field(0.01, gt=0.0, le=1.0)
    max_priority: float = Field(1.0, gt=0.0, le=1.0)
    cold_start_priority: float = Field(0.5, ge=0.0, le=1.0)
    min_traces: int = Field(1, ge=1)
    max_traces: int = Field(100, ge=1)
    batch_size: int = Field(32, ge=1)
    training_interval: int = Field(10, ge=1)
    max_flatten_depth: int = Field(8, ge=1)
    indistinguishable_epsilon: float = Field(1e-9, ge=0.0)
    seed: Optional[int] = None

    @model_validator(mode="after")
    def _priority_range(self) -> "ReplayConfig":
        if self.min_priority > self.max_priority:
            raise ValueError("min_priority must not exceed max_priority")
        return self


class SuggesterConfig(_Section):
    """Suggestion and prediction settings."""

    top_k: int = Field(5, ge=1)
    hybrid_weight: float = Field(0.8, ge=0.0, le=1.0)
    pagerank_weight: float = Field(0.2, ge=0.0, le=1.0)
    min_capability_overlap: float = Field(0.3, ge=0.0, le=1.0)
    min_capability_search_score: float = Field(0.65, ge=0.0, le=1.0)
    max_alternatives: int = Field(3, ge=0)
    max_predictions: int = Field(10, ge=1)
    low_confidence_threshold: float = Field(0.5, ge=0.0, le=1.0)
    default_mode: Literal["active_search", "passive_suggestion", "speculation"] = "passive_suggestion"
    deny_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_DENY_PATTERNS))
    always_confirm: List[str] = Field(default_factory=list)
    max_workers: int = Field(10, ge=1)

    @field_validator("deny_patterns")
    @classmethod
    def _lowercase_patterns(cls, value: List[str]) -> List[str]:
        return [pattern.lower() for pattern in value if pattern]


class RouterConfig(_Section):
    """Top-level configuration of the decision core."""

    graph: GraphConfig = Field(default_factory=GraphConfig)
    spectral: SpectralConfig = Field(default_factory=SpectralConfig)
    scorer: ScorerConfig = Field(default_factory=ScorerConfig)
    thompson: ThompsonConfig = Field(default_factory=ThompsonConfig)
    replay: ReplayConfig = Field(default_factory=ReplayConfig)
    suggester: SuggesterConfig = Field(default_factory=SuggesterConfig)
    permissions_path: Optional[str] = None
    traces_path: Optional[str] = None


def _read_config_file(path: str) -> Dict[str, Any]:
    """Read a JSON or YAML configuration file into a dictionary."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.endswith((".yaml", ".yml")):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read configuration {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration {path} must contain a mapping at the top level")
    return data


def parse_configuration(data: Dict[str, Any]) -> RouterConfig:
    """Validate a raw configuration mapping.

    Raises:
        ConfigurationError: If any value is invalid
    """
    try:
        return RouterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_configuration(path: Optional[str] = None) -> RouterConfig:
    """Load the router configuration.

    The path is taken from the argument, then the ``CAPABILITY_ROUTER_CONFIG``
    environment variable, then the default location under ``~/.config``. When
    the default file does not exist it is created with default values.

    Args:
        path: Optional explicit path to a JSON or YAML file

    Returns:
        Validated RouterConfig

    Raises:
        ConfigurationError: If the file is unreadable or contains invalid values
    """
    load_dotenv()

    explicit = path or os.environ.get(CONFIG_ENV_VAR)
    config_path = os.path.expanduser(explicit) if explicit else DEFAULT_CONFIG_PATH

    if not os.path.exists(config_path):
        if explicit:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        config = RouterConfig()
        try:
            os.makedirs(os.path.dirname(config_path), exist_ok=True)
            with open(config_path, 'w', encoding='utf-8') as f:
                json.dump(config.model_dump(), f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to create default configuration: {e}")
        return _apply_environment(config)

    config = parse_configuration(_read_config_file(config_path))
    logger.debug(f"Loaded configuration from {config_path}")
    return _apply_environment(config)


def _apply_environment(config: RouterConfig) -> RouterConfig:
    """Apply environment variable overrides."""
    permissions_path = os.environ.get(PERMISSIONS_ENV_VAR)
    if permissions_path:
        config.permissions_path = permissions_path
    return config

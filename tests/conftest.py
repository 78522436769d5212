"""Shared fixtures for capability_router tests."""

import pytest

from capability_router.lib.config import RouterConfig, ThompsonConfig, RiskThresholds, ReplayConfig
from capability_router.lib.graph.store import GraphStore
from capability_router.lib.rl.scorer import CandidateScorer
from capability_router.lib.tools.base import CandidateRegistry, ToolNode, CapabilityNode
from capability_router.lib.tools.permissions import PermissionDescriptor
from capability_router.lib.traces.store import InMemoryTraceStore


@pytest.fixture
def permissions():
    return PermissionDescriptor.from_mapping({
        "permissions": {
            "fs": {"scope": "filesystem"},
            "json": "minimal",
            "http:get": {"scope": "network"},
            "git:push": {"scope": "elevated", "approval_mode": "hil"},
            "shell": {"scope": "elevated"},
        }
    })


@pytest.fixture
def registry():
    registry = CandidateRegistry()
    for tool_id in ("fs:read", "fs:write", "json:parse", "http:get"):
        registry.register_tool(ToolNode(id=tool_id))
    registry.register_capability(CapabilityNode(id="cap:load_config", tools_used=("fs:read", "json:parse")))
    return registry


@pytest.fixture
def graph():
    return GraphStore()


@pytest.fixture
def scorer():
    return CandidateScorer()


@pytest.fixture
def trace_store():
    return InMemoryTraceStore()


@pytest.fixture
def permissive_config():
    """Configuration where every known, non-approval candidate clears its threshold."""
    return RouterConfig(
        thompson=ThompsonConfig(
            risk_thresholds=RiskThresholds(safe=0.0, moderate=0.0, dangerous=0.0),
            threshold_min=0.0,
            threshold_max=1.0,
            thompson_weight=0.0,
            local_alpha_weight=0.0,
            seed=7,
        ),
        replay=ReplayConfig(seed=7),
    )

#!/usr/bin/env python3
# capability_router/lib/tools/base.py
"""Candidate node models and the flat candidate registry."""

import time
import logging
import os
import json
from enum import Enum
from typing import Dict, List, Any, Optional, Tuple, Iterable, Set, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from .permissions import PermissionDescriptor

logger = logging.getLogger(__name__)


class RiskTier(str, Enum):
    """Risk tier of a candidate, ordered from least to most restrictive."""

    SAFE = "safe"
    MODERATE = "moderate"
    DANGEROUS = "dangerous"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @classmethod
    def highest(cls, tiers: Iterable["RiskTier"]) -> "RiskTier":
        """Return the most restrictive tier, SAFE for an empty iterable."""
        return max(tiers, key=lambda tier: tier.rank, default=cls.SAFE)


_RISK_ORDER = [RiskTier.SAFE, RiskTier.MODERATE, RiskTier.DANGEROUS, RiskTier.UNKNOWN]


class ToolNode(BaseModel):
    """A single callable tool, keyed by a stable ``server:action`` identifier."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(frozen=True)
    name: str = ""
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    embedding: Optional[List[float]] = Field(default=None, repr=False)
    centrality: float = Field(0.0, ge=0.0, le=1.0)
    community: Optional[int] = None
    created_at: float = Field(default_factory=time.time)

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("tool id must be a non-empty string")
        return value

    @property
    def server(self) -> str:
        return self.id.split(":", 1)[0]

    @property
    def display_name(self) -> str:
        return self.name or self.id.split(":", 1)[-1]


class CapabilityNode(BaseModel):
    """A reusable code pattern composed from tools or other capabilities.

    The core definition (``id``, ``tools_used``, ``code_snippet``) is fixed at
    creation; only usage statistics and the derived risk tier change later.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(frozen=True)
    tools_used: Tuple[str, ...] = Field(default=(), frozen=True)
    code_snippet: str = Field(default="", frozen=True)
    name: str = ""
    description: str = ""
    embedding: Optional[List[float]] = Field(default=None, repr=False)
    zones: List[str] = Field(default_factory=list)
    risk_tier: RiskTier = RiskTier.SAFE
    usage_count: int = Field(0, ge=0)
    success_count: int = Field(0, ge=0)
    created_at: float = Field(default_factory=time.time)
    last_used_at: Optional[float] = None

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("capability id must be a non-empty string")
        return value

    @property
    def success_rate(self) -> float:
        """Observed success rate, 0.5 before any usage."""
        if self.usage_count == 0:
            return 0.5
        return self.success_count / self.usage_count

    def record_usage(self, success: bool) -> None:
        self.usage_count += 1
        if success:
            self.success_count += 1
        self.last_used_at = time.time()


class CandidateRegistry:
    """Flat arena of tools and capabilities keyed by id.

    Capability membership is stored as id tuples; nested capabilities are
    resolved by id lookup, never by following object references.
    """

    def __init__(self, max_depth: int = 8):
        """Initialize the candidate registry.

        Args:
            max_depth: Nesting depth guard used when resolving capabilities
        """
        self.tools: Dict[str, ToolNode] = {}
        self.capabilities: Dict[str, CapabilityNode] = {}
        self.max_depth = max_depth

    def register_tool(self, tool: ToolNode) -> ToolNode:
        """Register a tool, replacing display metadata of an existing entry.

        Args:
            tool: Tool node to register

        Returns:
            The registered tool node
        """
        if tool.id in self.capabilities:
            raise ValueError(f"Id {tool.id} is already registered as a capability")
        self.tools[tool.id] = tool
        logger.debug(f"Registered tool: {tool.id}")
        return tool

    def register_capability(self, capability: CapabilityNode) -> CapabilityNode:
        """Register a capability.

        Re-registering an identical definition returns the existing node.

        Args:
            capability: Capability node to register

        Returns:
            The registered (or existing) capability node

        Raises:
            ValueError: If the id exists with a different core definition
        """
        if capability.id in self.tools:
            raise ValueError(f"Id {capability.id} is already registered as a tool")

        existing = self.capabilities.get(capability.id)
        if existing is not None:
            if (existing.tools_used, existing.code_snippet) != (capability.tools_used, capability.code_snippet):
                raise ValueError(f"Capability {capability.id} is already registered with a different definition")
            return existing

        self.capabilities[capability.id] = capability
        logger.debug(f"Registered capability: {capability.id} ({len(capability.tools_used)} members)")
        return capability

    def get_tool(self, tool_id: str) -> Optional[ToolNode]:
        return self.tools.get(tool_id)

    def get_capability(self, capability_id: str) -> Optional[CapabilityNode]:
        return self.capabilities.get(capability_id)

    def get(self, candidate_id: str) -> Optional[BaseModel]:
        """Get a tool or capability by id, or None."""
        return self.tools.get(candidate_id) or self.capabilities.get(candidate_id)

    def is_capability(self, candidate_id: str) -> bool:
        return candidate_id in self.capabilities

    def __contains__(self, candidate_id: str) -> bool:
        return candidate_id in self.tools or candidate_id in self.capabilities

    def __len__(self) -> int:
        return len(self.tools) + len(self.capabilities)

    def all_ids(self) -> List[str]:
        return sorted(list(self.tools) + list(self.capabilities))

    def transitive_tools(self, capability_id: str) -> List[str]:
        """Resolve a capability to its leaf tool ids.

        Nested capabilities are expanded depth-first in declaration order.
        Cycles and nesting beyond ``max_depth`` are cut off; see :meth:`is_truncated`.

        Args:
            capability_id: Capability to resolve

        Returns:
            Ordered, de-duplicated list of leaf ids
        """
        return self._expand(capability_id)[0]

    def is_truncated(self, capability_id: str) -> bool:
        """True when resolving the capability hit ``max_depth`` and leaves may be missing."""
        return self._expand(capability_id)[1]

    def _expand(self, capability_id: str) -> Tuple[List[str], bool]:
        leaves: List[str] = []
        seen: Set[str] = set()
        truncated = False

        def expand(member_id: str, depth: int, stack: Set[str]) -> None:
            nonlocal truncated
            capability = self.capabilities.get(member_id)
            if capability is None:
                if member_id not in seen:
                    seen.add(member_id)
                    leaves.append(member_id)
                return
            if member_id in stack:
                return
            if depth >= self.max_depth:
                logger.warning(f"Stopped expanding capability {member_id} at depth {depth}")
                truncated = True
                return
            for child_id in capability.tools_used:
                expand(child_id, depth + 1, stack | {member_id})

        expand(capability_id, 0, set())
        return leaves, truncated

    def capabilities_containing(self, tool_id: str) -> List[str]:
        """Ids of capabilities whose leaf tools include ``tool_id``."""
        return sorted(
            capability_id for capability_id in self.capabilities
            if tool_id in self.transitive_tools(capability_id)
        )

    def capability_risk(self, capability_id: str, permissions: "PermissionDescriptor") -> RiskTier:
        """Most restrictive tier of the capability's leaves; UNKNOWN if expansion was cut short."""
        leaves, truncated = self._expand(capability_id)
        if truncated:
            return RiskTier.UNKNOWN
        return permissions.capability_risk(leaves)

    def sync_graph_features(self, centrality: Dict[str, float], communities: Dict[str, int]) -> int:
        """Copy PageRank and community ids from graph analytics onto registered tools.

        Returns:
            Number of tools updated
        """
        for tool in self.tools.values():
            tool.centrality = min(max(centrality.get(tool.id, 0.0), 0.0), 1.0)
            tool.community = communities.get(tool.id)
        return len(self.tools)

    def recompute_risk(self, permissions: "PermissionDescriptor") -> Dict[str, RiskTier]:
        """Derive each capability's risk tier from its constituent tools.

        Args:
            permissions: Descriptor mapping tool ids to risk tiers

        Returns:
            Mapping of capability id to the tier it changed to
        """
        changed: Dict[str, RiskTier] = {}
        for capability in self.capabilities.values():
            tier = self.capability_risk(capability.id, permissions)
            if tier != capability.risk_tier:
                capability.risk_tier = tier
                changed[capability.id] = tier
        if changed:
            logger.info(f"Recomputed risk tiers for {len(changed)} capabilities")
        return changed

    def save(self, path: str) -> None:
        """Save the registry to a JSON file."""
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        data = {
            "tools": [tool.model_dump(mode="json") for tool in self.tools.values()],
            "capabilities": [cap.model_dump(mode="json") for cap in self.capabilities.values()],
        }
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.debug(f"Saved {len(self)} candidates to {path}")

    @classmethod
    def load(cls, path: str, max_depth: int = 8) -> "CandidateRegistry":
        """Load a registry previously written by :meth:`save`."""
        registry = cls(max_depth=max_depth)
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        for tool_data in data.get("tools", []):
            registry.register_tool(ToolNode(**tool_data))
        for capability_data in data.get("capabilities", []):
            registry.register_capability(CapabilityNode(**capability_data))
        logger.debug(f"Loaded {len(registry)} candidates from {path}")
        return registry

#!/usr/bin/env python3
# capability_router/lib/tools/permissions.py
"""Declarative permission descriptor mapping candidates to risk tiers.

A descriptor is a JSON or YAML mapping from a candidate id (``server:action``)
or a namespace (``server``) to a scope label and an approval mode::

    filesystem:
      scope: filesystem
    "github:delete_repo":
      scope: mcp-standard
      approval_mode: hil
    memory: minimal

Exact ids take precedence over namespaces. Ids absent from the descriptor
classify as ``unknown`` and always require human approval.
"""

import os
import json
import logging
from typing import Dict, Any, Iterable, Optional, Literal

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from .base import RiskTier
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

SCOPE_RISK: Dict[str, RiskTier] = {
    "minimal": RiskTier.SAFE,
    "readonly": RiskTier.SAFE,
    "filesystem": RiskTier.MODERATE,
    "network": RiskTier.MODERATE,
    "network-api": RiskTier.MODERATE,
    "mcp-standard": RiskTier.DANGEROUS,
    "elevated": RiskTier.DANGEROUS,
}

UNRECOGNISED_SCOPE_RISK = RiskTier.MODERATE


class PermissionEntry(BaseModel):
    """Scope and approval mode for one id or namespace."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    scope: str
    approval_mode: Literal["auto", "hil"] = "auto"

    @property
    def risk_tier(self) -> RiskTier:
        return SCOPE_RISK.get(self.scope.lower(), UNRECOGNISED_SCOPE_RISK)


class PermissionDescriptor:
    """Read-only scope-to-risk table loaded once at startup."""

    def __init__(self, entries: Optional[Dict[str, PermissionEntry]] = None):
        self._entries: Dict[str, PermissionEntry] = dict(entries or {})

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "PermissionDescriptor":
        """Build a descriptor from a raw mapping.

        Args:
            data: Mapping of id or namespace to an entry dict or a scope string

        Returns:
            PermissionDescriptor

        Raises:
            ConfigurationError: If an entry is malformed
        """
        if "permissions" in data and isinstance(data["permissions"], dict):
            data = data["permissions"]

        entries: Dict[str, PermissionEntry] = {}
        for key, raw in data.items():
            if isinstance(raw, str):
                raw = {"scope": raw}
            try:
                entry = PermissionEntry.model_validate(raw)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid permission entry for '{key}': {e}") from e
            if entry.scope.lower() not in SCOPE_RISK:
                logger.warning(f"Unrecognised scope '{entry.scope}' for '{key}', treating as moderate")
            entries[str(key)] = entry
        return cls(entries)

    @classmethod
    def from_file(cls, path: str) -> "PermissionDescriptor":
        """Load a descriptor from a JSON or YAML file.

        Raises:
            ConfigurationError: If the file is missing or malformed
        """
        path = os.path.expanduser(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                if path.endswith((".yaml", ".yml")):
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load permission descriptor {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Permission descriptor {path} must contain a mapping")

        descriptor = cls.from_mapping(data)
        logger.info(f"Loaded {len(descriptor)} permission entries from {path}")
        return descriptor

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, candidate_id: str) -> Optional[PermissionEntry]:
        """Return the entry for an exact id, else for its namespace, else None."""
        entry = self._entries.get(candidate_id)
        if entry is not None:
            return entry
        return self._entries.get(candidate_id.split(":", 1)[0])

    def risk_tier(self, candidate_id: str) -> RiskTier:
        entry = self.lookup(candidate_id)
        return entry.risk_tier if entry else RiskTier.UNKNOWN

    def requires_approval(self, candidate_id: str) -> bool:
        """True when the id is undeclared or declared with ``hil`` approval."""
        entry = self.lookup(candidate_id)
        return entry is None or entry.approval_mode == "hil"

    def capability_risk(self, tool_ids: Iterable[str]) -> RiskTier:
        """Most restrictive tier among the given tools (SAFE when empty)."""
        return RiskTier.highest(self.risk_tier(tool_id) for tool_id in tool_ids)

    def capability_requires_approval(self, tool_ids: Iterable[str]) -> bool:
        return any(self.requires_approval(tool_id) for tool_id in tool_ids)

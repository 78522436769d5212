"""Candidate models and permission classification for Capability Router."""

from .base import RiskTier, ToolNode, CapabilityNode, CandidateRegistry
from .permissions import PermissionDescriptor, PermissionEntry, SCOPE_RISK

__all__ = [
    "RiskTier",
    "ToolNode",
    "CapabilityNode",
    "CandidateRegistry",
    "PermissionDescriptor",
    "PermissionEntry",
    "SCOPE_RISK",
]

"""Dependency graph and hypergraph analytics for Capability Router."""

from .store import GraphStore, GraphSnapshot, path_confidence
from .spectral import SpectralClusteringManager, ClusterAssignment, CapabilityEdge

__all__ = [
    "GraphStore",
    "GraphSnapshot",
    "path_confidence",
    "SpectralClusteringManager",
    "ClusterAssignment",
    "CapabilityEdge",
]

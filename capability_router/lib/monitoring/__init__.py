"""Metrics for the decision core."""

from .decision_metrics import DecisionMetrics

__all__ = ["DecisionMetrics"]

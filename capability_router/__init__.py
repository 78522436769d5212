"""
Capability Router - learns which tool or capability to run next for an intent.

This package provides a graph-and-learning decision core: a dependency graph
over tools and capabilities, an attention-style multi-head scorer, Thompson
Sampling acceptance thresholds and a prioritized replay trainer.
"""

__version__ = "0.1.0"
__author__ = "Capability Router Team"

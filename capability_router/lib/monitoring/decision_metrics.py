#!/usr/bin/env python3
"""Module for tracking decision-core metrics."""

import os
import time
import json
import logging
import threading
from typing import Dict, List, Any, Optional
from datetime import datetime, timedelta
from collections import deque, Counter

from rich.panel import Panel
from rich.table import Table
from rich.box import ROUNDED

from ..events import RouterEvent, DecisionEvent, OutcomeRecordedEvent, TrainingCompletedEvent, TrainingSkippedEvent

logger = logging.getLogger(__name__)

DEFAULT_METRICS_PATH = os.path.expanduser("~/.config/capability_router/metrics.json")


class DecisionMetrics:
    """Tracks decisions, outcomes and training runs."""

    def __init__(self, history_size: int = 100, save_path: Optional[str] = None):
        """Initialize the metrics tracker.

        Args:
            history_size: Number of recent events and latencies to keep
            save_path: JSON file used by save_metrics and load_metrics
        """
        self._start_time = time.time()
        self._lock = threading.RLock()
        self._save_path = save_path or DEFAULT_METRICS_PATH

        self._history = deque(maxlen=history_size)
        self._latencies_ms = deque(maxlen=history_size)
        self._decisions = Counter()
        self._outcomes = Counter()
        self._candidate_outcomes: Dict[str, Counter] = {}
        self._training_runs = 0
        self._training_skips = Counter()
        self._last_loss: Optional[float] = None

    def attach(self, events) -> None:
        """Subscribe to an EventChannel."""
        events.subscribe(self.handle_event)

    def handle_event(self, event: RouterEvent) -> None:
        if isinstance(event, DecisionEvent):
            self.log_decision(event.decision)
        elif isinstance(event, OutcomeRecordedEvent):
            self.log_outcome(event.candidate_id, event.success)
        elif isinstance(event, TrainingCompletedEvent):
            self.log_training(event.loss)
        elif isinstance(event, TrainingSkippedEvent):
            self.log_training_skipped(event.reason)

    def log_decision(self, decision: str, latency_ms: Optional[float] = None) -> None:
        """Log a suggestion decision.

        Args:
            decision: execute, suggest or require_approval
            latency_ms: Time taken to decide
        """
        with self._lock:
            self._decisions[decision] += 1
            if latency_ms is not None:
                self._latencies_ms.append(latency_ms)
            self._history.append({"type": "decision", "decision": decision, "timestamp": time.time()})

    def log_latency(self, latency_ms: float) -> None:
        with self._lock:
            self._latencies_ms.append(latency_ms)

    def log_outcome(self, candidate_id: Optional[str], success: bool) -> None:
        key = "success" if success else "failure"
        with self._lock:
            self._outcomes[key] += 1
            if candidate_id:
                self._candidate_outcomes.setdefault(candidate_id, Counter())[key] += 1
            self._history.append({
                "type": "outcome",
                "candidate_id": candidate_id,
                "success": success,
                "timestamp": time.time(),
            })

    def log_training(self, loss: float) -> None:
        with self._lock:
            self._training_runs += 1
            self._last_loss = loss
            self._history.append({"type": "training", "loss": loss, "timestamp": time.time()})

    def log_training_skipped(self, reason: str) -> None:
        with self._lock:
            self._training_skips[reason] += 1
            self._history.append({"type": "training_skipped", "reason": reason, "timestamp": time.time()})

    def get_uptime(self) -> str:
        """Uptime as a human-readable string (e.g. "2 hours 15 minutes")."""
        uptime = timedelta(seconds=int(time.time() - self._start_time))
        hours, remainder = divmod(uptime.seconds, 3600)
        minutes, seconds = divmod(remainder, 60)

        parts = []
        if uptime.days > 0:
            parts.append(f"{uptime.days} {'day' if uptime.days == 1 else 'days'}")
        if hours > 0 or uptime.days > 0:
            parts.append(f"{hours} {'hour' if hours == 1 else 'hours'}")
        if minutes > 0 or hours > 0 or uptime.days > 0:
            parts.append(f"{minutes} {'minute' if minutes == 1 else 'minutes'}")
        if not parts:
            return f"{seconds} seconds"
        return " ".join(parts)

    def get_recent_activity(self, count: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            recent = [dict(event) for event in list(self._history)[-count:]]
        for event in recent:
            event["formatted_time"] = datetime.fromtimestamp(event["timestamp"]).strftime("%Y-%m-%d %H:%M:%S")
        return recent

    def get_summary(self) -> Dict[str, Any]:
        """All metrics as a dictionary."""
        with self._lock:
            latencies = list(self._latencies_ms)
            total_outcomes = sum(self._outcomes.values())
            return {
                "uptime": self.get_uptime(),
                "decisions": dict(self._decisions),
                "outcomes": dict(self._outcomes),
                "success_rate": self._outcomes["success"] / total_outcomes if total_outcomes else None,
                "candidates": {cid: dict(counts) for cid, counts in self._candidate_outcomes.items()},
                "training_runs": self._training_runs,
                "training_skips": dict(self._training_skips),
                "last_loss": self._last_loss,
                "avg_latency_ms": sum(latencies) / len(latencies) if latencies else None,
            }

    def save_metrics(self, path: Optional[str] = None) -> None:
        """Save counters to disk."""
        path = path or self._save_path
        with self._lock:
            data = {
                "decisions": dict(self._decisions),
                "outcomes": dict(self._outcomes),
                "candidates": {cid: dict(counts) for cid, counts in self._candidate_outcomes.items()},
                "training_runs": self._training_runs,
                "training_skips": dict(self._training_skips),
                "last_saved": time.time(),
            }
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.debug(f"Metrics saved to {path}")

    def load_metrics(self, path: Optional[str] = None) -> bool:
        """Load counters from disk. Returns False when no file exists."""
        path = path or self._save_path
        if not os.path.exists(path):
            return False
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        with self._lock:
            self._decisions = Counter(data.get("decisions", {}))
            self._outcomes = Counter(data.get("outcomes", {}))
            self._candidate_outcomes = {cid: Counter(counts) for cid, counts in data.get("candidates", {}).items()}
            self._training_runs = data.get("training_runs", 0)
            self._training_skips = Counter(data.get("training_skips", {}))
        logger.info(f"Loaded metrics from {path}")
        return True

    def reset_stats(self) -> None:
        """Reset all statistics but keep the start time."""
        with self._lock:
            self._history.clear()
            self._latencies_ms.clear()
            self._decisions.clear()
            self._outcomes.clear()
            self._candidate_outcomes.clear()
            self._training_runs = 0
            self._training_skips.clear()
            self._last_loss = None

    def render_panel(self) -> Panel:
        """Render the summary as a rich panel."""
        summary = self.get_summary()
        table = Table(box=ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("Metric")
        table.add_column("Value", justify="right")

        for decision in ("execute", "suggest", "require_approval"):
            table.add_row(f"decisions: {decision}", str(summary["decisions"].get(decision, 0)))
        table.add_row("outcomes: success", str(summary["outcomes"].get("success", 0)))
        table.add_row("outcomes: failure", str(summary["outcomes"].get("failure", 0)))
        if summary["success_rate"] is not None:
            table.add_row("success rate", f"{summary['success_rate']:.1%}")
        table.add_row("training runs", str(summary["training_runs"]))
        for reason, count in sorted(summary["training_skips"].items()):
            table.add_row(f"training skipped: {reason}", str(count))
        if summary["last_loss"] is not None:
            table.add_row("last loss", f"{summary['last_loss']:.4f}")
        if summary["avg_latency_ms"] is not None:
            table.add_row("avg decision latency", f"{summary['avg_latency_ms']:.1f} ms")

        return Panel(table, title=f"[bold]Decision metrics[/bold] (up {summary['uptime']})", border_style="blue")

#!/usr/bin/env python3
# capability_router/lib/events.py
"""Typed notifications exchanged with trace-store and telemetry collaborators.

Components receive an :class:`EventChannel` explicitly and publish pydantic
payloads on it; subscribers register on that same instance.
"""

import time
import logging
import threading
from collections import deque
from typing import Dict, List, Optional, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class RouterEvent(BaseModel):
    """Base payload for all events."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    event_type: str
    timestamp: float = Field(default_factory=time.time)


class DecisionEvent(RouterEvent):
    event_type: Literal["decision"] = "decision"
    decision: str
    candidate_ids: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    pending_layer: Optional[int] = None
    reason: str = ""


class OutcomeRecordedEvent(RouterEvent):
    event_type: Literal["outcome_recorded"] = "outcome_recorded"
    trace_id: str
    candidate_id: Optional[str] = None
    success: bool
    priority: float


class PriorityUpdatedEvent(RouterEvent):
    event_type: Literal["priority_updated"] = "priority_updated"
    trace_id: str
    old_priority: float
    new_priority: float
    td_error: float


class TrainingCompletedEvent(RouterEvent):
    event_type: Literal["training_completed"] = "training_completed"
    traces_used: int
    examples_used: int
    loss: float
    accuracy: float
    weights_version: int
    stopped_early: bool = False


class TrainingSkippedEvent(RouterEvent):
    event_type: Literal["training_skipped"] = "training_skipped"
    reason: str
    detail: str = ""


class AnalyticsRefreshedEvent(RouterEvent):
    event_type: Literal["analytics_refreshed"] = "analytics_refreshed"
    version: int
    nodes: int
    edges: int


EventCallback = Callable[[RouterEvent], None]


class EventChannel:
    """In-process channel delivering events to registered subscribers."""

    def __init__(self, history_size: int = 100):
        """Initialize the channel.

        Args:
            history_size: Number of recent events kept for inspection
        """
        self._subscribers: Dict[Optional[str], List[EventCallback]] = {}
        self._history = deque(maxlen=history_size)
        self._lock = threading.RLock()

    def subscribe(self, callback: EventCallback, event_type: Optional[str] = None) -> None:
        """Register a callback for one event type, or all events when None."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, callback: EventCallback, event_type: Optional[str] = None) -> None:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event: RouterEvent) -> None:
        """Deliver an event; a failing subscriber is logged and skipped."""
        with self._lock:
            self._history.append(event)
            callbacks = list(self._subscribers.get(event.event_type, [])) + list(self._subscribers.get(None, []))

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.exception(f"Event subscriber failed on {event.event_type}: {e}")

    def history(self, event_type: Optional[str] = None) -> List[RouterEvent]:
        with self._lock:
            return [event for event in self._history if event_type is None or event.event_type == event_type]

"""
Foresight — Learning Feedback Loop

Two jobs:

1. Temporal-difference update on the edge of every real transition
   prev → actual, applied immediately:

       value ← value + α·(reward − value)      reward ∈ {0.0, 1.0}

   The raw co-occurrence weight of the same edge is bumped by the
   upsert, so walks and path confidence both see the transition at once.

2. Prioritized trace retention. Each ExecutionTrace carries
   priority = |predicted confidence − actual outcome|. The bounded
   TraceBuffer evicts the lowest priority first (oldest on ties) and
   samples with probability ∝ (priority + floor)^α for replay-based
   retraining.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from engine.config import LearningConfig
from graphrag.graph_store import CapabilityGraph

logger = logging.getLogger("foresight.learning")

PRIORITY_FLOOR = 1e-3


def td_update(old: float, reward: float, alpha: float) -> float:
    return old + alpha * (reward - old)


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def reward(self) -> float:
        return 1.0 if self is Outcome.SUCCESS else 0.0


@dataclass
class ExecutionTrace:
    capability_id: str
    tool_sequence: tuple[str, ...]
    outcome: Outcome
    priority: float = 0.0
    predicted_confidence: float = 0.0
    workflow_id: str = ""
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)

    @staticmethod
    def compute_priority(predicted_confidence: float, outcome: Outcome) -> float:
        return abs(predicted_confidence - outcome.reward)


# ═══════════════════════════════════════════════════════════════════
# Prioritized Trace Buffer
# ═══════════════════════════════════════════════════════════════════

class TraceBuffer:
    """Bounded prioritized buffer. Thread-safe."""

    def __init__(self, capacity: int = 1000, seed: int | None = None):
        if capacity < 1:
            raise ValueError("TraceBuffer capacity must be >= 1")
        self.capacity = capacity
        self._traces: dict[str, tuple[int, ExecutionTrace]] = {}
        self._seq = 0
        self._lock = threading.Lock()
        self._rng = np.random.default_rng(seed)

    def __len__(self) -> int:
        return len(self._traces)

    def add(self, trace: ExecutionTrace) -> ExecutionTrace | None:
        """Insert; returns the evicted trace when the buffer was full."""
        with self._lock:
            self._seq += 1
            self._traces[trace.trace_id] = (self._seq, trace)
            if len(self._traces) <= self.capacity:
                return None
            victim_id = min(
                self._traces,
                key=lambda tid: (self._traces[tid][1].priority, self._traces[tid][0]),
            )
            _, victim = self._traces.pop(victim_id)
        logger.debug("Trace buffer full (%d); evicted %s priority=%.3f",
                     self.capacity, victim.trace_id, victim.priority)
        return victim

    def update_priority(self, trace_id: str, priority: float) -> bool:
        with self._lock:
            entry = self._traces.get(trace_id)
            if entry is None:
                return False
            entry[1].priority = max(0.0, priority)
            return True

    def traces(self) -> list[ExecutionTrace]:
        """Oldest first."""
        with self._lock:
            return [t for _, t in sorted(self._traces.values(), key=lambda e: e[0])]

    def sample(self, n: int, alpha: float = 0.6) -> list[ExecutionTrace]:
        """Draw up to n traces without replacement, P ∝ (priority + floor)^alpha."""
        items = self.traces()
        if not items or n <= 0:
            return []
        weights = np.array([(t.priority + PRIORITY_FLOOR) ** alpha for t in items])
        probs = weights / weights.sum()
        k = min(n, len(items))
        with self._lock:
            idx = self._rng.choice(len(items), size=k, replace=False, p=probs)
        return [items[i] for i in idx]

    def replay_sequences(self, n: int, alpha: float = 0.6) -> list[list[str]]:
        return [list(t.tool_sequence) for t in self.sample(n, alpha) if len(t.tool_sequence) > 1]

    def stats(self) -> dict[str, Any]:
        items = self.traces()
        return {
            "size": len(items),
            "capacity": self.capacity,
            "mean_priority": (sum(t.priority for t in items) / len(items)) if items else 0.0,
        }


# ═══════════════════════════════════════════════════════════════════
# Feedback Loop
# ═══════════════════════════════════════════════════════════════════

class FeedbackLoop:
    """Applies outcomes to the shared graph and the trace buffer."""

    def __init__(
        self,
        graph: CapabilityGraph,
        config: LearningConfig | None = None,
        buffer: TraceBuffer | None = None,
    ):
        self.graph = graph
        self.config = config or LearningConfig()
        self.buffer = buffer or TraceBuffer(self.config.trace_buffer_size)

    def observe_transition(
        self,
        prev: str,
        actual: str,
        success: bool,
        reward: float | None = None,
    ) -> tuple[float, float]:
        """Upsert prev→actual and apply the TD update. Returns (old, new) value."""
        if reward is None:
            reward = 1.0 if success else 0.0
        self.graph.upsert_edge(prev, actual, 1.0)
        old, new = self.graph.apply_td(prev, actual, reward,
                                       self.config.learning_rate, success=success)
        logger.debug("TD %s→%s: %.4f → %.4f (reward=%.1f)", prev, actual, old, new, reward)
        return old, new

    def record_trace(
        self,
        capability_id: str,
        tool_sequence: list[str] | tuple[str, ...],
        success: bool,
        predicted_confidence: float = 0.0,
        workflow_id: str = "",
    ) -> ExecutionTrace:
        outcome = Outcome.SUCCESS if success else Outcome.FAILURE
        trace = ExecutionTrace(
            capability_id=capability_id,
            tool_sequence=tuple(tool_sequence),
            outcome=outcome,
            priority=ExecutionTrace.compute_priority(predicted_confidence, outcome),
            predicted_confidence=predicted_confidence,
            workflow_id=workflow_id,
        )
        self.buffer.add(trace)
        return trace

    def handle_event(self, event: Any) -> None:
        """OutcomeReporter sink: every commit/discard becomes a trace."""
        if getattr(event, "event_type", "") != "speculation_outcome":
            return
        self.record_trace(
            capability_id=event.task_id,
            tool_sequence=tuple(event.tool_sequence) + (event.task_id,),
            success=event.correct,
            predicted_confidence=event.confidence,
            workflow_id=event.workflow_id,
        )

    def replay_sequences(self, n: int | None = None) -> list[list[str]]:
        n = self.config.replay_sample_size if n is None else n
        return self.buffer.replay_sequences(n, self.config.per_alpha)

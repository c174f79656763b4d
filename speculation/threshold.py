"""
Foresight — Adaptive Threshold Manager

Closed-loop controller for the speculation confidence cutoff.

One AdaptiveThreshold per domain. A domain is either the single global
domain or a capability namespace (the text before ":" in a task id),
depending on threshold.scope.

Per outcome:
  1. append correct/incorrect to the rolling window
  2. when the window is full:
       success_rate > upper_bound  → threshold -= step  (floor: min)
       success_rate < lower_bound  → threshold += step  (ceiling: max)
       otherwise                   → hold
  3. clear the window

The threshold never leaves [min, max]. A value found outside the band
(e.g. a restored snapshot from an older config) is re-clamped and
reported with a ThresholdOutOfBand warning.
"""

from __future__ import annotations

import logging
import threading
import time
import warnings
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from engine.config import ThresholdConfig
from engine.logging import log_threshold_adjust
from graphrag.graph_store import namespace_of

logger = logging.getLogger("foresight.threshold")

GLOBAL_DOMAIN = "global"
HISTORY_SIZE = 200


class ThresholdOutOfBand(UserWarning):
    """Threshold value found outside [min, max]; it has been re-clamped."""


@dataclass(frozen=True)
class ThresholdDecision:
    domain: str
    old: float
    new: float
    success_rate: float
    action: str                     # lower | raise | hold
    timestamp: float = field(default_factory=time.time)


class AdaptiveThreshold:
    """Threshold state machine for one domain."""

    def __init__(self, config: ThresholdConfig | None = None, domain: str = GLOBAL_DOMAIN):
        self.config = config or ThresholdConfig()
        self.domain = domain
        self._lock = threading.Lock()
        self._window: deque[bool] = deque(maxlen=self.config.window_size)
        self._value = self._clamp(self.config.initial)

    @property
    def value(self) -> float:
        return self._value

    @property
    def window(self) -> list[bool]:
        with self._lock:
            return list(self._window)

    def _clamp(self, value: float) -> float:
        lo, hi = self.config.min, self.config.max
        if lo <= value <= hi:
            return value
        clamped = min(hi, max(lo, value))
        msg = (f"Threshold {value:.4f} for domain={self.domain} outside "
               f"[{lo}, {hi}], re-clamped to {clamped:.4f}")
        logger.warning(msg)
        warnings.warn(msg, ThresholdOutOfBand, stacklevel=3)
        return clamped

    def record(self, correct: bool) -> ThresholdDecision | None:
        """Append one outcome. Returns a decision when the window fills."""
        with self._lock:
            self._window.append(bool(correct))
            if len(self._window) < self.config.window_size:
                return None

            cfg = self.config
            rate = sum(self._window) / len(self._window)
            old = self._value
            if rate > cfg.upper_bound:
                new, action = max(cfg.min, old - cfg.step), "lower"
            elif rate < cfg.lower_bound:
                new, action = min(cfg.max, old + cfg.step), "raise"
            else:
                new, action = old, "hold"
            self._value = self._clamp(round(new, 6))
            self._window.clear()
            decision = ThresholdDecision(self.domain, old, self._value, rate, action)

        if action != "hold":
            log_threshold_adjust(self.domain, old, decision.new, rate, action)
        else:
            logger.debug("Threshold hold for %s at %.4f (rate=%.3f)", self.domain, old, rate)
        return decision

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {"value": self._value, "window": list(self._window)}

    def restore(self, data: dict[str, Any]) -> None:
        with self._lock:
            self._value = self._clamp(float(data.get("value", self.config.initial)))
            self._window.clear()
            self._window.extend(bool(x) for x in data.get("window", []))


class ThresholdManager:
    """Domain partitioning over AdaptiveThreshold states."""

    def __init__(self, config: ThresholdConfig | None = None):
        self.config = config or ThresholdConfig()
        self._states: dict[str, AdaptiveThreshold] = {}
        self._registry_lock = threading.Lock()
        self._history: deque[ThresholdDecision] = deque(maxlen=HISTORY_SIZE)

    def domain_for(self, task_id: str) -> str:
        if self.config.scope == "namespace":
            return namespace_of(task_id, self.config.namespace_separator)
        return GLOBAL_DOMAIN

    def state(self, domain: str) -> AdaptiveThreshold:
        st = self._states.get(domain)
        if st is not None:
            return st
        with self._registry_lock:
            st = self._states.get(domain)
            if st is None:
                st = AdaptiveThreshold(self.config, domain)
                self._states[domain] = st
        return st

    def current(self, task_id: str) -> float:
        return self.state(self.domain_for(task_id)).value

    def record(self, task_id: str, correct: bool) -> ThresholdDecision | None:
        decision = self.state(self.domain_for(task_id)).record(correct)
        if decision is not None:
            self._history.append(decision)
        return decision

    def handle_event(self, event: Any) -> None:
        """OutcomeReporter sink: consumes speculation outcome events only."""
        if getattr(event, "event_type", "") != "speculation_outcome":
            return
        self.record(event.task_id, event.correct)

    def history(self) -> list[ThresholdDecision]:
        return list(self._history)

    def values(self) -> dict[str, float]:
        with self._registry_lock:
            return {d: s.value for d, s in sorted(self._states.items())}

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._registry_lock:
            states = dict(self._states)
        return {d: s.snapshot() for d, s in states.items()}

    def restore(self, data: dict[str, dict[str, Any]]) -> None:
        for domain, st in data.items():
            self.state(domain).restore(st)

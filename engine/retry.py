"""
Foresight — Outcome Delivery with Buffering & Backoff

Speculation outcomes and execution traces are delivered to the
learning side (threshold manager, feedback loop, episode store) through
an OutcomeReporter. The workflow's critical path only ever calls
submit(), which appends to an in-memory queue and returns.

Delivery happens in flush() (called opportunistically by the runtime,
or by an optional background thread):
  - Every registered sink receives every event
  - A sink that raises gets the event re-buffered for that sink only,
    with exponential backoff + jitter before the next attempt
  - After max_attempts the event is dropped with an ERROR log
  - The pending queue is bounded; the oldest entry is dropped on overflow

flush() never sleeps; backoff is a not-before timestamp.

Usage:
    reporter = OutcomeReporter(policy=RetryPolicy(max_attempts=5))
    reporter.add_sink("threshold", threshold_manager.handle_event)
    reporter.submit(event)
    reporter.flush()
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger("foresight.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for outcome delivery retry."""
    max_attempts: int = 5
    backoff_base: float = 0.05      # seconds; delay = base * 2^attempt + jitter
    backoff_max: float = 5.0        # cap on delay between retries
    jitter: float = 0.2             # ±20% randomization on backoff
    max_pending: int = 10_000       # bounded buffer


DEFAULT_POLICY = RetryPolicy()


def _calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Calculate backoff delay with jitter."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


# ═══════════════════════════════════════════════════════════════════
# Pending Delivery
# ═══════════════════════════════════════════════════════════════════

@dataclass
class _Pending:
    event: Any
    sink: str                       # "" = every sink (first attempt)
    attempts: int = 0
    not_before: float = 0.0
    last_error: str = ""


@dataclass
class DeliveryStats:
    submitted: int = 0
    delivered: int = 0
    retried: int = 0
    dropped: int = 0
    overflowed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "submitted": self.submitted,
            "delivered": self.delivered,
            "retried": self.retried,
            "dropped": self.dropped,
            "overflowed": self.overflowed,
        }


# ═══════════════════════════════════════════════════════════════════
# Outcome Reporter
# ═══════════════════════════════════════════════════════════════════

class OutcomeReporter:
    """
    Non-blocking fan-out of outcome events to named sinks.

    submit() is O(1) and lock-short. flush() is single-flight: a flush
    already running in another thread makes a concurrent call return 0.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or DEFAULT_POLICY
        self._clock = clock
        self._sinks: dict[str, Callable[[Any], None]] = {}
        self._queue: deque[_Pending] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self.stats = DeliveryStats()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def add_sink(self, name: str, fn: Callable[[Any], None]) -> None:
        with self._lock:
            self._sinks[name] = fn

    def submit(self, event: Any) -> None:
        """Buffer an event for delivery. Never raises, never blocks on sinks."""
        with self._lock:
            self._enqueue(_Pending(event=event, sink=""))
            self.stats.submitted += 1

    def _enqueue(self, item: _Pending) -> None:
        # caller holds self._lock
        if len(self._queue) >= self.policy.max_pending:
            dropped = self._queue.popleft()
            self.stats.overflowed += 1
            logger.warning(
                "Outcome buffer full (%d) — dropping oldest event for sink=%s",
                self.policy.max_pending, dropped.sink or "*",
            )
        self._queue.append(item)

    def _requeue_front(self, item: _Pending) -> None:
        # caller holds self._lock; a full queue drops the re-buffered item,
        # which is older than everything already queued
        if len(self._queue) >= self.policy.max_pending:
            self.stats.overflowed += 1
            logger.warning(
                "Outcome buffer full (%d) — dropping oldest event for sink=%s",
                self.policy.max_pending, item.sink or "*",
            )
            return
        self._queue.appendleft(item)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def flush(self) -> int:
        """
        Deliver every due event. Returns the number of successful
        sink deliveries. Events not yet due stay buffered.
        """
        if not self._flush_lock.acquire(blocking=False):
            return 0
        try:
            with self._lock:
                batch = list(self._queue)
                self._queue.clear()
                sinks = dict(self._sinks)

            now = self._clock()
            delivered = 0
            requeue: list[_Pending] = []

            for item in batch:
                if item.not_before > now:
                    requeue.append(item)
                    continue
                targets = [item.sink] if item.sink else list(sinks)
                for name in targets:
                    fn = sinks.get(name)
                    if fn is None:
                        continue
                    try:
                        fn(item.event)
                        delivered += 1
                    except Exception as e:
                        retry = self._schedule_retry(item, name, e, now)
                        if retry is not None:
                            requeue.append(retry)

            with self._lock:
                # retries go in front of events submitted during this flush
                for item in reversed(requeue):
                    self._requeue_front(item)
                self.stats.delivered += delivered
            return delivered
        finally:
            self._flush_lock.release()

    def _schedule_retry(self, item: _Pending, sink: str, error: Exception,
                        now: float) -> _Pending | None:
        attempts = (item.attempts if item.sink else 0) + 1
        if attempts >= self.policy.max_attempts:
            with self._lock:
                self.stats.dropped += 1
            logger.error(
                "Outcome delivery to sink=%s failed %d times — dropping: %s",
                sink, attempts, str(error)[:200],
            )
            return None
        delay = _calculate_backoff(attempts - 1, self.policy)
        with self._lock:
            self.stats.retried += 1
        logger.warning(
            "Outcome delivery to sink=%s failed (attempt %d/%d), retry in %.2fs: %s",
            sink, attempts, self.policy.max_attempts, delay, str(error)[:200],
        )
        return _Pending(
            event=item.event,
            sink=sink,
            attempts=attempts,
            not_before=now + delay,
            last_error=str(error)[:200],
        )

    # ── Background delivery ──────────────────────────────────────

    def start(self, interval: float = 0.05) -> None:
        """Deliver in a daemon thread every `interval` seconds."""
        if self._thread is not None:
            return
        self._stop.clear()

        def _loop():
            while not self._stop.wait(interval):
                self.flush()

        self._thread = threading.Thread(target=_loop, name="fs_outcomes", daemon=True)
        self._thread.start()
        logger.info("OutcomeReporter background delivery started (interval=%.2fs)", interval)

    def stop(self, final_flush: bool = True) -> None:
        if self._thread is not None:
            self._stop.set()
            self._thread.join(timeout=5.0)
            self._thread = None
        if final_flush:
            self.flush()

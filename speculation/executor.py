"""
Foresight — Speculative Executor

Runs high-confidence predicted tasks ahead of confirmation and
reconciles them with the workflow's real next step.

SpeculativeTask lifecycle:

    RUNNING ──commit()──▶ COMMITTED
       │
       └────discard()──▶ DISCARDED     (idempotent)

Discard never waits for the task. A discarded task keeps running on its
worker thread; when it finishes its run time is booked as waste and its
result is dropped. Queued tasks that have not started are cancelled.

reconcile(workflow, actual):
  - matching speculation finished   → commit, zero added latency
  - matching speculation in flight  → wait up to commit_wait_seconds,
                                      else discard as late and run the
                                      real step synchronously
  - no matching speculation         → run synchronously
  - every other speculation for the workflow is discarded (incorrect)

Every commit/discard is submitted to the OutcomeReporter as an
OutcomeEvent; nothing on this path waits for the learning side.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from engine.config import SpeculationConfig
from engine.logging import StructuredLogger
from engine.retry import OutcomeReporter
from engine.tools import TaskExecutor, TaskResult, run_task
from graphrag.predictor import PredictedCandidate
from speculation.eligibility import EligibilityPolicy
from speculation.threshold import ThresholdManager

logger = logging.getLogger("foresight.speculation")


class SpeculationStatus(str, enum.Enum):
    RUNNING = "running"
    COMMITTED = "committed"
    DISCARDED = "discarded"


@dataclass
class SpeculativeTask:
    workflow_id: str
    candidate: PredictedCandidate
    args: dict[str, Any]
    future: Future
    started_at: float
    deadline: float
    status: SpeculationStatus = SpeculationStatus.RUNNING
    discard_reason: str = ""
    finished_at: float | None = None
    _waste_booked: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def task_id(self) -> str:
        return self.candidate.task_id

    @property
    def done(self) -> bool:
        return self.future.done()

    def commit(self) -> bool:
        with self._lock:
            if self.status != SpeculationStatus.RUNNING:
                return False
            self.status = SpeculationStatus.COMMITTED
            return True

    def discard(self, reason: str = "") -> bool:
        """Mark discarded. Returns False (and changes nothing) if already settled."""
        with self._lock:
            if self.status != SpeculationStatus.RUNNING:
                return False
            self.status = SpeculationStatus.DISCARDED
            self.discard_reason = reason
        # only succeeds for work that has not started
        self.future.cancel()
        return True


@dataclass
class OutcomeEvent:
    """Delivered to learning-side sinks through the OutcomeReporter."""
    event_type: str                 # speculation_start | speculation_outcome | task_complete
    workflow_id: str
    task_id: str
    correct: bool | None = None     # None for speculation_start
    confidence: float = 0.0
    late: bool = False
    reason: str = ""
    context_hash: str = ""
    tool_sequence: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)


@dataclass
class ReconcileResult:
    result: TaskResult
    committed: bool = False
    speculated: bool = False        # a speculation for the actual task existed
    late: bool = False
    discarded: list[str] = field(default_factory=list)
    waited_ms: float = 0.0


class SpeculationStats:
    """Waste accounting. Thread-safe counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self.launched = 0
        self.committed = 0
        self.discarded = 0
        self.late = 0
        self.timed_out = 0
        self.skipped_threshold = 0
        self.skipped_ineligible = 0
        self.skipped_duplicate = 0
        self.wasted_ms = 0.0

    def incr(self, name: str, n: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + n)

    def add_waste(self, ms: float) -> None:
        with self._lock:
            self.wasted_ms += ms

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            settled = self.committed + self.discarded
            return {
                "launched": self.launched,
                "committed": self.committed,
                "discarded": self.discarded,
                "late": self.late,
                "timed_out": self.timed_out,
                "skipped_threshold": self.skipped_threshold,
                "skipped_ineligible": self.skipped_ineligible,
                "skipped_duplicate": self.skipped_duplicate,
                "wasted_ms": round(self.wasted_ms, 1),
                "hit_rate": round(self.committed / settled, 4) if settled else 0.0,
            }


class SpeculativeExecutor:
    """Launch, reconcile and discard speculative tasks for many workflows."""

    def __init__(
        self,
        executor: TaskExecutor,
        thresholds: ThresholdManager,
        policy: EligibilityPolicy,
        config: SpeculationConfig | None = None,
        reporter: OutcomeReporter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executor = executor
        self.thresholds = thresholds
        self.policy = policy
        self.config = config or SpeculationConfig()
        self.reporter = reporter
        self._clock = clock
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="fs_spec",
        )
        self._inflight: dict[str, dict[str, SpeculativeTask]] = {}
        self._lock = threading.Lock()
        self._enabled = self.config.enabled
        self._disabled_reason = "" if self._enabled else "disabled by configuration"
        self.stats = SpeculationStats()

    # ── Kill switch ──────────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self._enabled

    def disable(self, reason: str = "") -> None:
        """Stop launching new speculations. In-flight ones still reconcile."""
        self._enabled = False
        self._disabled_reason = reason or "disabled"
        logger.warning("Speculation disabled: %s", self._disabled_reason)

    def enable(self) -> None:
        self._enabled = True
        self._disabled_reason = ""
        logger.info("Speculation enabled")

    # ── Launch ───────────────────────────────────────────────────

    def maybe_launch(
        self,
        workflow_id: str,
        candidates: Iterable[PredictedCandidate],
        args_for: Callable[[str], dict[str, Any]] | None = None,
        slog: StructuredLogger | None = None,
        context_hash: str = "",
    ) -> list[SpeculativeTask]:
        """Launch every candidate above its domain threshold that is eligible."""
        if not self._enabled:
            return []

        launched = []
        for cand in candidates:
            threshold = self.thresholds.current(cand.task_id)
            if not cand.confidence > threshold:
                self.stats.incr("skipped_threshold")
                continue
            if not self.policy.is_eligible(cand.task_id):
                self.stats.incr("skipped_ineligible")
                logger.debug("Not speculating %s: not eligible", cand.task_id)
                continue

            args = dict(args_for(cand.task_id)) if args_for else {}
            with self._lock:
                running = self._inflight.setdefault(workflow_id, {})
                if cand.task_id in running:
                    self.stats.incr("skipped_duplicate")
                    continue
                now = self._clock()
                future = self._pool.submit(run_task, self.executor, cand.task_id, args)
                spec = SpeculativeTask(
                    workflow_id=workflow_id,
                    candidate=cand,
                    args=args,
                    future=future,
                    started_at=now,
                    deadline=now + self.config.timeout_seconds,
                )
                running[cand.task_id] = spec

            future.add_done_callback(lambda _f, s=spec: self._on_finished(s))
            self.stats.incr("launched")
            launched.append(spec)
            if slog is not None:
                slog.on_speculation_start(cand.task_id, cand.confidence, threshold)
            if self.reporter is not None:
                self.reporter.submit(OutcomeEvent(
                    event_type="speculation_start",
                    workflow_id=workflow_id,
                    task_id=cand.task_id,
                    confidence=cand.confidence,
                    context_hash=context_hash,
                ))
        return launched

    def _on_finished(self, spec: SpeculativeTask) -> None:
        with spec._lock:
            spec.finished_at = self._clock()
            if spec.status == SpeculationStatus.DISCARDED:
                self._book_waste(spec)

    def _book_waste(self, spec: SpeculativeTask) -> None:
        # caller holds spec._lock
        if spec._waste_booked or spec.finished_at is None:
            return
        spec._waste_booked = True
        if spec.future.cancelled():
            return
        self.stats.add_waste((spec.finished_at - spec.started_at) * 1000)

    def _discard(
        self,
        spec: SpeculativeTask,
        reason: str,
        correct: bool = False,
        late: bool = False,
        slog: StructuredLogger | None = None,
        context_hash: str = "",
        tool_sequence: tuple[str, ...] = (),
    ) -> bool:
        if not spec.discard(reason):
            return False
        with spec._lock:
            self._book_waste(spec)
        self.stats.incr("discarded")
        if slog is not None:
            slog.on_speculation_discard(spec.task_id, reason)
        self._report(spec, correct, reason, late, context_hash, tool_sequence)
        return True

    # ── Reconcile ────────────────────────────────────────────────

    def reconcile(
        self,
        workflow_id: str,
        actual_task_id: str,
        args: dict[str, Any] | None = None,
        slog: StructuredLogger | None = None,
        context_hash: str = "",
        tool_sequence: tuple[str, ...] = (),
    ) -> ReconcileResult:
        """
        Settle every speculation of the workflow against the real step
        and return the real step's result.
        """
        args = args or {}
        with self._lock:
            running = self._inflight.pop(workflow_id, {})
        match = running.pop(actual_task_id, None)

        discarded = []
        for task_id in sorted(running):
            if self._discard(running[task_id], "mispredicted", slog=slog,
                             context_hash=context_hash, tool_sequence=tool_sequence):
                discarded.append(task_id)

        if match is None:
            if slog is not None:
                slog.on_sync_fallback(actual_task_id, "no_speculation")
            return ReconcileResult(run_task(self.executor, actual_task_id, args),
                                   discarded=discarded)

        if match.args != args:
            self._discard(match, "args_mismatch", slog=slog,
                          context_hash=context_hash, tool_sequence=tool_sequence)
            discarded.append(actual_task_id)
            if slog is not None:
                slog.on_sync_fallback(actual_task_id, "args_mismatch")
            return ReconcileResult(run_task(self.executor, actual_task_id, args),
                                   speculated=True, discarded=discarded)

        if match.status != SpeculationStatus.RUNNING:
            # already swept as expired
            if slog is not None:
                slog.on_sync_fallback(actual_task_id, match.discard_reason or "discarded")
            return ReconcileResult(run_task(self.executor, actual_task_id, args),
                                   speculated=True, discarded=discarded)

        t0 = self._clock()
        try:
            result = match.future.result(
                timeout=0 if match.done else self.config.commit_wait_seconds)
        except (FutureTimeout, CancelledError):
            result = None
        waited_ms = (self._clock() - t0) * 1000

        if result is None:
            # late: the prediction was right, the result just did not arrive in time
            self._discard(match, "late", correct=True, late=True, slog=slog,
                          context_hash=context_hash, tool_sequence=tool_sequence)
            self.stats.incr("late")
            if slog is not None:
                slog.on_sync_fallback(actual_task_id, "late")
            return ReconcileResult(run_task(self.executor, actual_task_id, args),
                                   speculated=True, late=True,
                                   discarded=discarded, waited_ms=waited_ms)

        if not result.ok:
            self._discard(match, "speculative_failure", correct=True, slog=slog,
                          context_hash=context_hash, tool_sequence=tool_sequence)
            if slog is not None:
                slog.on_sync_fallback(actual_task_id, "speculative_failure")
            return ReconcileResult(run_task(self.executor, actual_task_id, args),
                                   speculated=True, discarded=discarded,
                                   waited_ms=waited_ms)

        if not match.commit():
            # swept as expired between the result check and here
            return ReconcileResult(run_task(self.executor, actual_task_id, args),
                                   speculated=True, discarded=discarded,
                                   waited_ms=waited_ms)

        self.stats.incr("committed")
        if slog is not None:
            slog.on_speculation_commit(actual_task_id, waited_ms)
        self._report(match, True, "committed", False, context_hash, tool_sequence)
        return ReconcileResult(result, committed=True, speculated=True,
                               discarded=discarded, waited_ms=waited_ms)

    def discard_all(
        self,
        workflow_id: str,
        reason: str = "workflow_moved_on",
        slog: StructuredLogger | None = None,
        context_hash: str = "",
    ) -> list[str]:
        with self._lock:
            running = self._inflight.pop(workflow_id, {})
        discarded = []
        for task_id in sorted(running):
            if self._discard(running[task_id], reason, slog=slog, context_hash=context_hash):
                discarded.append(task_id)
        return discarded

    def sweep_expired(self) -> int:
        """Discard speculations that outlived timeout_seconds. Returns count."""
        now = self._clock()
        expired: list[SpeculativeTask] = []
        with self._lock:
            for wf_id, running in list(self._inflight.items()):
                for task_id, spec in list(running.items()):
                    if now > spec.deadline and not spec.done:
                        expired.append(running.pop(task_id))
                if not running:
                    del self._inflight[wf_id]
        for spec in expired:
            if self._discard(spec, "timeout"):
                self.stats.incr("timed_out")
                logger.warning("Speculative task %s for %s timed out after %.1fs",
                               spec.task_id, spec.workflow_id, self.config.timeout_seconds)
        return len(expired)

    def in_flight(self, workflow_id: str) -> list[SpeculativeTask]:
        with self._lock:
            return list(self._inflight.get(workflow_id, {}).values())

    # ── Reporting ────────────────────────────────────────────────

    def _report(
        self,
        spec: SpeculativeTask,
        correct: bool,
        reason: str,
        late: bool,
        context_hash: str,
        tool_sequence: tuple[str, ...],
    ) -> None:
        if self.reporter is None:
            return
        self.reporter.submit(OutcomeEvent(
            event_type="speculation_outcome",
            workflow_id=spec.workflow_id,
            task_id=spec.task_id,
            correct=correct,
            confidence=spec.candidate.confidence,
            late=late,
            reason=reason,
            context_hash=context_hash,
            tool_sequence=tuple(tool_sequence),
        ))

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            workflows = list(self._inflight)
        for wf_id in workflows:
            self.discard_all(wf_id, "shutdown")
        self._pool.shutdown(wait=wait, cancel_futures=True)

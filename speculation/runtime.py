"""
Foresight — Speculative Engine Runtime

Facade the workflow driver talks to. Wires the shared learning state
(graph, embeddings, thresholds, trace buffer) to per-workflow calls.

Driver loop:

    engine = SpeculativeEngine(executor, config, store)
    state = engine.start_workflow("research", domain="docs")
    while not done:
        engine.speculate(state)                  # predict + launch
        task_id, args = decide(state)            # driver's own logic
        result = engine.execute_step(state, task_id, args)
    engine.on_workflow_complete(state, success=True)

Off the critical path:
  - outcome events go through the OutcomeReporter (background delivery)
  - checkpoints, graph and threshold persistence go through a single
    writer thread
  - importance + embedding retraining run every `retrain_every`
    completed workflows on a background worker
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable

from engine.checkpoint import CheckpointStore, CheckpointUnavailable
from engine.config import EngineConfig
from engine.logging import StructuredLogger
from engine.retry import OutcomeReporter
from engine.state import Decision, TaskRecord, TaskStatus, WorkflowState, WorkflowStatus
from engine.tools import TaskExecutor, TaskResult
from graphrag.embeddings import EmbeddingEngine
from graphrag.graph_store import CapabilityGraph, GraphSnapshot
from graphrag.importance import recompute_importance
from graphrag.predictor import PredictedCandidate, Predictor
from speculation.eligibility import EligibilityPolicy
from speculation.executor import OutcomeEvent, SpeculativeExecutor
from speculation.learning import FeedbackLoop
from speculation.threshold import ThresholdManager

logger = logging.getLogger("foresight.runtime")

# per-workflow bookkeeping of workflows never completed is dropped after this
WORKFLOW_IDLE_TTL = 3600.0


class SpeculativeEngine:

    def __init__(
        self,
        executor: TaskExecutor,
        config: EngineConfig | None = None,
        store: CheckpointStore | None = None,
        known_tasks: Iterable[str] = (),
        background_delivery: bool = True,
    ):
        self.config = (config or EngineConfig()).validate()
        cfg = self.config
        self.store = store

        # startup validation; SpeculationConflict is fatal here
        self.policy = EligibilityPolicy.from_config(cfg.speculation).validate(known_tasks)

        self.graph = CapabilityGraph(
            gamma=cfg.embedding.gamma,
            epsilon=cfg.embedding.epsilon,
            initial_value=cfg.learning.initial_value,
            namespace_separator=cfg.threshold.namespace_separator,
        )
        if store is not None:
            nodes, edges = store.load_graph()
            if nodes or edges:
                self.graph.load_records(nodes, edges)

        self.embeddings = EmbeddingEngine(cfg.embedding)
        self.predictor = Predictor(
            self.graph, self.embeddings, cfg.predictor,
            episode_source=store.episode_stats if store is not None else None,
        )
        self.thresholds = ThresholdManager(cfg.threshold)
        if store is not None:
            saved = store.load_thresholds()
            if saved:
                self.thresholds.restore(saved)
                logger.info("Restored thresholds for %d domains", len(saved))
        self.feedback = FeedbackLoop(self.graph, cfg.learning)

        self.reporter = OutcomeReporter()
        self.reporter.add_sink("threshold", self.thresholds.handle_event)
        self.reporter.add_sink("learning", self.feedback.handle_event)
        if store is not None:
            self.reporter.add_sink("episodes", self._record_episode)

        self.speculator = SpeculativeExecutor(
            executor, self.thresholds, self.policy, cfg.speculation, self.reporter,
        )
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fs_checkpoint")
        self._lock = threading.Lock()
        self._completed = 0
        self._loggers: dict[str, StructuredLogger] = {}
        self._predictions: dict[str, dict[str, float]] = {}
        self._last_seen: dict[str, float] = {}

        if background_delivery:
            self.reporter.start()
        if store is not None and self.graph.stats()["nodes"] > 1:
            # warm start: embeddings from the persisted graph
            self.retrain(background=True)
        logger.info(
            "SpeculativeEngine ready (speculation=%s, scope=%s, allow=%d patterns)",
            "on" if self.speculator.enabled else "off",
            cfg.threshold.scope, len(self.policy.allow),
        )

    # ── Workflow lifecycle ───────────────────────────────────────

    def _slog(self, state: WorkflowState) -> StructuredLogger:
        with self._lock:
            slog = self._loggers.get(state.workflow_id)
            if slog is None:
                slog = StructuredLogger(state.workflow_id, state.domain)
                self._loggers[state.workflow_id] = slog
            self._last_seen[state.workflow_id] = time.time()
        return slog

    def _forget(self, workflow_id: str) -> None:
        with self._lock:
            self._loggers.pop(workflow_id, None)
            self._predictions.pop(workflow_id, None)
            self._last_seen.pop(workflow_id, None)

    def abandon_workflow(self, workflow_id: str, reason: str = "workflow_abandoned") -> list[str]:
        """
        Drop a workflow the driver will not complete: discard its
        in-flight speculations and per-workflow bookkeeping.
        Returns the discarded task ids.
        """
        with self._lock:
            slog = self._loggers.get(workflow_id)
        discarded = self.speculator.discard_all(workflow_id, reason, slog)
        self._forget(workflow_id)
        return discarded

    def evict_idle(self, max_idle: float = WORKFLOW_IDLE_TTL) -> list[str]:
        """Abandon workflows untouched for more than `max_idle` seconds."""
        cutoff = time.time() - max_idle
        with self._lock:
            stale = sorted(w for w, seen in self._last_seen.items() if seen <= cutoff)
        for workflow_id in stale:
            logger.info("Evicting idle workflow %s", workflow_id)
            self.abandon_workflow(workflow_id, "workflow_idle")
        return stale

    def start_workflow(
        self,
        workflow_type: str = "",
        domain: str = "",
        workflow_id: str | None = None,
    ) -> WorkflowState:
        self.evict_idle()
        state = WorkflowState.create(workflow_type, domain, workflow_id)
        self._slog(state).on_workflow_start(resumed=False)
        self._checkpoint(state)
        return state

    def resume_workflow(
        self,
        workflow_id: str,
        workflow_type: str = "",
        domain: str = "",
    ) -> WorkflowState:
        """Latest checkpoint, or a fresh state (cold start) when there is none."""
        state = None
        if self.store is not None:
            try:
                state = self.store.load_checkpoint(workflow_id)
            except CheckpointUnavailable as e:
                logger.info("Checkpoint unavailable for %s, cold start: %s", workflow_id, e)
        if state is None:
            logger.info("No checkpoint for %s, cold start", workflow_id)
            state = WorkflowState.create(workflow_type, domain, workflow_id)
            self._slog(state).on_workflow_start(resumed=False)
            return state
        self._slog(state).on_workflow_start(resumed=True)
        return state

    def on_workflow_complete(self, state: WorkflowState, success: bool = True) -> None:
        slog = self._slog(state)
        self.speculator.discard_all(state.workflow_id, "workflow_complete", slog,
                                    context_hash=state.context_hash())
        state.status = WorkflowStatus.COMPLETED if success else WorkflowStatus.FAILED
        state.updated_at = time.time()
        slog.on_workflow_end(state.status.value, steps_completed=len(state.completed_tasks()))

        self.reporter.flush()
        self._checkpoint(state)

        with self._lock:
            self._completed += 1
            due = self._completed % self.config.learning.retrain_every == 0
        self._forget(state.workflow_id)
        if due:
            self.retrain(background=True)
        self._persist_learned_state()

    # ── Prediction / speculation ─────────────────────────────────

    def predict_next(self, state: WorkflowState) -> list[PredictedCandidate]:
        t0 = time.time()
        candidates = self.predictor.predict(state)
        with self._lock:
            self._predictions[state.workflow_id] = {c.task_id: c.confidence for c in candidates}
        self._slog(state).on_prediction(candidates, (time.time() - t0) * 1000)
        return candidates

    def speculate(
        self,
        state: WorkflowState,
        args_for: Callable[[str], dict[str, Any]] | None = None,
    ) -> list[str]:
        """Predict and launch eligible candidates. Returns launched task ids."""
        self.speculator.sweep_expired()
        candidates = self.predict_next(state)
        if not self.speculator.enabled or not candidates:
            return []
        launched = self.speculator.maybe_launch(
            state.workflow_id, candidates, args_for,
            slog=self._slog(state), context_hash=state.context_hash(),
        )
        return [s.task_id for s in launched]

    def execute_step(
        self,
        state: WorkflowState,
        task_id: str,
        args: dict[str, Any] | None = None,
        report: bool = True,
    ) -> TaskResult:
        """
        Run the real next step: commit a matching speculation or execute
        synchronously. Appends the TaskRecord and Decision, reports the
        outcome and checkpoints.
        """
        args = args or {}
        slog = self._slog(state)
        rec = self.speculator.reconcile(
            state.workflow_id, task_id, args, slog,
            context_hash=state.context_hash(),
            tool_sequence=tuple(state.tool_sequence()),
        )
        result = rec.result

        with self._lock:
            predicted = dict(self._predictions.get(state.workflow_id, {}))
        state.append_task(TaskRecord(
            task_id=task_id,
            status=TaskStatus.SUCCESS if result.ok else TaskStatus.FAILED,
            args=args,
            output=result.output,
            error=result.error,
            latency_ms=result.latency_ms,
            speculative=rec.committed,
        ))
        state.log_decision(Decision(
            step=len(state.decisions),
            chosen=task_id,
            candidates=list(predicted),
            confidence=predicted.get(task_id, 0.0),
            reason=("speculation_commit" if rec.committed
                    else "late_speculation" if rec.late else "sync"),
        ))
        self.graph.record_cost(task_id, result.latency_ms)

        if report:
            top = max(predicted, key=lambda t: (predicted[t], t)) if predicted else None
            self.report_outcome(state, top, task_id, result.ok)
        self._checkpoint(state)
        return result

    # ── Learning ─────────────────────────────────────────────────

    def report_outcome(
        self,
        state: WorkflowState,
        candidate_id: str | None,
        actual: str,
        success: bool,
    ) -> tuple[float, float] | None:
        """
        Apply a real transition to the learning loop: TD update on
        prev→actual (prev = the successful task before `actual`), a
        prioritized trace, and a task_complete episode.
        Returns (old, new) edge value, or None for a first step.
        """
        prev = self._previous_success(state, actual)
        td = None
        if prev is not None:
            td = self.feedback.observe_transition(prev, actual, success)
            self._slog(state).on_td_update(prev, actual, td[0], td[1],
                                           1.0 if success else 0.0)
        else:
            self.graph.add_node(actual)

        with self._lock:
            confidence = self._predictions.get(state.workflow_id, {}).get(actual, 0.0)
        self.feedback.record_trace(actual, state.tool_sequence(), success,
                                   confidence, state.workflow_id)
        self.reporter.submit(OutcomeEvent(
            event_type="task_complete",
            workflow_id=state.workflow_id,
            task_id=actual,
            correct=success,
            confidence=confidence,
            reason=f"predicted={candidate_id}" if candidate_id else "",
            context_hash=state.context_hash(),
            tool_sequence=tuple(state.tool_sequence()),
        ))
        return td

    @staticmethod
    def _previous_success(state: WorkflowState, actual: str) -> str | None:
        idx = None
        for i in range(len(state.tasks) - 1, -1, -1):
            if state.tasks[i].task_id == actual:
                idx = i
                break
        end = len(state.tasks) if idx is None else idx
        for t in reversed(state.tasks[:end]):
            if t.status == TaskStatus.SUCCESS:
                return t.task_id
        return None

    def retrain(self, background: bool = True) -> Future | Any:
        """
        Recompute importance and retrain embeddings on one fresh snapshot.
        In the background both run on the embedding worker; the returned
        Future is None when a retrain is already in progress.
        """
        snapshot = self.graph.snapshot()
        replay = self.feedback.replay_sequences()
        if background:
            return self.embeddings.retrain_async(snapshot, replay, prepare=self._update_importance)
        self._update_importance(snapshot)
        return self.embeddings.retrain(snapshot, replay)

    def _update_importance(self, snapshot: GraphSnapshot) -> None:
        recompute_importance(self.graph, self.config.predictor.pagerank_damping, snapshot=snapshot)

    def flush_outcomes(self) -> int:
        return self.reporter.flush()

    # ── Persistence (fire-and-forget) ────────────────────────────

    def _checkpoint(self, state: WorkflowState) -> None:
        if self.store is None:
            return
        payload = WorkflowState.from_dict(state.to_dict())

        def _write():
            try:
                self.store.save_checkpoint(payload.workflow_id, payload)
            except Exception as e:
                logger.warning("Checkpoint write failed for %s: %s", payload.workflow_id, e)

        self._writer.submit(_write)

    def _persist_learned_state(self) -> None:
        """Graph and thresholds, so a restarted process warm-starts."""
        if self.store is None:
            return
        nodes, edges = self.graph.to_records()
        thresholds = self.thresholds.snapshot()

        def _write():
            try:
                self.store.save_graph(nodes, edges)
            except Exception as e:
                logger.warning("Graph persistence failed: %s", e)
            try:
                self.store.save_thresholds(thresholds)
            except Exception as e:
                logger.warning("Threshold persistence failed: %s", e)

        self._writer.submit(_write)

    def _record_episode(self, event: OutcomeEvent) -> None:
        self.store.record_episode(
            event_type=event.event_type,
            workflow_id=event.workflow_id,
            capability_id=event.task_id,
            context_hash=event.context_hash,
            correct=event.correct,
            data={"confidence": event.confidence, "late": event.late, "reason": event.reason},
        )

    def wait_for_writes(self, timeout: float = 5.0) -> None:
        """Block until queued checkpoint/graph writes are done (tests, shutdown)."""
        self._writer.submit(lambda: None).result(timeout=timeout)

    # ── Introspection ────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "graph": self.graph.stats(),
            "speculation": self.speculator.stats.to_dict(),
            "thresholds": self.thresholds.values(),
            "embedding_version": self.embeddings.table.version,
            "traces": self.feedback.buffer.stats(),
            "outcomes": self.reporter.stats.to_dict(),
            "completed_workflows": self._completed,
        }

    def shutdown(self) -> None:
        self.speculator.shutdown(wait=False)
        self.reporter.stop(final_flush=True)
        self._persist_learned_state()
        self._writer.shutdown(wait=True)
        self.embeddings.shutdown(wait=True)
        logger.info("SpeculativeEngine shut down")

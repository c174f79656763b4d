"""
Foresight — Structured Logging with Correlation IDs

Emits JSON log lines for every speculation lifecycle event so a single
workflow can be followed from prediction through commit/discard to the
learning update. Field names follow OpenTelemetry semantic conventions.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Schema: OTel-compatible (trace_id, span_id, service.name)
  - Levels: DEBUG (full candidate derivations), INFO (lifecycle), WARNING (errors)

Usage:
    from engine.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    slog = StructuredLogger(workflow_id="wf_123", domain="global")
    slog.on_speculation_start("read_file", confidence=0.95, threshold=0.92)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


ROOT_LOGGER = "foresight"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - trace_id: maps to OTel trace ID
      - span_id: maps to OTel span ID
      - service.name: "foresight"
      - service.version: from env
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("FS_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the foresight logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for foresight
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the foresight namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Trace ID Generation
# ═══════════════════════════════════════════════════════════════════

def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate an OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Per-workflow structured event logger.

    Every entry carries the workflow's trace_id; each speculative task
    gets its own span_id so start/commit/discard lines can be joined.
    """

    def __init__(
        self,
        workflow_id: str = "",
        domain: str = "",
        trace_id: str | None = None,
    ):
        self.workflow_id = workflow_id
        self.domain = domain
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("trace")
        self._spans: dict[str, str] = {}  # task_id → span_id

    def _base_fields(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "workflow_id": self.workflow_id,
            "domain": self.domain,
        }

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def _span_for(self, task_id: str) -> dict[str, str]:
        if task_id in self._spans:
            return {"span_id": self._spans[task_id]}
        return {}

    # ── Workflow lifecycle ──────────────────────────────────────

    def on_workflow_start(self, resumed: bool = False) -> None:
        self._emit(logging.INFO, "workflow_start", resumed=resumed)

    def on_workflow_end(self, status: str, steps_completed: int = 0) -> None:
        self._emit(
            logging.INFO, "workflow_end",
            status=status,
            steps_completed=steps_completed,
        )

    # ── Prediction ──────────────────────────────────────────────

    def on_prediction(self, candidates: list[Any], latency_ms: float) -> None:
        self._emit(
            logging.INFO, "prediction",
            candidates=[c.task_id for c in candidates],
            top_confidence=round(candidates[0].confidence, 4) if candidates else None,
            latency_ms=round(latency_ms, 1),
        )
        if self._logger.isEnabledFor(logging.DEBUG):
            self._emit(
                logging.DEBUG, "prediction_full",
                derivations={c.task_id: c.derivation for c in candidates},
            )

    # ── Speculation ─────────────────────────────────────────────

    def on_speculation_start(self, task_id: str, confidence: float,
                             threshold: float) -> None:
        span_id = generate_span_id()
        self._spans[task_id] = span_id
        self._emit(
            logging.INFO, "speculation_start",
            task_id=task_id,
            confidence=round(confidence, 4),
            threshold=round(threshold, 4),
            span_id=span_id,
        )

    def on_speculation_commit(self, task_id: str, waited_ms: float) -> None:
        self._emit(
            logging.INFO, "speculation_commit",
            task_id=task_id,
            waited_ms=round(waited_ms, 1),
            **self._span_for(task_id),
        )

    def on_speculation_discard(self, task_id: str, reason: str) -> None:
        self._emit(
            logging.INFO, "speculation_discard",
            task_id=task_id,
            reason=reason,
            **self._span_for(task_id),
        )

    def on_sync_fallback(self, task_id: str, reason: str) -> None:
        self._emit(logging.INFO, "sync_fallback", task_id=task_id, reason=reason)

    # ── Learning ────────────────────────────────────────────────

    def on_td_update(self, source: str, target: str, old: float,
                     new: float, reward: float) -> None:
        self._emit(
            logging.DEBUG, "td_update",
            source=source, target=target,
            old_value=round(old, 6), new_value=round(new, 6),
            reward=reward,
        )


def log_threshold_adjust(domain: str, old: float, new: float,
                         success_rate: float, action: str) -> None:
    """Threshold changes are process-wide, not tied to a workflow trace."""
    logger = get_logger("threshold")
    record = logger.makeRecord(
        name=logger.name, level=logging.INFO, fn="", lno=0,
        msg="threshold_adjust", args=(), exc_info=None,
    )
    record.structured = {
        "action": "threshold_adjust",
        "domain": domain,
        "old_threshold": round(old, 4),
        "new_threshold": round(new, 4),
        "success_rate": round(success_rate, 4),
        "decision": action,
    }
    if logger.isEnabledFor(logging.INFO):
        logger.handle(record)


def log_retrain(version: int, nodes: int, sequences: int, duration_ms: float) -> None:
    """Embedding table swaps are process-wide as well."""
    logger = get_logger("embedding")
    if not logger.isEnabledFor(logging.INFO):
        return
    record = logger.makeRecord(
        name=logger.name, level=logging.INFO, fn="", lno=0,
        msg="retrain", args=(), exc_info=None,
    )
    record.structured = {
        "action": "retrain",
        "version": version,
        "nodes": nodes,
        "sequences": sequences,
        "duration_ms": round(duration_ms, 1),
    }
    logger.handle(record)

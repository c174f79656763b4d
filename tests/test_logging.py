"""
Foresight — Structured Logging Tests

Tests:
  - JSON lines with OTel-style fields
  - Start / commit / discard share a span_id per speculative task
  - Full derivations only at DEBUG
  - Threshold adjustments and retrains logged process-wide
"""

import io
import json
import logging
import os
import sys
import unittest
from types import SimpleNamespace

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from engine.logging import (
    ROOT_LOGGER, StructuredLogger, configure_logging, generate_span_id, generate_trace_id,
    log_retrain, log_threshold_adjust,
)


class LoggingTestCase(unittest.TestCase):

    level = "INFO"

    def setUp(self):
        self.stream = io.StringIO()
        configure_logging(level=self.level, stream=self.stream)

    def tearDown(self):
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.setLevel(logging.NOTSET)
        root.propagate = True

    def lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines() if line]


class TestStructuredLogger(LoggingTestCase):

    def test_ids(self):
        self.assertEqual(len(generate_trace_id()), 32)
        self.assertEqual(len(generate_span_id()), 16)

    def test_json_fields(self):
        slog = StructuredLogger("wf_1", "docs")
        slog.on_workflow_start()
        entry = self.lines()[0]
        self.assertEqual(entry["action"], "workflow_start")
        self.assertEqual(entry["workflow_id"], "wf_1")
        self.assertEqual(entry["domain"], "docs")
        self.assertEqual(entry["trace_id"], slog.trace_id)
        self.assertEqual(entry["service.name"], "foresight")
        self.assertEqual(entry["level"], "INFO")

    def test_span_joins_speculation_lifecycle(self):
        slog = StructuredLogger("wf_2")
        slog.on_speculation_start("fs:read", confidence=0.951234, threshold=0.92)
        slog.on_speculation_commit("fs:read", waited_ms=1.26)
        slog.on_speculation_start("fs:stat", confidence=0.93, threshold=0.92)
        slog.on_speculation_discard("fs:stat", "mispredicted")
        start, commit, start2, discard = self.lines()
        self.assertEqual(start["span_id"], commit["span_id"])
        self.assertEqual(start2["span_id"], discard["span_id"])
        self.assertNotEqual(start["span_id"], start2["span_id"])
        self.assertEqual(start["confidence"], 0.9512)
        self.assertEqual(discard["reason"], "mispredicted")

    def test_sync_fallback_has_no_span(self):
        StructuredLogger("wf_3").on_sync_fallback("fs:read", "no_speculation")
        entry = self.lines()[0]
        self.assertEqual(entry["action"], "sync_fallback")
        self.assertNotIn("span_id", entry)

    def test_prediction_summary_only_at_info(self):
        cand = SimpleNamespace(task_id="fs:read", confidence=0.8, derivation={"path": 0.4})
        StructuredLogger("wf_4").on_prediction([cand], latency_ms=3.21)
        entries = self.lines()
        self.assertEqual([e["action"] for e in entries], ["prediction"])
        self.assertEqual(entries[0]["candidates"], ["fs:read"])
        self.assertEqual(entries[0]["top_confidence"], 0.8)

    def test_td_update_suppressed_at_info(self):
        StructuredLogger("wf_5").on_td_update("a", "b", 0.5, 0.55, 1.0)
        self.assertEqual(self.lines(), [])


class TestDebugLevel(LoggingTestCase):

    level = "DEBUG"

    def test_derivations_at_debug(self):
        cand = SimpleNamespace(task_id="fs:read", confidence=0.8, derivation={"path": 0.4})
        StructuredLogger("wf_6").on_prediction([cand], latency_ms=1.0)
        entries = self.lines()
        self.assertEqual([e["action"] for e in entries], ["prediction", "prediction_full"])
        self.assertEqual(entries[1]["derivations"], {"fs:read": {"path": 0.4}})

    def test_td_update(self):
        StructuredLogger("wf_7").on_td_update("a", "b", 0.5, 0.55, 1.0)
        entry = self.lines()[0]
        self.assertEqual((entry["old_value"], entry["new_value"]), (0.5, 0.55))


class TestProcessWideEvents(LoggingTestCase):

    def test_threshold_adjust(self):
        log_threshold_adjust("fs", 0.92, 0.90, 0.95, "lower")
        entry = self.lines()[0]
        self.assertEqual(entry["logger"], "foresight.threshold")
        self.assertEqual(entry["decision"], "lower")
        self.assertEqual(entry["new_threshold"], 0.9)

    def test_retrain(self):
        log_retrain(3, nodes=12, sequences=360, duration_ms=42.04)
        entry = self.lines()[0]
        self.assertEqual(entry["action"], "retrain")
        self.assertEqual((entry["version"], entry["nodes"]), (3, 12))
        self.assertEqual(entry["duration_ms"], 42.0)


if __name__ == "__main__":
    unittest.main()

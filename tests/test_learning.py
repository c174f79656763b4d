"""
Foresight — Learning Feedback Loop Tests

Tests:
  - TD update: α=0.1, 0.5 → 0.55 on reward 1.0
  - observe_transition bumps co-occurrence and TD value together
  - Trace priority = |predicted confidence − outcome|
  - Buffer evicts lowest priority first, oldest on ties
  - Sampling is without replacement and favours high priority
  - Speculation outcome events become traces
"""

import os
import sys
import unittest
from collections import Counter
from types import SimpleNamespace

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from engine.config import LearningConfig
from graphrag.graph_store import CapabilityGraph
from speculation.learning import ExecutionTrace, FeedbackLoop, Outcome, TraceBuffer, td_update


def _trace(cap, priority, seq=("a", "b")):
    return ExecutionTrace(capability_id=cap, tool_sequence=tuple(seq),
                          outcome=Outcome.SUCCESS, priority=priority)


class TestTDUpdate(unittest.TestCase):

    def test_single_step(self):
        self.assertAlmostEqual(td_update(0.5, 1.0, 0.1), 0.55)
        self.assertAlmostEqual(td_update(0.5, 0.0, 0.1), 0.45)

    def test_converges_toward_reward(self):
        v = 0.5
        for _ in range(200):
            v = td_update(v, 1.0, 0.1)
        self.assertAlmostEqual(v, 1.0, places=6)

    def test_observe_transition(self):
        g = CapabilityGraph()
        loop = FeedbackLoop(g, LearningConfig(learning_rate=0.1))
        old, new = loop.observe_transition("plan", "search", success=True)
        self.assertAlmostEqual(old, 0.5)
        self.assertAlmostEqual(new, 0.55)
        edge = g.get_edge("plan", "search")
        self.assertEqual((edge.weight, edge.count, edge.successes), (1.0, 1, 1))

        old, new = loop.observe_transition("plan", "search", success=False)
        self.assertAlmostEqual(old, 0.55)
        self.assertAlmostEqual(new, 0.495)
        edge = g.get_edge("plan", "search")
        self.assertEqual((edge.weight, edge.count, edge.successes), (2.0, 2, 1))


class TestTraceBuffer(unittest.TestCase):

    def test_priority(self):
        self.assertAlmostEqual(ExecutionTrace.compute_priority(0.9, Outcome.FAILURE), 0.9)
        self.assertAlmostEqual(ExecutionTrace.compute_priority(0.9, Outcome.SUCCESS), 0.1)

    def test_evicts_lowest_priority(self):
        buf = TraceBuffer(capacity=3)
        for cap, p in (("x", 0.1), ("y", 0.5), ("z", 0.9)):
            buf.add(_trace(cap, p))
        evicted = buf.add(_trace("w", 0.3))
        self.assertEqual(evicted.capability_id, "x")
        self.assertEqual(sorted(t.capability_id for t in buf.traces()), ["w", "y", "z"])

    def test_evicts_oldest_on_tie(self):
        buf = TraceBuffer(capacity=2)
        buf.add(_trace("first", 0.5))
        buf.add(_trace("second", 0.5))
        evicted = buf.add(_trace("third", 0.5))
        self.assertEqual(evicted.capability_id, "first")

    def test_new_low_priority_trace_can_be_the_victim(self):
        buf = TraceBuffer(capacity=2)
        buf.add(_trace("a", 0.8))
        buf.add(_trace("b", 0.9))
        evicted = buf.add(_trace("c", 0.0))
        self.assertEqual(evicted.capability_id, "c")
        self.assertEqual(len(buf), 2)

    def test_update_priority(self):
        buf = TraceBuffer(capacity=2)
        t = _trace("a", 0.1)
        buf.add(t)
        buf.add(_trace("b", 0.5))
        self.assertTrue(buf.update_priority(t.trace_id, 0.95))
        self.assertFalse(buf.update_priority("missing", 0.5))
        self.assertEqual(buf.add(_trace("c", 0.6)).capability_id, "b")

    def test_sample_without_replacement(self):
        buf = TraceBuffer(capacity=10, seed=3)
        for i in range(4):
            buf.add(_trace(f"t{i}", 0.25 * i))
        picked = buf.sample(10)
        self.assertEqual(len(picked), 4)
        self.assertEqual(len({t.trace_id for t in picked}), 4)
        self.assertEqual(buf.sample(0), [])
        self.assertEqual(TraceBuffer(capacity=1).sample(3), [])

    def test_sample_favours_high_priority(self):
        buf = TraceBuffer(capacity=10, seed=11)
        buf.add(_trace("surprising", 1.0))
        buf.add(_trace("boring", 0.0))
        counts = Counter(buf.sample(1, alpha=1.0)[0].capability_id for _ in range(300))
        self.assertGreater(counts["surprising"], 250)
        # floor keeps zero-priority traces reachable in principle
        self.assertGreater(counts["surprising"] + counts["boring"], 0)

    def test_replay_sequences_skip_singletons(self):
        buf = TraceBuffer(capacity=5, seed=1)
        buf.add(_trace("a", 0.5, seq=("a",)))
        buf.add(_trace("b", 0.5, seq=("a", "b")))
        self.assertEqual(buf.replay_sequences(5), [["a", "b"]])

    def test_capacity_validation(self):
        with self.assertRaises(ValueError):
            TraceBuffer(capacity=0)


class TestFeedbackLoopEvents(unittest.TestCase):

    def test_speculation_outcome_becomes_trace(self):
        loop = FeedbackLoop(CapabilityGraph(), LearningConfig(trace_buffer_size=10))
        loop.handle_event(SimpleNamespace(
            event_type="speculation_outcome", workflow_id="wf", task_id="fs:read",
            correct=False, confidence=0.93, tool_sequence=("fs:list",),
        ))
        loop.handle_event(SimpleNamespace(event_type="task_complete"))
        traces = loop.buffer.traces()
        self.assertEqual(len(traces), 1)
        self.assertEqual(traces[0].tool_sequence, ("fs:list", "fs:read"))
        self.assertAlmostEqual(traces[0].priority, 0.93)
        self.assertEqual(traces[0].outcome, Outcome.FAILURE)


if __name__ == "__main__":
    unittest.main()

"""
Foresight — Adaptive Threshold Tests

Tests:
  - 46/50 correct lowers 0.92 → 0.90
  - 35/50 correct raises 0.92 → 0.94, then clamps at 0.95
  - In-band success rate holds
  - Window resets after every decision
  - Threshold stays in [min, max] for any outcome sequence
  - Namespace scope keeps independent states
  - Out-of-band restore is re-clamped with a warning
  - Reporter sink only consumes speculation outcomes
"""

import os
import random
import sys
import unittest
from types import SimpleNamespace

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from engine.config import ThresholdConfig
from speculation.threshold import AdaptiveThreshold, ThresholdManager, ThresholdOutOfBand


def _feed(th, correct, total):
    decision = None
    for i in range(total):
        decision = th.record(i < correct)
    return decision


class TestAdaptiveThreshold(unittest.TestCase):

    def test_high_success_lowers(self):
        th = AdaptiveThreshold(ThresholdConfig())
        decision = _feed(th, 46, 50)
        self.assertEqual(decision.action, "lower")
        self.assertAlmostEqual(decision.success_rate, 0.92)
        self.assertEqual(th.value, 0.90)

    def test_low_success_raises_and_clamps(self):
        th = AdaptiveThreshold(ThresholdConfig())
        decision = _feed(th, 35, 50)
        self.assertEqual(decision.action, "raise")
        self.assertEqual(th.value, 0.94)
        _feed(th, 35, 50)
        self.assertEqual(th.value, 0.95)
        _feed(th, 35, 50)
        self.assertEqual(th.value, 0.95)

    def test_in_band_holds(self):
        th = AdaptiveThreshold(ThresholdConfig())
        decision = _feed(th, 43, 50)
        self.assertEqual(decision.action, "hold")
        self.assertEqual(th.value, 0.92)

    def test_boundary_rates_hold(self):
        th = AdaptiveThreshold(ThresholdConfig())
        self.assertEqual(_feed(th, 45, 50).action, "hold")   # exactly 0.90
        self.assertEqual(_feed(th, 40, 50).action, "hold")   # exactly 0.80

    def test_no_decision_until_window_full(self):
        th = AdaptiveThreshold(ThresholdConfig())
        for _ in range(49):
            self.assertIsNone(th.record(True))
        self.assertEqual(len(th.window), 49)
        self.assertIsNotNone(th.record(True))
        self.assertEqual(th.window, [])

    def test_floor_at_min(self):
        th = AdaptiveThreshold(ThresholdConfig(window_size=5))
        for _ in range(30):
            _feed(th, 5, 5)
        self.assertEqual(th.value, 0.70)

    def test_stays_in_band_for_any_sequence(self):
        cfg = ThresholdConfig(window_size=5, step=0.07)
        rng = random.Random(1234)
        th = AdaptiveThreshold(cfg)
        for _ in range(2000):
            th.record(rng.random() < rng.choice((0.2, 0.5, 0.95)))
            self.assertGreaterEqual(th.value, cfg.min)
            self.assertLessEqual(th.value, cfg.max)

    def test_restore_out_of_band_is_clamped(self):
        th = AdaptiveThreshold(ThresholdConfig())
        with self.assertWarns(ThresholdOutOfBand):
            with self.assertLogs("foresight.threshold", level="WARNING"):
                th.restore({"value": 1.5, "window": [True, False]})
        self.assertEqual(th.value, 0.95)
        self.assertEqual(th.window, [True, False])

    def test_snapshot_restore(self):
        th = AdaptiveThreshold(ThresholdConfig())
        _feed(th, 35, 50)
        th.record(True)
        other = AdaptiveThreshold(ThresholdConfig())
        other.restore(th.snapshot())
        self.assertEqual(other.value, th.value)
        self.assertEqual(other.window, [True])


class TestThresholdManager(unittest.TestCase):

    def test_global_scope_shares_state(self):
        mgr = ThresholdManager(ThresholdConfig(window_size=2))
        mgr.record("fs:read", True)
        decision = mgr.record("db:query", True)
        self.assertEqual(decision.domain, "global")
        self.assertEqual(mgr.current("anything"), 0.90)

    def test_namespace_scope_is_independent(self):
        mgr = ThresholdManager(ThresholdConfig(window_size=2, scope="namespace"))
        mgr.record("fs:read", True)
        mgr.record("fs:list", True)
        mgr.record("db:query", False)
        mgr.record("db:query", False)
        self.assertEqual(mgr.current("fs:stat"), 0.90)
        self.assertEqual(mgr.current("db:fetch"), 0.94)
        self.assertEqual(mgr.values(), {"db": 0.94, "fs": 0.90})
        self.assertEqual([d.domain for d in mgr.history()], ["fs", "db"])

    def test_handle_event_filters_type(self):
        mgr = ThresholdManager(ThresholdConfig(window_size=1))
        mgr.handle_event(SimpleNamespace(event_type="task_complete", task_id="a", correct=False))
        self.assertEqual(mgr.history(), [])
        mgr.handle_event(SimpleNamespace(event_type="speculation_outcome",
                                         task_id="a", correct=False))
        self.assertEqual(mgr.current("a"), 0.94)


if __name__ == "__main__":
    unittest.main()

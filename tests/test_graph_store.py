"""
Foresight — Capability Graph Store Tests

Tests:
  - Normalized weight formula and epsilon floor
  - Welford running mean/std matches a full recomputation
  - Unknown node ids are auto-created, never raise
  - Negative upsert delta rejected
  - Snapshots are isolated from later mutation
  - TD value updates and success counters
  - Decay rebuilds statistics
  - Record round-trip for persistence
  - Concurrent upserts on one edge lose no updates
  - PageRank importance
"""

import math
import os
import statistics
import sys
import threading
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from graphrag.graph_store import (
    CapabilityGraph, GraphSnapshot, RunningStats, normalize_weight, namespace_of,
)
from graphrag.importance import compute_importance, recompute_importance


class TestNormalizeWeight(unittest.TestCase):

    def test_scenario_a_values(self):
        # A→B weight 10, source mean 5, std 2, gamma 1
        self.assertAlmostEqual(normalize_weight(10, 5, 2, gamma=1.0), 10 / 7)
        self.assertAlmostEqual(normalize_weight(1, 5, 2, gamma=1.0), 1 / 7)

    def test_gamma_scales_std(self):
        self.assertAlmostEqual(normalize_weight(10, 5, 2, gamma=0.0), 2.0)
        self.assertAlmostEqual(normalize_weight(10, 5, 2, gamma=2.5), 1.0)

    def test_epsilon_floor_never_divides_by_zero(self):
        w = normalize_weight(3.0, 0.0, 0.0, gamma=1.0, epsilon=1e-9)
        self.assertTrue(math.isfinite(w))
        self.assertGreater(w, 0)
        self.assertEqual(normalize_weight(0.0, 0.0, 0.0), 0.0)

    def test_never_negative(self):
        for weight in (0.0, 0.5, 3.0, 100.0):
            for mean in (0.0, 1.0, 50.0):
                for std in (0.0, 2.0):
                    self.assertGreaterEqual(normalize_weight(weight, mean, std), 0.0)


class TestRunningStats(unittest.TestCase):

    def test_matches_population_stats(self):
        rs = RunningStats()
        values = [3.0, 5.0, 7.0, 11.0]
        for v in values:
            rs.add(v)
        self.assertAlmostEqual(rs.mean, statistics.fmean(values))
        self.assertAlmostEqual(rs.std, statistics.pstdev(values))

    def test_replace(self):
        rs = RunningStats()
        for v in (3.0, 5.0, 7.0):
            rs.add(v)
        rs.replace(3.0, 7.0)
        self.assertAlmostEqual(rs.mean, statistics.fmean([7.0, 5.0, 7.0]))
        self.assertAlmostEqual(rs.std, statistics.pstdev([7.0, 5.0, 7.0]))

    def test_remove_last_resets(self):
        rs = RunningStats()
        rs.add(4.0)
        rs.remove(4.0)
        self.assertEqual((rs.n, rs.mean, rs.std), (0, 0.0, 0.0))


class TestCapabilityGraph(unittest.TestCase):

    def setUp(self):
        self.graph = CapabilityGraph()

    def test_incremental_stats_match_recomputation(self):
        g = self.graph
        g.upsert_edge("A", "B", 3)
        g.upsert_edge("A", "C", 5)
        g.upsert_edge("A", "D", 7)
        g.upsert_edge("A", "B", 4)      # B: 3 → 7

        weights = [e.weight for e in g.neighbors("A")]
        self.assertEqual(weights, [7.0, 5.0, 7.0])
        node = g.get_node("A")
        self.assertAlmostEqual(node.mean, statistics.fmean(weights))
        self.assertAlmostEqual(node.std, statistics.pstdev(weights))
        self.assertEqual(node.out_degree, 3)

    def test_normalized_weight_uses_source_stats(self):
        g = self.graph
        g.upsert_edge("A", "B", 10)
        g.upsert_edge("A", "C", 1)
        node = g.get_node("A")
        expected = 10 / (node.mean + node.std)
        self.assertAlmostEqual(g.normalized_weight("A", "B"), expected)
        self.assertEqual(g.normalized_weight("A", "missing"), 0.0)
        self.assertEqual(g.normalized_weight("missing", "A"), 0.0)

    def test_unknown_nodes_auto_created(self):
        edge = self.graph.upsert_edge("fs:read", "fs:parse")
        self.assertTrue(self.graph.has_node("fs:read"))
        self.assertTrue(self.graph.has_node("fs:parse"))
        self.assertEqual(edge.weight, 1.0)
        self.assertEqual(edge.count, 1)
        self.assertEqual(self.graph.get_node("fs:read").namespace, "fs")

    def test_negative_delta_rejected(self):
        with self.assertRaises(ValueError):
            self.graph.upsert_edge("A", "B", -1.0)

    def test_weights_only_grow_through_upserts(self):
        g = self.graph
        last = 0.0
        for delta in (1.0, 0.0, 2.5, 0.1):
            w = g.upsert_edge("A", "B", delta).weight
            self.assertGreaterEqual(w, last)
            last = w

    def test_neighbors_sorted_and_copied(self):
        g = self.graph
        g.upsert_edge("A", "C")
        g.upsert_edge("A", "B")
        edges = g.neighbors("A")
        self.assertEqual([e.target for e in edges], ["B", "C"])
        g.upsert_edge("A", "B", 5)
        self.assertEqual(edges[0].weight, 1.0)
        self.assertEqual(g.neighbors("nope"), [])

    def test_snapshot_isolated(self):
        g = self.graph
        g.upsert_edge("A", "B", 2)
        snap = g.snapshot()
        g.upsert_edge("A", "B", 5)
        g.upsert_edge("A", "C", 1)
        self.assertIsInstance(snap, GraphSnapshot)
        self.assertEqual(snap.edge("A", "B").weight, 2.0)
        self.assertIsNone(snap.edge("A", "C"))
        self.assertEqual(snap.node_ids(), ("A", "B"))
        self.assertEqual(snap.in_neighbors("B"), ("A",))
        with self.assertRaises(TypeError):
            snap.nodes["X"] = None

    def test_apply_td(self):
        g = self.graph
        g.upsert_edge("A", "B")
        old, new = g.apply_td("A", "B", reward=1.0, alpha=0.1, success=True)
        self.assertAlmostEqual(old, 0.5)
        self.assertAlmostEqual(new, 0.55)
        edge = g.get_edge("A", "B")
        self.assertEqual(edge.successes, 1)
        self.assertEqual(edge.weight, 1.0)

    def test_apply_td_creates_missing_edge(self):
        old, new = self.graph.apply_td("X", "Y", reward=0.0, alpha=0.5)
        self.assertAlmostEqual(old, 0.5)
        self.assertAlmostEqual(new, 0.25)
        self.assertEqual(self.graph.get_edge("X", "Y").weight, 0.0)

    def test_deprecate_and_cost(self):
        g = self.graph
        g.add_node("A")
        g.deprecate("A")
        g.record_cost("A", 10.0)
        g.record_cost("A", 20.0)
        node = g.get_node("A")
        self.assertTrue(node.deprecated)
        self.assertAlmostEqual(node.cost_ms, 15.0)
        self.assertEqual(g.stats(), {"nodes": 1, "edges": 0, "deprecated": 1})

    def test_decay(self):
        g = self.graph
        g.upsert_edge("A", "B", 4)
        g.upsert_edge("A", "C", 8)
        g.decay(0.5)
        self.assertEqual([e.weight for e in g.neighbors("A")], [2.0, 4.0])
        self.assertAlmostEqual(g.get_node("A").mean, 3.0)
        with self.assertRaises(ValueError):
            g.decay(0.0)

    def test_records_round_trip(self):
        g = self.graph
        g.upsert_edge("A", "B", 3)
        g.apply_td("A", "B", 1.0, 0.1, success=True)
        g.upsert_edge("B", "C", 1)
        g.deprecate("C")
        g.set_importance({"A": 0.5, "B": 0.3, "C": 0.2})
        nodes, edges = g.to_records()

        restored = CapabilityGraph()
        restored.load_records(nodes, edges)
        self.assertEqual(restored.get_edge("A", "B"), g.get_edge("A", "B"))
        self.assertEqual(restored.get_edge("B", "C"), g.get_edge("B", "C"))
        self.assertTrue(restored.get_node("C").deprecated)
        self.assertAlmostEqual(restored.get_node("A").mean, g.get_node("A").mean)
        self.assertAlmostEqual(restored.max_importance(), 0.5)

    def test_concurrent_upserts_lose_nothing(self):
        g = self.graph

        def worker():
            for _ in range(250):
                g.upsert_edge("A", "B")
                g.upsert_edge("A", "C", 2)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(g.get_edge("A", "B").count, 2000)
        self.assertEqual(g.get_edge("A", "B").weight, 2000.0)
        self.assertEqual(g.get_edge("A", "C").weight, 4000.0)
        self.assertAlmostEqual(g.get_node("A").mean, 3000.0)
        self.assertAlmostEqual(g.get_node("A").std, 1000.0)

    def test_namespace_of(self):
        self.assertEqual(namespace_of("db:query"), "db")
        self.assertEqual(namespace_of("plain"), "default")


class TestImportance(unittest.TestCase):

    def test_empty_graph(self):
        self.assertEqual(compute_importance(CapabilityGraph().snapshot()), {})

    def test_scores_sum_to_one_and_favor_hub(self):
        g = CapabilityGraph()
        for src in ("A", "B", "C", "D"):
            g.upsert_edge(src, "HUB", 3)
        g.upsert_edge("HUB", "A")
        scores = compute_importance(g.snapshot())
        self.assertAlmostEqual(sum(scores.values()), 1.0, places=6)
        self.assertEqual(max(scores, key=scores.get), "HUB")

    def test_recompute_writes_back(self):
        g = CapabilityGraph()
        g.upsert_edge("A", "B")
        g.upsert_edge("B", "A")
        scores = recompute_importance(g)
        self.assertAlmostEqual(g.get_node("A").importance, scores["A"])
        self.assertAlmostEqual(g.max_importance(), max(scores.values()))


if __name__ == "__main__":
    unittest.main()

"""
Foresight — Capability Graph Store

Weighted directed graph of capability/tool nodes. An edge A→B records
that B was observed right after A in some workflow.

Per edge:
  weight     raw co-occurrence weight, only grows through upsert_edge
  count      number of observed co-occurrences
  successes  how many of those transitions succeeded
  value      temporal-difference estimate in [0, 1], owned by the
             learning loop (apply_td)

Per node, the running mean / population std of its outgoing edge
weights is kept with Welford's algorithm so that upsert_edge is O(1):
changing one edge weight is a remove-old + add-new on the statistics.
normalized_weight(s, t) = weight / max(mean(s) + gamma·std(s), epsilon).

Concurrency:
  - one short-held lock per node guards that node's stats and out-edges
  - a registry lock guards node creation only
  - no operation ever holds two node locks at once
  - snapshot() copies node by node (copy-on-read) into an immutable
    GraphSnapshot for the expensive paths (walks, PageRank)

Unknown node ids are created on first reference and never raise.
Nodes are never deleted, only deprecated.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

logger = logging.getLogger("foresight.graph")

DEFAULT_EPSILON = 1e-9


# ═══════════════════════════════════════════════════════════════════
# Pure Functions
# ═══════════════════════════════════════════════════════════════════

def normalize_weight(
    weight: float,
    mean: float,
    std: float,
    gamma: float = 1.0,
    epsilon: float = DEFAULT_EPSILON,
) -> float:
    """weight / max(mean + gamma·std, epsilon). Never negative, never divides by zero."""
    return max(weight, 0.0) / max(mean + gamma * std, epsilon)


def namespace_of(node_id: str, separator: str = ":") -> str:
    if separator and separator in node_id:
        return node_id.split(separator, 1)[0]
    return "default"


class RunningStats:
    """Welford mean/variance over a multiset that supports O(1) add, remove, replace."""

    __slots__ = ("n", "mean", "m2")

    def __init__(self):
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def add(self, x: float) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (x - self.mean)

    def remove(self, x: float) -> None:
        if self.n <= 1:
            self.n, self.mean, self.m2 = 0, 0.0, 0.0
            return
        new_mean = (self.n * self.mean - x) / (self.n - 1)
        self.m2 -= (x - self.mean) * (x - new_mean)
        self.mean = new_mean
        self.n -= 1
        if self.m2 < 0.0:
            # float drift
            self.m2 = 0.0

    def replace(self, old: float, new: float) -> None:
        self.remove(old)
        self.add(new)

    @property
    def std(self) -> float:
        if self.n == 0:
            return 0.0
        return math.sqrt(max(self.m2 / self.n, 0.0))


# ═══════════════════════════════════════════════════════════════════
# Public Views (immutable)
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CapabilityNode:
    node_id: str
    namespace: str
    mean: float = 0.0               # of outgoing edge weights
    std: float = 0.0
    out_degree: int = 0
    importance: float = 0.0         # PageRank-like, recomputed periodically
    deprecated: bool = False
    cost_ms: float = 0.0            # running mean execution latency
    created_at: float = 0.0


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    weight: float = 0.0
    count: int = 0
    successes: int = 0
    value: float = 0.5


# ═══════════════════════════════════════════════════════════════════
# Internal Mutable State
# ═══════════════════════════════════════════════════════════════════

class _NodeState:
    __slots__ = ("node_id", "namespace", "stats", "out", "incoming", "importance",
                 "deprecated", "cost_ms", "cost_samples", "created_at", "lock")

    def __init__(self, node_id: str, namespace: str):
        self.node_id = node_id
        self.namespace = namespace
        self.stats = RunningStats()
        self.out: dict[str, _EdgeState] = {}
        self.incoming: set[str] = set()
        self.importance = 0.0
        self.deprecated = False
        self.cost_ms = 0.0
        self.cost_samples = 0
        self.created_at = time.time()
        self.lock = threading.Lock()

    def view(self) -> CapabilityNode:
        # caller holds self.lock
        return CapabilityNode(
            node_id=self.node_id,
            namespace=self.namespace,
            mean=self.stats.mean,
            std=self.stats.std,
            out_degree=len(self.out),
            importance=self.importance,
            deprecated=self.deprecated,
            cost_ms=self.cost_ms,
            created_at=self.created_at,
        )


class _EdgeState:
    __slots__ = ("weight", "count", "successes", "value")

    def __init__(self, value: float):
        self.weight = 0.0
        self.count = 0
        self.successes = 0
        self.value = value

    def view(self, source: str, target: str) -> Edge:
        return Edge(source, target, self.weight, self.count, self.successes, self.value)


# ═══════════════════════════════════════════════════════════════════
# Snapshot
# ═══════════════════════════════════════════════════════════════════

class GraphSnapshot:
    """
    Point-in-time, read-only copy of the graph.

    Consistent per node (each node's stats and out-edges were copied
    under that node's lock); there is no global ordering across nodes.
    """

    def __init__(
        self,
        nodes: dict[str, CapabilityNode],
        out: dict[str, dict[str, Edge]],
        incoming: dict[str, frozenset[str]],
        taken_at: float | None = None,
    ):
        self.nodes: Mapping[str, CapabilityNode] = MappingProxyType(dict(nodes))
        self._out = MappingProxyType({k: MappingProxyType(dict(v)) for k, v in out.items()})
        self._incoming = MappingProxyType(dict(incoming))
        self.taken_at = taken_at if taken_at is not None else time.time()

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    @property
    def edge_count(self) -> int:
        return sum(len(v) for v in self._out.values())

    def node_ids(self) -> tuple[str, ...]:
        """Sorted, so iteration order never depends on insertion order."""
        return tuple(sorted(self.nodes))

    def edge(self, source: str, target: str) -> Edge | None:
        return self._out.get(source, {}).get(target)

    # same reader surface as CapabilityGraph, so the predictor accepts either
    def get_edge(self, source: str, target: str) -> Edge | None:
        return self.edge(source, target)

    def get_node(self, node_id: str) -> CapabilityNode | None:
        return self.nodes.get(node_id)

    def max_importance(self) -> float:
        return max((n.importance for n in self.nodes.values()), default=0.0)

    def has_edge(self, source: str, target: str) -> bool:
        return target in self._out.get(source, {})

    def neighbors(self, node_id: str) -> tuple[Edge, ...]:
        out = self._out.get(node_id, {})
        return tuple(out[t] for t in sorted(out))

    def in_neighbors(self, node_id: str) -> tuple[str, ...]:
        return tuple(sorted(self._incoming.get(node_id, ())))

    def edges(self) -> Iterable[Edge]:
        for s in sorted(self._out):
            yield from self.neighbors(s)

    def normalized_weight(self, source: str, target: str, gamma: float = 1.0,
                          epsilon: float = DEFAULT_EPSILON) -> float:
        e = self.edge(source, target)
        node = self.nodes.get(source)
        if e is None or node is None:
            return 0.0
        return normalize_weight(e.weight, node.mean, node.std, gamma, epsilon)


# ═══════════════════════════════════════════════════════════════════
# Capability Graph Store
# ═══════════════════════════════════════════════════════════════════

class CapabilityGraph:
    """Concurrency-safe capability co-occurrence graph."""

    def __init__(
        self,
        gamma: float = 1.0,
        epsilon: float = DEFAULT_EPSILON,
        initial_value: float = 0.5,
        namespace_separator: str = ":",
    ):
        self.gamma = gamma
        self.epsilon = epsilon
        self.initial_value = initial_value
        self.namespace_separator = namespace_separator
        self._nodes: dict[str, _NodeState] = {}
        self._registry_lock = threading.Lock()
        self._max_importance = 0.0

    # ── Nodes ────────────────────────────────────────────────────

    def _node(self, node_id: str, auto_created: bool = False) -> _NodeState:
        node = self._nodes.get(node_id)
        if node is not None:
            return node
        with self._registry_lock:
            node = self._nodes.get(node_id)
            if node is None:
                node = _NodeState(node_id, namespace_of(node_id, self.namespace_separator))
                self._nodes[node_id] = node
                if auto_created:
                    logger.debug("Auto-created capability node %s on first reference", node_id)
        return node

    def add_node(self, node_id: str) -> CapabilityNode:
        node = self._node(node_id)
        with node.lock:
            return node.view()

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> CapabilityNode | None:
        node = self._nodes.get(node_id)
        if node is None:
            return None
        with node.lock:
            return node.view()

    def node_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._nodes)

    def deprecate(self, node_id: str) -> None:
        node = self._node(node_id)
        with node.lock:
            node.deprecated = True
        logger.info("Capability %s deprecated", node_id)

    def record_cost(self, node_id: str, latency_ms: float) -> None:
        node = self._node(node_id, auto_created=True)
        with node.lock:
            node.cost_samples += 1
            node.cost_ms += (latency_ms - node.cost_ms) / node.cost_samples

    def set_importance(self, scores: Mapping[str, float]) -> None:
        for node_id, score in scores.items():
            node = self._node(node_id)
            with node.lock:
                node.importance = float(score)
        self._max_importance = max(scores.values(), default=0.0)

    def max_importance(self) -> float:
        return self._max_importance

    # ── Edges ────────────────────────────────────────────────────

    def upsert_edge(self, source: str, target: str, delta: float = 1.0) -> Edge:
        """
        Add `delta` to the raw weight of source→target, creating either
        node and the edge if needed. O(1).
        """
        if delta < 0:
            raise ValueError(f"upsert_edge delta must be >= 0, got {delta}")

        src = self._node(source, auto_created=True)
        dst = self._node(target, auto_created=True)

        with src.lock:
            edge = src.out.get(target)
            if edge is None:
                edge = _EdgeState(self.initial_value)
                edge.weight = delta
                src.out[target] = edge
                src.stats.add(delta)
            else:
                old = edge.weight
                edge.weight = old + delta
                src.stats.replace(old, edge.weight)
            edge.count += 1
            view = edge.view(source, target)

        with dst.lock:
            dst.incoming.add(source)
        return view

    def apply_td(
        self,
        source: str,
        target: str,
        reward: float,
        alpha: float,
        success: bool | None = None,
    ) -> tuple[float, float]:
        """
        value ← value + alpha·(reward − value) on source→target.
        Creates a zero-weight edge if the transition was never upserted.
        Returns (old_value, new_value).
        """
        src = self._node(source, auto_created=True)
        dst = self._node(target, auto_created=True)
        created = False
        with src.lock:
            edge = src.out.get(target)
            if edge is None:
                edge = _EdgeState(self.initial_value)
                src.out[target] = edge
                src.stats.add(0.0)
                created = True
            old = edge.value
            edge.value = old + alpha * (reward - old)
            if success:
                edge.successes += 1
            new = edge.value
        if created:
            with dst.lock:
                dst.incoming.add(source)
        return old, new

    def get_edge(self, source: str, target: str) -> Edge | None:
        node = self._nodes.get(source)
        if node is None:
            return None
        with node.lock:
            edge = node.out.get(target)
            return edge.view(source, target) if edge is not None else None

    def neighbors(self, node_id: str) -> list[Edge]:
        """Outgoing edges, sorted by target id."""
        node = self._nodes.get(node_id)
        if node is None:
            return []
        with node.lock:
            return [node.out[t].view(node_id, t) for t in sorted(node.out)]

    def normalized_weight(self, source: str, target: str) -> float:
        node = self._nodes.get(source)
        if node is None:
            return 0.0
        with node.lock:
            edge = node.out.get(target)
            if edge is None:
                return 0.0
            return normalize_weight(edge.weight, node.stats.mean, node.stats.std,
                                    self.gamma, self.epsilon)

    def decay(self, factor: float) -> None:
        """Bounded-growth pass: scale every raw weight by factor in (0, 1]. O(E)."""
        if not (0.0 < factor <= 1.0):
            raise ValueError(f"decay factor must be in (0, 1], got {factor}")
        for node_id in self.node_ids():
            node = self._nodes[node_id]
            with node.lock:
                node.stats = RunningStats()
                for edge in node.out.values():
                    edge.weight *= factor
                    node.stats.add(edge.weight)
        logger.info("Applied weight decay factor=%.3f to %d nodes", factor, len(self._nodes))

    # ── Snapshot / Stats ─────────────────────────────────────────

    def snapshot(self) -> GraphSnapshot:
        nodes: dict[str, CapabilityNode] = {}
        out: dict[str, dict[str, Edge]] = {}
        incoming: dict[str, frozenset[str]] = {}
        for node_id in self.node_ids():
            node = self._nodes[node_id]
            with node.lock:
                nodes[node_id] = node.view()
                out[node_id] = {t: e.view(node_id, t) for t, e in node.out.items()}
                incoming[node_id] = frozenset(node.incoming)
        return GraphSnapshot(nodes, out, incoming)

    def stats(self) -> dict[str, int]:
        snap = self.snapshot()
        return {
            "nodes": len(snap),
            "edges": snap.edge_count,
            "deprecated": sum(1 for n in snap.nodes.values() if n.deprecated),
        }

    # ── Persistence records ──────────────────────────────────────

    def to_records(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        snap = self.snapshot()
        nodes = [{
            "node_id": n.node_id,
            "importance": n.importance,
            "deprecated": n.deprecated,
            "cost_ms": n.cost_ms,
            "created_at": n.created_at,
        } for n in (snap.nodes[i] for i in snap.node_ids())]
        edges = [{
            "source": e.source,
            "target": e.target,
            "weight": e.weight,
            "count": e.count,
            "successes": e.successes,
            "value": e.value,
        } for e in snap.edges()]
        return nodes, edges

    def load_records(self, nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> None:
        """Merge persisted records into this graph (used on warm start)."""
        for rec in nodes:
            node = self._node(rec["node_id"])
            with node.lock:
                node.importance = rec.get("importance", 0.0)
                node.deprecated = rec.get("deprecated", False)
                node.cost_ms = rec.get("cost_ms", 0.0)
                node.cost_samples = 1 if node.cost_ms else 0
                node.created_at = rec.get("created_at", node.created_at)
        if nodes:
            self._max_importance = max(rec.get("importance", 0.0) for rec in nodes)
        for rec in edges:
            src = self._node(rec["source"], auto_created=True)
            dst = self._node(rec["target"], auto_created=True)
            with src.lock:
                edge = src.out.get(rec["target"])
                if edge is None:
                    edge = _EdgeState(self.initial_value)
                    src.out[rec["target"]] = edge
                    edge.weight = rec.get("weight", 0.0)
                    src.stats.add(edge.weight)
                else:
                    old = edge.weight
                    edge.weight = rec.get("weight", 0.0)
                    src.stats.replace(old, edge.weight)
                edge.count = rec.get("count", 0)
                edge.successes = rec.get("successes", 0)
                edge.value = rec.get("value", self.initial_value)
            with dst.lock:
                dst.incoming.add(rec["source"])
        logger.info("Loaded %d nodes, %d edges into capability graph", len(nodes), len(edges))

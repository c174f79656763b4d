"""
Foresight — Structural Importance

Weighted PageRank over a capability graph snapshot, using NetworkX.
Recomputed periodically (on the retrain cadence), never per edge update.
"""

from __future__ import annotations

import logging
import time

import networkx as nx

from graphrag.graph_store import CapabilityGraph, GraphSnapshot

logger = logging.getLogger("foresight.graph")


def build_digraph(snapshot: GraphSnapshot) -> nx.DiGraph:
    """Snapshot → nx.DiGraph with raw co-occurrence weights on edges."""
    g = nx.DiGraph()
    g.add_nodes_from(snapshot.node_ids())
    for edge in snapshot.edges():
        g.add_edge(edge.source, edge.target, weight=edge.weight)
    return g


def compute_importance(
    snapshot: GraphSnapshot,
    damping: float = 0.85,
    max_iter: int = 100,
) -> dict[str, float]:
    """
    PageRank score per node. Empty graph → {}.

    Falls back to uniform scores if the power iteration does not
    converge; importance is a soft signal and must never stop a cycle.
    """
    if snapshot.is_empty:
        return {}
    g = build_digraph(snapshot)
    try:
        return nx.pagerank(g, alpha=damping, max_iter=max_iter, tol=1e-06, weight="weight")
    except nx.PowerIterationFailedConvergence:
        logger.warning("PageRank did not converge in %d iterations; using uniform importance",
                       max_iter)
        n = g.number_of_nodes()
        return {node: 1.0 / n for node in g.nodes}


def recompute_importance(
    graph: CapabilityGraph,
    damping: float = 0.85,
    snapshot: GraphSnapshot | None = None,
) -> dict[str, float]:
    """
    Compute importance and write it back to the nodes. Uses `snapshot`
    when given, otherwise takes a fresh one.
    """
    t0 = time.time()
    if snapshot is None:
        snapshot = graph.snapshot()
    scores = compute_importance(snapshot, damping=damping)
    if scores:
        graph.set_importance(scores)
    logger.info("Importance recomputed for %d nodes (%.1fms)",
                len(scores), (time.time() - t0) * 1000)
    return scores

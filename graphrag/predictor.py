"""
Foresight — Predictor (DAG Suggester)

Ranks candidate next tasks for a workflow.

Signals, per candidate c, with l = last successful task:
  semantic    max(0, cosine(context vector, embed(c)))
              context vector = mean embedding of the last
              `context_window` successful tasks
  importance  importance(c) / max importance in the graph
  path        value(l→c) · count / (count + path_prior)

confidence = w_sem·semantic + w_imp·importance + w_path·path, where the
weights are normalised to sum to 1. With no usable embeddings the
semantic weight is dropped and the other two are renormalised.

Candidates are out-neighbours of the context nodes that are not already
executed, not deprecated, and not themselves context nodes. Order is
(-confidence, cost estimate, id), capped at top_k.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import numpy as np

from engine.config import PredictorConfig
from engine.state import WorkflowState
from graphrag.embeddings import EmbeddingEngine, cosine
from graphrag.graph_store import CapabilityNode, Edge

logger = logging.getLogger("foresight.predictor")

# episodic adjustment constants
EPISODE_EXCLUDE_FAILURE_RATE = 0.5
EPISODE_MAX_BOOST = 0.15
EPISODE_BOOST_FACTOR = 0.20
EPISODE_MAX_PENALTY = 0.15
EPISODE_PENALTY_FACTOR = 0.25


class PredictionUnavailable(Exception):
    """Graph or workflow history gives nothing to predict from."""


class GraphReader(Protocol):
    def neighbors(self, node_id: str) -> Any: ...
    def get_node(self, node_id: str) -> CapabilityNode | None: ...
    def get_edge(self, source: str, target: str) -> Edge | None: ...
    def max_importance(self) -> float: ...


EpisodeSource = Callable[[str], "dict[str, dict[str, float]]"]


@dataclass(frozen=True)
class PredictedCandidate:
    task_id: str
    confidence: float
    derivation: dict[str, Any] = field(default_factory=dict, compare=False)
    cost_estimate: float = 0.0


class Predictor:
    """
    Stateless apart from its collaborators; safe to call from many
    workflows at once.
    """

    def __init__(
        self,
        graph: GraphReader,
        embeddings: EmbeddingEngine,
        config: PredictorConfig | None = None,
        episode_source: EpisodeSource | None = None,
    ):
        self.graph = graph
        self.embeddings = embeddings
        self.config = config or PredictorConfig()
        self.episode_source = episode_source

    def predict(
        self,
        state: WorkflowState,
        graph: GraphReader | None = None,
    ) -> list[PredictedCandidate]:
        """
        Ordered candidates, or [] when prediction is unavailable.

        Pass a GraphSnapshot as `graph` for a fully reproducible ranking.
        """
        t0 = time.time()
        try:
            ranked = self._rank(state, graph or self.graph)
        except PredictionUnavailable as e:
            logger.debug("Prediction unavailable for %s: %s", state.workflow_id, e)
            return []
        logger.debug(
            "Predicted %d candidates for %s in %.1fms",
            len(ranked), state.workflow_id, (time.time() - t0) * 1000,
        )
        return ranked

    # ── Ranking ──────────────────────────────────────────────────

    def _rank(self, state: WorkflowState, graph: GraphReader) -> list[PredictedCandidate]:
        cfg = self.config
        successful = state.successful_tasks()
        if not successful:
            raise PredictionUnavailable("no completed tasks")

        context = [t.task_id for t in successful[-cfg.context_window:]]
        if all(graph.get_node(n) is None for n in context):
            raise PredictionUnavailable("context nodes not in graph")
        last = context[-1]
        excluded = state.executed_task_ids() | set(context)

        candidate_ids: set[str] = set()
        for node_id in context:
            for edge in graph.neighbors(node_id):
                if edge.target in excluded:
                    continue
                node = graph.get_node(edge.target)
                if node is None or node.deprecated:
                    continue
                candidate_ids.add(edge.target)
        if not candidate_ids:
            return []

        table = self.embeddings.table
        context_vec = None if table.is_degenerate else table.mean_vector(context)
        use_semantic = context_vec is not None and bool(np.any(context_vec))
        weights = self._weights(use_semantic)
        max_imp = graph.max_importance()
        episodes = self._episodes(state)

        out: list[PredictedCandidate] = []
        for cid in candidate_ids:
            node = graph.get_node(cid)

            semantic = 0.0
            if use_semantic:
                vec = table.get(cid)
                if vec is not None:
                    semantic = max(0.0, cosine(context_vec, vec))

            importance = node.importance / max_imp if max_imp > 0 else 0.0

            edge = graph.get_edge(last, cid)
            path = 0.0
            if edge is not None and edge.count > 0:
                path = edge.value * edge.count / (edge.count + cfg.path_prior)

            confidence = (weights["semantic"] * semantic
                          + weights["importance"] * importance
                          + weights["path"] * path)
            derivation: dict[str, Any] = {
                "semantic": round(semantic, 6),
                "importance": round(importance, 6),
                "path": round(path, 6),
                "weights": weights,
                "context": list(context),
            }

            if episodes is not None and cid in episodes:
                stats = episodes[cid]
                if stats["failure_rate"] > EPISODE_EXCLUDE_FAILURE_RATE:
                    logger.debug("Excluding %s: episodic failure rate %.2f",
                                 cid, stats["failure_rate"])
                    continue
                adjustment = (min(EPISODE_MAX_BOOST, EPISODE_BOOST_FACTOR * stats["success_rate"])
                              - min(EPISODE_MAX_PENALTY, EPISODE_PENALTY_FACTOR * stats["failure_rate"]))
                confidence += adjustment
                derivation["episodic"] = round(adjustment, 6)

            confidence = min(1.0, max(0.0, confidence))
            out.append(PredictedCandidate(
                task_id=cid,
                confidence=confidence,
                derivation=derivation,
                cost_estimate=node.cost_ms,
            ))

        out.sort(key=lambda c: (-c.confidence, c.cost_estimate, c.task_id))
        return out[:cfg.top_k]

    def _weights(self, use_semantic: bool) -> dict[str, float]:
        cfg = self.config
        sem = cfg.semantic_weight if use_semantic else 0.0
        imp, path = cfg.importance_weight, cfg.path_weight
        total = sem + imp + path
        if total <= 0:
            # only semantic was weighted and there are no embeddings
            return {"semantic": 0.0, "importance": 0.5, "path": 0.5}
        return {"semantic": sem / total, "importance": imp / total, "path": path / total}

    def _episodes(self, state: WorkflowState) -> dict[str, dict[str, float]] | None:
        if self.episode_source is None:
            return None
        try:
            return self.episode_source(state.context_hash())
        except Exception as e:
            logger.warning("Episode lookup failed, ranking without it: %s", e)
            return None

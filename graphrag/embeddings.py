"""
Foresight — Embedding Engine

Per-capability latent vectors from edge-weight-aware biased random
walks (Node2Vec+ style) followed by skip-gram with negative sampling.

Walk step prev → curr → next. Candidates for `next` are the neighbours
of `curr` in the undirected view (its out- and in-neighbours):

    next == prev                 1/p
    edge curr→next exists        w̃ = normalized_weight(curr, next)
                                 1                      if w̃ >= 1
                                 1/q + (1 − 1/q)·w̃      otherwise
    no edge curr→next            1/q

and the transition probability is proportional to the bias.

Training works on an immutable GraphSnapshot and publishes a new
EmbeddingTable with a single reference assignment, so readers either
see the previous table or the new one, never a mix.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable, Sequence

import numpy as np

from engine.config import EmbeddingConfig
from engine.logging import log_retrain
from graphrag.graph_store import GraphSnapshot, normalize_weight

logger = logging.getLogger("foresight.embedding")

BATCH_SIZE = 256
NOISE_POWER = 0.75


# ═══════════════════════════════════════════════════════════════════
# Walk Bias
# ═══════════════════════════════════════════════════════════════════

def walk_bias(
    is_return: bool,
    normalized: float | None,
    p: float,
    q: float,
) -> float:
    """
    Unnormalised transition bias for one candidate.

    Args:
        is_return:  candidate is the node the walk just came from
        normalized: normalized weight of curr→candidate, None if no such edge
    """
    if is_return:
        return 1.0 / p
    if normalized is None:
        return 1.0 / q
    if normalized >= 1.0:
        return 1.0
    return 1.0 / q + (1.0 - 1.0 / q) * normalized


def _candidates(snapshot: GraphSnapshot, node: str) -> list[str]:
    out = {e.target for e in snapshot.neighbors(node)}
    return sorted(out.union(snapshot.in_neighbors(node)))


def transition_probabilities(
    snapshot: GraphSnapshot,
    prev: str | None,
    curr: str,
    p: float,
    q: float,
    gamma: float = 1.0,
    epsilon: float = 1e-9,
) -> tuple[list[str], np.ndarray]:
    """Candidates (sorted) and their transition probabilities from curr."""
    candidates = _candidates(snapshot, curr)
    if not candidates:
        return [], np.zeros(0)
    node = snapshot.nodes[curr]
    biases = np.empty(len(candidates))
    for i, nxt in enumerate(candidates):
        edge = snapshot.edge(curr, nxt)
        w = None
        if edge is not None:
            w = normalize_weight(edge.weight, node.mean, node.std, gamma, epsilon)
        biases[i] = walk_bias(nxt == prev, w, p, q)
    total = biases.sum()
    if total <= 0:
        return candidates, np.full(len(candidates), 1.0 / len(candidates))
    return candidates, biases / total


def generate_walks(
    snapshot: GraphSnapshot,
    config: EmbeddingConfig,
    rng: np.random.Generator,
) -> list[list[str]]:
    """
    walks_per_node walks of up to walk_length nodes from every node.
    A walk stops early at a node with no neighbours.
    """
    walks: list[list[str]] = []
    nodes = snapshot.node_ids()
    # transition tables depend only on (prev, curr); memoise per retrain
    cache: dict[tuple[str | None, str], tuple[list[str], np.ndarray]] = {}

    for _ in range(config.walks_per_node):
        for start in nodes:
            walk = [start]
            prev: str | None = None
            while len(walk) < config.walk_length:
                curr = walk[-1]
                key = (prev, curr)
                if key not in cache:
                    cache[key] = transition_probabilities(
                        snapshot, prev, curr, config.p, config.q,
                        config.gamma, config.epsilon,
                    )
                candidates, probs = cache[key]
                if not candidates:
                    break
                nxt = candidates[int(rng.choice(len(candidates), p=probs))]
                walk.append(nxt)
                prev = curr
            walks.append(walk)
    return walks


# ═══════════════════════════════════════════════════════════════════
# Embedding Table
# ═══════════════════════════════════════════════════════════════════

class EmbeddingTable:
    """Immutable, versioned node → unit vector table."""

    def __init__(
        self,
        node_ids: Sequence[str],
        vectors: np.ndarray,
        version: int = 0,
        dim: int | None = None,
    ):
        self.dim = int(vectors.shape[1]) if vectors.ndim == 2 and vectors.size else (dim or 0)
        self._index = {n: i for i, n in enumerate(node_ids)}
        self._vectors = np.array(vectors, dtype=np.float64, copy=True)
        self._vectors.setflags(write=False)
        self.version = version
        self.created_at = time.time()

    @classmethod
    def empty(cls, dim: int, version: int = 0) -> EmbeddingTable:
        return cls([], np.zeros((0, dim)), version=version, dim=dim)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._index

    @property
    def is_degenerate(self) -> bool:
        """No usable vectors: empty, single node, or all zeros."""
        return len(self._index) < 2 or not np.any(self._vectors)

    def node_ids(self) -> list[str]:
        return list(self._index)

    def get(self, node_id: str) -> np.ndarray | None:
        i = self._index.get(node_id)
        return None if i is None else self._vectors[i]

    def mean_vector(self, node_ids: Iterable[str]) -> np.ndarray | None:
        rows = [self._index[n] for n in node_ids if n in self._index]
        if not rows:
            return None
        return self._vectors[rows].mean(axis=0)

    def similarity(self, a: str, b: str) -> float:
        va, vb = self.get(a), self.get(b)
        if va is None or vb is None:
            return 0.0
        return cosine(va, vb)


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    na, nb = np.linalg.norm(a), np.linalg.norm(b)
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(a, b) / (na * nb))


# ═══════════════════════════════════════════════════════════════════
# Skip-gram with Negative Sampling
# ═══════════════════════════════════════════════════════════════════

def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -10.0, 10.0)))


def _training_pairs(
    sequences: Sequence[Sequence[str]],
    index: dict[str, int],
    window: int,
) -> np.ndarray:
    pairs: list[tuple[int, int]] = []
    for seq in sequences:
        ids = [index[n] for n in seq if n in index]
        for i, center in enumerate(ids):
            lo, hi = max(0, i - window), min(len(ids), i + window + 1)
            for j in range(lo, hi):
                if j != i:
                    pairs.append((center, ids[j]))
    return np.array(pairs, dtype=np.int64).reshape(-1, 2)


def train_skipgram(
    sequences: Sequence[Sequence[str]],
    node_ids: Sequence[str],
    config: EmbeddingConfig,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Mini-batch SGNS over the sequences. Returns L2-normalised input
    vectors, one row per node id. Nodes that never co-occur with
    anything get a zero row.
    """
    vocab = len(node_ids)
    dim = config.embedding_dim
    if vocab == 0:
        return np.zeros((0, dim))

    index = {n: i for i, n in enumerate(node_ids)}
    pairs = _training_pairs(sequences, index, config.window_size)
    if len(pairs) == 0:
        return np.zeros((vocab, dim))

    counts = np.bincount(pairs[:, 0], minlength=vocab).astype(np.float64)
    noise = np.power(counts, NOISE_POWER)
    noise = noise / noise.sum()

    w_in = (rng.random((vocab, dim)) - 0.5) / dim
    w_out = np.zeros((vocab, dim))
    k = config.negative_samples

    total_batches = config.epochs * int(np.ceil(len(pairs) / BATCH_SIZE))
    done = 0
    for _ in range(config.epochs):
        order = rng.permutation(len(pairs))
        for start in range(0, len(order), BATCH_SIZE):
            batch = pairs[order[start:start + BATCH_SIZE]]
            lr = config.sgd_learning_rate - (
                config.sgd_learning_rate - config.sgd_min_learning_rate
            ) * (done / max(total_batches, 1))
            done += 1

            centers, contexts = batch[:, 0], batch[:, 1]
            v = w_in[centers]
            u_pos = w_out[contexts]
            g_pos = 1.0 - _sigmoid(np.sum(v * u_pos, axis=1))
            grad_v = g_pos[:, None] * u_pos
            grad_pos = g_pos[:, None] * v

            if k > 0:
                negs = rng.choice(vocab, size=(len(batch), k), p=noise)
                u_neg = w_out[negs]
                g_neg = -_sigmoid(np.einsum("bd,bkd->bk", v, u_neg))
                grad_v += np.einsum("bk,bkd->bd", g_neg, u_neg)
                grad_neg = g_neg[:, :, None] * v[:, None, :]
                np.add.at(w_out, negs.reshape(-1), lr * grad_neg.reshape(-1, dim))

            np.add.at(w_in, centers, lr * grad_v)
            np.add.at(w_out, contexts, lr * grad_pos)

    seen = np.zeros(vocab, dtype=bool)
    seen[pairs[:, 0]] = True
    w_in[~seen] = 0.0
    norms = np.linalg.norm(w_in, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return w_in / norms


# ═══════════════════════════════════════════════════════════════════
# Embedding Engine
# ═══════════════════════════════════════════════════════════════════

class EmbeddingEngine:
    """
    Owns the current EmbeddingTable.

    retrain() is synchronous; retrain_async() runs at most one
    retraining at a time on a background worker and returns None if
    one is already running.
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self.config = config or EmbeddingConfig()
        self._table = EmbeddingTable.empty(self.config.embedding_dim)
        self._version = 0
        self._version_lock = threading.Lock()
        self._running_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fs_retrain")

    @property
    def table(self) -> EmbeddingTable:
        return self._table

    def embed(self, node_id: str) -> np.ndarray:
        """Current vector for a node; zero vector if it has none yet."""
        vec = self._table.get(node_id)
        if vec is None:
            return np.zeros(self.config.embedding_dim)
        return vec

    def retrain(
        self,
        snapshot: GraphSnapshot,
        replay_sequences: Sequence[Sequence[str]] | None = None,
    ) -> EmbeddingTable:
        """
        Train on a snapshot (plus replayed tool sequences) and swap the
        result in. Empty or single-node graphs produce a degenerate table.
        """
        t0 = time.time()
        rng = np.random.default_rng(self.config.seed)
        node_ids = list(snapshot.node_ids())

        walks = generate_walks(snapshot, self.config, rng) if len(node_ids) > 1 else []
        corpus: list[Sequence[str]] = list(walks)
        if replay_sequences:
            corpus.extend(s for s in replay_sequences if len(s) > 1)

        vectors = train_skipgram(corpus, node_ids, self.config, rng)

        with self._version_lock:
            self._version += 1
            table = EmbeddingTable(node_ids, vectors, version=self._version,
                                   dim=self.config.embedding_dim)
            self._table = table

        duration_ms = (time.time() - t0) * 1000
        if table.is_degenerate:
            logger.info("Embedding retrain v%d produced a degenerate table (%d nodes)",
                        table.version, len(node_ids))
        log_retrain(table.version, len(node_ids), len(corpus), duration_ms)
        return table

    def retrain_async(
        self,
        snapshot: GraphSnapshot,
        replay_sequences: Sequence[Sequence[str]] | None = None,
        prepare: Callable[[GraphSnapshot], Any] | None = None,
    ) -> Future | None:
        """
        Retrain on the worker thread. `prepare` runs first on the same
        thread with the same snapshot. Returns None when a retrain is
        already running; neither step runs then.
        """
        if not self._running_lock.acquire(blocking=False):
            logger.debug("Retrain already running; skipping")
            return None

        def _run() -> EmbeddingTable:
            try:
                if prepare is not None:
                    prepare(snapshot)
                return self.retrain(snapshot, replay_sequences)
            except Exception:
                logger.exception("Background embedding retrain failed")
                raise
            finally:
                self._running_lock.release()

        try:
            return self._pool.submit(_run)
        except RuntimeError:
            self._running_lock.release()
            raise

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

"""
Foresight — Checkpoint / Episode / Graph Store

SQLite-backed persistence for:
  - workflow checkpoints (crash recovery / resume)
  - episodes (speculation and task outcomes, retrieved by context hash)
  - the capability graph (warm start after restart)
  - per-domain speculation thresholds

Checkpoints keep the N most recent rows per workflow. A missing
checkpoint is a cold start, not an error: load_checkpoint returns None.
CheckpointUnavailable is raised only when the database itself cannot be
opened or read; the runtime turns that into a cold start too.

One connection, shared across threads, guarded by a lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from engine.state import WorkflowState

logger = logging.getLogger("foresight.checkpoint")


class CheckpointUnavailable(Exception):
    """The checkpoint database could not be opened or read."""


@dataclass
class CheckpointInfo:
    checkpoint_id: str
    workflow_id: str
    created_at: float
    sequence: int


class _Transaction:
    """
    SQLite transaction context manager.

    While active, individual save_* commits become no-ops.
    The real COMMIT happens when the context manager exits cleanly.
    """
    def __init__(self, store: CheckpointStore):
        self.store = store

    def __enter__(self):
        self.store._lock.acquire()
        try:
            self.store.conn.execute("BEGIN IMMEDIATE")
        except BaseException:
            # __exit__ will not run; the lock must not outlive a failed BEGIN
            self.store._lock.release()
            raise
        self.store._in_transaction = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.store._in_transaction = False
        try:
            if exc_type is None:
                self.store.conn.commit()
            else:
                self.store.conn.rollback()
        finally:
            self.store._lock.release()
        return False


class CheckpointStore:
    """SQLite-backed store for workflow checkpoints, episodes and the graph."""

    def __init__(
        self,
        db_path: str | Path = "foresight.db",
        keep: int = 5,
        auto_prune: bool = True,
    ):
        self.db_path = str(db_path)
        self.keep = keep
        self.auto_prune = auto_prune
        self._lock = threading.RLock()
        self._in_transaction = False
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA busy_timeout=5000")
            self._create_tables()
        except sqlite3.Error as e:
            raise CheckpointUnavailable(f"cannot open checkpoint db {self.db_path}: {e}") from e

    def _commit(self):
        """Commit unless inside an explicit transaction block."""
        if not self._in_transaction:
            self.conn.commit()

    def transaction(self):
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                store.save_checkpoint(wid, state)
                store.record_episode(...)
        """
        return _Transaction(self)

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS checkpoints (
                checkpoint_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                sequence INTEGER NOT NULL DEFAULT 0,
                state TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS episodes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                capability_id TEXT NOT NULL,
                context_hash TEXT NOT NULL DEFAULT '',
                correct INTEGER,
                data TEXT DEFAULT '{}',
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS graph_nodes (
                node_id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS graph_edges (
                source TEXT NOT NULL,
                target TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (source, target)
            );

            CREATE TABLE IF NOT EXISTS thresholds (
                domain TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_checkpoints_workflow
                ON checkpoints(workflow_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_episodes_context
                ON episodes(context_hash, event_type);
            CREATE INDEX IF NOT EXISTS idx_episodes_capability
                ON episodes(capability_id);
        """)
        self._commit()

    def close(self):
        with self._lock:
            self.conn.close()

    # ─── Checkpoints ─────────────────────────────────────────────────

    def save_checkpoint(self, workflow_id: str, state: WorkflowState) -> CheckpointInfo:
        t0 = time.time()
        info = CheckpointInfo(
            checkpoint_id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            created_at=time.time(),
            sequence=len(state.tasks),
        )
        payload = json.dumps(state.to_dict())
        with self._lock:
            self.conn.execute("""
                INSERT INTO checkpoints (checkpoint_id, workflow_id, created_at, sequence, state)
                VALUES (?, ?, ?, ?, ?)
            """, (info.checkpoint_id, workflow_id, info.created_at, info.sequence, payload))
            self._commit()
            if self.auto_prune:
                self.prune_checkpoints(workflow_id, self.keep)
        logger.debug(
            "Checkpoint saved: %s (workflow=%s, seq=%d, %.1fms)",
            info.checkpoint_id, workflow_id, info.sequence, (time.time() - t0) * 1000,
        )
        return info

    def load_checkpoint(self, workflow_id: str) -> WorkflowState | None:
        """Latest checkpoint for a workflow, or None (cold start)."""
        try:
            with self._lock:
                row = self.conn.execute("""
                    SELECT state FROM checkpoints WHERE workflow_id = ?
                    ORDER BY created_at DESC, rowid DESC LIMIT 1
                """, (workflow_id,)).fetchone()
        except sqlite3.Error as e:
            raise CheckpointUnavailable(str(e)) from e
        if not row:
            return None
        return WorkflowState.from_dict(json.loads(row["state"]))

    def list_checkpoints(self, workflow_id: str) -> list[CheckpointInfo]:
        with self._lock:
            rows = self.conn.execute("""
                SELECT checkpoint_id, workflow_id, created_at, sequence
                FROM checkpoints WHERE workflow_id = ?
                ORDER BY created_at DESC, rowid DESC
            """, (workflow_id,)).fetchall()
        return [CheckpointInfo(r["checkpoint_id"], r["workflow_id"],
                               r["created_at"], r["sequence"]) for r in rows]

    def prune_checkpoints(self, workflow_id: str, keep: int | None = None) -> int:
        """Keep the `keep` most recent checkpoints. Returns rows deleted."""
        keep = self.keep if keep is None else keep
        with self._lock:
            cur = self.conn.execute("""
                DELETE FROM checkpoints WHERE workflow_id = ? AND checkpoint_id NOT IN (
                    SELECT checkpoint_id FROM checkpoints WHERE workflow_id = ?
                    ORDER BY created_at DESC, rowid DESC LIMIT ?
                )
            """, (workflow_id, workflow_id, keep))
            self._commit()
        if cur.rowcount:
            logger.debug("Pruned %d checkpoints for %s", cur.rowcount, workflow_id)
        return cur.rowcount

    def delete_workflow(self, workflow_id: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM checkpoints WHERE workflow_id = ?", (workflow_id,))
            self._commit()

    # ─── Episodes ────────────────────────────────────────────────────

    def record_episode(
        self,
        event_type: str,
        workflow_id: str,
        capability_id: str,
        context_hash: str = "",
        correct: bool | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            self.conn.execute("""
                INSERT INTO episodes
                (event_type, workflow_id, capability_id, context_hash, correct, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                event_type, workflow_id, capability_id, context_hash,
                None if correct is None else int(correct),
                json.dumps(data or {}, default=str), time.time(),
            ))
            self._commit()

    def list_episodes(self, context_hash: str | None = None,
                      limit: int = 100) -> list[dict[str, Any]]:
        query = "SELECT * FROM episodes"
        params: list[Any] = []
        if context_hash:
            query += " WHERE context_hash = ?"
            params.append(context_hash)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [{
            "event_type": r["event_type"],
            "workflow_id": r["workflow_id"],
            "capability_id": r["capability_id"],
            "context_hash": r["context_hash"],
            "correct": None if r["correct"] is None else bool(r["correct"]),
            "data": json.loads(r["data"] or "{}"),
            "created_at": r["created_at"],
        } for r in rows]

    def episode_stats(self, context_hash: str, limit: int = 200) -> dict[str, dict[str, float]]:
        """
        Per-capability speculation success/failure rates for a context,
        from the most recent `limit` speculation_outcome episodes.
        """
        with self._lock:
            rows = self.conn.execute("""
                SELECT capability_id, correct FROM episodes
                WHERE context_hash = ? AND event_type = 'speculation_outcome'
                  AND correct IS NOT NULL
                ORDER BY id DESC LIMIT ?
            """, (context_hash, limit)).fetchall()

        stats: dict[str, dict[str, float]] = {}
        for r in rows:
            s = stats.setdefault(r["capability_id"], {"total": 0, "successes": 0, "failures": 0})
            s["total"] += 1
            if r["correct"]:
                s["successes"] += 1
            else:
                s["failures"] += 1
        for s in stats.values():
            s["success_rate"] = s["successes"] / s["total"]
            s["failure_rate"] = s["failures"] / s["total"]
        return stats

    # ─── Capability Graph ────────────────────────────────────────────

    def save_graph(self, nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> None:
        """Replace the persisted graph with the given records."""
        with self.transaction():
            self.conn.execute("DELETE FROM graph_nodes")
            self.conn.execute("DELETE FROM graph_edges")
            self.conn.executemany(
                "INSERT INTO graph_nodes (node_id, data) VALUES (?, ?)",
                [(n["node_id"], json.dumps(n)) for n in nodes],
            )
            self.conn.executemany(
                "INSERT INTO graph_edges (source, target, data) VALUES (?, ?, ?)",
                [(e["source"], e["target"], json.dumps(e)) for e in edges],
            )
        logger.info("Graph persisted: %d nodes, %d edges", len(nodes), len(edges))

    def load_graph(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        with self._lock:
            nodes = [json.loads(r["data"]) for r in
                     self.conn.execute("SELECT data FROM graph_nodes ORDER BY node_id")]
            edges = [json.loads(r["data"]) for r in
                     self.conn.execute("SELECT data FROM graph_edges ORDER BY source, target")]
        return nodes, edges

    # ─── Thresholds ──────────────────────────────────────────────────

    def save_thresholds(self, states: dict[str, dict[str, Any]]) -> None:
        """Upsert per-domain threshold snapshots ({"value": ..., "window": [...]})."""
        now = time.time()
        with self.transaction():
            self.conn.executemany(
                "INSERT OR REPLACE INTO thresholds (domain, data, updated_at) VALUES (?, ?, ?)",
                [(domain, json.dumps(data), now) for domain, data in states.items()],
            )
        logger.debug("Thresholds persisted for %d domains", len(states))

    def load_thresholds(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT domain, data FROM thresholds ORDER BY domain").fetchall()
        return {r["domain"]: json.loads(r["data"]) for r in rows}

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "checkpoints": self.conn.execute("SELECT COUNT(*) FROM checkpoints").fetchone()[0],
                "workflows": self.conn.execute(
                    "SELECT COUNT(DISTINCT workflow_id) FROM checkpoints").fetchone()[0],
                "episodes": self.conn.execute("SELECT COUNT(*) FROM episodes").fetchone()[0],
                "graph_nodes": self.conn.execute("SELECT COUNT(*) FROM graph_nodes").fetchone()[0],
                "graph_edges": self.conn.execute("SELECT COUNT(*) FROM graph_edges").fetchone()[0],
            }

"""
Assist Core — Checkpoint Store

Durable persistence of ConversationState keyed by thread_id. The state
is stored as one JSON document per thread, alongside a few indexed
columns (status, pending approval id and expiry) so housekeeping
queries do not have to decode every snapshot.

Two implementations share the CheckpointStore contract:
  SQLiteCheckpointStore    single-file SQLite, survives restarts
  InMemoryCheckpointStore  process-local, for tests and ephemeral use
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from coordinator.types import ConversationState

logger = logging.getLogger("assist_core.store")


def _status_of(state: ConversationState) -> str:
    clar = state.pending_clarification
    appr = state.pending_approval
    if clar is not None and not clar.processed:
        return "awaiting_clarification"
    if appr is not None and not appr.processed:
        return "awaiting_approval"
    return "idle"


def _serialize(state: ConversationState) -> str:
    # Fail fast on non-JSON state instead of storing str() reprs
    if "ASSIST_STRICT" in os.environ:
        try:
            return json.dumps(state.to_dict())
        except (TypeError, ValueError) as e:
            raise TypeError(
                f"Conversation state contains non-serializable data: {e}. "
                f"Fix the handler that put a non-JSON-native object into the state."
            ) from e
    return json.dumps(state.to_dict(), default=str)


class SQLiteCheckpointStore:
    """SQLite-backed checkpoint store."""

    def __init__(self, db_path: str | Path = "assist_checkpoints.db"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.RLock()
        self._create_tables()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS checkpoints (
                thread_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'idle',
                approval_id TEXT,
                approval_expires_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_checkpoints_status
                ON checkpoints(status);
            CREATE INDEX IF NOT EXISTS idx_checkpoints_expiry
                ON checkpoints(approval_expires_at);
        """)
        self.conn.commit()

    # ─── CheckpointStore contract ────────────────────────────────────

    def load(self, thread_id: str) -> ConversationState | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT state FROM checkpoints WHERE thread_id = ?", (thread_id,)
            ).fetchone()
        if not row:
            return None
        return ConversationState.from_dict(json.loads(row["state"]))

    def save(self, thread_id: str, state: ConversationState) -> None:
        snapshot = _serialize(state)
        status = _status_of(state)
        appr = state.pending_approval
        awaiting = status == "awaiting_approval" and appr is not None
        now = time.time()
        with self._lock:
            self.conn.execute("""
                INSERT INTO checkpoints
                (thread_id, state, status, approval_id, approval_expires_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(thread_id) DO UPDATE SET
                    state = excluded.state,
                    status = excluded.status,
                    approval_id = excluded.approval_id,
                    approval_expires_at = excluded.approval_expires_at,
                    updated_at = excluded.updated_at
            """, (
                thread_id, snapshot, status,
                appr.approval_id if awaiting else None,
                appr.created_at + appr.timeout_seconds if awaiting else None,
                now, now,
            ))
            self.conn.commit()
        logger.debug("Saved checkpoint for %s (status=%s)", thread_id, status)

    def delete(self, thread_id: str) -> bool:
        with self._lock:
            cur = self.conn.execute("DELETE FROM checkpoints WHERE thread_id = ?", (thread_id,))
            self.conn.commit()
        return cur.rowcount > 0

    # ─── Housekeeping ────────────────────────────────────────────────

    def list_threads(self, status: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT thread_id, status, approval_id, updated_at FROM checkpoints"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY updated_at DESC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]

    def find_expired_approvals(self, now: float | None = None) -> list[str]:
        """Threads whose pending approval has outlived its timeout."""
        now = now if now is not None else time.time()
        with self._lock:
            rows = self.conn.execute("""
                SELECT thread_id FROM checkpoints
                WHERE status = 'awaiting_approval' AND approval_expires_at < ?
                ORDER BY approval_expires_at
            """, (now,)).fetchall()
        return [r["thread_id"] for r in rows]

    def stats(self) -> dict[str, int]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM checkpoints GROUP BY status"
            ).fetchall()
        return {r["status"]: r["cnt"] for r in rows}

    def close(self):
        self.conn.close()


class InMemoryCheckpointStore:
    """
    Dict-backed store. States are kept serialized so a loaded state is
    never the same object that was saved.
    """

    def __init__(self):
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load(self, thread_id: str) -> ConversationState | None:
        with self._lock:
            entry = self._data.get(thread_id)
        if entry is None:
            return None
        return ConversationState.from_dict(json.loads(entry["state"]))

    def save(self, thread_id: str, state: ConversationState) -> None:
        appr = state.pending_approval
        status = _status_of(state)
        entry = {
            "state": _serialize(state),
            "status": status,
            "approval_id": appr.approval_id if appr and status == "awaiting_approval" else None,
            "approval_expires_at": (
                appr.created_at + appr.timeout_seconds
                if appr and status == "awaiting_approval" else None
            ),
            "updated_at": time.time(),
        }
        with self._lock:
            self._data[thread_id] = entry

    def delete(self, thread_id: str) -> bool:
        with self._lock:
            return self._data.pop(thread_id, None) is not None

    def list_threads(self, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._data.items())
        out = [
            {"thread_id": tid, "status": e["status"], "approval_id": e["approval_id"],
             "updated_at": e["updated_at"]}
            for tid, e in items
            if status is None or e["status"] == status
        ]
        return sorted(out, key=lambda e: e["updated_at"], reverse=True)

    def find_expired_approvals(self, now: float | None = None) -> list[str]:
        now = now if now is not None else time.time()
        with self._lock:
            items = list(self._data.items())
        return [
            tid for tid, e in items
            if e["status"] == "awaiting_approval"
            and e["approval_expires_at"] is not None
            and e["approval_expires_at"] < now
        ]

    def __len__(self) -> int:
        return len(self._data)

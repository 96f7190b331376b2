"""SQLite-backed diagnostic log of runs and their transitions.

Optional: kept for post-mortem analysis, never read by the orchestrator.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..health.fsm import Transition

logger = logging.getLogger(__name__)


class TransitionStore:
    """SQLite storage for orchestration runs + per-service transitions."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                aggregate TEXT,
                reason TEXT
            );

            CREATE TABLE IF NOT EXISTS transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                service_id TEXT NOT NULL,
                from_state TEXT NOT NULL,
                to_state TEXT NOT NULL,
                reason TEXT,
                consecutive_failures INTEGER,
                last_message TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_transitions_run
                ON transitions (run_id, id);
        """)
        conn.commit()

    def start_run(self, run_id: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO runs (run_id, started_at) VALUES (?, ?)",
            (run_id, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()

    def record_transition(self, run_id: str, transition: Transition) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO transitions "
            "(run_id, service_id, from_state, to_state, reason, consecutive_failures, "
            "last_message, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run_id, transition.service_id,
                transition.from_state.value, transition.to_state.value,
                transition.reason, transition.status.consecutive_failures,
                transition.status.last_message, transition.timestamp,
            ),
        )
        conn.commit()

    def finish_run(self, run_id: str, aggregate: str, reason: str | None) -> None:
        conn = self._get_conn()
        conn.execute(
            "UPDATE runs SET ended_at = ?, aggregate = ?, reason = ? WHERE run_id = ?",
            (datetime.now(timezone.utc).isoformat(), aggregate, reason, run_id),
        )
        conn.commit()

    def get_transitions(
        self, run_id: str, service_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Transitions of a run in the order they were recorded."""
        if service_id:
            rows = self._get_conn().execute(
                "SELECT * FROM transitions WHERE run_id = ? AND service_id = ? ORDER BY id",
                (run_id, service_id),
            ).fetchall()
        else:
            rows = self._get_conn().execute(
                "SELECT * FROM transitions WHERE run_id = ? ORDER BY id", (run_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent runs first."""
        rows = self._get_conn().execute(
            "SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    def cleanup_old(self, days: int = 30) -> int:
        """Remove runs (and their transitions) older than N days."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        conn = self._get_conn()
        conn.execute(
            "DELETE FROM transitions WHERE run_id IN "
            "(SELECT run_id FROM runs WHERE started_at < ?)",
            (cutoff,),
        )
        cursor = conn.execute("DELETE FROM runs WHERE started_at < ?", (cutoff,))
        conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

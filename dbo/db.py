from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file does not exist yet), the DB file goes inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "dbo.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              status TEXT NOT NULL, -- running|succeeded|failed
              started_at TEXT NOT NULL,
              finished_at TEXT
            );

            CREATE TABLE IF NOT EXISTS node_results (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              node_id TEXT NOT NULL,
              state TEXT NOT NULL,
              required_condition TEXT NOT NULL,
              failure_kind TEXT,
              reason TEXT,
              duration_s REAL,
              started_at TEXT,
              finished_at TEXT,
              UNIQUE(run_id, node_id),
              FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              run_id TEXT,
              node_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_run_id ON events(run_id);
            CREATE INDEX IF NOT EXISTS idx_node_results_run_id ON node_results(run_id);
            """
        )


def log_event(level: str, message: str, run_id: str | None = None, node_id: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, run_id, node_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), run_id, node_id, message),
        )


def insert_run(run_id: str, name: str) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO runs (id, name, status, started_at) VALUES (?, ?, ?, ?)",
            (run_id, name, "running", utc_now()),
        )


def save_report(report: Any) -> None:
    """Persist a finished RunReport (run row plus one row per node)."""
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO runs (id, name, status, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              status=excluded.status,
              finished_at=excluded.finished_at
            """,
            (
                report.run_id,
                report.name,
                "succeeded" if report.success else "failed",
                report.started_at,
                report.finished_at,
            ),
        )
        conn.execute("DELETE FROM node_results WHERE run_id=?", (report.run_id,))
        conn.executemany(
            """
            INSERT INTO node_results (run_id, seq, node_id, state, required_condition, failure_kind, reason, duration_s, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    report.run_id,
                    seq,
                    o.node_id,
                    o.state.value,
                    o.required_condition.value,
                    o.failure_kind.value if o.failure_kind else None,
                    o.reason,
                    o.duration_s,
                    o.started_at,
                    o.finished_at,
                )
                for seq, o in enumerate(report.outcomes)
            ],
        )


def list_runs(limit: int = 50) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM runs ORDER BY started_at DESC, id LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def get_report(run_id: str) -> dict[str, Any] | None:
    """Return a stored run in RunReport.to_dict() shape, or None."""
    with connect() as conn:
        run = conn.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
        if not run:
            return None
        rows = conn.execute("SELECT * FROM node_results WHERE run_id=? ORDER BY seq", (run_id,)).fetchall()
    return {
        "run_id": run["id"],
        "name": run["name"],
        "status": run["status"],
        "success": run["status"] == "succeeded",
        "exit_code": 0 if run["status"] == "succeeded" else 1,
        "started_at": run["started_at"],
        "finished_at": run["finished_at"],
        "nodes": [
            {
                "node_id": r["node_id"],
                "state": r["state"],
                "required_condition": r["required_condition"],
                "failure_kind": r["failure_kind"],
                "reason": r["reason"],
                "duration_s": r["duration_s"],
                "started_at": r["started_at"],
                "finished_at": r["finished_at"],
            }
            for r in rows
        ],
    }


def latest_events(limit: int = 100, run_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if run_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE run_id=? ORDER BY id DESC LIMIT ?", (run_id, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]

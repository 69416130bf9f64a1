from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .state import DeploymentRecord, utc_now


def _resolve_db_path(db_path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """
    p = os.path.abspath(db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "fleet.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


class Store:
    """Append-only event log and deployment history."""

    def __init__(self, db_path: str):
        self.db_path = _resolve_db_path(db_path)
        self._initialized = False

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if not self._initialized:
            self._init(conn)
            self._initialized = True
        return conn

    def _init(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              deployment_id TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deployments (
              id TEXT PRIMARY KEY,
              started_at TEXT NOT NULL,
              completed_at TEXT,
              outcome TEXT,
              record_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )

    def log_event(
        self,
        level: str,
        message: str,
        service_name: str | None = None,
        deployment_id: str | None = None,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, service_name, deployment_id, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), service_name, deployment_id, message),
            )

    def latest_events(self, limit: int = 100, deployment_id: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if deployment_id:
                rows = conn.execute(
                    "SELECT * FROM events WHERE deployment_id=? ORDER BY id DESC LIMIT ?",
                    (deployment_id, limit),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def save_deployment(self, record: DeploymentRecord) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO deployments (id, started_at, completed_at, outcome, record_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  completed_at=excluded.completed_at,
                  outcome=excluded.outcome,
                  record_json=excluded.record_json
                """,
                (
                    record.deployment_id,
                    record.started_at,
                    record.completed_at,
                    record.outcome,
                    json.dumps(record.to_dict()),
                ),
            )

    def get_deployment(self, deployment_id: str) -> DeploymentRecord | None:
        with self.connect() as conn:
            row = conn.execute("SELECT record_json FROM deployments WHERE id=?", (deployment_id,)).fetchone()
            return DeploymentRecord.from_dict(json.loads(row["record_json"])) if row else None

    def list_deployments(self, limit: int = 20) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT id, started_at, completed_at, outcome FROM deployments ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [dict(r) for r in rows]

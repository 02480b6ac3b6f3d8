from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "dsc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workloads (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS spec_versions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              workload_id INTEGER NOT NULL,
              version TEXT NOT NULL,
              spec_json TEXT NOT NULL,
              state TEXT NOT NULL, -- active|candidate|retired|aborted
              created_at TEXT NOT NULL,
              UNIQUE(workload_id, version),
              FOREIGN KEY(workload_id) REFERENCES workloads(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              workload TEXT,
              version TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_spec_versions_workload_id ON spec_versions(workload_id);
            """
        )


def log_event(level: str, message: str, workload: str | None = None, version: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, workload, version, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), workload, version, message),
        )


@dataclass(frozen=True)
class WorkloadRow:
    id: int
    name: str
    created_at: str


@dataclass(frozen=True)
class SpecVersionRow:
    id: int
    workload_id: int
    version: str
    spec_json: str
    state: str
    created_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    return [cls(**dict(r)) for r in rows]


def get_or_create_workload(name: str) -> WorkloadRow:
    with connect() as conn:
        row = conn.execute("SELECT * FROM workloads WHERE name=?", (name,)).fetchone()
        if row:
            return WorkloadRow(**dict(row))
        conn.execute("INSERT INTO workloads (name, created_at) VALUES (?, ?)", (name, utc_now()))
        row = conn.execute("SELECT * FROM workloads WHERE name=?", (name,)).fetchone()
        return WorkloadRow(**dict(row))


def list_workloads() -> list[WorkloadRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM workloads ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, WorkloadRow)


def upsert_spec_version(workload: str, version: str, spec_json: str, state: str) -> SpecVersionRow:
    wl = get_or_create_workload(workload)
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO spec_versions (workload_id, version, spec_json, state, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(workload_id, version) DO UPDATE SET
              spec_json=excluded.spec_json,
              state=excluded.state
            """,
            (wl.id, version, spec_json, state, utc_now()),
        )
        row = conn.execute(
            "SELECT * FROM spec_versions WHERE workload_id=? AND version=?", (wl.id, version)
        ).fetchone()
        return SpecVersionRow(**dict(row))


def list_spec_versions(workload: str) -> list[SpecVersionRow]:
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT v.* FROM spec_versions v
            JOIN workloads w ON w.id = v.workload_id
            WHERE w.name=?
            ORDER BY v.id DESC
            """,
            (workload,),
        ).fetchall()
        return _rows_to_dataclass(rows, SpecVersionRow)


def get_spec_version(workload: str, version: str) -> SpecVersionRow | None:
    with connect() as conn:
        row = conn.execute(
            """
            SELECT v.* FROM spec_versions v
            JOIN workloads w ON w.id = v.workload_id
            WHERE w.name=? AND v.version=?
            """,
            (workload, version),
        ).fetchone()
        return SpecVersionRow(**dict(row)) if row else None


def set_spec_state(workload: str, version: str, state: str) -> None:
    with connect() as conn:
        conn.execute(
            """
            UPDATE spec_versions SET state=?
            WHERE version=? AND workload_id=(SELECT id FROM workloads WHERE name=?)
            """,
            (state, version, workload),
        )


def latest_events(limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if workload:
            rows = conn.execute(
                "SELECT * FROM events WHERE workload=? ORDER BY id DESC LIMIT ?", (workload, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]

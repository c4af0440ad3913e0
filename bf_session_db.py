#!/usr/bin/env python3
"""Tuning session persistence.

Active tuning sessions, completed-tuning history, configuration snapshots
and downloaded-log metadata, keyed by device profile id (the FC's UID).

Two interchangeable backends:
    MemoryBackend   dicts, for tests and throwaway runs
    SQLiteBackend   one SQLite file; records are stored as JSON columns

Raw blackbox logs are files next to the database; only their metadata
lives in it.

Usage:
    from bf_session_db import SQLiteBackend, default_data_dir

    db = SQLiteBackend(os.path.join(default_data_dir(), "bftune.db"))
    session = db.load_session("0123ABCD")
    history = db.list_history("0123ABCD")      # newest first
"""

import copy
import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone

DATA_DIR_ENV = "BFTUNE_DATA_DIR"
DEFAULT_DATA_DIR = os.path.join("~", ".bftune")
DB_FILENAME = "bftune.db"

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_info (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS sessions (
    profile_id TEXT PRIMARY KEY,
    phase TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS history (
    id TEXT PRIMARY KEY,
    profile_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    completed_at TEXT,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshots (
    id TEXT PRIMARY KEY,
    profile_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    label TEXT,
    content TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS logs (
    id TEXT PRIMARY KEY,
    profile_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    path TEXT NOT NULL,
    size INTEGER,
    data TEXT
);

CREATE INDEX IF NOT EXISTS idx_history_profile ON history(profile_id, seq);
CREATE INDEX IF NOT EXISTS idx_snapshots_profile ON snapshots(profile_id);
CREATE INDEX IF NOT EXISTS idx_logs_profile ON logs(profile_id);
"""

log = logging.getLogger("bftune.db")


def default_data_dir():
    """$BFTUNE_DATA_DIR, else ~/.bftune."""
    return os.path.expanduser(os.environ.get(DATA_DIR_ENV) or DEFAULT_DATA_DIR)


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def new_id():
    return str(uuid.uuid4())


# ─── In-Memory Backend ────────────────────────────────────────────────────────

class MemoryBackend:
    """Dict-backed store with the same interface as SQLiteBackend."""

    def __init__(self):
        self._sessions = {}
        self._history = {}
        self._snapshots = {}
        self._logs = {}

    def load_session(self, profile_id):
        s = self._sessions.get(profile_id)
        return copy.deepcopy(s) if s is not None else None

    def save_session(self, session):
        self._sessions[session["profile_id"]] = copy.deepcopy(session)

    def delete_session(self, profile_id):
        self._sessions.pop(profile_id, None)

    def append_history(self, record):
        self._history.setdefault(record["profile_id"], []).append(copy.deepcopy(record))

    def list_history(self, profile_id):
        return [copy.deepcopy(r) for r in reversed(self._history.get(profile_id, []))]

    def update_history_verification(self, profile_id, metrics, record_id=None):
        records = self._history.get(profile_id, [])
        targets = [r for r in records if r["id"] == record_id] if record_id else records[-1:]
        if not targets:
            return False
        targets[0]["verification_metrics"] = copy.deepcopy(metrics)
        return True

    def delete_history(self, profile_id):
        self._history.pop(profile_id, None)

    def save_snapshot(self, profile_id, label, content):
        sid = new_id()
        self._snapshots[sid] = {"id": sid, "profile_id": profile_id, "created_at": now_iso(),
                                "label": label, "content": content}
        return sid

    def get_snapshot(self, snapshot_id):
        s = self._snapshots.get(snapshot_id)
        return dict(s) if s else None

    def list_snapshots(self, profile_id):
        rows = [dict(s) for s in self._snapshots.values() if s["profile_id"] == profile_id]
        return sorted(rows, key=lambda s: s["created_at"], reverse=True)

    def save_log(self, profile_id, path, size, meta=None):
        lid = new_id()
        self._logs[lid] = {"id": lid, "profile_id": profile_id, "created_at": now_iso(),
                           "path": path, "size": size, "meta": dict(meta or {})}
        return lid

    def get_log(self, log_id):
        entry = self._logs.get(log_id)
        return copy.deepcopy(entry) if entry else None

    def list_logs(self, profile_id):
        rows = [copy.deepcopy(e) for e in self._logs.values() if e["profile_id"] == profile_id]
        return sorted(rows, key=lambda e: e["created_at"], reverse=True)

    def close(self):
        pass


# ─── SQLite Backend ───────────────────────────────────────────────────────────

class SQLiteBackend:
    """SQLite database for tuning sessions, history, snapshots and log metadata."""

    def __init__(self, db_path):
        self.db_path = db_path
        self._conn = None

    def _connect(self):
        if self._conn is None:
            parent = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(parent, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._init_schema()
        return self._conn

    def _init_schema(self):
        conn = self._conn
        conn.executescript(SCHEMA)
        row = conn.execute(
            "SELECT value FROM schema_info WHERE key='schema_version'").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO schema_info (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),))
            conn.commit()

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Sessions ──────────────────────────────────────────────────────────

    def load_session(self, profile_id):
        row = self._connect().execute(
            "SELECT data FROM sessions WHERE profile_id = ?", (profile_id,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["data"])
        except json.JSONDecodeError as e:
            log.warning(f"Corrupt tuning session for {profile_id}, treating as none: {e}")
            return None

    def save_session(self, session):
        conn = self._connect()
        conn.execute("""
            INSERT INTO sessions (profile_id, phase, updated_at, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(profile_id) DO UPDATE SET
                phase = excluded.phase, updated_at = excluded.updated_at, data = excluded.data
        """, (session["profile_id"], session["phase"], session["updated_at"],
              json.dumps(session)))
        conn.commit()

    def delete_session(self, profile_id):
        conn = self._connect()
        conn.execute("DELETE FROM sessions WHERE profile_id = ?", (profile_id,))
        conn.commit()

    # ── History ───────────────────────────────────────────────────────────

    def append_history(self, record):
        conn = self._connect()
        seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM history WHERE profile_id = ?",
                           (record["profile_id"],)).fetchone()[0]
        conn.execute(
            "INSERT INTO history (id, profile_id, seq, completed_at, data) VALUES (?, ?, ?, ?, ?)",
            (record["id"], record["profile_id"], seq, record.get("completed_at"),
             json.dumps(record)))
        conn.commit()

    def list_history(self, profile_id):
        rows = self._connect().execute(
            "SELECT data FROM history WHERE profile_id = ? ORDER BY seq DESC",
            (profile_id,)).fetchall()
        return [json.loads(r["data"]) for r in rows]

    def update_history_verification(self, profile_id, metrics, record_id=None):
        conn = self._connect()
        if record_id:
            row = conn.execute("SELECT id, data FROM history WHERE profile_id = ? AND id = ?",
                               (profile_id, record_id)).fetchone()
        else:
            row = conn.execute(
                "SELECT id, data FROM history WHERE profile_id = ? ORDER BY seq DESC LIMIT 1",
                (profile_id,)).fetchone()
        if row is None:
            return False
        record = json.loads(row["data"])
        record["verification_metrics"] = metrics
        conn.execute("UPDATE history SET data = ? WHERE id = ?", (json.dumps(record), row["id"]))
        conn.commit()
        return True

    def delete_history(self, profile_id):
        conn = self._connect()
        conn.execute("DELETE FROM history WHERE profile_id = ?", (profile_id,))
        conn.commit()

    # ── Snapshots ─────────────────────────────────────────────────────────

    def save_snapshot(self, profile_id, label, content):
        sid = new_id()
        conn = self._connect()
        conn.execute(
            "INSERT INTO snapshots (id, profile_id, created_at, label, content) VALUES (?, ?, ?, ?, ?)",
            (sid, profile_id, now_iso(), label, content))
        conn.commit()
        return sid

    def get_snapshot(self, snapshot_id):
        row = self._connect().execute(
            "SELECT * FROM snapshots WHERE id = ?", (snapshot_id,)).fetchone()
        return dict(row) if row else None

    def list_snapshots(self, profile_id):
        rows = self._connect().execute(
            "SELECT * FROM snapshots WHERE profile_id = ? ORDER BY created_at DESC",
            (profile_id,)).fetchall()
        return [dict(r) for r in rows]

    # ── Logs ──────────────────────────────────────────────────────────────

    def save_log(self, profile_id, path, size, meta=None):
        lid = new_id()
        conn = self._connect()
        conn.execute(
            "INSERT INTO logs (id, profile_id, created_at, path, size, data) VALUES (?, ?, ?, ?, ?, ?)",
            (lid, profile_id, now_iso(), path, size, json.dumps(meta or {})))
        conn.commit()
        return lid

    def _log_row(self, row):
        entry = {k: row[k] for k in ("id", "profile_id", "created_at", "path", "size")}
        entry["meta"] = json.loads(row["data"]) if row["data"] else {}
        return entry

    def get_log(self, log_id):
        row = self._connect().execute("SELECT * FROM logs WHERE id = ?", (log_id,)).fetchone()
        return self._log_row(row) if row else None

    def list_logs(self, profile_id):
        rows = self._connect().execute(
            "SELECT * FROM logs WHERE profile_id = ? ORDER BY created_at DESC",
            (profile_id,)).fetchall()
        return [self._log_row(r) for r in rows]

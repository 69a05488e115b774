"""
SQLite database initialization and connection for Tasktide.
Self-bootstrapping: creates DB file, tables, indexes, and constraints on first run.
"""
from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Default DB path: package directory
_DEFAULT_DB_PATH = Path(__file__).resolve().parent / "tasktide.db"

# Wait up to this many seconds for locks (web requests + scheduler thread share the DB)
_CONNECT_TIMEOUT = 30.0

_SCHEMA = """
-- Repeating rules: templates that spawn one task per occurrence.
-- rrule: recurrence spec (daily / weekly:<day> / monthly:<n|last> or an RFC 5545 RRULE)
-- next_occurrence: YYYY-MM-DD of the next instance to spawn
-- checklist_template: JSON [{"title": ...}, ...]; tags_template: JSON [tag_id, ...]
CREATE TABLE IF NOT EXISTS repeating_rules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    rrule TEXT NOT NULL,
    next_occurrence TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'paused')),
    title TEXT NOT NULL,
    notes TEXT,
    project_id TEXT,
    heading_id TEXT,
    area_id TEXT,
    checklist_template TEXT,
    tags_template TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_repeating_rules_due ON repeating_rules(user_id, status, next_occurrence);

-- Tasks. status: inbox | anytime | someday | scheduled | completed | trashed
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    notes TEXT,
    status TEXT NOT NULL DEFAULT 'inbox'
        CHECK (status IN ('inbox', 'anytime', 'someday', 'scheduled', 'completed', 'trashed')),
    scheduled_date TEXT,
    deadline TEXT,
    position REAL NOT NULL DEFAULT 0,
    project_id TEXT,
    heading_id TEXT,
    area_id TEXT,
    repeating_rule_id TEXT,
    completed_at TEXT,
    trashed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    FOREIGN KEY (repeating_rule_id) REFERENCES repeating_rules(id)
);

CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id);
CREATE INDEX IF NOT EXISTS idx_tasks_scheduled_date ON tasks(scheduled_date);
-- At most one live instance per (rule, occurrence date)
CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_rule_occurrence
    ON tasks(repeating_rule_id, scheduled_date)
    WHERE repeating_rule_id IS NOT NULL AND deleted_at IS NULL AND trashed_at IS NULL;

CREATE TABLE IF NOT EXISTS checklist_items (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    title TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    position REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_checklist_items_task ON checklist_items(task_id);

-- Task to tag association (tag ids are opaque; tags themselves live elsewhere)
CREATE TABLE IF NOT EXISTS task_tags (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    tag_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_task_tags_task ON task_tags(task_id);

-- History log for task and rule events (audit)
CREATE TABLE IF NOT EXISTS task_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    event TEXT NOT NULL,
    payload TEXT
);

CREATE INDEX IF NOT EXISTS idx_task_history_subject ON task_history(subject_id);
"""

_initialized: set[Path] = set()


def get_db_path() -> Path:
    """Return the database file path: TASKTIDE_DB_PATH, then config, then the package default."""
    env_path = (os.environ.get("TASKTIDE_DB_PATH") or "").strip()
    if env_path:
        return Path(env_path).expanduser()
    try:
        from .config import load as load_config
        path = load_config().database_path
        if path:
            return Path(path).expanduser()
    except (OSError, ValueError):
        pass
    return _DEFAULT_DB_PATH


def init_database(path: Path | None = None) -> Path:
    """
    Ensure the database exists and is initialized. Creates file and all tables/indexes.
    Returns the path to the database file.
    """
    db_path = (path or get_db_path()).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)
        conn.commit()
    finally:
        conn.close()
    _initialized.add(db_path)
    return db_path


def get_connection(path: Path | None = None) -> sqlite3.Connection:
    """Return a connection to the database, bootstrapping the schema on first use of a path."""
    db_path = (path or get_db_path()).resolve()
    if db_path not in _initialized or not db_path.exists():
        init_database(db_path)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = sqlite3.Row
    return conn


def record_history(conn: sqlite3.Connection, subject_id: str, event: str, payload: Any = None) -> None:
    """Append an audit event for a task or rule; committed with the caller's transaction."""
    conn.execute(
        "INSERT INTO task_history (subject_id, timestamp, event, payload) VALUES (?, ?, ?, ?)",
        (
            subject_id,
            datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            event,
            json.dumps(payload) if payload is not None else None,
        ),
    )


def migrate() -> Path:
    """Run database init. Use this to migrate manually: python -m tasktide.database"""
    return init_database()


if __name__ == "__main__":
    p = migrate()
    print("Database migrated:", p)

"""SQLite database connection management and schema initialization."""

import sqlite3
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    tag TEXT DEFAULT '',
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'pending',
    blocked_by TEXT DEFAULT '',
    branch TEXT DEFAULT '',
    worker_id INTEGER,
    fixer_id INTEGER,
    error TEXT DEFAULT '',
    attempts INTEGER DEFAULT 0,
    duration TEXT DEFAULT '',
    duration_secs INTEGER,
    notes TEXT DEFAULT '',
    priority INTEGER DEFAULT 0,
    normalized_root TEXT DEFAULT '',
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    claimed_at TEXT,
    completed_at TEXT,
    failed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(priority);

CREATE TABLE IF NOT EXISTS blockers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    description TEXT NOT NULL,
    task_title TEXT DEFAULT '',
    status TEXT DEFAULT 'active' CHECK (status IN ('active', 'resolved')),
    created_at TEXT DEFAULT (datetime('now')),
    resolved_at TEXT
);

CREATE TABLE IF NOT EXISTS workers (
    id INTEGER PRIMARY KEY,
    worker_type TEXT DEFAULT 'dev-worker',
    status TEXT DEFAULT 'idle',
    current_task_id INTEGER REFERENCES tasks(id),
    task_title TEXT DEFAULT '',
    branch TEXT DEFAULT '',
    started_at TEXT,
    heartbeat_epoch INTEGER,
    last_info TEXT DEFAULT '',
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    epoch INTEGER NOT NULL,
    event TEXT NOT NULL,
    detail TEXT DEFAULT '',
    worker_id INTEGER,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Open the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


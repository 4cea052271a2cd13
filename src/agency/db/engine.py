"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'INBOX' CHECK (status IN (
        'INBOX', 'READY', 'IN_PROGRESS', 'DONE', 'QA_TESTING',
        'QA_PASSED', 'QA_FAILED', 'REVIEWING', 'REVIEWED', 'SHIPPED'
    )),
    priority TEXT NOT NULL DEFAULT 'P2' CHECK (priority IN ('P0', 'P1', 'P2', 'P3')),
    size TEXT NOT NULL DEFAULT 'M' CHECK (size IN ('S', 'M', 'L', 'XL')),
    assigned_to TEXT,
    claimed_at TEXT,
    value_statement TEXT,
    acceptance_criteria TEXT DEFAULT '[]',
    context TEXT,
    files_changed TEXT DEFAULT '[]',
    summary TEXT,
    review_required INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT,
    shipped_at TEXT
);

CREATE TABLE IF NOT EXISTS agents (
    name TEXT PRIMARY KEY,
    type TEXT NOT NULL CHECK (type IN (
        'product-owner', 'tech-lead', 'developer', 'qa', 'reviewer', 'devops'
    )),
    specialization TEXT,
    status TEXT NOT NULL DEFAULT 'OFFLINE' CHECK (status IN (
        'OFFLINE', 'IDLE', 'WORKING', 'PAUSED', 'BLOCKED'
    )),
    current_task_id TEXT,
    working_on TEXT,
    blocker TEXT,
    pid INTEGER,
    session_id TEXT,
    last_heartbeat TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    id TEXT PRIMARY KEY,
    agent_name TEXT NOT NULL REFERENCES agents(name),
    external_session_id TEXT,
    status TEXT NOT NULL DEFAULT 'RUNNING' CHECK (status IN (
        'RUNNING', 'PAUSED', 'COMPLETED', 'FAILED', 'TERMINATED'
    )),
    task_id TEXT,
    pid INTEGER,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    started_at TEXT DEFAULT (datetime('now')),
    ended_at TEXT,
    exit_code INTEGER,
    exit_reason TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES agent_sessions(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant', 'injected')),
    content TEXT NOT NULL,
    tool_calls TEXT,
    tool_results TEXT,
    injected INTEGER DEFAULT 0,
    injected_by TEXT,
    sequence INTEGER NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(session_id, sequence)
);

CREATE TABLE IF NOT EXISTS handoffs (
    id TEXT PRIMARY KEY,
    from_agent TEXT NOT NULL,
    to_agent TEXT,
    type TEXT NOT NULL DEFAULT 'general' CHECK (type IN (
        'task-handoff', 'bug-report', 'clarification', 'design-doc',
        'review-request', 'blocker', 'general'
    )),
    title TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    task_id TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING' CHECK (status IN (
        'PENDING', 'CLAIMED', 'RESOLVED', 'DISMISSED'
    )),
    claimed_by TEXT,
    priority TEXT NOT NULL DEFAULT 'normal' CHECK (priority IN ('low', 'normal', 'high', 'urgent')),
    created_at TEXT DEFAULT (datetime('now')),
    claimed_at TEXT,
    resolved_at TEXT
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    agent_name TEXT,
    task_id TEXT,
    session_id TEXT,
    handoff_id TEXT,
    data TEXT DEFAULT '{}',
    message TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_sessions_agent ON agent_sessions(agent_name, status);
CREATE INDEX IF NOT EXISTS idx_handoffs_target ON handoffs(to_agent, status);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE tasks ADD COLUMN sort_order INTEGER DEFAULT 0",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    Connections may be handed to worker threads (agent output readers, the
    orchestration timer), so the same-thread check is off; each caller still
    owns its connection exclusively.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()

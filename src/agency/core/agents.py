"""Agent records: the fixed roster, status updates, and heartbeats."""

import sqlite3
from datetime import datetime

from agency.db.models import AGENT_STATUSES, AGENT_TYPES, Agent

# (name, type, specialization)
DEFAULT_ROSTER = [
    ("product-owner", "product-owner", None),
    ("tech-lead", "tech-lead", None),
    ("dev-alpha", "developer", "backend"),
    ("dev-beta", "developer", "frontend"),
    ("dev-gamma", "developer", "fullstack"),
    ("qa", "qa", None),
    ("reviewer", "reviewer", None),
    ("devops", "devops", None),
]

# Sentinel distinguishing "leave unchanged" from "set to NULL".
_UNSET = object()


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        name=row["name"],
        type=row["type"],
        specialization=row["specialization"],
        status=row["status"],
        current_task_id=row["current_task_id"],
        working_on=row["working_on"],
        blocker=row["blocker"],
        pid=row["pid"],
        session_id=row["session_id"],
        last_heartbeat=_parse_dt(row["last_heartbeat"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


# ── Roster ──────────────────────────────────────────────────────────────────


def register_agent(
    db: sqlite3.Connection,
    name: str,
    agent_type: str,
    specialization: str | None = None,
) -> Agent:
    """Register an agent slot. Existing agents are left untouched."""
    if agent_type not in AGENT_TYPES:
        raise ValueError(f"Invalid agent type: {agent_type!r}")
    db.execute(
        "INSERT OR IGNORE INTO agents (name, type, specialization) VALUES (?, ?, ?)",
        (name, agent_type, specialization),
    )
    db.commit()
    return get_agent(db, name)


def ensure_roster(db: sqlite3.Connection) -> list[Agent]:
    """Seed the default roster. Safe to call on every startup."""
    for name, agent_type, specialization in DEFAULT_ROSTER:
        db.execute(
            "INSERT OR IGNORE INTO agents (name, type, specialization) VALUES (?, ?, ?)",
            (name, agent_type, specialization),
        )
    db.commit()
    return list_agents(db)


def list_agents(
    db: sqlite3.Connection,
    agent_type: str | None = None,
    status: str | None = None,
) -> list[Agent]:
    query = "SELECT * FROM agents WHERE 1=1"
    params: list = []
    if agent_type:
        query += " AND type = ?"
        params.append(agent_type)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY rowid"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def get_agent(db: sqlite3.Connection, name: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE name = ?", (name,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


# ── Status ──────────────────────────────────────────────────────────────────


def update_agent_status(
    db: sqlite3.Connection,
    name: str,
    status: str,
    working_on=_UNSET,
    blocker=_UNSET,
) -> Agent | None:
    """Set an agent's lifecycle status.

    ``working_on`` and ``blocker`` are only written when passed; pass None to
    clear them.
    """
    if status not in AGENT_STATUSES:
        raise ValueError(f"Invalid agent status: {status!r}")

    sets = ["status = ?"]
    params: list = [status]
    if working_on is not _UNSET:
        sets.append("working_on = ?")
        params.append(working_on)
    if blocker is not _UNSET:
        sets.append("blocker = ?")
        params.append(blocker)
    sets.append("updated_at = datetime('now')")
    params.append(name)

    db.execute(f"UPDATE agents SET {', '.join(sets)} WHERE name = ?", params)
    db.commit()
    return get_agent(db, name)


def update_agent_session(
    db: sqlite3.Connection,
    name: str,
    session_id: str | None,
    pid: int | None,
    task_id=_UNSET,
) -> Agent | None:
    """Attach (or with Nones, detach) the live session and process."""
    sets = ["session_id = ?", "pid = ?"]
    params: list = [session_id, pid]
    if task_id is not _UNSET:
        sets.append("current_task_id = ?")
        params.append(task_id)
    sets.append("updated_at = datetime('now')")
    params.append(name)

    db.execute(f"UPDATE agents SET {', '.join(sets)} WHERE name = ?", params)
    db.commit()
    return get_agent(db, name)


def heartbeat(
    db: sqlite3.Connection,
    name: str,
    working_on: str | None = None,
) -> Agent | None:
    """Refresh an agent's heartbeat, optionally updating what it's working on."""
    if working_on is not None:
        db.execute(
            """UPDATE agents SET last_heartbeat = datetime('now'), working_on = ?
               WHERE name = ?""",
            (working_on, name),
        )
    else:
        db.execute(
            "UPDATE agents SET last_heartbeat = datetime('now') WHERE name = ?",
            (name,),
        )
    db.commit()
    return get_agent(db, name)

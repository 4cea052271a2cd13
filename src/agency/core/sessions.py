"""Agent sessions and their message transcripts."""

import json
import sqlite3
import uuid
from datetime import datetime

from agency.db.models import (
    MESSAGE_ROLES,
    SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    AgentSession,
    Message,
)


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_session(row: sqlite3.Row) -> AgentSession:
    return AgentSession(
        id=row["id"],
        agent_name=row["agent_name"],
        external_session_id=row["external_session_id"],
        status=row["status"],
        task_id=row["task_id"],
        pid=row["pid"],
        input_tokens=row["input_tokens"] or 0,
        output_tokens=row["output_tokens"] or 0,
        started_at=_parse_dt(row["started_at"]),
        ended_at=_parse_dt(row["ended_at"]),
        exit_code=row["exit_code"],
        exit_reason=row["exit_reason"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        tool_calls=json.loads(row["tool_calls"]) if row["tool_calls"] else None,
        tool_results=json.loads(row["tool_results"]) if row["tool_results"] else None,
        injected=bool(row["injected"]),
        injected_by=row["injected_by"],
        sequence=row["sequence"],
        created_at=_parse_dt(row["created_at"]),
    )


# ── Sessions ────────────────────────────────────────────────────────────────


def create_session(
    db: sqlite3.Connection,
    agent_name: str,
    external_session_id: str | None = None,
    task_id: str | None = None,
    pid: int | None = None,
) -> AgentSession:
    session_id = uuid.uuid4().hex
    db.execute(
        """INSERT INTO agent_sessions (id, agent_name, external_session_id, task_id, pid)
           VALUES (?, ?, ?, ?, ?)""",
        (session_id, agent_name, external_session_id, task_id, pid),
    )
    db.commit()
    return get_session(db, session_id)


def get_session(db: sqlite3.Connection, session_id: str) -> AgentSession | None:
    row = db.execute("SELECT * FROM agent_sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def list_sessions(
    db: sqlite3.Connection,
    agent_name: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[AgentSession]:
    """List sessions, newest first."""
    query = "SELECT * FROM agent_sessions WHERE 1=1"
    params: list = []
    if agent_name:
        query += " AND agent_name = ?"
        params.append(agent_name)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_session(r) for r in rows]


def update_session_status(
    db: sqlite3.Connection,
    session_id: str,
    status: str,
    exit_code: int | None = None,
    exit_reason: str | None = None,
) -> AgentSession | None:
    """Move a session to a new status. Terminal statuses stamp ``ended_at``."""
    if status not in SESSION_STATUSES:
        raise ValueError(f"Invalid session status: {status!r}")

    if status in TERMINAL_SESSION_STATUSES:
        db.execute(
            """UPDATE agent_sessions
               SET status = ?, exit_code = ?, exit_reason = ?, ended_at = datetime('now')
               WHERE id = ?""",
            (status, exit_code, exit_reason, session_id),
        )
    else:
        db.execute(
            "UPDATE agent_sessions SET status = ? WHERE id = ?",
            (status, session_id),
        )
    db.commit()
    return get_session(db, session_id)


def update_session_pid(db: sqlite3.Connection, session_id: str, pid: int | None):
    db.execute("UPDATE agent_sessions SET pid = ? WHERE id = ?", (pid, session_id))
    db.commit()


def add_session_usage(
    db: sqlite3.Connection,
    session_id: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
):
    db.execute(
        """UPDATE agent_sessions
           SET input_tokens = input_tokens + ?, output_tokens = output_tokens + ?
           WHERE id = ?""",
        (input_tokens, output_tokens, session_id),
    )
    db.commit()


# ── Messages ────────────────────────────────────────────────────────────────


def add_message(
    db: sqlite3.Connection,
    session_id: str,
    role: str,
    content: str,
    tool_calls: list[dict] | None = None,
    tool_results: list[dict] | None = None,
    injected_by: str | None = None,
) -> Message:
    """Append a message to a session's transcript with the next sequence number."""
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Invalid message role: {role!r}")

    row = db.execute(
        "SELECT COALESCE(MAX(sequence), 0) + 1 AS next FROM messages WHERE session_id = ?",
        (session_id,),
    ).fetchone()
    sequence = row["next"]

    cur = db.execute(
        """INSERT INTO messages
           (session_id, role, content, tool_calls, tool_results, injected, injected_by, sequence)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            session_id,
            role,
            content,
            json.dumps(tool_calls) if tool_calls else None,
            json.dumps(tool_results) if tool_results else None,
            1 if role == "injected" else 0,
            injected_by,
            sequence,
        ),
    )
    db.commit()
    row = db.execute("SELECT * FROM messages WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_message(row)


def list_messages(
    db: sqlite3.Connection,
    session_id: str,
    limit: int | None = None,
) -> list[Message]:
    query = "SELECT * FROM messages WHERE session_id = ? ORDER BY sequence"
    params: list = [session_id]
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_message(r) for r in rows]

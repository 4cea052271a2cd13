"""Append-only audit events."""

import json
import sqlite3
from datetime import datetime

from agency.db.models import Event


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        type=row["type"],
        agent_name=row["agent_name"],
        task_id=row["task_id"],
        session_id=row["session_id"],
        handoff_id=row["handoff_id"],
        data=json.loads(row["data"] or "{}"),
        message=row["message"],
        created_at=_parse_dt(row["created_at"]),
    )


def log_event(
    db: sqlite3.Connection,
    event_type: str,
    agent_name: str | None = None,
    task_id: str | None = None,
    session_id: str | None = None,
    handoff_id: str | None = None,
    data: dict | None = None,
    message: str | None = None,
) -> Event:
    """Record an event. Commits immediately."""
    cur = db.execute(
        """INSERT INTO events (type, agent_name, task_id, session_id, handoff_id, data, message)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            event_type,
            agent_name,
            task_id,
            session_id,
            handoff_id,
            json.dumps(data or {}, default=str),
            message,
        ),
    )
    db.commit()
    row = db.execute("SELECT * FROM events WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_event(row)


def list_events(
    db: sqlite3.Connection,
    event_type: str | None = None,
    agent_name: str | None = None,
    task_id: str | None = None,
    since_id: int | None = None,
    limit: int = 100,
) -> list[Event]:
    """List events.

    With ``since_id`` the result is the oldest ``limit`` events after that id,
    in ascending order (for tailing). Otherwise the newest ``limit`` events,
    newest first.
    """
    query = "SELECT * FROM events WHERE 1=1"
    params: list = []
    if event_type:
        # "agent." matches every agent event
        if event_type.endswith("."):
            query += " AND type LIKE ?"
            params.append(event_type + "%")
        else:
            query += " AND type = ?"
            params.append(event_type)
    if agent_name:
        query += " AND agent_name = ?"
        params.append(agent_name)
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if since_id is not None:
        query += " AND id > ? ORDER BY id ASC"
        params.append(since_id)
    else:
        query += " ORDER BY id DESC"
    query += " LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_event(r) for r in rows]


def latest_event_id(db: sqlite3.Connection) -> int:
    row = db.execute("SELECT COALESCE(MAX(id), 0) FROM events").fetchone()
    return row[0]

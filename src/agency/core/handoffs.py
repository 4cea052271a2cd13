"""Handoffs: asynchronous notes between agents."""

import sqlite3
import uuid
from datetime import datetime

from agency.core.events import log_event
from agency.db.models import HANDOFF_PRIORITIES, HANDOFF_STATUSES, HANDOFF_TYPES, Handoff

_PRIORITY_ORDER = """CASE priority
    WHEN 'urgent' THEN 0 WHEN 'high' THEN 1 WHEN 'normal' THEN 2 ELSE 3 END"""


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_handoff(row: sqlite3.Row) -> Handoff:
    return Handoff(
        id=row["id"],
        from_agent=row["from_agent"],
        to_agent=row["to_agent"],
        type=row["type"],
        title=row["title"],
        content=row["content"],
        task_id=row["task_id"],
        status=row["status"],
        claimed_by=row["claimed_by"],
        priority=row["priority"],
        created_at=_parse_dt(row["created_at"]),
        claimed_at=_parse_dt(row["claimed_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
    )


def create_handoff(
    db: sqlite3.Connection,
    from_agent: str,
    title: str,
    content: str = "",
    to_agent: str | None = None,
    handoff_type: str = "general",
    task_id: str | None = None,
    priority: str = "normal",
) -> Handoff:
    """Create a handoff. A handoff with no ``to_agent`` is a broadcast."""
    if not title or not title.strip():
        raise ValueError("Title is required")
    if handoff_type not in HANDOFF_TYPES:
        raise ValueError(f"Invalid handoff type: {handoff_type!r}")
    if priority not in HANDOFF_PRIORITIES:
        raise ValueError(f"Invalid handoff priority: {priority!r}")

    handoff_id = uuid.uuid4().hex[:12]
    db.execute(
        """INSERT INTO handoffs (id, from_agent, to_agent, type, title, content, task_id, priority)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (handoff_id, from_agent, to_agent, handoff_type, title.strip(), content, task_id, priority),
    )
    db.commit()
    log_event(db, "handoff.created", agent_name=from_agent, task_id=task_id, handoff_id=handoff_id,
              data={"to_agent": to_agent, "type": handoff_type, "priority": priority},
              message=f"Handoff from {from_agent} to {to_agent or 'everyone'}: {title.strip()}")
    return get_handoff(db, handoff_id)


def get_handoff(db: sqlite3.Connection, handoff_id: str) -> Handoff | None:
    row = db.execute("SELECT * FROM handoffs WHERE id = ?", (handoff_id,)).fetchone()
    if not row:
        return None
    return _row_to_handoff(row)


def list_handoffs(
    db: sqlite3.Connection,
    to_agent: str | None = None,
    status: str | None = None,
    limit: int | None = None,
    targeted_only: bool = False,
) -> list[Handoff]:
    """List handoffs, most urgent first, then newest.

    Filtering by ``to_agent`` also returns broadcast handoffs (no target).
    ``targeted_only`` drops broadcasts entirely.
    """
    query = "SELECT * FROM handoffs WHERE 1=1"
    params: list = []
    if to_agent:
        query += " AND (to_agent = ? OR to_agent IS NULL)"
        params.append(to_agent)
    if targeted_only:
        query += " AND to_agent IS NOT NULL"
    if status:
        if status not in HANDOFF_STATUSES:
            raise ValueError(f"Invalid handoff status: {status!r}")
        query += " AND status = ?"
        params.append(status)
    query += f" ORDER BY {_PRIORITY_ORDER}, created_at DESC, rowid DESC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_handoff(r) for r in rows]


def claim_handoff(db: sqlite3.Connection, handoff_id: str, agent_name: str) -> Handoff | None:
    handoff = get_handoff(db, handoff_id)
    if not handoff:
        return None
    if handoff.status != "PENDING":
        raise ValueError(f"Handoff '{handoff_id}' is {handoff.status}, not PENDING")
    db.execute(
        """UPDATE handoffs SET status = 'CLAIMED', claimed_by = ?, claimed_at = datetime('now')
           WHERE id = ?""",
        (agent_name, handoff_id),
    )
    db.commit()
    log_event(db, "handoff.claimed", agent_name=agent_name, task_id=handoff.task_id,
              handoff_id=handoff_id, message=f"{agent_name} claimed handoff: {handoff.title}")
    return get_handoff(db, handoff_id)


def resolve_handoff(db: sqlite3.Connection, handoff_id: str) -> Handoff | None:
    return _close(db, handoff_id, "RESOLVED")


def dismiss_handoff(db: sqlite3.Connection, handoff_id: str) -> Handoff | None:
    return _close(db, handoff_id, "DISMISSED")


def _close(db: sqlite3.Connection, handoff_id: str, status: str) -> Handoff | None:
    handoff = get_handoff(db, handoff_id)
    if not handoff:
        return None
    if handoff.status in ("RESOLVED", "DISMISSED"):
        raise ValueError(f"Handoff '{handoff_id}' is already {handoff.status}")
    db.execute(
        "UPDATE handoffs SET status = ?, resolved_at = datetime('now') WHERE id = ?",
        (status, handoff_id),
    )
    db.commit()
    log_event(db, f"handoff.{status.lower()}", task_id=handoff.task_id, handoff_id=handoff_id,
              message=f"Handoff {status.lower()}: {handoff.title}")
    return get_handoff(db, handoff_id)

"""Task management and workflow transitions."""

import json
import re
import sqlite3
from datetime import datetime

from agency.core.events import log_event
from agency.db.models import PRIORITIES, SIZES, TASK_STATUSES, Task

# Statuses that count as "late stage" work other agents may want to read about.
RECENT_WORK_STATUSES = ("DONE", "QA_PASSED", "QA_TESTING", "REVIEWED", "SHIPPED")

_JSON_FIELDS = {"acceptance_criteria", "files_changed"}
_UPDATABLE = {
    "title",
    "description",
    "status",
    "priority",
    "size",
    "assigned_to",
    "value_statement",
    "acceptance_criteria",
    "context",
    "files_changed",
    "summary",
    "review_required",
    "sort_order",
}
_ORDERINGS = {
    "priority": "priority ASC, sort_order ASC, created_at ASC, rowid ASC",
    "oldest": "COALESCE(completed_at, updated_at) ASC, rowid ASC",
    "recent": "updated_at DESC, rowid DESC",
}


class TransitionError(ValueError):
    """Raised when a workflow transition is not allowed from the task's status."""

    def __init__(self, task_id: str, current: str, operation: str, allowed: tuple[str, ...]):
        self.task_id = task_id
        self.current = current
        self.operation = operation
        super().__init__(
            f"Cannot {operation} task '{task_id}' in status {current} "
            f"(requires {' or '.join(allowed)})"
        )


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute("SELECT id FROM tasks WHERE id = ?", (base_slug,)).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute("SELECT id FROM tasks WHERE id = ?", (candidate,)).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str | None = None,
    status: str = "INBOX",
    priority: str = "P2",
    size: str = "M",
    value_statement: str | None = None,
    acceptance_criteria: list[str] | None = None,
    context: str | None = None,
    review_required: bool = False,
    created_by: str | None = None,
) -> Task:
    """Create a new task. New work lands in INBOX unless a status is given."""
    if not title or not title.strip():
        raise ValueError("Title is required")
    _check_choice("status", status, TASK_STATUSES)
    _check_choice("priority", priority, PRIORITIES)
    _check_choice("size", size, SIZES)

    task_id = _unique_id(db, slugify(title))
    db.execute(
        """INSERT INTO tasks
           (id, title, description, status, priority, size, value_statement,
            acceptance_criteria, context, review_required)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id,
            title.strip(),
            description,
            status,
            priority,
            size,
            value_statement,
            json.dumps(acceptance_criteria or []),
            context,
            1 if review_required else 0,
        ),
    )
    db.commit()
    log_event(db, "task.created", agent_name=created_by, task_id=task_id,
              data={"priority": priority, "status": status}, message=f"Task created: {title.strip()}")
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    status: str | list[str] | tuple[str, ...] | None = None,
    assigned_to: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
    order: str = "priority",
) -> list[Task]:
    """List tasks.

    ``order`` is "priority" (highest priority first, then insertion order),
    "oldest" (the order tasks reached their current stage) or "recent"
    (most recently updated first).
    """
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

    if assigned_to:
        query += " AND assigned_to = ?"
        params.append(assigned_to)

    if order not in _ORDERINGS:
        raise ValueError(f"Invalid order: {order!r}")
    query += f" ORDER BY {_ORDERINGS[order]}"

    if limit:
        query += " LIMIT ?"
        params.append(limit)
        if offset:
            query += " OFFSET ?"
            params.append(offset)
    elif offset:
        query += " LIMIT -1 OFFSET ?"
        params.append(offset)

    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def count_tasks(db: sqlite3.Connection, status: str | None = None) -> int:
    if status:
        row = db.execute("SELECT COUNT(*) FROM tasks WHERE status = ?", (status,)).fetchone()
    else:
        row = db.execute("SELECT COUNT(*) FROM tasks").fetchone()
    return row[0]


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Partially update a task. Unknown fields are rejected."""
    task = get_task(db, task_id)
    if not task:
        return None

    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
    if "status" in fields:
        _check_choice("status", fields["status"], TASK_STATUSES)
    if "priority" in fields:
        _check_choice("priority", fields["priority"], PRIORITIES)
    if "size" in fields:
        _check_choice("size", fields["size"], SIZES)

    updates = {}
    for key, value in fields.items():
        if key in _JSON_FIELDS:
            value = json.dumps(value or [])
        elif key == "review_required":
            value = 1 if value else 0
        updates[key] = value
    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    db.commit()
    log_event(db, "task.updated", task_id=task_id, data={"fields": sorted(updates)})
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task. Administrative; the orchestrator never deletes work."""
    result = db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    if result.rowcount == 0:
        return False
    log_event(db, "task.deleted", task_id=task_id, message=f"Task deleted: {task_id}")
    return True


# ── Workflow Transitions ─────────────────────────────────────────────────────


def triage_task(db: sqlite3.Connection, task_id: str, agent_name: str | None = None) -> Task | None:
    """INBOX -> READY."""
    return _transition(db, task_id, "triage", ("INBOX",), "READY", "task.triaged",
                       agent_name=agent_name)


def claim_task(db: sqlite3.Connection, task_id: str, agent_name: str) -> Task | None:
    """READY (or QA_FAILED rework) -> IN_PROGRESS, assigned to the agent."""
    if not agent_name:
        raise ValueError("Agent name is required")
    return _transition(
        db, task_id, "claim", ("READY", "QA_FAILED"), "IN_PROGRESS", "task.claimed",
        agent_name=agent_name,
        extra_sql="claimed_at = datetime('now')",
        assigned_to=agent_name,
    )


def complete_task(
    db: sqlite3.Connection,
    task_id: str,
    summary: str | None = None,
    files_changed: list[str] | None = None,
    agent_name: str | None = None,
) -> Task | None:
    """IN_PROGRESS -> DONE, recording what was done."""
    return _transition(
        db, task_id, "complete", ("IN_PROGRESS",), "DONE", "task.completed",
        agent_name=agent_name,
        data={"files_changed": files_changed or []},
        extra_sql="completed_at = datetime('now')",
        summary=summary,
        files_changed=json.dumps(files_changed or []),
    )


def start_qa(db: sqlite3.Connection, task_id: str, agent_name: str | None = None) -> Task | None:
    """DONE -> QA_TESTING."""
    return _transition(db, task_id, "start QA on", ("DONE",), "QA_TESTING", "task.qa_started",
                       agent_name=agent_name)


def pass_qa(db: sqlite3.Connection, task_id: str, agent_name: str | None = None) -> Task | None:
    """QA_TESTING -> QA_PASSED."""
    return _transition(db, task_id, "pass QA on", ("QA_TESTING",), "QA_PASSED", "task.qa_passed",
                       agent_name=agent_name)


def fail_qa(
    db: sqlite3.Connection,
    task_id: str,
    reason: str | None = None,
    agent_name: str | None = None,
) -> Task | None:
    """QA_TESTING -> QA_FAILED."""
    return _transition(db, task_id, "fail QA on", ("QA_TESTING",), "QA_FAILED", "task.qa_failed",
                       agent_name=agent_name, data={"reason": reason})


def start_review(db: sqlite3.Connection, task_id: str, agent_name: str | None = None) -> Task | None:
    """QA_PASSED -> REVIEWING, only for tasks flagged for review."""
    task = get_task(db, task_id)
    if task and task.status == "QA_PASSED" and not task.review_required:
        raise TransitionError(task_id, task.status, "review", ("review_required",))
    return _transition(db, task_id, "review", ("QA_PASSED",), "REVIEWING", "task.review_started",
                       agent_name=agent_name)


def approve_review(db: sqlite3.Connection, task_id: str, agent_name: str | None = None) -> Task | None:
    """REVIEWING -> REVIEWED."""
    return _transition(db, task_id, "approve", ("REVIEWING",), "REVIEWED", "task.reviewed",
                       agent_name=agent_name)


def reject_review(
    db: sqlite3.Connection,
    task_id: str,
    reason: str | None = None,
    agent_name: str | None = None,
) -> Task | None:
    """REVIEWING -> QA_FAILED, sending the work back to a developer."""
    return _transition(db, task_id, "reject", ("REVIEWING",), "QA_FAILED", "task.review_rejected",
                       agent_name=agent_name, data={"reason": reason})


def ship_task(db: sqlite3.Connection, task_id: str, agent_name: str | None = None) -> Task | None:
    """REVIEWED, or QA_PASSED without required review -> SHIPPED."""
    task = get_task(db, task_id)
    if task and task.status == "QA_PASSED" and task.review_required:
        raise TransitionError(task_id, task.status, "ship", ("REVIEWED",))
    return _transition(
        db, task_id, "ship", ("REVIEWED", "QA_PASSED"), "SHIPPED", "task.shipped",
        agent_name=agent_name,
        extra_sql="shipped_at = datetime('now')",
    )


def set_task_status(db: sqlite3.Connection, task_id: str, status: str) -> Task | None:
    """Set any status without checking the workflow graph.

    This is the escape hatch for operators; prefer the transition functions.
    """
    _check_choice("status", status, TASK_STATUSES)
    task = get_task(db, task_id)
    if not task:
        return None

    extra = ""
    if status == "SHIPPED" and task.status != "SHIPPED":
        extra = ", shipped_at = datetime('now')"
    elif status == "DONE" and task.status != "DONE":
        extra = ", completed_at = datetime('now')"
    db.execute(
        f"UPDATE tasks SET status = ?, updated_at = datetime('now'){extra} WHERE id = ?",
        (status, task_id),
    )
    db.commit()
    log_event(db, "task.status_changed", task_id=task_id,
              data={"from": task.status, "to": status},
              message=f"{task.title}: {task.status} -> {status}")
    return get_task(db, task_id)


def _transition(
    db: sqlite3.Connection,
    task_id: str,
    operation: str,
    allowed_from: tuple[str, ...],
    to_status: str,
    event_type: str,
    agent_name: str | None = None,
    data: dict | None = None,
    extra_sql: str | None = None,
    **columns,
) -> Task | None:
    task = get_task(db, task_id)
    if not task:
        return None
    if task.status not in allowed_from:
        raise TransitionError(task_id, task.status, operation, allowed_from)

    set_parts = ["status = ?"] + [f"{k} = ?" for k in columns]
    if extra_sql:
        set_parts.append(extra_sql)
    set_parts.append("updated_at = datetime('now')")
    # Guarding on status in the WHERE clause keeps a concurrent transition
    # from being overwritten.
    placeholders = ", ".join("?" for _ in allowed_from)
    result = db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} "
        f"WHERE id = ? AND status IN ({placeholders})",
        [to_status, *columns.values(), task_id, *allowed_from],
    )
    db.commit()
    if result.rowcount == 0:
        current = get_task(db, task_id)
        raise TransitionError(task_id, current.status if current else "?", operation, allowed_from)

    payload = {"from": task.status, "to": to_status}
    payload.update({k: v for k, v in (data or {}).items() if v is not None})
    log_event(db, event_type, agent_name=agent_name, task_id=task_id, data=payload,
              message=f"{task.title}: {task.status} -> {to_status}")
    return get_task(db, task_id)


def _check_choice(name: str, value: str, choices: tuple[str, ...]):
    if value not in choices:
        raise ValueError(f"Invalid {name}: {value!r} (expected one of {', '.join(choices)})")


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        size=row["size"],
        assigned_to=row["assigned_to"],
        claimed_at=_parse_dt(row["claimed_at"]),
        value_statement=row["value_statement"],
        acceptance_criteria=json.loads(row["acceptance_criteria"] or "[]"),
        context=row["context"],
        files_changed=json.loads(row["files_changed"] or "[]"),
        summary=row["summary"],
        review_required=bool(row["review_required"]),
        sort_order=row["sort_order"] or 0,
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        shipped_at=_parse_dt(row["shipped_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)

"""MCP server exposing the task board and handoffs to the agents themselves."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agency.config import Config, get_config
from agency.core import agents as agents_mod
from agency.core import events as events_mod
from agency.core import handoffs as handoffs_mod
from agency.core import tasks as tasks_mod
from agency.db.engine import init_db

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    agents_mod.ensure_roster(db)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("agency", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _task_result(task, task_id: str) -> dict:
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(
    ctx: Context,
    status: str | None = None,
    assigned_to: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """List tasks, highest priority first. ``status`` may be comma-separated (e.g. "READY,QA_FAILED")."""
    app = _ctx(ctx)
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    tasks = tasks_mod.list_tasks(app.db, status=statuses, assigned_to=assigned_to, limit=limit)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task, including its acceptance criteria."""
    app = _ctx(ctx)
    return _task_result(tasks_mod.get_task(app.db, task_id), task_id)


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    priority: str = "P2",
    size: str = "M",
    value_statement: str | None = None,
    acceptance_criteria: list[str] | None = None,
    review_required: bool = False,
    created_by: str | None = None,
) -> dict:
    """Create a new task in INBOX. Priority: P0 (highest) to P3, size: S, M, L or XL."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db,
            title,
            description=description or None,
            priority=priority,
            size=size,
            value_statement=value_statement,
            acceptance_criteria=acceptance_criteria,
            review_required=review_required,
            created_by=created_by,
        )
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def triage_task(ctx: Context, task_id: str, agent_name: str | None = None) -> dict:
    """Move a triaged task from INBOX to READY so developers can pick it up."""
    app = _ctx(ctx)
    try:
        return _task_result(tasks_mod.triage_task(app.db, task_id, agent_name), task_id)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def claim_task(ctx: Context, task_id: str, agent_name: str) -> dict:
    """Claim a READY (or QA_FAILED) task and start working on it."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.claim_task(app.db, task_id, agent_name)
        if task:
            agents_mod.update_agent_status(app.db, agent_name, "WORKING", working_on=task.title)
        return _task_result(task, task_id)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def complete_task(
    ctx: Context,
    task_id: str,
    summary: str,
    files_changed: list[str] | None = None,
    agent_name: str | None = None,
) -> dict:
    """Mark your IN_PROGRESS task DONE with a summary and the files you changed."""
    app = _ctx(ctx)
    try:
        return _task_result(
            tasks_mod.complete_task(app.db, task_id, summary, files_changed, agent_name), task_id
        )
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def start_qa(ctx: Context, task_id: str, agent_name: str | None = None) -> dict:
    """QA: begin testing a DONE task."""
    app = _ctx(ctx)
    try:
        return _task_result(tasks_mod.start_qa(app.db, task_id, agent_name), task_id)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def pass_qa(ctx: Context, task_id: str, agent_name: str | None = None) -> dict:
    """QA: the task meets its acceptance criteria."""
    app = _ctx(ctx)
    try:
        return _task_result(tasks_mod.pass_qa(app.db, task_id, agent_name), task_id)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def fail_qa(ctx: Context, task_id: str, reason: str, agent_name: str | None = None) -> dict:
    """QA: send the task back to development. Explain what failed in ``reason``."""
    app = _ctx(ctx)
    try:
        return _task_result(tasks_mod.fail_qa(app.db, task_id, reason, agent_name), task_id)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def start_review(ctx: Context, task_id: str, agent_name: str | None = None) -> dict:
    """Reviewer: begin reviewing a QA_PASSED task that requires review."""
    app = _ctx(ctx)
    try:
        return _task_result(tasks_mod.start_review(app.db, task_id, agent_name), task_id)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def approve_review(ctx: Context, task_id: str, agent_name: str | None = None) -> dict:
    """Reviewer: approve the task so it can ship."""
    app = _ctx(ctx)
    try:
        return _task_result(tasks_mod.approve_review(app.db, task_id, agent_name), task_id)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def ship_task(ctx: Context, task_id: str, agent_name: str | None = None) -> dict:
    """DevOps: mark a REVIEWED (or QA_PASSED, no review needed) task SHIPPED."""
    app = _ctx(ctx)
    try:
        return _task_result(tasks_mod.ship_task(app.db, task_id, agent_name), task_id)
    except ValueError as e:
        return {"error": str(e)}


# ── Handoff Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def create_handoff(
    ctx: Context,
    from_agent: str,
    title: str,
    content: str = "",
    to_agent: str | None = None,
    handoff_type: str = "general",
    task_id: str | None = None,
    priority: str = "normal",
) -> dict:
    """Leave a note for another agent. Omit ``to_agent`` to broadcast to everyone.

    Types: task-handoff, bug-report, clarification, design-doc, review-request,
    blocker, general. Priority: low, normal, high, urgent.
    """
    app = _ctx(ctx)
    try:
        handoff = handoffs_mod.create_handoff(
            app.db, from_agent, title, content, to_agent, handoff_type, task_id, priority
        )
    except ValueError as e:
        return {"error": str(e)}
    return _handoff_to_dict(handoff)


@mcp.tool()
def list_handoffs(
    ctx: Context,
    to_agent: str | None = None,
    status: str | None = "PENDING",
    limit: int = 20,
) -> list[dict]:
    """List handoffs, most urgent first. Filtering by ``to_agent`` includes broadcasts."""
    app = _ctx(ctx)
    handoffs = handoffs_mod.list_handoffs(app.db, to_agent=to_agent, status=status, limit=limit)
    return [_handoff_to_dict(h) for h in handoffs]


@mcp.tool()
def claim_handoff(ctx: Context, handoff_id: str, agent_name: str) -> dict:
    """Claim a pending handoff before acting on it."""
    app = _ctx(ctx)
    try:
        handoff = handoffs_mod.claim_handoff(app.db, handoff_id, agent_name)
    except ValueError as e:
        return {"error": str(e)}
    if not handoff:
        return {"error": f"Handoff not found: {handoff_id}"}
    return _handoff_to_dict(handoff)


@mcp.tool()
def resolve_handoff(ctx: Context, handoff_id: str) -> dict:
    """Mark a handoff resolved once it has been dealt with."""
    app = _ctx(ctx)
    try:
        handoff = handoffs_mod.resolve_handoff(app.db, handoff_id)
    except ValueError as e:
        return {"error": str(e)}
    if not handoff:
        return {"error": f"Handoff not found: {handoff_id}"}
    return _handoff_to_dict(handoff)


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def heartbeat(ctx: Context, agent_name: str, working_on: str | None = None) -> dict:
    """Report that you're alive and what you're working on."""
    app = _ctx(ctx)
    agent = agents_mod.heartbeat(app.db, agent_name, working_on)
    if not agent:
        return {"error": f"Agent not found: {agent_name}"}
    events_mod.log_event(app.db, "agent.heartbeat", agent_name=agent_name,
                         data={"working_on": working_on})
    return _agent_to_dict(agent)


@mcp.tool()
def report_blocker(ctx: Context, agent_name: str, blocker: str, task_id: str | None = None) -> dict:
    """Report that you're blocked. Creates an urgent blocker handoff for the tech lead."""
    app = _ctx(ctx)
    agent = agents_mod.update_agent_status(app.db, agent_name, "BLOCKED", blocker=blocker)
    if not agent:
        return {"error": f"Agent not found: {agent_name}"}
    handoff = handoffs_mod.create_handoff(
        app.db,
        agent_name,
        f"Blocked: {blocker[:80]}",
        content=blocker,
        to_agent="tech-lead",
        handoff_type="blocker",
        task_id=task_id,
        priority="urgent",
    )
    events_mod.log_event(app.db, "agent.blocked", agent_name=agent_name, task_id=task_id,
                         handoff_id=handoff.id, message=f"{agent_name} blocked: {blocker}")
    logger.info("Agent %s reported blocker: %s", agent_name, blocker)
    return {"agent": _agent_to_dict(agent), "handoff": _handoff_to_dict(handoff)}


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_to_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "size": t.size,
        "assigned_to": t.assigned_to,
        "value_statement": t.value_statement,
        "acceptance_criteria": t.acceptance_criteria,
        "context": t.context,
        "files_changed": t.files_changed,
        "summary": t.summary,
        "review_required": t.review_required,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
        "completed_at": t.completed_at.isoformat() if t.completed_at else None,
    }


def _handoff_to_dict(h) -> dict:
    return {
        "id": h.id,
        "from_agent": h.from_agent,
        "to_agent": h.to_agent,
        "type": h.type,
        "title": h.title,
        "content": h.content,
        "task_id": h.task_id,
        "status": h.status,
        "claimed_by": h.claimed_by,
        "priority": h.priority,
        "created_at": h.created_at.isoformat() if h.created_at else None,
    }


def _agent_to_dict(a) -> dict:
    return {
        "name": a.name,
        "type": a.type,
        "status": a.status,
        "current_task_id": a.current_task_id,
        "working_on": a.working_on,
        "blocker": a.blocker,
        "last_heartbeat": a.last_heartbeat.isoformat() if a.last_heartbeat else None,
    }

"""CLI entry point for the agency."""

import json
import logging
import sys
from pathlib import Path

import click

from agency.config import get_config
from agency.core import agents as agents_mod
from agency.core import handoffs as handoffs_mod
from agency.core import sessions as sessions_mod
from agency.core import tasks as tasks_mod
from agency.db.engine import get_db
from agency.db.models import (
    HANDOFF_PRIORITIES,
    HANDOFF_STATUSES,
    HANDOFF_TYPES,
    PRIORITIES,
    SIZES,
    TASK_STATUSES,
)

ROLE_TEMPLATE = """# {name}

You are **{name}**, the {type} of a small software team run by an orchestrator.
{specialization}
## Responsibilities

- Pick up work that matches your role from the task board.
- Keep your heartbeat and `working_on` current.
- Leave a handoff for whoever comes next when you stop.
"""


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """agency - multi-agent orchestrator CLI"""
    logging.basicConfig(
        level=getattr(logging, get_config().log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Setup ─────────────────────────────────────────────────────────────────────


@main.command("init")
@click.option("--roles/--no-roles", default=True, help="Write missing AGENT.md role files")
def init_command(roles):
    """Create the database, seed the agent roster and scaffold role files."""
    config = get_config()
    with _get_db() as db:
        agents = agents_mod.ensure_roster(db)
    click.echo(f"Database ready: {config.db_path}")
    click.echo(f"  Agents: {len(agents)}")

    if not roles:
        return
    for agent in agents:
        role_file = Path(config.agency_dir) / "agents" / agent.name / "AGENT.md"
        if role_file.exists():
            continue
        role_file.parent.mkdir(parents=True, exist_ok=True)
        specialization = (
            f"Your specialization is {agent.specialization}.\n" if agent.specialization else ""
        )
        role_file.write_text(
            ROLE_TEMPLATE.format(name=agent.name, type=agent.type, specialization=specialization)
        )
        click.echo(f"  Wrote {role_file}")


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--auto/--no-auto", default=None, help="Run the orchestration loop")
@click.option("--interval-ms", default=None, type=int, help="Orchestration interval")
def serve_command(host, port, auto, interval_ms):
    """Start the HTTP API and agent manager."""
    from agency.web.app import run_server

    config = get_config()
    if auto is not None:
        config.auto_orchestrate = auto
    if interval_ms:
        config.orchestration_interval_ms = interval_ms
    click.echo(f"Starting agency at http://{host or config.host}:{port or config.port}")
    run_server(config, host=host, port=port)


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default=None, help="Task description")
@click.option("--priority", "-p", default="P2", type=click.Choice(PRIORITIES), help="P0 (highest) to P3")
@click.option("--size", "-s", default="M", type=click.Choice(SIZES), help="Task size")
@click.option("--value", default=None, help="Value statement")
@click.option("--criterion", "-c", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--review/--no-review", default=False, help="Require code review before shipping")
def task_add(title, description, priority, size, value, criterion, review):
    """Create a new task in INBOX."""
    with _get_db() as db:
        task = tasks_mod.create_task(
            db,
            title,
            description=description,
            priority=priority,
            size=size,
            value_statement=value,
            acceptance_criteria=list(criterion),
            review_required=review,
            created_by="cli",
        )
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status (comma-separated)")
@click.option("--assigned-to", default=None, help="Filter by assignee")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, assigned_to, json_output):
    """List tasks, highest priority first."""
    statuses = [s.strip().upper() for s in status.split(",")] if status else None
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=statuses, assigned_to=assigned_to)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        who = f" @{task.assigned_to}" if task.assigned_to else ""
        click.echo(f"  {task.priority} {task.id}: {task.title} ({task.status}){who}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)

    click.echo(f"Task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Status: {task.status}")
    click.echo(f"  Priority: {task.priority}  Size: {task.size}")
    if task.assigned_to:
        click.echo(f"  Assigned to: {task.assigned_to}")
    if task.description:
        click.echo(f"  Description: {task.description}")
    if task.value_statement:
        click.echo(f"  Value: {task.value_statement}")
    if task.acceptance_criteria:
        click.echo("  Acceptance criteria:")
        for criterion in task.acceptance_criteria:
            click.echo(f"    - {criterion}")
    if task.summary:
        click.echo(f"  Summary: {task.summary}")
    if task.files_changed:
        click.echo(f"  Files: {', '.join(task.files_changed)}")
    if task.review_required:
        click.echo("  Review required")
    if task.created_at:
        click.echo(f"  Created: {task.created_at}")


@task_group.command("claim")
@click.argument("task_id")
@click.argument("agent_name")
def task_claim(task_id, agent_name):
    """Claim a READY task for an agent."""
    with _get_db() as db:
        try:
            task = tasks_mod.claim_task(db, task_id, agent_name)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    click.echo(f"{task.id} claimed by {task.assigned_to} ({task.status})")


@task_group.command("complete")
@click.argument("task_id")
@click.option("--summary", "-m", required=True, help="What was done")
@click.option("--file", "-f", "files", multiple=True, help="Changed file (repeatable)")
def task_complete(task_id, summary, files):
    """Mark an IN_PROGRESS task DONE."""
    with _get_db() as db:
        try:
            task = tasks_mod.complete_task(db, task_id, summary, list(files))
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    click.echo(f"Completed task: {task.id}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(TASK_STATUSES, case_sensitive=False))
def task_status(task_id, status):
    """Force a task's status, skipping workflow checks."""
    with _get_db() as db:
        task = tasks_mod.set_task_status(db, task_id, status.upper())
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    click.echo(f"{task.id} is now {task.status}")


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Inspect agents and their sessions."""
    pass


@agent_group.command("list")
def agent_list():
    """List the roster and each agent's status."""
    with _get_db() as db:
        agents = agents_mod.ensure_roster(db)
    for agent in agents:
        doing = f" - {agent.working_on}" if agent.working_on else ""
        blocked = f" [blocked: {agent.blocker}]" if agent.blocker else ""
        click.echo(f"  {agent.name:<14} {agent.type:<14} {agent.status}{doing}{blocked}")


@agent_group.command("sessions")
@click.argument("agent_name")
@click.option("--limit", default=10, type=int, help="How many sessions to show")
def agent_sessions(agent_name, limit):
    """Show an agent's recent sessions."""
    with _get_db() as db:
        sessions = sessions_mod.list_sessions(db, agent_name=agent_name, limit=limit)
    if not sessions:
        click.echo(f"No sessions for {agent_name}.")
        return
    for s in sessions:
        reason = f" ({s.exit_reason})" if s.exit_reason else ""
        click.echo(
            f"  {s.id} {s.status}{reason} task={s.task_id or '-'} "
            f"tokens={s.input_tokens}/{s.output_tokens} started={s.started_at}"
        )


@agent_group.command("history")
@click.argument("agent_name")
@click.option("--session", "session_id", default=None, help="Session ID (default: current)")
@click.option("--limit", default=None, type=int, help="Show at most this many messages")
def agent_history(agent_name, session_id, limit):
    """Show the messages of an agent's session."""
    with _get_db() as db:
        agent = agents_mod.get_agent(db, agent_name)
        if not agent:
            click.echo(f"Agent not found: {agent_name}", err=True)
            sys.exit(1)
        session_id = session_id or agent.session_id
        if not session_id:
            sessions = sessions_mod.list_sessions(db, agent_name=agent_name, limit=1)
            session_id = sessions[0].id if sessions else None
        if not session_id:
            click.echo(f"No sessions for {agent_name}.")
            return
        messages = sessions_mod.list_messages(db, session_id, limit=limit)

    for m in messages:
        by = f" by {m.injected_by}" if m.injected_by else ""
        click.echo(f"[{m.sequence}] {m.role}{by}:")
        click.echo(f"  {m.content[:500]}")


# ── Handoff Commands ──────────────────────────────────────────────────────────


@main.group("handoff")
def handoff_group():
    """Leave and read notes between agents."""
    pass


@handoff_group.command("add")
@click.argument("title")
@click.option("--from", "from_agent", default="human", help="Who is writing the handoff")
@click.option("--to", "to_agent", default=None, help="Recipient (omit to broadcast)")
@click.option("--content", "-m", default="", help="Handoff body")
@click.option("--type", "handoff_type", default="general", type=click.Choice(HANDOFF_TYPES))
@click.option("--task", "task_id", default=None, help="Related task ID")
@click.option("--priority", default="normal", type=click.Choice(HANDOFF_PRIORITIES))
def handoff_add(title, from_agent, to_agent, content, handoff_type, task_id, priority):
    """Create a handoff."""
    with _get_db() as db:
        handoff = handoffs_mod.create_handoff(
            db, from_agent, title, content, to_agent, handoff_type, task_id, priority
        )
    click.echo(f"Created handoff: {handoff.id}")
    click.echo(f"  {handoff.from_agent} -> {handoff.to_agent or 'everyone'}: {handoff.title}")


@handoff_group.command("list")
@click.option("--to", "to_agent", default=None, help="Recipient (includes broadcasts)")
@click.option("--status", default=None, type=click.Choice(HANDOFF_STATUSES, case_sensitive=False))
def handoff_list(to_agent, status):
    """List handoffs, most urgent first."""
    with _get_db() as db:
        handoffs = handoffs_mod.list_handoffs(
            db, to_agent=to_agent, status=status.upper() if status else None
        )
    if not handoffs:
        click.echo("No handoffs found.")
        return
    for h in handoffs:
        click.echo(
            f"  [{h.priority}] {h.id} {h.from_agent} -> {h.to_agent or 'everyone'}: "
            f"{h.title} ({h.status})"
        )


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agency.mcp.server import mcp
    from agency.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "size": task.size,
        "assigned_to": task.assigned_to,
        "description": task.description,
        "acceptance_criteria": task.acceptance_criteria,
        "summary": task.summary,
        "files_changed": task.files_changed,
        "review_required": task.review_required,
    }


if __name__ == "__main__":
    main()

"""MCP prompt templates for common agent workflows."""

from agency.mcp.server import mcp


@mcp.prompt()
def triage_inbox(agent_name: str = "product-owner") -> str:
    """Generate a prompt to triage new work sitting in INBOX."""
    return (
        f"You are {agent_name}. Triage the INBOX.\n\n"
        f"Use list_tasks with status='INBOX' to see new work. For each task:\n"
        f"1. Make sure the title is specific and the value statement says who benefits\n"
        f"2. Write 2-5 testable acceptance criteria\n"
        f"3. Set a priority (P0 urgent to P3 nice-to-have) and a size (S, M, L, XL)\n"
        f"4. Set review_required for anything touching security, data or public APIs\n"
        f"5. Use triage_task to move it to READY\n\n"
        f"If a task is unclear, use create_handoff with type 'clarification' instead of guessing."
    )


@mcp.prompt()
def write_handoff(agent_name: str, task_id: str = "") -> str:
    """Generate a prompt to hand work over to the next agent."""
    about = f" about task '{task_id}'" if task_id else ""
    return (
        f"You are {agent_name} and you're about to stop work{about}.\n\n"
        f"Write a handoff with create_handoff so the next agent can continue without asking you:\n"
        f"1. What was done, and what is left\n"
        f"2. Files and commands that matter\n"
        f"3. Anything surprising you found\n"
        f"4. Who should pick it up (to_agent), or leave it empty to broadcast\n\n"
        f"Pick the type that fits (task-handoff, bug-report, review-request, blocker, ...) "
        f"and use priority 'urgent' only if someone is blocked."
    )

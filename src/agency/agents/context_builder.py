"""Briefing text for agent launch prompts.

Aggregates the project description, the agent's current task, recent
late-stage work by other agents, and handoffs waiting for this agent.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from agency.core.handoffs import list_handoffs
from agency.core.tasks import RECENT_WORK_STATUSES, get_task, list_tasks
from agency.db.models import Handoff, Task

logger = logging.getLogger(__name__)

CONFIG_NAMES = ("agency-project.json", "agency.json", ".agency/project.json")
RECENT_WORK_LIMIT = 5
MAX_FILES_LISTED = 5

WORKFLOW_POSITIONS = {
    "INBOX": "This task is new and needs to be triaged into actionable work.",
    "READY": "This task is ready for development. Claim it and implement the requirements.",
    "IN_PROGRESS": "This task is being worked on. Continue or complete the implementation.",
    "DONE": "Development is complete. This task needs QA testing.",
    "QA_TESTING": "QA is actively testing this task.",
    "QA_PASSED": "QA has verified this task. It may need code review or can be shipped.",
    "QA_FAILED": "QA found issues. Review the feedback and fix the problems.",
    "REVIEWING": "This task is under code review.",
    "REVIEWED": "Code review passed. This task is ready to ship.",
    "SHIPPED": "This task has been deployed to production.",
}

ROLE_DEFAULTS = {
    "product-owner": "Triage the INBOX: refine new tasks and move actionable ones to READY.",
    "tech-lead": "Review pending handoffs and unblock the team.",
    "developer": "Claim the highest priority READY task and implement it.",
    "qa": "Test tasks in DONE and pass or fail them.",
    "reviewer": "Review QA_PASSED tasks that require code review.",
    "devops": "Ship REVIEWED tasks, and QA_PASSED tasks that need no review.",
}


@dataclass
class ProjectConfig:
    name: str
    root_path: str
    description: str | None = None
    tech_stack: list[str] = field(default_factory=list)
    key_directories: dict[str, str] = field(default_factory=dict)
    current_focus: str | None = None
    notes: list[str] = field(default_factory=list)


@dataclass
class RecentWork:
    task: Task
    summary: str | None
    files_changed: list[str]


@dataclass
class AgentContext:
    project: ProjectConfig | None
    current_task: Task | None
    recent_work: list[RecentWork]
    pending_handoffs: list[Handoff]
    workflow_position: str


def load_project_config(projects_dir: Path) -> ProjectConfig:
    """Load the project config from the first well-known file found.

    Falls back to a stub named after the directory so agents always get a
    project section, even with no config file at all.
    """
    projects_dir = Path(projects_dir)
    for name in CONFIG_NAMES:
        path = projects_dir / name
        if not path.exists():
            continue
        try:
            data = json.loads(path.read_text())
            return ProjectConfig(
                name=data.get("name") or projects_dir.name,
                root_path=str(projects_dir),
                description=data.get("description"),
                tech_stack=list(data.get("techStack") or data.get("tech_stack") or []),
                key_directories=dict(data.get("keyDirectories") or data.get("key_directories") or {}),
                current_focus=data.get("currentFocus") or data.get("current_focus"),
                notes=list(data.get("notes") or []),
            )
        except (OSError, ValueError, AttributeError, TypeError):
            logger.warning("Could not parse project config %s", path, exc_info=True)

    return ProjectConfig(name=projects_dir.name or "project", root_path=str(projects_dir))


def workflow_position(task: Task | None, agent_type: str) -> str:
    if task is None:
        default = ROLE_DEFAULTS.get(agent_type, "Check for work appropriate to your role.")
        return f"You are the {agent_type}. {default}"
    return WORKFLOW_POSITIONS.get(task.status, f"Task is in {task.status} status.")


def build_context(
    db: sqlite3.Connection,
    agent_name: str,
    agent_type: str,
    projects_dir: Path,
    task_id: str | None = None,
) -> AgentContext:
    current_task = get_task(db, task_id) if task_id else None
    recent = list_tasks(db, status=RECENT_WORK_STATUSES, limit=RECENT_WORK_LIMIT, order="recent")
    return AgentContext(
        project=load_project_config(projects_dir),
        current_task=current_task,
        recent_work=[RecentWork(t, t.summary, t.files_changed) for t in recent],
        pending_handoffs=list_handoffs(db, to_agent=agent_name, status="PENDING"),
        workflow_position=workflow_position(current_task, agent_type),
    )


def format_as_text(context: AgentContext) -> str:
    """Render the context as markdown. Sections without data are left out."""
    sections: list[str] = []

    project = context.project
    if project:
        lines = [f"## Project: {project.name}", ""]
        if project.description:
            lines += [project.description, ""]
        lines.append(f"**Root Path:** `{project.root_path}`")
        if project.tech_stack:
            lines.append(f"**Tech Stack:** {', '.join(project.tech_stack)}")
        if project.current_focus:
            lines.append(f"**Current Focus:** {project.current_focus}")
        sections.append("\n".join(lines))

        if project.key_directories:
            dirs = "\n".join(f"- **{k}:** `{v}`" for k, v in project.key_directories.items())
            sections.append(f"### Key Directories\n{dirs}")

        if project.notes:
            sections.append("### Notes\n" + "\n".join(f"- {n}" for n in project.notes))

    task = context.current_task
    if task:
        lines = [
            "## Your Current Task",
            "",
            f"**Title:** {task.title}",
            f"**ID:** {task.id}",
            f"**Status:** {task.status}",
            f"**Priority:** {task.priority}",
            f"**Size:** {task.size}",
        ]
        if task.assigned_to:
            lines.append(f"**Assigned to:** {task.assigned_to}")
        if task.description:
            lines += ["", task.description]
        if task.value_statement:
            lines += ["", f"**Why it matters:** {task.value_statement}"]
        if task.acceptance_criteria:
            lines += ["", "### Acceptance Criteria"]
            lines += [f"- [ ] {c}" for c in task.acceptance_criteria]
        if task.context:
            lines += ["", "### Additional Context", task.context]
        sections.append("\n".join(lines))

    if context.workflow_position:
        sections.append(f"## Workflow Position\n\n{context.workflow_position}")

    if context.recent_work:
        items = []
        for work in context.recent_work:
            item = f"- **{work.task.title}** ({work.task.status})"
            if work.summary:
                item += f"\n  {work.summary}"
            if work.files_changed:
                files = ", ".join(work.files_changed[:MAX_FILES_LISTED])
                extra = len(work.files_changed) - MAX_FILES_LISTED
                if extra > 0:
                    files += f" (+{extra} more)"
                item += f"\n  Files: {files}"
            items.append(item)
        sections.append("## Recent Work\n\n" + "\n\n".join(items))

    if context.pending_handoffs:
        blocks = []
        for h in context.pending_handoffs:
            block = (
                f"### {h.title}\n"
                f"**From:** {h.from_agent} | **Priority:** {h.priority} | **Type:** {h.type}"
            )
            if h.task_id:
                block += f" | **Task:** {h.task_id}"
            if h.content:
                block += f"\n\n{h.content}"
            blocks.append(block)
        sections.append("## Pending Handoffs For You\n\n" + "\n\n".join(blocks))

    return "\n\n".join(sections) + "\n"

"""Data models for the agency."""

from dataclasses import dataclass, field
from datetime import datetime

# Task workflow, in pipeline order.
TASK_STATUSES = (
    "INBOX",
    "READY",
    "IN_PROGRESS",
    "DONE",
    "QA_TESTING",
    "QA_PASSED",
    "QA_FAILED",
    "REVIEWING",
    "REVIEWED",
    "SHIPPED",
)
PRIORITIES = ("P0", "P1", "P2", "P3")
SIZES = ("S", "M", "L", "XL")

AGENT_TYPES = ("product-owner", "tech-lead", "developer", "qa", "reviewer", "devops")
AGENT_STATUSES = ("OFFLINE", "IDLE", "WORKING", "PAUSED", "BLOCKED")

SESSION_STATUSES = ("RUNNING", "PAUSED", "COMPLETED", "FAILED", "TERMINATED")
TERMINAL_SESSION_STATUSES = ("COMPLETED", "FAILED", "TERMINATED")

MESSAGE_ROLES = ("system", "user", "assistant", "injected")

HANDOFF_TYPES = (
    "task-handoff",
    "bug-report",
    "clarification",
    "design-doc",
    "review-request",
    "blocker",
    "general",
)
HANDOFF_STATUSES = ("PENDING", "CLAIMED", "RESOLVED", "DISMISSED")
HANDOFF_PRIORITIES = ("low", "normal", "high", "urgent")


@dataclass
class Task:
    id: str
    title: str
    description: str | None = None
    status: str = "INBOX"
    priority: str = "P2"
    size: str = "M"
    assigned_to: str | None = None
    claimed_at: datetime | None = None
    value_statement: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    context: str | None = None
    files_changed: list[str] = field(default_factory=list)
    summary: str | None = None
    review_required: bool = False
    sort_order: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    shipped_at: datetime | None = None


@dataclass
class Agent:
    name: str
    type: str
    specialization: str | None = None
    status: str = "OFFLINE"
    current_task_id: str | None = None
    working_on: str | None = None
    blocker: str | None = None
    pid: int | None = None
    session_id: str | None = None
    last_heartbeat: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class AgentSession:
    id: str
    agent_name: str
    external_session_id: str | None = None
    status: str = "RUNNING"
    task_id: str | None = None
    pid: int | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_code: int | None = None
    exit_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


@dataclass
class Message:
    id: int | None = None
    session_id: str = ""
    role: str = "assistant"
    content: str = ""
    tool_calls: list[dict] | None = None
    tool_results: list[dict] | None = None
    injected: bool = False
    injected_by: str | None = None
    sequence: int = 0
    created_at: datetime | None = None


@dataclass
class Handoff:
    id: str
    from_agent: str
    title: str
    content: str = ""
    to_agent: str | None = None
    type: str = "general"
    task_id: str | None = None
    status: str = "PENDING"
    claimed_by: str | None = None
    priority: str = "normal"
    created_at: datetime | None = None
    claimed_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass
class Event:
    id: int | None = None
    type: str = ""
    agent_name: str | None = None
    task_id: str | None = None
    session_id: str | None = None
    handoff_id: str | None = None
    data: dict = field(default_factory=dict)
    message: str | None = None
    created_at: datetime | None = None

"""Lifecycle controller for one agent's Claude CLI process.

States::

    idle ──start──> starting ──> running <──pause/resume──> paused
                                  │   ^
                           inject │   │ respawned with --resume
                                  v   │
                                 injecting

    starting/running/paused/injecting ──stop──> stopping ──> stopped
    idle/stopped ──start──> starting

A clean exit with nothing queued returns the controller to ``idle``.
"""

import logging
import os
import signal
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from agency.agents.context_builder import build_context, format_as_text
from agency.agents.pty import ProcessHandle, PtyProcess, Spawner
from agency.agents.stream_parser import (
    CONTENT,
    ERROR,
    MESSAGE_COMPLETE,
    TOOL_RESULT,
    TOOL_USE,
    StreamEvent,
    StreamParser,
)
from agency.config import Config
from agency.core.agents import get_agent, heartbeat, update_agent_session, update_agent_status
from agency.core.events import log_event
from agency.core.sessions import (
    add_message,
    add_session_usage,
    create_session,
    get_session,
    update_session_pid,
    update_session_status,
)
from agency.db.engine import init_db

logger = logging.getLogger(__name__)

REDIRECT_MESSAGE = (
    "URGENT: Stop current work immediately. Your new priority is task {task_id}. "
    "Read the task details and begin work on it now."
)

STREAM_ARGS = ["--output-format", "stream-json", "--verbose", "--dangerously-skip-permissions"]


class ControllerState:
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    INJECTING = "injecting"
    STOPPING = "stopping"
    STOPPED = "stopped"


# States with a live (or about to be live) process attached.
ACTIVE_STATES = (
    ControllerState.STARTING,
    ControllerState.RUNNING,
    ControllerState.PAUSED,
    ControllerState.INJECTING,
)


class ControllerStateError(RuntimeError):
    """An operation was attempted in a state that doesn't allow it."""

    def __init__(self, agent_name: str, state: str, operation: str):
        self.agent_name = agent_name
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} agent '{agent_name}' in state: {state}")


class AgentController:
    """Drives one agent's process through start, pause, injection, and stop.

    Listeners registered with :meth:`on` are called as
    ``handler(agent_name, payload)``.
    Events: ``state``, ``output``, ``message``, ``tool:start``,
    ``tool:complete``, ``error``, ``exit``.
    """

    def __init__(
        self,
        agent_name: str,
        config: Config,
        spawner: Spawner | None = None,
        interrupt_timeout: float = 5.0,
        kill_grace: float = 5.0,
        stop_timeout: float = 10.0,
    ):
        self.agent_name = agent_name
        self.config = config
        self.interrupt_timeout = interrupt_timeout
        self.kill_grace = kill_grace
        self.stop_timeout = stop_timeout
        self._spawner = spawner or PtyProcess.spawn

        self._db = init_db(config.db_path)
        self._lock = threading.RLock()
        self._listeners: dict[str, list[Callable]] = {}

        self._state = ControllerState.IDLE
        self._process: ProcessHandle | None = None
        self._generation = 0
        self._parser = StreamParser()
        self._content: list[str] = []
        self._tool_calls: list[dict] = []
        self._queue: deque[tuple[str, str, str | None]] = deque()

        self._session_id: str | None = None
        self._external_session_id: str | None = None
        self._task_id: str | None = None

    # ── Getters ─────────────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def external_session_id(self) -> str | None:
        return self._external_session_id

    @property
    def task_id(self) -> str | None:
        return self._task_id

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process else None

    @property
    def queued(self) -> int:
        return len(self._queue)

    # ── Listeners ───────────────────────────────────────────────────────────

    def on(self, event: str, handler: Callable):
        self._listeners.setdefault(event, []).append(handler)

    def _emit(self, event: str, payload: dict):
        for handler in self._listeners.get(event, []):
            try:
                handler(self.agent_name, payload)
            except Exception:
                logger.exception("Listener for %s on %s failed", event, self.agent_name)

    def _set_state(self, new_state: str):
        old_state, self._state = self._state, new_state
        if old_state != new_state:
            logger.debug("%s: %s -> %s", self.agent_name, old_state, new_state)
            self._emit("state", {"from": old_state, "to": new_state})

    # ── Operations ──────────────────────────────────────────────────────────

    def start(self, task_id: str | None = None):
        """Launch the agent with a fresh conversation."""
        with self._lock:
            if self._state not in (ControllerState.IDLE, ControllerState.STOPPED):
                raise ControllerStateError(self.agent_name, self._state, "start")

            agent = get_agent(self._db, self.agent_name)
            if not agent:
                raise LookupError(f"Agent not found: {self.agent_name}")

            external_id = str(uuid.uuid4())
            prompt = self.build_prompt(agent.type, task_id, external_id)
            self._task_id = task_id
            self._external_session_id = external_id

            self._set_state(ControllerState.STARTING)
            session = create_session(
                self._db, self.agent_name, self._external_session_id, task_id=task_id
            )
            self._session_id = session.id
            add_message(self._db, session.id, "user", prompt)

            argv = [self.config.claude_bin, "-p", prompt, *STREAM_ARGS,
                    "--session-id", self._external_session_id]
            self._spawn(argv, "start")

            working_on = f"Working on task {task_id}" if task_id else "Starting..."
            update_agent_status(self._db, self.agent_name, "WORKING",
                                working_on=working_on, blocker=None)
            update_agent_session(self._db, self.agent_name, session.id, self.pid, task_id)
            log_event(
                self._db, "agent.started",
                agent_name=self.agent_name, task_id=task_id, session_id=session.id,
                data={"pid": self.pid}, message=f"Agent {self.agent_name} started",
            )
            self._set_state(ControllerState.RUNNING)

    def pause(self, reason: str | None = None):
        """Suspend the process with SIGSTOP."""
        with self._lock:
            if self._state != ControllerState.RUNNING:
                raise ControllerStateError(self.agent_name, self._state, "pause")
            self._process.send_signal(signal.SIGSTOP)
            update_agent_status(self._db, self.agent_name, "PAUSED", blocker=reason)
            update_session_status(self._db, self._session_id, "PAUSED")
            log_event(
                self._db, "agent.paused",
                agent_name=self.agent_name, session_id=self._session_id,
                data={"reason": reason}, message=f"Agent {self.agent_name} paused",
            )
            self._set_state(ControllerState.PAUSED)

    def resume(self):
        """Continue a paused process with SIGCONT."""
        with self._lock:
            if self._state != ControllerState.PAUSED:
                raise ControllerStateError(self.agent_name, self._state, "resume")
            self._process.send_signal(signal.SIGCONT)
            update_agent_status(self._db, self.agent_name, "WORKING", blocker=None)
            update_session_status(self._db, self._session_id, "RUNNING")
            log_event(
                self._db, "agent.resumed",
                agent_name=self.agent_name, session_id=self._session_id,
                message=f"Agent {self.agent_name} resumed",
            )
            self._set_state(ControllerState.RUNNING)

    def inject(self, message: str, injected_by: str = "user") -> bool:
        """Interrupt the agent and resume its conversation with ``message``.

        Returns False when another injection is already in flight; the
        message is then queued and delivered after the next exit.
        """
        if not message or not message.strip():
            raise ValueError("Message is required")
        return self._inject(message, injected_by, None, "inject")

    def redirect(self, task_id: str) -> bool:
        """Point the agent at a different task, interrupting current work.

        The task id changes when the redirect message is delivered, so a
        redirect queued behind another injection leaves the current task
        showing until then.
        """
        if not task_id:
            raise ValueError("Task id is required")
        return self._inject(REDIRECT_MESSAGE.format(task_id=task_id), "orchestrator",
                            task_id, "redirect")

    def _inject(self, message: str, injected_by: str, task_id: str | None, operation: str) -> bool:
        with self._lock:
            if self._state == ControllerState.INJECTING:
                self._queue.append((message, injected_by, task_id))
                logger.info("Queued %s for %s (%d waiting)", operation, self.agent_name, len(self._queue))
                return False
            if self._state not in (ControllerState.RUNNING, ControllerState.PAUSED):
                raise ControllerStateError(self.agent_name, self._state, operation)
            was_paused = self._state == ControllerState.PAUSED
            process = self._process
            self._set_state(ControllerState.INJECTING)

        # The old process's exit handler needs the lock, so wait outside it.
        if process is not None and not process.exited:
            if was_paused:
                process.send_signal(signal.SIGCONT)
            process.send_signal(signal.SIGINT)
            if not process.wait(self.interrupt_timeout):
                logger.warning(
                    "%s did not exit within %.1fs of SIGINT; killing pid %s",
                    self.agent_name, self.interrupt_timeout, process.pid,
                )
                process.kill()
                if not process.wait(self.kill_grace):
                    logger.error("pid %s survived SIGKILL; respawning anyway", process.pid)

        self._resume_with(message, injected_by, task_id)
        return True

    def stop(self):
        """Interrupt, then force-kill after the grace period, and go offline."""
        with self._lock:
            if self._state not in ACTIVE_STATES:
                raise ControllerStateError(self.agent_name, self._state, "stop")
            was_paused = self._state == ControllerState.PAUSED
            process = self._process
            self._queue.clear()
            self._set_state(ControllerState.STOPPING)

        if process is not None and not process.exited:
            if was_paused:
                process.send_signal(signal.SIGCONT)
            process.send_signal(signal.SIGINT)
            killer = threading.Timer(self.kill_grace, self._force_kill, args=(process,))
            killer.daemon = True
            killer.start()
            try:
                if not process.wait(self.stop_timeout):
                    logger.error("%s (pid %s) still running after stop", self.agent_name, process.pid)
            finally:
                killer.cancel()

        with self._lock:
            if self._session_id:
                update_session_status(self._db, self._session_id, "TERMINATED",
                                      exit_reason="stopped")
            update_agent_status(self._db, self.agent_name, "OFFLINE", working_on=None, blocker=None)
            update_agent_session(self._db, self.agent_name, None, None, None)
            log_event(
                self._db, "agent.stopped",
                agent_name=self.agent_name, session_id=self._session_id,
                message=f"Agent {self.agent_name} stopped",
            )
            # Late output from the old process is ignored from here on
            self._generation += 1
            self._process = None
            self._set_state(ControllerState.STOPPED)

    def close(self):
        """Release the database connection. The controller is unusable afterwards."""
        with self._lock:
            self._generation += 1
            self._db.close()

    # ── Prompt ──────────────────────────────────────────────────────────────

    def build_prompt(
        self,
        agent_type: str,
        task_id: str | None = None,
        external_session_id: str | None = None,
    ) -> str:
        role_file = Path(self.config.agency_dir) / "agents" / self.agent_name / "AGENT.md"
        try:
            role = role_file.read_text()
        except OSError as e:
            raise ValueError(f"Could not read agent definition: {role_file}") from e

        context = build_context(
            self._db, self.agent_name, agent_type, self.config.projects_dir, task_id
        )
        api = self.config.api_url

        parts = [role.rstrip()]
        parts.append(
            "## Runtime Information\n\n"
            f"- **Agent:** {self.agent_name} ({agent_type})\n"
            f"- **Agency Directory:** {self.config.agency_dir}\n"
            f"- **Data Directory:** {self.config.data_dir}\n"
            f"- **Projects Directory:** {self.config.projects_dir}\n"
            f"- **Current Time:** {datetime.now(timezone.utc).isoformat()}\n"
            f"- **Session ID:** {external_session_id}"
        )
        parts.append(format_as_text(context).rstrip())
        parts.append(
            "## API Integration\n\n"
            f"You can interact with the Agency system via HTTP API at {api}\n\n"
            "### Key Endpoints\n"
            "- GET /api/tasks?status=READY - Get available tasks\n"
            f'- POST /api/tasks/{{id}}/claim - Claim a task (body: {{"agent": "{self.agent_name}"}})\n'
            '- POST /api/tasks/{id}/complete - Complete a task '
            '(body: {"summary": "...", "files_changed": [...]})\n'
            f"- POST /api/agents/{self.agent_name}/heartbeat - Send heartbeat\n"
            "- POST /api/handoffs - Leave a note for another agent\n\n"
            "If the agency MCP tools are available, prefer them: `claim_task`, "
            "`complete_task`, `create_handoff`, `heartbeat`, `report_blocker`."
        )
        parts.append(
            "## INTERCEPTION MODE\n\n"
            "The orchestrator can inject messages at any time. "
            "When you receive a new user message:\n"
            "1. Acknowledge the interruption\n"
            "2. Follow new instructions immediately\n"
            "3. Do NOT continue previous work unless told to resume"
        )
        if task_id and context.current_task:
            assignment = (
                "## Your Assignment\n\n"
                f"You have been assigned to work on task {task_id}. "
                "The task details are shown above.\n"
                "Claim this task and begin work immediately."
            )
            if agent_type == "qa":
                assignment += (
                    "\n\n### QA Notes\n"
                    'Review the "Recent Work" section above to understand what the '
                    "developer implemented.\n"
                    "Check the files_changed list to know which files to test."
                )
            parts.append(assignment)

        return "\n\n".join(parts) + "\n"

    # ── Process plumbing ────────────────────────────────────────────────────

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            AGENCY_DIR=str(self.config.agency_dir),
            AGENCY_DATA_DIR=str(self.config.data_dir),
            AGENCY_PROJECTS_DIR=str(self.config.projects_dir),
            AGENCY_AGENT_NAME=self.agent_name,
            AGENCY_API_URL=self.config.api_url,
            TERM="xterm-256color",
        )
        return env

    def _spawn(self, argv: list[str], operation: str):
        """Spawn a process for the current session. Caller holds the lock."""
        if self.config.mcp_config_path:
            argv = [*argv, "--mcp-config", str(self.config.mcp_config_path)]

        self._generation += 1
        generation = self._generation
        self._parser.reset()
        self._content.clear()
        self._tool_calls.clear()
        try:
            self._process = self._spawner(
                argv,
                cwd=str(self.config.projects_dir),
                env=self._env(),
                on_data=lambda text: self._handle_data(generation, text),
                on_exit=lambda code, sig: self._handle_exit(generation, code, sig),
            )
        except Exception as e:
            logger.exception("Failed to spawn %s for %s", argv[0], self.agent_name)
            self._process = None
            update_session_status(self._db, self._session_id, "FAILED",
                                  exit_reason=f"spawn failed: {e}")
            update_agent_status(self._db, self.agent_name, "OFFLINE", working_on=None)
            update_agent_session(self._db, self.agent_name, None, None, None)
            log_event(
                self._db, "session.failed",
                agent_name=self.agent_name, session_id=self._session_id,
                data={"operation": operation}, message=f"Failed to spawn {self.agent_name}: {e}",
            )
            self._set_state(ControllerState.STOPPED)
            raise
        update_session_pid(self._db, self._session_id, self._process.pid)

    def _force_kill(self, process: ProcessHandle):
        if not process.exited:
            logger.warning("Force-killing %s (pid %s)", self.agent_name, process.pid)
            process.kill()

    def _resume_with(self, message: str, injected_by: str, task_id: str | None = None):
        """Start a replacement process on the same conversation and send ``message``."""
        with self._lock:
            if self._state != ControllerState.INJECTING:
                # stop() won the race
                logger.info("Dropping injection for %s: now %s", self.agent_name, self._state)
                return

            if task_id:
                self._task_id = task_id

            previous = get_session(self._db, self._session_id) if self._session_id else None
            if previous and not previous.is_terminal:
                update_session_status(self._db, previous.id, "COMPLETED",
                                      exit_reason="superseded by injection")
            session = create_session(
                self._db, self.agent_name, self._external_session_id, task_id=self._task_id
            )
            self._session_id = session.id
            add_message(self._db, session.id, "injected", message, injected_by=injected_by)
            log_event(
                self._db, "agent.injected",
                agent_name=self.agent_name, task_id=self._task_id, session_id=session.id,
                data={"content": message[:100], "injected_by": injected_by},
                message=f"Message injected to {self.agent_name}",
            )

            argv = [self.config.claude_bin, "--resume", self._external_session_id, *STREAM_ARGS]
            self._spawn(argv, "inject")
            self._process.write(message + "\n")

            update_agent_status(self._db, self.agent_name, "WORKING", blocker=None)
            update_agent_session(self._db, self.agent_name, session.id, self.pid, self._task_id)
            self._set_state(ControllerState.RUNNING)

    def _drain_queue(self):
        try:
            message, injected_by, task_id = self._queue.popleft()
        except IndexError:
            return
        try:
            self._resume_with(message, injected_by, task_id)
        except Exception as e:
            logger.exception("Queued injection for %s failed", self.agent_name)
            self._emit("error", {"message": f"Queued injection failed: {e}"})

    # ── Output and exit ─────────────────────────────────────────────────────

    def _handle_data(self, generation: int, text: str):
        with self._lock:
            if generation != self._generation:
                return
            events = self._parser.parse(text)
            self._emit("output", {"raw": text, "events": [e.to_dict() for e in events]})
            self._handle_events(events)
            if self._session_id:
                heartbeat(self._db, self.agent_name)

    def _handle_events(self, events: list[StreamEvent]):
        for event in events:
            try:
                self._handle_event(event)
            except Exception:
                logger.exception("Failed to handle %s event from %s", event.type, self.agent_name)
                self._content.clear()
                self._tool_calls.clear()

    def _handle_event(self, event: StreamEvent):
        if event.type == CONTENT:
            if event.content:
                self._content.append(event.content)

        elif event.type == TOOL_USE:
            if event.id and event.name:
                self._tool_calls.append({"id": event.id, "name": event.name, "input": event.input})
                self._emit("tool:start", {
                    "session_id": self._session_id, "id": event.id,
                    "name": event.name, "input": event.input,
                })

        elif event.type == TOOL_RESULT:
            if event.id:
                self._emit("tool:complete", {
                    "session_id": self._session_id, "id": event.id,
                    "content": event.content or "", "is_error": event.is_error,
                })

        elif event.type == MESSAGE_COMPLETE:
            self._complete_message(event)

        elif event.type == ERROR:
            logger.warning("%s reported an error: %s", self.agent_name, event.content)
            self._emit("error", {"message": event.content or "Unknown error"})

    def _complete_message(self, event: StreamEvent):
        if not self._session_id:
            return
        text = "".join(self._content) or (event.content or "")
        # A bare stop reason isn't worth a transcript entry
        if text and (self._content or isinstance(event.raw, dict)):
            message = add_message(
                self._db, self._session_id, "assistant", text,
                tool_calls=list(self._tool_calls) or None,
            )
            self._emit("message", {
                "session_id": self._session_id, "id": message.id,
                "sequence": message.sequence, "content": text[:500],
            })
        self._content.clear()
        self._tool_calls.clear()

        usage = event.raw.get("usage") if isinstance(event.raw, dict) else None
        if isinstance(usage, dict):
            add_session_usage(
                self._db, self._session_id,
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
            )

    def _handle_exit(self, generation: int, exit_code: int | None, signal_name: str | None):
        drain = False
        with self._lock:
            if generation != self._generation:
                return
            self._handle_events(self._parser.flush())

            if self._state in (ControllerState.INJECTING, ControllerState.STOPPING,
                               ControllerState.STOPPED):
                # Expected: inject()/stop() own what happens next
                self._emit("exit", {"exit_code": exit_code, "signal": signal_name})
                return

            if self._session_id:
                status = "COMPLETED" if exit_code == 0 else "FAILED"
                reason = f"signal {signal_name}" if signal_name else None
                update_session_status(self._db, self._session_id, status,
                                      exit_code=exit_code, exit_reason=reason)
                log_event(
                    self._db, f"session.{status.lower()}",
                    agent_name=self.agent_name, task_id=self._task_id,
                    session_id=self._session_id,
                    data={"exit_code": exit_code, "signal": signal_name},
                    message=f"Session for {self.agent_name} {status.lower()}",
                )

            if self._queue:
                self._set_state(ControllerState.INJECTING)
                drain = True
            else:
                self._process = None
                update_agent_status(self._db, self.agent_name, "IDLE", working_on=None, blocker=None)
                update_agent_session(self._db, self.agent_name, None, None, None)
                self._session_id = None
                self._set_state(ControllerState.IDLE)

            self._emit("exit", {"exit_code": exit_code, "signal": signal_name})

        if drain:
            # Not on the reader thread: it must finish so wait() on it returns
            threading.Thread(
                target=self._drain_queue, name=f"inject-{self.agent_name}", daemon=True
            ).start()

"""Agent manager: owns the live controllers and runs the orchestration cycle."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

from agency.agents.broadcast import Broadcaster
from agency.agents.controller import (
    AgentController,
    ControllerState,
    ControllerStateError,
)
from agency.agents.pty import Spawner
from agency.config import Config
from agency.core.agents import ensure_roster, get_agent, list_agents
from agency.core.events import log_event
from agency.core.handoffs import list_handoffs
from agency.core.tasks import list_tasks
from agency.db.engine import init_db
from agency.db.models import Agent

logger = logging.getLogger(__name__)

# Controller states in which an agent counts as running. Starting and
# stopping are transitional and deliberately left out.
RUNNING_STATES = (ControllerState.RUNNING, ControllerState.PAUSED, ControllerState.INJECTING)

# Agent record statuses from which the orchestrator may wake an agent.
AVAILABLE_STATUSES = ("IDLE", "OFFLINE")


class AgentNotFoundError(LookupError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Agent not found: {name}")


class AgentNotRunningError(LookupError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Agent {name} is not running")


class AgentManager:
    """Keeps at most one controller per agent name and matches agents to work.

    Start and stop for a given name are serialized on a per-name lock, so the
    check for an existing controller and the registration of a new one can't
    interleave with another caller's.
    """

    def __init__(
        self,
        config: Config,
        broadcaster: Broadcaster | None = None,
        spawner: Spawner | None = None,
        **controller_options,
    ):
        self.config = config
        self.broadcaster = broadcaster or Broadcaster()
        self._spawner = spawner
        self._controller_options = controller_options

        self._db = init_db(config.db_path)
        self._db_lock = threading.Lock()
        with self._db_lock:
            ensure_roster(self._db)

        self._controllers: dict[str, AgentController] = {}
        self._map_lock = threading.Lock()
        self._name_locks: dict[str, threading.Lock] = {}

        self._interval_ms = config.orchestration_interval_ms
        self._auto_enabled = False
        self._timer_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._cycle_lock = threading.Lock()

    # ── Helpers ─────────────────────────────────────────────────────────────

    @contextmanager
    def _repo(self):
        """The manager's connection, serialized across threads."""
        with self._db_lock:
            yield self._db

    def _name_lock(self, name: str) -> threading.Lock:
        with self._map_lock:
            return self._name_locks.setdefault(name, threading.Lock())

    def _log(self, event_type: str, **fields):
        with self._repo() as db:
            log_event(db, event_type, **fields)

    def get_controller(self, name: str) -> AgentController | None:
        with self._map_lock:
            return self._controllers.get(name)

    def _require_controller(self, name: str) -> AgentController:
        controller = self.get_controller(name)
        if controller is None:
            with self._repo() as db:
                known = get_agent(db, name) is not None
            if not known:
                raise AgentNotFoundError(name)
            raise AgentNotRunningError(name)
        return controller

    def _forget(self, name: str, controller: AgentController):
        with self._map_lock:
            if self._controllers.get(name) is controller:
                del self._controllers[name]

    # ── Queries ─────────────────────────────────────────────────────────────

    def get_agents(self) -> list[Agent]:
        with self._repo() as db:
            return list_agents(db)

    def is_running(self, name: str) -> bool:
        controller = self.get_controller(name)
        return controller is not None and controller.state in RUNNING_STATES

    def running_agents(self) -> list[dict]:
        with self._map_lock:
            controllers = list(self._controllers.items())
        return [
            {
                "name": name,
                "state": c.state,
                "pid": c.pid,
                "session_id": c.session_id,
                "task_id": c.task_id,
                "queued_injections": c.queued,
            }
            for name, c in controllers
        ]

    # ── Control API ─────────────────────────────────────────────────────────

    def start_agent(self, name: str, task_id: str | None = None) -> AgentController:
        with self._name_lock(name):
            with self._repo() as db:
                agent = get_agent(db, name)
            if not agent:
                raise AgentNotFoundError(name)

            existing = self.get_controller(name)
            if existing and existing.state not in (ControllerState.IDLE, ControllerState.STOPPED):
                raise ControllerStateError(name, existing.state, "start")
            if existing:
                self._forget(name, existing)
                existing.close()

            controller = AgentController(
                name, self.config, spawner=self._spawner, **self._controller_options
            )
            self._wire(controller)
            with self._map_lock:
                self._controllers[name] = controller

            try:
                controller.start(task_id)
            except Exception:
                self._forget(name, controller)
                controller.close()
                raise

        logger.info("Started agent %s (task=%s, pid=%s)", name, task_id, controller.pid)
        self.broadcaster.publish("agent:started", {"agent": name, "task_id": task_id})
        return controller

    def stop_agent(self, name: str):
        with self._name_lock(name):
            controller = self._require_controller(name)
            try:
                controller.stop()
            finally:
                self._forget(name, controller)
                controller.close()
        logger.info("Stopped agent %s", name)
        self.broadcaster.publish("agent:stopped", {"agent": name})

    def pause_agent(self, name: str, reason: str | None = None):
        self._require_controller(name).pause(reason)
        self.broadcaster.publish("agent:paused", {"agent": name, "reason": reason})

    def resume_agent(self, name: str):
        self._require_controller(name).resume()
        self.broadcaster.publish("agent:resumed", {"agent": name})

    def inject_message(self, name: str, message: str, injected_by: str = "user") -> bool:
        """Returns False if the message was queued behind an in-flight injection."""
        return self._require_controller(name).inject(message, injected_by)

    def redirect_agent(self, name: str, task_id: str):
        self._require_controller(name).redirect(task_id)
        self._log(
            "agent.redirected",
            agent_name=name,
            task_id=task_id,
            message=f"Agent {name} redirected to task {task_id}",
        )

    def stop_all(self):
        """Stop every controller concurrently. Individual failures are logged."""
        self.disable_auto_orchestration()

        with self._map_lock:
            controllers = list(self._controllers.items())

        def _stop(item):
            name, controller = item
            try:
                if controller.state in (ControllerState.IDLE, ControllerState.STOPPED):
                    return
                controller.stop()
            except Exception:
                logger.exception("Error stopping agent %s", name)
            finally:
                controller.close()

        if controllers:
            with ThreadPoolExecutor(max_workers=len(controllers)) as pool:
                list(pool.map(_stop, controllers))

        with self._map_lock:
            self._controllers.clear()
        self._log("system.shutdown", message="All agents stopped")
        logger.info("Stopped %d agent(s)", len(controllers))

    # ── Orchestration ───────────────────────────────────────────────────────

    def orchestration_status(self) -> dict:
        return {"enabled": self._auto_enabled, "interval_ms": self._interval_ms}

    def enable_auto_orchestration(self, interval_ms: int | None = None) -> dict:
        """Run a cycle now and then every ``interval_ms``. No-op if already on."""
        with self._timer_lock:
            if self._auto_enabled:
                logger.debug("Auto-orchestration already enabled")
                return self.orchestration_status()
            if interval_ms is not None:
                if interval_ms <= 0:
                    raise ValueError("intervalMs must be positive")
                self._interval_ms = interval_ms
            self._auto_enabled = True
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._orchestration_loop,
                args=(self._stop_event,),
                name="orchestrator",
                daemon=True,
            )
            self._thread.start()

        logger.info("Auto-orchestration enabled (%dms interval)", self._interval_ms)
        self._log(
            "orchestrator.enabled",
            data={"interval_ms": self._interval_ms},
            message="Auto-orchestration enabled",
        )
        return self.orchestration_status()

    def disable_auto_orchestration(self) -> dict:
        with self._timer_lock:
            if not self._auto_enabled:
                return self.orchestration_status()
            self._auto_enabled = False
            self._stop_event.set()
            thread, self._thread = self._thread, None

        if thread and thread is not threading.current_thread():
            thread.join(timeout=10)
        logger.info("Auto-orchestration disabled")
        self._log("orchestrator.disabled", message="Auto-orchestration disabled")
        return self.orchestration_status()

    def _orchestration_loop(self, stop_event: threading.Event):
        while not stop_event.is_set():
            self.run_orchestration_cycle()
            stop_event.wait(self._interval_ms / 1000)

    def run_orchestration_cycle(self) -> list[tuple[str, str | None]]:
        """Run every wake/assign pass once. Never raises.

        Returns the ``(agent, task_id)`` pairs that were started.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Orchestration cycle already in progress; skipping")
            return []
        started: list[tuple[str, str | None]] = []
        try:
            for orchestration_pass in (
                self.wake_product_owner,
                self.wake_for_handoffs,
                self.assign_developers,
                self.assign_qa,
                self.assign_reviewer,
                self.assign_devops,
            ):
                try:
                    started.extend(orchestration_pass())
                except Exception:
                    logger.exception("Orchestration pass %s failed", orchestration_pass.__name__)
        finally:
            self._cycle_lock.release()
        if started:
            logger.info("Orchestration cycle started %d agent(s): %s", len(started), started)
        return started

    def _available(self, agent: Agent | None) -> bool:
        return (
            agent is not None
            and agent.status in AVAILABLE_STATUSES
            and not self.is_running(agent.name)
        )

    def _first_of_type(self, agent_type: str) -> Agent | None:
        with self._repo() as db:
            agents = list_agents(db, agent_type=agent_type)
        return agents[0] if agents else None

    def _try_start(self, name: str, task_id: str | None, event_type: str, message: str,
                   **event_fields) -> bool:
        try:
            self.start_agent(name, task_id)
        except Exception:
            logger.exception("Orchestrator failed to start %s", name)
            return False
        self._log(event_type, agent_name=name, task_id=task_id, message=message, **event_fields)
        return True

    def wake_product_owner(self) -> list[tuple[str, str | None]]:
        """Wake the product owner when there's INBOX work to triage."""
        po = self._first_of_type("product-owner")
        if not self._available(po):
            return []
        with self._repo() as db:
            inbox = list_tasks(db, status="INBOX")
        if not inbox:
            return []
        logger.info("Waking %s to triage %d INBOX task(s)", po.name, len(inbox))
        if self._try_start(po.name, None, "orchestrator.wake_po",
                           "Woke product-owner to triage INBOX tasks",
                           data={"inbox_count": len(inbox)}):
            return [(po.name, None)]
        return []

    def wake_for_handoffs(self) -> list[tuple[str, str | None]]:
        """Wake each agent that has a pending handoff addressed to it."""
        with self._repo() as db:
            handoffs = list_handoffs(db, status="PENDING", targeted_only=True)
        started = []
        for handoff in handoffs:
            with self._repo() as db:
                agent = get_agent(db, handoff.to_agent)
            if not self._available(agent):
                continue
            logger.info("Waking %s for handoff: %s", agent.name, handoff.title)
            if self._try_start(agent.name, None, "orchestrator.wake_handoff",
                               f"Woke {agent.name} for handoff: {handoff.title}",
                               handoff_id=handoff.id):
                started.append((agent.name, None))
        return started

    def assign_developers(self) -> list[tuple[str, str | None]]:
        """Pair idle developers with READY tasks, highest priority first."""
        with self._repo() as db:
            developers = [a for a in list_agents(db, agent_type="developer") if self._available(a)]
            if not developers:
                return []
            ready = list_tasks(db, status="READY", limit=len(developers))
        started = []
        for agent, task in zip(developers, ready):
            logger.info("Assigning task %r to %s", task.title, agent.name)
            if self._try_start(agent.name, task.id, "orchestrator.assigned",
                               f'Auto-assigned task "{task.title}" to {agent.name}'):
                started.append((agent.name, task.id))
        return started

    def assign_qa(self) -> list[tuple[str, str | None]]:
        """Hand the oldest DONE task to QA."""
        qa = self._first_of_type("qa")
        if not self._available(qa):
            return []
        with self._repo() as db:
            done = list_tasks(db, status="DONE", order="oldest", limit=1)
        if not done:
            return []
        return self._assign(qa, done[0])

    def assign_reviewer(self) -> list[tuple[str, str | None]]:
        """Hand a QA_PASSED task that needs review to the reviewer."""
        reviewer = self._first_of_type("reviewer")
        if not self._available(reviewer):
            return []
        with self._repo() as db:
            passed = list_tasks(db, status="QA_PASSED", order="oldest")
        task = next((t for t in passed if t.review_required), None)
        if task is None:
            return []
        return self._assign(reviewer, task)

    def assign_devops(self) -> list[tuple[str, str | None]]:
        """Hand a shippable task (REVIEWED, or QA_PASSED with no review) to devops."""
        devops = self._first_of_type("devops")
        if not self._available(devops):
            return []
        with self._repo() as db:
            candidates = list_tasks(db, status=["REVIEWED", "QA_PASSED"], order="oldest")
        task = next(
            (t for t in candidates if t.status == "REVIEWED" or not t.review_required), None
        )
        if task is None:
            return []
        return self._assign(devops, task)

    def _assign(self, agent: Agent, task) -> list[tuple[str, str | None]]:
        logger.info("Assigning task %r to %s", task.title, agent.name)
        if self._try_start(agent.name, task.id, "orchestrator.assigned",
                           f'Auto-assigned task "{task.title}" to {agent.name}'):
            return [(agent.name, task.id)]
        return []

    # ── Controller wiring ───────────────────────────────────────────────────

    def _wire(self, controller: AgentController):
        controller.on("state", self._on_state)
        controller.on("output", self._on_output)
        controller.on("error", self._on_error)
        controller.on("message", self._on_message)
        controller.on("tool:start", self._on_tool_start)
        controller.on("tool:complete", self._on_tool_complete)
        controller.on("exit", lambda name, payload: self._on_exit(controller, payload))

    def _on_state(self, name: str, payload: dict):
        self.broadcaster.publish("agent:state", {"agent": name, **payload})

    def _on_output(self, name: str, payload: dict):
        self.broadcaster.publish(
            "agent:output", {"agent": name, "chunk": payload["raw"], "events": payload["events"]}
        )

    def _on_error(self, name: str, payload: dict):
        logger.warning("Agent %s error: %s", name, payload.get("message"))
        self.broadcaster.publish("agent:error", {"agent": name, **payload})

    def _on_message(self, name: str, payload: dict):
        self._log(
            "agent.message",
            agent_name=name,
            session_id=payload.get("session_id"),
            data={"role": "assistant", "content_preview": payload.get("content", "")[:200]},
        )

    def _on_tool_start(self, name: str, payload: dict):
        self._log(
            "agent.tool.start",
            agent_name=name,
            session_id=payload.get("session_id"),
            data={"tool_id": payload["id"], "tool_name": payload["name"]},
        )

    def _on_tool_complete(self, name: str, payload: dict):
        self._log(
            "agent.tool.complete",
            agent_name=name,
            session_id=payload.get("session_id"),
            data={
                "tool_id": payload["id"],
                "is_error": payload.get("is_error", False),
                "result_preview": (payload.get("content") or "")[:200],
            },
        )

    def _on_exit(self, controller: AgentController, payload: dict):
        logger.info(
            "Agent %s exited (code=%s, signal=%s)",
            controller.agent_name, payload.get("exit_code"), payload.get("signal"),
        )
        self.broadcaster.publish("agent:exit", {"agent": controller.agent_name, **payload})
        if controller.state in (ControllerState.IDLE, ControllerState.STOPPED):
            self._forget(controller.agent_name, controller)
            controller.close()

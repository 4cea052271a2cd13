"""Tests for the agent process controller."""

import json
import signal
import threading

import pytest

from agency.agents.controller import (
    REDIRECT_MESSAGE,
    AgentController,
    ControllerState,
    ControllerStateError,
)
from agency.core import tasks as tasks_mod
from agency.core.agents import ensure_roster, get_agent
from agency.core.events import list_events
from agency.core.sessions import get_session, list_messages, list_sessions
from agency.db.engine import init_db

from conftest import wait_for


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    ensure_roster(conn)
    yield conn
    conn.close()


@pytest.fixture
def controller(config, db, spawner):
    c = AgentController(
        "dev-alpha", config, spawner=spawner,
        interrupt_timeout=0.2, kill_grace=0.2, stop_timeout=2.0,
    )
    yield c
    c.close()


def _record(states):
    return lambda name, payload: states.append(payload["to"])


class TestStart:
    def test_start_spawns_with_fresh_session(self, controller, spawner, db):
        task = tasks_mod.create_task(db, "Fix login bug", status="READY")
        controller.start(task.id)

        assert controller.state == ControllerState.RUNNING
        argv = spawner.last.argv
        assert argv[0] == "claude"
        assert argv[1] == "-p"
        assert "--resume" not in argv
        assert argv[argv.index("--session-id") + 1] == controller.external_session_id
        assert "--output-format" in argv and "stream-json" in argv

        agent = get_agent(db, "dev-alpha")
        assert agent.status == "WORKING"
        assert agent.working_on == f"Working on task {task.id}"
        assert agent.current_task_id == task.id
        assert agent.pid == spawner.last.pid

        session = get_session(db, controller.session_id)
        assert session.status == "RUNNING"
        assert session.pid == spawner.last.pid
        assert session.external_session_id == controller.external_session_id
        [prompt] = list_messages(db, session.id)
        assert prompt.role == "user"
        assert "Fix login bug" in prompt.content

    def test_state_sequence(self, controller):
        states = []
        controller.on("state", _record(states))
        controller.start()
        assert states == [ControllerState.STARTING, ControllerState.RUNNING]

    def test_double_start_rejected(self, controller, spawner):
        controller.start()
        with pytest.raises(ControllerStateError):
            controller.start()
        assert controller.state == ControllerState.RUNNING
        assert len(spawner.processes) == 1

    def test_missing_role_file(self, controller, config, spawner):
        (config.agency_dir / "agents" / "dev-alpha" / "AGENT.md").unlink()
        with pytest.raises(ValueError, match="agent definition"):
            controller.start()
        assert controller.state == ControllerState.IDLE
        assert spawner.processes == []

    def test_unknown_agent(self, config, db, spawner):
        c = AgentController("nobody", config, spawner=spawner)
        try:
            with pytest.raises(LookupError):
                c.start()
        finally:
            c.close()

    def test_spawn_failure(self, controller, spawner, db):
        spawner.fail = True
        with pytest.raises(OSError):
            controller.start()
        assert controller.state == ControllerState.STOPPED
        [session] = list_sessions(db, agent_name="dev-alpha")
        assert session.status == "FAILED"
        assert "spawn failed" in session.exit_reason
        assert get_agent(db, "dev-alpha").status == "OFFLINE"

    def test_prompt_sections(self, controller, db):
        task = tasks_mod.create_task(db, "Add search", status="READY",
                                     acceptance_criteria=["Finds things"])
        prompt = controller.build_prompt("developer", task.id, "ext-1")
        assert prompt.startswith("# dev-alpha")
        assert "## Runtime Information" in prompt
        assert "- **Session ID:** ext-1" in prompt
        assert "- [ ] Finds things" in prompt
        assert "## API Integration" in prompt
        assert "## INTERCEPTION MODE" in prompt
        assert f"assigned to work on task {task.id}" in prompt
        assert "QA Notes" not in prompt

    def test_qa_prompt_has_notes(self, config, db, spawner):
        task = tasks_mod.create_task(db, "Add search", status="DONE")
        c = AgentController("qa", config, spawner=spawner)
        try:
            assert "### QA Notes" in c.build_prompt("qa", task.id)
        finally:
            c.close()


class TestPauseResume:
    def test_pause_and_resume(self, controller, spawner, db):
        assert get_agent(db, "dev-alpha").status == "OFFLINE"
        controller.start()
        assert get_agent(db, "dev-alpha").status == "WORKING"

        controller.pause("waiting on design")
        assert controller.state == ControllerState.PAUSED
        assert spawner.last.signals == [signal.SIGSTOP]
        agent = get_agent(db, "dev-alpha")
        assert agent.status == "PAUSED"
        assert agent.blocker == "waiting on design"
        assert get_session(db, controller.session_id).status == "PAUSED"

        controller.resume()
        assert controller.state == ControllerState.RUNNING
        assert spawner.last.signals == [signal.SIGSTOP, signal.SIGCONT]
        agent = get_agent(db, "dev-alpha")
        assert agent.status == "WORKING"
        assert agent.blocker is None

    def test_pause_requires_running(self, controller):
        with pytest.raises(ControllerStateError):
            controller.pause()

    def test_resume_requires_paused(self, controller):
        controller.start()
        with pytest.raises(ControllerStateError):
            controller.resume()


class TestInject:
    def test_inject_while_running(self, controller, spawner, db):
        controller.start()
        first = spawner.last
        old_session = controller.session_id
        external_id = controller.external_session_id

        assert controller.inject("Focus on the tests", "tech-lead") is True

        assert first.signals == [signal.SIGINT]
        assert len(spawner.processes) == 2
        argv = spawner.last.argv
        assert argv[1:3] == ["--resume", external_id]
        assert spawner.last.written == ["Focus on the tests\n"]
        assert controller.state == ControllerState.RUNNING
        assert controller.external_session_id == external_id

        previous = get_session(db, old_session)
        assert previous.status == "COMPLETED"
        assert previous.exit_reason == "superseded by injection"
        [message] = list_messages(db, controller.session_id)
        assert message.role == "injected"
        assert message.injected
        assert message.injected_by == "tech-lead"
        assert list_events(db, event_type="agent.injected")

    def test_inject_while_paused(self, controller, spawner, db):
        controller.start()
        external_id = controller.external_session_id
        controller.pause()
        states = []
        controller.on("state", _record(states))

        controller.inject("Wake up")
        assert spawner.processes[0].signals == [signal.SIGSTOP, signal.SIGCONT, signal.SIGINT]
        assert states == [ControllerState.INJECTING, ControllerState.RUNNING]
        assert controller.state == ControllerState.RUNNING
        assert get_session(db, controller.session_id).external_session_id == external_id
        assert get_agent(db, "dev-alpha").status == "WORKING"

    def test_inject_kills_after_timeout(self, controller, spawner):
        spawner.ignore_sigint = True
        controller.start()
        assert controller.inject("Stop and listen") is True
        assert spawner.processes[0].signals == [signal.SIGINT, signal.SIGKILL]
        assert controller.state == ControllerState.RUNNING

    def test_inject_requires_live_process(self, controller):
        with pytest.raises(ControllerStateError):
            controller.inject("Hello")

    def test_empty_message_rejected(self, controller):
        controller.start()
        with pytest.raises(ValueError):
            controller.inject("   ")

    def test_injection_queued_while_in_flight(self, controller, spawner):
        spawner.ignore_sigint = True
        controller.start()
        results = {}

        def first():
            results["first"] = controller.inject("First")

        thread = threading.Thread(target=first)
        thread.start()
        assert wait_for(lambda: controller.state == ControllerState.INJECTING)
        assert controller.inject("Second") is False
        assert controller.queued == 1
        thread.join(timeout=3)

        assert results["first"] is True
        assert controller.state == ControllerState.RUNNING
        assert spawner.last.written == ["First\n"]

        # The queued message goes out once the resumed process exits
        spawner.last.exit(0)
        assert wait_for(lambda: len(spawner.processes) == 3
                        and controller.state == ControllerState.RUNNING)
        assert spawner.last.written == ["Second\n"]
        assert controller.queued == 0

    def test_stale_output_ignored(self, controller, spawner, db):
        controller.start()
        first = spawner.last
        controller.inject("New direction")
        outputs = []
        controller.on("output", lambda name, payload: outputs.append(payload))

        first.emit(json.dumps({"type": "assistant",
                               "message": {"content": [{"type": "text", "text": "old"}]}}) + "\n")
        assert outputs == []
        spawner.last.emit("fresh\n")
        assert len(outputs) == 1

    def test_redirect(self, controller, spawner, db):
        controller.start()
        other = tasks_mod.create_task(db, "Hotfix", status="READY")
        controller.redirect(other.id)
        assert controller.task_id == other.id
        assert spawner.last.written == [REDIRECT_MESSAGE.format(task_id=other.id) + "\n"]
        [message] = list_messages(db, controller.session_id)
        assert message.injected_by == "orchestrator"
        assert get_agent(db, "dev-alpha").current_task_id == other.id

    def test_redirect_behind_injection_keeps_task_until_delivered(self, controller, spawner, db):
        spawner.ignore_sigint = True
        first_task = tasks_mod.create_task(db, "Original", status="READY")
        hotfix = tasks_mod.create_task(db, "Hotfix", status="READY")
        controller.start(first_task.id)

        thread = threading.Thread(target=controller.inject, args=("Keep going",))
        thread.start()
        assert wait_for(lambda: controller.state == ControllerState.INJECTING)
        assert controller.redirect(hotfix.id) is False
        thread.join(timeout=3)

        assert controller.state == ControllerState.RUNNING
        assert controller.task_id == first_task.id
        assert get_agent(db, "dev-alpha").current_task_id == first_task.id

        spawner.last.exit(0)
        assert wait_for(lambda: len(spawner.processes) == 3
                        and controller.state == ControllerState.RUNNING)
        assert spawner.last.written == [REDIRECT_MESSAGE.format(task_id=hotfix.id) + "\n"]
        assert controller.task_id == hotfix.id
        assert get_agent(db, "dev-alpha").current_task_id == hotfix.id
        assert get_session(db, controller.session_id).task_id == hotfix.id

    def test_redirect_requires_running(self, controller):
        with pytest.raises(ControllerStateError):
            controller.redirect("some-task")


class TestStop:
    def test_stop(self, controller, spawner, db):
        controller.start()
        session_id = controller.session_id
        controller.stop()

        assert controller.state == ControllerState.STOPPED
        assert spawner.last.signals == [signal.SIGINT]
        assert controller.pid is None
        session = get_session(db, session_id)
        assert session.status == "TERMINATED"
        assert session.exit_reason == "stopped"
        agent = get_agent(db, "dev-alpha")
        assert agent.status == "OFFLINE"
        assert agent.pid is None
        assert agent.session_id is None

    def test_stop_force_kills_stubborn_process(self, controller, spawner, db):
        spawner.ignore_sigint = True
        controller.start()
        controller.stop()
        assert spawner.last.signals == [signal.SIGINT, signal.SIGKILL]
        assert controller.state == ControllerState.STOPPED
        agent = get_agent(db, "dev-alpha")
        assert agent.pid is None
        assert agent.session_id is None

    def test_stop_paused_process_continues_it_first(self, controller, spawner):
        controller.start()
        controller.pause()
        controller.stop()
        assert spawner.last.signals == [signal.SIGSTOP, signal.SIGCONT, signal.SIGINT]

    def test_stop_when_idle_rejected(self, controller):
        with pytest.raises(ControllerStateError):
            controller.stop()

    def test_restart_after_stop(self, controller, spawner):
        controller.start()
        controller.stop()
        controller.start()
        assert controller.state == ControllerState.RUNNING
        assert len(spawner.processes) == 2


class TestNaturalExit:
    def test_clean_exit_goes_idle(self, controller, spawner, db):
        controller.start()
        session_id = controller.session_id
        exits = []
        controller.on("exit", lambda name, payload: exits.append(payload))

        spawner.last.exit(0)

        assert controller.state == ControllerState.IDLE
        assert controller.session_id is None
        assert exits == [{"exit_code": 0, "signal": None}]
        session = get_session(db, session_id)
        assert session.status == "COMPLETED"
        assert session.exit_code == 0
        agent = get_agent(db, "dev-alpha")
        assert agent.status == "IDLE"
        assert agent.pid is None

    def test_failed_exit(self, controller, spawner, db):
        controller.start()
        session_id = controller.session_id
        spawner.last.exit(1)
        session = get_session(db, session_id)
        assert session.status == "FAILED"
        assert session.exit_code == 1
        assert controller.state == ControllerState.IDLE
        assert list_events(db, event_type="session.failed")

    def test_killed_by_signal(self, controller, spawner, db):
        controller.start()
        session_id = controller.session_id
        spawner.last.exit(None, "SIGSEGV")
        session = get_session(db, session_id)
        assert session.status == "FAILED"
        assert session.exit_reason == "signal SIGSEGV"

    def test_non_string_text_in_final_output(self, controller, spawner, db):
        controller.start()
        session_id = controller.session_id
        spawner.last.emit(json.dumps({
            "type": "assistant", "message": {"content": [{"type": "text", "text": 123}]},
        }) + "\n")
        spawner.last.emit('{"type":"result","result":"ok"}')

        spawner.last.exit(0)

        assert controller.state == ControllerState.IDLE
        assert get_session(db, session_id).status == "COMPLETED"
        assert get_agent(db, "dev-alpha").status == "IDLE"
        assert list_messages(db, session_id)[-1].content == "123"

    def test_bad_record_at_exit_still_finalizes(self, controller, spawner, db):
        controller.start()
        session_id = controller.session_id
        spawner.last.emit('{"type":"result","result":"ok","usage":{"input_tokens":"lots"}}')

        spawner.last.exit(0)

        assert controller.state == ControllerState.IDLE
        assert get_session(db, session_id).status == "COMPLETED"
        agent = get_agent(db, "dev-alpha")
        assert agent.status == "IDLE"
        assert agent.pid is None


class TestOutput:
    def test_messages_and_usage_persisted(self, controller, spawner, db):
        controller.start()
        messages = []
        controller.on("message", lambda name, payload: messages.append(payload))

        spawner.last.emit(json.dumps({
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "All fixed."}]},
        }) + "\n")
        spawner.last.emit(json.dumps({
            "type": "result", "result": "All fixed.",
            "usage": {"input_tokens": 120, "output_tokens": 40},
        }) + "\n")

        transcript = list_messages(db, controller.session_id)
        assert [m.role for m in transcript] == ["user", "assistant"]
        assert transcript[1].content == "All fixed."
        assert transcript[1].sequence == 2
        assert messages[0]["content"] == "All fixed."

        session = get_session(db, controller.session_id)
        assert session.input_tokens == 120
        assert session.output_tokens == 40
        assert get_agent(db, "dev-alpha").last_heartbeat is not None

    def test_tool_calls(self, controller, spawner, db):
        controller.start()
        started, completed = [], []
        controller.on("tool:start", lambda name, payload: started.append(payload))
        controller.on("tool:complete", lambda name, payload: completed.append(payload))

        spawner.last.emit(json.dumps({
            "type": "assistant",
            "message": {"content": [
                {"type": "tool_use", "id": "toolu_9", "name": "Bash", "input": {"command": "ls"}},
            ]},
        }) + "\n")
        spawner.last.emit(json.dumps({
            "type": "user",
            "message": {"content": [
                {"type": "tool_result", "tool_use_id": "toolu_9", "content": "a.py"},
            ]},
        }) + "\n")

        assert started[0]["name"] == "Bash"
        assert started[0]["input"] == {"command": "ls"}
        assert completed[0]["id"] == "toolu_9"
        assert completed[0]["content"] == "a.py"
        assert not completed[0]["is_error"]

    def test_listener_errors_do_not_break_output(self, controller, spawner):
        controller.start()
        seen = []

        def broken(name, payload):
            raise RuntimeError("boom")

        controller.on("output", broken)
        controller.on("output", lambda name, payload: seen.append(payload["raw"]))
        spawner.last.emit("plain line\n")
        assert seen == ["plain line\n"]


_OPERATIONS = {
    "start": lambda c: c.start(),
    "pause": lambda c: c.pause(),
    "resume": lambda c: c.resume(),
    "inject": lambda c: c.inject("hello"),
    "redirect": lambda c: c.redirect("other-task"),
    "stop": lambda c: c.stop(),
}

_SETUP = {
    ControllerState.IDLE: [],
    ControllerState.RUNNING: ["start"],
    ControllerState.PAUSED: ["start", "pause"],
    ControllerState.STOPPED: ["start", "stop"],
}

_INVALID = [
    (ControllerState.IDLE, "pause"),
    (ControllerState.IDLE, "resume"),
    (ControllerState.IDLE, "inject"),
    (ControllerState.IDLE, "redirect"),
    (ControllerState.IDLE, "stop"),
    (ControllerState.RUNNING, "start"),
    (ControllerState.RUNNING, "resume"),
    (ControllerState.PAUSED, "start"),
    (ControllerState.PAUSED, "pause"),
    (ControllerState.STOPPED, "pause"),
    (ControllerState.STOPPED, "resume"),
    (ControllerState.STOPPED, "inject"),
    (ControllerState.STOPPED, "redirect"),
    (ControllerState.STOPPED, "stop"),
]


class TestStateMachine:
    @pytest.mark.parametrize("state,operation", _INVALID)
    def test_invalid_operation_leaves_state(self, controller, spawner, state, operation):
        for step in _SETUP[state]:
            _OPERATIONS[step](controller)
        assert controller.state == state
        spawned = len(spawner.processes)

        with pytest.raises(ControllerStateError):
            _OPERATIONS[operation](controller)
        assert controller.state == state
        assert len(spawner.processes) == spawned

    @pytest.mark.parametrize("state,operation,expected", [
        (ControllerState.IDLE, "start", ControllerState.RUNNING),
        (ControllerState.STOPPED, "start", ControllerState.RUNNING),
        (ControllerState.RUNNING, "pause", ControllerState.PAUSED),
        (ControllerState.RUNNING, "inject", ControllerState.RUNNING),
        (ControllerState.RUNNING, "redirect", ControllerState.RUNNING),
        (ControllerState.RUNNING, "stop", ControllerState.STOPPED),
        (ControllerState.PAUSED, "resume", ControllerState.RUNNING),
        (ControllerState.PAUSED, "inject", ControllerState.RUNNING),
        (ControllerState.PAUSED, "redirect", ControllerState.RUNNING),
        (ControllerState.PAUSED, "stop", ControllerState.STOPPED),
    ])
    def test_valid_operation_lands_in_next_state(self, controller, state, operation, expected):
        for step in _SETUP[state]:
            _OPERATIONS[step](controller)
        _OPERATIONS[operation](controller)
        assert controller.state == expected

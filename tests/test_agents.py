"""Tests for agent records, sessions, transcripts and handoffs."""

import tempfile
from pathlib import Path

import pytest

from agency.core import agents as agents_mod
from agency.core import handoffs as handoffs_mod
from agency.core import sessions as sessions_mod
from agency.core.events import list_events
from agency.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary SQLite database with the roster seeded."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        agents_mod.ensure_roster(conn)
        yield conn
        conn.close()


class TestRoster:
    def test_default_roster(self, db):
        agents = agents_mod.list_agents(db)
        assert [a.name for a in agents] == [name for name, _, _ in agents_mod.DEFAULT_ROSTER]
        assert all(a.status == "OFFLINE" for a in agents)
        assert agents_mod.get_agent(db, "dev-beta").specialization == "frontend"

    def test_ensure_roster_is_idempotent(self, db):
        agents_mod.update_agent_status(db, "qa", "IDLE")
        agents = agents_mod.ensure_roster(db)
        assert len(agents) == len(agents_mod.DEFAULT_ROSTER)
        assert agents_mod.get_agent(db, "qa").status == "IDLE"

    def test_filter_by_type(self, db):
        developers = agents_mod.list_agents(db, agent_type="developer")
        assert [a.name for a in developers] == ["dev-alpha", "dev-beta", "dev-gamma"]

    def test_register_rejects_unknown_type(self, db):
        with pytest.raises(ValueError):
            agents_mod.register_agent(db, "intern", "intern")


class TestAgentStatus:
    def test_optional_fields_left_alone(self, db):
        agents_mod.update_agent_status(db, "qa", "WORKING", working_on="Testing cart")
        agent = agents_mod.update_agent_status(db, "qa", "PAUSED", blocker="Waiting")
        assert agent.working_on == "Testing cart"
        assert agent.blocker == "Waiting"

        agent = agents_mod.update_agent_status(db, "qa", "WORKING", blocker=None)
        assert agent.blocker is None
        assert agent.working_on == "Testing cart"

    def test_invalid_status(self, db):
        with pytest.raises(ValueError):
            agents_mod.update_agent_status(db, "qa", "SLEEPING")

    def test_unknown_agent(self, db):
        assert agents_mod.update_agent_status(db, "nobody", "IDLE") is None

    def test_session_attach_and_detach(self, db):
        agent = agents_mod.update_agent_session(db, "devops", "s1", 1234, "deploy")
        assert (agent.session_id, agent.pid, agent.current_task_id) == ("s1", 1234, "deploy")
        agent = agents_mod.update_agent_session(db, "devops", None, None)
        assert agent.session_id is None
        assert agent.current_task_id == "deploy"

    def test_heartbeat(self, db):
        assert agents_mod.get_agent(db, "qa").last_heartbeat is None
        agent = agents_mod.heartbeat(db, "qa", "Running the suite")
        assert agent.last_heartbeat is not None
        assert agent.working_on == "Running the suite"


class TestSessions:
    def test_lifecycle(self, db):
        session = sessions_mod.create_session(db, "dev-alpha", "ext-1", task_id="cart")
        assert session.status == "RUNNING"
        assert not session.is_terminal

        sessions_mod.add_session_usage(db, session.id, 100, 20)
        sessions_mod.add_session_usage(db, session.id, 5, 1)
        ended = sessions_mod.update_session_status(db, session.id, "FAILED", exit_code=2,
                                                   exit_reason="crashed")
        assert ended.is_terminal
        assert ended.ended_at is not None
        assert (ended.input_tokens, ended.output_tokens) == (105, 21)
        assert (ended.exit_code, ended.exit_reason) == (2, "crashed")

    def test_list_newest_first(self, db):
        first = sessions_mod.create_session(db, "qa")
        second = sessions_mod.create_session(db, "qa")
        sessions_mod.create_session(db, "devops")
        assert [s.id for s in sessions_mod.list_sessions(db, agent_name="qa")] == [second.id, first.id]

    def test_invalid_status(self, db):
        session = sessions_mod.create_session(db, "qa")
        with pytest.raises(ValueError):
            sessions_mod.update_session_status(db, session.id, "ZOMBIE")

    def test_messages_are_sequenced_per_session(self, db):
        a = sessions_mod.create_session(db, "qa")
        b = sessions_mod.create_session(db, "qa")
        sessions_mod.add_message(db, a.id, "user", "Start testing")
        sessions_mod.add_message(db, b.id, "user", "Other session")
        msg = sessions_mod.add_message(db, a.id, "assistant", "On it",
                                       tool_calls=[{"id": "t1", "name": "Bash"}])
        injected = sessions_mod.add_message(db, a.id, "injected", "Stop", injected_by="tech-lead")

        assert msg.sequence == 2
        assert msg.tool_calls == [{"id": "t1", "name": "Bash"}]
        assert injected.sequence == 3
        assert injected.injected
        assert [m.content for m in sessions_mod.list_messages(db, a.id)] == [
            "Start testing", "On it", "Stop",
        ]
        assert len(sessions_mod.list_messages(db, a.id, limit=2)) == 2

    def test_invalid_role(self, db):
        session = sessions_mod.create_session(db, "qa")
        with pytest.raises(ValueError):
            sessions_mod.add_message(db, session.id, "robot", "beep")


class TestHandoffs:
    def test_create_and_list(self, db):
        normal = handoffs_mod.create_handoff(db, "tech-lead", "Schema", to_agent="dev-alpha")
        urgent = handoffs_mod.create_handoff(db, "qa", "Prod is down", to_agent="dev-alpha",
                                             priority="urgent", handoff_type="bug-report")
        broadcast = handoffs_mod.create_handoff(db, "product-owner", "Sprint goal")
        handoffs_mod.create_handoff(db, "qa", "Not yours", to_agent="dev-beta")

        listed = handoffs_mod.list_handoffs(db, to_agent="dev-alpha")
        assert [h.id for h in listed] == [urgent.id, broadcast.id, normal.id]
        targeted = handoffs_mod.list_handoffs(db, targeted_only=True)
        assert broadcast.id not in [h.id for h in targeted]

        [event] = list_events(db, event_type="handoff.created", agent_name="product-owner")
        assert event.data["to_agent"] is None

    def test_validation(self, db):
        with pytest.raises(ValueError):
            handoffs_mod.create_handoff(db, "qa", "  ")
        with pytest.raises(ValueError):
            handoffs_mod.create_handoff(db, "qa", "Title", handoff_type="memo")
        with pytest.raises(ValueError):
            handoffs_mod.create_handoff(db, "qa", "Title", priority="asap")
        with pytest.raises(ValueError):
            handoffs_mod.list_handoffs(db, status="OPEN")

    def test_claim_and_close(self, db):
        handoff = handoffs_mod.create_handoff(db, "tech-lead", "Review API", to_agent="reviewer")
        claimed = handoffs_mod.claim_handoff(db, handoff.id, "reviewer")
        assert claimed.status == "CLAIMED"
        assert claimed.claimed_by == "reviewer"
        assert claimed.claimed_at is not None
        with pytest.raises(ValueError):
            handoffs_mod.claim_handoff(db, handoff.id, "qa")

        dismissed = handoffs_mod.dismiss_handoff(db, handoff.id)
        assert dismissed.status == "DISMISSED"
        assert dismissed.resolved_at is not None
        with pytest.raises(ValueError):
            handoffs_mod.resolve_handoff(db, handoff.id)

        types = [e.type for e in list_events(db, event_type="handoff.")]
        assert types == ["handoff.dismissed", "handoff.claimed", "handoff.created"]

    def test_missing(self, db):
        assert handoffs_mod.claim_handoff(db, "nope", "qa") is None
        assert handoffs_mod.resolve_handoff(db, "nope") is None

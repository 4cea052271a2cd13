"""Tests for agent briefing context."""

import json
import tempfile
from pathlib import Path

import pytest

from agency.agents import context_builder as cb
from agency.core import handoffs as handoffs_mod
from agency.core import tasks as tasks_mod
from agency.core.agents import ensure_roster
from agency.db.engine import init_db


@pytest.fixture
def env():
    """A temp projects dir and database."""
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp) / "shop"
        root.mkdir()
        conn = init_db(Path(tmp) / "test.db")
        ensure_roster(conn)
        yield conn, root
        conn.close()


class TestProjectConfig:
    def test_fallback_stub_uses_directory_name(self, env):
        _, root = env
        project = cb.load_project_config(root)
        assert project.name == "shop"
        assert project.root_path == str(root)
        assert project.tech_stack == []

    def test_reads_camel_case_keys(self, env):
        _, root = env
        (root / "agency-project.json").write_text(json.dumps({
            "name": "Shop",
            "description": "An online shop",
            "techStack": ["Python", "SQLite"],
            "keyDirectories": {"api": "src/api"},
            "currentFocus": "Checkout",
            "notes": ["Use UTC"],
        }))
        project = cb.load_project_config(root)
        assert project.name == "Shop"
        assert project.tech_stack == ["Python", "SQLite"]
        assert project.key_directories == {"api": "src/api"}
        assert project.current_focus == "Checkout"
        assert project.notes == ["Use UTC"]

    def test_bad_file_falls_through_to_next(self, env):
        _, root = env
        (root / "agency-project.json").write_text("{not json")
        (root / "agency.json").write_text(json.dumps({"name": "Second", "tech_stack": ["Go"]}))
        project = cb.load_project_config(root)
        assert project.name == "Second"
        assert project.tech_stack == ["Go"]

    def test_nested_config_location(self, env):
        _, root = env
        (root / ".agency").mkdir()
        (root / ".agency" / "project.json").write_text(json.dumps({"name": "Nested"}))
        assert cb.load_project_config(root).name == "Nested"


class TestWorkflowPosition:
    def test_status_sentence(self, env):
        db, _ = env
        task = tasks_mod.create_task(db, "Fix bug", status="QA_FAILED")
        assert "QA found issues" in cb.workflow_position(task, "developer")

    def test_role_default_without_task(self):
        text = cb.workflow_position(None, "qa")
        assert text.startswith("You are the qa.")
        assert "DONE" in text

    def test_unknown_role(self):
        assert "appropriate to your role" in cb.workflow_position(None, "janitor")


class TestBuildContext:
    def test_collects_task_recent_work_and_handoffs(self, env):
        db, root = env
        task = tasks_mod.create_task(db, "Add cart", description="Shopping cart",
                                     acceptance_criteria=["Items persist"])
        done = tasks_mod.create_task(db, "Login page", status="IN_PROGRESS")
        tasks_mod.complete_task(db, done.id, "Built login", ["a.py"])
        handoffs_mod.create_handoff(db, "tech-lead", "Watch the schema", to_agent="dev-alpha")
        handoffs_mod.create_handoff(db, "qa", "Not for you", to_agent="dev-beta")

        ctx = cb.build_context(db, "dev-alpha", "developer", root, task.id)
        assert ctx.current_task.id == task.id
        assert [w.task.id for w in ctx.recent_work] == [done.id]
        assert ctx.recent_work[0].summary == "Built login"
        assert [h.title for h in ctx.pending_handoffs] == ["Watch the schema"]
        assert ctx.workflow_position == cb.WORKFLOW_POSITIONS["INBOX"]

    def test_recent_work_is_limited(self, env):
        db, root = env
        for i in range(cb.RECENT_WORK_LIMIT + 3):
            tasks_mod.create_task(db, f"Shipped {i}", status="SHIPPED")
        ctx = cb.build_context(db, "qa", "qa", root)
        assert len(ctx.recent_work) == cb.RECENT_WORK_LIMIT
        assert ctx.current_task is None


class TestFormatAsText:
    def test_full_briefing(self, env):
        db, root = env
        (root / "agency.json").write_text(json.dumps({
            "name": "Shop", "keyDirectories": {"web": "src/web"}, "notes": ["Be nice"],
        }))
        task = tasks_mod.create_task(db, "Add cart", acceptance_criteria=["Items persist", "Totals add up"])
        done = tasks_mod.create_task(db, "Search", status="IN_PROGRESS")
        tasks_mod.complete_task(db, done.id, "Added search", [f"f{i}.py" for i in range(8)])
        handoffs_mod.create_handoff(db, "tech-lead", "Schema note", "Use migrations",
                                    to_agent="dev-alpha", task_id=task.id, priority="high")

        text = cb.format_as_text(cb.build_context(db, "dev-alpha", "developer", root, task.id))
        assert "## Project: Shop" in text
        assert "### Key Directories" in text
        assert "- **web:** `src/web`" in text
        assert "### Notes\n- Be nice" in text
        assert "## Your Current Task" in text
        assert "- [ ] Items persist" in text
        assert "- [ ] Totals add up" in text
        assert "## Workflow Position" in text
        assert "## Recent Work" in text
        assert "f0.py, f1.py, f2.py, f3.py, f4.py (+3 more)" in text
        assert "## Pending Handoffs For You" in text
        assert "**Task:** add-cart" in text
        assert "Use migrations" in text

    def test_empty_sections_omitted(self, env):
        db, root = env
        text = cb.format_as_text(cb.build_context(db, "devops", "devops", root))
        assert "## Project: shop" in text
        assert "## Workflow Position" in text
        assert "## Your Current Task" not in text
        assert "## Recent Work" not in text
        assert "## Pending Handoffs" not in text
        assert "### Key Directories" not in text

"""Shared fixtures: a temp agency directory and a fake process spawner."""

import signal
import tempfile
import threading
import time
from pathlib import Path

import pytest

from agency.agents.pty import ProcessHandle
from agency.config import Config
from agency.core.agents import DEFAULT_ROSTER


class FakeProcess(ProcessHandle):
    """Stands in for a PTY process. Exits synchronously when signalled."""

    def __init__(self, argv, on_data, on_exit, pid, ignore_sigint=False):
        self.argv = argv
        self.pid = pid
        self.on_data = on_data
        self.on_exit = on_exit
        self.ignore_sigint = ignore_sigint
        self.signals: list[int] = []
        self.written: list[str] = []
        self._exited = threading.Event()
        self._exit_lock = threading.Lock()

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def write(self, data: str):
        self.written.append(data)

    def send_signal(self, sig: int):
        self.signals.append(sig)
        if sig == signal.SIGKILL:
            self.exit(None, "SIGKILL")
        elif sig == signal.SIGINT and not self.ignore_sigint:
            self.exit(None, "SIGINT")

    def wait(self, timeout=None) -> bool:
        return self._exited.wait(timeout)

    def emit(self, text: str):
        self.on_data(text)

    def exit(self, code=0, signal_name=None):
        with self._exit_lock:
            if self._exited.is_set():
                return
            try:
                self.on_exit(code, signal_name)
            finally:
                self._exited.set()


class FakeSpawner:
    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.ignore_sigint = False
        self.fail = False
        self._lock = threading.Lock()

    def __call__(self, argv, cwd=None, env=None, on_data=None, on_exit=None):
        if self.fail:
            raise OSError("claude: command not found")
        with self._lock:
            proc = FakeProcess(argv, on_data, on_exit, pid=4000 + len(self.processes),
                               ignore_sigint=self.ignore_sigint)
            self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def write_roles(agency_dir: Path):
    for name, agent_type, _ in DEFAULT_ROSTER:
        role = agency_dir / "agents" / name / "AGENT.md"
        role.parent.mkdir(parents=True, exist_ok=True)
        role.write_text(f"# {name}\n\nYou are the {agent_type}.\n")


@pytest.fixture
def config():
    """A Config rooted in a temp directory, with role files for the roster."""
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        write_roles(root)
        yield Config(
            agency_dir=root,
            data_dir=root / "data",
            db_path=root / "data" / "test.db",
            projects_dir=root,
            orchestration_interval_ms=50,
        )


@pytest.fixture
def spawner():
    return FakeSpawner()

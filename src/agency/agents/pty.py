"""Pseudo-terminal subprocesses.

The Claude CLI only emits its streaming JSON format when attached to a TTY,
so agents run on a PTY rather than plain pipes. The controller talks to the
process through :class:`ProcessHandle` only, which keeps the PTY mechanics
out of the state machine and lets tests substitute a fake.
"""

import codecs
import errno
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_ROWS = 30
DEFAULT_COLS = 120

# on_data(text) and on_exit(exit_code, signal_name)
DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None, str | None], None]


class ProcessHandle:
    """The operations the controller needs from a running process."""

    pid: int

    def write(self, data: str):
        raise NotImplementedError

    def send_signal(self, sig: int):
        raise NotImplementedError

    def kill(self):
        """Force-kill the process."""
        self.send_signal(signal.SIGKILL)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the exit callback has run. Returns False on timeout."""
        raise NotImplementedError

    @property
    def exited(self) -> bool:
        raise NotImplementedError


# spawn(argv, cwd, env, on_data, on_exit) -> ProcessHandle
Spawner = Callable[..., ProcessHandle]


class PtyProcess(ProcessHandle):
    def __init__(
        self,
        proc: subprocess.Popen,
        master_fd: int,
        on_data: DataCallback | None,
        on_exit: ExitCallback | None,
    ):
        self._proc = proc
        self._master_fd = master_fd
        self._on_data = on_data
        self._on_exit = on_exit
        self._exited = threading.Event()
        self._write_lock = threading.Lock()
        self._reader: threading.Thread | None = None
        self.pid = proc.pid

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        on_data: DataCallback | None = None,
        on_exit: ExitCallback | None = None,
        rows: int = DEFAULT_ROWS,
        cols: int = DEFAULT_COLS,
    ) -> "PtyProcess":
        """Start ``argv`` on a fresh PTY in its own session and process group."""
        master, slave = pty.openpty()
        try:
            _set_winsize(slave, rows, cols)
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                close_fds=True,
                start_new_session=True,
            )
        except BaseException:
            os.close(master)
            raise
        finally:
            os.close(slave)

        handle = cls(proc, master, on_data, on_exit)
        handle._reader = threading.Thread(
            target=handle._read_loop, name=f"pty-reader-{proc.pid}", daemon=True
        )
        handle._reader.start()
        logger.info("Spawned %s on PTY (pid %s)", argv[0], proc.pid)
        return handle

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def write(self, data: str):
        payload = data.encode("utf-8")
        with self._write_lock:
            while payload:
                written = os.write(self._master_fd, payload)
                payload = payload[written:]

    def send_signal(self, sig: int):
        """Signal the whole process group, so children of the CLI get it too."""
        if self._proc.returncode is not None:
            return
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass  # Already gone
        except PermissionError:
            # Group leader already reaped and the id reused; fall back to the child
            self._proc.send_signal(sig)

    def wait(self, timeout: float | None = None) -> bool:
        return self._exited.wait(timeout)

    def _read_loop(self):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                ready, _, _ = select.select([self._master_fd], [], [], 0.1)
                if ready:
                    chunk = self._read_chunk()
                    if not chunk:
                        break
                    self._deliver(decoder.decode(chunk))
                elif self._proc.poll() is not None:
                    # Child gone and nothing left to read. A grandchild may still
                    # hold the slave open, so don't wait for EOF.
                    break
            self._deliver(decoder.decode(b"", final=True))
        except Exception:
            logger.exception("PTY reader for pid %s failed", self.pid)
        finally:
            self._finish()

    def _read_chunk(self) -> bytes:
        try:
            return os.read(self._master_fd, 4096)
        except OSError as e:
            # Linux reports EIO on the master once the slave side is closed
            if e.errno == errno.EIO:
                return b""
            raise

    def _deliver(self, text: str):
        if text and self._on_data:
            try:
                self._on_data(text)
            except Exception:
                logger.exception("Output handler failed for pid %s", self.pid)

    def _finish(self):
        returncode = self._proc.wait()
        try:
            os.close(self._master_fd)
        except OSError:
            pass

        if returncode < 0:
            exit_code, signal_name = None, _signal_name(-returncode)
        else:
            exit_code, signal_name = returncode, None
        logger.info("Process %s exited (code=%s, signal=%s)", self.pid, exit_code, signal_name)

        try:
            if self._on_exit:
                self._on_exit(exit_code, signal_name)
        except Exception:
            logger.exception("Exit handler failed for pid %s", self.pid)
        finally:
            self._exited.set()


def _set_winsize(fd: int, rows: int, cols: int):
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"

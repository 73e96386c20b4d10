"""
Background process registry.

Tracks shell commands started with ``run_in_background`` so the model can
poll their output and kill them later. Each session has:

- an append-only list of output lines (stdout and stderr merged)
- a read cursor: ``read_new_output`` returns only lines past it
- a drain thread that reads the pipe and records the exit status

The line buffer is unbounded for the life of the session. A job that prints
a lot and is never polled or killed keeps all of it in memory.

Filtering is destructive: ``read_new_output(..., filter_str=...)`` advances
the cursor past every new line, including lines the pattern rejected, so
those lines can never be observed again.

The registry is an ordinary object owned by whoever builds the toolset, not
a module-level singleton.
"""

import logging
import os
import platform
import re
import shutil
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tools.environments.local import _kill_process_tree

logger = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

KILL_GRACE_SECONDS = 0.5

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_TERMINATED = "terminated"


class ProcessNotFoundError(KeyError):
    """No active background session with the requested id."""

    def __init__(self, session_id: str, available: List[str]):
        self.session_id = session_id
        self.available = available
        listing = ", ".join(available) if available else "none"
        super().__init__(f"Shell not found: {session_id}. Available: {listing}")

    def __str__(self) -> str:
        return self.args[0]


@dataclass
class ProcessSession:
    """A background shell command and its captured output."""

    id: str
    command: str
    cwd: Optional[str] = None
    pid: Optional[int] = None
    process: Optional[subprocess.Popen] = None
    started_at: float = field(default_factory=time.time)
    status: str = STATUS_RUNNING
    exit_code: Optional[int] = None
    output_lines: List[str] = field(default_factory=list)
    cursor: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def exited(self) -> bool:
        return self._done.is_set()

    def take_new_lines(self) -> List[str]:
        with self._lock:
            lines = self.output_lines[self.cursor:]
            self.cursor = len(self.output_lines)
        return lines


def _shell_command(command: str) -> List[str]:
    if _IS_WINDOWS:
        return ["powershell.exe", "-NoProfile", "-Command", command]
    shell = shutil.which("bash") or "/bin/sh"
    return [shell, "-c", command]


class ProcessRegistry:
    """Starts, polls and terminates background shell commands."""

    def __init__(self, kill_grace_seconds: float = KILL_GRACE_SECONDS):
        self._sessions: Dict[str, ProcessSession] = {}
        self._lock = threading.Lock()
        self.kill_grace_seconds = kill_grace_seconds

    def _generate_id(self) -> str:
        while True:
            session_id = f"proc_{uuid.uuid4().hex[:12]}"
            if session_id not in self._sessions:
                return session_id

    def spawn(self, command: str, cwd: Optional[str] = None,
              env: Optional[Dict[str, str]] = None) -> ProcessSession:
        """Start *command* in its own process group and begin draining it."""
        popen_kwargs: dict = {}
        if not _IS_WINDOWS:
            popen_kwargs["preexec_fn"] = os.setsid

        proc = subprocess.Popen(
            _shell_command(command),
            text=True,
            cwd=cwd or None,
            env=os.environ | (env or {}),
            encoding="utf-8",
            errors="replace",
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            **popen_kwargs,
        )

        with self._lock:
            session = ProcessSession(
                id=self._generate_id(),
                command=command,
                cwd=cwd,
                pid=proc.pid,
                process=proc,
            )
            self._sessions[session.id] = session

        reader = threading.Thread(
            target=self._drain, args=(session,), daemon=True,
            name=f"drain-{session.id}",
        )
        reader.start()
        logger.info("Started background process %s (pid %s): %s",
                    session.id, proc.pid, command)
        return session

    def _drain(self, session: ProcessSession) -> None:
        proc = session.process
        try:
            for raw in proc.stdout:
                line = raw.rstrip("\r\n")
                if not line.strip():
                    continue
                with session._lock:
                    session.output_lines.append(line)
        except ValueError:
            # Pipe closed underneath us by terminate().
            pass
        finally:
            try:
                proc.stdout.close()
            except OSError:
                pass

        exit_code = proc.wait()
        with session._lock:
            session.exit_code = exit_code
            if session.status == STATUS_RUNNING:
                session.status = STATUS_COMPLETED if exit_code == 0 else STATUS_FAILED
        session._done.set()
        logger.debug("Background process %s exited with %s", session.id, exit_code)

    def get(self, session_id: str) -> Optional[ProcessSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def _require(self, session_id: str) -> ProcessSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise ProcessNotFoundError(session_id, sorted(self._sessions))
        return session

    def list_sessions(self) -> List[dict]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [
            {
                "session_id": s.id,
                "command": s.command,
                "pid": s.pid,
                "status": s.status,
                "exit_code": s.exit_code,
                "started_at": s.started_at,
                "lines": len(s.output_lines),
            }
            for s in sessions
        ]

    def read_new_output(self, session_id: str, filter_str: Optional[str] = None) -> str:
        """Return lines produced since the previous read, joined by newlines.

        With *filter_str*, only matching lines are returned but the cursor
        still moves past all of them. An invalid pattern disables filtering.
        """
        session = self._require(session_id)
        lines = session.take_new_lines()

        if filter_str:
            try:
                pattern = re.compile(filter_str)
            except re.error as e:
                logger.debug("Ignoring invalid output filter %r: %s", filter_str, e)
            else:
                lines = [line for line in lines if pattern.search(line)]

        return "\n".join(lines)

    def wait(self, session_id: str, timeout: Optional[float] = None) -> str:
        """Block until the process has exited and its output is drained."""
        session = self._require(session_id)
        session._done.wait(timeout)
        return session.status

    def terminate(self, session_id: str) -> str:
        """Stop the session's process group and drop it from the registry.

        Sends a polite signal first, waits a fixed grace period, then forces
        the kill. Returns output produced since the last read.
        """
        session = self._require(session_id)
        proc = session.process

        if proc is not None and proc.poll() is None:
            _kill_process_tree(proc)
            try:
                proc.wait(timeout=self.kill_grace_seconds)
            except subprocess.TimeoutExpired:
                logger.info("Process %s ignored SIGTERM; forcing kill", session_id)
                _kill_process_tree(proc, force=True)
                try:
                    proc.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    logger.warning("Process %s did not exit after SIGKILL", session_id)

        session._done.wait(timeout=2)
        with session._lock:
            session.status = STATUS_TERMINATED
            if proc is not None and session.exit_code is None:
                session.exit_code = proc.poll()

        with self._lock:
            self._sessions.pop(session_id, None)

        logger.info("Terminated background process %s", session_id)
        return "\n".join(session.take_new_lines())

    def cleanup_all(self) -> None:
        """Terminate every session that is still running."""
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            try:
                self.terminate(session_id)
            except ProcessNotFoundError:
                pass

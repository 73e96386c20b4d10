"""Local execution environment with timeout, interrupt and process-group kill."""

import os
import platform
import shutil
import signal
import subprocess
import threading
import time
from typing import Dict, List, Optional

# Detect platform once at import time.
_IS_WINDOWS = platform.system() == "Windows"

TIMEOUT_EXIT_CODE = 124
INTERRUPT_EXIT_CODE = 130


def _kill_process_tree(proc: subprocess.Popen, *, force: bool = False) -> None:
    """Terminate a process and its entire process group/tree.

    On POSIX systems this sends SIGTERM (or SIGKILL when *force* is True) to
    the entire process group so child processes spawned by the shell are also
    cleaned up.  On Windows, ``proc.kill()`` is used directly because there is
    no ``os.killpg`` equivalent in the standard library.
    """
    if _IS_WINDOWS:
        try:
            proc.kill()
        except (ProcessLookupError, PermissionError, OSError):
            pass
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        pgid = os.getpgid(proc.pid)
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError, OSError):
        # Fallback: signal the process directly if the group is unreachable.
        try:
            proc.kill() if force else proc.terminate()
        except (ProcessLookupError, PermissionError, OSError):
            pass


def _drain(stream, sink: List[str]) -> None:
    try:
        for line in stream:
            sink.append(line)
    except ValueError:
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


class LocalEnvironment:
    """Run foreground commands directly on the host machine.

    - Popen + polling so a timeout or interrupt can kill mid-command
    - One drain thread per stream to prevent pipe buffer deadlocks
    - stdin_data support for piping content
    - Commands run through ``bash -c`` (``powershell`` on Windows)
    """

    def __init__(self, cwd: str = "", timeout: int = 120, env: Optional[Dict[str, str]] = None):
        self.cwd = cwd or os.getcwd()
        self.timeout = timeout
        self.env = env or {}

    def _shell_command(self, command: str) -> List[str]:
        if _IS_WINDOWS:
            return ["powershell.exe", "-NoProfile", "-Command", command]
        shell = shutil.which("bash") or "/bin/sh"
        return [shell, "-c", command]

    def execute(self, command: str, cwd: str = "", *,
                timeout: Optional[int] = None,
                stdin_data: Optional[str] = None,
                interrupt_event: Optional[threading.Event] = None) -> dict:
        """Run *command* to completion.

        Returns a dict with ``stdout``, ``stderr`` and ``returncode``.
        A timed-out command is killed and reported with returncode 124.
        """
        work_dir = cwd or self.cwd or os.getcwd()
        effective_timeout = timeout or self.timeout

        popen_kwargs: dict = {}
        if not _IS_WINDOWS:
            # New process group so killpg reaches every child of the shell.
            popen_kwargs["preexec_fn"] = os.setsid

        try:
            proc = subprocess.Popen(
                self._shell_command(command),
                text=True,
                cwd=work_dir,
                env=os.environ | self.env,
                encoding="utf-8",
                errors="replace",
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
                **popen_kwargs,
            )
        except OSError as e:
            return {"stdout": "", "stderr": f"Execution error: {e}", "returncode": 1}

        if stdin_data is not None:
            def _write_stdin():
                try:
                    proc.stdin.write(stdin_data)
                    proc.stdin.close()
                except (BrokenPipeError, OSError):
                    pass
            threading.Thread(target=_write_stdin, daemon=True).start()

        out_chunks: List[str] = []
        err_chunks: List[str] = []
        readers = [
            threading.Thread(target=_drain, args=(proc.stdout, out_chunks), daemon=True),
            threading.Thread(target=_drain, args=(proc.stderr, err_chunks), daemon=True),
        ]
        for reader in readers:
            reader.start()

        deadline = time.monotonic() + effective_timeout
        while proc.poll() is None:
            if interrupt_event is not None and interrupt_event.is_set():
                self._stop(proc, readers)
                return {
                    "stdout": "".join(out_chunks),
                    "stderr": "".join(err_chunks) + "\n[Command interrupted]",
                    "returncode": INTERRUPT_EXIT_CODE,
                }
            if time.monotonic() > deadline:
                self._stop(proc, readers)
                return {
                    "stdout": "".join(out_chunks),
                    "stderr": f"Command timed out after {effective_timeout} seconds",
                    "returncode": TIMEOUT_EXIT_CODE,
                }
            time.sleep(0.05)

        for reader in readers:
            reader.join(timeout=5)
        return {
            "stdout": "".join(out_chunks),
            "stderr": "".join(err_chunks),
            "returncode": proc.returncode,
        }

    @staticmethod
    def _stop(proc: subprocess.Popen, readers: List[threading.Thread]) -> None:
        _kill_process_tree(proc)
        try:
            proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            _kill_process_tree(proc, force=True)
        for reader in readers:
            reader.join(timeout=2)

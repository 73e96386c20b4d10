"""
Shell tools: ``bash``, ``bash_output`` and ``bash_kill``.

Foreground commands run through ``LocalEnvironment`` on a worker thread so
the event loop keeps serving other sessions. Background commands are handed
to a ``ProcessRegistry`` owned by the caller; the three tools share one
registry instance.
"""

import asyncio
import logging
import threading
from typing import Optional

from tools.base import Tool, ToolResult, ToolSchema
from tools.environments.local import LocalEnvironment
from tools.process_registry import ProcessNotFoundError, ProcessRegistry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120
MAX_TIMEOUT = 600

BASH_TOOL_DESCRIPTION = """Execute a shell command in the workspace.

**Command Execution:**
- Simple commands: just provide the 'command' parameter
- Command timeout: optional 'timeout' in seconds (default 120, max 600)
- Long-running tasks and servers: set 'run_in_background' to true, then
  monitor with bash_output and stop with bash_kill

**Things to avoid:**
- Do NOT use interactive tools such as vim, nano or a python REPL - you will get stuck.
- Pipe large git output through cat to avoid the pager.
"""


def clamp_timeout(timeout) -> int:
    try:
        value = int(timeout)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT
    return max(1, min(MAX_TIMEOUT, value))


def format_bash_output(stdout: str = "", stderr: str = "", bash_id: Optional[str] = None,
                       exit_code: Optional[int] = None) -> str:
    output = stdout or ""
    if stderr:
        output += f"\n[stderr]:\n{stderr}"
    if bash_id:
        output += f"\n[bash_id]:\n{bash_id}"
    if exit_code:
        output += f"\n[exit_code]:\n{exit_code}"
    return output or "(no output)"


class BashTool(Tool):
    """Run shell commands in the foreground or background."""

    def __init__(self, registry: ProcessRegistry, workspace_dir: Optional[str] = None,
                 interrupt_event: Optional[threading.Event] = None):
        self.registry = registry
        self.workspace_dir = workspace_dir
        self.interrupt_event = interrupt_event
        self._env = LocalEnvironment(cwd=workspace_dir or "", timeout=DEFAULT_TIMEOUT)

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="bash",
            description=BASH_TOOL_DESCRIPTION,
            parameters={
                "command": {"type": "string", "description": "The shell command to execute"},
                "timeout": {
                    "type": "integer",
                    "description": f"Timeout in seconds (default {DEFAULT_TIMEOUT}, max {MAX_TIMEOUT})",
                    "default": DEFAULT_TIMEOUT,
                },
                "run_in_background": {
                    "type": "boolean",
                    "description": "Run as a background job and return its bash_id",
                    "default": False,
                },
            },
            required=["command"],
        )

    async def execute(self, command: str, timeout: int = DEFAULT_TIMEOUT,
                      run_in_background: bool = False, **_ignored) -> ToolResult:
        if not command or not command.strip():
            return ToolResult(success=False, error="command must not be empty")

        if run_in_background:
            session = self.registry.spawn(command, cwd=self.workspace_dir)
            message = (
                "Command started in background. Use bash_output to monitor "
                f"(bash_id='{session.id}')."
            )
            return ToolResult(
                success=True,
                content=format_bash_output(stdout=message, bash_id=session.id),
            )

        result = await asyncio.to_thread(
            self._env.execute,
            command,
            timeout=clamp_timeout(timeout),
            interrupt_event=self.interrupt_event,
        )
        exit_code = result["returncode"]
        text = format_bash_output(result["stdout"], result["stderr"], exit_code=exit_code)
        if exit_code == 0:
            return ToolResult(success=True, content=text)
        return ToolResult(success=False, content=text, error=text)


class BashOutputTool(Tool):
    """Read new output from a background job."""

    def __init__(self, registry: ProcessRegistry):
        self.registry = registry

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="bash_output",
            description=(
                "Retrieve output produced by a background bash job since the last "
                "call. Lines rejected by filter_str are discarded permanently."
            ),
            parameters={
                "bash_id": {"type": "string", "description": "Id returned by bash with run_in_background"},
                "filter_str": {
                    "type": "string",
                    "description": "Optional regular expression; only matching lines are returned",
                },
            },
            required=["bash_id"],
        )

    async def execute(self, bash_id: str, filter_str: Optional[str] = None, **_ignored) -> ToolResult:
        try:
            output = self.registry.read_new_output(bash_id, filter_str)
        except ProcessNotFoundError as e:
            return ToolResult(success=False, error=str(e))

        session = self.registry.get(bash_id)
        status = session.status if session else "unknown"
        exit_code = session.exit_code if session else None
        text = format_bash_output(stdout=output, bash_id=bash_id, exit_code=exit_code)
        return ToolResult(success=True, content=f"{text}\n[status]:\n{status}")


class BashKillTool(Tool):
    """Terminate a background job."""

    def __init__(self, registry: ProcessRegistry):
        self.registry = registry

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="bash_kill",
            description="Terminate a background bash job and return its unread output.",
            parameters={
                "bash_id": {"type": "string", "description": "Id of the background job to stop"},
            },
            required=["bash_id"],
        )

    async def execute(self, bash_id: str, **_ignored) -> ToolResult:
        try:
            remaining = await asyncio.to_thread(self.registry.terminate, bash_id)
        except ProcessNotFoundError as e:
            return ToolResult(success=False, error=str(e))
        return ToolResult(
            success=True,
            content=format_bash_output(stdout=remaining, bash_id=bash_id)
            + "\n[status]:\nterminated",
        )

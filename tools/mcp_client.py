"""
MCP (Model Context Protocol) client over Content-Length framed stdio.

Each configured provider is a subprocess. We speak JSON-RPC 2.0 to it through
``gateway.jsonrpc.JsonRpcConnection`` on its stdin/stdout; its stderr is
drained into our log.

Protocol lifecycle:
  1. Client sends ``initialize`` with protocolVersion + capabilities
  2. Server responds with its capabilities + serverInfo
  3. Client sends ``notifications/initialized``
  4. Client calls ``tools/list`` to discover available tools
  5. Client calls ``tools/call`` to invoke a tool

When the provider process exits, every request still waiting for an answer
fails with ``ConnectionClosedError`` instead of hanging.

Security:
  - Subprocess environment is isolated (only safe env vars passed)
  - Error messages are sanitized to prevent credential leakage
"""

import asyncio
import logging
import os
import re
import sys
from typing import Any, Dict, List, Optional, Set

from gateway.jsonrpc import ConnectionClosedError, JsonRpcConnection, JsonRpcError
from tendril_constants import AGENT_NAME, __version__
from tools.base import Tool, ToolResult, ToolSchema

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"

CONNECT_TIMEOUT = 30
REQUEST_TIMEOUT = 120
SHUTDOWN_TIMEOUT = 5

# Only these (plus user-specified env from config) are forwarded.
_SAFE_ENV_VARS: Set[str] = {
    "PATH", "HOME", "USER", "LOGNAME", "SHELL", "TERM",
    "LANG", "LC_ALL", "LC_CTYPE", "TZ",
    "TMPDIR", "TEMP", "TMP",
    "SYSTEMROOT", "COMSPEC",
    "APPDATA", "LOCALAPPDATA", "USERPROFILE",
    "NODE_PATH", "NODE_ENV",
    "PYTHON", "PYTHONPATH",
    "XDG_CONFIG_HOME", "XDG_DATA_HOME",
}

_MCP_LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


class MCPTransportError(Exception):
    """Raised when the provider process cannot be reached."""


def _create_safe_env(custom_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Build a minimal environment for provider subprocesses.

    Only safe system vars + user-specified vars from config are included.
    """
    safe = {}
    for var in _SAFE_ENV_VARS:
        val = os.environ.get(var)
        if val:
            safe[var] = val
    if custom_env:
        safe.update(custom_env)
    return safe


def sanitize_error(msg: str) -> str:
    """Remove credentials and tokens from error messages."""
    msg = re.sub(r'(https?://)([^:]+):([^@]+)@', r'\1***:***@', msg)
    msg = re.sub(r'Bearer\s+[A-Za-z0-9_\-\.]{8,}', 'Bearer [redacted]', msg, flags=re.IGNORECASE)
    msg = re.sub(
        r'(api[_-]?key|token|password|secret|authorization)["\s:=]+\S+',
        r'\1=[redacted]', msg, flags=re.IGNORECASE,
    )
    return msg


class MCPClient:
    """Client for one stdio provider process.

    connect (spawn + initialize) -> list_tools -> call_tool -> disconnect.
    """

    def __init__(self, name: str, command: str, args: Optional[List[str]] = None,
                 env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None):
        self.name = name
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd
        self._process: Optional[asyncio.subprocess.Process] = None
        self._connection: Optional[JsonRpcConnection] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._server_info: Dict[str, Any] = {}
        self._server_capabilities: Dict[str, Any] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return (
            self._connected
            and self._connection is not None
            and not self._connection.closed
        )

    @property
    def server_name(self) -> str:
        return self._server_info.get("name", self.name)

    async def _start_process(self) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_create_safe_env(self.env),
                cwd=self.cwd,
                start_new_session=sys.platform != "win32",
            )
        except FileNotFoundError:
            raise MCPTransportError(
                f"Command not found: {self.command}. "
                f"Make sure the MCP server is installed."
            )
        except OSError as e:
            raise MCPTransportError(f"Failed to start MCP server: {sanitize_error(str(e))}")

        self._connection = JsonRpcConnection(
            self._process.stdin, self._process.stdout, name=f"mcp:{self.name}",
        )
        self._connection.on_notification("notifications/message", self._on_log_message)
        self._connection.start()
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug("[mcp:%s stderr] %s", self.name,
                         line.decode("utf-8", errors="replace").rstrip())

    def _on_log_message(self, params: Dict[str, Any]) -> None:
        level = _MCP_LOG_LEVELS.get(str(params.get("level", "info")).lower(), logging.INFO)
        logger.log(level, "[mcp:%s] %s", self.name, params.get("data"))

    async def _request(self, method: str, params: Optional[dict] = None,
                       timeout: float = REQUEST_TIMEOUT) -> Dict[str, Any]:
        if self._connection is None:
            raise MCPTransportError(f"MCP server '{self.name}' is not connected")
        try:
            result = await self._connection.request(method, params, timeout=timeout)
        except ConnectionClosedError as e:
            self._connected = False
            raise MCPTransportError(f"MCP server '{self.name}' closed the connection") from e
        except asyncio.TimeoutError as e:
            raise MCPTransportError(
                f"MCP server '{self.name}' did not answer {method} within {timeout}s"
            ) from e
        return result or {}

    async def connect(self, timeout: float = CONNECT_TIMEOUT) -> Dict[str, Any]:
        """Spawn the server and run the initialize handshake."""
        await self._start_process()

        result = await self._request("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": AGENT_NAME, "version": __version__},
        }, timeout=timeout)

        self._server_info = result.get("serverInfo", {}) or {}
        self._server_capabilities = result.get("capabilities", {}) or {}
        await self._connection.notify("notifications/initialized")
        self._connected = True

        logger.info(
            "MCP connected to %s (version %s)",
            self._server_info.get("name", self.name),
            self._server_info.get("version", "?"),
        )
        return {"serverInfo": self._server_info, "capabilities": self._server_capabilities}

    async def list_tools(self) -> List[dict]:
        """Tool definitions: ``name``, ``description``, ``inputSchema``."""
        if not self.is_connected:
            raise MCPTransportError("Not connected")
        result = await self._request("tools/list", {})
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: Optional[dict] = None,
                        timeout: float = REQUEST_TIMEOUT) -> Dict[str, Any]:
        """Returns the raw result: ``content`` blocks and ``isError``."""
        if not self.is_connected:
            raise MCPTransportError("Not connected")
        return await self._request(
            "tools/call", {"name": name, "arguments": arguments or {}}, timeout=timeout,
        )

    async def disconnect(self) -> None:
        """Close the connection and stop the provider process."""
        self._connected = False
        if self._connection is not None:
            await self._connection.close("client disconnected")

        proc = self._process
        if proc is not None and proc.returncode is None:
            try:
                if proc.stdin is not None:
                    proc.stdin.close()
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=SHUTDOWN_TIMEOUT)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning("MCP server '%s' did not exit; killing it", self.name)
                proc.kill()
                await proc.wait()

        if self._stderr_task is not None:
            self._stderr_task.cancel()


def extract_text(result: Dict[str, Any]) -> str:
    """Join the text items of a ``tools/call`` result."""
    parts = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            parts.append(str(item))
        elif item.get("type", "text") == "text":
            parts.append(str(item.get("text", "")))
        elif item.get("type") == "resource":
            resource = item.get("resource") or {}
            parts.append(str(resource.get("text") or resource.get("uri", "")))
        else:
            parts.append(f"[{item.get('type')} content]")
    return "\n".join(parts)


class MCPTool(Tool):
    """A tool implemented by a provider process."""

    def __init__(self, client: MCPClient, definition: Dict[str, Any]):
        self.client = client
        self.remote_name = definition["name"]
        input_schema = definition.get("inputSchema") or {}
        self._schema = ToolSchema(
            name=self.remote_name,
            description=definition.get("description") or f"{self.remote_name} (via {client.name})",
            parameters=input_schema.get("properties") or {},
            required=list(input_schema.get("required") or []),
        )

    @property
    def schema(self) -> ToolSchema:
        return self._schema

    async def execute(self, **kwargs) -> ToolResult:
        try:
            result = await self.client.call_tool(self.remote_name, kwargs)
        except JsonRpcError as e:
            return ToolResult(success=False, error=f"MCP error {e.code}: {sanitize_error(e.message)}")
        except MCPTransportError as e:
            return ToolResult(success=False, error=sanitize_error(str(e)))

        text = extract_text(result)
        if result.get("isError"):
            return ToolResult(success=False, content=text, error=text or "tool reported an error")
        return ToolResult(success=True, content=text)

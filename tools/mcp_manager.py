"""
MCP Manager -- lifecycle manager for capability provider connections.

Responsibilities:
  - Parse the discovery file (``mcp.json``)::

        {"mcpServers": {"name": {"command": "...", "args": [], "env": {},
                                 "disabled": false, "description": "..."}}}

  - Spawn and initialize each enabled provider, tolerating failures
  - Wrap every discovered tool as an ``MCPTool`` for the agent's registry
  - Shut every provider down on exit

Usage:
    manager = MCPManager()
    tools = await manager.connect_all("mcp.json")
    ...
    await manager.shutdown_all()
"""

import copy
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from tools.mcp_client import MCPClient, MCPTool, sanitize_error

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config structures
# ---------------------------------------------------------------------------

class MCPServerConfig:
    """Parsed configuration for a single provider."""

    def __init__(
        self,
        name: str,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        description: str = "",
        enabled: bool = True,
    ):
        self.name = name
        self.command = command
        self.args = args or []
        self.env = env or {}
        self.cwd = cwd
        self.description = description
        self.enabled = enabled

    @classmethod
    def from_dict(cls, name: str, cfg: dict) -> "MCPServerConfig":
        """Parse one ``mcpServers`` entry with validation."""
        if not isinstance(cfg, dict):
            logger.warning("MCP server '%s' config is not a dict -- skipping", name)
            return cls(name=name, enabled=False)

        enabled = not bool(cfg.get("disabled", False)) and bool(cfg.get("enabled", True))

        env = cfg.get("env", {})
        if not isinstance(env, dict):
            logger.warning("MCP server '%s': env must be a dict", name)
            env = {}
        env = {str(k): str(v) for k, v in env.items()}

        transport = cfg.get("type", "stdio")
        if transport not in (None, "stdio"):
            logger.warning("MCP server '%s': unsupported transport %r -- skipping", name, transport)
            return cls(name=name, enabled=False)

        if "command" not in cfg:
            logger.warning("MCP server '%s' has no 'command' -- skipping", name)
            return cls(name=name, enabled=False)

        args = cfg.get("args", [])
        if not isinstance(args, list):
            args = [str(args)]
        else:
            args = [str(a) for a in args]

        cwd = cfg.get("cwd")
        return cls(
            name=name,
            command=str(cfg["command"]),
            args=args,
            env=env,
            cwd=str(cwd) if cwd is not None else None,
            description=str(cfg.get("description", "")),
            enabled=enabled,
        )


def load_mcp_config(path: Union[str, Path]) -> List[MCPServerConfig]:
    """Read the discovery file. A missing or unreadable file means no providers."""
    config_path = Path(path).expanduser()
    if not config_path.exists():
        logger.debug("No MCP config at %s", config_path)
        return []
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f) or {}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to load MCP config %s: %s", config_path, e)
        return []

    servers = data.get("mcpServers", {}) if isinstance(data, dict) else {}
    if not isinstance(servers, dict):
        logger.warning("MCP config %s: 'mcpServers' must be an object", config_path)
        return []
    return [MCPServerConfig.from_dict(name, cfg) for name, cfg in servers.items()]


class MCPServerConnection:
    """A live connection to a provider with its discovered tools."""

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.client: Optional[MCPClient] = None
        self.tools: List[dict] = []
        self.connected = False
        self.error: Optional[str] = None


# ---------------------------------------------------------------------------
# Schema conversion
# ---------------------------------------------------------------------------

def _dereference_schema(schema: dict) -> dict:
    """Recursively inline JSON Schema ``$ref`` definitions.

    Many LLMs handle inlined schemas better than ``$ref`` pointers.
    """
    defs = schema.get("$defs", schema.get("definitions", {}))
    if not defs:
        return schema

    result = copy.deepcopy(schema)

    def _resolve(obj, seen=()):
        if isinstance(obj, dict):
            if "$ref" in obj:
                ref_path = obj["$ref"]
                for prefix in ("#/$defs/", "#/definitions/"):
                    if ref_path.startswith(prefix):
                        key = ref_path[len(prefix):]
                        if key in defs and key not in seen:
                            return _resolve(copy.deepcopy(defs[key]), seen + (key,))
                return obj
            return {k: _resolve(v, seen) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [_resolve(item, seen) for item in obj]
        return obj

    result = _resolve(result)
    result.pop("$defs", None)
    result.pop("definitions", None)
    return result


def normalize_tool_definition(mcp_tool: dict) -> dict:
    """Return a copy of *mcp_tool* with a flat, object-typed ``inputSchema``."""
    definition = dict(mcp_tool)
    input_schema = mcp_tool.get("inputSchema") or {}
    if "$defs" in input_schema or "definitions" in input_schema:
        input_schema = _dereference_schema(input_schema)
    else:
        input_schema = copy.deepcopy(input_schema)
    if not input_schema.get("type"):
        input_schema["type"] = "object"
    input_schema.setdefault("properties", {})
    definition["inputSchema"] = input_schema
    return definition


# ---------------------------------------------------------------------------
# MCPManager
# ---------------------------------------------------------------------------

class MCPManager:
    """Owns the provider connections for one runtime."""

    def __init__(self):
        self._servers: Dict[str, MCPServerConnection] = {}

    @property
    def servers(self) -> Dict[str, MCPServerConnection]:
        return self._servers

    async def _connect_server(self, conn: MCPServerConnection) -> bool:
        config = conn.config
        client = MCPClient(
            name=config.name,
            command=config.command,
            args=config.args,
            env=config.env,
            cwd=config.cwd,
        )
        try:
            await client.connect()
            conn.tools = await client.list_tools()
        except Exception as e:
            conn.connected = False
            conn.error = sanitize_error(str(e))
            logger.warning("MCP server '%s' failed to connect: %s", config.name, conn.error)
            await client.disconnect()
            return False

        conn.client = client
        conn.connected = True
        conn.error = None
        logger.info("MCP server '%s' connected (%d tools)", config.name, len(conn.tools))
        return True

    async def connect_all(self, config_path: Union[str, Path]) -> List[MCPTool]:
        """Connect every enabled provider and return their tools.

        A provider that fails to start or answer is logged and skipped.
        """
        tools: List[MCPTool] = []
        for config in load_mcp_config(config_path):
            if not config.enabled:
                logger.debug("MCP server '%s' is disabled", config.name)
                continue
            conn = MCPServerConnection(config)
            self._servers[config.name] = conn
            if not await self._connect_server(conn):
                continue
            for definition in conn.tools:
                if not isinstance(definition, dict) or not definition.get("name"):
                    logger.warning("MCP server '%s' returned a tool without a name", config.name)
                    continue
                tools.append(MCPTool(conn.client, normalize_tool_definition(definition)))
        return tools

    async def shutdown_all(self) -> None:
        for name, conn in self._servers.items():
            if conn.client is None:
                continue
            try:
                await conn.client.disconnect()
            except Exception as e:
                logger.debug("MCP server '%s' shutdown error: %s", name, e)
            conn.connected = False
        self._servers.clear()

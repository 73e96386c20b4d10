"""
Tool abstraction and dispatcher.

Tools follow a simple pattern:
1. Define schema (name, description, parameters)
2. Implement async execute()
3. Return a ToolResult with content/error

Local tools (shell, files, notes) and tools backed by an external provider
process (see tools/mcp_client.py) share this interface, so the execution loop
never needs to know which kind it is calling.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SCHEMA_FORMAT_ANTHROPIC = "anthropic"
SCHEMA_FORMAT_OPENAI = "openai"


@dataclass
class ToolSchema:
    """JSON Schema for a tool's parameters."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)

    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": self.parameters,
            "required": self.required,
        }

    def to_openai(self) -> Dict[str, Any]:
        """Nested function-wrapper shape used by chat-completions backends."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema(),
            },
        }

    def to_anthropic(self) -> Dict[str, Any]:
        """Flat shape used by messages-style backends."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema(),
        }


@dataclass
class ToolResult:
    """Result from executing a tool."""

    success: bool
    content: str = ""
    error: str = ""

    @property
    def text(self) -> str:
        """Text recorded in the conversation for this result."""
        if self.success:
            return self.content
        return f"Error: {self.error or 'unknown error'}"


class Tool(ABC):
    """
    Abstract base class for tools.

    Subclasses must implement:
    - schema: ToolSchema describing the tool
    - execute(): async method that performs the tool action
    """

    @property
    @abstractmethod
    def schema(self) -> ToolSchema:
        pass

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def description(self) -> str:
        return self.schema.description

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult:
        """
        Execute the tool with given arguments.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success/failure and content
        """
        pass

    def to_spec(self, fmt: str) -> Dict[str, Any]:
        if fmt == SCHEMA_FORMAT_OPENAI:
            return self.schema.to_openai()
        return self.schema.to_anthropic()

    async def __call__(self, **kwargs) -> ToolResult:
        return await self.execute(**kwargs)


class ToolRegistry:
    """Name -> tool mapping consulted by the execution loop.

    Each registry belongs to one agent. The mapping is filled before the
    first run and treated as read-only while the loop is running.
    """

    def __init__(self, tools: Optional[List[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool '%s' is already registered; replacing it", tool.name)
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    get = resolve

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def list_tools(self) -> List[Tool]:
        return list(self._tools.values())

    def schemas(self, fmt: str = SCHEMA_FORMAT_ANTHROPIC) -> List[Dict[str, Any]]:
        """Capability specs for every tool, in the backend's shape."""
        return [tool.to_spec(fmt) for tool in self._tools.values()]

    async def execute(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Invoke *name* exactly once. Never raises for tool faults."""
        tool = self.resolve(name)
        if tool is None:
            return ToolResult(success=False, error=f"Unknown tool: {name}")

        try:
            result = await tool.execute(**(arguments or {}))
        except Exception as e:
            logger.warning("Tool %s raised: %s", name, e, exc_info=True)
            return ToolResult(success=False, error=f"Tool execution failed: {e}")

        if not isinstance(result, ToolResult):
            return ToolResult(success=True, content=str(result))
        return result

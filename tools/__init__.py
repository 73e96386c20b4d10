"""
Tools Package

Tool implementations an agent can call. Every tool subclasses
``tools.base.Tool`` and is collected in a ``ToolRegistry``:

- terminal_tool: bash, bash_output, bash_kill (foreground and background
  shell commands, backed by process_registry and environments.local)
- file_tools: read_file, write_file, edit_file, confined to the workspace
- note_tool: record_note, recall_notes (notes that survive compaction)
- mcp_client / mcp_manager: tools discovered from external MCP servers

model_tools.py assembles the configured set for each agent.
"""

from tools.base import Tool, ToolRegistry, ToolResult, ToolSchema

__all__ = ["Tool", "ToolRegistry", "ToolResult", "ToolSchema"]

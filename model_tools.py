"""Toolset assembly.

Builds the tools an agent may call from configuration:

- workspace-bound local tools (shell, files, notes), built per agent
- the get_skill tool over skills discovered once at start-up
- provider-backed tools discovered from the MCP config file, built once
  per runtime and shared by every agent
"""

import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Union

from tendril_cli.config import ToolsConfig
from tools.base import Tool, ToolRegistry
from tools.file_tools import EditFileTool, ReadFileTool, WriteFileTool
from tools.mcp_manager import MCPManager
from tools.note_tool import NoteStore, RecallNotesTool, RecordNoteTool
from tools.process_registry import ProcessRegistry
from tools.skills_tool import GetSkillTool, SkillLoader
from tools.terminal_tool import BashKillTool, BashOutputTool, BashTool

logger = logging.getLogger(__name__)


def get_local_tools(
    tools_config: ToolsConfig,
    workspace_dir: Union[str, Path],
    process_registry: ProcessRegistry,
    interrupt_event: Optional[threading.Event] = None,
    skill_loader: Optional[SkillLoader] = None,
) -> List[Tool]:
    workspace = Path(workspace_dir)
    tools: List[Tool] = []

    if tools_config.enable_bash:
        tools.extend([
            BashTool(process_registry, workspace_dir=str(workspace), interrupt_event=interrupt_event),
            BashOutputTool(process_registry),
            BashKillTool(process_registry),
        ])

    if tools_config.enable_file_tools:
        tools.extend([
            ReadFileTool(workspace),
            WriteFileTool(workspace),
            EditFileTool(workspace),
        ])

    if tools_config.enable_note:
        store = NoteStore.for_workspace(workspace)
        tools.extend([RecordNoteTool(store), RecallNotesTool(store)])

    if skill_loader is not None:
        tools.append(GetSkillTool(skill_loader))

    return tools


def load_skills(tools_config: ToolsConfig, skills_dir: Union[str, Path]) -> Optional[SkillLoader]:
    """Discover skills, or return None when skills are disabled."""
    if not tools_config.enable_skills:
        return None
    loader = SkillLoader(skills_dir)
    skills = loader.discover()
    if skills:
        logger.info("Loaded %d skill(s): %s", len(skills), ", ".join(s.name for s in skills))
    return loader


async def load_mcp_tools(tools_config: ToolsConfig, mcp_config_file: Union[str, Path],
                         manager: MCPManager) -> List[Tool]:
    if not tools_config.enable_mcp:
        return []
    tools = await manager.connect_all(mcp_config_file)
    if tools:
        logger.info("Loaded %d MCP tool(s): %s", len(tools), ", ".join(t.name for t in tools))
    return tools


def build_registry(*toolsets: Iterable[Tool]) -> ToolRegistry:
    registry = ToolRegistry()
    for toolset in toolsets:
        for tool in toolset:
            registry.register(tool)
    return registry

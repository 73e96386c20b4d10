"""System prompt assembly.

The prompt is layered: base identity, guidance for the tools the agent
actually has, the skills index, then the workspace section.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from tools.skills_tool import SkillLoader

logger = logging.getLogger(__name__)

DEFAULT_AGENT_IDENTITY = (
    "You are Tendril, an autonomous assistant that completes tasks by calling "
    "tools. Work step by step, check the results of each tool call, and give a "
    "clear final answer when the task is done."
)

NOTES_GUIDANCE = (
    "Use record_note to save facts and decisions you will need later; long "
    "conversations are summarized and details not recorded may be lost. Use "
    "recall_notes to read them back."
)

BACKGROUND_JOB_GUIDANCE = (
    "Start long-running commands with run_in_background, poll them with "
    "bash_output and stop them with bash_kill when they are no longer needed."
)

WORKSPACE_HEADING = "## Current Workspace"


def load_system_prompt(path: Optional[Union[str, Path]]) -> str:
    """Read a prompt file, falling back to the built-in identity."""
    if path:
        prompt_path = Path(path).expanduser()
        try:
            text = prompt_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            logger.warning("System prompt file not found: %s; using default", prompt_path)
        except OSError as e:
            logger.warning("Could not read system prompt %s: %s; using default", prompt_path, e)
        else:
            if text:
                return text
    return DEFAULT_AGENT_IDENTITY


def workspace_section(workspace_dir: Union[str, Path]) -> str:
    absolute = Path(workspace_dir).expanduser().resolve()
    return (
        f"{WORKSPACE_HEADING}\n"
        f"You are currently working in: `{absolute}`\n"
        "All relative paths will be resolved relative to this directory."
    )


class PromptAssembler:
    """Assembles the full system prompt from layered components.

    Args:
        base_prompt: Identity/instructions text (see ``load_system_prompt``).
        workspace_dir: Directory the agent works in; appended as a section
            unless the base prompt already has one.
        skill_loader: Source of the skills index, listed when the agent
            has the get_skill tool.
    """

    def __init__(self, base_prompt: str = DEFAULT_AGENT_IDENTITY,
                 workspace_dir: Optional[Union[str, Path]] = None,
                 skill_loader: Optional[SkillLoader] = None):
        self._base_prompt = base_prompt
        self._workspace_dir = workspace_dir
        self._skill_loader = skill_loader

    def build(self, *, valid_tool_names: Iterable[str] = ()) -> str:
        """Assemble the prompt for an agent holding *valid_tool_names*."""
        names = set(valid_tool_names)
        prompt_parts = [self._base_prompt]

        tool_guidance = []
        if "record_note" in names:
            tool_guidance.append(NOTES_GUIDANCE)
        if "bash_output" in names:
            tool_guidance.append(BACKGROUND_JOB_GUIDANCE)
        if tool_guidance:
            prompt_parts.append(" ".join(tool_guidance))

        if self._skill_loader is not None and "get_skill" in names:
            skills_section = self._skill_loader.metadata_prompt()
            if skills_section:
                prompt_parts.append(skills_section)

        if self._workspace_dir is not None and WORKSPACE_HEADING not in self._base_prompt:
            prompt_parts.append(workspace_section(self._workspace_dir))

        return "\n\n".join(prompt_parts)

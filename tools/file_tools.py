"""File tools confined to the agent's workspace: read_file, write_file, edit_file."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from tools.base import Tool, ToolResult, ToolSchema

logger = logging.getLogger(__name__)

MAX_READ_CHARS = 200_000


class WorkspaceEscapeError(ValueError):
    """A path resolved outside the workspace root."""


def resolve_in_workspace(workspace_dir: Union[str, Path], path: str) -> Path:
    """Resolve *path* against the workspace and reject anything outside it."""
    root = Path(workspace_dir).expanduser().resolve()
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if resolved != root and root not in resolved.parents:
        raise WorkspaceEscapeError(f"Path escapes workspace: {path}")
    return resolved


def _truncate_middle(text: str, limit: int = MAX_READ_CHARS) -> str:
    if len(text) <= limit:
        return text
    head = int(limit * 0.6)
    tail = limit - head
    dropped = len(text) - limit
    return f"{text[:head]}\n\n... [{dropped} characters truncated] ...\n\n{text[-tail:]}"


class _WorkspaceTool(Tool):
    def __init__(self, workspace_dir: Union[str, Path]):
        self.workspace_dir = Path(workspace_dir)

    def _resolve(self, path: str) -> Path:
        return resolve_in_workspace(self.workspace_dir, path)


class ReadFileTool(_WorkspaceTool):

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="read_file",
            description=(
                "Read a text file from the workspace. Lines are returned as "
                "'LINE_NUMBER|CONTENT'. Use offset/limit for large files."
            ),
            parameters={
                "path": {"type": "string", "description": "File path, relative to the workspace"},
                "offset": {"type": "integer", "description": "First line to read (1-indexed)"},
                "limit": {"type": "integer", "description": "Maximum number of lines to read"},
            },
            required=["path"],
        )

    async def execute(self, path: str, offset: Optional[int] = None,
                      limit: Optional[int] = None, **_ignored) -> ToolResult:
        try:
            target = self._resolve(path)
            text = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        except WorkspaceEscapeError as e:
            return ToolResult(success=False, error=str(e))
        except FileNotFoundError:
            return ToolResult(success=False, error=f"File not found: {path}")
        except OSError as e:
            return ToolResult(success=False, error=f"Cannot read {path}: {e}")

        lines = text.splitlines()
        start = max((offset or 1) - 1, 0)
        end = start + limit if limit else len(lines)
        numbered = [f"{i:>6}|{line}" for i, line in enumerate(lines[start:end], start=start + 1)]
        return ToolResult(success=True, content=_truncate_middle("\n".join(numbered)))


class WriteFileTool(_WorkspaceTool):

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="write_file",
            description="Write content to a file in the workspace, replacing any existing content.",
            parameters={
                "path": {"type": "string", "description": "File path, relative to the workspace"},
                "content": {"type": "string", "description": "Complete file content"},
            },
            required=["path", "content"],
        )

    async def execute(self, path: str, content: str, **_ignored) -> ToolResult:
        try:
            target = self._resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        except WorkspaceEscapeError as e:
            return ToolResult(success=False, error=str(e))
        except OSError as e:
            return ToolResult(success=False, error=f"Cannot write {path}: {e}")
        return ToolResult(success=True, content=f"Wrote {len(content)} chars to {path}")


class EditFileTool(_WorkspaceTool):

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="edit_file",
            description=(
                "Replace one exact occurrence of old_str with new_str in a workspace "
                "file. old_str must appear exactly once."
            ),
            parameters={
                "path": {"type": "string", "description": "File path, relative to the workspace"},
                "old_str": {"type": "string", "description": "Exact text to replace"},
                "new_str": {"type": "string", "description": "Replacement text"},
            },
            required=["path", "old_str", "new_str"],
        )

    async def execute(self, path: str, old_str: str, new_str: str, **_ignored) -> ToolResult:
        try:
            target = self._resolve(path)
            text = target.read_text(encoding="utf-8")
        except WorkspaceEscapeError as e:
            return ToolResult(success=False, error=str(e))
        except FileNotFoundError:
            return ToolResult(success=False, error=f"File not found: {path}")
        except OSError as e:
            return ToolResult(success=False, error=f"Cannot read {path}: {e}")

        count = text.count(old_str) if old_str else 0
        if count == 0:
            return ToolResult(success=False, error=f"old_str not found in {path}")
        if count > 1:
            return ToolResult(success=False, error=f"old_str is not unique in {path} ({count} matches)")

        try:
            target.write_text(text.replace(old_str, new_str, 1), encoding="utf-8")
        except OSError as e:
            return ToolResult(success=False, error=f"Cannot write {path}: {e}")
        return ToolResult(success=True, content=f"Edited {path}")

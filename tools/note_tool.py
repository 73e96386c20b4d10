"""Session notes: record_note and recall_notes.

Notes live in ``<workspace>/.agent_memory.json`` as a JSON list of
``{"timestamp", "category", "content"}`` objects, so they survive history
compaction and restarts of the agent.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from tools.base import Tool, ToolResult, ToolSchema

logger = logging.getLogger(__name__)

NOTES_FILENAME = ".agent_memory.json"


class NoteStore:
    """JSON-file backed note list shared by the two note tools."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def for_workspace(cls, workspace_dir: Union[str, Path]) -> "NoteStore":
        return cls(Path(workspace_dir) / NOTES_FILENAME)

    def load(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read notes from %s: %s", self.path, e)
            return []
        return data if isinstance(data, list) else []

    def add(self, content: str, category: str = "general") -> dict:
        note = {
            "timestamp": datetime.now().isoformat(timespec="seconds"),
            "category": category or "general",
            "content": content,
        }
        with self._lock:
            notes = self.load()
            notes.append(note)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(notes, indent=2, ensure_ascii=False), encoding="utf-8")
        return note


class RecordNoteTool(Tool):

    def __init__(self, store: NoteStore):
        self.store = store

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="record_note",
            description=(
                "Save an important fact, decision or intermediate result so it can "
                "be recalled later, even after the conversation is summarized."
            ),
            parameters={
                "content": {"type": "string", "description": "The information to remember"},
                "category": {"type": "string", "description": "Optional category label"},
            },
            required=["content"],
        )

    async def execute(self, content: str, category: str = "general", **_ignored) -> ToolResult:
        try:
            note = self.store.add(content, category)
        except OSError as e:
            return ToolResult(success=False, error=f"Failed to record note: {e}")
        return ToolResult(success=True, content=f"Recorded note: {note['content']} (category: {note['category']})")


class RecallNotesTool(Tool):

    def __init__(self, store: NoteStore):
        self.store = store

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="recall_notes",
            description="List previously recorded notes, optionally limited to one category.",
            parameters={
                "category": {"type": "string", "description": "Only return notes in this category"},
            },
        )

    async def execute(self, category: Optional[str] = None, **_ignored) -> ToolResult:
        notes = self.store.load()
        if category:
            notes = [n for n in notes if n.get("category") == category]
        if not notes:
            return ToolResult(success=True, content="No notes recorded yet.")
        lines = [
            f"{i}. [{n.get('category', 'general')}] {n.get('content', '')} (recorded {n.get('timestamp', '?')})"
            for i, n in enumerate(notes, 1)
        ]
        return ToolResult(success=True, content="Recorded notes:\n" + "\n".join(lines))

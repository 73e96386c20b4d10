"""Conversation record for one agent.

The history is an ordered list of ``Turn`` objects. The first turn is always
the system prompt. Tool-result turns must answer a call requested by an
earlier assistant turn that has not been answered yet; ``add_tool_result``
refuses anything else, so a backend never sees a result without its call.

Only the context compressor rewrites history, through ``replace()``.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class HistoryError(ValueError):
    """A turn would break the call/result linkage or the system-turn rule."""


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class Turn:
    role: Role
    content: str = ""
    reasoning: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def char_count(self) -> int:
        """Characters the backend will see for this turn."""
        total = len(self.content or "") + len(self.reasoning or "")
        if self.tool_calls:
            total += len(json.dumps([tc.to_dict() for tc in self.tool_calls], ensure_ascii=False))
        return total

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


class MessageHistory:
    """Append-only record of one agent's conversation."""

    def __init__(self, system_prompt: str):
        self._turns: List[Turn] = [Turn(role=Role.SYSTEM, content=system_prompt)]

    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    @property
    def system_turn(self) -> Turn:
        return self._turns[0]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    def __getitem__(self, index):
        return self._turns[index]

    def add_user(self, content: str) -> Turn:
        turn = Turn(role=Role.USER, content=content)
        self._turns.append(turn)
        return turn

    def add_assistant(self, content: str = "", reasoning: Optional[str] = None,
                      tool_calls: Optional[List[ToolCall]] = None) -> Turn:
        calls = list(tool_calls or [])
        ids = [tc.id for tc in calls]
        if len(set(ids)) != len(ids):
            raise HistoryError(f"Duplicate tool call ids in one turn: {ids}")
        clashing = set(ids) & self._all_call_ids()
        if clashing:
            raise HistoryError(f"Tool call ids already used: {sorted(clashing)}")
        turn = Turn(role=Role.ASSISTANT, content=content or "", reasoning=reasoning, tool_calls=calls)
        self._turns.append(turn)
        return turn

    def add_tool_result(self, tool_call_id: str, content: str, name: Optional[str] = None) -> Turn:
        if tool_call_id not in self.pending_call_ids():
            raise HistoryError(f"No unanswered tool call with id {tool_call_id!r}")
        turn = Turn(role=Role.TOOL, content=content, tool_call_id=tool_call_id, name=name)
        self._turns.append(turn)
        return turn

    def _all_call_ids(self) -> set:
        return {tc.id for t in self._turns for tc in t.tool_calls}

    def pending_call_ids(self) -> List[str]:
        """Ids of requested calls without a result yet, in request order."""
        answered = {t.tool_call_id for t in self._turns if t.role is Role.TOOL}
        return [
            tc.id
            for t in self._turns if t.role is Role.ASSISTANT
            for tc in t.tool_calls if tc.id not in answered
        ]

    def user_turns(self) -> List[Turn]:
        return [t for t in self._turns if t.role is Role.USER]

    def replace(self, turns: List[Turn]) -> None:
        """Swap in a rewritten history (compaction only)."""
        if not turns or turns[0] is not self._turns[0]:
            raise HistoryError("Rewritten history must start with the original system turn")
        self._turns = list(turns)

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self._turns]

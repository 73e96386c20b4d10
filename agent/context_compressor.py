"""Automatic context compaction for long-running conversations.

Before each model call the agent asks the compressor whether the history
is over budget. Two signals are checked, and either one triggers compaction:

- a local estimate of the history's size (see ``agent.model_metadata``)
- the total token count the backend reported for the previous exchange

Compaction keeps the system turn and every user turn exactly as they are.
The assistant/tool turns that follow each user turn are replaced by one
assistant turn that starts with ``SUMMARY_MARKER``. A stretch that already
is a single summary turn is left alone, so compacting twice in a row changes
nothing the second time.

The backend-reported count is stale right after a compaction (it describes
the old, longer history), so the check immediately after a compaction is
skipped.
"""

import logging
from typing import Any, Dict, List, Optional

from agent.history import MessageHistory, Role, Turn
from agent.model_metadata import estimate_turns_tokens_rough

logger = logging.getLogger(__name__)

SUMMARY_MARKER = "[Assistant Execution Summary]"

MAX_SUMMARY_INPUT_CHARS = 40_000
MAX_ASSISTANT_SNIPPET_CHARS = 4_000
MAX_TOOL_SNIPPET_CHARS = 2_000
MAX_FALLBACK_SUMMARY_CHARS = 4_000

SUMMARIZER_SYSTEM_PROMPT = "You are an assistant skilled at summarizing Agent execution processes."

SUMMARY_PROMPT_TEMPLATE = """Please provide a concise summary of the following Agent execution process:

{execution}

Requirements:
1. Focus on what tasks were completed and which tools were called
2. Keep key execution results and important findings
3. Be concise and clear, within 1000 words
4. Use English
5. Do not include "user" related content, only summarize the Agent's execution process"""


def truncate_middle(text: str, limit: int) -> str:
    """Keep the head (70%) and tail of *text* so it fits in *limit* chars."""
    if len(text) <= limit:
        return text
    head = int(limit * 0.7)
    tail = max(limit - head, 0)
    dropped = len(text) - head - tail
    tail_text = text[-tail:] if tail else ""
    return f"{text[:head]}\n... (truncated {dropped} chars) ...\n{tail_text}"


def is_summary_turn(turn: Turn) -> bool:
    return turn.role is Role.ASSISTANT and (turn.content or "").startswith(SUMMARY_MARKER)


def render_execution(turns: List[Turn]) -> str:
    """Plain-text transcript of assistant/tool turns for the summarizer."""
    lines = []
    for turn in turns:
        if turn.role is Role.ASSISTANT:
            if turn.content:
                lines.append(f"Assistant: {truncate_middle(turn.content, MAX_ASSISTANT_SNIPPET_CHARS)}")
            if turn.tool_calls:
                names = ", ".join(tc.name for tc in turn.tool_calls)
                lines.append(f"  -> Called tools: {names}")
        elif turn.role is Role.TOOL:
            label = turn.name or "tool"
            lines.append(f"  <- {label} returned: {truncate_middle(turn.content or '', MAX_TOOL_SNIPPET_CHARS)}")
    return truncate_middle("\n".join(lines), MAX_SUMMARY_INPUT_CHARS)


class ContextCompressor:
    """Keeps one agent's history under its token budget."""

    def __init__(self, llm: Any, token_limit: int = 80_000, quiet_mode: bool = True):
        self.llm = llm
        self.token_limit = token_limit
        self.quiet_mode = quiet_mode
        self.last_prompt_tokens = 0
        self.skip_next_check = False
        self.compression_count = 0

    def update_from_response(self, usage: Optional[Dict[str, Any]]) -> None:
        """Record the backend-reported token total of the last exchange."""
        if not usage:
            return
        total = usage.get("total_tokens") or (
            (usage.get("prompt_tokens") or 0) + (usage.get("completion_tokens") or 0)
        )
        self.last_prompt_tokens = int(total or 0)

    def estimate_tokens(self, history: MessageHistory) -> int:
        return estimate_turns_tokens_rough(history.turns)

    def should_compress(self, history: MessageHistory) -> bool:
        estimated = self.estimate_tokens(history)
        return estimated > self.token_limit or self.last_prompt_tokens > self.token_limit

    async def maybe_compress(self, history: MessageHistory) -> bool:
        """Compact *history* in place when over budget. Returns True if it did."""
        if self.skip_next_check:
            self.skip_next_check = False
            return False

        if not self.should_compress(history):
            return False

        estimated = self.estimate_tokens(history)
        logger.info(
            "Context over budget (estimated %s, reported %s, limit %s); compacting",
            estimated, self.last_prompt_tokens, self.token_limit,
        )
        changed = await self.compress(history)
        self.skip_next_check = True
        if changed:
            self.compression_count += 1
            logger.info(
                "Compaction #%d: %d -> %d estimated tokens",
                self.compression_count, estimated, self.estimate_tokens(history),
            )
        return changed

    async def compress(self, history: MessageHistory) -> bool:
        """Summarize every execution stretch. Returns True if history changed."""
        turns = history.turns
        user_indices = [i for i, t in enumerate(turns) if i > 0 and t.role is Role.USER]
        if not user_indices:
            return False

        rewritten: List[Turn] = [turns[0]]
        rewritten.extend(turns[1:user_indices[0]])
        changed = False

        for n, start in enumerate(user_indices):
            rewritten.append(turns[start])
            end = user_indices[n + 1] if n + 1 < len(user_indices) else len(turns)
            execution = turns[start + 1:end]
            if not execution:
                continue
            if len(execution) == 1 and is_summary_turn(execution[0]):
                rewritten.append(execution[0])
                continue

            summary = await self._summarize(execution, round_number=n + 1)
            changed = True
            if summary:
                rewritten.append(Turn(role=Role.ASSISTANT, content=f"{SUMMARY_MARKER}\n\n{summary}"))

        if changed:
            history.replace(rewritten)
        return changed

    async def _summarize(self, execution: List[Turn], round_number: int) -> str:
        transcript = render_execution(execution)
        prompt = SUMMARY_PROMPT_TEMPLATE.format(execution=transcript)
        try:
            response = await self.llm.generate([
                Turn(role=Role.SYSTEM, content=SUMMARIZER_SYSTEM_PROMPT),
                Turn(role=Role.USER, content=prompt),
            ])
            summary = (response.content or "").strip()
            if summary:
                logger.debug("Summary for round %d: %d chars", round_number, len(summary))
                return summary
            logger.warning("Summarizer returned empty text for round %d; using fallback", round_number)
        except Exception as e:
            logger.warning("Summary generation failed for round %d: %s; using fallback", round_number, e)
        return self._fallback_summary(execution, transcript)

    @staticmethod
    def _fallback_summary(execution: List[Turn], transcript: str) -> str:
        tools = [tc.name for t in execution for tc in t.tool_calls]
        header = f"Tools called: {', '.join(tools)}" if tools else "No tools were called."
        return f"{header}\n\n{truncate_middle(transcript, MAX_FALLBACK_SUMMARY_CHARS)}"

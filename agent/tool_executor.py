"""Tool call execution with frozen configuration.

Runs the calls of one assistant turn in order, appending exactly one
tool-result turn per call. Tool faults never raise out of here: unknown
tools and exceptions become failed results whose text starts with
``Error:``.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from agent.history import MessageHistory, Turn
from tools.base import ToolRegistry

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000

CANCELLED_TOOL_RESULT = "[Tool execution cancelled - user interrupted]"

EventEmitter = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class ToolExecConfig:
    """Immutable configuration for tool execution."""

    registry: ToolRegistry
    emit: Optional[EventEmitter] = None
    quiet_mode: bool = True
    log_prefix: str = ""
    log_prefix_chars: int = 100


def _preview(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


async def execute_tool_calls(
    config: ToolExecConfig,
    assistant_turn: Turn,
    history: MessageHistory,
    *,
    is_interrupted: Callable[[], bool],
    on_tool_executed: Optional[Callable[[str], None]] = None,
) -> int:
    """Execute all tool calls of *assistant_turn*.

    Appends one tool-result turn per call to *history*, in request order.
    Checks *is_interrupted()* before each call; once it returns True the
    remaining calls are answered with a cancellation notice instead of
    being run.

    Returns the number of calls that actually executed.
    """
    executed = 0
    calls = assistant_turn.tool_calls

    for i, tool_call in enumerate(calls, 1):
        if is_interrupted():
            remaining = calls[i - 1:]
            logger.info("%sInterrupt: skipping %d tool call(s)", config.log_prefix, len(remaining))
            for skipped in remaining:
                history.add_tool_result(skipped.id, CANCELLED_TOOL_RESULT, name=skipped.name)
            break

        if not config.quiet_mode:
            logger.info("%sTool %d: %s(%s)", config.log_prefix, i, tool_call.name,
                        _preview(str(tool_call.arguments), config.log_prefix_chars))

        if config.emit is not None:
            await config.emit("tool_call_start", {
                "tool_call_id": tool_call.id,
                "name": tool_call.name,
                "arguments": tool_call.arguments,
            })

        tool_start_time = time.time()
        result = await config.registry.execute(tool_call.name, tool_call.arguments)
        tool_duration = time.time() - tool_start_time

        text = result.text
        if len(text) > MAX_TOOL_RESULT_CHARS:
            original_len = len(text)
            text = (
                text[:MAX_TOOL_RESULT_CHARS]
                + f"\n\n[Truncated: tool response was {original_len:,} chars, "
                f"exceeding the {MAX_TOOL_RESULT_CHARS:,} char limit]"
            )

        history.add_tool_result(tool_call.id, text, name=tool_call.name)
        executed += 1

        logger.debug("Tool %s completed in %.2fs (success=%s): %s",
                     tool_call.name, tool_duration, result.success, _preview(text, 200))

        if config.emit is not None:
            await config.emit("tool_call_end", {
                "tool_call_id": tool_call.id,
                "name": tool_call.name,
                "success": result.success,
                "content": text,
                "duration": tool_duration,
            })

        if on_tool_executed is not None:
            on_tool_executed(tool_call.name)

    return executed

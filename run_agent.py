#!/usr/bin/env python3
"""
AI Agent Runner with Tool Calling

This module provides the agent execution loop: it consults the model
backend, runs the tools the model asks for, records everything in the
conversation history and repeats until the model answers without tool
calls, the step budget runs out, or the run is cancelled.

Features:
- Automatic tool calling loop until completion
- Context compaction when the history outgrows its token budget
- Cancellation checked before every model call and every tool call
- Optional event callback for streaming progress to a controller

Usage:
    from run_agent import AIAgent

    agent = AIAgent(llm=client, tools=registry, system_prompt="...")
    answer = await agent.chat("List the files in the workspace")

Command line:
    tendril --task "summarize README.md"
    tendril                      # interactive
    tendril --acp                # controller server on stdio
"""

import asyncio
import inspect
import logging
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import fire

from agent.context_compressor import ContextCompressor
from agent.history import MessageHistory, ToolCall
from agent.llm_client import LLMClientBase, create_llm_client
from agent.prompt_assembler import DEFAULT_AGENT_IDENTITY, PromptAssembler, load_system_prompt
from agent.tool_executor import ToolExecConfig, execute_tool_calls
from tools.base import Tool, ToolRegistry
from tools.process_registry import ProcessRegistry
from tools.skills_tool import SkillLoader

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], Any]


class StopReason(str, Enum):
    END_TURN = "end_turn"
    MAX_STEPS = "max_turn_requests"
    CANCELLED = "cancelled"


@dataclass
class TurnResult:
    """Outcome of one ``AIAgent.run()``."""

    status: StopReason
    final_response: str
    steps: int
    tool_calls: int

    @property
    def completed(self) -> bool:
        return self.status is StopReason.END_TURN


def setup_logging(verbose: bool = False, quiet: bool = False, stream=None) -> None:
    """Configure root logging and quiet noisy third-party loggers."""
    level = logging.DEBUG if verbose else (logging.WARNING if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S',
        stream=stream or sys.stderr,
    )
    noisy_level = logging.WARNING if verbose else logging.ERROR
    for noisy in ('openai', 'openai._base_client', 'httpx', 'httpcore', 'asyncio'):
        logging.getLogger(noisy).setLevel(noisy_level)


class AIAgent:
    """
    Tool-calling agent bound to one conversation.

    Owns its message history, its compaction state and its tool registry.
    The backend client may be shared with other agents.
    """

    def __init__(
        self,
        llm: LLMClientBase,
        tools: Optional[ToolRegistry] = None,
        system_prompt: str = DEFAULT_AGENT_IDENTITY,
        *,
        workspace_dir: Optional[str] = None,
        max_steps: int = 50,
        token_limit: int = 80_000,
        event_callback: Optional[EventCallback] = None,
        interrupt_event: Optional[threading.Event] = None,
        quiet_mode: bool = True,
        log_prefix: str = "",
        skill_loader: Optional[SkillLoader] = None,
    ):
        """
        Args:
            llm: Backend client used for every model call and for summaries.
            tools: Registry of callable tools. Empty when omitted.
            system_prompt: Base instructions; a workspace section is appended.
            workspace_dir: Directory the agent works in.
            max_steps: Maximum number of model calls per run().
            token_limit: Budget that triggers history compaction.
            event_callback: ``callback(event_type, payload)``, sync or async.
                Receives ``thought``, ``message``, ``tool_call_start``,
                ``tool_call_end`` and ``compaction`` events.
            interrupt_event: Shared with foreground shell commands so an
                interrupt also stops a running command.
            skill_loader: Skills listed in the system prompt when the
                registry holds the get_skill tool.
        """
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")

        self.llm = llm
        self.tools = tools or ToolRegistry()
        self.workspace_dir = workspace_dir
        self.max_steps = max_steps
        self.event_callback = event_callback
        self.quiet_mode = quiet_mode
        self.log_prefix = log_prefix

        self._prompt_assembler = PromptAssembler(system_prompt, workspace_dir, skill_loader)
        self.history = MessageHistory(
            self._prompt_assembler.build(valid_tool_names=self.tools.names())
        )
        self.context_compressor = ContextCompressor(llm, token_limit=token_limit, quiet_mode=quiet_mode)

        self._interrupt_requested = False
        self._interrupt_event = interrupt_event or threading.Event()
        self._tool_exec_config = ToolExecConfig(
            registry=self.tools,
            emit=self._emit,
            quiet_mode=quiet_mode,
            log_prefix=log_prefix,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def interrupt(self) -> None:
        """
        Request the agent to stop its current run.

        Safe to call from another task or thread. The loop checks the flag
        before each model call and each tool call; a foreground shell
        command sharing ``interrupt_event`` is killed as well.
        """
        self._interrupt_requested = True
        self._interrupt_event.set()
        logger.info("%sInterrupt requested", self.log_prefix)

    cancel = interrupt

    def clear_interrupt(self) -> None:
        self._interrupt_requested = False
        self._interrupt_event.clear()

    @property
    def is_interrupted(self) -> bool:
        return self._interrupt_requested

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def add_user_message(self, content: str) -> None:
        self.history.add_user(content)

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_callback is None:
            return
        try:
            result = self.event_callback(event_type, payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.debug("Event callback error (%s): %s", event_type, e)

    def _normalize_tool_calls(self, tool_calls: List[ToolCall]) -> List[ToolCall]:
        """Give every call an id that is unique in this history."""
        seen = {tc.id for turn in self.history for tc in turn.tool_calls}
        for tc in tool_calls:
            if not tc.id or tc.id == "None" or tc.id in seen:
                tc.id = f"call_{uuid.uuid4().hex[:12]}"
            seen.add(tc.id)
        return tool_calls

    async def run(self) -> TurnResult:
        """Run the loop on the current history.

        Returns a ``TurnResult`` whose status is ``END_TURN`` when the model
        answered without tool calls, ``MAX_STEPS`` when the step budget ran
        out, or ``CANCELLED`` after ``interrupt()``. Backend errors that
        survive the client's retries propagate.
        """
        self.clear_interrupt()
        tool_call_count = 0
        steps = 0

        while steps < self.max_steps:
            if self._interrupt_requested:
                return self._cancelled(steps, tool_call_count)

            if await self.context_compressor.maybe_compress(self.history):
                await self._emit("compaction", {
                    "estimated_tokens": self.context_compressor.estimate_tokens(self.history),
                    "turns": len(self.history),
                })

            steps += 1
            specs = self.tools.schemas(self.llm.schema_format)

            api_start_time = time.time()
            response = await self.llm.generate(self.history.turns, specs or None)
            logger.debug("%sStep %d/%d: model answered in %.2fs (%d tool calls)",
                         self.log_prefix, steps, self.max_steps,
                         time.time() - api_start_time, len(response.tool_calls))

            if response.usage:
                self.context_compressor.update_from_response(response.usage.to_dict())

            assistant_turn = self.history.add_assistant(
                content=response.content,
                reasoning=response.reasoning,
                tool_calls=self._normalize_tool_calls(response.tool_calls),
            )

            if response.reasoning:
                await self._emit("thought", {"text": response.reasoning})
            if response.content:
                await self._emit("message", {"text": response.content})

            if not assistant_turn.tool_calls:
                return TurnResult(StopReason.END_TURN, response.content, steps, tool_call_count)

            tool_call_count += await execute_tool_calls(
                self._tool_exec_config,
                assistant_turn,
                self.history,
                is_interrupted=lambda: self._interrupt_requested,
            )

        if self._interrupt_requested:
            return self._cancelled(steps, tool_call_count)

        final_response = f"Task couldn't be completed after {self.max_steps} steps."
        logger.warning("%s%s", self.log_prefix, final_response)
        return TurnResult(StopReason.MAX_STEPS, final_response, steps, tool_call_count)

    def _cancelled(self, steps: int, tool_call_count: int) -> TurnResult:
        logger.info("%sRun cancelled after %d step(s)", self.log_prefix, steps)
        return TurnResult(StopReason.CANCELLED, "Task cancelled by user.", steps, tool_call_count)

    async def chat(self, message: str) -> str:
        """
        Simple chat interface that returns just the final response.

        Args:
            message (str): User message

        Returns:
            str: Final assistant response
        """
        self.add_user_message(message)
        result = await self.run()
        return result.final_response


def build_agent(config, llm: LLMClientBase, process_registry: ProcessRegistry, *,
                workspace_dir: Optional[Path] = None, shared_tools: Optional[List[Tool]] = None,
                event_callback: Optional[EventCallback] = None, quiet_mode: bool = True,
                log_prefix: str = "", skill_loader: Optional[SkillLoader] = None) -> AIAgent:
    """Create an agent with the configured local tools plus *shared_tools*."""
    from model_tools import build_registry, get_local_tools

    workspace = Path(workspace_dir or config.workspace_path)
    workspace.mkdir(parents=True, exist_ok=True)
    interrupt_event = threading.Event()

    local_tools = get_local_tools(config.tools, workspace, process_registry, interrupt_event, skill_loader)
    registry = build_registry(local_tools, shared_tools or [])

    return AIAgent(
        llm=llm,
        tools=registry,
        system_prompt=load_system_prompt(config.system_prompt_file),
        workspace_dir=str(workspace),
        max_steps=config.agent.max_steps,
        token_limit=config.agent.token_limit,
        event_callback=event_callback,
        interrupt_event=interrupt_event,
        quiet_mode=quiet_mode,
        log_prefix=log_prefix,
        skill_loader=skill_loader,
    )


def create_llm_from_config(config) -> LLMClientBase:
    return create_llm_client(
        api_key=config.llm.api_key,
        api_base=config.llm.api_base,
        model=config.llm.model,
        provider=config.llm.provider,
        retry_config=config.llm.retry,
    )


async def _print_event(event_type: str, payload: Dict[str, Any]) -> None:
    if event_type == "thought":
        print(f"\n💭 {payload['text']}")
    elif event_type == "message":
        print(f"\n🤖 {payload['text']}")
    elif event_type == "tool_call_start":
        print(f"\n🔧 {payload['name']}({payload['arguments']})")
    elif event_type == "tool_call_end":
        mark = "✅" if payload["success"] else "❌"
        content = payload["content"]
        preview = content[:300] + "..." if len(content) > 300 else content
        print(f"{mark} {preview}")
    elif event_type == "compaction":
        print(f"\n📦 Context compacted ({payload['estimated_tokens']:,} estimated tokens)")


async def _run_cli(config, task: Optional[str], workspace: Optional[str]) -> None:
    from tools.mcp_manager import MCPManager
    from model_tools import load_mcp_tools, load_skills

    llm = create_llm_from_config(config)
    process_registry = ProcessRegistry()
    mcp_manager = MCPManager()
    try:
        shared_tools = await load_mcp_tools(config.tools, config.mcp_config_file, mcp_manager)
        agent = build_agent(
            config, llm, process_registry,
            workspace_dir=Path(workspace).expanduser().resolve() if workspace else None,
            shared_tools=shared_tools,
            event_callback=_print_event,
            skill_loader=load_skills(config.tools, config.skills_path),
        )
        print(f"🤖 Tendril ({config.llm.model}) - workspace: {agent.workspace_dir}")
        print(f"🔧 Tools: {', '.join(agent.tools.names())}")

        if task:
            agent.add_user_message(task)
            result = await agent.run()
            if result.status is not StopReason.END_TURN:
                print(f"\n⚠️  {result.final_response}")
            return

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "\nYou > ")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not user_input:
                continue
            if user_input in ("/exit", "/quit"):
                break
            if user_input == "/clear":
                agent.history.replace([agent.history.system_turn])
                print("🧹 History cleared")
                continue
            agent.add_user_message(user_input)
            result = await agent.run()
            if result.status is not StopReason.END_TURN:
                print(f"\n⚠️  {result.final_response}")
    finally:
        await mcp_manager.shutdown_all()
        process_registry.cleanup_all()
        await llm.close()


def main(
    task: str = None,
    config: str = None,
    workspace: str = None,
    acp: bool = False,
    verbose: bool = False,
):
    """
    Main function for running the agent directly.

    Args:
        task (str): Run this task once and exit. Interactive when omitted.
        config (str): Path to config.yaml. Searched for when omitted.
        workspace (str): Workspace directory override.
        acp (bool): Serve the controller protocol on stdin/stdout instead.
        verbose (bool): Enable debug logging.
    """
    if acp:
        from gateway.acp_server import main as acp_main
        acp_main(config=config, verbose=verbose)
        return

    from tendril_cli.config import ConfigError, load_config

    setup_logging(verbose=verbose, quiet=not verbose)
    try:
        app_config = load_config(config)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(_run_cli(app_config, task, workspace))


def cli():
    fire.Fire(main)


if __name__ == "__main__":
    cli()

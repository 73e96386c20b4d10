"""
Tendril controller server (stdio).

Serves an editor or other controller over Content-Length framed JSON-RPC on
stdin/stdout:

    initialize  -> {protocolVersion, agentCapabilities, agentInfo}
    newSession  -> {sessionId}
    prompt      -> {stopReason}     (progress streamed as sessionUpdate)
    cancel                          (request or notification)

Every session owns its own ``AIAgent`` (history, compaction state, tool
registry). The backend client, the process registry and MCP tools are
shared by all sessions.

Usage:
    tendril-acp [--config config/config.yaml] [--verbose]

Logs go to stderr; stdout carries protocol frames only.
"""

import asyncio
import logging
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import fire
from pydantic import BaseModel, ConfigDict, Field

from gateway.jsonrpc import JsonRpcConnection
from tendril_constants import ACP_PROTOCOL_VERSION, AGENT_NAME, __version__

logger = logging.getLogger(__name__)

STOP_REASON_REFUSAL = "refusal"


class _Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InitializeParams(_Params):
    protocol_version: int = Field(ACP_PROTOCOL_VERSION, alias="protocolVersion")


class NewSessionParams(_Params):
    cwd: Optional[str] = None


class ContentBlock(_Params):
    type: str = "text"
    text: str = ""


class PromptParams(_Params):
    session_id: str = Field(alias="sessionId")
    prompt: List[ContentBlock]

    def text(self) -> str:
        return "\n".join(block.text for block in self.prompt if block.text)


class CancelParams(_Params):
    session_id: str = Field(alias="sessionId")


class PromptResult(_Params):
    stop_reason: str = Field(alias="stopReason")


@dataclass
class SessionState:
    session_id: str
    agent: Any
    cwd: Path
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ACPServer:
    """Maps controller sessions onto agents."""

    def __init__(self, config, llm, process_registry, shared_tools=None, agent_factory=None,
                 skill_loader=None):
        """
        Args:
            config: Loaded ``tendril_cli.config.Config``.
            llm: Backend client shared by every session.
            process_registry: Background job table shared by every session.
            shared_tools: Tools added to every session (MCP tools).
            agent_factory: ``factory(cwd, event_callback) -> AIAgent``.
                Defaults to ``run_agent.build_agent`` with this server's
                shared resources.
            skill_loader: Skills offered to every session, if enabled.
        """
        self.config = config
        self.llm = llm
        self.process_registry = process_registry
        self.shared_tools = list(shared_tools or [])
        self.skill_loader = skill_loader
        self._agent_factory = agent_factory or self._default_agent_factory
        self.sessions: Dict[str, SessionState] = {}
        self.conn: Optional[JsonRpcConnection] = None

    def _default_agent_factory(self, cwd: Path, event_callback):
        from run_agent import build_agent

        return build_agent(
            self.config, self.llm, self.process_registry,
            workspace_dir=cwd,
            shared_tools=self.shared_tools,
            event_callback=event_callback,
            log_prefix=f"[{cwd.name}] ",
            skill_loader=self.skill_loader,
        )

    def attach(self, conn: JsonRpcConnection) -> JsonRpcConnection:
        """Register this server's methods on *conn*."""
        self.conn = conn
        conn.register("initialize", self.initialize)
        conn.register("newSession", self.new_session)
        conn.register("prompt", self.prompt)
        conn.register("cancel", self.cancel)
        conn.on_notification("cancel", self.cancel)
        return conn

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    async def initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request = InitializeParams.model_validate(params)
        logger.info("Controller connected (protocol %s)", request.protocol_version)
        return {
            "protocolVersion": ACP_PROTOCOL_VERSION,
            "agentCapabilities": {"loadSession": False},
            "agentInfo": {"name": AGENT_NAME, "version": __version__},
        }

    async def new_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request = NewSessionParams.model_validate(params)
        cwd = Path(request.cwd).expanduser().resolve() if request.cwd else self.config.workspace_path
        session_id = str(uuid.uuid4())

        async def on_event(event_type: str, payload: Dict[str, Any]) -> None:
            await self._send_update(session_id, event_type, payload)

        agent = self._agent_factory(cwd, on_event)
        self.sessions[session_id] = SessionState(session_id=session_id, agent=agent, cwd=cwd)
        logger.info("Session %s created (cwd=%s)", session_id, cwd)
        return {"sessionId": session_id}

    async def prompt(self, params: Dict[str, Any]) -> PromptResult:
        request = PromptParams.model_validate(params)
        state = self.sessions.get(request.session_id)
        if state is None:
            logger.warning("Prompt for unknown session %s", request.session_id)
            return PromptResult(stop_reason=STOP_REASON_REFUSAL)

        async with state.lock:
            state.agent.add_user_message(request.text())
            try:
                result = await state.agent.run()
            except Exception as e:
                logger.exception("Session %s: run failed", request.session_id)
                await self._notify(request.session_id, {
                    "sessionUpdate": "update_agent_message",
                    "content": {"type": "text", "text": f"Error: {e}"},
                })
                return PromptResult(stop_reason=STOP_REASON_REFUSAL)

        return PromptResult(stop_reason=result.status.value)

    async def cancel(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request = CancelParams.model_validate(params)
        state = self.sessions.get(request.session_id)
        if state is not None:
            state.agent.interrupt()
        return {}

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def _send_update(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if event_type == "thought":
            update = {"sessionUpdate": "update_agent_thought",
                      "content": {"type": "text", "text": payload["text"]}}
        elif event_type == "message":
            update = {"sessionUpdate": "update_agent_message",
                      "content": {"type": "text", "text": payload["text"]}}
        elif event_type == "tool_call_start":
            update = {"sessionUpdate": "start_tool_call",
                      "toolCallId": payload["tool_call_id"],
                      "title": payload["name"],
                      "status": "in_progress",
                      "rawInput": payload["arguments"]}
        elif event_type == "tool_call_end":
            update = {"sessionUpdate": "update_tool_call",
                      "toolCallId": payload["tool_call_id"],
                      "status": "completed" if payload["success"] else "failed",
                      "content": [{"type": "content",
                                   "content": {"type": "text", "text": payload["content"]}}],
                      "rawOutput": payload["content"]}
        else:
            return
        await self._notify(session_id, update)

    async def _notify(self, session_id: str, update: Dict[str, Any]) -> None:
        if self.conn is None:
            return
        await self.conn.notify("sessionUpdate", {"sessionId": session_id, "update": update})

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def run_stdio(self) -> None:
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        loop = asyncio.get_running_loop()

        await loop.connect_read_pipe(lambda: protocol, sys.stdin)
        w_transport, w_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout
        )
        writer = asyncio.StreamWriter(w_transport, w_protocol, reader, loop)

        conn = self.attach(JsonRpcConnection(writer, reader, name="acp"))
        logger.info("Tendril controller server started (stdio transport)")
        try:
            await conn.serve()
        finally:
            for state in self.sessions.values():
                state.agent.interrupt()
            logger.info("Controller disconnected")


async def _serve(config) -> None:
    from model_tools import load_mcp_tools, load_skills
    from run_agent import create_llm_from_config
    from tools.mcp_manager import MCPManager
    from tools.process_registry import ProcessRegistry

    llm = create_llm_from_config(config)
    process_registry = ProcessRegistry()
    mcp_manager = MCPManager()
    try:
        shared_tools = await load_mcp_tools(config.tools, config.mcp_config_file, mcp_manager)
        server = ACPServer(config, llm, process_registry, shared_tools,
                           skill_loader=load_skills(config.tools, config.skills_path))
        await server.run_stdio()
    finally:
        await mcp_manager.shutdown_all()
        process_registry.cleanup_all()
        await llm.close()


def main(config: str = None, verbose: bool = False) -> None:
    from run_agent import setup_logging
    from tendril_cli.config import ConfigError, load_config

    setup_logging(verbose=verbose, quiet=not verbose, stream=sys.stderr)
    try:
        app_config = load_config(config)
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)
    asyncio.run(_serve(app_config))


def cli() -> None:
    fire.Fire(main)


if __name__ == "__main__":
    cli()

"""Tests for gateway.acp_server -- controller sessions over JSON-RPC.

Covers:
- initialize / newSession / prompt / cancel
- one agent (and history) per session
- sessionUpdate progress notifications
- refusal for unknown sessions and backend failures
- param validation errors map to -32602
"""

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agent.history import ToolCall
from agent.llm_client import LLMResponse
from gateway.acp_server import ACPServer
from gateway.framing import FrameDecoder, encode_message
from gateway.jsonrpc import INVALID_PARAMS, JsonRpcConnection
from run_agent import AIAgent
from tools.base import Tool, ToolRegistry, ToolResult, ToolSchema


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class CaptureWriter:
    def __init__(self):
        self._decoder = FrameDecoder()
        self.messages = []

    def write(self, data: bytes) -> None:
        self.messages.extend(self._decoder.feed(data))


class ScriptedLLM:
    schema_format = "anthropic"

    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = 0

    async def generate(self, turns, tools=None):
        self.calls += 1
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class EchoTool(Tool):
    @property
    def schema(self):
        return ToolSchema(name="echo", description="Echo text", parameters={"text": {"type": "string"}})

    async def execute(self, text="", **_):
        return ToolResult(success=True, content=f"echo: {text}")


def _make_server(tmp_path, responses):
    llm = ScriptedLLM(responses)
    config = MagicMock()
    config.workspace_path = tmp_path

    def factory(cwd, event_callback):
        return AIAgent(
            llm=llm,
            tools=ToolRegistry([EchoTool()]),
            workspace_dir=str(cwd),
            event_callback=event_callback,
        )

    server = ACPServer(config, llm, process_registry=None, agent_factory=factory)
    writer = CaptureWriter()
    conn = server.attach(JsonRpcConnection(writer, name="acp-test"))
    return server, conn, writer, llm


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def _updates(writer, session_id):
    return [
        m["params"]["update"]
        for m in writer.messages
        if m.get("method") == "sessionUpdate" and m["params"]["sessionId"] == session_id
    ]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_advertises_protocol(self, tmp_path):
        server, *_ = _make_server(tmp_path, [])
        result = await server.initialize({"protocolVersion": 1})
        assert result["protocolVersion"] == 1
        assert result["agentCapabilities"] == {"loadSession": False}
        assert result["agentInfo"]["name"] == "tendril-agent"

    @pytest.mark.asyncio
    async def test_new_session_uses_given_cwd(self, tmp_path):
        server, *_ = _make_server(tmp_path, [])
        result = await server.new_session({"cwd": str(tmp_path / "proj")})
        state = server.sessions[result["sessionId"]]
        assert state.cwd == (tmp_path / "proj").resolve()

    @pytest.mark.asyncio
    async def test_new_session_defaults_to_configured_workspace(self, tmp_path):
        server, *_ = _make_server(tmp_path, [])
        result = await server.new_session({})
        assert server.sessions[result["sessionId"]].cwd == tmp_path

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_history(self, tmp_path):
        server, _, _, _ = _make_server(tmp_path, [
            LLMResponse(content="first"),
            LLMResponse(content="second"),
        ])
        a = (await server.new_session({}))["sessionId"]
        b = (await server.new_session({}))["sessionId"]
        assert server.sessions[a].agent is not server.sessions[b].agent

        await server.prompt({"sessionId": a, "prompt": [{"type": "text", "text": "to a"}]})
        await server.prompt({"sessionId": b, "prompt": [{"type": "text", "text": "to b"}]})

        a_users = [t.content for t in server.sessions[a].agent.history.user_turns()]
        b_users = [t.content for t in server.sessions[b].agent.history.user_turns()]
        assert a_users == ["to a"]
        assert b_users == ["to b"]


class TestPrompt:
    @pytest.mark.asyncio
    async def test_prompt_streams_updates_and_ends_turn(self, tmp_path):
        server, _, writer, llm = _make_server(tmp_path, [
            LLMResponse(
                content="Let me echo.",
                reasoning="Need the echo tool.",
                tool_calls=[ToolCall(id="call_1", name="echo", arguments={"text": "hi"})],
            ),
            LLMResponse(content="Done: echo: hi"),
        ])
        session_id = (await server.new_session({}))["sessionId"]

        result = await server.prompt({
            "sessionId": session_id,
            "prompt": [{"type": "text", "text": "echo hi"}],
        })

        assert result.model_dump(by_alias=True) == {"stopReason": "end_turn"}
        kinds = [u["sessionUpdate"] for u in _updates(writer, session_id)]
        assert kinds == [
            "update_agent_thought",
            "update_agent_message",
            "start_tool_call",
            "update_tool_call",
            "update_agent_message",
        ]
        tool_update = _updates(writer, session_id)[3]
        assert tool_update["toolCallId"] == "call_1"
        assert tool_update["status"] == "completed"
        assert tool_update["rawOutput"] == "echo: hi"
        assert llm.calls == 2

    @pytest.mark.asyncio
    async def test_prompt_text_blocks_are_joined(self, tmp_path):
        server, *_ = _make_server(tmp_path, [LLMResponse(content="ok")])
        session_id = (await server.new_session({}))["sessionId"]
        await server.prompt({
            "sessionId": session_id,
            "prompt": [{"type": "text", "text": "line one"}, {"type": "text", "text": "line two"}],
        })
        users = server.sessions[session_id].agent.history.user_turns()
        assert users[-1].content == "line one\nline two"

    @pytest.mark.asyncio
    async def test_unknown_session_is_refused(self, tmp_path):
        _, conn, writer, _ = _make_server(tmp_path, [])
        conn.feed_data(encode_message({
            "jsonrpc": "2.0", "id": 1, "method": "prompt",
            "params": {"sessionId": "missing", "prompt": [{"type": "text", "text": "hi"}]},
        }))
        await _wait_for(lambda: writer.messages)
        assert writer.messages[0]["result"] == {"stopReason": "refusal"}

    @pytest.mark.asyncio
    async def test_backend_failure_is_refused_with_message(self, tmp_path):
        server, _, writer, _ = _make_server(tmp_path, [RuntimeError("backend down")])
        session_id = (await server.new_session({}))["sessionId"]

        result = await server.prompt({"sessionId": session_id, "prompt": [{"type": "text", "text": "hi"}]})

        assert result.stop_reason == "refusal"
        messages = [u for u in _updates(writer, session_id) if u["sessionUpdate"] == "update_agent_message"]
        assert "backend down" in messages[-1]["content"]["text"]

    @pytest.mark.asyncio
    async def test_missing_session_id_is_invalid_params(self, tmp_path):
        _, conn, writer, _ = _make_server(tmp_path, [])
        conn.feed_data(encode_message({
            "jsonrpc": "2.0", "id": 2, "method": "prompt", "params": {"prompt": []},
        }))
        await _wait_for(lambda: writer.messages)
        assert writer.messages[0]["error"]["code"] == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_unknown_method_over_wire(self, tmp_path):
        _, conn, writer, _ = _make_server(tmp_path, [])
        conn.feed_data(encode_message({"jsonrpc": "2.0", "id": 3, "method": "loadSession"}))
        await _wait_for(lambda: writer.messages)
        assert writer.messages[0]["error"]["code"] == -32601


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_interrupts_session_agent(self, tmp_path):
        server, *_ = _make_server(tmp_path, [])
        session_id = (await server.new_session({}))["sessionId"]
        await server.cancel({"sessionId": session_id})
        assert server.sessions[session_id].agent.is_interrupted

    @pytest.mark.asyncio
    async def test_cancel_unknown_session_is_harmless(self, tmp_path):
        server, *_ = _make_server(tmp_path, [])
        assert await server.cancel({"sessionId": "nope"}) == {}

    @pytest.mark.asyncio
    async def test_cancel_during_prompt_stops_run(self, tmp_path):
        gate = asyncio.Event()
        server, _, _, _ = _make_server(tmp_path, [])

        class BlockingTool(Tool):
            @property
            def schema(self):
                return ToolSchema(name="block", description="Waits")

            async def execute(self, **_):
                gate.set()
                await asyncio.sleep(0.05)
                return ToolResult(success=True, content="unblocked")

        class LoopingLLM:
            schema_format = "anthropic"
            calls = 0

            async def generate(self, turns, tools=None):
                LoopingLLM.calls += 1
                return LLMResponse(tool_calls=[ToolCall(id=f"c{LoopingLLM.calls}", name="block")])

        server._agent_factory = lambda cwd, cb: AIAgent(
            llm=LoopingLLM(), tools=ToolRegistry([BlockingTool()]), event_callback=cb, max_steps=10,
        )
        session_id = (await server.new_session({}))["sessionId"]

        prompt = asyncio.create_task(server.prompt({
            "sessionId": session_id, "prompt": [{"type": "text", "text": "go"}],
        }))
        await gate.wait()
        await server.cancel({"sessionId": session_id})
        result = await prompt

        assert result.stop_reason == "cancelled"
        assert LoopingLLM.calls == 1

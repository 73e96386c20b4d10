"""Tests for agent.llm_client -- turn conversion and response parsing.

No network: the OpenAI client gets a mocked SDK object and the Anthropic
client an httpx.MockTransport.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from agent.history import Role, ToolCall, Turn
from agent.llm_client import (
    AnthropicClient,
    OpenAIChatClient,
    create_llm_client,
    normalize_api_base,
)
from agent.retry import RetryConfig


def _conversation():
    return [
        Turn(role=Role.SYSTEM, content="sys"),
        Turn(role=Role.USER, content="list files"),
        Turn(role=Role.ASSISTANT, content="", reasoning="use bash",
             tool_calls=[ToolCall("c1", "bash", {"command": "ls"})]),
        Turn(role=Role.TOOL, content="a.txt", tool_call_id="c1", name="bash"),
    ]


# ---------------------------------------------------------------------------
# Anthropic-style backend
# ---------------------------------------------------------------------------

class TestAnthropicClient:
    def test_convert_turns_splits_system(self):
        system, messages = AnthropicClient.convert_turns(_conversation())
        assert system == "sys"
        assert messages[0] == {"role": "user", "content": "list files"}
        blocks = messages[1]["content"]
        assert blocks[0] == {"type": "thinking", "thinking": "use bash"}
        assert blocks[1] == {"type": "tool_use", "id": "c1", "name": "bash", "input": {"command": "ls"}}
        assert messages[2] == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "c1", "content": "a.txt"}],
        }

    def test_parse_response(self):
        response = AnthropicClient.parse_response({
            "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Reading."},
                {"type": "tool_use", "id": "t9", "name": "read_file", "input": {"path": "a"}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 100, "output_tokens": 20},
        })
        assert response.content == "Reading."
        assert response.reasoning == "hmm"
        assert response.tool_calls == [ToolCall("t9", "read_file", {"path": "a"})]
        assert response.finish_reason == "tool_use"
        assert response.usage.total_tokens == 120

    @pytest.mark.asyncio
    async def test_generate_posts_messages_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"content": [{"type": "text", "text": "hi"}]})

        client = AnthropicClient(
            "sk-test", "https://api.example.com/anthropic", "model-x",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        tools = [{"name": "bash", "description": "d", "input_schema": {"type": "object"}}]
        response = await client.generate(_conversation()[:2], tools)
        await client.close()

        assert response.content == "hi"
        assert seen["url"] == "https://api.example.com/anthropic/messages"
        assert seen["headers"]["x-api-key"] == "sk-test"
        assert seen["body"]["system"] == "sys"
        assert seen["body"]["tools"] == tools
        assert seen["body"]["model"] == "model-x"

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(401, json={"error": "bad key"})

        client = AnthropicClient(
            "bad", "https://api.example.com/anthropic", "m",
            retry_config=RetryConfig(max_retries=3, initial_delay=0.0),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await client.generate(_conversation()[:2])
        await client.close()
        assert len(attempts) == 1


# ---------------------------------------------------------------------------
# OpenAI-compatible backend
# ---------------------------------------------------------------------------

def _openai_response(content="", tool_calls=None, reasoning_details=None):
    message = SimpleNamespace(
        content=content,
        tool_calls=tool_calls,
        reasoning=None,
        reasoning_content=None,
        reasoning_details=reasoning_details,
    )
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


class TestOpenAIChatClient:
    def test_convert_turns(self):
        messages = OpenAIChatClient.convert_turns(_conversation())
        assert messages[0] == {"role": "system", "content": "sys"}
        assistant = messages[2]
        assert assistant["tool_calls"][0]["function"] == {"name": "bash", "arguments": '{"command": "ls"}'}
        assert assistant["reasoning_details"] == [{"type": "reasoning.text", "text": "use bash"}]
        assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "a.txt"}
        assert assistant["content"] is None

    def test_empty_assistant_turn_sends_empty_string(self):
        messages = OpenAIChatClient.convert_turns([
            Turn(role=Role.SYSTEM, content="sys"),
            Turn(role=Role.USER, content="hi"),
            Turn(role=Role.ASSISTANT, content=""),
        ])
        assert messages[2] == {"role": "assistant", "content": ""}

    def test_parse_response_with_tool_calls(self):
        call = SimpleNamespace(id="call_1", function=SimpleNamespace(name="bash", arguments='{"command": "pwd"}'))
        response = OpenAIChatClient.parse_response(_openai_response(
            tool_calls=[call], reasoning_details=[{"type": "reasoning.text", "text": "thinking"}],
        ))
        assert response.tool_calls == [ToolCall("call_1", "bash", {"command": "pwd"})]
        assert response.reasoning == "thinking"
        assert response.usage.total_tokens == 15

    def test_unparsable_arguments_become_empty(self):
        call = SimpleNamespace(id="c", function=SimpleNamespace(name="bash", arguments="{not json"))
        response = OpenAIChatClient.parse_response(_openai_response(tool_calls=[call]))
        assert response.tool_calls[0].arguments == {}

    def test_no_choices_raises(self):
        with pytest.raises(ValueError):
            OpenAIChatClient.parse_response(SimpleNamespace(choices=[]))

    @pytest.mark.asyncio
    async def test_generate_passes_tools_and_extra_body(self):
        sdk = MagicMock()
        sdk.chat.completions.create = AsyncMock(return_value=_openai_response(content="hello"))
        client = OpenAIChatClient("k", "https://api.example.com/v1", "m",
                                  extra_body={"reasoning_split": True}, client=sdk)
        tools = [{"type": "function", "function": {"name": "bash"}}]

        response = await client.generate(_conversation()[:2], tools)

        assert response.content == "hello"
        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["tools"] == tools
        assert kwargs["extra_body"] == {"reasoning_split": True}
        assert kwargs["model"] == "m"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

class TestFactory:
    def test_normalize_api_base(self):
        assert normalize_api_base("https://api.minimax.io", "anthropic") == "https://api.minimax.io/anthropic"
        assert normalize_api_base("https://api.minimax.io/anthropic/", "openai") == "https://api.minimax.io/v1"
        assert normalize_api_base("https://host/v1", "openai") == "https://host/v1"

    def test_create_anthropic_client(self):
        client = create_llm_client("k", "https://api.minimax.io", "m", provider="anthropic")
        assert isinstance(client, AnthropicClient)
        assert client.api_base == "https://api.minimax.io/anthropic"
        assert client.schema_format == "anthropic"

    def test_create_openai_client_for_minimax_sets_reasoning_split(self):
        client = create_llm_client("k", "https://api.minimax.io", "m", provider="openai")
        assert isinstance(client, OpenAIChatClient)
        assert client.extra_body == {"reasoning_split": True}
        assert client.schema_format == "openai"

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError):
            create_llm_client("k", "https://x", "m", provider="bard")

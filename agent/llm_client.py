"""Model backends.

Both clients turn a list of ``Turn`` objects plus capability specs into one
``LLMResponse``. The agent loop never sees vendor payloads.

- ``OpenAIChatClient`` speaks chat completions through the ``openai`` SDK.
  Tool specs use the nested ``{"type": "function", "function": {...}}``
  shape.
- ``AnthropicClient`` speaks the messages protocol over ``httpx``. Tool
  specs use the flat ``{"name", "description", "input_schema"}`` shape.

Reasoning text returned by the backend is stored on the assistant turn and
echoed back on the next request. Retries happen here, inside ``generate``;
errors that survive the retry budget propagate to the caller.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from agent.history import Role, ToolCall, Turn
from agent.retry import RetryConfig, async_retry
from tools.base import SCHEMA_FORMAT_ANTHROPIC, SCHEMA_FORMAT_OPENAI

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 16384
DEFAULT_TIMEOUT = 600.0


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class LLMResponse:
    content: str = ""
    reasoning: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Optional[TokenUsage] = None


class LLMClientBase(ABC):
    """Common retry wrapper; subclasses implement one request."""

    schema_format = SCHEMA_FORMAT_ANTHROPIC

    def __init__(self, api_key: str, api_base: str, model: str,
                 retry_config: Optional[RetryConfig] = None):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.retry_config = retry_config or RetryConfig()

    async def generate(self, turns: List[Turn],
                       tools: Optional[List[Dict[str, Any]]] = None) -> LLMResponse:
        return await async_retry(self.retry_config, lambda: self._generate_once(turns, tools))

    @abstractmethod
    async def _generate_once(self, turns: List[Turn],
                             tools: Optional[List[Dict[str, Any]]]) -> LLMResponse:
        pass

    async def close(self) -> None:
        pass


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    """Decode tool-call arguments; anything unparsable becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _extract_reasoning(message: Any) -> Optional[str]:
    """
    Extract reasoning/thinking content from an assistant message.

    Providers return reasoning in several formats:
    1. message.reasoning - direct field (DeepSeek, Qwen, etc.)
    2. message.reasoning_content - alternative field (Moonshot AI, Novita, etc.)
    3. message.reasoning_details - array of {type, text|summary|content} objects
    """
    reasoning_parts = []

    reasoning = getattr(message, "reasoning", None)
    if isinstance(reasoning, str) and reasoning:
        reasoning_parts.append(reasoning)

    reasoning_content = getattr(message, "reasoning_content", None)
    if isinstance(reasoning_content, str) and reasoning_content and reasoning_content not in reasoning_parts:
        reasoning_parts.append(reasoning_content)

    for detail in getattr(message, "reasoning_details", None) or []:
        if not isinstance(detail, dict):
            detail = getattr(detail, "__dict__", {}) or {}
        text = detail.get("text") or detail.get("summary") or detail.get("content")
        if text and text not in reasoning_parts:
            reasoning_parts.append(text)

    if reasoning_parts:
        return "\n\n".join(reasoning_parts)
    return None


class OpenAIChatClient(LLMClientBase):
    """Chat-completions backend via the ``openai`` SDK."""

    schema_format = SCHEMA_FORMAT_OPENAI

    def __init__(self, api_key: str, api_base: str, model: str,
                 retry_config: Optional[RetryConfig] = None,
                 extra_body: Optional[Dict[str, Any]] = None,
                 client: Optional[AsyncOpenAI] = None):
        super().__init__(api_key, api_base, model, retry_config)
        self.extra_body = extra_body
        # Retries are handled by async_retry, not the SDK.
        self.client = client or AsyncOpenAI(
            api_key=api_key, base_url=self.api_base, max_retries=0, timeout=DEFAULT_TIMEOUT,
        )

    @staticmethod
    def convert_turns(turns: List[Turn]) -> List[Dict[str, Any]]:
        messages = []
        for turn in turns:
            if turn.role is Role.ASSISTANT:
                msg: Dict[str, Any] = {"role": "assistant", "content": turn.content or ""}
                if not turn.content and turn.tool_calls:
                    msg["content"] = None
                if turn.tool_calls:
                    msg["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                            },
                        }
                        for tc in turn.tool_calls
                    ]
                if turn.reasoning:
                    msg["reasoning_details"] = [{"type": "reasoning.text", "text": turn.reasoning}]
                messages.append(msg)
            elif turn.role is Role.TOOL:
                messages.append({
                    "role": "tool",
                    "tool_call_id": turn.tool_call_id,
                    "content": turn.content,
                })
            else:
                messages.append({"role": turn.role.value, "content": turn.content})
        return messages

    async def _generate_once(self, turns: List[Turn],
                             tools: Optional[List[Dict[str, Any]]]) -> LLMResponse:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": self.convert_turns(turns),
        }
        if tools:
            kwargs["tools"] = tools
        if self.extra_body:
            kwargs["extra_body"] = self.extra_body

        response = await self.client.chat.completions.create(**kwargs)
        return self.parse_response(response)

    @staticmethod
    def parse_response(response: Any) -> LLMResponse:
        if not getattr(response, "choices", None):
            raise ValueError("Backend returned no choices")
        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCall(
                id=str(tc.id),
                name=tc.function.name,
                arguments=_parse_arguments(tc.function.arguments),
            )
            for tc in (message.tool_calls or [])
        ]

        usage = None
        if getattr(response, "usage", None):
            prompt = getattr(response.usage, "prompt_tokens", 0) or 0
            completion = getattr(response.usage, "completion_tokens", 0) or 0
            total = getattr(response.usage, "total_tokens", 0) or (prompt + completion)
            usage = TokenUsage(prompt, completion, total)

        return LLMResponse(
            content=message.content or "",
            reasoning=_extract_reasoning(message),
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    async def close(self) -> None:
        await self.client.close()


class AnthropicClient(LLMClientBase):
    """Messages-protocol backend over ``httpx``."""

    schema_format = SCHEMA_FORMAT_ANTHROPIC

    def __init__(self, api_key: str, api_base: str, model: str,
                 retry_config: Optional[RetryConfig] = None,
                 max_tokens: int = DEFAULT_MAX_TOKENS,
                 http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(api_key, api_base, model, retry_config)
        self.max_tokens = max_tokens
        self._http = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    @staticmethod
    def convert_turns(turns: List[Turn]):
        """Returns ``(system, messages)``; tool results travel as user turns."""
        system = None
        messages: List[Dict[str, Any]] = []
        for turn in turns:
            if turn.role is Role.SYSTEM:
                system = turn.content
            elif turn.role is Role.USER:
                messages.append({"role": "user", "content": turn.content})
            elif turn.role is Role.ASSISTANT:
                if not turn.reasoning and not turn.tool_calls:
                    messages.append({"role": "assistant", "content": turn.content})
                    continue
                blocks: List[Dict[str, Any]] = []
                if turn.reasoning:
                    blocks.append({"type": "thinking", "thinking": turn.reasoning})
                if turn.content:
                    blocks.append({"type": "text", "text": turn.content})
                for tc in turn.tool_calls:
                    blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
                messages.append({"role": "assistant", "content": blocks})
            elif turn.role is Role.TOOL:
                messages.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": turn.tool_call_id,
                        "content": turn.content,
                    }],
                })
        return system, messages

    async def _generate_once(self, turns: List[Turn],
                             tools: Optional[List[Dict[str, Any]]]) -> LLMResponse:
        system, messages = self.convert_turns(turns)
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools

        response = await self._http.post(
            f"{self.api_base}/messages",
            json=body,
            headers={
                "content-type": "application/json",
                "x-api-key": self.api_key,
                "authorization": f"Bearer {self.api_key}",
                "anthropic-version": ANTHROPIC_VERSION,
            },
        )
        response.raise_for_status()
        return self.parse_response(response.json())

    @staticmethod
    def parse_response(data: Dict[str, Any]) -> LLMResponse:
        content = ""
        thinking = ""
        tool_calls: List[ToolCall] = []
        for block in data.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                content += block.get("text") or ""
            elif block_type == "thinking":
                thinking += block.get("thinking") or ""
            elif block_type == "tool_use":
                tool_calls.append(ToolCall(
                    id=str(block.get("id")),
                    name=str(block.get("name")),
                    arguments=_parse_arguments(block.get("input")),
                ))

        usage = None
        if data.get("usage"):
            prompt = int(data["usage"].get("input_tokens") or 0)
            completion = int(data["usage"].get("output_tokens") or 0)
            usage = TokenUsage(prompt, completion, prompt + completion)

        return LLMResponse(
            content=content,
            reasoning=thinking or None,
            tool_calls=tool_calls,
            finish_reason=str(data.get("stop_reason") or "stop"),
            usage=usage,
        )

    async def close(self) -> None:
        await self._http.aclose()


def normalize_api_base(api_base: str, provider: str) -> str:
    """Strip user-supplied protocol suffixes and add the provider's own."""
    base = api_base.rstrip("/")
    for suffix in ("/anthropic", "/v1"):
        if base.endswith(suffix):
            base = base[: -len(suffix)]
    return f"{base}/anthropic" if provider == "anthropic" else f"{base}/v1"


def create_llm_client(api_key: str, api_base: str, model: str, provider: str = "anthropic",
                      retry_config: Optional[RetryConfig] = None) -> LLMClientBase:
    provider = (provider or "anthropic").lower()
    if provider not in ("anthropic", "openai"):
        raise ValueError(f"Unsupported provider: {provider!r} (expected 'anthropic' or 'openai')")

    base = normalize_api_base(api_base, provider)
    if provider == "anthropic":
        return AnthropicClient(api_key, base, model, retry_config)

    extra_body = {"reasoning_split": True} if "minimax" in base.lower() else None
    return OpenAIChatClient(api_key, base, model, retry_config, extra_body=extra_body)

"""
OpenAI LLM
Chat Completions API, including OpenAI-compatible endpoints via ``base_url``.
"""
from typing import Any, List, Optional, Dict
import inspect
import json
import logging

from .base import BaseLLM, Message, LLMResponse, ToolCall


logger = logging.getLogger(__name__)


class OpenAILLM(BaseLLM):
    """Chat Completions client with tool calling and json_schema responses."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        **kwargs,
    ):
        super().__init__(model, temperature, max_tokens, timeout, **kwargs)
        self.api_key = api_key
        self.base_url = base_url
        self._async_client = None

    @property
    def provider(self) -> str:
        return "openai"

    def _get_async_client(self):
        if self._async_client is None:
            from openai import AsyncOpenAI
            self._async_client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._async_client

    @staticmethod
    def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
        try:
            parsed = json.loads(raw or "{}")
        except json.JSONDecodeError:
            logger.warning("Tool call arguments are not valid JSON: %s", (raw or "")[:200])
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def acomplete(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        json_schema: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> LLMResponse:
        client = self._get_async_client()

        request_params = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": kwargs.get("temperature", self.temperature),
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
        }
        if tools:
            request_params["tools"] = tools
            request_params["tool_choice"] = kwargs.get("tool_choice", "auto")
        if json_schema:
            request_params["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": kwargs.get("schema_name", "response"), "schema": json_schema},
            }

        response = await client.chat.completions.create(**request_params)

        choice = response.choices[0]
        tool_calls = None
        if choice.message.tool_calls:
            tool_calls = [
                ToolCall(id=tc.id, name=tc.function.name, arguments=self._parse_arguments(tc.function.arguments))
                for tc in choice.message.tool_calls
            ]

        usage = response.usage
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                "completion_tokens": getattr(usage, "completion_tokens", 0),
                "total_tokens": getattr(usage, "total_tokens", 0),
            },
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
            raw_response=response,
        )

    async def aclose(self) -> None:
        client = self._async_client
        if client is None:
            return
        self._async_client = None
        close_fn = getattr(client, "close", None)
        if callable(close_fn):
            maybe_awaitable = close_fn()
            if inspect.isawaitable(maybe_awaitable):
                await maybe_awaitable

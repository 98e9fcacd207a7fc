"""
Anthropic LLM
Anthropic Messages API, also used for Anthropic-compatible gateways.
"""
from typing import Any, List, Optional, Dict
import inspect
import logging

from .base import BaseLLM, Message, MessageRole, LLMResponse, ToolCall, schema_instruction


logger = logging.getLogger(__name__)


class AnthropicLLM(BaseLLM):
    """Messages API client; ``base_url`` points at a compatible gateway when set."""

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
        return "anthropic"

    def _get_async_client(self):
        if self._async_client is None:
            from anthropic import AsyncAnthropic
            self._async_client = AsyncAnthropic(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._async_client

    def _convert_messages(self, messages: List[Message]) -> tuple:
        """
        Split out the system prompt; Anthropic takes it as a separate field.

        Returns:
            (system_prompt, messages_list)
        """
        system_parts = []
        converted = []

        for msg in messages:
            if msg.role == MessageRole.SYSTEM:
                system_parts.append(msg.content)
            else:
                converted.append({"role": msg.role.value, "content": msg.content})

        return ("\n\n".join(system_parts) or None), converted

    def _convert_tools(self, tools: Optional[List[Dict]]) -> Optional[List[Dict]]:
        """OpenAI function definitions -> Anthropic tool definitions"""
        if not tools:
            return None

        anthropic_tools = []
        for tool in tools:
            if tool.get("type") == "function":
                func = tool["function"]
                anthropic_tools.append({
                    "name": func["name"],
                    "description": func.get("description", ""),
                    "input_schema": func.get("parameters", {"type": "object", "properties": {}}),
                })

        return anthropic_tools or None

    async def acomplete(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        json_schema: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> LLMResponse:
        client = self._get_async_client()

        system_prompt, converted_messages = self._convert_messages(messages)
        if json_schema:
            system_prompt = "\n\n".join(part for part in (system_prompt, schema_instruction(json_schema)) if part)

        request_params = {
            "model": self.model,
            "messages": converted_messages,
            "temperature": kwargs.get("temperature", self.temperature),
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
        }
        if system_prompt:
            request_params["system"] = system_prompt

        anthropic_tools = self._convert_tools(tools)
        if anthropic_tools:
            request_params["tools"] = anthropic_tools

        response = await client.messages.create(**request_params)

        content = ""
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                content += block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        return LLMResponse(
            content=content,
            model=response.model,
            usage={
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
            },
            tool_calls=tool_calls or None,
            finish_reason=response.stop_reason,
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
